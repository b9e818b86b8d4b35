"""
计费表

单位：美元 / 1K tokens。模型名统一小写匹配，找不到时回退到 provider 的 default 档位。
system 未单独定价时按 prompt 计价。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.lab.constants import TOKENS_PER_BLOCK
from app.lab.entities import CostBreakdown, CostResult, TokenBreakdown
from app.lab.enums import Provider
from app.lab.errors import ProviderExecutionError


@dataclass(frozen=True)
class ModelPricing:
    prompt: float
    completion: float
    system: Optional[float] = None


PRICING_TABLE: dict[Provider, dict[str, ModelPricing]] = {
    Provider.openai: {
        "gpt-4o-mini": ModelPricing(prompt=0.15, completion=0.6),
        "gpt-4o": ModelPricing(prompt=5, completion=15),
        "gpt-4.1-mini": ModelPricing(prompt=0.2, completion=0.6),
        "gpt-4.1": ModelPricing(prompt=5, completion=15),
        "default": ModelPricing(prompt=0.5, completion=1.5),
    },
    Provider.anthropic: {
        "claude-3-5-sonnet": ModelPricing(prompt=3, completion=15),
        "claude-3-opus": ModelPricing(prompt=15, completion=75),
        "default": ModelPricing(prompt=3, completion=15),
    },
    Provider.google: {
        "gemini-1.5-pro": ModelPricing(prompt=3.5, completion=10.5),
        "gemini-1.5-flash": ModelPricing(prompt=0.35, completion=1.05),
        "default": ModelPricing(prompt=0.25, completion=0.75),
    },
}


def get_pricing(provider: Provider, model: str) -> ModelPricing:
    table = PRICING_TABLE[Provider(provider)]
    return table.get((model or "").lower(), table["default"])


def calculate_cost(provider: Provider, model: str, tokens: TokenBreakdown) -> CostResult:
    if not model:
        raise ProviderExecutionError(
            "缺少模型名称，无法计费",
            {"provider": Provider(provider).value},
        )

    pricing = get_pricing(provider, model)
    system_rate = pricing.system if pricing.system is not None else pricing.prompt

    prompt_cost = tokens.input_tokens / TOKENS_PER_BLOCK * pricing.prompt
    completion_cost = tokens.output_tokens / TOKENS_PER_BLOCK * pricing.completion
    system_cost = tokens.system_tokens / TOKENS_PER_BLOCK * system_rate

    # 各分项与总价分别保留 6 位，总价不等于分项四舍五入后的和
    return CostResult(
        cost=round(prompt_cost + completion_cost + system_cost, 6),
        breakdown=CostBreakdown(
            prompt=round(prompt_cost, 6),
            completion=round(completion_cost, 6),
            system=round(system_cost, 6),
        ),
    )


def cheapest_model(provider: Provider) -> tuple[str, ModelPricing]:
    """provider 下 prompt+completion 单价最低的具名模型（不含 default 档）"""
    table = PRICING_TABLE[Provider(provider)]
    named = [(name, p) for name, p in table.items() if name != "default"]
    return min(named, key=lambda item: item[1].prompt + item[1].completion)
