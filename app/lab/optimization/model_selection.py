from __future__ import annotations

from app.lab.constants import TOKENS_PER_BLOCK
from app.lab.cost.pricing import cheapest_model, get_pricing
from app.lab.enums import Provider, StrategyCategory
from app.lab.optimization.base import (
    ESTIMATE_COST_PER_THOUSAND_TOKENS,
    BaseOptimizationStrategy,
    OptimizationContext,
    OptimizationResult,
)
from app.lab.rounding import round_half_up


class ModelSelectionStrategy(BaseOptimizationStrategy):
    """
    模型降档

    按计费表切到同 provider 下最便宜的具名模型。
    输出 Token 取 parameters.max_tokens，缺省按与输入等长估算。
    estimated_token_savings 是按粗略单价换算的等价 Token 数，便于和其它策略一起排序。
    """

    name = "model-selection"
    description = "切换到同一供应商下更便宜的模型"
    category = StrategyCategory.model

    def apply(self, context: OptimizationContext) -> OptimizationResult:
        try:
            provider = Provider(context.provider)
        except ValueError:
            return self.failure_result(f"不支持的供应商: {context.provider}")

        current = get_pricing(provider, context.model)
        target_name, target = cheapest_model(provider)
        if (context.model or "").lower() == target_name or (
            current.prompt + current.completion <= target.prompt + target.completion
        ):
            return self.failure_result("当前模型已是该供应商的最低价档")

        input_tokens = self.calculate_token_count(context.prompt)
        output_tokens = int((context.parameters or {}).get("max_tokens") or input_tokens)

        current_cost = (input_tokens * current.prompt + output_tokens * current.completion) / TOKENS_PER_BLOCK
        target_cost = (input_tokens * target.prompt + output_tokens * target.completion) / TOKENS_PER_BLOCK
        cost_savings = max(0.0, current_cost - target_cost)

        return OptimizationResult(
            success=True,
            optimized_prompt=context.prompt,
            optimized_parameters={**(context.parameters or {}), "model": target_name},
            estimated_token_savings=round_half_up(cost_savings / ESTIMATE_COST_PER_THOUSAND_TOKENS * TOKENS_PER_BLOCK),
            estimated_cost_savings=round(cost_savings, 6),
            explanation=f"切换到 {target_name} 预计每次调用节省 ${cost_savings:.6f}",
            applied_techniques=["model-downgrade"],
        )
