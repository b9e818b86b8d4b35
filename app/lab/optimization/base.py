"""
优化策略基类

策略是纯计算：输入一次调用的上下文，输出改写后的提示词与预估节省。
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from app.lab.constants import CHARS_PER_TOKEN, TOKENS_PER_BLOCK
from app.lab.enums import StrategyCategory

# 粗略单价（美元 / 1K tokens），仅用于估算节省金额
ESTIMATE_COST_PER_THOUSAND_TOKENS = 0.5


@dataclass(frozen=True)
class OptimizationContext:
    experiment_id: str
    session_id: str
    provider: str
    model: str
    prompt: str
    parameters: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class OptimizationResult:
    success: bool
    estimated_token_savings: int
    estimated_cost_savings: float
    explanation: str
    applied_techniques: list[str] = field(default_factory=list)
    optimized_prompt: Optional[str] = None
    optimized_parameters: Optional[dict[str, Any]] = None


def rough_cost(tokens: int) -> float:
    return round(tokens / TOKENS_PER_BLOCK * ESTIMATE_COST_PER_THOUSAND_TOKENS, 6)


class BaseOptimizationStrategy(ABC):
    name: str = ""
    description: str = ""
    category: StrategyCategory = StrategyCategory.prompt

    @abstractmethod
    def apply(self, context: OptimizationContext) -> OptimizationResult:
        raise NotImplementedError

    def estimate_savings(self, context: OptimizationContext) -> float:
        return self.apply(context).estimated_token_savings

    @staticmethod
    def calculate_token_count(text: str) -> int:
        return math.ceil(len(text or "") / CHARS_PER_TOKEN)

    def success_result(
        self,
        optimized_prompt: str,
        original_prompt: str,
        explanation: str,
        techniques: list[str],
        optimized_parameters: Optional[dict[str, Any]] = None,
    ) -> OptimizationResult:
        original_tokens = self.calculate_token_count(original_prompt)
        optimized_tokens = self.calculate_token_count(optimized_prompt)
        token_savings = max(0, original_tokens - optimized_tokens)
        return OptimizationResult(
            success=True,
            optimized_prompt=optimized_prompt,
            optimized_parameters=optimized_parameters,
            estimated_token_savings=token_savings,
            estimated_cost_savings=rough_cost(token_savings),
            explanation=explanation,
            applied_techniques=list(techniques),
        )

    @staticmethod
    def failure_result(reason: str) -> OptimizationResult:
        return OptimizationResult(
            success=False,
            estimated_token_savings=0,
            estimated_cost_savings=0.0,
            explanation=reason,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, category={self.category.value!r})"
