from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.lab.enums import StrategyCategory
from app.lab.optimization.base import BaseOptimizationStrategy, OptimizationContext
from app.lab.optimization.batching import BatchProcessor
from app.lab.optimization.caching import CachingStrategy
from app.lab.optimization.model_selection import ModelSelectionStrategy
from app.lab.optimization.prompt_compressor import PromptCompressor

CATEGORY_PRIORITY: dict[StrategyCategory, int] = {
    StrategyCategory.caching: 100,
    StrategyCategory.batching: 80,
    StrategyCategory.prompt: 60,
    StrategyCategory.model: 40,
}
DEFAULT_CATEGORY_PRIORITY = 50
MAX_SAVINGS_BONUS = 50


@dataclass(frozen=True)
class StrategyRanking:
    strategy: BaseOptimizationStrategy
    estimated_savings: float
    priority: float


def calculate_priority(strategy: BaseOptimizationStrategy, savings: float) -> float:
    base = CATEGORY_PRIORITY.get(strategy.category, DEFAULT_CATEGORY_PRIORITY)
    return base + min(MAX_SAVINGS_BONUS, savings / 100)


class StrategyRegistry:
    """策略表（按 name 唯一），排序是对整张表的纯函数"""

    def __init__(self, strategies: Optional[list[BaseOptimizationStrategy]] = None):
        self._strategies: dict[str, BaseOptimizationStrategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: BaseOptimizationStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def get(self, name: str) -> Optional[BaseOptimizationStrategy]:
        return self._strategies.get(name)

    def get_all(self) -> list[BaseOptimizationStrategy]:
        return list(self._strategies.values())

    def get_by_category(self, category: StrategyCategory) -> list[BaseOptimizationStrategy]:
        return [s for s in self._strategies.values() if s.category == category]

    def rank_strategies(self, context: OptimizationContext) -> list[StrategyRanking]:
        rankings = []
        for strategy in self._strategies.values():
            savings = strategy.estimate_savings(context)
            rankings.append(
                StrategyRanking(
                    strategy=strategy,
                    estimated_savings=savings,
                    priority=calculate_priority(strategy, savings),
                )
            )
        # sorted 是稳定排序，同分保持注册顺序
        return sorted(rankings, key=lambda r: r.priority, reverse=True)


def build_default_registry() -> StrategyRegistry:
    return StrategyRegistry(
        [PromptCompressor(), CachingStrategy(), BatchProcessor(), ModelSelectionStrategy()]
    )
