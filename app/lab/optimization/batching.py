from __future__ import annotations

from dataclasses import dataclass

from app.lab.enums import StrategyCategory
from app.lab.optimization.base import (
    BaseOptimizationStrategy,
    OptimizationContext,
    OptimizationResult,
    rough_cost,
)
from app.lab.rounding import round_half_up

# 批处理预估节省比例
BATCH_SAVINGS_RATIO = 0.3


@dataclass(frozen=True)
class BatchRequest:
    id: str
    context: OptimizationContext


@dataclass(frozen=True)
class BatchResult:
    id: str
    response: str
    tokens: int
    cost: float


class BatchProcessor(BaseOptimizationStrategy):
    name = "batch-processing"
    description = "合并多个请求批量处理以降低成本"
    category = StrategyCategory.batching

    def __init__(self, batch_size: int = 10, batch_timeout_ms: int = 5000):
        self.batch_size = int(batch_size)
        self.batch_timeout_ms = int(batch_timeout_ms)
        self._pending: list[BatchRequest] = []

    def apply(self, context: OptimizationContext) -> OptimizationResult:
        tokens = self.calculate_token_count(context.prompt)
        individual_cost = rough_cost(tokens)
        savings = individual_cost - individual_cost * (1 - BATCH_SAVINGS_RATIO)
        return OptimizationResult(
            success=True,
            optimized_prompt=context.prompt,
            estimated_token_savings=round_half_up(tokens * BATCH_SAVINGS_RATIO),
            estimated_cost_savings=round(savings, 6),
            explanation=f"批量处理预计可节省约 30% 成本（批大小: {self.batch_size}）",
            applied_techniques=["batch-grouping", "request-optimization"],
        )

    def add_to_batch(self, request: BatchRequest) -> None:
        self._pending.append(request)

    def should_process_batch(self) -> bool:
        return len(self._pending) >= self.batch_size

    def pending_count(self) -> int:
        return len(self._pending)

    def process_batch(self) -> list[BatchResult]:
        if not self._pending:
            return []

        batch, self._pending = self._pending, []
        results = []
        for request in batch:
            tokens = self.calculate_token_count(request.context.prompt)
            results.append(
                BatchResult(
                    id=request.id,
                    response=f"Batched response for {request.id}",
                    tokens=tokens,
                    cost=round(rough_cost(tokens) * (1 - BATCH_SAVINGS_RATIO), 6),
                )
            )
        return results

    def clear_batch(self) -> None:
        self._pending = []

    @staticmethod
    def calculate_optimal_batch_size(requests_per_minute: float) -> int:
        if requests_per_minute < 10:
            return 5
        if requests_per_minute < 50:
            return 10
        if requests_per_minute < 100:
            return 20
        return 50
