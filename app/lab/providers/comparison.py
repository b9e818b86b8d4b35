"""
供应商横向对比

- compare：同一提示词依次发给多个供应商，按成本 / 延迟 / 综合性价比给出推荐
- calculate_tco / compare_at_scale：按月请求量估算总拥有成本（API + 基础设施 + 运维）
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from loguru import logger

from app.lab.entities import TokenBreakdown
from app.lab.enums import Provider
from app.lab.errors import LabError, ProviderExecutionError
from app.lab.gateway.adapters import GatewayRequest
from app.lab.gateway.gateway import APIGateway
from app.lab.sandbox.session import utcnow

# 综合性价比 = 成本 * 0.6 + 延迟(秒) * 0.4，越小越好
VALUE_COST_WEIGHT = 0.6
VALUE_LATENCY_WEIGHT = 0.4

# 运维成本按 (API + 基础设施) 的比例估算
MAINTENANCE_RATIO = 0.1

# 基础设施：基础费用 + 按月请求量分档的附加费用
INFRASTRUCTURE_BASE_COST = 50
INFRASTRUCTURE_TIERS = (
    (10_000, 0),
    (100_000, 100),
    (1_000_000, 500),
)
INFRASTRUCTURE_TOP_TIER_COST = 2000


@dataclass(frozen=True)
class ComparisonTarget:
    provider: Provider
    model: str
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class ProviderResult:
    provider: Provider
    model: str
    response: str
    tokens: TokenBreakdown
    cost: float
    latency_ms: int

    @property
    def value_score(self) -> float:
        return self.cost * VALUE_COST_WEIGHT + self.latency_ms / 1000 * VALUE_LATENCY_WEIGHT


@dataclass(frozen=True)
class ProviderRecommendation:
    best_cost: ProviderResult
    best_latency: ProviderResult
    best_value: ProviderResult


@dataclass(frozen=True)
class ProviderComparisonResult:
    prompt: str
    results: list[ProviderResult]
    recommendation: ProviderRecommendation
    timestamp: datetime


@dataclass(frozen=True)
class TCOCalculation:
    provider: Provider
    model: str
    api_costs: float
    infrastructure_costs: float
    maintenance_costs: float
    total_cost: float
    cost_per_request: float
    projected_monthly_cost: float


@dataclass(frozen=True)
class ScalePricing:
    provider: Provider
    model: str
    cost_per_request: float


@dataclass(frozen=True)
class ScaleComparison:
    scale: int
    comparisons: list[TCOCalculation]


class ProviderComparison:
    def __init__(self, gateway: APIGateway):
        self.gateway = gateway

    async def compare(
        self,
        prompt: str,
        targets: Sequence[ComparisonTarget],
        parameters: Optional[dict[str, Any]] = None,
    ) -> ProviderComparisonResult:
        results = []
        for target in targets:
            request = GatewayRequest(
                provider=target.provider,
                model=target.model,
                prompt=prompt,
                api_key=target.api_key,
                parameters=dict(parameters or {}),
            )
            try:
                response = await self.gateway.execute(request)
            except LabError as exc:
                # 单个供应商失败不影响其余对比项
                logger.warning(
                    f"[ProviderComparison] 供应商调用失败，跳过: provider={target.provider.value}, "
                    f"model={target.model}, kind={exc.kind.value}"
                )
                continue

            results.append(
                ProviderResult(
                    provider=target.provider,
                    model=target.model,
                    response=response.content,
                    tokens=response.tokens,
                    cost=response.cost,
                    latency_ms=response.latency_ms,
                )
            )

        if not results:
            raise ProviderExecutionError(
                "No providers returned successful responses",
                {"providers": [t.provider.value for t in targets]},
            )

        return ProviderComparisonResult(
            prompt=prompt,
            results=results,
            recommendation=recommend(results),
            timestamp=utcnow(),
        )

    def calculate_tco(
        self,
        provider: Provider,
        model: str,
        requests_per_month: int,
        average_cost_per_request: float,
    ) -> TCOCalculation:
        if requests_per_month <= 0:
            raise ValueError("requests_per_month must be positive")

        api_costs = requests_per_month * average_cost_per_request
        infrastructure_costs = estimate_infrastructure_costs(requests_per_month)
        maintenance_costs = (api_costs + infrastructure_costs) * MAINTENANCE_RATIO
        total_cost = api_costs + infrastructure_costs + maintenance_costs

        return TCOCalculation(
            provider=Provider(provider),
            model=model,
            api_costs=round(api_costs, 2),
            infrastructure_costs=round(infrastructure_costs, 2),
            maintenance_costs=round(maintenance_costs, 2),
            total_cost=round(total_cost, 2),
            cost_per_request=round(total_cost / requests_per_month, 6),
            projected_monthly_cost=round(total_cost, 2),
        )

    def compare_at_scale(self, pricing: Sequence[ScalePricing], scales: Sequence[int]) -> list[ScaleComparison]:
        return [
            ScaleComparison(
                scale=scale,
                comparisons=[self.calculate_tco(p.provider, p.model, scale, p.cost_per_request) for p in pricing],
            )
            for scale in scales
        ]


def recommend(results: Sequence[ProviderResult]) -> ProviderRecommendation:
    # min 同分取第一个，即按传入顺序
    return ProviderRecommendation(
        best_cost=min(results, key=lambda r: r.cost),
        best_latency=min(results, key=lambda r: r.latency_ms),
        best_value=min(results, key=lambda r: r.value_score),
    )


def estimate_infrastructure_costs(requests_per_month: int) -> float:
    for upper_bound, extra in INFRASTRUCTURE_TIERS:
        if requests_per_month < upper_bound:
            return INFRASTRUCTURE_BASE_COST + extra
    return INFRASTRUCTURE_BASE_COST + INFRASTRUCTURE_TOP_TIER_COST
