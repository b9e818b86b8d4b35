from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from app.lab.enums import TimePeriod

if TYPE_CHECKING:
    from app.lab.simulation.simulator import SimulationResult

PERIOD_DAYS: dict[TimePeriod, int] = {
    TimePeriod.day: 1,
    TimePeriod.week: 7,
    TimePeriod.month: 30,
    TimePeriod.year: 365,
}


@dataclass(frozen=True)
class ProjectionOptions:
    variance_factor: float = 0.15
    infrastructure_ratio: float = 0.1
    maintenance_ratio: float = 0.05


@dataclass(frozen=True)
class ConfidenceInterval:
    low: float
    high: float


@dataclass(frozen=True)
class ProjectionBreakdown:
    api_calls: float
    infrastructure: float
    maintenance: float


@dataclass(frozen=True)
class CostProjection:
    period: TimePeriod
    estimated_cost: float
    confidence_interval: ConfidenceInterval
    breakdown: ProjectionBreakdown


class CostProjector:
    """按日均成本外推到日/周/月/年，金额保留 2 位"""

    def project(
        self,
        result: "SimulationResult",
        period: TimePeriod,
        options: Optional[ProjectionOptions] = None,
    ) -> CostProjection:
        days = result.daily_breakdown
        daily_average = sum(d.cost for d in days) / len(days) if days else 0.0
        return self.project_daily_average(daily_average, period, options)

    def project_multiple(
        self,
        result: "SimulationResult",
        periods: Iterable[TimePeriod],
        options: Optional[ProjectionOptions] = None,
    ) -> list[CostProjection]:
        return [self.project(result, period, options) for period in periods]

    def project_daily_average(
        self,
        daily_average: float,
        period: TimePeriod,
        options: Optional[ProjectionOptions] = None,
    ) -> CostProjection:
        options = options or ProjectionOptions()
        period = TimePeriod(period)
        period_cost = daily_average * PERIOD_DAYS[period]
        api_ratio = 1 - options.infrastructure_ratio - options.maintenance_ratio

        return CostProjection(
            period=period,
            estimated_cost=round(period_cost, 2),
            confidence_interval=ConfidenceInterval(
                low=round(period_cost * (1 - options.variance_factor), 2),
                high=round(period_cost * (1 + options.variance_factor), 2),
            ),
            breakdown=ProjectionBreakdown(
                api_calls=round(period_cost * api_ratio, 2),
                infrastructure=round(period_cost * options.infrastructure_ratio, 2),
                maintenance=round(period_cost * options.maintenance_ratio, 2),
            ),
        )
