from __future__ import annotations

from dataclasses import dataclass

DAYS_PER_MONTH = 30
BREAK_EVEN_MAX_USERS = 1_000_000
BREAK_EVEN_TOLERANCE = 100

GROWTH_LABELS = (("10x", 10), ("100x", 100), ("1000x", 1000))


@dataclass(frozen=True)
class ScaleAnalysis:
    user_scale: int
    requests_per_day: float
    monthly_cost: float
    cost_per_user: float
    warning: bool
    critical: bool


@dataclass(frozen=True)
class ScaleProjection:
    label: str
    analysis: ScaleAnalysis


@dataclass(frozen=True)
class ScaleReport:
    current: ScaleAnalysis
    projections: list[ScaleProjection]


class ScaleCalculator:
    def __init__(self, *, warning_threshold: float = 1000, critical_threshold: float = 5000):
        self.warning_threshold = float(warning_threshold)
        self.critical_threshold = float(critical_threshold)

    def calculate_scale(self, user_count: int, requests_per_user_per_day: float, cost_per_request: float) -> ScaleAnalysis:
        if user_count <= 0:
            raise ValueError("User count must be positive")

        requests_per_day = user_count * requests_per_user_per_day
        monthly_cost = requests_per_day * cost_per_request * DAYS_PER_MONTH
        return ScaleAnalysis(
            user_scale=user_count,
            requests_per_day=requests_per_day,
            monthly_cost=round(monthly_cost, 2),
            cost_per_user=round(monthly_cost / user_count, 2),
            warning=monthly_cost >= self.warning_threshold,
            critical=monthly_cost >= self.critical_threshold,
        )

    def calculate_multiple_scales(
        self, scales: list[int], requests_per_user_per_day: float, cost_per_request: float
    ) -> list[ScaleAnalysis]:
        return [self.calculate_scale(s, requests_per_user_per_day, cost_per_request) for s in scales]

    def find_break_even_scale(
        self,
        fixed_costs: float,
        revenue_per_user: float,
        requests_per_user_per_day: float,
        cost_per_request: float,
    ) -> int:
        """
        二分查找收支平衡的用户规模

        收入与成本之差小于 100 即视为平衡；找不到时返回 0。
        """
        low, high = 1, BREAK_EVEN_MAX_USERS
        break_even = 0
        while low <= high:
            mid = (low + high) // 2
            analysis = self.calculate_scale(mid, requests_per_user_per_day, cost_per_request)
            total_cost = fixed_costs + analysis.monthly_cost
            total_revenue = mid * revenue_per_user

            if abs(total_revenue - total_cost) < BREAK_EVEN_TOLERANCE:
                return mid
            if total_revenue < total_cost:
                low = mid + 1
            else:
                high = mid - 1
                break_even = mid
        return break_even

    def generate_scale_report(
        self, current_users: int, requests_per_user_per_day: float, cost_per_request: float
    ) -> ScaleReport:
        return ScaleReport(
            current=self.calculate_scale(current_users, requests_per_user_per_day, cost_per_request),
            projections=[
                ScaleProjection(
                    label=label,
                    analysis=self.calculate_scale(current_users * factor, requests_per_user_per_day, cost_per_request),
                )
                for label, factor in GROWTH_LABELS
            ],
        )
