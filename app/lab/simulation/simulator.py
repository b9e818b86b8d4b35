"""
用量模拟

按天生成请求量（受负载模式影响），累计 Token 与成本，并外推日/周/月/年预测。
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Callable, Optional

from app.lab.constants import TOKENS_PER_BLOCK
from app.lab.enums import LoadPattern, TimePeriod
from app.lab.rounding import round_half_up
from app.lab.simulation.projector import CostProjection, CostProjector

BURST_PROBABILITY = 0.2
OFF_PEAK_MULTIPLIER = 0.5
SEASON_LENGTH_DAYS = 30


@dataclass(frozen=True)
class UsageScenario:
    name: str
    requests_per_day: int
    average_tokens_per_request: int
    load_pattern: LoadPattern
    duration_days: int
    description: str = ""
    peak_multiplier: float = 2.0


@dataclass(frozen=True)
class SimulationConfig:
    scenario: UsageScenario
    provider: str
    model: str
    cost_per_thousand_tokens: float


@dataclass(frozen=True)
class DailySimulationData:
    day: int
    requests: int
    tokens: int
    cost: float
    pattern: LoadPattern


@dataclass(frozen=True)
class SimulationResult:
    scenario_name: str
    total_requests: int
    total_tokens: int
    total_cost: float
    average_cost_per_request: float
    daily_breakdown: list[DailySimulationData]
    projections: list[CostProjection]


class UsageSimulator:
    def __init__(
        self,
        *,
        random_source: Optional[Callable[[], float]] = None,
        projector: Optional[CostProjector] = None,
    ):
        self._random = random_source or random.random
        self._projector = projector or CostProjector()

    def simulate(self, config: SimulationConfig) -> SimulationResult:
        scenario = config.scenario
        try:
            pattern = LoadPattern(scenario.load_pattern)
        except ValueError as exc:
            raise ValueError(f"Unknown load pattern: {scenario.load_pattern}") from exc
        if scenario.duration_days < 1:
            raise ValueError("Simulation duration must be at least one day")
        if scenario.requests_per_day < 0 or scenario.average_tokens_per_request < 0:
            raise ValueError("Requests and tokens per request must be non-negative")

        daily = [
            self._simulate_day(day, scenario, pattern, config.cost_per_thousand_tokens)
            for day in range(1, scenario.duration_days + 1)
        ]

        total_requests = sum(d.requests for d in daily)
        total_tokens = sum(d.tokens for d in daily)
        total_cost = sum(d.cost for d in daily)
        daily_average = total_cost / scenario.duration_days

        return SimulationResult(
            scenario_name=scenario.name,
            total_requests=total_requests,
            total_tokens=total_tokens,
            total_cost=round(total_cost, 2),
            average_cost_per_request=round(total_cost / total_requests, 6) if total_requests else 0.0,
            daily_breakdown=daily,
            projections=[self._projector.project_daily_average(daily_average, period) for period in TimePeriod],
        )

    def _simulate_day(
        self,
        day: int,
        scenario: UsageScenario,
        pattern: LoadPattern,
        cost_per_thousand_tokens: float,
    ) -> DailySimulationData:
        multiplier = self.load_multiplier(day, pattern, scenario.peak_multiplier)
        requests = round_half_up(scenario.requests_per_day * multiplier)
        tokens = requests * scenario.average_tokens_per_request
        return DailySimulationData(
            day=day,
            requests=requests,
            tokens=tokens,
            cost=round(tokens / TOKENS_PER_BLOCK * cost_per_thousand_tokens, 6),
            pattern=pattern,
        )

    def load_multiplier(self, day: int, pattern: LoadPattern, peak_multiplier: float) -> float:
        if pattern == LoadPattern.steady:
            return 1.0
        if pattern == LoadPattern.peak:
            # day % 7 为 0 或 6 视为周末
            return peak_multiplier if day % 7 not in (0, 6) else OFF_PEAK_MULTIPLIER
        if pattern == LoadPattern.seasonal:
            phase = (day % SEASON_LENGTH_DAYS) / SEASON_LENGTH_DAYS * 2 * math.pi
            return 1 + math.sin(phase) * (peak_multiplier - 1) / 2
        if pattern == LoadPattern.burst:
            return peak_multiplier if self._random() < BURST_PROBABILITY else 1.0
        raise ValueError(f"Unknown load pattern: {pattern}")
