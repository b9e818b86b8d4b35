"""
Token 用量分析

对一组调用记录做一次遍历：分类合计、占比、高成本/高 Token 调用与告警标记。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from app.lab.entities import APICallRecord
from app.lab.rounding import round_half_up


@dataclass(frozen=True)
class TokenInsightCall:
    id: str
    experiment_id: str
    session_id: str
    provider: str
    model: str
    timestamp: Optional[datetime]
    total_tokens: int
    cost: float
    latency_ms: int
    token_breakdown: dict[str, int]


@dataclass(frozen=True)
class TokenAnalysisTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    system_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_cost_per_call: float = 0.0
    average_latency_ms: int = 0


@dataclass(frozen=True)
class TokenAnalysisDistribution:
    input_percentage: float = 0.0
    output_percentage: float = 0.0
    system_percentage: float = 0.0


@dataclass(frozen=True)
class TokenAnalysisFlags:
    excessive_system_tokens: bool = False
    high_average_tokens: bool = False


@dataclass(frozen=True)
class TokenAnalysisResult:
    call_count: int = 0
    totals: TokenAnalysisTotals = field(default_factory=TokenAnalysisTotals)
    distribution: TokenAnalysisDistribution = field(default_factory=TokenAnalysisDistribution)
    high_cost_calls: tuple[TokenInsightCall, ...] = ()
    high_token_calls: tuple[TokenInsightCall, ...] = ()
    flags: TokenAnalysisFlags = field(default_factory=TokenAnalysisFlags)


EMPTY_RESULT = TokenAnalysisResult()


class TokenAnalyzer:
    def __init__(
        self,
        *,
        high_cost_threshold: float = 0.75,
        high_token_threshold: int = 2000,
        system_token_ratio_warning: float = 0.2,
    ):
        self.high_cost_threshold = float(high_cost_threshold)
        self.high_token_threshold = int(high_token_threshold)
        self.system_token_ratio_warning = float(system_token_ratio_warning)

    def analyze(self, calls: Sequence[APICallRecord]) -> TokenAnalysisResult:
        if not calls:
            return EMPTY_RESULT

        total_input = sum(c.input_tokens for c in calls)
        total_output = sum(c.output_tokens for c in calls)
        total_system = sum(c.system_tokens for c in calls)
        total_cost = sum(c.cost for c in calls)
        total_latency = sum(c.latency_ms for c in calls)

        total_tokens = total_input + total_output + total_system
        call_count = len(calls)

        return TokenAnalysisResult(
            call_count=call_count,
            totals=TokenAnalysisTotals(
                input_tokens=total_input,
                output_tokens=total_output,
                system_tokens=total_system,
                total_tokens=total_tokens,
                total_cost=round(total_cost, 6),
                average_cost_per_call=round(total_cost / call_count, 6),
                average_latency_ms=round_half_up(total_latency / call_count),
            ),
            distribution=_distribution(total_input, total_output, total_system),
            high_cost_calls=tuple(_insight(c) for c in calls if c.cost >= self.high_cost_threshold),
            high_token_calls=tuple(_insight(c) for c in calls if c.total_tokens >= self.high_token_threshold),
            flags=self._flags(total_tokens, call_count, total_system),
        )

    def _flags(self, total_tokens: int, call_count: int, total_system: int) -> TokenAnalysisFlags:
        average_tokens = total_tokens / call_count if call_count else 0
        excessive = bool(total_tokens) and total_system / total_tokens >= self.system_token_ratio_warning
        return TokenAnalysisFlags(
            excessive_system_tokens=excessive,
            high_average_tokens=average_tokens >= self.high_token_threshold,
        )


def _distribution(input_tokens: int, output_tokens: int, system_tokens: int) -> TokenAnalysisDistribution:
    total = input_tokens + output_tokens + system_tokens
    if total == 0:
        return TokenAnalysisDistribution()
    return TokenAnalysisDistribution(
        input_percentage=round(input_tokens / total, 4),
        output_percentage=round(output_tokens / total, 4),
        system_percentage=round(system_tokens / total, 4),
    )


def _insight(call: APICallRecord) -> TokenInsightCall:
    return TokenInsightCall(
        id=call.id,
        experiment_id=call.experiment_id,
        session_id=call.session_id,
        provider=call.provider,
        model=call.model,
        timestamp=call.timestamp,
        total_tokens=call.total_tokens,
        cost=round(call.cost, 6),
        latency_ms=call.latency_ms,
        token_breakdown={
            "input": call.input_tokens,
            "output": call.output_tokens,
            "system": call.system_tokens,
        },
    )
