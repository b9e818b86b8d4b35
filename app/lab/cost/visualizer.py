from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from app.lab.cost.token_analyzer import TokenAnalysisResult
from app.lab.entities import CostBreakdown, TokenBreakdown


@dataclass(frozen=True)
class ChartDataset:
    label: str
    data: list[float]
    background_color: Union[str, list[str], None] = None


@dataclass(frozen=True)
class TokenChart:
    type: str  # pie / bar
    title: str
    labels: list[str]
    datasets: list[ChartDataset]
    meta: dict[str, Any] = field(default_factory=dict)


class TokenVisualizer:
    """把分析结果转成前端图表可直接渲染的数据结构"""

    def generate_distribution(self, analysis: TokenAnalysisResult) -> TokenChart:
        totals = analysis.totals
        return TokenChart(
            type="pie",
            title="Token Distribution",
            labels=["Input Tokens", "Output Tokens", "System Tokens"],
            datasets=[
                ChartDataset(
                    label="Tokens",
                    data=[totals.input_tokens, totals.output_tokens, totals.system_tokens],
                    background_color=["#3b82f6", "#10b981", "#f59e0b"],
                )
            ],
            meta={"totalTokens": totals.total_tokens},
        )

    def generate_cost_breakdown(self, breakdowns: Iterable[Optional[CostBreakdown]]) -> TokenChart:
        prompt = completion = system = 0.0
        for item in breakdowns:
            if item is None:
                continue
            prompt += item.prompt
            completion += item.completion
            system += item.system

        return TokenChart(
            type="bar",
            title="Cost Breakdown",
            labels=["Prompt", "Completion", "System"],
            datasets=[
                ChartDataset(
                    label="Cost ($)",
                    data=[round(prompt, 6), round(completion, 6), round(system, 6)],
                    background_color=["#6366f1", "#14b8a6", "#f97316"],
                )
            ],
            meta={"totalCost": round(prompt + completion + system, 6)},
        )

    def generate_baseline_comparison(self, baseline: TokenBreakdown, optimized: TokenBreakdown) -> TokenChart:
        baseline_total = baseline.total
        optimized_total = optimized.total
        reduction = 0.0 if baseline_total == 0 else round((baseline_total - optimized_total) / baseline_total * 100, 2)

        return TokenChart(
            type="bar",
            title="Token Comparison: Baseline vs Optimized",
            labels=["Input", "Output", "System"],
            datasets=[
                ChartDataset(
                    label="Baseline Tokens",
                    data=[baseline.input_tokens, baseline.output_tokens, baseline.system_tokens],
                    background_color="#94a3b8",
                ),
                ChartDataset(
                    label="Optimized Tokens",
                    data=[optimized.input_tokens, optimized.output_tokens, optimized.system_tokens],
                    background_color="#34d399",
                ),
            ],
            meta={
                "baselineTotal": baseline_total,
                "optimizedTotal": optimized_total,
                "reductionPercentage": reduction,
            },
        )
