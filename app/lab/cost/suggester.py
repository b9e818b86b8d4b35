from __future__ import annotations

from dataclasses import dataclass, field

from app.lab.constants import TOKENS_PER_BLOCK
from app.lab.cost.token_analyzer import TokenAnalysisResult, TokenInsightCall
from app.lab.enums import OptimizationPriority
from app.lab.rounding import round_half_up


@dataclass(frozen=True)
class OptimizationSuggestion:
    id: str
    title: str
    description: str
    strategy: str
    priority: OptimizationPriority
    estimated_token_savings: int
    estimated_cost_savings: float
    related_call_ids: list[str] = field(default_factory=list)


class OptimizationSuggester:
    """
    根据 TokenAnalyzer 的分析结果生成优化建议

    顺序固定：全局建议（提示词压缩、系统提示精简）在前，单次调用建议在后；
    同一调用只出现一次，总数不超过 max_suggestions。
    """

    def __init__(self, *, cost_per_thousand_tokens: float = 0.5, max_suggestions: int = 5):
        self.cost_per_thousand_tokens = float(cost_per_thousand_tokens)
        self.max_suggestions = int(max_suggestions)

    def suggest(self, analysis: TokenAnalysisResult) -> list[OptimizationSuggestion]:
        if analysis.call_count == 0:
            return []

        suggestions: list[OptimizationSuggestion] = []
        referenced: set[str] = set()

        if analysis.flags.high_average_tokens:
            suggestions.append(self._prompt_compression(analysis))
        if analysis.flags.excessive_system_tokens:
            suggestions.append(self._system_trim(analysis))

        for call in analysis.high_cost_calls:
            if len(suggestions) >= self.max_suggestions:
                break
            suggestions.append(self._call_suggestion(call, "cost"))
            referenced.add(call.id)

        for call in analysis.high_token_calls:
            if len(suggestions) >= self.max_suggestions:
                break
            if call.id in referenced:
                continue
            suggestions.append(self._call_suggestion(call, "token"))
            referenced.add(call.id)

        return suggestions[: self.max_suggestions]

    def _prompt_compression(self, analysis: TokenAnalysisResult) -> OptimizationSuggestion:
        tokens = max(round_half_up(analysis.totals.total_tokens * 0.15), 1)
        return OptimizationSuggestion(
            id="prompt-compression",
            title="压缩冗长提示词",
            description="平均 Token 数超过阈值。重组提示词要求、按需分段投递上下文，预计可降低 15% 以上成本。",
            strategy="prompt-compression",
            priority=OptimizationPriority.high,
            estimated_token_savings=tokens,
            estimated_cost_savings=self._cost_savings(tokens),
        )

    def _system_trim(self, analysis: TokenAnalysisResult) -> OptimizationSuggestion:
        tokens = max(round_half_up(analysis.totals.system_tokens * 0.25), 1)
        return OptimizationSuggestion(
            id="system-trim",
            title="精简系统提示",
            description="系统消息占比偏高。拆分角色指令并模板化，可抑制系统 Token 的持续膨胀。",
            strategy="system-prompt-trim",
            priority=OptimizationPriority.medium,
            estimated_token_savings=tokens,
            estimated_cost_savings=self._cost_savings(tokens),
        )

    def _call_suggestion(self, call: TokenInsightCall, reason: str) -> OptimizationSuggestion:
        is_cost = reason == "cost"
        tokens = max(round_half_up(call.total_tokens * (0.2 if is_cost else 0.1)), 1)
        if is_cost:
            title = f"高成本调用 ({call.provider}/{call.model})"
            description = "该请求显著推高了成本。使用结构化输入并限制响应长度，预计可降低 20% 成本。"
        else:
            title = f"Token 过多的调用 ({call.provider}/{call.model})"
            description = "该请求 Token 数过多。采用摘要或分段应答，目标降低 10%。"

        return OptimizationSuggestion(
            id=f"{reason}-call-{call.id}",
            title=title,
            description=description,
            strategy="prompt-budgeting" if is_cost else "response-scope-control",
            priority=OptimizationPriority.high if is_cost else OptimizationPriority.medium,
            estimated_token_savings=tokens,
            estimated_cost_savings=self._cost_savings(tokens),
            related_call_ids=[call.id],
        )

    def _cost_savings(self, token_savings: int) -> float:
        return round(token_savings / TOKENS_PER_BLOCK * self.cost_per_thousand_tokens, 6)
