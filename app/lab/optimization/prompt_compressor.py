from __future__ import annotations

import re

from app.lab.enums import StrategyCategory
from app.lab.optimization.base import BaseOptimizationStrategy, OptimizationContext, OptimizationResult

MIN_PROMPT_LENGTH = 100
EXAMPLE_REMOVAL_THRESHOLD = 1000

_MULTI_WHITESPACE = re.compile(r"\s{2,}")
_WHITESPACE = re.compile(r"\s+")

# 只移除命中的第一类客套话
_POLITENESS_PATTERNS = [
    re.compile(r"please\s+", re.IGNORECASE),
    re.compile(r"kindly\s+", re.IGNORECASE),
    re.compile(r"I would like you to\s+", re.IGNORECASE),
    re.compile(r"Could you\s+", re.IGNORECASE),
    re.compile(r"Can you\s+", re.IGNORECASE),
]

_SIMPLIFICATIONS = [
    (re.compile(r"in order to", re.IGNORECASE), "to"),
    (re.compile(r"due to the fact that", re.IGNORECASE), "because"),
    (re.compile(r"at this point in time", re.IGNORECASE), "now"),
    (re.compile(r"for the purpose of", re.IGNORECASE), "for"),
]

_EXAMPLE_LINE = re.compile(r"example:|for example", re.IGNORECASE)


class PromptCompressor(BaseOptimizationStrategy):
    name = "prompt-compression"
    description = "压缩提示词以减少 Token 用量"
    category = StrategyCategory.prompt

    def apply(self, context: OptimizationContext) -> OptimizationResult:
        prompt = context.prompt or ""
        if len(prompt) < MIN_PROMPT_LENGTH:
            return self.failure_result("提示词过短，无需压缩")

        techniques: list[str] = []
        optimized = prompt

        if _MULTI_WHITESPACE.search(optimized):
            optimized = _WHITESPACE.sub(" ", optimized).strip()
            techniques.append("删除多余空白")

        for pattern in _POLITENESS_PATTERNS:
            if pattern.search(optimized):
                optimized = pattern.sub("", optimized)
                techniques.append("删除冗余客套话")
                break

        for pattern, replacement in _SIMPLIFICATIONS:
            if pattern.search(optimized):
                optimized = pattern.sub(replacement, optimized)
                techniques.append("简化冗长表达")
                break

        if len(optimized) > EXAMPLE_REMOVAL_THRESHOLD and _EXAMPLE_LINE.search(optimized):
            lines = optimized.split("\n")
            kept = [line for line in lines if not _EXAMPLE_LINE.search(line)]
            if len(kept) < len(lines):
                optimized = "\n".join(kept)
                techniques.append("删除示例（需要时单独提供）")

        if not techniques:
            return self.failure_result("没有找到可压缩的内容")

        return self.success_result(
            optimized,
            prompt,
            f"应用了 {len(techniques)} 种压缩技巧",
            techniques,
        )
