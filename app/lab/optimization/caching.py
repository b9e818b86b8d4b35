from __future__ import annotations

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from app.lab.enums import StrategyCategory
from app.lab.optimization.base import BaseOptimizationStrategy, OptimizationContext, OptimizationResult


@dataclass
class CacheEntry:
    response: str
    tokens: int
    cost: float
    stored_at: float
    hits: int = 0


class CachingStrategy(BaseOptimizationStrategy):
    """
    响应缓存

    key = sha256(provider/model/prompt/parameters)；条目按写入顺序淘汰最旧的一条。
    命中时节省 = 缓存条目记录的 tokens / cost。
    """

    name = "response-caching"
    description = "缓存响应以减少 API 调用"
    category = StrategyCategory.caching

    def __init__(
        self,
        *,
        ttl_seconds: float = 60 * 60,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def apply(self, context: OptimizationContext) -> OptimizationResult:
        entry = self._cache.get(self.cache_key(context))

        if entry is not None and not self._is_expired(entry):
            entry.hits += 1
            return OptimizationResult(
                success=True,
                optimized_prompt=context.prompt,
                estimated_token_savings=entry.tokens,
                estimated_cost_savings=entry.cost,
                explanation=f"缓存命中（第 {entry.hits} 次），无需调用 API",
                applied_techniques=["response-caching"],
            )

        return OptimizationResult(
            success=True,
            optimized_prompt=context.prompt,
            estimated_token_savings=0,
            estimated_cost_savings=0.0,
            explanation="缓存未命中，首次调用后将写入缓存",
            applied_techniques=["cache-setup"],
        )

    def set_cache_entry(self, context: OptimizationContext, response: str, tokens: int, cost: float) -> None:
        key = self.cache_key(context)
        if key in self._cache:
            del self._cache[key]
        elif len(self._cache) >= self.max_entries:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"[CachingStrategy] 淘汰最旧缓存: key={evicted[:12]}")

        self._cache[key] = CacheEntry(
            response=response,
            tokens=int(tokens),
            cost=float(cost),
            stored_at=self._clock(),
        )

    def get_cache_stats(self) -> dict[str, float]:
        total_hits = sum(entry.hits for entry in self._cache.values())
        # 每个条目的首次请求也计入请求数
        total_requests = sum(entry.hits + 1 for entry in self._cache.values())
        return {
            "size": len(self._cache),
            "totalHits": total_hits,
            "hitRate": total_hits / total_requests if total_requests else 0.0,
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    @staticmethod
    def cache_key(context: OptimizationContext) -> str:
        payload = json.dumps(
            {
                "provider": context.provider,
                "model": context.model,
                "prompt": context.prompt,
                "parameters": context.parameters,
            },
            sort_keys=True,
            ensure_ascii=False,
            default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at > self.ttl_seconds
