"""
实验会话（沙箱）

一个会话 = 一个用户在有限时间窗口内的模拟 API 用量，负责配额与生命周期校验。

状态：active -> terminated（终态）；expired 是派生判断，不落状态，
过期但未被清理的会话在管理器里仍然是 active。
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from app.lab.constants import DEFAULT_RESOURCE_LIMITS, SESSION_EXPIRY_GRACE_MS
from app.lab.entities import (
    APIResponse,
    ExperimentSessionSnapshot,
    ResourceLimits,
    SessionConfig,
    SessionMetrics,
    TokenBreakdown,
)
from app.lab.errors import ResourceLimitError
from app.lab.rounding import round_half_up


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentSession:
    def __init__(
        self,
        session_id: str,
        user_id: str,
        config: SessionConfig,
        *,
        experiment_id: Optional[str] = None,
        resource_limits: Optional[ResourceLimits] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.id = session_id
        self.user_id = user_id
        self.experiment_id = experiment_id
        self.config = config

        self._resource_limits = resource_limits or DEFAULT_RESOURCE_LIMITS
        self._created_at = created_at or utcnow()
        self._last_activity_at = self._created_at
        self._total_tokens = TokenBreakdown()
        self._total_cost = 0.0
        self._total_calls = 0
        self._total_latency = 0
        self._resource_limit_breached = False
        self._terminated = False

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def resource_limits(self) -> ResourceLimits:
        return self._resource_limits

    def elapsed_ms(self, now: datetime) -> float:
        return (now - self._created_at).total_seconds() * 1000

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.elapsed_ms(now) > self._resource_limits.max_session_duration_ms + SESSION_EXPIRY_GRACE_MS

    def ensure_active(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        if self._terminated:
            raise ResourceLimitError(
                "会话已终止",
                {"sessionId": self.id, "userId": self.user_id},
            )

        if self.is_expired(now):
            self._resource_limit_breached = True
            raise ResourceLimitError(
                "会话已过期",
                {
                    "sessionId": self.id,
                    "elapsedMs": int(self.elapsed_ms(now)),
                    "maxSessionDurationMs": self._resource_limits.max_session_duration_ms,
                },
            )

    def ensure_capacity(self, next_tokens: TokenBreakdown) -> None:
        """
        配额检查（必须在修改累计值之前调用）

        失败时只置位 resource_limit_breached，累计值保持不变。
        """
        if self._total_calls >= self._resource_limits.max_calls_per_session:
            self._resource_limit_breached = True
            raise ResourceLimitError(
                "会话调用次数已达上限",
                {
                    "sessionId": self.id,
                    "maxCallsPerSession": self._resource_limits.max_calls_per_session,
                },
            )

        if self._total_tokens.total + next_tokens.total > self._resource_limits.max_tokens_per_session:
            self._resource_limit_breached = True
            raise ResourceLimitError(
                "会话 Token 用量已达上限",
                {
                    "sessionId": self.id,
                    "maxTokensPerSession": self._resource_limits.max_tokens_per_session,
                },
            )

    def track_response(self, response: APIResponse) -> None:
        self.ensure_capacity(response.tokens)

        self._total_calls += 1
        self._total_cost += response.cost
        self._total_latency += response.latency_ms
        self._total_tokens = self._total_tokens + response.tokens
        # 用响应时间戳而不是当前时间，便于回放
        self._last_activity_at = max(response.timestamp, self._created_at)

    def terminate(self) -> None:
        self._terminated = True

    def to_metrics(self) -> SessionMetrics:
        average_latency = 0 if self._total_calls == 0 else round_half_up(self._total_latency / self._total_calls)
        return SessionMetrics(
            session_id=self.id,
            experiment_id=self.experiment_id,
            user_id=self.user_id,
            provider=self.config.provider,
            total_calls=self._total_calls,
            total_tokens=self._total_tokens,
            total_cost=round(self._total_cost, 6),
            average_latency_ms=average_latency,
            started_at=self._created_at,
            last_activity_at=self._last_activity_at,
            resource_limit_breached=self._resource_limit_breached,
        )

    def to_snapshot(self) -> ExperimentSessionSnapshot:
        return ExperimentSessionSnapshot(
            id=self.id,
            user_id=self.user_id,
            experiment_id=self.experiment_id,
            config=self.config,
            created_at=self._created_at,
            expires_at=self._created_at + timedelta(milliseconds=self._resource_limits.max_session_duration_ms),
            total_calls=self._total_calls,
        )
