"""
实验室领域对象

会话、调用记录、基线等纯数据结构（不可变），服务之间只交换这些对象。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from app.lab.enums import ExperimentStatus, IsolationLevel, Provider


@dataclass(frozen=True)
class TokenBreakdown:
    input_tokens: int = 0
    output_tokens: int = 0
    system_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens + self.system_tokens

    def __add__(self, other: "TokenBreakdown") -> "TokenBreakdown":
        return TokenBreakdown(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            system_tokens=self.system_tokens + other.system_tokens,
        )


@dataclass(frozen=True)
class ResourceLimits:
    max_concurrent_sessions: int
    max_calls_per_session: int
    max_tokens_per_session: int
    max_session_duration_ms: int


@dataclass(frozen=True)
class SessionConfig:
    provider: Provider
    isolation_level: IsolationLevel = IsolationLevel.user
    api_key_id: Optional[str] = None
    api_key_plaintext: Optional[str] = field(default=None, repr=False)
    use_shared_key: bool = False


@dataclass(frozen=True)
class APIResponse:
    """网关返回的一次调用结果"""

    content: str
    model: str
    tokens: TokenBreakdown
    cost: float
    latency_ms: int
    timestamp: datetime
    provider: Provider


@dataclass(frozen=True)
class SessionMetrics:
    session_id: str
    user_id: str
    provider: Provider
    total_calls: int
    total_tokens: TokenBreakdown
    total_cost: float
    average_latency_ms: int
    started_at: datetime
    last_activity_at: datetime
    resource_limit_breached: bool
    experiment_id: Optional[str] = None


@dataclass(frozen=True)
class ExperimentSessionSnapshot:
    id: str
    user_id: str
    config: SessionConfig
    created_at: datetime
    expires_at: datetime
    total_calls: int
    experiment_id: Optional[str] = None


@dataclass(frozen=True)
class CostBreakdown:
    prompt: float
    completion: float
    system: float


@dataclass(frozen=True)
class CostResult:
    cost: float
    breakdown: CostBreakdown


@dataclass(frozen=True)
class APICallRecord:
    id: str
    experiment_id: str
    session_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    system_tokens: int
    cost: float
    latency_ms: int
    # 外部导入的记录可能没有时间
    timestamp: Optional[datetime]
    breakdown: Optional[CostBreakdown] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.system_tokens


@dataclass(frozen=True)
class Baseline:
    id: str
    experiment_id: str
    scenario: str
    average_cost: float
    total_tokens: int
    average_latency_ms: int
    call_count: int
    created_at: Optional[datetime]


@dataclass(frozen=True)
class APIKeyRecord:
    id: str
    user_id: str
    provider: Provider
    is_shared: bool
    created_at: datetime
    alias: Optional[str] = None
    last_used_at: Optional[datetime] = None


@dataclass(frozen=True)
class Experiment:
    id: str
    user_id: str
    name: str
    status: ExperimentStatus
    created_at: Optional[datetime]
    description: Optional[str] = None
    baseline_id: Optional[str] = None


@dataclass(frozen=True)
class UserProgress:
    user_id: str
    experiments_completed: int
    total_cost_savings: float
    skill_level: int
    badges_earned: tuple[str, ...] = ()
    challenges_completed: tuple[str, ...] = ()
    last_activity: Optional[datetime] = None
