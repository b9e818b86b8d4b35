from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.lab.entities import APICallRecord, TokenBreakdown
from app.lab.enums import (
    ExperimentStatus,
    IsolationLevel,
    OptimizationPriority,
    Provider,
    StrategyCategory,
    TimePeriod,
)
from app.lab.optimization.base import OptimizationContext
from app.lab.providers.comparison import ScalePricing
from app.lab.simulation.projector import ProjectionOptions
from app.lab.simulation.simulator import SimulationConfig, UsageScenario


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """通用接口响应包装。"""

    code: int = 200
    msg: str = "success"
    data: T

    model_config = ConfigDict(populate_by_name=True)


class LabModel(BaseModel):
    """字段统一 camelCase 输出；入参 snake/camel 都接受，出参可直接从 dataclass 读取。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ==========================
# 通用
# ==========================
class TokenBreakdownIn(LabModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    system_tokens: int = Field(default=0, ge=0)

    def to_entity(self) -> TokenBreakdown:
        return TokenBreakdown(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            system_tokens=self.system_tokens,
        )


class TokenBreakdownOut(LabModel):
    input_tokens: int
    output_tokens: int
    system_tokens: int
    total: int


class CostBreakdownOut(LabModel):
    prompt: float
    completion: float
    system: float


# ==========================
# 会话
# ==========================
class CreateSessionRequest(LabModel):
    user_id: str = Field(..., min_length=1)
    provider: Provider
    experiment_id: Optional[str] = None
    isolation_level: IsolationLevel = IsolationLevel.user
    api_key_id: Optional[str] = None
    api_key: Optional[str] = None
    use_shared_key: bool = False


class SessionConfigOut(LabModel):
    provider: Provider
    isolation_level: IsolationLevel
    api_key_id: Optional[str] = None
    use_shared_key: bool = False


class SessionSnapshotOut(LabModel):
    id: str
    user_id: str
    experiment_id: Optional[str] = None
    config: SessionConfigOut
    created_at: datetime
    expires_at: datetime
    total_calls: int


class SessionMetricsOut(LabModel):
    session_id: str
    experiment_id: Optional[str] = None
    user_id: str
    provider: Provider
    total_calls: int
    total_tokens: TokenBreakdownOut
    total_cost: float
    average_latency_ms: int
    started_at: datetime
    last_activity_at: datetime
    resource_limit_breached: bool


class ExecuteCallRequest(LabModel):
    model: str = Field(..., min_length=1)
    prompt: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class APIResponseOut(LabModel):
    content: str
    model: str
    provider: Provider
    tokens: TokenBreakdownOut
    cost: float
    latency_ms: int
    timestamp: datetime


class APICallRecordIn(LabModel):
    id: str = ""
    experiment_id: str = ""
    session_id: str = ""
    provider: str = Provider.openai.value
    model: str = ""
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    system_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0)
    latency_ms: int = Field(default=0, ge=0)
    timestamp: Optional[datetime] = None

    def to_entity(self) -> APICallRecord:
        return APICallRecord(
            id=self.id,
            experiment_id=self.experiment_id,
            session_id=self.session_id,
            provider=self.provider,
            model=self.model,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            system_tokens=self.system_tokens,
            cost=self.cost,
            latency_ms=self.latency_ms,
            timestamp=self.timestamp,
        )


class APICallRecordOut(LabModel):
    id: str
    experiment_id: str
    session_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    system_tokens: int
    total_tokens: int
    cost: float
    latency_ms: int
    timestamp: Optional[datetime] = None
    breakdown: Optional[CostBreakdownOut] = None


class ExecuteCallOut(LabModel):
    response: APIResponseOut
    metrics: SessionMetricsOut
    record: Optional[APICallRecordOut] = None


class SweepOut(LabModel):
    purged: int
    remaining: int


# ==========================
# 实验 / 计费 / 基线
# ==========================
class CreateExperimentRequest(LabModel):
    user_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class UpdateExperimentStatusRequest(LabModel):
    status: ExperimentStatus
    # 状态首次变为 completed 时计入用户进度
    cost_savings: float = Field(default=0.0, ge=0)


class ExperimentOut(LabModel):
    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    status: ExperimentStatus
    baseline_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ExperimentSummaryOut(LabModel):
    experiment_id: str
    call_count: int
    total_cost: float
    total_tokens: TokenBreakdownOut
    average_latency_ms: int


class CreateBaselineRequest(LabModel):
    scenario: Optional[str] = None
    calls: List[APICallRecordIn] = Field(default_factory=list)


class BaselineOut(LabModel):
    id: str
    experiment_id: str
    scenario: str
    average_cost: float
    total_tokens: int
    average_latency_ms: int
    call_count: int
    created_at: Optional[datetime] = None


# ==========================
# Token 分析
# ==========================
class AnalyzeTokensRequest(LabModel):
    calls: List[APICallRecordIn] = Field(default_factory=list)


class TokenInsightCallOut(LabModel):
    id: str
    experiment_id: str
    session_id: str
    provider: str
    model: str
    timestamp: Optional[datetime] = None
    total_tokens: int
    cost: float
    latency_ms: int
    token_breakdown: Dict[str, int]


class TokenAnalysisTotalsOut(LabModel):
    input_tokens: int
    output_tokens: int
    system_tokens: int
    total_tokens: int
    total_cost: float
    average_cost_per_call: float
    average_latency_ms: int


class TokenAnalysisDistributionOut(LabModel):
    input_percentage: float
    output_percentage: float
    system_percentage: float


class TokenAnalysisFlagsOut(LabModel):
    excessive_system_tokens: bool
    high_average_tokens: bool


class TokenAnalysisOut(LabModel):
    call_count: int
    totals: TokenAnalysisTotalsOut
    distribution: TokenAnalysisDistributionOut
    high_cost_calls: List[TokenInsightCallOut]
    high_token_calls: List[TokenInsightCallOut]
    flags: TokenAnalysisFlagsOut


class OptimizationSuggestionOut(LabModel):
    id: str
    title: str
    description: str
    strategy: str
    priority: OptimizationPriority
    estimated_token_savings: int
    estimated_cost_savings: float
    related_call_ids: List[str]


class ChartDatasetOut(LabModel):
    label: str
    data: List[float]
    background_color: Union[str, List[str], None] = None


class TokenChartOut(LabModel):
    type: str
    title: str
    labels: List[str]
    datasets: List[ChartDatasetOut]
    meta: Dict[str, Any] = Field(default_factory=dict)


class AnalyzeTokensOut(LabModel):
    analysis: TokenAnalysisOut
    suggestions: List[OptimizationSuggestionOut]
    charts: List[TokenChartOut]


class BaselineComparisonRequest(LabModel):
    baseline: TokenBreakdownIn
    optimized: TokenBreakdownIn


# ==========================
# 优化策略
# ==========================
class OptimizationContextIn(LabModel):
    experiment_id: str = ""
    session_id: str = ""
    provider: str
    model: str
    prompt: str
    parameters: Optional[Dict[str, Any]] = None

    def to_entity(self) -> OptimizationContext:
        return OptimizationContext(
            experiment_id=self.experiment_id,
            session_id=self.session_id,
            provider=self.provider,
            model=self.model,
            prompt=self.prompt,
            parameters=self.parameters,
        )


class StrategyOut(LabModel):
    name: str
    description: str
    category: StrategyCategory


class OptimizationResultOut(LabModel):
    success: bool
    optimized_prompt: Optional[str] = None
    optimized_parameters: Optional[Dict[str, Any]] = None
    estimated_token_savings: int
    estimated_cost_savings: float
    explanation: str
    applied_techniques: List[str]


class StrategyRankingOut(LabModel):
    name: str
    category: StrategyCategory
    estimated_savings: float
    priority: float


# ==========================
# 模拟与预测
# ==========================
class SimulationRequest(LabModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    requests_per_day: int = Field(..., ge=0)
    average_tokens_per_request: int = Field(..., ge=0)
    # 用 str 接收，未知模式由模拟器抛 ValueError（400）
    load_pattern: str
    peak_multiplier: float = Field(default=2.0, gt=0)
    duration_days: int = Field(..., ge=1, le=3650)
    provider: str = Provider.openai.value
    model: str = ""
    cost_per_thousand_tokens: float = Field(..., ge=0)

    def to_config(self) -> SimulationConfig:
        return SimulationConfig(
            scenario=UsageScenario(
                name=self.name,
                description=self.description,
                requests_per_day=self.requests_per_day,
                average_tokens_per_request=self.average_tokens_per_request,
                load_pattern=self.load_pattern,
                peak_multiplier=self.peak_multiplier,
                duration_days=self.duration_days,
            ),
            provider=self.provider,
            model=self.model,
            cost_per_thousand_tokens=self.cost_per_thousand_tokens,
        )


class DailySimulationOut(LabModel):
    day: int
    requests: int
    tokens: int
    cost: float
    pattern: str


class ConfidenceIntervalOut(LabModel):
    low: float
    high: float


class ProjectionBreakdownOut(LabModel):
    api_calls: float
    infrastructure: float
    maintenance: float


class CostProjectionOut(LabModel):
    period: TimePeriod
    estimated_cost: float
    confidence_interval: ConfidenceIntervalOut
    breakdown: ProjectionBreakdownOut


class SimulationResultOut(LabModel):
    scenario_name: str
    total_requests: int
    total_tokens: int
    total_cost: float
    average_cost_per_request: float
    daily_breakdown: List[DailySimulationOut]
    projections: List[CostProjectionOut]


class ProjectionOptionsIn(LabModel):
    variance_factor: float = Field(default=0.15, ge=0, le=1)
    infrastructure_ratio: float = Field(default=0.1, ge=0, le=1)
    maintenance_ratio: float = Field(default=0.05, ge=0, le=1)

    def to_entity(self) -> ProjectionOptions:
        return ProjectionOptions(
            variance_factor=self.variance_factor,
            infrastructure_ratio=self.infrastructure_ratio,
            maintenance_ratio=self.maintenance_ratio,
        )


class ProjectionRequest(LabModel):
    simulation: SimulationRequest
    periods: List[TimePeriod] = Field(default_factory=lambda: list(TimePeriod))
    options: ProjectionOptionsIn = Field(default_factory=ProjectionOptionsIn)


class ScaleRequest(LabModel):
    scales: List[int] = Field(..., min_length=1)
    requests_per_user_per_day: float = Field(..., ge=0)
    cost_per_request: float = Field(..., ge=0)


class ScaleReportRequest(LabModel):
    current_users: int = Field(..., ge=1)
    requests_per_user_per_day: float = Field(..., ge=0)
    cost_per_request: float = Field(..., ge=0)


class BreakEvenRequest(LabModel):
    fixed_costs: float = Field(..., ge=0)
    revenue_per_user: float = Field(..., ge=0)
    requests_per_user_per_day: float = Field(..., ge=0)
    cost_per_request: float = Field(..., ge=0)


class ScaleAnalysisOut(LabModel):
    user_scale: int
    requests_per_day: float
    monthly_cost: float
    cost_per_user: float
    warning: bool
    critical: bool


class ScaleProjectionOut(LabModel):
    label: str
    analysis: ScaleAnalysisOut


class ScaleReportOut(LabModel):
    current: ScaleAnalysisOut
    projections: List[ScaleProjectionOut]


class BreakEvenOut(LabModel):
    break_even_users: int


# ==========================
# API Key / 网关
# ==========================
class StoreKeyRequest(LabModel):
    user_id: str = Field(..., min_length=1)
    provider: Provider
    key: str = Field(..., repr=False)
    alias: Optional[str] = None


class RotateKeyRequest(LabModel):
    user_id: str = Field(..., min_length=1)
    key: str = Field(..., repr=False)


class APIKeyOut(LabModel):
    id: str
    user_id: str
    provider: Provider
    alias: Optional[str] = None
    is_shared: bool
    created_at: datetime
    last_used_at: Optional[datetime] = None


class ProviderMetricsOut(LabModel):
    provider: Provider
    total_requests: int
    failed_requests: int
    average_latency_ms: int
    total_cost: float
    total_tokens: TokenBreakdownOut
    success_rate: float


class GatewayMetricsOut(LabModel):
    total_requests: int
    total_failures: int
    providers: List[ProviderMetricsOut]


# ==========================
# 供应商对比
# ==========================
class ComparisonTargetIn(LabModel):
    provider: Provider
    model: str = Field(..., min_length=1)
    api_key: Optional[str] = Field(default=None, repr=False)
    api_key_id: Optional[str] = None
    use_shared_key: bool = False


class CompareProvidersRequest(LabModel):
    user_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    providers: List[ComparisonTargetIn] = Field(..., min_length=1)
    parameters: Optional[Dict[str, Any]] = None


class ProviderResultOut(LabModel):
    provider: Provider
    model: str
    response: str
    tokens: TokenBreakdownOut
    cost: float
    latency_ms: int


class ProviderRecommendationOut(LabModel):
    best_cost: ProviderResultOut
    best_latency: ProviderResultOut
    best_value: ProviderResultOut


class ProviderComparisonOut(LabModel):
    prompt: str
    results: List[ProviderResultOut]
    recommendation: ProviderRecommendationOut
    timestamp: datetime


class TCORequest(LabModel):
    provider: Provider
    model: str = Field(..., min_length=1)
    requests_per_month: int = Field(..., ge=1)
    average_cost_per_request: float = Field(..., ge=0)


class TCOOut(LabModel):
    provider: Provider
    model: str
    api_costs: float
    infrastructure_costs: float
    maintenance_costs: float
    total_cost: float
    cost_per_request: float
    projected_monthly_cost: float


class ScalePricingIn(LabModel):
    provider: Provider
    model: str = Field(..., min_length=1)
    cost_per_request: float = Field(..., ge=0)

    def to_entity(self) -> ScalePricing:
        return ScalePricing(provider=self.provider, model=self.model, cost_per_request=self.cost_per_request)


class CompareAtScaleRequest(LabModel):
    providers: List[ScalePricingIn] = Field(..., min_length=1)
    scales: List[int] = Field(..., min_length=1)


class ScaleComparisonOut(LabModel):
    scale: int
    comparisons: List[TCOOut]


# ==========================
# 学习进度
# ==========================
class UserProgressOut(LabModel):
    user_id: str
    experiments_completed: int
    total_cost_savings: float
    skill_level: int
    badges_earned: List[str]
    challenges_completed: List[str]
    last_activity: Optional[datetime] = None
    recommendations: List[str] = Field(default_factory=list)


class AwardBadgeRequest(LabModel):
    badge_id: str = Field(..., min_length=1)


class CompleteChallengeRequest(LabModel):
    challenge_id: str = Field(..., min_length=1)


class UpdateSkillLevelRequest(LabModel):
    level: int = Field(..., ge=1)
