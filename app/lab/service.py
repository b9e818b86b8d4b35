"""
实验室服务入口

LabService 是进程内状态（会话表、Key 保险箱、策略缓存、网关指标）的唯一持有者，
由 API 层以单例方式注入；依赖数据库的组件（CostTracker）按请求传入。
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx
from loguru import logger

from app.lab.cost.suggester import OptimizationSuggester, OptimizationSuggestion
from app.lab.cost.token_analyzer import TokenAnalysisResult, TokenAnalyzer
from app.lab.cost.tracker import CostTracker
from app.lab.cost.pricing import calculate_cost
from app.lab.cost.visualizer import TokenChart, TokenVisualizer
from app.lab.entities import (
    APICallRecord,
    APIResponse,
    CostBreakdown,
    ExperimentSessionSnapshot,
    ResourceLimits,
    SessionConfig,
    SessionMetrics,
    TokenBreakdown,
)
from app.lab.enums import IsolationLevel, Provider
from app.lab.errors import ExperimentNotFoundError, ProviderUnavailableError
from app.lab.experiments import ExperimentRepository
from app.lab.gateway.adapters import GatewayRequest, build_default_adapters
from app.lab.gateway.gateway import APIGateway
from app.lab.optimization.base import OptimizationContext, OptimizationResult
from app.lab.optimization.caching import CachingStrategy
from app.lab.optimization.registry import StrategyRanking, StrategyRegistry, build_default_registry
from app.lab.providers.comparison import ComparisonTarget, ProviderComparison, ProviderComparisonResult
from app.lab.sandbox.manager import SandboxManager
from app.lab.sandbox.session import ExperimentSession
from app.lab.sandbox.sweeper import SessionSweeper
from app.lab.security.api_keys import APIKeyManager
from app.lab.simulation.projector import CostProjector
from app.lab.simulation.scale import ScaleCalculator
from app.lab.simulation.simulator import UsageSimulator


@dataclass(frozen=True)
class ExecutionResult:
    response: APIResponse
    metrics: SessionMetrics
    record: Optional[APICallRecord] = None


@dataclass(frozen=True)
class AnalysisReport:
    analysis: TokenAnalysisResult
    suggestions: list[OptimizationSuggestion]
    charts: list[TokenChart]


class LabService:
    def __init__(
        self,
        *,
        sandbox: SandboxManager,
        gateway: APIGateway,
        key_manager: APIKeyManager,
        registry: Optional[StrategyRegistry] = None,
        analyzer: Optional[TokenAnalyzer] = None,
        suggester: Optional[OptimizationSuggester] = None,
        visualizer: Optional[TokenVisualizer] = None,
        simulator: Optional[UsageSimulator] = None,
        projector: Optional[CostProjector] = None,
        scale_calculator: Optional[ScaleCalculator] = None,
        comparison: Optional[ProviderComparison] = None,
    ):
        self.sandbox = sandbox
        self.gateway = gateway
        self.key_manager = key_manager
        self.registry = registry or build_default_registry()
        self.analyzer = analyzer or TokenAnalyzer()
        self.suggester = suggester or OptimizationSuggester()
        self.visualizer = visualizer or TokenVisualizer()
        self.projector = projector or CostProjector()
        self.simulator = simulator or UsageSimulator(projector=self.projector)
        self.scale_calculator = scale_calculator or ScaleCalculator()
        self.comparison = comparison or ProviderComparison(gateway)
        self.sweeper = SessionSweeper(sandbox)

    # ==========================
    # 会话
    # ==========================
    def create_session(
        self,
        user_id: str,
        provider: Provider,
        *,
        experiment_id: Optional[str] = None,
        isolation_level: IsolationLevel = IsolationLevel.user,
        api_key_id: Optional[str] = None,
        api_key: Optional[str] = None,
        use_shared_key: bool = False,
        experiments: Optional[ExperimentRepository] = None,
    ) -> ExperimentSessionSnapshot:
        if isolation_level == IsolationLevel.experiment and not experiment_id:
            raise ValueError("experiment_id is required for experiment isolation")
        # 调用记录外键指向 lab_experiments，实验必须先存在
        if experiment_id and experiments is not None and experiments.get_experiment(experiment_id) is None:
            raise ExperimentNotFoundError(experiment_id)

        config = SessionConfig(
            provider=Provider(provider),
            isolation_level=IsolationLevel(isolation_level),
            api_key_id=api_key_id,
            api_key_plaintext=api_key or None,
            use_shared_key=bool(use_shared_key),
        )
        return self.sandbox.create_session(user_id, config, experiment_id)

    def get_session_metrics(self, session_id: str) -> SessionMetrics:
        return self.sandbox.get_session_metrics(session_id)

    def terminate_session(self, session_id: str) -> None:
        self.sandbox.terminate_session(session_id)

    def sweep_sessions(self, now: Optional[datetime] = None) -> int:
        return self.sweeper.execute_sweep_cycle(now)

    # ==========================
    # 调用
    # ==========================
    async def execute_api_call(
        self,
        session_id: str,
        *,
        model: str,
        prompt: str,
        parameters: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        tracker: Optional[CostTracker] = None,
    ) -> ExecutionResult:
        """
        在沙箱内执行一次真实调用

        流程：取会话(校验存活) -> 零 Token 预检配额 -> 解析 Key -> 网关调用
        -> 按真实 Token 复检配额 -> 有实验时落库 -> 计入会话 -> 写入响应缓存。
        预检只能挡住调用次数超限；Token 超限要等响应回来才知道。
        落库失败时会话累计值保持不变。
        """
        session = self.sandbox.get_session(session_id)
        session.ensure_capacity(TokenBreakdown())

        api_key = self._resolve_api_key(session)
        request = GatewayRequest(
            provider=session.config.provider,
            model=model,
            prompt=prompt,
            api_key=api_key,
            parameters=dict(parameters or {}),
            metadata={**(metadata or {}), "sessionId": session.id},
        )
        response = await self.gateway.execute(request)
        session.ensure_capacity(response.tokens)

        record = None
        if session.experiment_id and tracker is not None:
            # 同步 SQLAlchemy 写入放到线程里，避免阻塞事件循环
            record = await asyncio.to_thread(
                tracker.record_call,
                experiment_id=session.experiment_id,
                session_id=session.id,
                provider=response.provider,
                model=response.model,
                tokens=response.tokens,
                latency_ms=response.latency_ms,
                timestamp=response.timestamp,
            )

        session.track_response(response)
        self._remember_response(session, model, prompt, parameters, response)
        return ExecutionResult(response=response, metrics=session.to_metrics(), record=record)

    def _remember_response(
        self,
        session: ExperimentSession,
        model: str,
        prompt: str,
        parameters: Optional[dict[str, Any]],
        response: APIResponse,
    ) -> None:
        caching = self.registry.get(CachingStrategy.name)
        if not isinstance(caching, CachingStrategy):
            return
        context = OptimizationContext(
            experiment_id=session.experiment_id or "",
            session_id=session.id,
            provider=session.config.provider.value,
            model=model,
            prompt=prompt,
            parameters=dict(parameters) if parameters else None,
        )
        caching.set_cache_entry(context, response.content, response.tokens.total, response.cost)

    def _resolve_api_key(self, session: ExperimentSession) -> str:
        return self._resolve_key(session.config, session.user_id, {"sessionId": session.id})

    def _resolve_key(self, config: SessionConfig, user_id: str, details: dict[str, Any]) -> str:
        if config.api_key_plaintext:
            return config.api_key_plaintext
        if config.api_key_id:
            return self.key_manager.get_key(config.api_key_id, user_id)
        if config.use_shared_key:
            shared = self.key_manager.find_shared_key(config.provider)
            if shared is not None:
                return self.key_manager.get_key(shared.id, user_id)
            raise ProviderUnavailableError("No shared key available for provider", {"provider": config.provider.value})

        logger.warning(f"[LabService] 未配置 API Key: {details}")
        raise ProviderUnavailableError("No API key configured", {**details, "provider": config.provider.value})

    # ==========================
    # 供应商对比
    # ==========================
    def comparison_target(
        self,
        user_id: str,
        provider: Provider,
        model: str,
        *,
        api_key: Optional[str] = None,
        api_key_id: Optional[str] = None,
        use_shared_key: bool = False,
    ) -> ComparisonTarget:
        """对比不走沙箱会话，Key 的解析规则与会话一致"""
        config = SessionConfig(
            provider=Provider(provider),
            api_key_id=api_key_id,
            api_key_plaintext=api_key or None,
            use_shared_key=bool(use_shared_key),
        )
        api_key = self._resolve_key(config, user_id, {"userId": user_id})
        return ComparisonTarget(provider=config.provider, model=model, api_key=api_key)

    async def compare_providers(
        self,
        prompt: str,
        targets: list[ComparisonTarget],
        parameters: Optional[dict[str, Any]] = None,
    ) -> ProviderComparisonResult:
        if not targets:
            raise ValueError("At least one provider is required")
        return await self.comparison.compare(prompt, targets, parameters)

    # ==========================
    # 分析与优化
    # ==========================
    def analyze_calls(self, calls: list[APICallRecord]) -> AnalysisReport:
        analysis = self.analyzer.analyze(calls)
        charts = [
            self.visualizer.generate_distribution(analysis),
            self.visualizer.generate_cost_breakdown(call.breakdown or _estimate_breakdown(call) for call in calls),
        ]
        return AnalysisReport(analysis=analysis, suggestions=self.suggester.suggest(analysis), charts=charts)

    def apply_strategy(self, name: str, context: OptimizationContext) -> Optional[OptimizationResult]:
        strategy = self.registry.get(name)
        if strategy is None:
            return None
        return strategy.apply(context)

    def rank_strategies(self, context: OptimizationContext) -> list[StrategyRanking]:
        return self.registry.rank_strategies(context)


def _estimate_breakdown(call: APICallRecord) -> Optional[CostBreakdown]:
    """外部传入的调用记录没有分项时按计费表补算；模型或供应商未知则跳过"""
    if not call.model:
        return None
    try:
        provider = Provider(call.provider)
    except ValueError:
        return None
    tokens = TokenBreakdown(call.input_tokens, call.output_tokens, call.system_tokens)
    return calculate_cost(provider, call.model, tokens).breakdown


def build_lab_service(
    *,
    resource_limits: Optional[ResourceLimits] = None,
    encryption_key_hex: str = "",
    shared_openai_key: Optional[str] = None,
    provider_timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LabService:
    if not encryption_key_hex:
        # Key 只存在进程内存里，临时密钥随进程失效
        logger.warning("[LabService] 未配置 LAB_ENCRYPTION_KEY，使用进程内临时密钥")
        encryption_key_hex = os.urandom(32).hex()

    return LabService(
        sandbox=SandboxManager(resource_limits),
        gateway=APIGateway(build_default_adapters(timeout=provider_timeout, transport=transport)),
        key_manager=APIKeyManager(encryption_key_hex, shared_openai_key=shared_openai_key),
    )
