from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from loguru import logger

from app.lab.entities import APIResponse, TokenBreakdown
from app.lab.enums import Provider
from app.lab.errors import ProviderUnavailableError
from app.lab.gateway.adapters import BaseProviderAdapter, GatewayRequest
from app.lab.rounding import round_half_up


@dataclass
class _ProviderMetricState:
    total_requests: int = 0
    failed_requests: int = 0
    total_latency_ms: int = 0
    total_cost: float = 0.0
    total_tokens: TokenBreakdown = field(default_factory=TokenBreakdown)


@dataclass(frozen=True)
class ProviderMetricsSnapshot:
    provider: Provider
    total_requests: int
    failed_requests: int
    average_latency_ms: int
    total_cost: float
    total_tokens: TokenBreakdown
    success_rate: float


@dataclass(frozen=True)
class GatewayMetricsSnapshot:
    total_requests: int
    total_failures: int
    providers: list[ProviderMetricsSnapshot]


class GatewayMetricsCollector:
    def __init__(self) -> None:
        self._state: dict[Provider, _ProviderMetricState] = {}

    def record_success(self, provider: Provider, response: APIResponse) -> None:
        metric = self._ensure(provider)
        metric.total_requests += 1
        metric.total_latency_ms += response.latency_ms
        metric.total_cost += response.cost
        metric.total_tokens = metric.total_tokens + response.tokens

    def record_failure(self, provider: Provider) -> None:
        metric = self._ensure(provider)
        metric.total_requests += 1
        metric.failed_requests += 1

    def snapshot(self) -> GatewayMetricsSnapshot:
        providers = []
        for provider in Provider:
            metric = self._state.get(provider) or _ProviderMetricState()
            successful = metric.total_requests - metric.failed_requests
            providers.append(
                ProviderMetricsSnapshot(
                    provider=provider,
                    total_requests=metric.total_requests,
                    failed_requests=metric.failed_requests,
                    average_latency_ms=round_half_up(metric.total_latency_ms / successful) if successful else 0,
                    total_cost=round(metric.total_cost, 6),
                    total_tokens=metric.total_tokens,
                    success_rate=round(successful / metric.total_requests, 4) if metric.total_requests else 0.0,
                )
            )
        return GatewayMetricsSnapshot(
            total_requests=sum(p.total_requests for p in providers),
            total_failures=sum(p.failed_requests for p in providers),
            providers=providers,
        )

    def _ensure(self, provider: Provider) -> _ProviderMetricState:
        return self._state.setdefault(Provider(provider), _ProviderMetricState())


class APIGateway:
    """
    统一的 Provider 调用入口

    按 provider 选择适配器；每次调用带一个 correlation id 打日志，并记录成功/失败指标。
    失败原样抛出，不重试。
    """

    def __init__(
        self,
        adapters: Optional[Iterable[BaseProviderAdapter]] = None,
        metrics: Optional[GatewayMetricsCollector] = None,
    ):
        self._adapters: dict[Provider, BaseProviderAdapter] = {}
        self._metrics = metrics or GatewayMetricsCollector()
        for adapter in adapters or []:
            self.register_adapter(adapter)

    def register_adapter(self, adapter: BaseProviderAdapter) -> None:
        for provider in Provider:
            if adapter.supports(provider):
                self._adapters[provider] = adapter

    async def execute(self, request: GatewayRequest) -> APIResponse:
        provider = Provider(request.provider)
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderUnavailableError(
                "No adapter registered for provider",
                {"provider": provider.value},
            )

        correlation_id = str(uuid.uuid4())
        logger.debug(
            f"[LabGateway][request] id={correlation_id}, provider={provider.value}, "
            f"model={request.model}, session={request.metadata.get('sessionId')}"
        )

        try:
            response = await adapter.execute(request)
        except Exception as exc:
            self._metrics.record_failure(provider)
            logger.warning(
                f"[LabGateway][error] id={correlation_id}, provider={provider.value}, "
                f"model={request.model}, err={exc}"
            )
            raise

        self._metrics.record_success(provider, response)
        logger.debug(
            f"[LabGateway][response] id={correlation_id}, provider={provider.value}, model={response.model}, "
            f"latency_ms={response.latency_ms}, cost={response.cost}, tokens={response.tokens.total}"
        )
        return response

    def get_metrics_snapshot(self) -> GatewayMetricsSnapshot:
        return self._metrics.snapshot()
