from app.lab.gateway.adapters import (
    AnthropicAdapter,
    BaseProviderAdapter,
    GatewayRequest,
    GoogleAIAdapter,
    OpenAIAdapter,
    build_default_adapters,
)
from app.lab.gateway.gateway import APIGateway, GatewayMetricsCollector, GatewayMetricsSnapshot

__all__ = [
    "APIGateway",
    "AnthropicAdapter",
    "BaseProviderAdapter",
    "GatewayMetricsCollector",
    "GatewayMetricsSnapshot",
    "GatewayRequest",
    "GoogleAIAdapter",
    "OpenAIAdapter",
    "build_default_adapters",
]
