"""
Provider 适配器

每个适配器负责一个供应商：拼请求体、发一次 HTTP 请求、把 usage 解析成 TokenBreakdown 并计费。
不做重试；超时由 httpx 客户端控制。
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from loguru import logger

from app.lab.cost.pricing import calculate_cost
from app.lab.entities import APIResponse, TokenBreakdown
from app.lab.enums import Provider
from app.lab.errors import ProviderExecutionError, ProviderUnavailableError
from app.lab.sandbox.session import utcnow

ERROR_BODY_LIMIT = 500


@dataclass(frozen=True)
class GatewayRequest:
    provider: Provider
    model: str
    prompt: str
    api_key: str = field(repr=False)
    parameters: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def system_prompt(self) -> Optional[str]:
        value = self.metadata.get("systemPrompt")
        if isinstance(value, str) and value.strip():
            return value
        return None


def safe_truncate(value: str, max_length: int = ERROR_BODY_LIMIT) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[:max_length]}…"


def _pick(parameters: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    return {key: parameters[key] for key in allowed if key in parameters}


class BaseProviderAdapter(ABC):
    provider: Provider
    label: str = ""
    default_base_url: str = ""
    default_model: str = ""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.model = default_model or self.default_model
        self.timeout = timeout
        self._transport = transport

    def supports(self, provider: Provider) -> bool:
        return Provider(provider) == self.provider

    async def execute(self, request: GatewayRequest) -> APIResponse:
        if not request.api_key:
            raise ProviderUnavailableError(
                f"{self.label} API key is required for execution",
                {"provider": self.provider.value},
            )

        started = time.perf_counter()
        model = request.model or self.model
        payload = await self._post(request, model)
        tokens = self.extract_tokens(payload)

        return APIResponse(
            provider=self.provider,
            model=model,
            content=self.extract_content(payload),
            tokens=tokens,
            cost=calculate_cost(self.provider, model, tokens).cost,
            latency_ms=int((time.perf_counter() - started) * 1000),
            timestamp=utcnow(),
        )

    async def _post(self, request: GatewayRequest, model: str) -> dict[str, Any]:
        url, headers, params = self.build_target(request, model)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers=headers,
                    params=params,
                    json=self.build_payload(request, model),
                )
        except httpx.HTTPError as exc:
            logger.warning(f"[{type(self).__name__}] 请求失败: provider={self.provider.value}, err={type(exc).__name__}")
            raise ProviderUnavailableError(
                f"{self.label} API is unreachable",
                {"provider": self.provider.value, "reason": type(exc).__name__},
            ) from exc

        if not response.is_success:
            raise ProviderExecutionError(
                f"{self.label} API request failed",
                {
                    "provider": self.provider.value,
                    "status": response.status_code,
                    "response": safe_truncate(response.text),
                },
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderExecutionError(
                f"{self.label} API returned invalid JSON",
                {"provider": self.provider.value, "response": safe_truncate(response.text)},
            ) from exc

    @abstractmethod
    def build_target(self, request: GatewayRequest, model: str) -> tuple[str, dict[str, str], dict[str, str]]:
        """返回 (url, headers, query params)"""

    @abstractmethod
    def build_payload(self, request: GatewayRequest, model: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def extract_tokens(self, payload: dict[str, Any]) -> TokenBreakdown:
        ...

    @abstractmethod
    def extract_content(self, payload: dict[str, Any]) -> str:
        ...


class OpenAIAdapter(BaseProviderAdapter):
    provider = Provider.openai
    label = "OpenAI"
    default_base_url = "https://api.openai.com"
    default_model = "gpt-4o-mini"
    default_system_prompt = "You are an API cost optimization lab assistant. Provide concise, actionable insights."

    allowed_params = (
        "temperature",
        "top_p",
        "n",
        "stream",
        "presence_penalty",
        "frequency_penalty",
        "logit_bias",
        "max_tokens",
        "response_format",
        "seed",
        "tools",
        "tool_choice",
        "user",
    )

    def build_target(self, request, model):
        return (
            f"{self.base_url}/v1/chat/completions",
            {"Authorization": f"Bearer {request.api_key}"},
            {},
        )

    def build_payload(self, request, model):
        messages = request.parameters.get("messages")
        if not (isinstance(messages, list) and messages):
            messages = [
                {"role": "system", "content": request.system_prompt or self.default_system_prompt},
                {"role": "user", "content": request.prompt},
            ]
        return {"model": model, "messages": messages, **_pick(request.parameters, self.allowed_params)}

    def extract_tokens(self, payload):
        usage = payload.get("usage") or {}
        return TokenBreakdown(
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            system_tokens=int(usage.get("system_tokens") or 0),
        )

    def extract_content(self, payload):
        choices = payload.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""


class AnthropicAdapter(BaseProviderAdapter):
    provider = Provider.anthropic
    label = "Anthropic"
    default_base_url = "https://api.anthropic.com"
    default_model = "claude-3-5-sonnet-20241022"
    default_max_tokens = 4096
    api_version = "2023-06-01"

    allowed_params = ("temperature", "top_p", "top_k", "stop_sequences")

    def build_target(self, request, model):
        return (
            f"{self.base_url}/v1/messages",
            {"x-api-key": request.api_key, "anthropic-version": self.api_version},
            {},
        )

    def build_payload(self, request, model):
        messages = request.parameters.get("messages")
        if not (isinstance(messages, list) and messages):
            messages = [{"role": "user", "content": request.prompt}]

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.parameters.get("max_tokens", self.default_max_tokens),
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        payload.update(_pick(request.parameters, self.allowed_params))
        return payload

    def extract_tokens(self, payload):
        usage = payload.get("usage") or {}
        return TokenBreakdown(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

    def extract_content(self, payload):
        for block in payload.get("content") or []:
            if block.get("type") == "text":
                return block.get("text") or ""
        return ""


class GoogleAIAdapter(BaseProviderAdapter):
    provider = Provider.google
    label = "Google AI"
    default_base_url = "https://generativelanguage.googleapis.com"
    default_model = "gemini-1.5-flash"

    allowed_params = ("temperature", "topP", "topK", "maxOutputTokens", "stopSequences")

    def build_target(self, request, model):
        # Key 走 query 参数，不拼进 URL 字符串，避免出现在日志里
        return (
            f"{self.base_url}/v1beta/models/{model}:generateContent",
            {},
            {"key": request.api_key},
        )

    def build_payload(self, request, model):
        contents: list[dict[str, Any]] = []
        if request.system_prompt:
            contents.append({"role": "user", "parts": [{"text": request.system_prompt}]})
            contents.append({"role": "model", "parts": [{"text": "Understood. I will follow these instructions."}]})
        contents.append({"role": "user", "parts": [{"text": request.prompt}]})

        payload: dict[str, Any] = {"contents": contents}
        generation_config = _pick(request.parameters, self.allowed_params)
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    def extract_tokens(self, payload):
        usage = payload.get("usageMetadata") or {}
        return TokenBreakdown(
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
        )

    def extract_content(self, payload):
        candidates = payload.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return parts[0].get("text", "") if parts else ""


def build_default_adapters(
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[BaseProviderAdapter]:
    return [
        OpenAIAdapter(timeout=timeout, transport=transport),
        AnthropicAdapter(timeout=timeout, transport=transport),
        GoogleAIAdapter(timeout=timeout, transport=transport),
    ]
