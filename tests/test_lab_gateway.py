from __future__ import annotations

import asyncio
import json
import unittest

import httpx

from app.lab.enums import Provider
from app.lab.errors import LabErrorKind, ProviderExecutionError, ProviderUnavailableError
from app.lab.gateway import (
    AnthropicAdapter,
    APIGateway,
    GatewayRequest,
    GoogleAIAdapter,
    OpenAIAdapter,
)
from app.lab.gateway.adapters import safe_truncate


OPENAI_PAYLOAD = {
    "choices": [{"message": {"role": "assistant", "content": "hi"}}],
    "usage": {"prompt_tokens": 750, "completion_tokens": 250},
}


class _Recorder:
    """MockTransport 的处理函数：记录请求并返回固定响应"""

    def __init__(self, status_code: int = 200, payload=None, content: bytes | None = None):
        self.status_code = status_code
        self.payload = payload
        self.content = content
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.content is not None:
            return httpx.Response(self.status_code, content=self.content)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _request(provider: Provider, model: str, **kwargs) -> GatewayRequest:
    kwargs.setdefault("api_key", "test-key")
    return GatewayRequest(provider=provider, model=model, prompt="Explain caching.", **kwargs)


class ProviderAdapterTestCase(unittest.TestCase):
    def _run_async(self, awaitable):
        return asyncio.run(awaitable)

    def test_openai_request_and_response(self) -> None:
        recorder = _Recorder(payload=OPENAI_PAYLOAD)
        adapter = OpenAIAdapter(transport=httpx.MockTransport(recorder))

        response = self._run_async(
            adapter.execute(
                _request(
                    Provider.openai,
                    "gpt-4o-mini",
                    parameters={"temperature": 0.2, "unsupported": True},
                )
            )
        )

        sent = recorder.requests[0]
        self.assertEqual(sent.url.path, "/v1/chat/completions")
        self.assertEqual(sent.headers["Authorization"], "Bearer test-key")
        body = recorder.last_body
        self.assertEqual(body["model"], "gpt-4o-mini")
        self.assertEqual(body["temperature"], 0.2)
        self.assertNotIn("unsupported", body)
        self.assertEqual([m["role"] for m in body["messages"]], ["system", "user"])

        self.assertEqual(response.provider, Provider.openai)
        self.assertEqual(response.content, "hi")
        self.assertEqual(response.tokens.input_tokens, 750)
        self.assertEqual(response.tokens.output_tokens, 250)
        self.assertAlmostEqual(response.cost, 0.2625, places=6)
        self.assertGreaterEqual(response.latency_ms, 0)

    def test_openai_uses_explicit_messages_and_system_prompt(self) -> None:
        recorder = _Recorder(payload=OPENAI_PAYLOAD)
        adapter = OpenAIAdapter(transport=httpx.MockTransport(recorder))

        self._run_async(adapter.execute(_request(Provider.openai, "gpt-4o", metadata={"systemPrompt": "Be brief."})))
        self.assertEqual(recorder.last_body["messages"][0], {"role": "system", "content": "Be brief."})

        messages = [{"role": "user", "content": "custom"}]
        self._run_async(adapter.execute(_request(Provider.openai, "gpt-4o", parameters={"messages": messages})))
        self.assertEqual(recorder.last_body["messages"], messages)

    def test_empty_model_uses_adapter_default(self) -> None:
        recorder = _Recorder(payload=OPENAI_PAYLOAD)
        adapter = OpenAIAdapter(transport=httpx.MockTransport(recorder))
        response = self._run_async(adapter.execute(_request(Provider.openai, "")))
        self.assertEqual(response.model, "gpt-4o-mini")
        self.assertEqual(recorder.last_body["model"], "gpt-4o-mini")

    def test_anthropic_request_and_response(self) -> None:
        recorder = _Recorder(
            payload={
                "content": [{"type": "text", "text": "hello"}],
                "usage": {"input_tokens": 100, "output_tokens": 50},
            }
        )
        adapter = AnthropicAdapter(transport=httpx.MockTransport(recorder))

        response = self._run_async(
            adapter.execute(
                _request(
                    Provider.anthropic,
                    "claude-3-5-sonnet",
                    metadata={"systemPrompt": "Be brief."},
                    parameters={"temperature": 0.5},
                )
            )
        )

        sent = recorder.requests[0]
        self.assertEqual(sent.url.path, "/v1/messages")
        self.assertEqual(sent.headers["x-api-key"], "test-key")
        self.assertEqual(sent.headers["anthropic-version"], "2023-06-01")
        body = recorder.last_body
        self.assertEqual(body["system"], "Be brief.")
        self.assertEqual(body["max_tokens"], 4096)
        self.assertEqual(body["temperature"], 0.5)

        self.assertEqual(response.content, "hello")
        self.assertEqual(response.tokens.total, 150)
        self.assertAlmostEqual(response.cost, 1.05, places=6)

    def test_google_request_and_response(self) -> None:
        recorder = _Recorder(
            payload={
                "candidates": [{"content": {"parts": [{"text": "bonjour"}]}}],
                "usageMetadata": {"promptTokenCount": 1000, "candidatesTokenCount": 1000},
            }
        )
        adapter = GoogleAIAdapter(transport=httpx.MockTransport(recorder))

        response = self._run_async(
            adapter.execute(
                _request(
                    Provider.google,
                    "gemini-1.5-flash",
                    metadata={"systemPrompt": "Be brief."},
                    parameters={"temperature": 0.1},
                )
            )
        )

        sent = recorder.requests[0]
        self.assertEqual(sent.url.path, "/v1beta/models/gemini-1.5-flash:generateContent")
        self.assertEqual(sent.url.params["key"], "test-key")
        body = recorder.last_body
        self.assertEqual([c["role"] for c in body["contents"]], ["user", "model", "user"])
        self.assertEqual(body["generationConfig"], {"temperature": 0.1})

        self.assertEqual(response.content, "bonjour")
        self.assertAlmostEqual(response.cost, 1.4, places=6)

    def test_missing_api_key_fails_before_request(self) -> None:
        recorder = _Recorder(payload=OPENAI_PAYLOAD)
        adapter = OpenAIAdapter(transport=httpx.MockTransport(recorder))

        with self.assertRaises(ProviderUnavailableError):
            self._run_async(adapter.execute(_request(Provider.openai, "gpt-4o", api_key="")))
        self.assertEqual(recorder.requests, [])

    def test_http_error_status_maps_to_provider_error(self) -> None:
        recorder = _Recorder(status_code=500, content=b"x" * 800)
        adapter = OpenAIAdapter(transport=httpx.MockTransport(recorder))

        with self.assertRaises(ProviderExecutionError) as ctx:
            self._run_async(adapter.execute(_request(Provider.openai, "gpt-4o")))
        self.assertEqual(ctx.exception.kind, LabErrorKind.provider_error)
        self.assertEqual(ctx.exception.details["status"], 500)
        self.assertEqual(len(ctx.exception.details["response"]), 501)

    def test_invalid_json_maps_to_provider_error(self) -> None:
        recorder = _Recorder(content=b"not json")
        adapter = AnthropicAdapter(transport=httpx.MockTransport(recorder))

        with self.assertRaises(ProviderExecutionError):
            self._run_async(adapter.execute(_request(Provider.anthropic, "claude-3-opus")))

    def test_transport_error_maps_to_unavailable(self) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = GoogleAIAdapter(transport=httpx.MockTransport(_refuse))
        with self.assertRaises(ProviderUnavailableError) as ctx:
            self._run_async(adapter.execute(_request(Provider.google, "gemini-1.5-pro")))
        self.assertEqual(ctx.exception.details["reason"], "ConnectError")

    def test_safe_truncate(self) -> None:
        self.assertEqual(safe_truncate("short"), "short")
        self.assertEqual(safe_truncate("abcdef", 3), "abc…")


class APIGatewayTestCase(unittest.TestCase):
    def _run_async(self, awaitable):
        return asyncio.run(awaitable)

    def test_routes_by_provider_and_collects_metrics(self) -> None:
        ok = _Recorder(payload=OPENAI_PAYLOAD)
        failing = _Recorder(status_code=503, payload={"error": "overloaded"})
        gateway = APIGateway(
            [
                OpenAIAdapter(transport=httpx.MockTransport(ok)),
                AnthropicAdapter(transport=httpx.MockTransport(failing)),
            ]
        )

        self._run_async(gateway.execute(_request(Provider.openai, "gpt-4o-mini")))
        self._run_async(gateway.execute(_request(Provider.openai, "gpt-4o-mini")))
        with self.assertRaises(ProviderExecutionError):
            self._run_async(gateway.execute(_request(Provider.anthropic, "claude-3-opus")))

        snapshot = gateway.get_metrics_snapshot()
        self.assertEqual(snapshot.total_requests, 3)
        self.assertEqual(snapshot.total_failures, 1)

        by_provider = {p.provider: p for p in snapshot.providers}
        self.assertEqual(set(by_provider), set(Provider))
        openai = by_provider[Provider.openai]
        self.assertEqual(openai.total_requests, 2)
        self.assertEqual(openai.success_rate, 1.0)
        self.assertAlmostEqual(openai.total_cost, 0.525, places=6)
        self.assertEqual(openai.total_tokens.total, 2000)

        anthropic = by_provider[Provider.anthropic]
        self.assertEqual(anthropic.failed_requests, 1)
        self.assertEqual(anthropic.success_rate, 0.0)
        self.assertEqual(anthropic.average_latency_ms, 0)

        self.assertEqual(by_provider[Provider.google].total_requests, 0)

    def test_unregistered_provider(self) -> None:
        gateway = APIGateway([OpenAIAdapter(transport=httpx.MockTransport(_Recorder(payload=OPENAI_PAYLOAD)))])
        with self.assertRaises(ProviderUnavailableError) as ctx:
            self._run_async(gateway.execute(_request(Provider.google, "gemini-1.5-flash")))
        self.assertEqual(ctx.exception.details, {"provider": "google"})


if __name__ == "__main__":
    unittest.main()
