"""
LLM Router & Client Tests
=========================
Provider selection, cooldown, and the httpx client driven through MockTransport.
"""
import asyncio
import json

import httpx

from refiner.llm.client import LLMClient, extract_json_object
from refiner.llm.router import LLMRouter, ProviderConfig, ProviderHealth


def _provider(name, api_key="key", max_retries=2, cost=0.0):
    return ProviderConfig(
        name=name,
        api_key=api_key,
        base_url=f"https://{name}.test/v1",
        model=f"{name}-model",
        max_retries=max_retries,
        cost_per_1k_tokens=cost,
    )


def _openai_body(text, prompt=10, completion=20):
    return {
        "choices": [{"message": {"content": text}}],
        "usage": {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion},
    }


def _make_client(handler):
    """LLMClient whose HTTP traffic goes to ``handler``; returns (client, seen_requests)."""
    seen = []

    def recording(request):
        seen.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return LLMClient(http=http), seen


# ===========================================================================
# Router
# ===========================================================================
class TestRouter:

    def test_unconfigured_providers_skipped(self):
        router = LLMRouter([_provider("groq", api_key=""), _provider("gemini")])
        assert [p.name for p in router.providers] == ["gemini"]
        assert router.get_provider().name == "gemini"

    def test_no_providers(self):
        router = LLMRouter([_provider("groq", api_key="")])
        assert router.get_provider() is None

    def test_cooldown_and_recovery(self):
        router = LLMRouter([_provider("groq"), _provider("gemini")])
        for _ in range(4):
            router.report_failure("groq")
        assert not router.get_health("groq").is_healthy

        picks = [router.get_provider().name for _ in range(5)]
        assert picks == ["gemini", "gemini", "gemini", "gemini", "groq"]
        # back on probation: one more failure restarts the cooldown
        assert router.get_health("groq").consecutive_failures == 3
        router.report_failure("groq")
        assert not router.get_health("groq").is_healthy

    def test_all_cooling_down_uses_first(self):
        router = LLMRouter([_provider("groq"), _provider("gemini")])
        for name in ("groq", "gemini"):
            for _ in range(4):
                router.report_failure(name)
        assert router.get_provider().name == "groq"

    def test_success_resets_failures(self):
        router = LLMRouter([_provider("groq")])
        router.report_failure("groq")
        router.report_success("groq")
        assert router.provider_health_state["groq"]["consecutive_failures"] == 0

    def test_fallback_excludes_tried(self):
        router = LLMRouter([_provider("groq"), _provider("gemini"), _provider("openrouter")])
        assert router.get_fallback_provider("groq").name == "gemini"
        assert router.get_fallback_provider("groq", "gemini").name == "openrouter"
        assert router.get_fallback_provider("groq", "gemini", "openrouter") is None

    def test_health_reset(self):
        health = ProviderHealth(max_failures=1, cooldown_length=3)
        health.record_failure()
        assert health.cooldown_remaining == 3
        health.reset()
        assert health.is_healthy and health.cooldown_remaining == 0


# ===========================================================================
# JSON extraction
# ===========================================================================
def test_extract_json_object():
    assert extract_json_object('{"a": 1}') == {"a": 1}
    assert extract_json_object('```json\n{"a": 2}\n```') == {"a": 2}
    assert extract_json_object('sure: {"a": 3} done') == {"a": 3}
    assert extract_json_object("[1, 2]") is None
    assert extract_json_object("") is None


# ===========================================================================
# Client
# ===========================================================================
class TestClient:

    def test_openai_compatible_call(self):
        client, seen = _make_client(lambda request: httpx.Response(200, json=_openai_body("hello")))
        response = asyncio.run(client.call("user", "system", _provider("groq", cost=1.0), temperature=0.4))

        assert response.success
        assert response.text == "hello"
        assert response.token_usage.total_tokens == 30
        assert response.token_usage.estimated_cost_usd == 0.03

        request = seen[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer key"
        body = json.loads(request.content)
        assert body["messages"][0] == {"role": "system", "content": "system"}
        assert body["temperature"] == 0.4

    def test_gemini_call(self):
        body = {
            "candidates": [{"content": {"parts": [{"text": "{\"fixes\": []}"}]}}],
            "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 3, "totalTokenCount": 10},
        }
        client, seen = _make_client(lambda request: httpx.Response(200, json=body))
        response = asyncio.run(client.call("user", "system", _provider("gemini")))

        assert response.text == '{"fixes": []}'
        assert response.token_usage.prompt_tokens == 7
        assert response.token_usage.total_tokens == 10
        assert seen[0].url.path == "/v1/models/gemini-model:generateContent"
        assert seen[0].url.params["key"] == "key"

    def test_retries_then_fails(self):
        client, seen = _make_client(lambda request: httpx.Response(500))
        response = asyncio.run(client.call("u", "s", _provider("groq", max_retries=2)))

        assert not response.success
        assert response.error == "groq: HTTP 500"
        assert len(seen) == 2

    def test_rate_limit_skips_retries(self):
        client, seen = _make_client(lambda request: httpx.Response(429))
        response = asyncio.run(client.call("u", "s", _provider("groq", max_retries=3)))
        assert response.error == "groq: HTTP 429"
        assert len(seen) == 1

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client, seen = _make_client(handler)
        response = asyncio.run(client.call("u", "s", _provider("groq")))
        assert response.error == "groq: timeout"
        assert len(seen) == 2

    def test_empty_reply_is_an_error(self):
        client, _ = _make_client(lambda request: httpx.Response(200, json=_openai_body("   ")))
        response = asyncio.run(client.call("u", "s", _provider("groq", max_retries=1)))
        assert response.error == "groq: empty response"


class TestCallWithFallback:

    def test_falls_back_to_next_provider(self):
        def handler(request):
            if request.url.host == "groq.test":
                return httpx.Response(503)
            return httpx.Response(200, json=_openai_body("from openrouter"))

        client, _ = _make_client(handler)
        router = LLMRouter([_provider("groq", max_retries=1), _provider("openrouter")])
        response = asyncio.run(client.call_with_fallback("u", "s", router))

        assert response.success
        assert response.provider_name == "openrouter"
        assert router.get_health("groq").consecutive_failures == 1
        assert router.get_health("openrouter").consecutive_failures == 0

    def test_all_providers_fail(self):
        client, _ = _make_client(lambda request: httpx.Response(500))
        router = LLMRouter([_provider("groq", max_retries=1), _provider("openrouter", max_retries=1)])
        response = asyncio.run(client.call_with_fallback("u", "s", router))

        assert not response.success
        assert response.error == "All providers failed: groq: HTTP 500; openrouter: HTTP 500"

    def test_no_provider_configured(self):
        client, seen = _make_client(lambda request: httpx.Response(200))
        response = asyncio.run(client.call_with_fallback("u", "s", LLMRouter([])))
        assert response.error == "No LLM provider configured"
        assert seen == []

    def test_close_releases_http_client(self):
        client, _ = _make_client(lambda request: httpx.Response(200))
        asyncio.run(client.close())
        assert client._http is None
