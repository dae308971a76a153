"""
LLM Client
==========
Asynchronous httpx wrapper around the fix oracle's LLM providers.

Provider Protocols:
    - gemini      → Google generateContent REST API
    - everything else → OpenAI-compatible /chat/completions (Groq, OpenRouter)

Retry & Fallback:
    - Each provider gets up to max_retries attempts
    - HTTP 429 skips the remaining retries and moves to the next provider
    - call_with_fallback() walks the router's healthy providers in order and
      reports success / failure back so unhealthy providers cool down

Token Accounting:
    - Both protocols report usage; it is copied into a TokenUsage so the
      refinement loop and cost tracker see real spend per call
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from refiner.llm.router import LLMRouter, ProviderConfig
from refiner.models.refinement import TokenUsage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# LLM Response
# ---------------------------------------------------------------------------
@dataclass
class LLMResponse:
    """Raw completion from one provider call."""
    text: str
    provider_name: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    success: bool = True
    error: str = ""


# ---------------------------------------------------------------------------
# JSON Extraction
# ---------------------------------------------------------------------------
_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL)


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """
    Pull one JSON object out of a model reply.

    Accepts a bare object, an object inside a ```json fence, or an object
    embedded in surrounding prose (first "{" to last "}"). Returns None when
    nothing parses to a dict.
    """
    if not raw or not raw.strip():
        return None

    cleaned = raw.strip()
    fenced = _FENCE_RE.search(cleaned)
    candidates = [fenced.group(1).strip()] if fenced else []
    candidates.append(cleaned)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(data, dict):
            return data
    return None


def _usage_from_counts(prompt: int, completion: int, total: int, provider: ProviderConfig) -> TokenUsage:
    total = total or (prompt + completion)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        estimated_cost_usd=round(total / 1000 * provider.cost_per_1k_tokens, 6),
    )


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------
class LLMClient:
    """
    Async HTTP client for calling LLM providers.

    Usage:
        client = LLMClient()
        response = await client.call_with_fallback(user_prompt, system_prompt, router)
        await client.close()
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None) -> None:
        self._http = http

    async def _get_http(self, timeout: float) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    async def call(
        self,
        user_prompt: str,
        system_prompt: str,
        provider: ProviderConfig,
        max_tokens: int = 4096,
        temperature: float = 0.2,
    ) -> LLMResponse:
        """
        Send one prompt to one provider, retrying transient failures.

        Parameters
        ----------
        user_prompt : str
            Prompt with the code, errors and attempt history.
        system_prompt : str
            Fix contract and rules.
        provider : ProviderConfig
            Target provider.
        max_tokens : int
            Completion ceiling.
        temperature : float
            Sampling temperature.

        Returns
        -------
        LLMResponse
            success=False with ``error`` set once retries are exhausted.
        """
        last_error = ""
        for attempt in range(1, provider.max_retries + 1):
            try:
                if provider.name == "gemini":
                    response = await self._call_gemini(
                        user_prompt, system_prompt, provider, max_tokens, temperature,
                    )
                else:
                    response = await self._call_openai_compatible(
                        user_prompt, system_prompt, provider, max_tokens, temperature,
                    )
                if response.text.strip():
                    return response
                last_error = "empty response"
                logger.warning("Provider %s attempt %d: empty response", provider.name, attempt)

            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning("Provider %s attempt %d: timeout", provider.name, attempt)
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                last_error = f"HTTP {status}"
                logger.warning("Provider %s attempt %d: HTTP %d", provider.name, attempt, status)
                if status == 429:
                    break
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning("Provider %s attempt %d: %s", provider.name, attempt, last_error)

        return LLMResponse(
            text="",
            provider_name=provider.name,
            success=False,
            error=f"{provider.name}: {last_error or 'retries exhausted'}",
        )

    async def _call_gemini(
        self,
        user_prompt: str,
        system_prompt: str,
        provider: ProviderConfig,
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        http = await self._get_http(provider.timeout_seconds)
        url = f"{provider.base_url}/models/{provider.model}:generateContent"
        payload = {
            "system_instruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"parts": [{"text": user_prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
                "responseMimeType": "application/json",
            },
        }
        resp = await http.post(url, json=payload, params={"key": provider.api_key})
        resp.raise_for_status()
        data = resp.json()

        text = ""
        candidates = data.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            text = "".join(p.get("text", "") for p in parts)

        meta = data.get("usageMetadata") or {}
        usage = _usage_from_counts(
            int(meta.get("promptTokenCount", 0)),
            int(meta.get("candidatesTokenCount", 0)),
            int(meta.get("totalTokenCount", 0)),
            provider,
        )
        return LLMResponse(text=text, provider_name=provider.name, token_usage=usage)

    async def _call_openai_compatible(
        self,
        user_prompt: str,
        system_prompt: str,
        provider: ProviderConfig,
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        http = await self._get_http(provider.timeout_seconds)
        url = f"{provider.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {provider.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": provider.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        resp = await http.post(url, json=payload, headers=headers)
        resp.raise_for_status()
        data = resp.json()

        text = ""
        choices = data.get("choices") or []
        if choices:
            text = (choices[0].get("message") or {}).get("content") or ""

        raw_usage = data.get("usage") or {}
        usage = _usage_from_counts(
            int(raw_usage.get("prompt_tokens", 0)),
            int(raw_usage.get("completion_tokens", 0)),
            int(raw_usage.get("total_tokens", 0)),
            provider,
        )
        return LLMResponse(text=text, provider_name=provider.name, token_usage=usage)

    async def call_with_fallback(
        self,
        user_prompt: str,
        system_prompt: str,
        router: LLMRouter,
        max_tokens: int = 4096,
        temperature: float = 0.2,
    ) -> LLMResponse:
        """
        Call the router's preferred provider, falling back through the healthy ones.

        Returns
        -------
        LLMResponse
            The first successful response, or a failure naming every provider tried.
        """
        primary = router.get_provider()
        if primary is None:
            return LLMResponse(text="", provider_name="", success=False, error="No LLM provider configured")

        tried = []
        provider: Optional[ProviderConfig] = primary
        errors = []
        while provider is not None:
            tried.append(provider.name)
            response = await self.call(user_prompt, system_prompt, provider, max_tokens, temperature)
            if response.success:
                router.report_success(provider.name)
                return response
            router.report_failure(provider.name)
            errors.append(response.error)
            provider = router.get_fallback_provider(*tried)

        return LLMResponse(
            text="",
            provider_name=primary.name,
            success=False,
            error="All providers failed: " + "; ".join(errors),
        )
