"""
LLM Router
==========
Chooses which provider serves the next fix request and tracks provider health.

Routing Strategy:
    1. Providers are tried in their configured order (Groq, Gemini, OpenRouter)
    2. Providers without an API key are never selected
    3. A provider that fails repeatedly is put on cooldown for a number of selections

Health Tracking:
    - consecutive_failures counts failures since the last success
    - reaching the threshold starts a cooldown measured in get_provider() calls
    - when the cooldown expires the provider comes back one failure away from
      another cooldown
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from refiner.core.config import (
    GEMINI_API_KEY, GROQ_API_KEY, OPENROUTER_API_KEY,
    PROVIDER_COOLDOWN_THRESHOLD, PROVIDER_COOLDOWN_SKIP_COUNT,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Provider Configuration
# ---------------------------------------------------------------------------
@dataclass
class ProviderConfig:
    """Connection settings for one LLM provider."""
    name: str
    api_key: str
    base_url: str
    model: str
    max_retries: int = 2
    timeout_seconds: int = 60
    # USD per 1K tokens, used for TokenUsage.estimated_cost_usd
    cost_per_1k_tokens: float = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


def default_providers() -> List[ProviderConfig]:
    """Provider list built from the environment, in priority order."""
    return [
        ProviderConfig(
            name="groq",
            api_key=GROQ_API_KEY or "",
            base_url="https://api.groq.com/openai/v1",
            model="llama-3.3-70b-versatile",
            cost_per_1k_tokens=0.0007,
        ),
        ProviderConfig(
            name="gemini",
            api_key=GEMINI_API_KEY or "",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            model="gemini-2.0-flash",
            cost_per_1k_tokens=0.0004,
        ),
        ProviderConfig(
            name="openrouter",
            api_key=OPENROUTER_API_KEY or "",
            base_url="https://openrouter.ai/api/v1",
            model="meta-llama/llama-3.3-70b-instruct",
            max_retries=1,
            cost_per_1k_tokens=0.0006,
        ),
    ]


# ---------------------------------------------------------------------------
# Provider Health
# ---------------------------------------------------------------------------
@dataclass
class ProviderHealth:
    consecutive_failures: int = 0
    is_healthy: bool = True
    max_failures: int = PROVIDER_COOLDOWN_THRESHOLD
    cooldown_length: int = PROVIDER_COOLDOWN_SKIP_COUNT
    cooldown_remaining: int = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.max_failures and self.is_healthy:
            self.is_healthy = False
            self.cooldown_remaining = self.cooldown_length
            logger.warning(
                "Provider on cooldown after %d failures (%d selections)",
                self.consecutive_failures, self.cooldown_remaining,
            )

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def tick_cooldown(self) -> None:
        if self.cooldown_remaining <= 0:
            return
        self.cooldown_remaining -= 1
        if self.cooldown_remaining == 0:
            self.is_healthy = True
            self.consecutive_failures = max(1, self.max_failures - 1)
            logger.info("Provider cooldown expired, re-enabled")

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.is_healthy = True
        self.cooldown_remaining = 0


# ---------------------------------------------------------------------------
# LLM Router
# ---------------------------------------------------------------------------
class LLMRouter:
    """
    Routes fix requests to the best available provider.

    Usage:
        router = LLMRouter()
        provider = router.get_provider()
        # ... make request ...
        router.report_success(provider.name)   # or report_failure(provider.name)
    """

    def __init__(self, providers: Optional[List[ProviderConfig]] = None) -> None:
        candidates = providers if providers is not None else default_providers()
        self._providers: List[ProviderConfig] = [p for p in candidates if p.configured]
        self._health: Dict[str, ProviderHealth] = {p.name: ProviderHealth() for p in self._providers}
        if not self._providers:
            logger.warning("No LLM provider has an API key configured")

    @property
    def providers(self) -> List[ProviderConfig]:
        return list(self._providers)

    def get_provider(self) -> Optional[ProviderConfig]:
        """
        First healthy provider, or the first configured one when all are cooling down.

        Returns None only when no provider is configured at all.
        """
        for health in self._health.values():
            health.tick_cooldown()

        for provider in self._providers:
            if self._health[provider.name].is_healthy:
                logger.debug("Selected provider: %s", provider.name)
                return provider

        if self._providers:
            logger.warning("All providers cooling down, using %s anyway", self._providers[0].name)
            return self._providers[0]
        return None

    def get_fallback_provider(self, *exclude_names: str) -> Optional[ProviderConfig]:
        """Next healthy provider not in ``exclude_names``."""
        for provider in self._providers:
            if provider.name in exclude_names:
                continue
            if self._health[provider.name].is_healthy:
                logger.info("Falling back to %s (skipping %s)", provider.name, ", ".join(exclude_names))
                return provider
        return None

    def report_success(self, provider_name: str) -> None:
        health = self._health.get(provider_name)
        if health:
            health.record_success()

    def report_failure(self, provider_name: str) -> None:
        health = self._health.get(provider_name)
        if health:
            health.record_failure()

    def reset(self) -> None:
        for health in self._health.values():
            health.reset()

    def get_health(self, provider_name: str) -> Optional[ProviderHealth]:
        return self._health.get(provider_name)

    @property
    def provider_health_state(self) -> Dict[str, Any]:
        return {
            name: {
                "is_healthy": h.is_healthy,
                "consecutive_failures": h.consecutive_failures,
                "cooldown_remaining": h.cooldown_remaining,
            }
            for name, h in self._health.items()
        }
