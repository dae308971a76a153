"""
Cost Tracker
============
Token spend accounting consulted before every fix-oracle call.

Scopes:
    session - reset at the start of each refinement session
    total   - lifetime of the tracker (process-wide when shared)

The RefinementLoop asks ``would_exceed_limit`` with an estimate before each
oracle call and reports the actual usage with ``track_usage`` afterwards.
"""
import logging
from typing import Dict

from refiner.core.config import SESSION_TOKEN_LIMIT, TOTAL_TOKEN_LIMIT
from refiner.models.refinement import TokenUsage

logger = logging.getLogger(__name__)

SCOPES = ("session", "total")


class CostTracker:
    """Accumulates TokenUsage against per-scope token ceilings."""

    def __init__(
        self,
        session_limit: int = SESSION_TOKEN_LIMIT,
        total_limit: int = TOTAL_TOKEN_LIMIT,
    ) -> None:
        self._limits: Dict[str, int] = {"session": session_limit, "total": total_limit}
        self._usage: Dict[str, TokenUsage] = {scope: TokenUsage() for scope in SCOPES}

    def track_usage(self, usage: TokenUsage) -> None:
        for scope in SCOPES:
            self._usage[scope] = self._usage[scope].add(usage)
        logger.debug(
            "Tracked %d tokens (session=%d, total=%d)",
            usage.total_tokens,
            self._usage["session"].total_tokens,
            self._usage["total"].total_tokens,
        )

    def would_exceed_limit(self, estimated_tokens: int, scope: str = "session") -> bool:
        """True if spending ``estimated_tokens`` more would pass the scope's ceiling."""
        return self._usage[scope].total_tokens + estimated_tokens > self._limits[scope]

    def is_under_budget(self, scope: str = "session") -> bool:
        return self._usage[scope].total_tokens < self._limits[scope]

    def usage(self, scope: str = "session") -> TokenUsage:
        return self._usage[scope].model_copy()

    def reset_session(self) -> None:
        self._usage["session"] = TokenUsage()

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {
            scope: {
                "tokens": self._usage[scope].total_tokens,
                "limit": self._limits[scope],
                "cost_usd": round(self._usage[scope].estimated_cost_usd, 6),
            }
            for scope in SCOPES
        }
