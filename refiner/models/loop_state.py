"""
Loop State Models
=================
Session-scoped state owned by the CircuitBreaker and ConvergenceDetector.

CircuitBreakerState:
    is_open             - True once any trigger fires; frozen afterwards
    open_reason         - which trigger fired first
    attempt_count       - attempts recorded while closed
    error_history       - every fingerprint seen, in order
    start_time          - epoch seconds when the session's breaker started
    tokens_used         - cumulative tokens reported with attempts
    max_attempts        - copy of the configured ceiling, for reporting

ConvergenceInfo:
    error_count_history   - one error count per recorded attempt
    unique_errors_history - fingerprint set per recorded attempt
    last_improvement      - index of the last strict decrease (-1 if none)
    stagnation_count      - attempts since the last strict decrease
    trend                 - improving / stagnating / oscillating / degrading
    converged             - latest count is exactly zero
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from refiner.core.config import (
    MAX_REFINEMENT_ATTEMPTS,
    SAME_ERROR_THRESHOLD,
    OSCILLATION_WINDOW,
    REFINEMENT_TIMEOUT_SECONDS,
    REFINEMENT_DELAY_SECONDS,
    MAX_TOKEN_BUDGET,
)


class CircuitOpenReason(str, Enum):
    MAX_ATTEMPTS = "MAX_ATTEMPTS"
    SAME_ERROR = "SAME_ERROR"
    OSCILLATION = "OSCILLATION"
    TIMEOUT = "TIMEOUT"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"


class ConvergenceTrend(str, Enum):
    IMPROVING = "improving"
    STAGNATING = "stagnating"
    OSCILLATING = "oscillating"
    DEGRADING = "degrading"


class CircuitBreakerConfig(BaseModel):
    max_attempts: int = MAX_REFINEMENT_ATTEMPTS
    same_error_threshold: int = SAME_ERROR_THRESHOLD
    oscillation_detection: bool = True
    oscillation_window: int = OSCILLATION_WINDOW
    total_timeout_seconds: float = REFINEMENT_TIMEOUT_SECONDS
    cooldown_seconds: float = REFINEMENT_DELAY_SECONDS
    max_token_budget: int = MAX_TOKEN_BUDGET


class CircuitBreakerState(BaseModel):
    is_open: bool = False
    open_reason: Optional[CircuitOpenReason] = None
    attempt_count: int = 0
    error_history: List[str] = Field(default_factory=list)
    start_time: float = 0.0
    tokens_used: int = 0
    max_attempts: int = MAX_REFINEMENT_ATTEMPTS


class ConvergenceInfo(BaseModel):
    error_count_history: List[int] = Field(default_factory=list)
    unique_errors_history: List[List[str]] = Field(default_factory=list)
    last_improvement: int = -1
    stagnation_count: int = 0
    trend: ConvergenceTrend = ConvergenceTrend.STAGNATING
    converged: bool = False


class ProgressAnalysis(BaseModel):
    """Continuation decision derived from breaker + detector state."""
    should_continue: bool
    reason: str
    code: str = "progress"             # circuit_open / converged / degrading / oscillating / stagnating / progress
    recommendation: str = "continue"   # continue / stop / escalate
