"""
Refinement Models
=================
Pydantic models for one bounded repair session.

Fix oracle contract:
    FixResponse    - fixes[] + reasoning + token usage for one oracle call
    CodeFix        - exact-match anchor (original_code), replacement (fixed_code),
                     location hint, confidence in [0, 1]

Session lifecycle:
    RefinementSession is created at the start of one repair run, receives one
    RefinementAttempt per iteration, and gets exactly one final_status when the
    loop exits. best_code always holds the furthest-progressed code.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from refiner.core.config import REFINEMENT_DELAY_SECONDS
from refiner.core.constants import (
    MIN_VIABLE_FIX_CONFIDENCE,
    VERIFICATION_CONFIDENCE,
    MAX_CONSECUTIVE_SKIPS,
)
from .error_info import ErrorInfo
from .lesson import Lesson
from .loop_state import CircuitBreakerConfig, CircuitBreakerState, ConvergenceInfo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0

    def add(self, other: "TokenUsage") -> "TokenUsage":
        """Return a new TokenUsage holding the sum of both."""
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated_cost_usd=self.estimated_cost_usd + other.estimated_cost_usd,
        )


class FixType(str, Enum):
    SELECTOR_CHANGE = "SELECTOR_CHANGE"
    WAIT_ADDED = "WAIT_ADDED"
    ASSERTION_MODIFIED = "ASSERTION_MODIFIED"
    LOCATOR_STRATEGY_CHANGED = "LOCATOR_STRATEGY_CHANGED"
    FRAME_CONTEXT_ADDED = "FRAME_CONTEXT_ADDED"
    TIMEOUT_INCREASED = "TIMEOUT_INCREASED"
    RETRY_ADDED = "RETRY_ADDED"
    FLOW_REORDERED = "FLOW_REORDERED"
    ERROR_HANDLING_ADDED = "ERROR_HANDLING_ADDED"
    OTHER = "OTHER"


class FixLocation(BaseModel):
    file: str = ""
    line: Optional[int] = None
    step_description: Optional[str] = None


class CodeFix(BaseModel):
    type: FixType = FixType.OTHER
    description: str = ""
    original_code: str
    fixed_code: str
    location: FixLocation = Field(default_factory=FixLocation)
    confidence: float = 0.0
    reasoning: str = ""


class FixResponse(BaseModel):
    fixes: List[CodeFix] = Field(default_factory=list)
    reasoning: str = ""
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class FixGenerationOptions(BaseModel):
    max_tokens: int = 4096
    temperature: float = 0.2
    system_prompt: str = ""


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    SKIPPED = "skipped"


class RefinementStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    MAX_ATTEMPTS_REACHED = "MAX_ATTEMPTS_REACHED"
    SAME_ERROR_LOOP = "SAME_ERROR_LOOP"
    OSCILLATION_DETECTED = "OSCILLATION_DETECTED"
    TIMEOUT = "TIMEOUT"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    CANNOT_FIX = "CANNOT_FIX"


class RefinementAttempt(BaseModel):
    attempt_number: int
    timestamp: datetime = Field(default_factory=_utcnow)
    errors: List[ErrorInfo] = Field(default_factory=list)
    proposed_fixes: List[CodeFix] = Field(default_factory=list)
    applied_fix: Optional[CodeFix] = None
    outcome: AttemptOutcome = AttemptOutcome.FAILURE
    new_errors: List[ErrorInfo] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    failure_reason: str = ""


class RefinementConfig(BaseModel):
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    min_fix_confidence: float = MIN_VIABLE_FIX_CONFIDENCE
    verification_confidence: float = VERIFICATION_CONFIDENCE
    max_consecutive_skips: int = MAX_CONSECUTIVE_SKIPS
    delay_seconds: float = REFINEMENT_DELAY_SECONDS
    max_tokens_per_fix: int = 4096
    temperature: float = 0.2
    learn_lessons: bool = True


class RefinementSession(BaseModel):
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    journey_id: str
    test_file: str
    original_code: str
    current_code: str
    best_code: str
    best_error_count: int = 0
    attempts: List[RefinementAttempt] = Field(default_factory=list)
    circuit_breaker_state: CircuitBreakerState = Field(default_factory=CircuitBreakerState)
    convergence_info: ConvergenceInfo = Field(default_factory=ConvergenceInfo)
    total_token_usage: TokenUsage = Field(default_factory=TokenUsage)
    final_status: Optional[RefinementStatus] = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None


class RefinementDiagnostics(BaseModel):
    attempts: int = 0
    last_error: Optional[str] = None
    convergence_failure: bool = False
    same_error_repeated: bool = False
    oscillation_detected: bool = False
    budget_exhausted: bool = False
    timed_out: bool = False


class RefinementResult(BaseModel):
    success: bool
    status: RefinementStatus
    session: RefinementSession
    fixed_code: Optional[str] = None
    best_code: str
    remaining_errors: List[ErrorInfo] = Field(default_factory=list)
    applied_fixes: List[CodeFix] = Field(default_factory=list)
    lessons_learned: List[Lesson] = Field(default_factory=list)
    diagnostics: RefinementDiagnostics = Field(default_factory=RefinementDiagnostics)


class RefinementProgress(BaseModel):
    """Snapshot handed to the on_progress callback before each attempt."""
    session_id: str
    journey_id: str
    attempt_number: int
    max_attempts: int
    error_count: int
    best_error_count: int
    trend: str
    message: str = ""
