"""
Circuit Breaker
===============
Per-session safety valve that decides when repair attempts must stop.

States:
    Closed - attempts allowed
    Open   - terminal; carries the reason of the FIRST trigger that fired

Triggers (evaluated in this order after every recorded attempt):
    1. attempt_count >= max_attempts                         → MAX_ATTEMPTS
    2. one fingerprint seen >= same_error_threshold times     → SAME_ERROR
    3. last N fingerprints alternate strictly between 2 values → OSCILLATION
    4. elapsed wall-clock >= total timeout                    → TIMEOUT
    5. tokens_used >= token budget                            → BUDGET_EXCEEDED

Contract:
    - Pure and non-suspending; never raises.
    - Once open, state is frozen: further record_attempt calls are no-ops.
    - can_attempt() re-checks the timeout so a stalled external call is
      still caught between recorded attempts.
"""
import time
import logging
from collections import Counter
from typing import Callable, Iterable, List, Optional

from refiner.models.error_info import ErrorInfo
from refiner.models.loop_state import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitOpenReason,
)

logger = logging.getLogger(__name__)


def is_oscillating(history: List[str], window: int) -> bool:
    """
    True when the last ``window`` fingerprints hold exactly two distinct values
    in strict alternation (A, B, A, B ...).
    """
    if window < 2 or len(history) < window:
        return False
    recent = history[-window:]
    if len(set(recent)) != 2:
        return False
    return all(recent[i] == recent[i - 2] for i in range(2, len(recent))) and recent[0] != recent[1]


class CircuitBreaker:
    """
    Safety valve for one refinement session.

    Parameters
    ----------
    config : CircuitBreakerConfig or None
        Thresholds (defaults from refiner.core.config).
    initial_state : CircuitBreakerState or None
        Prior state to resume from; its start_time and history are kept so
        past attempts are not re-counted.
    clock : callable
        Seconds-since-epoch source (injectable for tests).
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        initial_state: Optional[CircuitBreakerState] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        if initial_state is not None:
            self._state = initial_state.model_copy(deep=True)
            self._state.max_attempts = self.config.max_attempts
        else:
            self._state = self._fresh_state()

    def _fresh_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(start_time=self._clock(), max_attempts=self.config.max_attempts)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def is_open(self) -> bool:
        return self._state.is_open

    @property
    def open_reason(self) -> Optional[CircuitOpenReason]:
        return self._state.open_reason

    def can_attempt(self) -> bool:
        """Closed and not timed out (re-checks the clock)."""
        if self._state.is_open:
            return False
        if self._timed_out():
            self._open(CircuitOpenReason.TIMEOUT)
            return False
        return True

    def remaining_attempts(self) -> int:
        return max(0, self.config.max_attempts - self._state.attempt_count)

    def remaining_token_budget(self) -> int:
        return max(0, self.config.max_token_budget - self._state.tokens_used)

    def would_exceed_budget(self, estimated_tokens: int) -> bool:
        return self._state.tokens_used + estimated_tokens > self.config.max_token_budget

    def get_state(self) -> CircuitBreakerState:
        """Snapshot copy; mutating it does not affect the breaker."""
        return self._state.model_copy(deep=True)

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    def record_attempt(self, errors: Iterable[ErrorInfo], token_usage: int = 0) -> CircuitBreakerState:
        """
        Record one attempt's errors and token spend, then evaluate triggers.

        Parameters
        ----------
        errors : iterable of ErrorInfo
            Errors observed after the attempt.
        token_usage : int
            Tokens consumed by the attempt.

        Returns
        -------
        CircuitBreakerState
            Snapshot after evaluation.
        """
        if self._state.is_open:
            return self.get_state()

        self._state.attempt_count += 1
        self._state.error_history.extend(e.fingerprint for e in errors)
        self._state.tokens_used += max(0, int(token_usage))

        reason = self._first_trigger()
        if reason is not None:
            self._open(reason)
        return self.get_state()

    def trip(self, reason: CircuitOpenReason) -> None:
        """Force the breaker open (no-op when already open)."""
        if not self._state.is_open:
            self._open(reason)

    def reset(self) -> None:
        self._state = self._fresh_state()

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _first_trigger(self) -> Optional[CircuitOpenReason]:
        cfg = self.config
        state = self._state

        if state.attempt_count >= cfg.max_attempts:
            return CircuitOpenReason.MAX_ATTEMPTS

        if state.error_history:
            most_common = Counter(state.error_history).most_common(1)[0][1]
            if most_common >= cfg.same_error_threshold:
                return CircuitOpenReason.SAME_ERROR

        if cfg.oscillation_detection and is_oscillating(state.error_history, cfg.oscillation_window):
            return CircuitOpenReason.OSCILLATION

        if self._timed_out():
            return CircuitOpenReason.TIMEOUT

        if state.tokens_used >= cfg.max_token_budget:
            return CircuitOpenReason.BUDGET_EXCEEDED

        return None

    def _timed_out(self) -> bool:
        return (self._clock() - self._state.start_time) >= self.config.total_timeout_seconds

    def _open(self, reason: CircuitOpenReason) -> None:
        self._state.is_open = True
        self._state.open_reason = reason
        logger.warning(
            "Circuit breaker OPEN | reason=%s | attempts=%d | tokens=%d",
            reason.value, self._state.attempt_count, self._state.tokens_used,
        )
