"""
Convergence Detector
====================
Tracks the trend of error counts and fingerprint sets across attempts.

Stagnation:
    After each recorded attempt (from the second on), a strict decrease in the
    error count records the improvement index and resets the stagnation
    counter; anything else increments it.

Trend (over the most recent counts):
    1. fewer than 2 counts                                → stagnating
    2. signs of the last 3 deltas strictly alternate      → oscillating
    3. last 3 counts equal, or stagnation_count >= 2      → stagnating
    4. last 3 counts non-increasing                       → improving
    5. last 3 counts non-decreasing                       → degrading
    6. otherwise                                          → stagnating

Also hosts the continuation decision that combines breaker + detector, and the
mapping from that decision to a terminal RefinementStatus.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from refiner.models.error_info import ErrorInfo
from refiner.models.loop_state import (
    CircuitBreakerState,
    CircuitOpenReason,
    ConvergenceInfo,
    ConvergenceTrend,
    ProgressAnalysis,
)
from refiner.models.refinement import RefinementStatus

logger = logging.getLogger(__name__)

_TREND_WINDOW = 3
_OSCILLATION_WINDOW = 4
_STAGNATION_LIMIT = 2


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


class ConvergenceDetector:
    """Per-session record of error counts and fingerprint sets."""

    def __init__(self) -> None:
        self._counts: List[int] = []
        self._fingerprints: List[Set[str]] = []
        self._last_improvement: int = -1
        self._stagnation_count: int = 0

    # -------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------
    def record_attempt(self, errors: Iterable[ErrorInfo]) -> None:
        errors = list(errors)
        self._counts.append(len(errors))
        self._fingerprints.append({e.fingerprint for e in errors})

        if len(self._counts) >= 2:
            if self._counts[-1] < self._counts[-2]:
                self._last_improvement = len(self._counts) - 1
                self._stagnation_count = 0
            else:
                self._stagnation_count += 1

    def restore_from_history(self, counts: List[int]) -> None:
        """Rebuild counters from a list of prior error counts (fingerprints unknown)."""
        self.reset()
        for count in counts:
            self._counts.append(count)
            self._fingerprints.append(set())
            if len(self._counts) >= 2:
                if self._counts[-1] < self._counts[-2]:
                    self._last_improvement = len(self._counts) - 1
                    self._stagnation_count = 0
                else:
                    self._stagnation_count += 1

    def reset(self) -> None:
        self._counts = []
        self._fingerprints = []
        self._last_improvement = -1
        self._stagnation_count = 0

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def stagnation_count(self) -> int:
        return self._stagnation_count

    def is_converged(self) -> bool:
        return bool(self._counts) and self._counts[-1] == 0

    def is_oscillating(self) -> bool:
        if len(self._counts) < _OSCILLATION_WINDOW:
            return False
        recent = self._counts[-_OSCILLATION_WINDOW:]
        deltas = [_sign(recent[i] - recent[i - 1]) for i in range(1, len(recent))]
        if deltas[0] == 0:
            return False
        return all(deltas[i] == -deltas[i - 1] for i in range(1, len(deltas)))

    def detect_trend(self) -> ConvergenceTrend:
        if len(self._counts) < 2:
            return ConvergenceTrend.STAGNATING
        if self.is_oscillating():
            return ConvergenceTrend.OSCILLATING

        recent = self._counts[-_TREND_WINDOW:]
        pairs = list(zip(recent, recent[1:]))
        if all(v == recent[0] for v in recent) or self._stagnation_count >= _STAGNATION_LIMIT:
            return ConvergenceTrend.STAGNATING
        if all(b <= a for a, b in pairs):
            return ConvergenceTrend.IMPROVING
        if all(b >= a for a, b in pairs):
            return ConvergenceTrend.DEGRADING
        return ConvergenceTrend.STAGNATING

    def get_improvement_percentage(self) -> int:
        """Reduction from the first recorded count to the latest, in percent."""
        if len(self._counts) < 2:
            return 0
        first, last = self._counts[0], self._counts[-1]
        if first == 0:
            return 100 if last == 0 else 0
        return round((first - last) / first * 100)

    def get_new_errors(self) -> Set[str]:
        """Fingerprints present in the latest attempt but not the one before."""
        if not self._fingerprints:
            return set()
        if len(self._fingerprints) < 2:
            return set(self._fingerprints[0])
        return self._fingerprints[-1] - self._fingerprints[-2]

    def get_fixed_errors(self) -> Set[str]:
        """Fingerprints present before the latest attempt but gone after it."""
        if len(self._fingerprints) < 2:
            return set()
        return self._fingerprints[-2] - self._fingerprints[-1]

    def get_info(self) -> ConvergenceInfo:
        return ConvergenceInfo(
            error_count_history=list(self._counts),
            unique_errors_history=[sorted(s) for s in self._fingerprints],
            last_improvement=self._last_improvement,
            stagnation_count=self._stagnation_count,
            trend=self.detect_trend(),
            converged=self.is_converged(),
        )


# ---------------------------------------------------------------------------
# Continuation Decision
# ---------------------------------------------------------------------------
def analyze_refinement_progress(breaker, detector: ConvergenceDetector) -> ProgressAnalysis:
    """
    Decide whether the loop may run another attempt.

    Order: breaker open (timeout re-checked) → converged → degrading →
    oscillating → stagnation >= 2 → continue.

    Parameters
    ----------
    breaker : CircuitBreaker
        The session's breaker. ``can_attempt()`` is called so a timeout that
        elapsed during an external call opens it here.
    detector : ConvergenceDetector
        The session's detector.

    Returns
    -------
    ProgressAnalysis
    """
    if not breaker.can_attempt():
        reason = breaker.open_reason.value if breaker.open_reason else "UNKNOWN"
        return ProgressAnalysis(
            should_continue=False,
            reason=f"Circuit breaker open: {reason}",
            code="circuit_open",
            recommendation="stop",
        )

    if detector.is_converged():
        return ProgressAnalysis(
            should_continue=False, reason="All errors resolved",
            code="converged", recommendation="stop",
        )

    trend = detector.detect_trend()
    if trend == ConvergenceTrend.DEGRADING:
        return ProgressAnalysis(
            should_continue=False,
            reason="Error count increasing - fixes are making things worse",
            code="degrading", recommendation="escalate",
        )
    if trend == ConvergenceTrend.OSCILLATING:
        return ProgressAnalysis(
            should_continue=False,
            reason="Error counts oscillating - cannot converge",
            code="oscillating", recommendation="escalate",
        )
    if detector.stagnation_count >= _STAGNATION_LIMIT:
        return ProgressAnalysis(
            should_continue=False,
            reason=f"No improvement in last {_STAGNATION_LIMIT} attempts - stagnating",
            code="stagnating", recommendation="escalate",
        )

    return ProgressAnalysis(should_continue=True, reason="Progress being made")


_OPEN_REASON_STATUS: Dict[CircuitOpenReason, RefinementStatus] = {
    CircuitOpenReason.MAX_ATTEMPTS: RefinementStatus.MAX_ATTEMPTS_REACHED,
    CircuitOpenReason.SAME_ERROR: RefinementStatus.SAME_ERROR_LOOP,
    CircuitOpenReason.OSCILLATION: RefinementStatus.OSCILLATION_DETECTED,
    CircuitOpenReason.TIMEOUT: RefinementStatus.TIMEOUT,
    CircuitOpenReason.BUDGET_EXCEEDED: RefinementStatus.BUDGET_EXCEEDED,
}


def determine_final_status(
    breaker_state: CircuitBreakerState,
    convergence: ConvergenceInfo,
    has_errors: bool,
) -> RefinementStatus:
    """
    Map the end-of-loop state to exactly one terminal status.

    No remaining errors always wins; then the breaker's open reason;
    then the convergence trend (stagnating/degrading → CANNOT_FIX,
    oscillating → OSCILLATION_DETECTED); otherwise PARTIAL_SUCCESS.
    """
    if not has_errors:
        return RefinementStatus.SUCCESS
    if breaker_state.is_open and breaker_state.open_reason is not None:
        return _OPEN_REASON_STATUS[breaker_state.open_reason]
    if convergence.trend in (ConvergenceTrend.STAGNATING, ConvergenceTrend.DEGRADING):
        return RefinementStatus.CANNOT_FIX
    if convergence.trend == ConvergenceTrend.OSCILLATING:
        return RefinementStatus.OSCILLATION_DETECTED
    return RefinementStatus.PARTIAL_SUCCESS
