"""
Circuit Breaker Tests
=====================
Covers:
    - Each trigger (max attempts, same error, oscillation, timeout, budget)
    - Trigger precedence
    - Frozen state once open
    - Resume from prior state, trip(), reset(), budget helpers
"""
from refiner.models.error_info import ErrorCategory, ErrorInfo
from refiner.models.loop_state import CircuitBreakerConfig, CircuitBreakerState, CircuitOpenReason
from refiner.services.circuit_breaker import CircuitBreaker, is_oscillating


def _make_error(fingerprint: str, category: ErrorCategory = ErrorCategory.TIMEOUT) -> ErrorInfo:
    return ErrorInfo(category=category, message=f"failure {fingerprint}", fingerprint=fingerprint)


class _Clock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_breaker(clock=None, **overrides) -> CircuitBreaker:
    params = dict(
        max_attempts=10,
        same_error_threshold=3,
        oscillation_window=4,
        total_timeout_seconds=300,
        max_token_budget=10000,
    )
    params.update(overrides)
    return CircuitBreaker(CircuitBreakerConfig(**params), clock=clock or _Clock())


# ===========================================================================
# Triggers
# ===========================================================================
class TestTriggers:

    def test_closed_initially(self):
        breaker = _make_breaker()
        assert not breaker.is_open()
        assert breaker.can_attempt()
        assert breaker.open_reason is None

    def test_max_attempts(self):
        breaker = _make_breaker(max_attempts=2)
        breaker.record_attempt([_make_error("a")])
        assert breaker.can_attempt()
        breaker.record_attempt([_make_error("b")])
        assert breaker.is_open()
        assert breaker.open_reason == CircuitOpenReason.MAX_ATTEMPTS

    def test_same_error_anywhere_in_history(self):
        breaker = _make_breaker(same_error_threshold=2)
        breaker.record_attempt([_make_error("a"), _make_error("x")])
        assert not breaker.is_open()
        breaker.record_attempt([_make_error("b"), _make_error("x")])
        assert breaker.open_reason == CircuitOpenReason.SAME_ERROR

    def test_oscillation_abab(self):
        breaker = _make_breaker(same_error_threshold=5)
        for fp in ["a", "b", "a", "b"]:
            breaker.record_attempt([_make_error(fp)])
        assert breaker.open_reason == CircuitOpenReason.OSCILLATION

    def test_no_oscillation_abca(self):
        breaker = _make_breaker(same_error_threshold=5)
        for fp in ["a", "b", "c", "a"]:
            breaker.record_attempt([_make_error(fp)])
        assert not breaker.is_open()

    def test_oscillation_detection_can_be_disabled(self):
        breaker = _make_breaker(same_error_threshold=5, oscillation_detection=False)
        for fp in ["a", "b", "a", "b"]:
            breaker.record_attempt([_make_error(fp)])
        assert not breaker.is_open()

    def test_timeout_on_record(self):
        clock = _Clock()
        breaker = _make_breaker(clock=clock, total_timeout_seconds=60)
        clock.now += 61
        breaker.record_attempt([_make_error("a")])
        assert breaker.open_reason == CircuitOpenReason.TIMEOUT

    def test_timeout_rechecked_by_can_attempt(self):
        clock = _Clock()
        breaker = _make_breaker(clock=clock, total_timeout_seconds=60)
        breaker.record_attempt([_make_error("a")])
        clock.now += 120
        assert not breaker.can_attempt()
        assert breaker.open_reason == CircuitOpenReason.TIMEOUT

    def test_token_budget(self):
        breaker = _make_breaker(max_token_budget=1000)
        breaker.record_attempt([_make_error("a")], token_usage=600)
        assert not breaker.is_open()
        breaker.record_attempt([_make_error("b")], token_usage=400)
        assert breaker.open_reason == CircuitOpenReason.BUDGET_EXCEEDED

    def test_first_trigger_wins(self):
        # Attempt ceiling and same-error both fire on the second attempt
        breaker = _make_breaker(max_attempts=2, same_error_threshold=2)
        breaker.record_attempt([_make_error("a")])
        breaker.record_attempt([_make_error("a")])
        assert breaker.open_reason == CircuitOpenReason.MAX_ATTEMPTS


# ===========================================================================
# Open state is frozen
# ===========================================================================
class TestFrozenWhenOpen:

    def test_record_after_open_changes_nothing(self):
        breaker = _make_breaker(same_error_threshold=2)
        breaker.record_attempt([_make_error("a")])
        breaker.record_attempt([_make_error("a")])
        before = breaker.get_state()

        breaker.record_attempt([_make_error("b")], token_usage=5000)
        after = breaker.get_state()

        assert after.open_reason == CircuitOpenReason.SAME_ERROR
        assert after.attempt_count == before.attempt_count
        assert after.tokens_used == before.tokens_used
        assert after.error_history == before.error_history

    def test_trip_is_noop_when_open(self):
        breaker = _make_breaker(max_attempts=1)
        breaker.record_attempt([])
        breaker.trip(CircuitOpenReason.BUDGET_EXCEEDED)
        assert breaker.open_reason == CircuitOpenReason.MAX_ATTEMPTS


# ===========================================================================
# Helpers
# ===========================================================================
class TestHelpers:

    def test_get_state_is_a_copy(self):
        breaker = _make_breaker()
        state = breaker.get_state()
        state.attempt_count = 99
        assert breaker.get_state().attempt_count == 0

    def test_remaining_attempts_and_budget(self):
        breaker = _make_breaker(max_attempts=3, max_token_budget=1000)
        breaker.record_attempt([_make_error("a")], token_usage=250)
        assert breaker.remaining_attempts() == 2
        assert breaker.remaining_token_budget() == 750
        assert breaker.would_exceed_budget(800)
        assert not breaker.would_exceed_budget(750)

    def test_trip_forces_open(self):
        breaker = _make_breaker()
        breaker.trip(CircuitOpenReason.BUDGET_EXCEEDED)
        assert not breaker.can_attempt()
        assert breaker.open_reason == CircuitOpenReason.BUDGET_EXCEEDED

    def test_reset(self):
        breaker = _make_breaker(max_attempts=1)
        breaker.record_attempt([_make_error("a")])
        breaker.reset()
        assert breaker.can_attempt()
        assert breaker.get_state().attempt_count == 0

    def test_resume_keeps_start_time_and_history(self):
        clock = _Clock(now=5000.0)
        prior = CircuitBreakerState(start_time=4900.0, attempt_count=1, error_history=["a"])
        breaker = CircuitBreaker(
            CircuitBreakerConfig(max_attempts=5, same_error_threshold=2, total_timeout_seconds=300),
            initial_state=prior,
            clock=clock,
        )
        assert breaker.get_state().start_time == 4900.0
        breaker.record_attempt([_make_error("a")])
        assert breaker.open_reason == CircuitOpenReason.SAME_ERROR

    def test_is_oscillating_helper(self):
        assert is_oscillating(["a", "b", "a", "b"], 4)
        assert not is_oscillating(["a", "a", "a", "a"], 4)
        assert not is_oscillating(["a", "b", "a"], 4)
        assert is_oscillating(["z", "a", "b", "a", "b"], 4)
