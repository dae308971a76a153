"""
Refinement Loop Tests
=====================
Drives RefinementLoop with mocked oracle and runner.

Covers:
    - Pure helpers: outcome judgement, viable-fix selection, anchor replacement
    - Terminal statuses: success, same-error loop, max attempts, cannot-fix
      (skips / empty input), budget exceeded
    - Failure paths: missing anchor, oracle exception, runner exception
    - Unverified runs never commit; unparsable replies are still charged
    - Partial progress keeps the best code
    - Lesson creation, callbacks, session artifact
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

from docker.errors import DockerException

from refiner.agents.fix_agent import FixAgent
from refiner.agents.refinement_loop import (
    RefinementLoop,
    apply_fix,
    determine_outcome,
    run_single_refinement_attempt,
    select_viable_fixes,
)
from refiner.executor.playwright_runner import PlaywrightRunner
from refiner.llm.client import LLMResponse
from refiner.llm.prompts import REFINEMENT_SYSTEM_PROMPT
from refiner.models.error_info import ErrorCategory, ErrorInfo
from refiner.models.loop_state import CircuitBreakerConfig
from refiner.models.refinement import (
    AttemptOutcome,
    CodeFix,
    FixResponse,
    FixType,
    RefinementConfig,
    RefinementStatus,
    TokenUsage,
)
from refiner.parser.report_parser import TestRunResult
from refiner.services.cost_tracker import CostTracker
from refiner.services.lesson_store import LessonStore
from refiner.utils.failure_reasons import (
    ANCHOR_NOT_FOUND,
    NO_IMPROVEMENT,
    NO_VIABLE_FIX,
    ORACLE_ERROR,
    RUNNER_ERROR,
)


TEST_FILE = "tests/checkout.spec.ts"

ORIGINAL_CODE = (
    "test('checkout', async ({ page }) => {\n"
    "  await page.goto('/cart');\n"
    "  await page.locator('#pay').click();\n"
    "  await expect(page).toHaveURL('/done');\n"
    "});\n"
)


# ===========================================================================
# Factories
# ===========================================================================
def _make_error(fingerprint: str, category: ErrorCategory = ErrorCategory.SELECTOR_NOT_FOUND) -> ErrorInfo:
    return ErrorInfo(category=category, message=f"locator not found ({fingerprint})", fingerprint=fingerprint)


def _make_fix(
    original: str = "page.locator('#pay')",
    fixed: str = "page.getByTestId('pay')",
    confidence: float = 0.8,
    fix_type: FixType = FixType.SELECTOR_CHANGE,
) -> CodeFix:
    return CodeFix(type=fix_type, description="stable selector", original_code=original,
                   fixed_code=fixed, confidence=confidence)


def _make_response(*fixes: CodeFix, tokens: int = 100) -> FixResponse:
    return FixResponse(fixes=list(fixes), token_usage=TokenUsage(total_tokens=tokens))


def _make_oracle(*responses) -> MagicMock:
    oracle = MagicMock()
    oracle.generate_fix = AsyncMock(side_effect=list(responses))
    return oracle


def _make_runner(*error_lists) -> MagicMock:
    runner = MagicMock()
    runner.run_test = AsyncMock(side_effect=[
        TestRunResult(status="passed" if not errors else "failed", errors=list(errors))
        for errors in error_lists
    ])
    return runner


def _make_config(**breaker) -> RefinementConfig:
    return RefinementConfig(delay_seconds=0, circuit_breaker=CircuitBreakerConfig(**breaker))


def _run(loop: RefinementLoop, errors, code: str = ORIGINAL_CODE):
    return asyncio.run(loop.run("checkout", TEST_FILE, code, errors))


# ===========================================================================
# Pure helpers
# ===========================================================================
class TestHelpers:

    def test_outcome_success(self):
        assert determine_outcome([_make_error("a")], []) == AttemptOutcome.SUCCESS

    def test_outcome_partial_on_fewer_errors(self):
        before = [_make_error("a"), _make_error("b")]
        assert determine_outcome(before, [_make_error("b")]) == AttemptOutcome.PARTIAL

    def test_outcome_partial_when_fingerprint_resolved(self):
        assert determine_outcome([_make_error("a")], [_make_error("c")]) == AttemptOutcome.PARTIAL

    def test_outcome_failure(self):
        assert determine_outcome([_make_error("a")], [_make_error("a")]) == AttemptOutcome.FAILURE
        assert determine_outcome([_make_error("a")], [_make_error("a"), _make_error("b")]) == AttemptOutcome.FAILURE

    def test_select_viable_fixes(self):
        low, mid, high = _make_fix(confidence=0.3), _make_fix(confidence=0.6), _make_fix(confidence=0.9)
        assert select_viable_fixes([low, mid, high], 0.5) == [high, mid]
        assert select_viable_fixes([low], 0.5) == []

    def test_apply_fix_first_occurrence_only(self):
        code = "a.click();\na.click();"
        assert apply_fix(code, _make_fix("a.click()", "b.click()")) == "b.click();\na.click();"

    def test_apply_fix_missing_anchor(self):
        assert apply_fix(ORIGINAL_CODE, _make_fix("page.locator('#missing')")) is None
        assert apply_fix(ORIGINAL_CODE, _make_fix("page.locator('#pay') ")) is None


# ===========================================================================
# Terminal statuses
# ===========================================================================
class TestTerminalStatus:

    def test_success_in_one_attempt(self):
        oracle = _make_oracle(_make_response(_make_fix()))
        runner = _make_runner([])
        result = _run(RefinementLoop(oracle, runner, _make_config()), [_make_error("a")])

        assert result.success
        assert result.status == RefinementStatus.SUCCESS
        assert "page.getByTestId('pay')" in result.fixed_code
        assert result.best_code == result.fixed_code
        assert result.remaining_errors == []
        assert len(result.applied_fixes) == 1
        assert oracle.generate_fix.await_count == 1
        runner.run_test.assert_awaited_once_with(TEST_FILE, result.fixed_code)
        assert result.session.attempts[0].outcome == AttemptOutcome.SUCCESS
        assert result.session.total_token_usage.total_tokens == 100

    def test_same_error_loop(self):
        same = [_make_error("a")]
        oracle = _make_oracle(_make_response(_make_fix()), _make_response(_make_fix()))
        runner = _make_runner(same, same)
        result = _run(RefinementLoop(oracle, runner, _make_config(max_attempts=5)), same)

        assert result.status == RefinementStatus.SAME_ERROR_LOOP
        assert not result.success
        assert result.fixed_code is None
        assert result.best_code == ORIGINAL_CODE
        assert len(result.session.attempts) == 2
        assert result.diagnostics.same_error_repeated

    def test_failed_fix_is_not_committed(self):
        same = [_make_error("a")]
        oracle = _make_oracle(_make_response(_make_fix()), _make_response(_make_fix()))
        runner = _make_runner(same, same)
        result = _run(RefinementLoop(oracle, runner, _make_config(max_attempts=5)), same)

        second_call_code = oracle.generate_fix.await_args_list[1].args[0]
        assert second_call_code == ORIGINAL_CODE
        assert result.session.attempts[0].failure_reason == NO_IMPROVEMENT

    def test_max_attempts_bounds_oracle_calls(self):
        oracle = MagicMock()
        oracle.generate_fix = AsyncMock(side_effect=RuntimeError("provider down"))
        runner = _make_runner()
        config = _make_config(max_attempts=3, same_error_threshold=10)
        result = _run(RefinementLoop(oracle, runner, config), [_make_error("a")])

        assert result.status == RefinementStatus.MAX_ATTEMPTS_REACHED
        assert oracle.generate_fix.await_count == 3
        assert [a.failure_reason for a in result.session.attempts] == [ORACLE_ERROR] * 3
        runner.run_test.assert_not_awaited()

    def test_consecutive_skips_cannot_fix(self):
        weak = _make_response(_make_fix(confidence=0.2))
        oracle = _make_oracle(weak, weak, weak)
        runner = _make_runner()
        config = _make_config(max_attempts=10, same_error_threshold=10)
        result = _run(RefinementLoop(oracle, runner, config), [_make_error("a")])

        assert result.status == RefinementStatus.CANNOT_FIX
        assert [a.outcome for a in result.session.attempts] == [AttemptOutcome.SKIPPED] * 3
        assert result.session.attempts[0].failure_reason == NO_VIABLE_FIX
        runner.run_test.assert_not_awaited()

    def test_empty_initial_errors(self):
        oracle = _make_oracle()
        result = _run(RefinementLoop(oracle, _make_runner(), _make_config()), [])

        assert result.status == RefinementStatus.CANNOT_FIX
        assert result.diagnostics.last_error == "No errors to fix"
        assert result.best_code == ORIGINAL_CODE
        oracle.generate_fix.assert_not_awaited()

    def test_budget_exceeded_before_first_call(self):
        oracle = _make_oracle(_make_response(_make_fix()))
        tracker = CostTracker(session_limit=1000)
        result = _run(RefinementLoop(oracle, _make_runner([]), _make_config(), cost_tracker=tracker),
                      [_make_error("a")])

        assert result.status == RefinementStatus.BUDGET_EXCEEDED
        assert result.diagnostics.budget_exhausted
        assert result.session.attempts == []
        oracle.generate_fix.assert_not_awaited()

    def test_cost_tracker_receives_usage(self):
        tracker = CostTracker(session_limit=100000)
        oracle = _make_oracle(_make_response(_make_fix(), tokens=250))
        _run(RefinementLoop(oracle, _make_runner([]), _make_config(), cost_tracker=tracker), [_make_error("a")])
        assert tracker.usage().total_tokens == 250


# ===========================================================================
# Failure paths
# ===========================================================================
class TestFailurePaths:

    def test_anchor_not_found(self):
        missing = _make_response(_make_fix(original="page.locator('#nope')"))
        oracle = _make_oracle(missing, missing)
        runner = _make_runner()
        result = _run(RefinementLoop(oracle, runner, _make_config()), [_make_error("a")])

        attempt = result.session.attempts[0]
        assert attempt.failure_reason == ANCHOR_NOT_FOUND
        assert attempt.applied_fix is None
        assert result.best_code == ORIGINAL_CODE
        runner.run_test.assert_not_awaited()

    def test_runner_exception_recorded(self):
        oracle = _make_oracle(_make_response(_make_fix()), _make_response(_make_fix()))
        runner = MagicMock()
        runner.run_test = AsyncMock(side_effect=OSError("docker unavailable"))
        result = _run(RefinementLoop(oracle, runner, _make_config()), [_make_error("a")])

        attempt = result.session.attempts[0]
        assert attempt.failure_reason == RUNNER_ERROR
        assert attempt.applied_fix is not None
        assert attempt.outcome == AttemptOutcome.FAILURE
        assert result.best_code == ORIGINAL_CODE
        assert not result.success

    def test_only_best_fix_applied(self):
        best = _make_fix(confidence=0.9)
        other = _make_fix(original="page.goto('/cart')", fixed="page.goto('/basket')", confidence=0.7)
        oracle = _make_oracle(_make_response(other, best))
        result = _run(RefinementLoop(oracle, _make_runner([]), _make_config()), [_make_error("a")])

        assert result.applied_fixes == [best]
        assert "page.goto('/cart')" in result.fixed_code


# ===========================================================================
# Partial progress
# ===========================================================================
class TestPartialProgress:

    def test_partial_then_success(self):
        first = _make_fix()
        second = _make_fix(original="page.goto('/cart')", fixed="page.goto('/cart?fresh=1')")
        oracle = _make_oracle(_make_response(first), _make_response(second))
        runner = _make_runner([_make_error("b")], [])
        result = _run(RefinementLoop(oracle, runner, _make_config()), [_make_error("a"), _make_error("b")])

        assert result.status == RefinementStatus.SUCCESS
        assert [a.outcome for a in result.session.attempts] == [AttemptOutcome.PARTIAL, AttemptOutcome.SUCCESS]
        assert "getByTestId('pay')" in result.fixed_code
        assert "fresh=1" in result.fixed_code
        # second oracle call sees the committed code
        assert "getByTestId('pay')" in oracle.generate_fix.await_args_list[1].args[0]

    def test_partial_then_stuck_keeps_best_code(self):
        first = _make_fix()
        second = _make_fix(original="page.goto('/cart')", fixed="page.goto('/basket')")
        oracle = _make_oracle(_make_response(first), _make_response(second))
        runner = _make_runner([_make_error("b")], [_make_error("b")])
        result = _run(RefinementLoop(oracle, runner, _make_config(max_attempts=5)),
                      [_make_error("a"), _make_error("b")])

        assert result.status == RefinementStatus.SAME_ERROR_LOOP
        assert result.fixed_code is None
        assert "getByTestId('pay')" in result.best_code
        assert "/basket" not in result.best_code
        assert [e.fingerprint for e in result.remaining_errors] == ["b"]


# ===========================================================================
# Lessons, callbacks, artifacts
# ===========================================================================
class TestSideEffects:

    def test_verified_lesson_saved(self, tmp_path):
        store = LessonStore(str(tmp_path / "lessons.json"))
        oracle = _make_oracle(_make_response(_make_fix(confidence=0.85)))
        loop = RefinementLoop(oracle, _make_runner([]), _make_config(), lesson_store=store)
        result = _run(loop, [_make_error("a")])

        assert len(result.lessons_learned) == 1
        lesson = result.lessons_learned[0]
        assert lesson.verified
        assert lesson.pattern == "SELECTOR_NOT_FOUND:testid"
        assert len(LessonStore(str(tmp_path / "lessons.json")).lessons) == 1

    def test_low_confidence_fix_teaches_nothing(self, tmp_path):
        store = LessonStore(str(tmp_path / "lessons.json"))
        oracle = _make_oracle(_make_response(_make_fix(confidence=0.6)))
        loop = RefinementLoop(oracle, _make_runner([]), _make_config(), lesson_store=store)
        result = _run(loop, [_make_error("a")])

        assert result.success
        assert result.lessons_learned == []
        assert not (tmp_path / "lessons.json").exists()

    def test_callbacks_invoked(self):
        attempts, progress = [], []
        oracle = _make_oracle(_make_response(_make_fix()))
        loop = RefinementLoop(oracle, _make_runner([]), _make_config(max_attempts=3),
                              on_attempt_complete=attempts.append, on_progress=progress.append)
        _run(loop, [_make_error("a")])

        assert len(attempts) == 1
        assert attempts[0].outcome == AttemptOutcome.SUCCESS
        assert len(progress) == 1
        assert progress[0].attempt_number == 1
        assert progress[0].error_count == 1
        assert progress[0].max_attempts == 3

    def test_failing_callback_does_not_stop_loop(self):
        def explode(_):
            raise ValueError("boom")

        oracle = _make_oracle(_make_response(_make_fix()))
        loop = RefinementLoop(oracle, _make_runner([]), _make_config(),
                              on_attempt_complete=explode, on_progress=explode)
        assert _run(loop, [_make_error("a")]).success

    def test_oracle_sees_attempt_history(self):
        same = [_make_error("a")]
        oracle = _make_oracle(_make_response(_make_fix()), _make_response(_make_fix()))
        _run(RefinementLoop(oracle, _make_runner(same, same), _make_config(max_attempts=5)), same)

        first_call, second_call = oracle.generate_fix.await_args_list
        assert first_call.args[2] == []
        assert len(second_call.args[2]) == 1
        assert first_call.args[3].system_prompt == REFINEMENT_SYSTEM_PROMPT

    def test_session_artifact_written(self, tmp_path):
        oracle = _make_oracle(_make_response(_make_fix()))
        loop = RefinementLoop(oracle, _make_runner([]), _make_config(),
                              write_results=True, artifacts_dir=str(tmp_path))
        result = _run(loop, [_make_error("a")])

        path = tmp_path / "sessions" / f"{result.session.session_id}.json"
        payload = json.loads(path.read_text())
        assert payload["session"]["status"] == "SUCCESS"
        assert payload["attempts"][0]["outcome"] == "success"


def test_run_single_refinement_attempt():
    oracle = _make_oracle(_make_response(_make_fix()))
    errors = [_make_error("a")]
    response = asyncio.run(run_single_refinement_attempt(ORIGINAL_CODE, errors, oracle, temperature=0.4))

    assert len(response.fixes) == 1
    call = oracle.generate_fix.await_args
    assert call.args[0] == ORIGINAL_CODE
    assert call.args[2] == []
    assert call.args[3].temperature == 0.4


# ===========================================================================
# Unverified runs and unparsable replies
# ===========================================================================
class TestUnverifiedAttempts:

    @patch("refiner.executor.playwright_runner.docker")
    def test_docker_failure_never_commits_the_patch(self, mock_docker, tmp_path):
        mock_docker.from_env.side_effect = DockerException("daemon down")
        store = LessonStore(str(tmp_path / "lessons.json"))
        oracle = _make_oracle(_make_response(_make_fix(confidence=0.9)))
        runner = PlaywrightRunner(str(tmp_path / "workspace"))
        loop = RefinementLoop(oracle, runner, _make_config(max_attempts=1), lesson_store=store)
        result = _run(loop, [_make_error("a")])

        attempt = result.session.attempts[0]
        assert attempt.failure_reason == RUNNER_ERROR
        assert attempt.outcome == AttemptOutcome.FAILURE
        assert [e.fingerprint for e in attempt.new_errors] == ["a"]
        assert result.best_code == ORIGINAL_CODE
        assert result.session.current_code == ORIGINAL_CODE
        assert result.applied_fixes == []
        assert result.lessons_learned == []
        assert not (tmp_path / "lessons.json").exists()
        assert not result.success

    def test_unparsable_replies_are_charged(self):
        client = MagicMock()
        client.call_with_fallback = AsyncMock(return_value=LLMResponse(
            text="Sorry, I can only describe the fix in words.",
            provider_name="groq",
            token_usage=TokenUsage(total_tokens=4000),
        ))
        agent = FixAgent(router=MagicMock(), client=client)
        tracker = CostTracker(session_limit=10000)
        config = _make_config(max_attempts=3, same_error_threshold=10)
        result = _run(RefinementLoop(agent, _make_runner(), config, cost_tracker=tracker), [_make_error("a")])

        assert client.call_with_fallback.await_count == 2
        assert tracker.usage().total_tokens == 8000
        assert result.session.total_token_usage.total_tokens == 8000
        assert [a.token_usage.total_tokens for a in result.session.attempts] == [4000, 4000]
        assert [a.failure_reason for a in result.session.attempts] == [ORACLE_ERROR] * 2
        assert result.session.circuit_breaker_state.tokens_used == 8000
        assert result.status == RefinementStatus.BUDGET_EXCEEDED

    def test_fix_at_verification_threshold_teaches_nothing(self, tmp_path):
        store = LessonStore(str(tmp_path / "lessons.json"))
        config = _make_config()
        oracle = _make_oracle(_make_response(_make_fix(confidence=config.verification_confidence)))
        result = _run(RefinementLoop(oracle, _make_runner([]), config, lesson_store=store), [_make_error("a")])

        assert result.success
        assert result.lessons_learned == []


def test_session_state_refreshed_after_each_attempt():
    same = [_make_error("a")]
    oracle = _make_oracle(_make_response(_make_fix()), RuntimeError("provider down"), _make_response(_make_fix()))
    loop = RefinementLoop(oracle, _make_runner(same, same),
                          _make_config(max_attempts=3, same_error_threshold=10))
    seen = []
    record = loop._record

    def recording(session, breaker, attempt, observed_errors, detector):
        record(session, breaker, attempt, observed_errors, detector)
        seen.append((session.circuit_breaker_state.attempt_count,
                     len(session.convergence_info.error_count_history)))

    loop._record = recording
    _run(loop, same)

    # the detector holds the initial error set; oracle failures add no entry
    assert seen == [(1, 2), (2, 2), (3, 3)]
