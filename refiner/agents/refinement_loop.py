"""
Refinement Loop
===============
Drives one bounded repair session for one failing test:
Decide → Budget → Ask oracle → Pick fix → Apply → Re-run → Judge → Learn.

Per iteration:
    1. analyze_refinement_progress(breaker, detector); any stop → terminal status
    2. cost tracker pre-check (ESTIMATED_TOKENS_PER_FIX) → BUDGET_EXCEEDED
    3. oracle.generate_fix(code, errors, attempts, options)
    4. keep fixes with confidence >= min_fix_confidence; none → skipped attempt,
       three skips in a row → CANNOT_FIX
    5. apply ONLY the highest-confidence fix as an exact substring replacement
       (first occurrence); anchor missing → failed attempt, code unchanged
    6. runner.run_test(test_file, patched_code)
    7. outcome: success (0 errors) / partial (fewer errors, or a previous
       fingerprint resolved) / failure
    8. success / partial → commit as the new baseline, update best code,
       emit a lesson when the fix confidence exceeds verification_confidence
    9. feed the observed errors to detector + breaker

Collaborators:
    oracle  - async generate_fix(code, errors, attempts, options) -> FixResponse
    runner  - async run_test(test_file, code) -> object with ``errors``
    Both may raise; every exception becomes a recorded failed attempt
    (ORACLE_ERROR / RUNNER_ERROR) that still feeds the breaker, so the
    attempt ceiling always bounds the session.

Termination:
    Every iteration records exactly one breaker attempt (or exits), so
    max_attempts is a hard upper bound on oracle calls.
"""
import time
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

from refiner.core.config import ARTIFACTS_DIR
from refiner.core.constants import ESTIMATED_TOKENS_PER_FIX
from refiner.llm.prompts import REFINEMENT_SYSTEM_PROMPT
from refiner.models.error_info import ErrorInfo
from refiner.models.lesson import Lesson
from refiner.models.loop_state import CircuitOpenReason, ConvergenceTrend
from refiner.models.refinement import (
    AttemptOutcome,
    CodeFix,
    FixGenerationOptions,
    FixResponse,
    RefinementAttempt,
    RefinementConfig,
    RefinementDiagnostics,
    RefinementProgress,
    RefinementResult,
    RefinementSession,
    RefinementStatus,
    TokenUsage,
)
from refiner.services.circuit_breaker import CircuitBreaker
from refiner.services.convergence_detector import (
    ConvergenceDetector,
    analyze_refinement_progress,
    determine_final_status,
)
from refiner.services.cost_tracker import CostTracker
from refiner.services.lesson_learning import lesson_from_fix
from refiner.services.lesson_store import LessonStore, LessonStoreConflictError
from refiner.services.results_writer import ResultsWriter
from refiner.utils.failure_reasons import (
    ANCHOR_NOT_FOUND,
    CONSECUTIVE_SKIPS,
    COST_LIMIT,
    NO_IMPROVEMENT,
    NO_VIABLE_FIX,
    ORACLE_ERROR,
    RUNNER_ERROR,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure Helpers
# ---------------------------------------------------------------------------
def determine_outcome(previous_errors: List[ErrorInfo], new_errors: List[ErrorInfo]) -> AttemptOutcome:
    """
    Judge one applied fix by the errors it left behind.

    success: no errors; partial: fewer errors, or at least one previous
    fingerprint gone even though the count did not drop; failure otherwise.
    """
    if not new_errors:
        return AttemptOutcome.SUCCESS
    if len(new_errors) < len(previous_errors):
        return AttemptOutcome.PARTIAL
    previous = {e.fingerprint for e in previous_errors}
    remaining = {e.fingerprint for e in new_errors}
    if previous - remaining:
        return AttemptOutcome.PARTIAL
    return AttemptOutcome.FAILURE


def select_viable_fixes(fixes: List[CodeFix], min_confidence: float) -> List[CodeFix]:
    """Fixes at or above ``min_confidence``, highest confidence first (stable)."""
    viable = [f for f in fixes if f.confidence >= min_confidence]
    return sorted(viable, key=lambda f: f.confidence, reverse=True)


def apply_fix(code: str, fix: CodeFix) -> Optional[str]:
    """
    Replace the first verbatim occurrence of the fix anchor.

    Returns None when the anchor is not in ``code``. No whitespace
    normalization is attempted.
    """
    if not fix.original_code or fix.original_code not in code:
        return None
    return code.replace(fix.original_code, fix.fixed_code, 1)


def create_diagnostics(session: RefinementSession, last_errors: List[ErrorInfo]) -> RefinementDiagnostics:
    breaker = session.circuit_breaker_state
    trend = session.convergence_info.trend
    last_error: Optional[str] = None
    if session.attempts and session.attempts[-1].errors:
        last_error = session.attempts[-1].errors[0].message
    elif last_errors:
        last_error = last_errors[0].message

    return RefinementDiagnostics(
        attempts=len(session.attempts),
        last_error=last_error,
        convergence_failure=trend in (ConvergenceTrend.STAGNATING, ConvergenceTrend.OSCILLATING)
        and session.final_status != RefinementStatus.SUCCESS,
        same_error_repeated=breaker.open_reason == CircuitOpenReason.SAME_ERROR,
        oscillation_detected=(
            breaker.open_reason == CircuitOpenReason.OSCILLATION
            or trend == ConvergenceTrend.OSCILLATING
        ),
        budget_exhausted=(
            breaker.open_reason == CircuitOpenReason.BUDGET_EXCEEDED
            or session.final_status == RefinementStatus.BUDGET_EXCEEDED
        ),
        timed_out=breaker.open_reason == CircuitOpenReason.TIMEOUT,
    )


# ---------------------------------------------------------------------------
# Refinement Loop
# ---------------------------------------------------------------------------
class RefinementLoop:
    """
    Bounded self-refinement of one failing Playwright test.

    Parameters
    ----------
    oracle : object
        Fix oracle with ``async generate_fix(code, errors, attempts, options)``.
    runner : object
        Test runner with ``async run_test(test_file, code)`` returning an object
        that exposes ``errors`` (e.g. TestRunResult).
    config : RefinementConfig or None
        Breaker thresholds, fix confidence floors, pacing.
    cost_tracker : CostTracker or None
        Shared spend tracker; checked before every oracle call.
    lesson_store : LessonStore or None
        Receives lessons for verified high-confidence fixes; saved once at the end.
    on_attempt_complete : callable or None
        Called with each RefinementAttempt after it is recorded.
    on_progress : callable or None
        Called with a RefinementProgress before each oracle call.
    clock : callable
        Seconds-since-epoch source for the circuit breaker.
    write_results : bool
        Persist the finished session with ResultsWriter.
    artifacts_dir : str
        Root directory for session artifacts.
    """

    def __init__(
        self,
        oracle: Any,
        runner: Any,
        config: Optional[RefinementConfig] = None,
        cost_tracker: Optional[CostTracker] = None,
        lesson_store: Optional[LessonStore] = None,
        on_attempt_complete: Optional[Callable[[RefinementAttempt], None]] = None,
        on_progress: Optional[Callable[[RefinementProgress], None]] = None,
        clock: Callable[[], float] = time.time,
        write_results: bool = False,
        artifacts_dir: str = ARTIFACTS_DIR,
    ) -> None:
        self.oracle = oracle
        self.runner = runner
        self.config = config or RefinementConfig()
        self.cost_tracker = cost_tracker
        self.lesson_store = lesson_store
        self.on_attempt_complete = on_attempt_complete
        self.on_progress = on_progress
        self._clock = clock
        self.write_results = write_results
        self.artifacts_dir = artifacts_dir

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    async def run(
        self,
        journey_id: str,
        test_file: str,
        original_code: str,
        initial_errors: List[ErrorInfo],
    ) -> RefinementResult:
        """
        Run one session to a terminal status.

        Parameters
        ----------
        journey_id : str
            Journey the test belongs to (carried into lessons).
        test_file : str
            Path handed to the runner.
        original_code : str
            Failing test source.
        initial_errors : list[ErrorInfo]
            Classified failures of ``original_code``.

        Returns
        -------
        RefinementResult
            Always carries a status and the best code reached.
        """
        session = RefinementSession(
            journey_id=journey_id,
            test_file=test_file,
            original_code=original_code,
            current_code=original_code,
            best_code=original_code,
            best_error_count=len(initial_errors),
        )

        if not initial_errors:
            logger.warning("Session %s (%s): no classified errors, nothing to refine",
                           session.session_id, journey_id)
            session.final_status = RefinementStatus.CANNOT_FIX
            session.finished_at = datetime.now(timezone.utc)
            diagnostics = create_diagnostics(session, [])
            diagnostics.last_error = "No errors to fix"
            return RefinementResult(
                success=False,
                status=RefinementStatus.CANNOT_FIX,
                session=session,
                best_code=original_code,
                diagnostics=diagnostics,
            )

        breaker = CircuitBreaker(self.config.circuit_breaker, clock=self._clock)
        detector = ConvergenceDetector()
        detector.record_attempt(initial_errors)

        current_code = original_code
        current_errors: List[ErrorInfo] = list(initial_errors)
        applied_fixes: List[CodeFix] = []
        lessons: List[Lesson] = []
        learned: List[Tuple[CodeFix, Optional[ErrorInfo], bool]] = []
        consecutive_skips = 0
        status: Optional[RefinementStatus] = None

        logger.info("Session %s: refining %s (%s) with %d error(s)",
                    session.session_id, test_file, journey_id, len(initial_errors))

        while True:
            # --- Step 1: Continue? ---
            analysis = analyze_refinement_progress(breaker, detector)
            if not analysis.should_continue:
                logger.info("Session %s stopping: %s", session.session_id, analysis.reason)
                break

            # --- Step 2: Budget ---
            if self.cost_tracker is not None and self.cost_tracker.would_exceed_limit(ESTIMATED_TOKENS_PER_FIX):
                logger.warning("Session %s: cost limit would be exceeded (%s)", session.session_id, COST_LIMIT)
                breaker.trip(CircuitOpenReason.BUDGET_EXCEEDED)
                status = RefinementStatus.BUDGET_EXCEEDED
                break

            attempt_number = len(session.attempts) + 1
            self._emit_progress(session, breaker, detector, attempt_number, len(current_errors))

            # --- Step 3: Ask the oracle ---
            try:
                fix_response: FixResponse = await self.oracle.generate_fix(
                    current_code,
                    current_errors,
                    list(session.attempts),
                    FixGenerationOptions(
                        max_tokens=self.config.max_tokens_per_fix,
                        temperature=self.config.temperature,
                        system_prompt=REFINEMENT_SYSTEM_PROMPT,
                    ),
                )
            except Exception as e:
                logger.warning("Session %s attempt %d: fix oracle failed: %s",
                               session.session_id, attempt_number, e, exc_info=True)
                # a reply that failed to parse was still paid for
                spent = getattr(e, "token_usage", None)
                if not isinstance(spent, TokenUsage):
                    spent = TokenUsage()
                self._charge(session, spent)
                self._record(session, breaker, RefinementAttempt(
                    attempt_number=attempt_number,
                    errors=current_errors,
                    outcome=AttemptOutcome.FAILURE,
                    new_errors=current_errors,
                    token_usage=spent,
                    failure_reason=ORACLE_ERROR,
                ), current_errors, detector)
                await self._pause()
                continue

            usage = fix_response.token_usage
            self._charge(session, usage)

            # --- Step 4: Viable fixes ---
            viable = select_viable_fixes(fix_response.fixes, self.config.min_fix_confidence)
            if not viable:
                consecutive_skips += 1
                logger.info("Session %s attempt %d: no viable fix (%d proposed, skip %d/%d)",
                            session.session_id, attempt_number, len(fix_response.fixes),
                            consecutive_skips, self.config.max_consecutive_skips)
                self._record(session, breaker, RefinementAttempt(
                    attempt_number=attempt_number,
                    errors=current_errors,
                    proposed_fixes=fix_response.fixes,
                    outcome=AttemptOutcome.SKIPPED,
                    new_errors=current_errors,
                    token_usage=usage,
                    failure_reason=NO_VIABLE_FIX,
                ), current_errors, detector)
                if consecutive_skips >= self.config.max_consecutive_skips:
                    logger.warning("Session %s: %s", session.session_id, CONSECUTIVE_SKIPS)
                    status = RefinementStatus.CANNOT_FIX
                    break
                await self._pause()
                continue
            consecutive_skips = 0

            # --- Step 5: Apply the single best fix ---
            fix = viable[0]
            patched = apply_fix(current_code, fix)
            if patched is None:
                logger.info("Session %s attempt %d: anchor not found for %s fix",
                            session.session_id, attempt_number, fix.type.value)
                self._record(session, breaker, RefinementAttempt(
                    attempt_number=attempt_number,
                    errors=current_errors,
                    proposed_fixes=fix_response.fixes,
                    applied_fix=None,
                    outcome=AttemptOutcome.FAILURE,
                    new_errors=current_errors,
                    token_usage=usage,
                    failure_reason=ANCHOR_NOT_FOUND,
                ), current_errors, detector)
                await self._pause()
                continue

            # --- Step 6: Re-run the test ---
            try:
                run_result = await self.runner.run_test(test_file, patched)
                new_errors: List[ErrorInfo] = list(run_result.errors)
            except Exception as e:
                logger.warning("Session %s attempt %d: test runner failed: %s",
                               session.session_id, attempt_number, e, exc_info=True)
                self._record(session, breaker, RefinementAttempt(
                    attempt_number=attempt_number,
                    errors=current_errors,
                    proposed_fixes=fix_response.fixes,
                    applied_fix=fix,
                    outcome=AttemptOutcome.FAILURE,
                    new_errors=current_errors,
                    token_usage=usage,
                    failure_reason=RUNNER_ERROR,
                ), current_errors, detector)
                await self._pause()
                continue

            # --- Step 7: Judge ---
            outcome = determine_outcome(current_errors, new_errors)
            attempt = RefinementAttempt(
                attempt_number=attempt_number,
                errors=current_errors,
                proposed_fixes=fix_response.fixes,
                applied_fix=fix,
                outcome=outcome,
                new_errors=new_errors,
                token_usage=usage,
                failure_reason=NO_IMPROVEMENT if outcome == AttemptOutcome.FAILURE else "",
            )

            # --- Step 8: Commit + learn ---
            if outcome in (AttemptOutcome.SUCCESS, AttemptOutcome.PARTIAL):
                current_code = patched
                session.current_code = patched
                applied_fixes.append(fix)
                if len(new_errors) <= session.best_error_count:
                    session.best_code = patched
                    session.best_error_count = len(new_errors)

                if (
                    self.lesson_store is not None
                    and self.config.learn_lessons
                    and fix.confidence > self.config.verification_confidence
                ):
                    error = current_errors[0] if current_errors else None
                    verified = outcome == AttemptOutcome.SUCCESS
                    lessons.append(lesson_from_fix(self.lesson_store, journey_id, fix, error, verified=verified))
                    learned.append((fix, error, verified))

                current_errors = new_errors

            # --- Step 9: Feed the trackers ---
            detector.record_attempt(new_errors)
            self._record(session, breaker, attempt, new_errors, detector)

            logger.info(
                "Session %s attempt %d: %s fix (%.2f) → %s, %d error(s), trend=%s",
                session.session_id, attempt_number, fix.type.value, fix.confidence,
                outcome.value, len(new_errors), detector.detect_trend().value,
            )
            await self._pause()

        # --- Finalize ---
        session.circuit_breaker_state = breaker.get_state()
        session.convergence_info = detector.get_info()
        if status is None:
            status = determine_final_status(
                session.circuit_breaker_state,
                session.convergence_info,
                has_errors=bool(current_errors),
            )
        session.final_status = status
        session.finished_at = datetime.now(timezone.utc)

        self._save_lessons(journey_id, learned)

        result = RefinementResult(
            success=status == RefinementStatus.SUCCESS,
            status=status,
            session=session,
            fixed_code=current_code if status == RefinementStatus.SUCCESS else None,
            best_code=session.best_code,
            remaining_errors=current_errors,
            applied_fixes=applied_fixes,
            lessons_learned=lessons,
            diagnostics=create_diagnostics(session, current_errors),
        )

        logger.info(
            "Session %s finished: %s after %d attempt(s), %d error(s) left, %d tokens",
            session.session_id, status.value, len(session.attempts),
            len(current_errors), session.total_token_usage.total_tokens,
        )

        if self.write_results:
            ResultsWriter.write_results(result, self.artifacts_dir)
        return result

    # -------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------
    def _charge(self, session: RefinementSession, usage: TokenUsage) -> None:
        session.total_token_usage = session.total_token_usage.add(usage)
        if self.cost_tracker is not None:
            self.cost_tracker.track_usage(usage)

    def _record(
        self,
        session: RefinementSession,
        breaker: CircuitBreaker,
        attempt: RefinementAttempt,
        observed_errors: List[ErrorInfo],
        detector: ConvergenceDetector,
    ) -> None:
        session.attempts.append(attempt)
        breaker.record_attempt(observed_errors, attempt.token_usage.total_tokens)
        session.circuit_breaker_state = breaker.get_state()
        session.convergence_info = detector.get_info()
        if self.on_attempt_complete is not None:
            try:
                self.on_attempt_complete(attempt)
            except Exception as e:
                logger.warning("on_attempt_complete callback failed: %s", e, exc_info=True)

    def _emit_progress(
        self,
        session: RefinementSession,
        breaker: CircuitBreaker,
        detector: ConvergenceDetector,
        attempt_number: int,
        error_count: int,
    ) -> None:
        if self.on_progress is None:
            return
        progress = RefinementProgress(
            session_id=session.session_id,
            journey_id=session.journey_id,
            attempt_number=attempt_number,
            max_attempts=breaker.config.max_attempts,
            error_count=error_count,
            best_error_count=session.best_error_count,
            trend=detector.detect_trend().value,
            message=f"Attempt {attempt_number}/{breaker.config.max_attempts}: {error_count} error(s)",
        )
        try:
            self.on_progress(progress)
        except Exception as e:
            logger.warning("on_progress callback failed: %s", e, exc_info=True)

    async def _pause(self) -> None:
        if self.config.delay_seconds > 0:
            await asyncio.sleep(self.config.delay_seconds)

    def _save_lessons(self, journey_id: str, learned: List[Tuple[CodeFix, Optional[ErrorInfo], bool]]) -> None:
        if self.lesson_store is None or not learned:
            return
        try:
            self.lesson_store.save()
        except LessonStoreConflictError as e:
            logger.warning("Lesson store changed on disk, merging: %s", e)
            try:
                self.lesson_store.reload()
                for fix, error, verified in learned:
                    lesson_from_fix(self.lesson_store, journey_id, fix, error, verified=verified)
                self.lesson_store.save()
            except (LessonStoreConflictError, OSError) as retry_error:
                logger.warning("Lesson store save failed after merge: %s", retry_error, exc_info=True)
        except OSError as e:
            logger.warning("Lesson store save failed: %s", e, exc_info=True)


# ---------------------------------------------------------------------------
# One-shot Helper
# ---------------------------------------------------------------------------
async def run_single_refinement_attempt(
    code: str,
    errors: List[ErrorInfo],
    oracle: Any,
    max_tokens: int = 4096,
    temperature: float = 0.2,
) -> FixResponse:
    """
    Ask the oracle once, without a session, breaker or test run.

    Raises whatever the oracle raises.
    """
    return await oracle.generate_fix(
        code,
        errors,
        [],
        FixGenerationOptions(
            max_tokens=max_tokens,
            temperature=temperature,
            system_prompt=REFINEMENT_SYSTEM_PROMPT,
        ),
    )
