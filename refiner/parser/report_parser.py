"""
Report Parser
=============
Turns a Playwright JSON reporter document into a TestRunResult.

Walk:
    suites → (nested suites) → specs → tests → last result
    Each failed test contributes one ErrorInfo built from error.message + error.stack,
    plus any errors found in that result's stderr. A non-passing test with
    neither gets one stand-in error named after its status.

Status mapping:
    passed → passed, failed → failed, timedout → timedOut,
    skipped / pending → skipped, interrupted → interrupted, anything else → failed

Contract:
    - Never raises: unreadable JSON falls back to classifying raw text.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from refiner.models.error_info import ErrorCategory, ErrorInfo
from refiner.parser.error_classifier import parse_error, parse_errors, deduplicate_errors
from refiner.utils.fingerprint import generate_error_fingerprint

logger = logging.getLogger(__name__)


_STATUS_MAP: dict[str, str] = {
    "passed": "passed",
    "failed": "failed",
    "timedout": "timedOut",
    "skipped": "skipped",
    "pending": "skipped",
    "interrupted": "interrupted",
    # test-level outcomes
    "expected": "passed",
    "unexpected": "failed",
    "flaky": "passed",
}


def map_status(status: str) -> str:
    return _STATUS_MAP.get((status or "").lower(), "failed")


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------
@dataclass
class TestCaseResult:
    """One Playwright test from the report."""
    __test__ = False

    test_id: str
    test_name: str
    test_file: str
    status: str
    duration_ms: float = 0.0
    retries: int = 0
    errors: List[ErrorInfo] = field(default_factory=list)


@dataclass
class TestRunResult:
    """
    Structured output of one test run.

    Fields
    ------
    status : str
        "passed" | "failed" | "timedOut" | "error".
    errors : list[ErrorInfo]
        All failures across tests, deduplicated by fingerprint.
    tests : list[TestCaseResult]
        Per-test breakdown (empty when no report was produced).
    counts : dict
        total / passed / failed / skipped / flaky.
    raw_output : str
        Combined stdout + stderr, kept for debugging.
    """
    __test__ = False

    status: str = "passed"
    errors: List[ErrorInfo] = field(default_factory=list)
    tests: List[TestCaseResult] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    raw_output: str = ""

    @property
    def passed(self) -> bool:
        return self.status == "passed" and not self.errors


# ---------------------------------------------------------------------------
# Suite Walk
# ---------------------------------------------------------------------------
_STATUS_ERRORS: dict[str, tuple[ErrorCategory, str]] = {
    "interrupted": (ErrorCategory.RUNTIME_ERROR, "Test interrupted"),
    "timedOut": (ErrorCategory.TIMEOUT, "Test timed out without error details"),
}


def _status_error(status: str, test_name: str, file: Optional[str]) -> ErrorInfo:
    """Stand-in error for a non-passing test whose result carries no error object."""
    category, message = _STATUS_ERRORS.get(
        status, (ErrorCategory.RUNTIME_ERROR, "Test failed without error details"),
    )
    return ErrorInfo(
        category=category,
        message=message,
        stack_excerpt=test_name,
        fingerprint=generate_error_fingerprint(category.value, f"{message}: {test_name}", file=file),
    )


def _collect_tests(suite: Dict[str, Any], inherited_file: Optional[str], out: List[TestCaseResult]) -> None:
    file = suite.get("file") or inherited_file
    suite_title = suite.get("title", "")

    for spec in suite.get("specs") or []:
        spec_title = spec.get("title", "")
        for test in spec.get("tests") or []:
            results = test.get("results") or []
            last_run = results[-1] if results else {}
            full_name = f"{suite_title} > {spec_title} > {test.get('title', '')}"
            errors: List[ErrorInfo] = []

            error = last_run.get("error") or {}
            error_text = "\n".join(p for p in (error.get("message"), error.get("stack")) if p)
            if error_text:
                errors.append(parse_error(error_text, test_file=file))

            stderr_lines = last_run.get("stderr") or []
            if stderr_lines:
                # Playwright emits either plain strings or {"text": ...} chunks
                stderr_text = "\n".join(
                    chunk.get("text", "") if isinstance(chunk, dict) else str(chunk)
                    for chunk in stderr_lines
                )
                errors.extend(parse_errors(stderr_text, test_file=file))

            status = map_status(last_run.get("status") or test.get("status", ""))
            if not errors and status not in ("passed", "skipped"):
                errors.append(_status_error(status, full_name, file))

            out.append(TestCaseResult(
                test_id=f"{file}:{spec_title}:{test.get('title', '')}",
                test_name=full_name,
                test_file=file or "unknown",
                status=status,
                duration_ms=float(last_run.get("duration", 0) or 0),
                retries=max(len(results) - 1, 0),
                errors=deduplicate_errors(errors),
            ))

    for nested in suite.get("suites") or []:
        _collect_tests(nested, file, out)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_playwright_report(
    report: Union[str, Dict[str, Any], None],
    stderr: str = "",
) -> TestRunResult:
    """
    Parse a Playwright JSON report (dict or raw JSON text).

    Parameters
    ----------
    report : str | dict | None
        The document produced by ``--reporter=json``.
    stderr : str
        Process stderr; scanned for errors outside any test (e.g. compile errors).

    Returns
    -------
    TestRunResult
        Always returned. If the report cannot be read, the raw text and stderr
        are classified directly and status is "error" when anything was found.
    """
    data: Optional[Dict[str, Any]] = None
    raw_text = ""
    if isinstance(report, dict):
        data = report
    elif report:
        raw_text = report
        try:
            loaded = json.loads(report)
            if isinstance(loaded, dict):
                data = loaded
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Playwright report is not valid JSON: %s", e)

    if data is None:
        errors = parse_errors(f"{raw_text}\n{stderr}".strip())
        return TestRunResult(
            status="error" if errors else "passed",
            errors=errors,
            raw_output=f"{raw_text}\n{stderr}".strip(),
        )

    tests: List[TestCaseResult] = []
    for suite in data.get("suites") or []:
        _collect_tests(suite, None, tests)

    all_errors: List[ErrorInfo] = []
    for test in tests:
        if test.status != "passed":
            all_errors.extend(test.errors)
    # Report-level errors (config / compile failures before any test ran)
    for report_error in data.get("errors") or []:
        text = "\n".join(p for p in (report_error.get("message"), report_error.get("stack")) if p)
        if text:
            all_errors.append(parse_error(text))
    if stderr:
        all_errors.extend(parse_errors(stderr))
    all_errors = deduplicate_errors(all_errors)

    counts = {"total": len(tests), "passed": 0, "failed": 0, "skipped": 0, "flaky": 0}
    for test in tests:
        if test.status == "passed":
            counts["passed"] += 1
            if test.retries > 0:
                counts["flaky"] += 1
        elif test.status == "skipped":
            counts["skipped"] += 1
        else:
            counts["failed"] += 1

    if any(t.status == "timedOut" for t in tests):
        status = "timedOut"
    elif counts["failed"] or all_errors:
        status = "failed"
    else:
        status = "passed"

    return TestRunResult(status=status, errors=all_errors, tests=tests, counts=counts, raw_output=stderr)
