"""
Error Classifier
================
Converts raw Playwright failure output into structured ErrorInfo records.

Pipeline:
    1. Split combined output into candidate error blocks
    2. Keep blocks that look like failures (error / failed / timeout / assert)
    3. Classify each block via the category table (first match wins)
    4. Extract selector, expected/actual values, stack excerpt, location
    5. Fingerprint (category, masked message prefix, selector, location)
    6. Deduplicate by fingerprint within one call

Contract:
    - DETERMINISTIC: same output → same ErrorInfo list, always.
    - No LLM allowed in this layer.
    - Never raises: unclassifiable text becomes UNKNOWN / major.
"""
import re
import logging
from typing import Iterable, List, Optional

from refiner.models.error_info import ErrorCategory, ErrorInfo, ErrorLocation
from refiner.models.refinement import FixType
from refiner.parser.classification import (
    classify_failure,
    ENVIRONMENTAL_CATEGORIES,
    CODE_CATEGORIES,
)
from refiner.utils.fingerprint import generate_error_fingerprint

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Extraction Patterns
# ---------------------------------------------------------------------------
# Block boundary: any "<Name>Error:" label that starts a word
_BLOCK_SPLIT = re.compile(r"(?=(?<![A-Za-z])[A-Za-z]*Error:)", re.IGNORECASE)
_FAILURE_HINT = re.compile(r"error|failed|timeout|assert", re.IGNORECASE)
_MIN_BLOCK_LENGTH = 10

_EXPECTED_RE = re.compile(r"^\s*Expected[^:\n]*:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_RECEIVED_RE = re.compile(r"^\s*Received[^:\n]*:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_STACK_RE = re.compile(r"(\s+at\s+.+(?:\n\s+at\s+.+)*)")

# Location patterns, tried in order: stack frame, file.ts:line:col, file.(ts|js):line
_LOCATION_PATTERNS: list[re.Pattern] = [
    re.compile(r"at\s+.*\s+\(([^:]+):(\d+):(\d+)\)"),
    re.compile(r"([^:\s]+\.ts):(\d+):(\d+)"),
    re.compile(r"([^:\s]+\.(?:ts|js)):(\d+)"),
]

_MAX_MESSAGE_LENGTH = 200
_MAX_STACK_LENGTH = 2000


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _extract_location(text: str, stack: str = "") -> Optional[ErrorLocation]:
    """Return the first file/line/column found in the stack, else the text."""
    haystack = stack or text
    for pattern in _LOCATION_PATTERNS:
        match = pattern.search(haystack)
        if match:
            column = int(match.group(3)) if match.lastindex and match.lastindex >= 3 else None
            return ErrorLocation(file=match.group(1), line=int(match.group(2)), column=column)
    return None


def _first_line_message(text: str) -> str:
    lines = text.strip().split("\n")
    first = lines[0].strip() if lines else ""
    if len(first) > _MAX_MESSAGE_LENGTH:
        return first[:_MAX_MESSAGE_LENGTH] + "..."
    return first


def deduplicate_errors(errors: Iterable[ErrorInfo]) -> List[ErrorInfo]:
    """Drop later errors whose fingerprint was already seen (order kept)."""
    seen: set[str] = set()
    unique: List[ErrorInfo] = []
    for error in errors:
        if error.fingerprint in seen:
            continue
        seen.add(error.fingerprint)
        unique.append(error)
    return unique


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_error(text: str, test_file: Optional[str] = None) -> ErrorInfo:
    """
    Classify one failure block.

    Parameters
    ----------
    text : str
        Failure message, optionally followed by its stack.
    test_file : str or None
        When given, replaces the file of any extracted location so that
        fingerprints stay stable across absolute/relative path drift.

    Returns
    -------
    ErrorInfo
        Frozen, fingerprinted error record.
    """
    text = text or ""
    classification = classify_failure(text)

    expected = actual = None
    if classification.category == ErrorCategory.ASSERTION_FAILED:
        expected_match = _EXPECTED_RE.search(text)
        received_match = _RECEIVED_RE.search(text)
        expected = expected_match.group(1).strip() if expected_match else None
        actual = received_match.group(1).strip() if received_match else None

    stack_match = _STACK_RE.search(text)
    stack = stack_match.group(1).strip() if stack_match else ""

    location = _extract_location(text, stack)
    if location is not None and test_file:
        location = ErrorLocation(file=test_file, line=location.line, column=location.column)

    message = _first_line_message(text)
    fingerprint = generate_error_fingerprint(
        classification.category.value,
        message,
        classification.selector,
        location.file if location else None,
        location.line if location else None,
    )

    return ErrorInfo(
        category=classification.category,
        severity=classification.severity,
        message=message,
        location=location,
        selector=classification.selector,
        expected=expected,
        actual=actual,
        stack_excerpt=(stack or text)[:_MAX_STACK_LENGTH],
        fingerprint=fingerprint,
    )


def parse_errors(output: str, test_file: Optional[str] = None) -> List[ErrorInfo]:
    """
    Split combined test output into blocks and classify each one.

    Parameters
    ----------
    output : str
        Raw stdout/stderr of a test run.
    test_file : str or None
        Forwarded to ``parse_error``.

    Returns
    -------
    list[ErrorInfo]
        Deduplicated by fingerprint, in order of first appearance.
        Empty when nothing in the output looks like a failure.
    """
    if not output:
        return []

    errors: List[ErrorInfo] = []
    for block in _BLOCK_SPLIT.split(output):
        trimmed = block.strip()
        if len(trimmed) > _MIN_BLOCK_LENGTH and _FAILURE_HINT.search(trimmed):
            errors.append(parse_error(trimmed, test_file=test_file))

    unique = deduplicate_errors(errors)
    logger.debug("Classified %d error block(s) into %d unique error(s)", len(errors), len(unique))
    return unique


# ---------------------------------------------------------------------------
# Categorization Helpers
# ---------------------------------------------------------------------------
def is_selector_related(error: ErrorInfo) -> bool:
    """True when a selector change is a plausible fix."""
    return error.category == ErrorCategory.SELECTOR_NOT_FOUND and bool(error.selector)


def is_timing_related(error: ErrorInfo) -> bool:
    return error.category == ErrorCategory.TIMEOUT or (
        error.category == ErrorCategory.SELECTOR_NOT_FOUND and "timeout" in error.message.lower()
    )


def is_environmental_error(error: ErrorInfo) -> bool:
    """Network / auth / permission failures are not fixable in test code."""
    return error.category in ENVIRONMENTAL_CATEGORIES


def is_code_error(error: ErrorInfo) -> bool:
    return error.category in CODE_CATEGORIES


_SUGGESTED_FIX_TYPES: dict[ErrorCategory, list[FixType]] = {
    ErrorCategory.SELECTOR_NOT_FOUND: [
        FixType.SELECTOR_CHANGE, FixType.LOCATOR_STRATEGY_CHANGED, FixType.FRAME_CONTEXT_ADDED,
    ],
    ErrorCategory.TIMEOUT: [FixType.WAIT_ADDED, FixType.TIMEOUT_INCREASED, FixType.RETRY_ADDED],
    ErrorCategory.ASSERTION_FAILED: [FixType.ASSERTION_MODIFIED, FixType.WAIT_ADDED],
    ErrorCategory.NAVIGATION_ERROR: [FixType.ERROR_HANDLING_ADDED, FixType.RETRY_ADDED],
}


def get_suggested_fix_types(category: ErrorCategory) -> List[FixType]:
    """Map an error category to the fix types most likely to resolve it."""
    return list(_SUGGESTED_FIX_TYPES.get(category, [FixType.OTHER]))
