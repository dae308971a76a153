"""
Classification
==============
Maps raw Playwright failure text to one ErrorCategory and its severity.

Category Order (first category with ANY matching sub-pattern wins):
    SELECTOR_NOT_FOUND → TIMEOUT → ASSERTION_FAILED → NAVIGATION_ERROR →
    NETWORK_ERROR → AUTHENTICATION_ERROR → PERMISSION_ERROR → TYPE_ERROR →
    SYNTAX_ERROR → RUNTIME_ERROR

Order matters: a locator timeout is a selector problem before it is a generic
timeout, and the catch-all "Error:" of RUNTIME_ERROR must come last.

Unmatched text is UNKNOWN with severity "major".
"""
import re
from dataclasses import dataclass
from typing import Optional

from refiner.models.error_info import ErrorCategory, ErrorSeverity


# ---------------------------------------------------------------------------
# Classification Result
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ClassificationResult:
    """Immutable result of classifying one failure block."""
    category: ErrorCategory
    severity: ErrorSeverity
    selector: Optional[str] = None


# ---------------------------------------------------------------------------
# Category Table
# ---------------------------------------------------------------------------
def _compile(*patterns: str) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Each entry: (category, severity, compiled patterns)
_CATEGORY_TABLE: list[tuple[ErrorCategory, ErrorSeverity, list[re.Pattern]]] = [
    (ErrorCategory.SELECTOR_NOT_FOUND, ErrorSeverity.MAJOR, _compile(
        r"locator\..*: Timeout \d+ms exceeded",
        r"waiting for (locator|selector)",
        r"No element matches selector",
        r"Element is not attached to the DOM",
        r"Element is outside of the viewport",
        r"page\.\$\(.*\) resolved to (null|undefined)",
        r"getByRole.*resolved to \d+ element",
        r"getByTestId.*resolved to \d+ element",
        r"getByText.*resolved to \d+ element",
        r"locator resolved to \d+ elements",
    )),
    (ErrorCategory.TIMEOUT, ErrorSeverity.MAJOR, _compile(
        r"Timeout \d+ms exceeded",
        r"page\.waitFor.*exceeded",
        r"Test timeout of \d+ms exceeded",
        r"Navigation timeout of \d+ms exceeded",
        r"exceeded .*timeout",
    )),
    (ErrorCategory.ASSERTION_FAILED, ErrorSeverity.MAJOR, _compile(
        r"expect\(.*\)\.to",
        r"Expected.*to (be|have|contain|match|equal)",
        r"AssertionError",
        r"Received.*Expected",
        r"toBeVisible.*but.*hidden",
        r"toHaveText.*but.*received",
        r"toHaveValue.*but.*received",
        r"toBeChecked.*but.*unchecked",
    )),
    (ErrorCategory.NAVIGATION_ERROR, ErrorSeverity.CRITICAL, _compile(
        r"net::ERR_",
        r"Navigation failed",
        r"page\.goto.*failed",
        r"Frame was detached",
        r"Target page.*closed",
        r"browser has disconnected",
        r"Protocol error.*Target closed",
    )),
    (ErrorCategory.NETWORK_ERROR, ErrorSeverity.MAJOR, _compile(
        r"ECONNREFUSED",
        r"ENOTFOUND",
        r"ETIMEDOUT",
        r"fetch failed",
        r"Request failed",
        r"Status code: [45]\d{2}",
    )),
    (ErrorCategory.AUTHENTICATION_ERROR, ErrorSeverity.CRITICAL, _compile(
        r"401 Unauthorized",
        r"403 Forbidden",
        r"Authentication failed",
        r"Login failed",
        r"Invalid credentials",
        r"Session expired",
        r"Token expired",
    )),
    (ErrorCategory.PERMISSION_ERROR, ErrorSeverity.CRITICAL, _compile(
        r"Permission denied",
        r"Access denied",
        r"not authorized",
        r"insufficient permissions",
    )),
    (ErrorCategory.TYPE_ERROR, ErrorSeverity.MAJOR, _compile(
        r"TypeError:",
        r"Cannot read propert",
        r"is not a function",
        r"is not defined",
        r"undefined is not",
        r"null is not",
    )),
    (ErrorCategory.SYNTAX_ERROR, ErrorSeverity.CRITICAL, _compile(
        r"SyntaxError:",
        r"Unexpected token",
        r"Unexpected identifier",
        r"Invalid or unexpected token",
    )),
    (ErrorCategory.RUNTIME_ERROR, ErrorSeverity.MAJOR, _compile(
        r"ReferenceError:",
        r"RangeError:",
        r"Error:",
    )),
]

# Selector extraction only applies to SELECTOR_NOT_FOUND
_SELECTOR_EXTRACTOR = re.compile(
    r"""locator\(['"]([^'"]+)['"]\)|getBy\w+\(['"]([^'"]+)['"]\)"""
)


# ---------------------------------------------------------------------------
# Category Groups
# ---------------------------------------------------------------------------
ENVIRONMENTAL_CATEGORIES = frozenset({
    ErrorCategory.NETWORK_ERROR,
    ErrorCategory.AUTHENTICATION_ERROR,
    ErrorCategory.PERMISSION_ERROR,
})

CODE_CATEGORIES = frozenset({
    ErrorCategory.SYNTAX_ERROR,
    ErrorCategory.TYPE_ERROR,
    ErrorCategory.RUNTIME_ERROR,
})


def extract_selector(text: str) -> Optional[str]:
    """Return the first locator()/getBy*() argument in ``text``, if any."""
    match = _SELECTOR_EXTRACTOR.search(text)
    if not match:
        return None
    return match.group(1) or match.group(2)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def classify_failure(text: str) -> ClassificationResult:
    """
    Classify a failure block into (category, severity, selector).

    Parameters
    ----------
    text : str
        One failure block (message plus optional stack).

    Returns
    -------
    ClassificationResult
        UNKNOWN / major when no category pattern matches.
    """
    for category, severity, patterns in _CATEGORY_TABLE:
        if any(p.search(text) for p in patterns):
            selector = None
            if category == ErrorCategory.SELECTOR_NOT_FOUND:
                selector = extract_selector(text)
            return ClassificationResult(category=category, severity=severity, selector=selector)

    return ClassificationResult(category=ErrorCategory.UNKNOWN, severity=ErrorSeverity.MAJOR)
