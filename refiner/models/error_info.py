"""
Error Info Model
================
Pydantic model for one classified test failure.
This is the contract between the ErrorClassifier and every downstream consumer
(circuit breaker, convergence detector, fix oracle, lesson store).

Fields:
    category        - one of the fixed ErrorCategory values
    severity        - critical / major / minor, from a per-category table
    message         - first line of the failure, truncated to 200 chars
    location        - optional file / line / column of the failing statement
    selector        - optional locator string implicated in the failure
    expected/actual - optional values pulled from assertion output
    stack_excerpt   - bounded slice of the raw failure block
    fingerprint     - stable hash used for dedupe and repetition detection

ErrorInfo is frozen: once the classifier builds it, nothing mutates it.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorCategory(str, Enum):
    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    ASSERTION_FAILED = "ASSERTION_FAILED"
    NAVIGATION_ERROR = "NAVIGATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    TYPE_ERROR = "TYPE_ERROR"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    UNKNOWN = "UNKNOWN"


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class GenerationErrorKind(str, Enum):
    """Failures raised while producing code or fixes (as opposed to test failures)."""
    LLM_ERROR = "LLM_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    TIMEOUT = "TIMEOUT"
    COST_LIMIT = "COST_LIMIT"


class ErrorLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str
    line: int
    column: Optional[int] = None


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: ErrorCategory = ErrorCategory.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.MAJOR
    message: str = ""
    location: Optional[ErrorLocation] = None
    selector: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    stack_excerpt: str = ""
    fingerprint: str = ""
