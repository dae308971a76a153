"""
Error Fingerprint Utility
=========================
Generates stable fingerprints for classified test failures.

A fingerprint combines:
    - category
    - normalized message prefix (first 100 chars)
    - implicated selector
    - source location (file:line)

Normalization masks volatile tokens so that two runs of the same failure
hash identically even when timings or quoted literals differ:
    "Timeout 5000ms exceeded"        → "timeout xms exceeded"
    "resolved to 3 elements"         → "resolved to x elements"
    locator('#submit-1234')          → locator('x')

Lesson ids reuse the same hashing so one (type, pattern) always maps to one id.
"""
import hashlib
import re
from typing import Optional

_MS_RE = re.compile(r"\d+ms")
_ELEMENT_RE = re.compile(r"\d+ element")
_TIMEOUT_OF_RE = re.compile(r"timeout of \d+", re.IGNORECASE)
_SINGLE_QUOTED_RE = re.compile(r"'[^']*'")
_DOUBLE_QUOTED_RE = re.compile(r'"[^"]*"')
_BARE_NUMBER_RE = re.compile(r"\d+")

_MESSAGE_PREFIX = 100


def normalize_message(message: str) -> str:
    """
    Mask numbers and quoted literals in a failure message.

    Parameters
    ----------
    message : str
        Raw failure message.

    Returns
    -------
    str
        Lowercased, trimmed message with volatile tokens replaced by ``x``.
    """
    text = _MS_RE.sub("Xms", message)
    text = _ELEMENT_RE.sub("X element", text)
    text = _TIMEOUT_OF_RE.sub("timeout of X", text)
    text = _SINGLE_QUOTED_RE.sub("'X'", text)
    text = _DOUBLE_QUOTED_RE.sub('"X"', text)
    text = _BARE_NUMBER_RE.sub("X", text)
    return text.lower().strip()


def short_hash(raw: str) -> str:
    """sha256 of ``raw`` truncated to 16 hex chars."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def generate_error_fingerprint(
    category: str,
    message: str,
    selector: Optional[str] = None,
    file: Optional[str] = None,
    line: Optional[int] = None,
) -> str:
    """
    Generate a stable fingerprint for one failure.

    Parameters
    ----------
    category : str
        ErrorCategory value.
    message : str
        Raw failure message (normalized here).
    selector : str or None
        Implicated locator, if any.
    file, line : optional
        Source location of the failing statement.

    Returns
    -------
    str
        Deterministic 16-char fingerprint.
    """
    normalized = normalize_message(message)[:_MESSAGE_PREFIX]
    location = f"{file}:{line}" if file else ""
    raw = "|".join([category, normalized, selector or "", location])
    return short_hash(raw)
