"""
Failure Reasons
===============
Standardised constants for why a refinement attempt did not apply or verify a fix.

Used by RefinementAttempt.failure_reason so session artifacts and the API
carry clean, machine-readable reasons instead of free text.
"""


# ---------------------------------------------------------------------------
# Failure Reason Constants
# ---------------------------------------------------------------------------
NO_VIABLE_FIX = "NO_VIABLE_FIX"
ANCHOR_NOT_FOUND = "ANCHOR_NOT_FOUND"
ORACLE_ERROR = "ORACLE_ERROR"
RUNNER_ERROR = "RUNNER_ERROR"
COST_LIMIT = "COST_LIMIT"
CONSECUTIVE_SKIPS = "CONSECUTIVE_SKIPS"
NO_IMPROVEMENT = "NO_IMPROVEMENT"
