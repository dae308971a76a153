"""
LLM Prompts
===========
Centralised store for the fix oracle's system and user prompts.

Prompt Design Rules:
    - "Change only what the failure requires": every fix is a small anchor/replacement pair
    - original_code must be copied VERBATIM from the test (it is matched as an exact substring)
    - Prefer resilient locators (getByRole / getByLabel / getByTestId) over CSS / XPath
    - Prefer web-first assertions and auto-waiting over hard waits

History Awareness:
    - The user prompt lists every previous attempt with its fixes and outcome
    - The model is told not to repeat a fix that already failed

Confidence Instruction:
    - Each fix carries a self-reported confidence (0–1)
    - Fixes below the viability floor are discarded by the refinement loop
"""
import json
import logging
from typing import List, Optional

from refiner.models.error_info import ErrorInfo
from refiner.models.refinement import FixType, RefinementAttempt

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------
_FIX_TYPES = ", ".join(t.value for t in FixType)

REFINEMENT_SYSTEM_PROMPT = (
    "You are an expert Playwright test engineer. Your ONLY job is to repair a failing test.\n"
    "\n"
    "HARD RULES (you MUST follow ALL of these):\n"
    "1. Fix ONLY the reported failures. Nothing else.\n"
    "2. Each fix replaces one snippet: original_code must be copied EXACTLY from the test,\n"
    "   including whitespace, because it is matched as a literal substring.\n"
    "3. Prefer getByRole, getByLabel, getByText and getByTestId over CSS or XPath selectors.\n"
    "4. Prefer web-first assertions (await expect(...).toBeVisible()) over waitForTimeout.\n"
    "5. Do NOT repeat a fix listed under PREVIOUS ATTEMPTS; try a different approach.\n"
    "6. Do NOT change test names, imports or unrelated steps.\n"
    "7. Report an honest confidence; a guess is below 0.5.\n"
    "\n"
    f"Allowed fix types: {_FIX_TYPES}\n"
    "\n"
    "RESPONSE FORMAT: you MUST respond with ONLY valid JSON:\n"
    "{\n"
    '  "reasoning": "<what is failing and why>",\n'
    '  "fixes": [\n'
    "    {\n"
    '      "type": "<fix type>",\n'
    '      "description": "<one line>",\n'
    '      "original_code": "<exact snippet from the test>",\n'
    '      "fixed_code": "<replacement snippet>",\n'
    '      "location": {"file": "<path>", "line": <int or null>, "step_description": "<optional>"},\n'
    '      "confidence": <float between 0.0 and 1.0>,\n'
    '      "reasoning": "<why this fix resolves the failure>"\n'
    "    }\n"
    "  ]\n"
    "}\n"
    "\n"
    "Order fixes by confidence, highest first. No other text. No markdown code fences."
)


# ---------------------------------------------------------------------------
# User Prompt Builder
# ---------------------------------------------------------------------------
def _format_error(index: int, error: ErrorInfo) -> str:
    lines = [f"{index}. [{error.category.value}/{error.severity.value}] {error.message}"]
    if error.location is not None:
        lines.append(f"   at {error.location.file}:{error.location.line}")
    if error.selector:
        lines.append(f"   selector: {error.selector}")
    if error.expected is not None or error.actual is not None:
        lines.append(f"   expected: {error.expected}  received: {error.actual}")
    return "\n".join(lines)


def _format_attempt(attempt: RefinementAttempt) -> str:
    fix = attempt.applied_fix
    header = f"Attempt {attempt.attempt_number}: {attempt.outcome.value}"
    if attempt.failure_reason:
        header += f" ({attempt.failure_reason})"
    if fix is None:
        return header + "\n   no fix applied"
    return (
        f"{header}\n"
        f"   {fix.type.value}: {fix.description}\n"
        f"   replaced: {json.dumps(fix.original_code)}\n"
        f"   with:     {json.dumps(fix.fixed_code)}\n"
        f"   errors afterwards: {len(attempt.new_errors)}"
    )


def build_fix_user_prompt(
    code: str,
    errors: List[ErrorInfo],
    attempts: Optional[List[RefinementAttempt]] = None,
    test_file: str = "",
) -> str:
    """
    Build the user prompt sent to the fix oracle.

    Parameters
    ----------
    code : str
        Current test source (the committed baseline).
    errors : list[ErrorInfo]
        Classified failures from the latest run.
    attempts : list[RefinementAttempt] or None
        Session history so far, oldest first.
    test_file : str
        Path of the test file, shown for location hints.

    Returns
    -------
    str
        Formatted user prompt string.
    """
    parts: List[str] = []

    if test_file:
        parts.append(f"TEST FILE: {test_file}")

    parts.append(
        "FAILURES:\n" + "\n".join(_format_error(i, e) for i, e in enumerate(errors, start=1))
    )

    if attempts:
        parts.append(
            "PREVIOUS ATTEMPTS (do NOT repeat these):\n"
            + "\n".join(_format_attempt(a) for a in attempts)
        )

    parts.append(f"CURRENT TEST CODE:\n```typescript\n{code}\n```")

    parts.append(
        "INSTRUCTIONS:\n"
        "- Propose the smallest fixes that make the failing test pass.\n"
        "- original_code MUST appear verbatim in CURRENT TEST CODE.\n"
        "- Respond with ONLY the JSON object described in the system prompt."
    )

    return "\n\n".join(parts)
