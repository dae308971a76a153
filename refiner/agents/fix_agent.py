"""
Fix Agent
=========
LLM-backed fix oracle for the refinement loop.

Contract (consumed by RefinementLoop):
    generate_fix(code, errors, previous_attempts, options) -> FixResponse
        fixes[]    - anchor (original_code) + replacement (fixed_code) pairs,
                     each with a fix type, location hint and confidence
        reasoning  - the model's overall diagnosis
        token_usage - real spend reported by the provider

Steps:
    1. Build system + user prompts (code, classified errors, attempt history)
    2. Call the LLM with provider fallback
    3. Extract the JSON object (bare, fenced, or embedded in prose)
    4. Validate each fix; drop malformed ones, empty anchors and no-op edits
    5. Drop fixes identical to one already applied in a previous attempt
    6. Sort by confidence, highest first

Failure Semantics:
    Every failure raises FixGenerationError with a GenerationErrorKind so the
    loop can record it as an ORACLE_ERROR attempt. The agent never decides
    viability; the loop's confidence floor does.

The FixAgent does NOT:
    - Apply fixes (that's the refinement loop's job)
    - Run tests (that's the executor's job)
"""
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from refiner.llm.client import LLMClient, extract_json_object
from refiner.llm.router import LLMRouter
from refiner.llm.prompts import REFINEMENT_SYSTEM_PROMPT, build_fix_user_prompt
from refiner.models.error_info import ErrorInfo, GenerationErrorKind
from refiner.models.refinement import (
    CodeFix,
    FixGenerationOptions,
    FixResponse,
    FixType,
    RefinementAttempt,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class FixGenerationError(Exception):
    """
    The oracle could not produce a usable FixResponse.

    ``token_usage`` is what the failed call still cost (zero when no
    provider answered).
    """

    def __init__(
        self,
        kind: GenerationErrorKind,
        message: str,
        token_usage: Optional[TokenUsage] = None,
    ) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.token_usage = token_usage or TokenUsage()


# ---------------------------------------------------------------------------
# Response Parsing
# ---------------------------------------------------------------------------
_FIX_TYPE_VALUES = {t.value for t in FixType}


def _coerce_fix(raw: Dict[str, Any]) -> Optional[CodeFix]:
    data = dict(raw)
    if data.get("type") not in _FIX_TYPE_VALUES:
        data["type"] = FixType.OTHER.value
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    data["confidence"] = max(0.0, min(1.0, confidence))
    if not isinstance(data.get("location"), dict):
        data.pop("location", None)

    try:
        fix = CodeFix.model_validate(data)
    except ValidationError as e:
        logger.debug("Dropping malformed fix: %s", e)
        return None

    if not fix.original_code.strip():
        logger.debug("Dropping fix with empty anchor")
        return None
    if fix.original_code == fix.fixed_code:
        logger.debug("Dropping no-op fix")
        return None
    return fix


def parse_fix_response(raw: str, token_usage: Optional[TokenUsage] = None) -> FixResponse:
    """
    Turn a model reply into a FixResponse.

    Raises
    ------
    FixGenerationError
        PARSE_ERROR when no JSON object can be found, VALIDATION_ERROR when
        ``fixes`` is not a list.
    """
    data = extract_json_object(raw)
    if data is None:
        raise FixGenerationError(GenerationErrorKind.PARSE_ERROR, "Response contains no JSON object", token_usage)

    raw_fixes = data.get("fixes", [])
    if not isinstance(raw_fixes, list):
        raise FixGenerationError(GenerationErrorKind.VALIDATION_ERROR, "'fixes' must be a list", token_usage)

    fixes = [f for f in (_coerce_fix(r) for r in raw_fixes if isinstance(r, dict)) if f is not None]
    fixes.sort(key=lambda f: f.confidence, reverse=True)

    reasoning = data.get("reasoning", "")
    return FixResponse(
        fixes=fixes,
        reasoning=reasoning if isinstance(reasoning, str) else str(reasoning),
        token_usage=token_usage or TokenUsage(),
    )


def _applied_pairs(attempts: List[RefinementAttempt]) -> Set[Tuple[str, str]]:
    return {
        (a.applied_fix.original_code, a.applied_fix.fixed_code)
        for a in attempts
        if a.applied_fix is not None
    }


# ---------------------------------------------------------------------------
# Fix Agent
# ---------------------------------------------------------------------------
class FixAgent:
    """
    Proposes anchor/replacement fixes for failing Playwright tests.

    Parameters
    ----------
    router : LLMRouter or None
        Provider router (auto-created if not provided).
    client : LLMClient or None
        HTTP client (auto-created if not provided).
    test_file : str
        Path shown to the model for location hints.
    """

    def __init__(
        self,
        router: Optional[LLMRouter] = None,
        client: Optional[LLMClient] = None,
        test_file: str = "",
    ) -> None:
        self.router = router or LLMRouter()
        self.client = client or LLMClient()
        self.test_file = test_file

    async def generate_fix(
        self,
        code: str,
        errors: List[ErrorInfo],
        previous_attempts: List[RefinementAttempt],
        options: Optional[FixGenerationOptions] = None,
    ) -> FixResponse:
        """
        Ask the LLM for fixes to the current failures.

        Parameters
        ----------
        code : str
            Current committed test source.
        errors : list[ErrorInfo]
            Failures of the current code.
        previous_attempts : list[RefinementAttempt]
            Session history; already-applied fixes are filtered from the reply.
        options : FixGenerationOptions or None
            Token ceiling, temperature and system prompt override.

        Returns
        -------
        FixResponse

        Raises
        ------
        FixGenerationError
        """
        options = options or FixGenerationOptions()
        system_prompt = options.system_prompt or REFINEMENT_SYSTEM_PROMPT
        user_prompt = build_fix_user_prompt(code, errors, previous_attempts, test_file=self.test_file)

        response = await self.client.call_with_fallback(
            user_prompt=user_prompt,
            system_prompt=system_prompt,
            router=self.router,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
        )
        if not response.success:
            raise FixGenerationError(GenerationErrorKind.LLM_ERROR, response.error or "LLM call failed",
                                     response.token_usage)

        result = parse_fix_response(response.text, response.token_usage)

        seen = _applied_pairs(previous_attempts)
        fresh = [f for f in result.fixes if (f.original_code, f.fixed_code) not in seen]
        if len(fresh) < len(result.fixes):
            logger.info("Dropped %d fix(es) already applied earlier", len(result.fixes) - len(fresh))

        logger.info(
            "Fix agent (%s): %d fix(es), %d tokens",
            response.provider_name, len(fresh), response.token_usage.total_tokens,
        )
        return result.model_copy(update={"fixes": fresh})

    async def generate_sample(self, prompt: str, temperature: float) -> Tuple[str, TokenUsage]:
        """
        Generate one free-form code sample (MultiSampler generator signature).

        Code fences around the reply are stripped.
        """
        response = await self.client.call_with_fallback(
            user_prompt=prompt,
            system_prompt="You write Playwright tests in TypeScript. Reply with code only.",
            router=self.router,
            temperature=temperature,
        )
        if not response.success:
            raise FixGenerationError(GenerationErrorKind.LLM_ERROR, response.error or "LLM call failed",
                                     response.token_usage)
        return _strip_fence(response.text), response.token_usage

    async def close(self) -> None:
        await self.client.close()


def _strip_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        cleaned = cleaned[first_newline + 1:] if first_newline != -1 else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3].rstrip()
    return cleaned
