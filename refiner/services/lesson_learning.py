"""
Lesson Learning
===============
Turns refinement outcomes into lessons and lessons back into recommendations.

Write side:
    - lesson_from_fix / extract_lessons_from_session - verified fixes → lessons
    - learn_from_refinement - raw (error, before, after) → error-fix lesson
    - apply_learned_fix - feed a reused lesson's outcome back into the store
    - apply_confidence_decay / decay_store - age-based confidence shrink
    - find_promotion_candidates - lessons proven enough to become patterns

Read side:
    - get_suggested_fixes - store lookup by error context
    - recommend_lessons - relevance-ranked lessons for a set of errors
    - aggregate_lessons - group lessons by (type, solution pattern)
    - lessons_to_patterns - promoted / strong lessons as scorer patterns

Fix type → lesson type:
    SELECTOR_CHANGE, LOCATOR_STRATEGY_CHANGED, FRAME_CONTEXT_ADDED → selector
    WAIT_ADDED, TIMEOUT_INCREASED, RETRY_ADDED                     → wait
    FLOW_REORDERED                                                 → flow
    anything else                                                  → error-fix
"""
import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from refiner.core.constants import (
    DECAY_BUCKET_DAYS,
    DECAY_RATE,
    LESSON_CONFIDENCE_FLOOR,
    LESSON_LEARNED_CONFIDENCE,
    VERIFICATION_CONFIDENCE,
)
from refiner.models.confidence import CodePattern, PatternSource
from refiner.models.error_info import ErrorCategory, ErrorInfo
from refiner.models.lesson import (
    FixKind,
    Lesson,
    LessonContext,
    LessonFix,
    LessonRecommendation,
    LessonType,
)
from refiner.models.refinement import AttemptOutcome, CodeFix, FixType, RefinementSession
from refiner.services.lesson_store import LessonStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fix Type Mapping
# ---------------------------------------------------------------------------
_FIX_TO_LESSON: Dict[FixType, LessonType] = {
    FixType.SELECTOR_CHANGE: LessonType.SELECTOR,
    FixType.LOCATOR_STRATEGY_CHANGED: LessonType.SELECTOR,
    FixType.FRAME_CONTEXT_ADDED: LessonType.SELECTOR,
    FixType.WAIT_ADDED: LessonType.WAIT,
    FixType.TIMEOUT_INCREASED: LessonType.WAIT,
    FixType.RETRY_ADDED: LessonType.WAIT,
    FixType.FLOW_REORDERED: LessonType.FLOW,
}

_LESSON_TO_FIX: Dict[LessonType, FixType] = {
    LessonType.SELECTOR: FixType.SELECTOR_CHANGE,
    LessonType.WAIT: FixType.WAIT_ADDED,
    LessonType.FLOW: FixType.FLOW_REORDERED,
    LessonType.ERROR_FIX: FixType.OTHER,
}

# Narrower than get_suggested_fix_types: only fix types a lesson can stand for
_RELEVANT_FIX_TYPES: Dict[ErrorCategory, List[FixType]] = {
    ErrorCategory.SELECTOR_NOT_FOUND: [FixType.SELECTOR_CHANGE, FixType.LOCATOR_STRATEGY_CHANGED],
    ErrorCategory.TIMEOUT: [FixType.WAIT_ADDED, FixType.TIMEOUT_INCREASED],
    ErrorCategory.ASSERTION_FAILED: [FixType.ASSERTION_MODIFIED],
}


def map_fix_type_to_lesson_type(fix_type: FixType) -> LessonType:
    return _FIX_TO_LESSON.get(fix_type, LessonType.ERROR_FIX)


# ---------------------------------------------------------------------------
# Solution Pattern Extraction
# ---------------------------------------------------------------------------
_SELECTOR_MARKERS = [
    ("getByTestId", "testid"), ("getByRole", "role"), ("getByText", "text"),
    ("getByLabel", "label"), ("getByPlaceholder", "placeholder"), ("locator", "css"),
]
_WAIT_MARKERS = [
    ("waitForSelector", "waitForSelector"), ("waitForLoadState", "waitForLoadState"),
    ("waitForResponse", "waitForResponse"), ("waitForTimeout", "waitForTimeout"),
    ("toBeVisible", "expectVisible"),
]
_ASSERTION_MARKERS = [
    ("toHaveText", "toHaveText"), ("toHaveValue", "toHaveValue"), ("toBeVisible", "toBeVisible"),
    ("toBeEnabled", "toBeEnabled"), ("toHaveCount", "toHaveCount"),
]


def _first_marker(code: str, markers: List[Tuple[str, str]]) -> str:
    for needle, name in markers:
        if needle in code:
            return name
    return "unknown"


def extract_solution_pattern(fix: CodeFix) -> str:
    """Generalisable name for what a fix did (e.g. "testid", "waitForLoadState")."""
    if fix.type == FixType.SELECTOR_CHANGE:
        return _first_marker(fix.fixed_code, _SELECTOR_MARKERS)
    if fix.type == FixType.WAIT_ADDED:
        return _first_marker(fix.fixed_code, _WAIT_MARKERS)
    if fix.type == FixType.ASSERTION_MODIFIED:
        return _first_marker(fix.fixed_code, _ASSERTION_MARKERS)
    return fix.type.value


_GET_BY_RE = re.compile(r"""getBy\w+\(['"]([^'"]+)['"]\)""")
_TESTID_RE = re.compile(r"""data-testid[=~*^$]*["']?([^"'\]]+)""")
_ROLE_RE = re.compile(r"""role=["']?([^"'\]]+)""")
_CLASS_RE = re.compile(r"\.([a-zA-Z0-9_-]+)")


def describe_element(fix: CodeFix, error: Optional[ErrorInfo]) -> str:
    """Human label for the element a fix touched."""
    if fix.location.step_description:
        return fix.location.step_description
    if error is not None and error.selector:
        for pattern in (_TESTID_RE, _ROLE_RE, _CLASS_RE):
            match = pattern.search(error.selector)
            if match:
                return match.group(1)
        return error.selector[:30]
    match = _GET_BY_RE.search(fix.fixed_code)
    if match:
        return match.group(1)
    return "unknown element"


# ---------------------------------------------------------------------------
# Write Side
# ---------------------------------------------------------------------------
def lesson_from_fix(
    store: LessonStore,
    journey_id: str,
    fix: CodeFix,
    error: Optional[ErrorInfo],
    verified: bool = True,
) -> Lesson:
    """
    Record a fix that worked as a lesson (merged with an existing identical one).

    The identity pattern is "<error category>:<solution pattern>" so the same
    kind of repair for the same kind of failure accumulates on one record.
    """
    lesson_type = map_fix_type_to_lesson_type(fix.type)
    category = error.category.value if error is not None else ErrorCategory.UNKNOWN.value
    pattern = f"{category}:{extract_solution_pattern(fix)}"

    lesson = store.add_lesson(
        lesson_type,
        pattern,
        LessonContext(
            error_type=category,
            error_message=error.message[:200] if error is not None else None,
            component_type=describe_element(fix, error),
            selector=error.selector if error is not None else None,
            journey_id=journey_id,
        ),
        LessonFix(
            kind=FixKind.REPLACE,
            pattern=fix.original_code,
            replacement=fix.fixed_code,
            explanation=fix.reasoning or fix.description,
            fix_type=fix.type.value,
        ),
        initial_confidence=fix.confidence,
        verified=verified,
    )
    return lesson


def extract_lessons_from_session(
    store: LessonStore,
    session: RefinementSession,
    min_confidence: float = VERIFICATION_CONFIDENCE,
    include_unverified: bool = False,
    max_lessons: int = 10,
) -> List[Lesson]:
    """
    Replay a finished session and record lessons for its winning fixes.

    Only attempts with outcome success/partial and an applied fix at or above
    ``min_confidence`` count. Partial outcomes are unverified and skipped
    unless ``include_unverified``.
    """
    lessons: List[Lesson] = []
    for attempt in session.attempts:
        if attempt.outcome not in (AttemptOutcome.SUCCESS, AttemptOutcome.PARTIAL):
            continue
        fix = attempt.applied_fix
        if fix is None or fix.confidence < min_confidence:
            continue
        verified = attempt.outcome == AttemptOutcome.SUCCESS
        if not verified and not include_unverified:
            continue
        error = attempt.errors[0] if attempt.errors else None
        lessons.append(lesson_from_fix(store, session.journey_id, fix, error, verified=verified))
        if len(lessons) >= max_lessons:
            break
    return lessons


def learn_from_refinement(
    store: LessonStore,
    error: ErrorInfo,
    original_code: str,
    fixed_code: str,
    step_type: Optional[str] = None,
) -> Lesson:
    """
    Record a raw before/after repair as an error-fix lesson and count it as one success.

    Fix kind: ``insert`` when there was no original code, ``wrap`` when the
    fix is more than 1.5x the original, else ``replace``.
    """
    if not original_code.strip():
        kind = FixKind.INSERT
    elif len(fixed_code) > len(original_code) * 1.5:
        kind = FixKind.WRAP
    else:
        kind = FixKind.REPLACE

    lesson = store.add_lesson(
        LessonType.ERROR_FIX,
        f"{error.category.value}:{error.message[:50]}",
        LessonContext(
            error_type=error.category.value,
            error_message=error.message[:200],
            step_type=step_type,
            selector=error.selector,
        ),
        LessonFix(
            kind=kind,
            pattern=original_code,
            replacement=fixed_code,
            explanation=f"Fix for {error.category.value} error",
        ),
        initial_confidence=LESSON_LEARNED_CONFIDENCE,
        verified=True,
    )
    store.record_success(lesson.id)
    return lesson


def apply_learned_fix(store: LessonStore, lesson_id: str, success: bool) -> Optional[Lesson]:
    """Feed the outcome of reusing a lesson back into its confidence."""
    if success:
        return store.record_success(lesson_id)
    return store.record_failure(lesson_id)


def apply_lesson_to_code(code: str, lesson: Lesson) -> Optional[str]:
    """
    Apply a lesson's stored fix to ``code``.

    Returns None when the lesson's anchor text is absent (same exact-substring
    rule the refinement loop uses). Insert lessons append the replacement.
    """
    fix = lesson.fix
    if fix.kind == FixKind.INSERT or not fix.pattern:
        return code + ("\n" if code and not code.endswith("\n") else "") + fix.replacement
    if fix.pattern not in code:
        return None
    return code.replace(fix.pattern, fix.replacement, 1)


# ---------------------------------------------------------------------------
# Decay
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ConfidenceAdjustment:
    lesson_id: str
    old_confidence: float
    new_confidence: float
    reason: str


def apply_confidence_decay(
    lessons: List[Lesson],
    now: Optional[datetime] = None,
    decay_rate: float = DECAY_RATE,
) -> List[ConfidenceAdjustment]:
    """
    Compute age-based decay for lessons older than 30 days.

    Confidence is multiplied by (1 - decay_rate) per full 30-day bucket of age,
    never dropping below the store floor. Lessons are not modified here.
    """
    now = now or datetime.now(timezone.utc)
    adjustments: List[ConfidenceAdjustment] = []

    for lesson in lessons:
        age_days = (now - lesson.created_at).total_seconds() / 86400
        if age_days <= DECAY_BUCKET_DAYS:
            continue
        factor = (1 - decay_rate) ** int(age_days // DECAY_BUCKET_DAYS)
        new_confidence = max(LESSON_CONFIDENCE_FLOOR, lesson.confidence * factor)
        if new_confidence != lesson.confidence:
            adjustments.append(ConfidenceAdjustment(
                lesson_id=lesson.id,
                old_confidence=lesson.confidence,
                new_confidence=new_confidence,
                reason="decay",
            ))
    return adjustments


def decay_store(store: LessonStore, now: Optional[datetime] = None) -> List[ConfidenceAdjustment]:
    """Apply decay adjustments to the store's lessons in place (caller saves)."""
    adjustments = apply_confidence_decay(store.lessons, now)
    for adj in adjustments:
        lesson = store.get(adj.lesson_id)
        if lesson is not None:
            lesson.confidence = adj.new_confidence
    if adjustments:
        logger.info("Decayed confidence of %d lesson(s)", len(adjustments))
    return adjustments


# ---------------------------------------------------------------------------
# Read Side
# ---------------------------------------------------------------------------
def get_suggested_fixes(
    store: LessonStore,
    error: ErrorInfo,
    step_type: Optional[str] = None,
    min_confidence: float = 0.5,
) -> List[Lesson]:
    return store.find_lessons_for_context(
        LessonContext(error_type=error.category.value, error_message=error.message, step_type=step_type),
        min_confidence=min_confidence,
    )


def selector_strategy(selector: str) -> str:
    if "data-testid" in selector:
        return "testid"
    if "role=" in selector:
        return "role"
    if "aria-label" in selector:
        return "label"
    if re.match(r"^[.#]", selector):
        return "css"
    return "other"


_ATTRIBUTE_STRATEGIES = ("testid", "role", "label")


def selector_similarity(first: str, second: str) -> float:
    a, b = selector_strategy(first), selector_strategy(second)
    if a == b:
        return 0.8
    if a in _ATTRIBUTE_STRATEGIES and b in _ATTRIBUTE_STRATEGIES:
        return 0.5
    return 0.2


def _relevance(lesson: Lesson, error: ErrorInfo) -> Tuple[float, List[str]]:
    score = 0.0
    reasons: List[str] = []
    if lesson.context.error_type == error.category.value:
        score += 0.5
        reasons.append(f"Same error type: {error.category.value}")
    if lesson.context.selector and error.selector:
        score += 0.3 * selector_similarity(lesson.context.selector, error.selector)
        reasons.append("Similar selector pattern")
    if _LESSON_TO_FIX[lesson.type] in _RELEVANT_FIX_TYPES.get(error.category, [FixType.OTHER]):
        score += 0.2
    reasons.append(f"Solution: {lesson.pattern}")
    return score, reasons


def recommend_lessons(
    errors: List[ErrorInfo],
    lessons: List[Lesson],
    max_recommendations: int = 5,
) -> List[LessonRecommendation]:
    """
    Rank verified, confident lessons by relevance to the current errors.

    Relevance = 0.5 * same category + 0.3 * selector-strategy similarity
    + 0.2 * fix-type alignment, multiplied by the lesson's own confidence.
    Each lesson is recommended at most once (for the first error it fits).
    """
    recommendations: List[LessonRecommendation] = []
    for lesson in lessons:
        if lesson.confidence < 0.6 or not lesson.verified:
            continue
        for error in errors:
            relevance, reasons = _relevance(lesson, error)
            if relevance > 0:
                recommendations.append(LessonRecommendation(
                    lesson=lesson,
                    relevance=relevance * lesson.confidence,
                    reasons=reasons,
                ))
                break

    recommendations.sort(key=lambda r: r.relevance, reverse=True)
    return recommendations[:max_recommendations]


@dataclass
class AggregatedPattern:
    pattern: str
    occurrences: int
    average_confidence: float
    contexts: List[str] = field(default_factory=list)
    representative_code: str = ""


def aggregate_lessons(lessons: List[Lesson]) -> List[AggregatedPattern]:
    """Group lessons by (type, solution pattern), most frequent first."""
    groups: Dict[str, dict] = {}
    for lesson in lessons:
        solution = lesson.pattern.split(":", 1)[-1]
        key = f"{lesson.type.value}:{solution}"
        group = groups.setdefault(key, {"n": 0, "conf": 0.0, "contexts": [], "codes": []})
        group["n"] += 1
        group["conf"] += lesson.confidence
        context = lesson.context.error_type or "UNKNOWN"
        if context not in group["contexts"]:
            group["contexts"].append(context)
        group["codes"].append(lesson.fix.replacement)

    aggregated = [
        AggregatedPattern(
            pattern=key,
            occurrences=g["n"],
            average_confidence=g["conf"] / g["n"],
            contexts=g["contexts"],
            representative_code=g["codes"][0] if g["codes"] else "",
        )
        for key, g in groups.items()
    ]
    return sorted(aggregated, key=lambda a: a.occurrences, reverse=True)


def find_promotion_candidates(
    lessons: List[Lesson],
    min_confidence: float = 0.9,
    min_successes: int = 5,
) -> List[Lesson]:
    return [
        l for l in lessons
        if not l.promoted and l.confidence >= min_confidence and l.success_count >= min_successes
    ]


def lessons_to_patterns(lessons: List[Lesson], min_confidence: float = 0.7) -> List[CodePattern]:
    """
    Expose strong lessons as learned patterns for the pattern dimension.

    A lesson's replacement code becomes a literal (escaped) regex, so code
    that reuses a proven fix is recognised as a learned match.
    """
    patterns: List[CodePattern] = []
    for lesson in lessons:
        replacement = lesson.fix.replacement.strip()
        if not replacement or "\n" in replacement:
            continue
        if lesson.confidence < min_confidence and not lesson.promoted:
            continue
        patterns.append(CodePattern(
            id=f"llkb-{lesson.id}",
            name=lesson.pattern,
            regex=re.escape(replacement),
            category=lesson.type.value,
            confidence=round(lesson.confidence, 4),
            source=PatternSource.LLKB,
        ))
    return patterns
