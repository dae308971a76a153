"""
Pattern Matcher
===============
Matches candidate code against a library of known-good Playwright idioms.

Pattern sources:
    builtin   - BUILTIN_PATTERNS below
    glossary  - project patterns loaded from YAML (load_glossary_patterns)
    llkb      - patterns derived from the lesson store (lessons_to_patterns)

Score:
    0.4 * average match confidence
  + 0.2 * novelty      (0.5 base, up to +0.5 for glossary/llkb matches)
  + 0.2 * consistency  (penalises switching action categories line to line)
  + 0.2 * (1 - risk)   (unmatched high-risk calls, e.g. page.evaluate)
    x 0.8 when fewer than 3 patterns matched

Glossary YAML shape:

    patterns:
      - id: login-helper
        name: Login Helper
        category: authentication
        regex: "loginAs\\s*\\("        # or  regexes: [..., ...]
        confidence: 0.9
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import yaml

from refiner.models.confidence import CodePattern, DimensionScore, PatternSource, ScoreDimension, SubScore

logger = logging.getLogger(__name__)


PATTERN_CATEGORIES = [
    "navigation", "interaction", "assertion", "wait",
    "form", "authentication", "data", "utility",
]


def _builtin(pattern_id: str, name: str, category: str, regexes: List[str], confidence: float) -> CodePattern:
    return CodePattern(
        id=pattern_id,
        name=name,
        regex="|".join(f"(?:{r})" for r in regexes),
        category=category,
        confidence=confidence,
        source=PatternSource.BUILTIN,
    )


# ---------------------------------------------------------------------------
# Built-in Patterns
# ---------------------------------------------------------------------------
BUILTIN_PATTERNS: List[CodePattern] = [
    # Navigation
    _builtin("nav-goto", "Page Navigation", "navigation", [r"page\.goto\s*\("], 0.95),
    _builtin("nav-reload", "Page Reload", "navigation", [r"page\.reload\s*\("], 0.95),
    _builtin("nav-back", "Navigate Back", "navigation", [r"page\.goBack\s*\(", r"page\.goForward\s*\("], 0.95),

    # Interaction
    _builtin("click-locator", "Locator Click", "interaction", [r"\.click\s*\(\s*\)", r"locator\([^)]+\)\.click"], 0.9),
    _builtin("fill-locator", "Locator Fill", "interaction", [r"\.fill\s*\([^)]+\)", r"locator\([^)]+\)\.fill"], 0.9),
    _builtin("type-locator", "Locator Type", "interaction", [r"\.pressSequentially\s*\(", r"\.type\s*\("], 0.85),
    _builtin("select-option", "Select Option", "interaction", [r"\.selectOption\s*\("], 0.9),
    _builtin("check-uncheck", "Checkbox Toggle", "interaction",
             [r"\.check\s*\(\s*\)", r"\.uncheck\s*\(\s*\)", r"\.setChecked\s*\("], 0.9),
    _builtin("hover", "Hover Action", "interaction", [r"\.hover\s*\(\s*\)"], 0.9),
    _builtin("focus", "Focus Element", "interaction", [r"\.focus\s*\(\s*\)"], 0.9),
    _builtin("keyboard", "Keyboard Action", "interaction", [r"""\.press\s*\(['"]""", r"keyboard\.press\s*\("], 0.85),

    # Assertions
    _builtin("expect-visible", "Visibility Assertion", "assertion",
             [r"expect\([^)]+\)\.toBeVisible", r"expect\([^)]+\)\.toBeHidden"], 0.95),
    _builtin("expect-text", "Text Assertion", "assertion",
             [r"expect\([^)]+\)\.toHaveText", r"expect\([^)]+\)\.toContainText"], 0.9),
    _builtin("expect-value", "Value Assertion", "assertion", [r"expect\([^)]+\)\.toHaveValue"], 0.9),
    _builtin("expect-url", "URL Assertion", "assertion", [r"expect\(page\)\.toHaveURL"], 0.95),
    _builtin("expect-title", "Title Assertion", "assertion", [r"expect\(page\)\.toHaveTitle"], 0.95),
    _builtin("expect-count", "Count Assertion", "assertion", [r"expect\([^)]+\)\.toHaveCount"], 0.9),
    _builtin("expect-enabled", "Enabled State Assertion", "assertion",
             [r"expect\([^)]+\)\.toBeEnabled", r"expect\([^)]+\)\.toBeDisabled"], 0.9),
    _builtin("expect-checked", "Checked State Assertion", "assertion", [r"expect\([^)]+\)\.toBeChecked"], 0.9),

    # Waits
    _builtin("wait-selector", "Wait for Selector", "wait", [r"\.waitFor\s*\(\s*\{", r"locator\.waitFor"], 0.85),
    _builtin("wait-load-state", "Wait for Load State", "wait", [r"page\.waitForLoadState\s*\("], 0.9),
    _builtin("wait-response", "Wait for Response", "wait", [r"page\.waitForResponse\s*\("], 0.9),
    _builtin("wait-request", "Wait for Request", "wait", [r"page\.waitForRequest\s*\("], 0.9),

    # Forms
    _builtin("form-submit", "Form Submit", "form",
             [r"""(?i:getByRole\(['"]button['"].*submit)""", r"""type=['"]submit['"]"""], 0.85),

    # Data
    _builtin("table-row", "Table Row Access", "data", [r"""getByRole\(['"]row['"]""", r"""locator\(['"]tr['"]\)"""], 0.85),
    _builtin("table-cell", "Table Cell Access", "data", [r"""getByRole\(['"]cell['"]""", r"""locator\(['"]td['"]\)"""], 0.85),

    # Utility
    _builtin("screenshot", "Screenshot", "utility", [r"page\.screenshot\s*\("], 0.95),
    _builtin("test-step", "Test Step", "utility", [r"test\.step\s*\("], 0.95),
]

HIGH_RISK_METHODS = {"evaluate", "evaluateHandle", "addScriptTag", "setContent"}
MEDIUM_RISK_METHODS = {"waitForTimeout", "waitForFunction", "route", "unroute"}
_RISK_ORDER = {"high": 0, "medium": 1, "low": 2}

# (regex, element type) for calls that should be covered by some pattern
_ACTION_PATTERNS = [
    (re.compile(r"page\.(\w+)\s*\("), "page method"),
    (re.compile(r"locator\([^)]+\)\.(\w+)\s*\("), "locator method"),
    (re.compile(r"getBy\w+\([^)]+\)\.(\w+)\s*\("), "locator method"),
    (re.compile(r"expect\([^)]+\)\.(\w+)"), "assertion"),
]


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class MatchedPattern:
    pattern_id: str
    pattern_name: str
    category: str
    confidence: float
    line: int
    source: PatternSource


@dataclass(frozen=True)
class UnmatchedElement:
    element: str
    reason: str
    suggested_patterns: List[str]
    risk_level: str


@dataclass
class PatternMatchResult:
    score: float
    matched_patterns: List[MatchedPattern]
    unmatched_elements: List[UnmatchedElement]
    novelty_score: float
    consistency_score: float
    stats: Dict[str, object] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Glossary Loading
# ---------------------------------------------------------------------------
def load_glossary_patterns(path: str) -> List[CodePattern]:
    """
    Read project glossary patterns from a YAML file.

    Entries with a missing id or an invalid regex are skipped (logged).
    A missing or unreadable file yields an empty list.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not load glossary patterns from %s: %s", path, e)
        return []

    entries = data.get("patterns", []) if isinstance(data, dict) else []
    patterns: List[CodePattern] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        regexes = entry.get("regexes") or ([entry["regex"]] if entry.get("regex") else [])
        combined = "|".join(f"(?:{r})" for r in regexes)
        try:
            re.compile(combined)
        except re.error as e:
            logger.warning("Skipping glossary pattern %s: invalid regex (%s)", entry["id"], e)
            continue
        if not combined:
            continue
        patterns.append(CodePattern(
            id=str(entry["id"]),
            name=str(entry.get("name", entry["id"])),
            regex=combined,
            category=str(entry.get("category", "utility")),
            confidence=float(entry.get("confidence", 0.8)),
            source=PatternSource.GLOSSARY,
        ))

    logger.info("Loaded %d glossary pattern(s) from %s", len(patterns), path)
    return patterns


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------
def _compile(pattern: CodePattern) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern.regex, re.MULTILINE)
    except re.error as e:
        logger.warning("Ignoring pattern %s with invalid regex: %s", pattern.id, e)
        return None


def _risk_level(method: str) -> str:
    if method in HIGH_RISK_METHODS:
        return "high"
    if method in MEDIUM_RISK_METHODS:
        return "medium"
    return "low"


def _suggested_patterns(method: str, patterns: List[CodePattern]) -> List[str]:
    needle = method.lower()
    return [p.name for p in patterns if needle in p.regex.lower()][:3]


def _find_unmatched(code: str, matched: List[MatchedPattern], patterns: List[CodePattern]) -> List[UnmatchedElement]:
    covered_lines = {m.line for m in matched}
    seen = set()
    unmatched: List[UnmatchedElement] = []

    for regex, element_type in _ACTION_PATTERNS:
        for match in regex.finditer(code):
            line = code.count("\n", 0, match.start()) + 1
            element = f"{element_type}: {match.group(1)}"
            if line in covered_lines or element in seen:
                continue
            seen.add(element)
            unmatched.append(UnmatchedElement(
                element=element,
                reason="No matching pattern found",
                suggested_patterns=_suggested_patterns(match.group(1), patterns),
                risk_level=_risk_level(match.group(1)),
            ))

    return sorted(unmatched, key=lambda u: _RISK_ORDER[u.risk_level])


def _novelty_score(matched: List[MatchedPattern]) -> float:
    if not matched:
        return 0.5
    learned = sum(1 for m in matched if m.source in (PatternSource.LLKB, PatternSource.GLOSSARY))
    return 0.5 + (learned / len(matched)) * 0.5


def _consistency_score(matched: List[MatchedPattern]) -> float:
    if len(matched) < 2:
        return 1.0
    categories = [m.category for m in matched]
    transitions = sum(1 for prev, cur in zip(categories, categories[1:]) if prev != cur)
    return max(0.6, 1 - (transitions / (len(categories) - 1)) * 0.4)


def _pattern_score(
    matched: List[MatchedPattern],
    unmatched: List[UnmatchedElement],
    novelty: float,
    consistency: float,
) -> float:
    avg_confidence = sum(m.confidence for m in matched) / len(matched) if matched else 0.5
    risk_penalty = (
        sum(1 for u in unmatched if u.risk_level == "high") * 0.15
        + sum(1 for u in unmatched if u.risk_level == "medium") * 0.05
    )
    score = avg_confidence * 0.4 + novelty * 0.2 + consistency * 0.2 + (1 - risk_penalty) * 0.2
    if len(matched) < 3:
        score *= 0.8
    return max(0.0, min(1.0, score))


def get_pattern_categories(matched: Iterable[MatchedPattern]) -> Dict[str, int]:
    counts = {category: 0 for category in PATTERN_CATEGORIES}
    for m in matched:
        counts[m.category] = counts.get(m.category, 0) + 1
    return counts


def has_minimum_patterns(matched: List[MatchedPattern], requirements: Dict[str, int]) -> bool:
    counts = get_pattern_categories(matched)
    return all(counts.get(category, 0) >= minimum for category, minimum in requirements.items())


def match_patterns(
    code: str,
    custom_patterns: Optional[List[CodePattern]] = None,
    learned_patterns: Optional[List[CodePattern]] = None,
    include_builtins: bool = True,
) -> PatternMatchResult:
    """
    Match ``code`` against built-in, custom and learned patterns.

    Each pattern counts at most once per line. Matches are ordered by line so
    the consistency score reflects the order actions appear in the test.
    """
    patterns = (list(BUILTIN_PATTERNS) if include_builtins else []) \
        + list(custom_patterns or []) + list(learned_patterns or [])

    matched: List[MatchedPattern] = []
    seen = set()
    for pattern in patterns:
        regex = _compile(pattern)
        if regex is None:
            continue
        for match in regex.finditer(code):
            line = code.count("\n", 0, match.start()) + 1
            if (pattern.id, line) in seen:
                continue
            seen.add((pattern.id, line))
            matched.append(MatchedPattern(
                pattern_id=pattern.id,
                pattern_name=pattern.name,
                category=pattern.category,
                confidence=pattern.confidence,
                line=line,
                source=pattern.source,
            ))
    matched.sort(key=lambda m: m.line)

    unmatched = _find_unmatched(code, matched, patterns)
    novelty = _novelty_score(matched)
    consistency = _consistency_score(matched)

    return PatternMatchResult(
        score=_pattern_score(matched, unmatched, novelty, consistency),
        matched_patterns=matched,
        unmatched_elements=unmatched,
        novelty_score=novelty,
        consistency_score=consistency,
        stats={
            "total": len(matched) + len(unmatched),
            "matched": len(matched),
            "unmatched": len(unmatched),
            "by_category": get_pattern_categories(matched),
        },
    )


def _pattern_reasoning(result: PatternMatchResult) -> str:
    count = len(result.matched_patterns)
    if count == 0:
        reasons = ["No recognized patterns found"]
    elif count < 5:
        reasons = [f"{count} patterns matched (low coverage)"]
    else:
        reasons = [f"{count} patterns matched"]

    llkb = sum(1 for m in result.matched_patterns if m.source == PatternSource.LLKB)
    if llkb:
        reasons.append(f"{llkb} LLKB patterns used")
    high_risk = sum(1 for u in result.unmatched_elements if u.risk_level == "high")
    if high_risk:
        reasons.append(f"{high_risk} high-risk unmatched elements")
    if result.consistency_score < 0.7:
        reasons.append("Pattern usage inconsistent")
    return "; ".join(reasons)


def create_pattern_dimension_score(result: PatternMatchResult, weight: float) -> DimensionScore:
    matched, unmatched = len(result.matched_patterns), len(result.unmatched_elements)
    return DimensionScore(
        dimension=ScoreDimension.PATTERN,
        score=result.score,
        weight=weight,
        reasoning=_pattern_reasoning(result),
        sub_scores=[
            SubScore(name="Pattern Coverage", score=min(1.0, matched / 10), details=f"{matched} patterns matched"),
            SubScore(name="Novelty", score=result.novelty_score,
                     details=f"Novelty score: {round(result.novelty_score * 100)}%"),
            SubScore(name="Consistency", score=result.consistency_score,
                     details=f"Consistency score: {round(result.consistency_score * 100)}%"),
            SubScore(name="Unmatched Risk", score=max(0.0, 1 - unmatched * 0.2),
                     details=f"{unmatched} unmatched elements"),
        ],
    )
