"""
Selector Analyzer
=================
Scores the stability of the locators a test uses.

Strategy ranking (stability):
    testId 1.0 > role 0.9 > label 0.85 > placeholder / altText 0.75 >
    title 0.7 > text 0.65 > chain 0.55 > css 0.5 > nth 0.4-0.45 > xpath 0.3

Each locator expression is claimed by the first table entry that matches it,
so `locator('[data-testid=x]')` counts as testId and `locator('//div')` as
xpath, never additionally as css.

Score:
    0.40 * mean stability (after fragility penalties)
  + 0.20 * accessible-strategy ratio (role, label, altText, title)
  + 0.25 * testId ratio
  + 0.15 * fragility-free ratio
    x 0.8 when more than half the selectors are css / xpath / nth
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from refiner.models.confidence import DimensionScore, ScoreDimension, SubScore

logger = logging.getLogger(__name__)


STRATEGIES = [
    "testId", "role", "text", "label", "placeholder", "title",
    "altText", "css", "xpath", "nth", "chain",
]
ACCESSIBLE_STRATEGIES = {"role", "label", "altText", "title"}
FRAGILE_STRATEGIES = {"css", "xpath", "nth"}


# ---------------------------------------------------------------------------
# Strategy Table: (strategy, regex, stability)
# ---------------------------------------------------------------------------
SELECTOR_PATTERNS: List[Tuple[str, re.Pattern, float]] = [
    ("testId", re.compile(r"""getByTestId\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 1.0),
    ("testId", re.compile(r"""locator\s*\(\s*['"]\[data-testid=['"]?([^'"\]]+)['"]?\]['"]\s*\)"""), 0.95),
    ("role", re.compile(r"""getByRole\s*\(\s*['"]([^'"]+)['"](?:\s*,\s*\{[^}]*\})?\s*\)"""), 0.9),
    ("label", re.compile(r"""getByLabel\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 0.85),
    ("label", re.compile(r"""getByLabelText\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 0.85),
    ("placeholder", re.compile(r"""getByPlaceholder\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 0.75),
    ("text", re.compile(r"""getByText\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 0.65),
    ("text", re.compile(r"""getByText\s*\(\s*/([^/]+)/[a-z]*\s*\)"""), 0.6),
    ("title", re.compile(r"""getByTitle\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 0.7),
    ("altText", re.compile(r"""getByAltText\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 0.75),
    ("xpath", re.compile(r"""locator\s*\(\s*['"]xpath=([^'"]+)['"]\s*\)"""), 0.3),
    ("xpath", re.compile(r"""locator\s*\(\s*['"](//[^'"]+)['"]\s*\)"""), 0.3),
    ("css", re.compile(r"""locator\s*\(\s*['"]([^'"]+)['"]\s*\)"""), 0.5),
    ("nth", re.compile(r"\.nth\s*\(\s*(\d+)\s*\)"), 0.4),
    ("nth", re.compile(r"\.(first)\s*\(\s*\)"), 0.45),
    ("nth", re.compile(r"\.(last)\s*\(\s*\)"), 0.45),
    ("chain", re.compile(r"(locator\([^)]+\)\s*\.\s*locator\s*\()"), 0.55),
]

FRAGILITY_INDICATORS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"""\[class[*^$~|]?=['"]?[^'"\]]*['"]?\]""", re.IGNORECASE), "Class-based selector (may change)"),
    (re.compile(r"""\[id[*^$~|]?=['"]?[^'"\]]*['"]?\]""", re.IGNORECASE), "ID-based selector (may be dynamic)"),
    (re.compile(r":nth-child\(\d+\)", re.IGNORECASE), "Position-based selector"),
    (re.compile(r":nth-of-type\(\d+\)", re.IGNORECASE), "Position-based selector"),
    (re.compile(r"\s>\s"), "Direct child combinator (structure-sensitive)"),
    (re.compile(r"\s[+~]\s"), "Sibling combinator (structure-sensitive)"),
    (re.compile(r"\[style[*^$~|]?=", re.IGNORECASE), "Style-based selector (highly volatile)"),
    (re.compile(r"\.btn-[a-z]+", re.IGNORECASE), "Framework-specific class (may change)"),
    (re.compile(r"\.col-[a-z0-9-]+", re.IGNORECASE), "Grid class (layout-dependent)"),
    (re.compile(r"auto-generated|generated-id|uuid|guid", re.IGNORECASE), "Contains generated ID pattern"),
    (re.compile(r"[A-Za-z_-]+[-_](?=[A-Za-z]*\d)[0-9a-f]{6,}\b|\d{4,}"), "Dynamic-looking identifier"),
]

_SPECIFICITY = {
    "testId": 1.0, "role": 0.9, "label": 0.85, "altText": 0.85,
    "placeholder": 0.8, "title": 0.8, "text": 0.7,
    "xpath": 0.4, "nth": 0.3, "chain": 0.5,
}
_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}
MAX_RECOMMENDATIONS = 10


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------
@dataclass
class SelectorInfo:
    selector: str
    strategy: str
    stability_score: float
    specificity: float
    line: int
    fragility_reasons: List[str] = field(default_factory=list)

    @property
    def is_fragile(self) -> bool:
        return bool(self.fragility_reasons)


@dataclass(frozen=True)
class SelectorRecommendation:
    selector: str
    current_strategy: str
    suggested_strategy: str
    reason: str
    priority: str


@dataclass
class SelectorAnalysisResult:
    score: float
    selectors: List[SelectorInfo]
    strategy_distribution: Dict[str, int]
    stability_score: float
    accessibility_score: float
    recommendations: List[SelectorRecommendation]


# ---------------------------------------------------------------------------
# Per-Selector Analysis
# ---------------------------------------------------------------------------
def analyze_selector_fragility(selector: str, strategy: str = "css") -> List[str]:
    reasons = [reason for pattern, reason in FRAGILITY_INDICATORS if pattern.search(selector)]
    if len(selector) > 100:
        reasons.append("Very long selector (likely over-specified)")
    if strategy in ("css", "xpath") and len(re.findall(r"\s*[>+~]\s*|\s+", selector)) > 3:
        reasons.append("Too many combinators (deep nesting)")
    # Same reason from two position patterns counts once
    return list(dict.fromkeys(reasons))


def _specificity(selector: str, strategy: str) -> float:
    if strategy == "css":
        return min(1.0, 0.3 + selector.count("#") * 0.3 + selector.count(".") * 0.1)
    return _SPECIFICITY.get(strategy, 0.5)


def extract_selectors(code: str) -> List[SelectorInfo]:
    """Every locator expression in ``code`` with its strategy and stability."""
    selectors: List[SelectorInfo] = []
    claimed: List[Tuple[int, int]] = []

    for strategy, regex, stability in SELECTOR_PATTERNS:
        for match in regex.finditer(code):
            start, end = match.span()
            # nth and chain modify a locator rather than compete with it
            if strategy not in ("nth", "chain"):
                if any(s < end and start < e for s, e in claimed):
                    continue
                claimed.append((start, end))

            target = match.group(1)
            reasons = analyze_selector_fragility(target, strategy)
            adjusted = stability * (1 - len(reasons) * 0.1) if reasons else stability

            selectors.append(SelectorInfo(
                selector=match.group(0),
                strategy=strategy,
                stability_score=max(0.0, adjusted),
                specificity=_specificity(target, strategy),
                line=code.count("\n", 0, start) + 1,
                fragility_reasons=reasons,
            ))

    return sorted(selectors, key=lambda s: s.line)


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------
def _testid_ratio(distribution: Dict[str, int]) -> float:
    total = sum(distribution.values())
    return distribution.get("testId", 0) / total if total else 0.0


def _fragility_score(selectors: List[SelectorInfo]) -> float:
    if not selectors:
        return 1.0
    return 1 - sum(1 for s in selectors if s.is_fragile) / len(selectors)


def _selector_score(
    selectors: List[SelectorInfo],
    stability: float,
    accessibility: float,
    distribution: Dict[str, int],
) -> float:
    if not selectors:
        return 0.5

    score = (
        stability * 0.4
        + accessibility * 0.2
        + _testid_ratio(distribution) * 0.25
        + _fragility_score(selectors) * 0.15
    )
    fragile = sum(distribution[s] for s in FRAGILE_STRATEGIES)
    if fragile / len(selectors) > 0.5:
        score *= 0.8
    return max(0.0, min(1.0, score))


def _recommendations(selectors: List[SelectorInfo]) -> List[SelectorRecommendation]:
    recs: List[SelectorRecommendation] = []
    for info in selectors:
        if info.strategy in ("css", "xpath"):
            recs.append(SelectorRecommendation(
                info.selector, info.strategy, "testId",
                "CSS/XPath selectors are fragile. Add data-testid to element.", "high",
            ))
        if info.strategy == "nth":
            recs.append(SelectorRecommendation(
                info.selector, info.strategy, "role",
                "Position-based selectors break when order changes. Use role with name.", "medium",
            ))
        if info.is_fragile and info.strategy != "testId":
            recs.append(SelectorRecommendation(
                info.selector, info.strategy, "testId",
                f"Fragile selector: {', '.join(info.fragility_reasons)}", "high",
            ))
        if info.strategy == "text":
            recs.append(SelectorRecommendation(
                info.selector, info.strategy, "role",
                "Text selectors break on content changes. Use role for stability.", "low",
            ))

    recs.sort(key=lambda r: _PRIORITY_ORDER[r.priority])
    return recs[:MAX_RECOMMENDATIONS]


def analyze_selectors(code: str) -> SelectorAnalysisResult:
    selectors = extract_selectors(code)
    distribution = {strategy: 0 for strategy in STRATEGIES}
    for info in selectors:
        distribution[info.strategy] += 1

    if selectors:
        stability = sum(s.stability_score for s in selectors) / len(selectors)
        accessibility = sum(1 for s in selectors if s.strategy in ACCESSIBLE_STRATEGIES) / len(selectors)
    else:
        stability = accessibility = 0.5

    return SelectorAnalysisResult(
        score=_selector_score(selectors, stability, accessibility, distribution),
        selectors=selectors,
        strategy_distribution=distribution,
        stability_score=stability,
        accessibility_score=accessibility,
        recommendations=_recommendations(selectors),
    )


def _selector_reasoning(result: SelectorAnalysisResult) -> str:
    total = len(result.selectors)
    if total == 0:
        return "No selectors found in code"

    dist = result.strategy_distribution
    reasons = []
    if dist["testId"] > total * 0.5:
        reasons.append("Good test-id coverage")
    elif dist["testId"] < total * 0.2:
        reasons.append("Low test-id usage")
    if dist["role"]:
        reasons.append(f"{dist['role']} role-based selectors (accessible)")
    fragile_strategies = sum(dist[s] for s in FRAGILE_STRATEGIES)
    if fragile_strategies > total * 0.3:
        reasons.append(f"{fragile_strategies} fragile selectors (CSS/XPath/nth)")
    fragile = sum(1 for s in result.selectors if s.is_fragile)
    if fragile:
        reasons.append(f"{fragile} selectors with fragility issues")
    if result.stability_score > 0.8:
        reasons.append("High stability")
    elif result.stability_score < 0.5:
        reasons.append("Low stability")
    return "; ".join(reasons)


def create_selector_dimension_score(result: SelectorAnalysisResult, weight: float) -> DimensionScore:
    fragile = sum(1 for s in result.selectors if s.is_fragile)
    return DimensionScore(
        dimension=ScoreDimension.SELECTOR,
        score=result.score,
        weight=weight,
        reasoning=_selector_reasoning(result),
        sub_scores=[
            SubScore(name="Stability", score=result.stability_score,
                     details=f"Stability: {round(result.stability_score * 100)}%"),
            SubScore(name="Accessibility", score=result.accessibility_score,
                     details=f"A11y: {round(result.accessibility_score * 100)}%"),
            SubScore(name="TestId Usage", score=_testid_ratio(result.strategy_distribution),
                     details=f"TestId: {result.strategy_distribution['testId']} selectors"),
            SubScore(name="Fragility", score=_fragility_score(result.selectors),
                     details=f"{fragile} fragile selectors"),
        ],
    )


# ---------------------------------------------------------------------------
# Quick Checks
# ---------------------------------------------------------------------------
def uses_recommended_selectors(code: str) -> bool:
    return bool(re.search(r"getByTestId|data-testid|getByRole", code))


def identify_strategy(selector_code: str) -> str:
    for strategy, regex, _ in SELECTOR_PATTERNS:
        if regex.search(selector_code):
            return strategy
    return "css"


def is_selector_fragile(selector: str) -> bool:
    return bool(analyze_selector_fragility(selector))
