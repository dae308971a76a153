"""
Confidence Scorer
=================
Multi-dimensional confidence for candidate test code.

    score(code, samples=None, config=None) → ConfidenceResult

Dimensions (present):
    syntax, pattern, selector  - always, computed on ``code``
    agreement                  - only when >= 2 samples are supplied

Overall = weighted mean over the present dimensions (weights renormalised).

Verdict:
    REJECT  - any present dimension below the absolute block floor or below
              its own minimum (those dimensions are listed as blocking)
    ACCEPT  - otherwise, overall >= accept threshold
    REVIEW  - otherwise

Pure and non-raising: every string input yields a ConfidenceResult.
"""
import logging
from statistics import median
from typing import Dict, List, Optional, Tuple

from refiner.models.confidence import (
    ConfidenceDiagnostics,
    ConfidenceResult,
    ConfidenceThresholds,
    DimensionScore,
    ScoreDimension,
    ScoringConfig,
    Verdict,
)
from refiner.scoring.agreement import analyze_agreement, create_agreement_dimension_score
from refiner.scoring.pattern_matcher import PatternMatchResult, create_pattern_dimension_score, match_patterns
from refiner.scoring.selector_analyzer import SelectorAnalysisResult, analyze_selectors, create_selector_dimension_score
from refiner.scoring.syntax_validator import SyntaxValidationResult, create_syntax_dimension_score, validate_syntax

logger = logging.getLogger(__name__)

SUGGESTION_THRESHOLD = 0.7
RISK_THRESHOLD = 0.5
MAX_SUGGESTIONS = 5

GENERIC_SUGGESTIONS: Dict[ScoreDimension, List[str]] = {
    ScoreDimension.SYNTAX: [
        "Fix TypeScript compilation errors",
        "Use proper Playwright imports",
        "Ensure all brackets are balanced",
    ],
    ScoreDimension.PATTERN: [
        "Use recognized Playwright patterns",
        "Follow established test structure",
        "Add test.step() for better organization",
    ],
    ScoreDimension.SELECTOR: [
        "Use data-testid attributes for stability",
        "Prefer getByRole for accessibility",
        "Avoid CSS selectors with class names",
    ],
    ScoreDimension.AGREEMENT: [
        "Increase sample count for better consensus",
        "Review disagreement areas manually",
    ],
}


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------
def overall_score(dimensions: List[DimensionScore]) -> float:
    total_weight = sum(d.weight for d in dimensions)
    if total_weight <= 0:
        return 0.0
    weighted = sum(d.score * d.weight for d in dimensions) / total_weight
    return max(0.0, min(1.0, weighted))


def determine_verdict(
    dimensions: List[DimensionScore],
    thresholds: ConfidenceThresholds,
) -> Tuple[Verdict, List[ScoreDimension]]:
    blocking = [
        d.dimension for d in dimensions
        if d.score < thresholds.block or d.score < thresholds.minimum_for(d.dimension)
    ]
    if blocking:
        return Verdict.REJECT, blocking
    if overall_score(dimensions) >= thresholds.accept:
        return Verdict.ACCEPT, []
    return Verdict.REVIEW, []


def _targeted_suggestions(
    dimension: ScoreDimension,
    syntax: Optional[SyntaxValidationResult],
    patterns: Optional[PatternMatchResult],
    selectors: Optional[SelectorAnalysisResult],
) -> List[str]:
    specific: List[str] = []
    if dimension == ScoreDimension.SYNTAX and syntax is not None:
        specific = [f"{e.message} (line {e.line})" for e in syntax.errors[:2]]
        specific += [f"Replace {api}" for api in syntax.playwright.deprecated_apis[:1]]
    elif dimension == ScoreDimension.PATTERN and patterns is not None:
        specific = [
            f"Avoid {u.element}" for u in patterns.unmatched_elements if u.risk_level == "high"
        ][:2]
    elif dimension == ScoreDimension.SELECTOR and selectors is not None:
        specific = [r.reason for r in selectors.recommendations[:2]]
    return specific + GENERIC_SUGGESTIONS[dimension]


def create_diagnostics(
    dimensions: List[DimensionScore],
    syntax: Optional[SyntaxValidationResult] = None,
    patterns: Optional[PatternMatchResult] = None,
    selectors: Optional[SelectorAnalysisResult] = None,
) -> ConfidenceDiagnostics:
    if not dimensions:
        return ConfidenceDiagnostics()

    ordered = sorted(dimensions, key=lambda d: d.score)
    suggestions: List[str] = []
    for dim in ordered:
        if dim.score < SUGGESTION_THRESHOLD:
            for suggestion in _targeted_suggestions(dim.dimension, syntax, patterns, selectors):
                if suggestion not in suggestions:
                    suggestions.append(suggestion)

    return ConfidenceDiagnostics(
        lowest_dimension=ordered[0].dimension,
        highest_dimension=ordered[-1].dimension,
        suggestions=suggestions[:MAX_SUGGESTIONS],
        risk_areas=[
            f"Low {d.dimension.value} score ({round(d.score * 100)}%)"
            for d in dimensions if d.score < RISK_THRESHOLD
        ],
    )


def _build_result(
    dimensions: List[DimensionScore],
    config: ScoringConfig,
    diagnostics: ConfidenceDiagnostics,
) -> ConfidenceResult:
    verdict, blocking = determine_verdict(dimensions, config.thresholds)
    result = ConfidenceResult(
        overall_score=overall_score(dimensions),
        dimensions=dimensions,
        thresholds=config.thresholds,
        verdict=verdict,
        blocking_dimensions=blocking,
        diagnostics=diagnostics,
    )
    logger.debug(
        "Confidence %.2f → %s (blocking: %s)",
        result.overall_score, verdict.value, [d.value for d in blocking] or "none",
    )
    return result


# ---------------------------------------------------------------------------
# Entry Points
# ---------------------------------------------------------------------------
def score(code: str, samples: Optional[List[str]] = None, config: Optional[ScoringConfig] = None) -> ConfidenceResult:
    """
    Score one candidate.

    Parameters
    ----------
    code : str
        Candidate test code.
    samples : list of str, optional
        Independently generated alternatives (the candidate may be one of
        them). The agreement dimension is added only for two or more.
    config : ScoringConfig, optional
        Weights, thresholds and extra patterns; defaults when omitted.

    Returns
    -------
    ConfidenceResult
    """
    config = config or ScoringConfig()
    weights = config.weights

    syntax = validate_syntax(code)
    patterns = match_patterns(code, config.custom_patterns, config.learned_patterns)
    selectors = analyze_selectors(code)

    dimensions = [
        create_syntax_dimension_score(syntax, weights.syntax),
        create_pattern_dimension_score(patterns, weights.pattern),
        create_selector_dimension_score(selectors, weights.selector),
    ]
    if samples and len(samples) >= 2:
        agreement = analyze_agreement(samples)
        dimensions.append(create_agreement_dimension_score(agreement, len(samples), weights.agreement))

    return _build_result(dimensions, config, create_diagnostics(dimensions, syntax, patterns, selectors))


def score_samples(samples: List[str], config: Optional[ScoringConfig] = None) -> ConfidenceResult:
    """
    Score a sample set as a whole: median syntax / pattern / selector scores
    across the samples plus their agreement.
    """
    config = config or ScoringConfig()
    if len(samples) < 2:
        return score(samples[0] if samples else "", config=config)

    weights = config.weights
    syntax = [validate_syntax(s).score for s in samples]
    pattern = [match_patterns(s, config.custom_patterns, config.learned_patterns).score for s in samples]
    selector = [analyze_selectors(s).score for s in samples]
    reasoning = f"Median of {len(samples)} samples"

    dimensions = [
        DimensionScore(dimension=ScoreDimension.SYNTAX, score=median(syntax), weight=weights.syntax, reasoning=reasoning),
        DimensionScore(dimension=ScoreDimension.PATTERN, score=median(pattern), weight=weights.pattern, reasoning=reasoning),
        DimensionScore(dimension=ScoreDimension.SELECTOR, score=median(selector), weight=weights.selector, reasoning=reasoning),
        create_agreement_dimension_score(analyze_agreement(samples), len(samples), weights.agreement),
    ]
    return _build_result(dimensions, config, create_diagnostics(dimensions))


def quick_confidence_check(code: str, threshold: float = 0.7) -> Tuple[bool, float]:
    """(passes, overall score) without samples; passes means ACCEPT at ``threshold``."""
    config = ScoringConfig(thresholds=ConfidenceThresholds(accept=threshold))
    result = score(code, config=config)
    return result.verdict == Verdict.ACCEPT, result.overall_score


def get_blocking_issues(code: str) -> List[str]:
    issues: List[str] = []
    syntax = validate_syntax(code)
    if syntax.errors:
        issues.append(f"{len(syntax.errors)} syntax error(s)")
    selectors = analyze_selectors(code)
    fragile = sum(1 for s in selectors.selectors if s.is_fragile)
    if fragile > len(selectors.selectors) * 0.5:
        issues.append(f"{fragile} fragile selector(s)")
    return issues
