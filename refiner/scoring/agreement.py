"""
Structural Agreement
====================
Cross-sample agreement analysis shared by the confidence scorer's agreement
dimension and the MultiSampler's consensus selection.

Per-sample signature (CodeFeatures):
    test_count / step_count  - number of test(...) / test.step(...) blocks
    selector_strategies      - set of locator strategies used
    assertions               - set of expect(...).<method> names
    flow                     - ordered action signature, e.g. navigate->fill->click->assert

Sub-agreements over all pairs:
    structural  - min/max ratio of test and step counts, averaged
    selector    - mean pairwise Jaccard of strategy sets
    flow        - share of samples carrying the most common flow
    assertion   - mean pairwise Jaccard of assertion-method sets

    score = 0.3 structural + 0.3 selector + 0.2 flow + 0.2 assertion

Consensus: the sample with the highest mean pairwise similarity to all others
(first one wins ties).
"""
import re
from collections import Counter
from dataclasses import dataclass
from itertools import combinations
from typing import List, Sequence, Set

from refiner.models.confidence import DimensionScore, ScoreDimension, SubScore
from refiner.models.sample import AgreementResult, DisagreementArea

STRUCTURAL_WEIGHT = 0.3
SELECTOR_WEIGHT = 0.3
FLOW_WEIGHT = 0.2
ASSERTION_WEIGHT = 0.2

_STRATEGY_MARKERS = [
    ("testId", re.compile(r"getByTestId")),
    ("role", re.compile(r"getByRole")),
    ("text", re.compile(r"getByText")),
    ("label", re.compile(r"getByLabel")),
    ("css", re.compile(r"locator\(")),
]

# (flow step, regex); position of the first hit orders the flow
_FLOW_MARKERS = [
    ("navigate", re.compile(r"page\.goto")),
    ("click", re.compile(r"\.click")),
    ("fill", re.compile(r"\.fill")),
    ("select", re.compile(r"\.selectOption")),
    ("wait", re.compile(r"waitFor")),
    ("assert", re.compile(r"expect\(")),
]

_ASSERTION_RE = re.compile(r"expect\([^)]+\)\.(\w+)")
_TEST_RE = re.compile(r"\btest\s*\(")
_STEP_RE = re.compile(r"test\.step\s*\(")


@dataclass(frozen=True)
class CodeFeatures:
    test_count: int
    step_count: int
    selector_strategies: frozenset
    assertions: frozenset
    flow: str


def extract_code_features(code: str) -> CodeFeatures:
    first_hits = []
    for step, regex in _FLOW_MARKERS:
        match = regex.search(code)
        if match:
            first_hits.append((match.start(), step))

    return CodeFeatures(
        test_count=len(_TEST_RE.findall(code)),
        step_count=len(_STEP_RE.findall(code)),
        selector_strategies=frozenset(name for name, regex in _STRATEGY_MARKERS if regex.search(code)),
        assertions=frozenset(_ASSERTION_RE.findall(code)),
        flow="->".join(step for _, step in sorted(first_hits)),
    )


# ---------------------------------------------------------------------------
# Similarity Primitives
# ---------------------------------------------------------------------------
def jaccard(first: Set[str], second: Set[str]) -> float:
    if not first and not second:
        return 1.0
    return len(first & second) / len(first | second)


def value_agreement(values: Sequence[int]) -> float:
    """min/max ratio; 1.0 when every value is zero."""
    if len(values) < 2 or max(values) == 0:
        return 1.0
    return min(values) / max(values)


def _structural(features: List[CodeFeatures]) -> float:
    return (value_agreement([f.test_count for f in features])
            + value_agreement([f.step_count for f in features])) / 2


def _pairwise_mean(features: List[CodeFeatures], attr: str) -> float:
    pairs = list(combinations(features, 2))
    return sum(jaccard(getattr(a, attr), getattr(b, attr)) for a, b in pairs) / len(pairs)


def _flow_majority(features: List[CodeFeatures]) -> float:
    counts = Counter(f.flow for f in features)
    return max(counts.values()) / len(features)


def pair_similarity(first: CodeFeatures, second: CodeFeatures) -> float:
    """Weighted similarity of two samples on the same four axes."""
    flow = 1.0 if first.flow == second.flow else jaccard(
        set(first.flow.split("->")) - {""}, set(second.flow.split("->")) - {""}
    )
    return (
        _structural([first, second]) * STRUCTURAL_WEIGHT
        + jaccard(first.selector_strategies, second.selector_strategies) * SELECTOR_WEIGHT
        + flow * FLOW_WEIGHT
        + jaccard(first.assertions, second.assertions) * ASSERTION_WEIGHT
    )


# ---------------------------------------------------------------------------
# Disagreements & Consensus
# ---------------------------------------------------------------------------
def _disagreement(area: str, variants: List[str], sample_count: int) -> DisagreementArea:
    votes = Counter(variants)
    return DisagreementArea(
        area=area,
        variants=dict(votes),
        confidence=max(votes.values()) / sample_count,
    )


def find_disagreement_areas(features: List[CodeFeatures]) -> List[DisagreementArea]:
    areas: List[DisagreementArea] = []
    n = len(features)

    strategies = [",".join(sorted(f.selector_strategies)) for f in features]
    if len(set(strategies)) > 1:
        areas.append(_disagreement("Selector Strategies", strategies, n))

    flows = [f.flow for f in features]
    if len(set(flows)) > 1:
        areas.append(_disagreement("Test Flow", flows, n))

    assertions = [",".join(sorted(f.assertions)) for f in features]
    if len(set(assertions)) > 1:
        areas.append(_disagreement("Assertions", assertions, n))

    return areas


def select_consensus_index(features: List[CodeFeatures]) -> int:
    best_index, best_score = 0, -1.0
    for i, current in enumerate(features):
        others = [pair_similarity(current, other) for j, other in enumerate(features) if j != i]
        mean = sum(others) / len(others)
        if mean > best_score:
            best_index, best_score = i, mean
    return best_index


def analyze_agreement(codes: List[str]) -> AgreementResult:
    """
    Agreement across candidate codes.

    No samples → all-zero result; one sample → perfect agreement with itself.
    """
    if not codes:
        return AgreementResult(
            score=0.0, structural_agreement=0.0, selector_agreement=0.0,
            flow_agreement=0.0, assertion_agreement=0.0,
        )
    if len(codes) == 1:
        return AgreementResult(consensus_index=0)

    features = [extract_code_features(code) for code in codes]
    structural = _structural(features)
    selector = _pairwise_mean(features, "selector_strategies")
    flow = _flow_majority(features)
    assertion = _pairwise_mean(features, "assertions")

    score = (
        structural * STRUCTURAL_WEIGHT
        + selector * SELECTOR_WEIGHT
        + flow * FLOW_WEIGHT
        + assertion * ASSERTION_WEIGHT
    )

    return AgreementResult(
        score=max(0.0, min(1.0, score)),
        structural_agreement=structural,
        selector_agreement=selector,
        flow_agreement=flow,
        assertion_agreement=assertion,
        consensus_index=select_consensus_index(features),
        disagreements=find_disagreement_areas(features),
    )


def create_agreement_dimension_score(result: AgreementResult, sample_count: int, weight: float) -> DimensionScore:
    areas = ", ".join(d.area for d in result.disagreements)
    reasoning = f"Agreement across {sample_count} samples"
    if areas:
        reasoning += f"; disagreement in {areas}"
    return DimensionScore(
        dimension=ScoreDimension.AGREEMENT,
        score=result.score,
        weight=weight,
        reasoning=reasoning,
        sub_scores=[
            SubScore(name="Structural", score=result.structural_agreement),
            SubScore(name="Selector", score=result.selector_agreement),
            SubScore(name="Flow", score=result.flow_agreement),
            SubScore(name="Assertion", score=result.assertion_agreement),
        ],
    )
