"""
Agreement Tests
===============
Structural agreement across candidate samples and consensus selection.
"""
import pytest

from refiner.models.confidence import ScoreDimension
from refiner.scoring.agreement import (
    analyze_agreement,
    create_agreement_dimension_score,
    extract_code_features,
    jaccard,
    value_agreement,
)


TESTID_SAMPLE = """test('checkout', async ({ page }) => {
  await page.goto('/cart');
  await page.getByTestId('checkout').click();
  await expect(page).toHaveURL(/checkout/);
});
"""

CSS_SAMPLE = """test('checkout', async ({ page }) => {
  await page.goto('/cart');
  await page.locator('.checkout').click();
  await expect(page).toHaveTitle('Checkout');
});
"""


# ===========================================================================
# Primitives
# ===========================================================================
def test_jaccard():
    assert jaccard(set(), set()) == 1.0
    assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)


def test_value_agreement():
    assert value_agreement([0, 0]) == 1.0
    assert value_agreement([2, 4]) == 0.5
    assert value_agreement([3]) == 1.0


def test_extract_code_features():
    features = extract_code_features(TESTID_SAMPLE)
    assert features.test_count == 1
    assert features.step_count == 0
    assert features.selector_strategies == frozenset({"testId"})
    assert features.assertions == frozenset({"toHaveURL"})
    assert features.flow == "navigate->click->assert"


# ===========================================================================
# analyze_agreement
# ===========================================================================
class TestAnalyzeAgreement:

    def test_identical_samples_agree_fully(self):
        result = analyze_agreement([TESTID_SAMPLE, TESTID_SAMPLE, TESTID_SAMPLE])
        assert result.score == pytest.approx(1.0)
        assert result.disagreements == []
        assert result.consensus_index == 0

    def test_no_samples(self):
        result = analyze_agreement([])
        assert result.score == 0.0
        assert result.consensus_index is None

    def test_single_sample(self):
        result = analyze_agreement([TESTID_SAMPLE])
        assert result.score == 1.0
        assert result.consensus_index == 0

    def test_disagreement_areas(self):
        result = analyze_agreement([TESTID_SAMPLE, CSS_SAMPLE])
        areas = {d.area: d for d in result.disagreements}
        assert set(areas) == {"Selector Strategies", "Assertions"}
        assert areas["Selector Strategies"].variants == {"testId": 1, "css": 1}
        assert areas["Selector Strategies"].confidence == 0.5
        assert result.selector_agreement == 0.0
        assert result.flow_agreement == 1.0
        # structural 1.0, selector 0, flow 1.0, assertion 0
        assert result.score == pytest.approx(0.5)

    def test_consensus_is_the_majority_shape(self):
        result = analyze_agreement([CSS_SAMPLE, TESTID_SAMPLE, TESTID_SAMPLE])
        assert result.consensus_index == 1


def test_dimension_score_names_disagreements():
    result = analyze_agreement([TESTID_SAMPLE, CSS_SAMPLE])
    dim = create_agreement_dimension_score(result, 2, 0.25)
    assert dim.dimension == ScoreDimension.AGREEMENT
    assert dim.reasoning == "Agreement across 2 samples; disagreement in Selector Strategies, Assertions"
    assert [s.name for s in dim.sub_scores] == ["Structural", "Selector", "Flow", "Assertion"]
