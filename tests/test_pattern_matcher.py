"""
Pattern Matcher Tests
=====================
Built-in / glossary / learned pattern matching and the pattern score.
"""
import pytest

from refiner.models.confidence import CodePattern, PatternSource, ScoreDimension
from refiner.scoring.pattern_matcher import (
    create_pattern_dimension_score,
    get_pattern_categories,
    has_minimum_patterns,
    load_glossary_patterns,
    match_patterns,
)


LOGIN_CODE = """test('login', async ({ page }) => {
  await page.goto('/login');
  await page.getByTestId('email').fill('user@example.com');
  await page.getByTestId('password').fill('secret');
  await page.getByRole('button', { name: 'Sign in' }).click();
  await expect(page).toHaveURL('/dashboard');
});
"""


# ===========================================================================
# Matching
# ===========================================================================
class TestMatching:

    def test_builtin_matches_ordered_by_line(self):
        result = match_patterns(LOGIN_CODE)
        ids = [m.pattern_id for m in result.matched_patterns]
        assert ids == ["nav-goto", "fill-locator", "fill-locator", "click-locator", "expect-url"]
        assert [m.line for m in result.matched_patterns] == [2, 3, 4, 5, 6]
        assert result.unmatched_elements == []

    def test_score_for_well_covered_code(self):
        result = match_patterns(LOGIN_CODE)
        # avg 0.92, novelty 0.5, consistency 0.8, no risk
        assert result.score == pytest.approx(0.92 * 0.4 + 0.5 * 0.2 + 0.8 * 0.2 + 0.2)
        assert result.stats["matched"] == 5

    def test_empty_code_neutral_score(self):
        result = match_patterns("")
        assert result.matched_patterns == []
        assert result.score == pytest.approx(0.7 * 0.8)

    def test_high_risk_unmatched_call(self):
        result = match_patterns("await page.evaluate(() => window.scrollTo(0, 0));")
        (element,) = result.unmatched_elements
        assert element.element == "page method: evaluate"
        assert element.risk_level == "high"
        assert result.score < match_patterns("").score

    def test_consistency_penalises_category_switching(self):
        code = "await page.goto('/');\nawait button.click();\nawait page.goto('/b');\n"
        result = match_patterns(code)
        assert result.consistency_score == pytest.approx(0.6)

    def test_invalid_custom_regex_ignored(self):
        broken = CodePattern(id="bad", name="Bad", regex="(", category="utility")
        result = match_patterns(LOGIN_CODE, custom_patterns=[broken])
        assert len(result.matched_patterns) == 5

    def test_learned_patterns_raise_novelty(self):
        learned = CodePattern(
            id="llkb-1", name="login helper", regex=r"loginAs\(", category="authentication",
            confidence=0.9, source=PatternSource.LLKB,
        )
        result = match_patterns("await loginAs(page);", learned_patterns=[learned])
        assert [m.pattern_id for m in result.matched_patterns] == ["llkb-1"]
        assert result.novelty_score == 1.0

    def test_builtins_can_be_excluded(self):
        assert match_patterns(LOGIN_CODE, include_builtins=False).matched_patterns == []


# ===========================================================================
# Glossary
# ===========================================================================
class TestGlossary:

    def test_load_valid_entries(self, tmp_path):
        path = tmp_path / "glossary.yaml"
        path.write_text(
            "patterns:\n"
            "  - id: login-helper\n"
            "    name: Login Helper\n"
            "    category: authentication\n"
            "    regex: 'loginAs\\s*\\('\n"
            "    confidence: 0.9\n"
            "  - id: nav-helper\n"
            "    regexes: ['gotoHome\\(', 'gotoSettings\\(']\n"
            "  - id: broken\n"
            "    regex: '('\n"
            "  - name: no id\n"
            "    regex: 'x'\n"
        )
        patterns = load_glossary_patterns(str(path))
        assert [p.id for p in patterns] == ["login-helper", "nav-helper"]
        assert patterns[0].source == PatternSource.GLOSSARY
        assert patterns[0].confidence == 0.9
        assert patterns[1].category == "utility"
        assert patterns[1].regex == r"(?:gotoHome\()|(?:gotoSettings\()"

    def test_missing_file(self, tmp_path):
        assert load_glossary_patterns(str(tmp_path / "missing.yaml")) == []

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "glossary.yaml"
        path.write_text("patterns: [unclosed")
        assert load_glossary_patterns(str(path)) == []


# ===========================================================================
# Helpers
# ===========================================================================
def test_category_counts_and_minimums():
    matched = match_patterns(LOGIN_CODE).matched_patterns
    counts = get_pattern_categories(matched)
    assert counts["interaction"] == 3
    assert counts["navigation"] == 1
    assert counts["wait"] == 0
    assert has_minimum_patterns(matched, {"interaction": 2, "assertion": 1})
    assert not has_minimum_patterns(matched, {"wait": 1})


def test_dimension_score():
    dim = create_pattern_dimension_score(match_patterns(LOGIN_CODE), 0.2)
    assert dim.dimension == ScoreDimension.PATTERN
    assert dim.reasoning == "5 patterns matched"
    assert dim.sub_scores[0].score == 0.5
