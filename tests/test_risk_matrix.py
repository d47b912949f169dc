"""Risk matrix evaluator: scoring methods, level resolution, formulas."""

import copy

import pytest

from change_engine.core.exceptions import ConfigurationError
from change_engine.services.change_settings_defaults import DEFAULT_RISK_MATRIX
from change_engine.services.risk_matrix import (
    compile_formula,
    evaluate_formula,
    evaluate_risk,
    level_threshold,
    required_controls,
    resolve_level,
)

ALL_CATEGORIES = ("business_impact", "technical_complexity", "user_impact", "regulatory_compliance")


@pytest.fixture()
def matrix():
    return copy.deepcopy(DEFAULT_RISK_MATRIX)


def _uniform(score):
    return {c: score for c in ALL_CATEGORIES}


class TestWeightedAverage:
    def test_uniform_scores_resolve_to_high(self, matrix):
        result = evaluate_risk(matrix, _uniform(80))
        assert result.score == 80.0
        assert result.level == "high"
        assert result.controls["required_approvers"] == 3
        assert result.warnings == []

    def test_weights_are_applied(self, matrix):
        # 100 * 0.4 + 50 * 0.3 = 55
        result = evaluate_risk(matrix, {"business_impact": 100, "technical_complexity": 50})
        assert result.score == 55.0
        assert result.level == "medium"

    def test_missing_and_invalid_subscores_count_as_zero(self, matrix):
        result = evaluate_risk(matrix, {"business_impact": "n/a", "user_impact": None})
        assert result.score == 0.0
        assert result.level == "low"

    def test_subscores_are_clamped(self, matrix):
        result = evaluate_risk(matrix, _uniform(250))
        assert result.score == 100.0
        assert result.level == "critical"

    def test_unknown_categories_are_ignored(self, matrix):
        result = evaluate_risk(matrix, {"weather": 100})
        assert result.score == 0.0

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf"), "NaN"])
    def test_non_finite_subscores_count_as_zero(self, matrix, bad):
        result = evaluate_risk(matrix, _uniform(bad))
        assert result.score == 0.0
        assert result.level == "low"

    def test_non_finite_subscore_does_not_affect_the_others(self, matrix):
        scores = _uniform(50)
        scores["business_impact"] = float("nan")
        # 0.3*50 + 0.2*50 + 0.1*50 = 30
        assert evaluate_risk(matrix, scores).score == 30.0

    @pytest.mark.parametrize("category", ALL_CATEGORIES)
    @pytest.mark.parametrize("baseline", [0, 35, 90])
    def test_score_never_drops_as_one_subscore_rises(self, matrix, category, baseline):
        scores = _uniform(baseline)
        previous = -1.0
        for value in range(0, 101, 5):
            scores[category] = value
            score = evaluate_risk(matrix, scores).score
            assert score >= previous
            previous = score


class TestOtherMethods:
    def test_highest_impact(self, matrix):
        matrix["calculation_method"] = "highest_impact"
        result = evaluate_risk(matrix, {"business_impact": 10, "user_impact": 76})
        assert result.score == 76.0
        assert result.level == "high"
        assert result.method == "highest_impact"

    def test_custom_formula(self, matrix):
        matrix["calculation_method"] = "custom"
        matrix["custom_formula"] = "max(business_impact, user_impact) * 0.5 + 10"
        result = evaluate_risk(matrix, {"business_impact": 60, "user_impact": 90})
        assert result.score == 55.0
        assert result.level == "medium"

    def test_unknown_method_is_a_configuration_error(self, matrix):
        matrix["calculation_method"] = "magic"
        with pytest.raises(ConfigurationError):
            evaluate_risk(matrix, _uniform(50))


class TestLevelResolution:
    def test_exact_threshold_picks_the_higher_level(self, matrix):
        assert resolve_level(matrix, 50) == "medium"
        assert resolve_level(matrix, 75) == "high"

    def test_below_every_threshold_falls_to_lowest_level(self, matrix):
        assert resolve_level(matrix, 3) == "low"

    def test_lowest_threshold_across_categories_counts(self, matrix):
        matrix["impact_categories"][0]["thresholds"]["high"] = 60
        assert level_threshold(matrix, "high") == 60
        assert resolve_level(matrix, 61) == "high"

    def test_matrix_without_levels_uses_fallback(self, matrix):
        matrix["risk_levels"] = []
        result = evaluate_risk(matrix, _uniform(90), fallback_level="medium")
        assert result.level == "medium"

    def test_required_controls_unknown_level(self, matrix):
        assert required_controls(matrix, "extreme") == {}
        assert required_controls(None, "high") == {}


def test_no_matrix_returns_fallback_with_warning():
    result = evaluate_risk(None, _uniform(99), fallback_level="high")
    assert result.level == "high"
    assert result.score == 0.0
    assert result.warnings
    assert result.to_dict()["risk_level"] == "high"


class TestFormulaSandbox:
    @pytest.mark.parametrize("formula", [
        "__import__('os').system('id')",
        "business_impact.real",
        "[business_impact]",
        "business_impact ** 2",
        "unknown_name + 1",
        "'text'",
        "",
    ])
    def test_rejects_unsafe_or_invalid_formulas(self, formula):
        with pytest.raises(ConfigurationError):
            compile_formula(formula, ["business_impact"])

    def test_division_by_zero(self):
        with pytest.raises(ConfigurationError):
            evaluate_formula("business_impact / 0", {"business_impact": 10.0})

    def test_unary_and_nested_calls(self):
        value = evaluate_formula("-min(a, b) + max(a, b, 5)", {"a": 2.0, "b": 3.0})
        assert value == 3.0
