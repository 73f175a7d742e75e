"""
Tests for prop evaluation: hit rate -> EV -> confidence -> Kelly
Run with: pytest tests/test_evaluator.py -v
"""

import pytest

from conftest import NOW, graded_series
from propedge.core.confidence import ConfidenceRating
from propedge.core.engine_config import EngineConfig
from propedge.core.errors import InsufficientData, InvalidInput
from propedge.core.kelly import Recommendation, RiskLevel
from propedge.services.aggregator import HistoricalAggregator, grade
from propedge.services.evaluator import PropEvaluation, PropEvaluator, PropRequest


def _request(**overrides):
    base = dict(
        player_name="Jalen Brunson",
        prop_type="player_points",
        line=26.5,
        sport_key="basketball_nba",
        platform="us_dfs.prizepicks",
        bankroll=1000.0,
    )
    base.update(overrides)
    return PropRequest(**base)


@pytest.fixture
def evaluator(memory_store):
    for o in graded_series(14, 6):
        memory_store.save_outcome(grade(o, o.actual_result))
    return PropEvaluator(HistoricalAggregator(memory_store, EngineConfig()))


class TestEvaluate:

    def test_dfs_prop(self, evaluator):
        result = evaluator.evaluate(_request(), now=NOW)

        assert isinstance(result, PropEvaluation)
        assert result.hit_rate == pytest.approx(0.7)
        assert result.implied_probability == pytest.approx(5 ** (-1 / 3))
        assert result.decimal_odds == pytest.approx(5 ** (1 / 3))
        assert result.is_positive_ev
        assert result.ev_percentage == pytest.approx((0.7 - 5 ** (-1 / 3)) * 100)
        assert result.sample_count == 20
        assert result.confidence_level == "medium"
        assert 0.0 < result.recommended_stake <= 1000.0 * 0.05
        assert result.recommendation != Recommendation.AVOID

    def test_leg_count_changes_price(self, evaluator):
        three = evaluator.evaluate(_request(), now=NOW)
        two = evaluator.evaluate(_request(leg_count=2), now=NOW)

        assert two.implied_probability == pytest.approx(3 ** -0.5)
        assert two.implied_probability != three.implied_probability

    def test_sportsbook_prop(self, evaluator):
        result = evaluator.evaluate(_request(platform="draftkings", odds=-110), now=NOW)

        assert result.implied_probability == pytest.approx(0.5238, abs=1e-4)
        assert result.decimal_odds == pytest.approx(1.9091, abs=1e-4)
        assert result.is_positive_ev

    def test_decimal_odds(self, evaluator):
        result = evaluator.evaluate(
            _request(platform="fanduel", odds=1.8, odds_kind="decimal"), now=NOW,
        )

        assert result.implied_probability == pytest.approx(1 / 1.8)

    def test_runtime_confidence_is_separate_from_storage_tag(self, evaluator):
        result = evaluator.evaluate(_request(), now=NOW)

        assert result.confidence_level == "medium"
        assert isinstance(result.confidence_rating, ConfidenceRating)
        assert 0.0 <= result.confidence_score <= 1.0
        # 20 samples is below 30
        assert any("Small sample size" in w for w in result.warnings)

    def test_stake_never_exceeds_cap(self, evaluator):
        result = evaluator.evaluate(_request(platform="draftkings", odds=300), now=NOW)

        assert result.kelly_percentage <= 5.0 + 1e-9
        assert result.recommended_stake <= 50.0

    def test_unknown_player_is_insufficient(self, evaluator):
        result = evaluator.evaluate(_request(player_name="Unknown Rookie"), now=NOW)

        assert isinstance(result, InsufficientData)
        assert result.sample_count == 0
        assert result.required == 5

    def test_line_outside_tolerance_is_insufficient(self, evaluator):
        assert isinstance(evaluator.evaluate(_request(line=28.5), now=NOW), InsufficientData)

    def test_perfect_sample_does_not_break_kelly(self, memory_store):
        for o in graded_series(5, 0, player_name="Josh Hart", line=9.5):
            memory_store.save_outcome(grade(o, o.actual_result))
        evaluator = PropEvaluator(HistoricalAggregator(memory_store))

        result = evaluator.evaluate(_request(player_name="Josh Hart", line=9.5), now=NOW)

        assert result.hit_rate == 1.0
        assert result.confidence_level == "low"
        assert result.recommended_stake > 0.0

    def test_losing_prop_is_avoided(self, memory_store):
        for o in graded_series(3, 12, player_name="Josh Hart", line=9.5):
            memory_store.save_outcome(grade(o, o.actual_result))
        evaluator = PropEvaluator(HistoricalAggregator(memory_store))

        result = evaluator.evaluate(_request(player_name="Josh Hart", line=9.5), now=NOW)

        assert not result.is_positive_ev
        assert result.recommendation == Recommendation.AVOID
        assert result.recommended_stake == 0.0
        assert result.risk_level == RiskLevel.LOW

    @pytest.mark.parametrize("overrides", [
        {"bankroll": 0.0},
        {"bankroll": -50.0},
        {"leg_count": 0},
        {"player_name": " "},
        {"line": float("inf")},
        {"platform": "draftkings"},
        {"platform": "draftkings", "odds": 50},
    ])
    def test_invalid_requests(self, evaluator, overrides):
        with pytest.raises(InvalidInput):
            evaluator.evaluate(_request(**overrides), now=NOW)


class TestPortfolio:

    def test_portfolio_mixes_results(self, evaluator):
        result = evaluator.portfolio(
            [_request(), _request(platform="draftkings", odds=-110), _request(player_name="Nobody")],
            now=NOW,
        )

        assert len(result.evaluations) == 2
        assert len(result.insufficient) == 1
        assert result.portfolio.total_stake > 0.0
        assert result.portfolio.diversification_benefit == pytest.approx(0.2)

    def test_avoided_props_are_not_sized(self, memory_store):
        for o in graded_series(3, 12, player_name="Josh Hart", line=9.5):
            memory_store.save_outcome(grade(o, o.actual_result))
        evaluator = PropEvaluator(HistoricalAggregator(memory_store))

        result = evaluator.portfolio([_request(player_name="Josh Hart", line=9.5)], now=NOW)

        assert len(result.evaluations) == 1
        assert result.portfolio.total_stake == 0.0
        assert result.portfolio.risk_tier == RiskLevel.NONE

    def test_empty_portfolio(self, evaluator):
        result = evaluator.portfolio([], now=NOW)

        assert result.evaluations == []
        assert result.portfolio.total_stake == 0.0
