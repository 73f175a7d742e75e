"""
Tests for historical hit-rate aggregation
Run with: pytest tests/test_aggregator.py -v
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import NOW, graded_series, make_outcome
from propedge.core.engine_config import EngineConfig
from propedge.core.errors import CollaboratorFailure, InsufficientData, InvalidInput
from propedge.core.store_interface import HitRateEstimate, HitRateKey
from propedge.services.aggregator import (
    HistoricalAggregator,
    LineWindow,
    RecordStatus,
    block_consistency,
    compute_hit_rate_estimate,
    data_quality_label,
    grade,
    storage_confidence_level,
)
from propedge.services.prop_store import InMemoryPropStore

WINDOW = LineWindow(26.0, 27.0)


def _seed(store, outcomes):
    for o in outcomes:
        store.save_outcome(grade(o, o.actual_result) if o.actual_result is not None else o)


class TestLineWindow:

    def test_around(self):
        window = LineWindow.around(24.5, 0.5)
        assert (window.min, window.max) == (24.0, 25.0)

    def test_inverted_window_rejected(self):
        with pytest.raises(InvalidInput):
            LineWindow(25.0, 24.0)

    def test_non_finite_rejected(self):
        with pytest.raises(InvalidInput):
            LineWindow(float("nan"), 25.0)


class TestPureHelpers:

    @pytest.mark.parametrize("n,label", [(5, "low"), (14, "low"), (15, "medium"), (30, "high")])
    def test_storage_confidence_level(self, n, label):
        assert storage_confidence_level(n) == label

    def test_grade_hit_at_line(self):
        graded = grade(make_outcome(line=26.5), 26.5)

        assert graded.hit is True
        assert graded.actual_result == 26.5

    def test_grade_miss(self):
        assert grade(make_outcome(line=26.5), 26.0).hit is False

    def test_grade_rejects_nan(self):
        with pytest.raises(InvalidInput):
            grade(make_outcome(), float("nan"))

    def test_data_quality_from_recorded_results(self):
        with_stats = [grade(o, o.actual_result) for o in graded_series(5, 5)]
        hit_only = [make_outcome(days_ago=i, hit=True) for i in range(1, 6)]

        assert data_quality_label(with_stats) == "high"
        assert data_quality_label(hit_only) == "low"
        assert data_quality_label(with_stats[:5] + hit_only[:3]) == "medium"
        assert data_quality_label([]) == "low"

    def test_block_consistency_needs_two_blocks(self):
        outcomes = [grade(o, o.actual_result) for o in graded_series(9, 0)]
        assert block_consistency(outcomes) == 0.0

    def test_block_consistency_stable_series(self):
        outcomes = [grade(o, o.actual_result) for o in graded_series(10, 0)]
        assert block_consistency(outcomes) == pytest.approx(1.0)


class TestComputeEstimate:

    def test_four_outcomes_is_insufficient(self):
        outcomes = [grade(o, o.actual_result) for o in graded_series(4, 0)]

        result = compute_hit_rate_estimate(
            "Jalen Brunson", "player_points", "basketball_nba", WINDOW, outcomes, NOW,
        )

        assert isinstance(result, InsufficientData)
        assert result.sample_count == 4
        assert result.required == 5
        assert (result.line_range_min, result.line_range_max) == (26.0, 27.0)

    def test_five_perfect_outcomes(self):
        outcomes = [grade(o, o.actual_result) for o in graded_series(5, 0)]

        result = compute_hit_rate_estimate(
            "Jalen Brunson", "player_points", "basketball_nba", WINDOW, outcomes, NOW,
        )

        assert isinstance(result, HitRateEstimate)
        assert result.hit_rate == 1.0
        assert result.sample_count == 5
        assert result.hit_count == 5
        assert result.confidence_level == "low"
        assert result.standard_error == 0.0
        assert result.confidence_interval_95.lower == 1.0
        assert result.confidence_interval_95.upper == 1.0

    def test_interval_clamped_and_contains_rate(self):
        outcomes = [grade(o, o.actual_result) for o in graded_series(12, 8)]

        result = compute_hit_rate_estimate(
            "Jalen Brunson", "player_points", "basketball_nba", WINDOW, outcomes, NOW,
        )

        assert result.hit_rate == pytest.approx(0.6)
        assert result.confidence_level == "medium"
        assert 0.0 <= result.confidence_interval_95.lower <= 0.6 <= result.confidence_interval_95.upper <= 1.0
        assert result.first_game_date < result.last_game_date
        assert result.last_updated == NOW

    def test_ungraded_outcomes_ignored(self):
        outcomes = [grade(o, o.actual_result) for o in graded_series(4, 0)]
        outcomes.append(make_outcome(days_ago=50))

        result = compute_hit_rate_estimate(
            "Jalen Brunson", "player_points", "basketball_nba", WINDOW, outcomes, NOW,
        )

        assert isinstance(result, InsufficientData)

    def test_configured_floor_can_only_raise(self):
        outcomes = [grade(o, o.actual_result) for o in graded_series(6, 0)]

        strict = compute_hit_rate_estimate(
            "Jalen Brunson", "player_points", "basketball_nba", WINDOW, outcomes, NOW,
            min_sample_size=10,
        )
        lax = compute_hit_rate_estimate(
            "Jalen Brunson", "player_points", "basketball_nba", WINDOW, outcomes, NOW,
            min_sample_size=2,
        )

        assert isinstance(strict, InsufficientData)
        assert strict.required == 10
        assert isinstance(lax, HitRateEstimate)


class TestEstimate:

    def test_estimate_from_store(self, memory_store, aggregator):
        _seed(memory_store, graded_series(7, 3))

        result = aggregator.estimate("jalen brunson", "player_points", WINDOW, "basketball_nba", now=NOW)

        assert isinstance(result, HitRateEstimate)
        assert result.hit_rate == pytest.approx(0.7)
        assert result.sample_count == 10

    def test_line_window_excludes_other_lines(self, memory_store, aggregator):
        _seed(memory_store, graded_series(5, 0, line=30.5))

        result = aggregator.estimate("Jalen Brunson", "player_points", WINDOW, "basketball_nba", now=NOW)

        assert isinstance(result, InsufficientData)
        assert result.sample_count == 0

    def test_lookback_window(self, memory_store, aggregator):
        # 3-day spacing: games at 1, 4, ... 37 days ago
        _seed(memory_store, graded_series(13, 0))

        recent = aggregator.estimate(
            "Jalen Brunson", "player_points", WINDOW, "basketball_nba", lookback_days=12, now=NOW,
        )
        full = aggregator.estimate("Jalen Brunson", "player_points", WINDOW, "basketball_nba", now=NOW)

        assert isinstance(recent, InsufficientData)
        assert recent.sample_count == 4
        assert full.sample_count == 13

    def test_tuple_window_accepted(self, memory_store, aggregator):
        _seed(memory_store, graded_series(5, 0))

        result = aggregator.estimate("Jalen Brunson", "player_points", (26.0, 27.0), "basketball_nba", now=NOW)

        assert isinstance(result, HitRateEstimate)

    def test_invalid_arguments(self, aggregator):
        with pytest.raises(InvalidInput):
            aggregator.estimate("", "player_points", WINDOW, "basketball_nba")
        with pytest.raises(InvalidInput):
            aggregator.estimate("Jalen Brunson", "player_points", WINDOW, "basketball_nba", lookback_days=0)

    def test_store_must_implement_contract(self):
        with pytest.raises(TypeError):
            HistoricalAggregator(object())


class TestRecordOutcome:

    def test_ungraded_then_graded(self, memory_store, aggregator):
        raw = make_outcome()

        first = aggregator.record_outcome(raw, now=NOW)
        second = aggregator.record_outcome(raw, now=NOW)
        graded = aggregator.record_outcome(replace(raw, actual_result=30.0), now=NOW)

        assert first.status == RecordStatus.INSERTED
        assert second.status == RecordStatus.UPDATED
        assert graded.status == RecordStatus.GRADED
        assert graded.outcome.hit is True
        # one graded outcome is not enough to estimate
        assert isinstance(graded.estimate, InsufficientData)

    def test_graded_outcome_is_immutable(self, memory_store, aggregator):
        outcome = make_outcome(actual_result=30.0)
        aggregator.record_outcome(outcome, now=NOW)

        again = aggregator.record_outcome(replace(outcome, actual_result=10.0), now=NOW)

        assert again.status == RecordStatus.UNCHANGED
        assert memory_store.get_outcome(outcome.key).actual_result == 30.0

    def test_fifth_graded_outcome_upserts_estimate(self, memory_store, aggregator):
        results = [aggregator.record_outcome(o, now=NOW) for o in graded_series(4, 1)]

        assert isinstance(results[-1].estimate, HitRateEstimate)
        key = HitRateKey.build("Jalen Brunson", "player_points", "basketball_nba", 26.5, 26.5)
        stored = memory_store.read_hit_rate(key)
        assert stored is not None
        assert stored.hit_rate == pytest.approx(0.8)
        assert stored.sample_count == 5

    def test_line_move_replaces_narrower_window(self, memory_store, aggregator):
        for o in graded_series(5, 0, line=24.5):
            aggregator.record_outcome(o, now=NOW)
        aggregator.record_outcome(make_outcome(line=25.5, days_ago=2, actual_result=30.0), now=NOW)
        aggregator.record_outcome(make_outcome(line=24.5, days_ago=20, actual_result=20.0), now=NOW)

        stored = memory_store.list_hit_rates()

        assert len(stored) == 1
        estimate = stored[0]
        assert (estimate.line_range_min, estimate.line_range_max) == (24.5, 25.5)
        assert (estimate.sample_count, estimate.hit_count) == (7, 6)
        replayed = aggregator.estimate(
            "Jalen Brunson", "player_points", (24.5, 25.5), "basketball_nba", now=NOW
        )
        assert replayed.hit_rate == pytest.approx(estimate.hit_rate)
        assert replayed.sample_count == estimate.sample_count

    def test_rejects_blank_player(self, aggregator):
        with pytest.raises(InvalidInput):
            aggregator.record_outcome(make_outcome(player_name="  "))

    def test_grade_outcome(self, aggregator):
        outcome = make_outcome()
        aggregator.record_outcome(outcome, now=NOW)

        result = aggregator.grade_outcome(outcome, 20.0, now=NOW)

        assert result.status == RecordStatus.GRADED
        assert result.outcome.hit is False


class TestRecalculateAll:

    def test_recalculate_is_idempotent(self, memory_store, aggregator):
        _seed(memory_store, graded_series(8, 4))
        _seed(memory_store, graded_series(3, 3, player_name="Josh Hart", line=9.5))
        _seed(memory_store, graded_series(2, 1, player_name="Mitchell Robinson", line=8.5))

        first = aggregator.recalculate_all(now=NOW)
        snapshot = sorted(memory_store.list_hit_rates(), key=lambda e: e.player_name)
        second = aggregator.recalculate_all(now=NOW)

        assert first.count == second.count == 2
        assert first.errors == []
        assert sorted(memory_store.list_hit_rates(), key=lambda e: e.player_name) == snapshot

    def test_record_and_recalculate_agree(self, memory_store, aggregator):
        for o in graded_series(6, 4):
            aggregator.record_outcome(o, now=NOW)
        recorded = memory_store.list_hit_rates()

        aggregator.recalculate_all(now=NOW)

        assert memory_store.list_hit_rates() == recorded

    def test_stale_history_is_skipped(self, memory_store, aggregator):
        _seed(memory_store, graded_series(6, 0, spacing_days=1))

        summary = aggregator.recalculate_all(now=NOW + timedelta(days=200))

        assert summary.count == 0
        assert summary.skipped == 1

    def test_aged_out_estimate_is_removed(self, memory_store, aggregator):
        for o in graded_series(6, 0, spacing_days=1):
            aggregator.record_outcome(o, now=NOW)
        assert len(memory_store.list_hit_rates()) == 1

        aggregator.recalculate_all(now=NOW + timedelta(days=200))

        assert memory_store.list_hit_rates() == []

    def test_store_failures_are_collected(self):
        class FlakyStore(InMemoryPropStore):
            def query_outcomes(self, outcome_filter):
                if outcome_filter.player_name == "Josh Hart":
                    raise CollaboratorFailure("connection reset", source="prop_store")
                return super().query_outcomes(outcome_filter)

        store = FlakyStore()
        _seed(store, graded_series(6, 0))
        _seed(store, graded_series(6, 0, player_name="Josh Hart", line=9.5))
        agg = HistoricalAggregator(store, EngineConfig())

        summary = agg.recalculate_all(now=NOW)

        assert summary.count == 1
        assert len(summary.errors) == 1
        assert "Josh Hart" in summary.errors[0]

    def test_listing_failure_returns_error_summary(self):
        class BrokenStore(InMemoryPropStore):
            def graded_combinations(self, min_count):
                raise CollaboratorFailure("db down", source="prop_store")

        summary = HistoricalAggregator(BrokenStore()).recalculate_all(now=NOW)

        assert summary.count == 0
        assert summary.errors
