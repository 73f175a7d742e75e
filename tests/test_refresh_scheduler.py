"""
Tests for the background prop refresh
Run with: pytest tests/test_refresh_scheduler.py -v
"""

import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from propedge.core.engine_config import EngineConfig
from propedge.core.errors import CollaboratorFailure, ConfigurationError
from propedge.core.store_interface import MarketDataSource, OutcomeFilter, RawOutcome
from propedge.services.aggregator import HistoricalAggregator
from propedge.services.prop_store import InMemoryPropStore
from propedge.services.refresh_scheduler import (
    JOB_ID,
    RefreshScheduler,
    RefreshState,
    RefreshWatermark,
)

SPORTS = (
    "americanfootball_nfl",
    "basketball_nba",
    "baseball_mlb",
    "icehockey_nhl",
    "basketball_wnba",
)
GAME_TIME = datetime(2025, 3, 1, 0, 30)


def _prop(event_id, player, platform="us_dfs.prizepicks", line=24.5, actual=None):
    return RawOutcome(
        event_id=event_id,
        player_name=player,
        prop_type="player_points",
        line=line,
        platform_key=platform,
        odds=-120.0,
        commence_time=GAME_TIME,
        actual_result=actual,
    )


class FakeSource(MarketDataSource):
    """Two events per sport, two props per event; selected sports fail."""

    def __init__(self, failing=(), failing_events=()):
        self.failing = set(failing)
        self.failing_events = set(failing_events)
        self.fetched = []
        self._lock = threading.Lock()

    def list_events(self, sport_key):
        if sport_key in self.failing:
            raise CollaboratorFailure("HTTP 503", source="fake", context=sport_key)
        return [f"{sport_key}-1", f"{sport_key}-2"]

    def fetch_market_props(self, sport_key, match_id):
        with self._lock:
            self.fetched.append(match_id)
        if match_id in self.failing_events:
            raise CollaboratorFailure("timeout", source="fake", context=match_id)
        return [
            _prop(match_id, f"{match_id} Player A"),
            _prop(match_id, f"{match_id} Player B"),
        ]


def _scheduler_mock(running=False):
    scheduler = MagicMock()
    scheduler.running = running
    scheduler.get_job.return_value = None
    return scheduler


@pytest.fixture
def config():
    return EngineConfig(sports=SPORTS, max_concurrent_fetches=3)


@pytest.fixture
def store():
    return InMemoryPropStore()


def _refresher(source, store, config, scheduler=None):
    aggregator = HistoricalAggregator(store, config)
    return RefreshScheduler(source, aggregator, config, scheduler=scheduler or _scheduler_mock())


class TestRefreshCycle:

    def test_all_sports_ok(self, store, config):
        refresher = _refresher(FakeSource(), store, config)

        summary = refresher.refresh_now()

        assert not summary.skipped
        assert summary.sports_ok == 5
        assert summary.sports_failed == 0
        assert summary.events_fetched == 10
        assert summary.outcomes_recorded == 20
        assert summary.duration_seconds >= 0.0
        assert store.record_counts()["outcomes"] == 20

    def test_failing_sports_are_isolated(self, store, config):
        source = FakeSource(failing={"baseball_mlb", "icehockey_nhl"})
        refresher = _refresher(source, store, config)

        summary = refresher.refresh_now()

        assert summary.sports_failed == 2
        assert summary.error_count == 2
        assert summary.sports_ok == 3
        assert summary.outcomes_recorded == 12
        assert len(summary.fetch_errors) == 2
        assert refresher.state == RefreshState.IDLE
        nba = store.query_outcomes(OutcomeFilter(sport_key="basketball_nba", graded_only=False))
        assert len(nba) == 4

    def test_single_event_failure_does_not_fail_sport(self, store, config):
        source = FakeSource(failing_events={"basketball_nba-1"})
        refresher = _refresher(source, store, config)

        summary = refresher.refresh_now()

        assert summary.sports_failed == 0
        assert len(summary.fetch_errors) == 1
        assert summary.outcomes_recorded == 18

    def test_all_events_failing_fails_sport(self, store, config):
        source = FakeSource(failing_events={"basketball_nba-1", "basketball_nba-2"})

        summary = _refresher(source, store, config).refresh_now()

        assert summary.sports_failed == 1
        assert summary.sports_ok == 4

    def test_seen_events_are_skipped_next_cycle(self, store, config):
        source = FakeSource()
        refresher = _refresher(source, store, config)

        refresher.refresh_now()
        second = refresher.refresh_now()

        assert second.events_fetched == 0
        assert second.events_skipped == 10
        assert len(source.fetched) == 10

    def test_failed_events_are_retried(self, store, config):
        source = FakeSource(failing_events={"basketball_nba-1"})
        refresher = _refresher(source, store, config)

        refresher.refresh_now()
        source.failing_events.clear()
        second = refresher.refresh_now()

        assert second.events_fetched == 1
        assert second.outcomes_recorded == 2

    def test_platform_filter(self, store):
        class MixedSource(FakeSource):
            def fetch_market_props(self, sport_key, match_id):
                return [
                    _prop(match_id, "Jalen Brunson"),
                    _prop(match_id, "Jalen Brunson", platform="draftkings"),
                ]

        config = EngineConfig(sports=("basketball_nba",), platforms=("us_dfs.prizepicks",))

        summary = _refresher(MixedSource(), store, config).refresh_now()

        outcomes = store.query_outcomes(OutcomeFilter(graded_only=False))
        assert summary.outcomes_recorded == 2
        assert {o.platform_key for o in outcomes} == {"us_dfs.prizepicks"}

    def test_duplicates_within_cycle_are_dropped(self, store):
        class DuplicatingSource(FakeSource):
            def fetch_market_props(self, sport_key, match_id):
                return [_prop(match_id, "Jalen Brunson"), _prop(match_id, "jalen brunson")]

        config = EngineConfig(sports=("basketball_nba",))

        summary = _refresher(DuplicatingSource(), store, config).refresh_now()

        assert summary.duplicates_dropped == 2
        assert summary.outcomes_recorded == 2

    def test_graded_props_update_hit_rates(self, store):
        class GradedSource(FakeSource):
            def list_events(self, sport_key):
                return [f"evt-{i}" for i in range(6)]

            def fetch_market_props(self, sport_key, match_id):
                prop = _prop(match_id, "Jalen Brunson", actual=30.0)
                # inside the lookback window of the cycle's clock
                return [replace(prop, commence_time=datetime.utcnow() - timedelta(days=1))]

        config = EngineConfig(sports=("basketball_nba",))

        summary = _refresher(GradedSource(), store, config).refresh_now()

        assert summary.outcomes_graded == 6
        assert len(store.list_hit_rates()) == 1
        assert store.list_hit_rates()[0].hit_rate == 1.0

    def test_persistence_errors_are_collected(self, config):
        class BrokenStore(InMemoryPropStore):
            def save_outcome(self, outcome):
                raise CollaboratorFailure("disk full", source="prop_store")

        summary = _refresher(FakeSource(), BrokenStore(), config).refresh_now()

        assert summary.outcomes_recorded == 0
        assert len(summary.persistence_errors) == 20
        assert summary.sports_failed == 0

    def test_malformed_prop_is_collected_not_fatal(self, store):
        class MalformedSource(FakeSource):
            def fetch_market_props(self, sport_key, match_id):
                return [_prop(match_id, None), _prop(match_id, "Jalen Brunson")]

        config = EngineConfig(sports=("basketball_nba",))

        summary = _refresher(MalformedSource(), store, config).refresh_now()

        assert summary.sports_ok == 1
        assert summary.outcomes_recorded == 2
        assert len(summary.persistence_errors) == 2
        assert all("malformed prop" in e for e in summary.persistence_errors)
        names = {o.player_name for o in store.query_outcomes(OutcomeFilter(graded_only=False))}
        assert names == {"Jalen Brunson"}

    def test_events_are_retried_after_store_outage(self, config):
        class OutageStore(InMemoryPropStore):
            down = True

            def save_outcome(self, outcome):
                if self.down:
                    raise CollaboratorFailure("connection refused", source="prop_store")
                return super().save_outcome(outcome)

        store = OutageStore()
        refresher = _refresher(FakeSource(), store, config)

        first = refresher.refresh_now()
        seen_after_outage = refresher.get_status()["seen_events"]["basketball_nba"]
        store.down = False
        second = refresher.refresh_now()

        assert len(first.persistence_errors) == 20
        assert seen_after_outage == 0
        assert refresher.get_status()["seen_events"]["basketball_nba"] == 2
        assert second.events_skipped == 0
        assert second.events_fetched == 10
        assert second.outcomes_recorded == 20
        assert store.record_counts()["outcomes"] == 20

    def test_fetch_concurrency_is_bounded(self, store):
        lock = threading.Lock()
        in_flight = [0]
        peak = [0]

        class CountingSource(FakeSource):
            def list_events(self, sport_key):
                return [f"{sport_key}-{i}" for i in range(4)]

            def fetch_market_props(self, sport_key, match_id):
                with lock:
                    in_flight[0] += 1
                    peak[0] = max(peak[0], in_flight[0])
                time.sleep(0.02)
                with lock:
                    in_flight[0] -= 1
                return [_prop(match_id, "Jalen Brunson")]

        config = EngineConfig(sports=SPORTS, max_concurrent_fetches=2)

        summary = _refresher(CountingSource(), store, config).refresh_now()

        assert summary.events_fetched == 4 * len(SPORTS)
        assert 1 <= peak[0] <= 2

    def test_completion_callback(self, store, config):
        refresher = _refresher(FakeSource(), store, config)
        received = []
        refresher.on_refresh_complete(received.append)
        refresher.on_refresh_complete(lambda s: 1 / 0)

        summary = refresher.refresh_now()

        assert received == [summary]


class TestMutualExclusion:

    def test_overlapping_refresh_is_skipped(self, store):
        started = threading.Event()
        release = threading.Event()

        class SlowSource(FakeSource):
            def list_events(self, sport_key):
                started.set()
                release.wait(timeout=5)
                return super().list_events(sport_key)

        config = EngineConfig(sports=("basketball_nba",))
        refresher = _refresher(SlowSource(), store, config)
        results = []
        worker = threading.Thread(target=lambda: results.append(refresher.refresh_now()))
        worker.start()
        assert started.wait(timeout=5)

        assert refresher.state == RefreshState.REFRESHING
        assert refresher.get_status()["is_refreshing"] is True
        overlap = refresher.refresh_now()

        release.set()
        worker.join(timeout=5)

        assert overlap.skipped
        assert overlap.outcomes_recorded == 0
        assert not results[0].skipped
        assert results[0].outcomes_recorded == 4
        assert refresher.state == RefreshState.IDLE

    def test_state_returns_to_idle_after_failure(self, store, config):
        refresher = _refresher(FakeSource(), store, config)
        refresher._run_cycle = MagicMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            refresher.refresh_now()

        assert refresher.state == RefreshState.IDLE


class TestLifecycle:

    def test_start_registers_interval_job(self, store, config):
        scheduler = _scheduler_mock(running=False)
        refresher = _refresher(FakeSource(), store, config, scheduler)

        refresher.start(interval_minutes=15)

        scheduler.add_job.assert_called_once()
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == JOB_ID
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert kwargs["replace_existing"] is True
        scheduler.start.assert_called_once()

    def test_invalid_config_schedules_nothing(self, store):
        scheduler = _scheduler_mock()
        refresher = _refresher(FakeSource(), store, EngineConfig(max_concurrent_fetches=0), scheduler)

        with pytest.raises(ConfigurationError):
            refresher.start()

        scheduler.add_job.assert_not_called()

    def test_invalid_interval_rejected(self, store, config):
        scheduler = _scheduler_mock()
        refresher = _refresher(FakeSource(), store, config, scheduler)

        with pytest.raises(ConfigurationError):
            refresher.start(interval_minutes=0)

        scheduler.add_job.assert_not_called()

    def test_stop_shuts_down_running_scheduler(self, store, config):
        scheduler = _scheduler_mock(running=True)
        refresher = _refresher(FakeSource(), store, config, scheduler)

        refresher.stop(timeout=1)

        scheduler.shutdown.assert_called_once_with(wait=True)

    def test_stop_waits_for_in_flight_cycle(self, store):
        started = threading.Event()
        release = threading.Event()

        class SlowSource(FakeSource):
            def list_events(self, sport_key):
                started.set()
                release.wait(timeout=5)
                return super().list_events(sport_key)

        config = EngineConfig(sports=("basketball_nba",))
        refresher = RefreshScheduler(
            SlowSource(), HistoricalAggregator(store, config), config,
            scheduler=BackgroundScheduler(),
        )
        refresher.start(interval_minutes=60)
        assert refresher.is_running

        results = []
        worker = threading.Thread(target=lambda: results.append(refresher.refresh_now()))
        worker.start()
        assert started.wait(timeout=5)

        stopper = threading.Thread(target=lambda: refresher.stop(timeout=5))
        stopper.start()
        stopper.join(timeout=0.2)
        assert stopper.is_alive()
        assert refresher.state == RefreshState.REFRESHING

        release.set()
        stopper.join(timeout=5)
        worker.join(timeout=5)

        assert not stopper.is_alive()
        assert not refresher.is_running
        assert not results[0].skipped
        assert results[0].outcomes_recorded == 4
        assert refresher.state == RefreshState.IDLE

    def test_job_wrapper_never_raises(self, store, config):
        refresher = _refresher(FakeSource(), store, config)
        refresher.refresh_now = MagicMock(side_effect=RuntimeError("boom"))

        refresher._refresh_job()

        refresher.refresh_now.assert_called_once()

    def test_status_snapshot(self, store, config):
        refresher = _refresher(FakeSource(failing={"baseball_mlb"}), store, config)

        before = refresher.get_status()
        refresher.refresh_now()
        after = refresher.get_status()

        assert before["last_refresh_time"] is None
        assert before["record_counts"]["outcomes_recorded"] == 0
        assert after["is_refreshing"] is False
        assert after["state"] == "idle"
        assert after["last_refresh_time"] is not None
        assert after["record_counts"]["outcomes_recorded"] == 16
        assert after["record_counts"]["sports_failed"] == 1
        assert after["seen_events"]["basketball_nba"] == 2
        assert after["last_summary"]["sports_ok"] == 4


class TestWatermark:

    def test_mark_seen_caps_oldest_first(self):
        wm = RefreshWatermark()

        wm.mark_seen("basketball_nba", [f"e{i}" for i in range(5)], cap=3)

        assert wm.seen_for("basketball_nba") == {"e2", "e3", "e4"}
        assert wm.seen_for("icehockey_nhl") == set()
