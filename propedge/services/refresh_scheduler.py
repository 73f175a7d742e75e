"""
Background refresh of player-prop history.

Each cycle pulls the current board for every configured sport, skips events
already processed, and feeds new outcomes into the HistoricalAggregator.

Pipeline:
    fetch stage    - ThreadPoolExecutor, one task per sport, width
                     max_concurrent_fetches (the only rate-limit throttle);
                     tasks post batches onto a queue.Queue
    record stage   - the refresh thread drains the queue and is the single
                     caller of HistoricalAggregator.record_outcome

A sport whose fetch fails is logged and counted; the other sports finish
normally.  Only one cycle runs at a time: a request arriving mid-cycle is a
logged no-op that returns a skipped summary.

Design:
    - Constructed explicitly by the composition root; nothing starts on import.
    - Periodic ticking is an APScheduler interval job (max_instances=1).
    - RefreshWatermark is mutated only under self._lock, and the lock is
      never held across network or store I/O, so get_status() never waits
      on a running cycle.
"""

import logging
import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from propedge.core.engine_config import EngineConfig
from propedge.core.errors import ConfigurationError, InvalidInput
from propedge.core.store_interface import MarketDataSource, Outcome, RawOutcome
from propedge.services.aggregator import HistoricalAggregator, RecordStatus

logger = logging.getLogger(__name__)

JOB_ID = "prop_refresh"

#: Event ids remembered per sport; the oldest are forgotten first.
MAX_SEEN_EVENTS_PER_SPORT = 2000


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class RefreshSummary:
    """Outcome of one refresh cycle, also published to completion callbacks."""

    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    skipped: bool = False
    sports_ok: int = 0
    sports_failed: int = 0
    events_fetched: int = 0
    events_skipped: int = 0
    outcomes_recorded: int = 0
    outcomes_graded: int = 0
    duplicates_dropped: int = 0
    fetch_errors: List[str] = field(default_factory=list)
    persistence_errors: List[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return self.sports_failed

    def to_dict(self) -> Dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "skipped": self.skipped,
            "sports_ok": self.sports_ok,
            "sports_failed": self.sports_failed,
            "events_fetched": self.events_fetched,
            "events_skipped": self.events_skipped,
            "outcomes_recorded": self.outcomes_recorded,
            "outcomes_graded": self.outcomes_graded,
            "duplicates_dropped": self.duplicates_dropped,
            "fetch_errors": list(self.fetch_errors),
            "persistence_errors": list(self.persistence_errors),
        }


@dataclass
class RefreshWatermark:
    """Process-wide refresh state.  Mutated only by RefreshScheduler under its lock."""

    last_run_start: Optional[datetime] = None
    last_run_end: Optional[datetime] = None
    in_flight: bool = False
    seen_event_ids: Dict[str, "OrderedDict[str, None]"] = field(default_factory=dict)
    last_duration_seconds: Optional[float] = None
    last_summary: Optional[RefreshSummary] = None

    def seen_for(self, sport_key: str) -> Set[str]:
        return set(self.seen_event_ids.get(sport_key, ()))

    def mark_seen(self, sport_key: str, event_ids, cap: int = MAX_SEEN_EVENTS_PER_SPORT) -> None:
        seen = self.seen_event_ids.setdefault(sport_key, OrderedDict())
        for event_id in event_ids:
            seen[event_id] = None
            seen.move_to_end(event_id)
        while len(seen) > cap:
            seen.popitem(last=False)


@dataclass
class _Batch:
    sport_key: str
    event_id: str
    props: List[RawOutcome]


@dataclass
class _SportDone:
    sport_key: str


@dataclass
class _SportReport:
    sport_key: str
    events_listed: int = 0
    events_skipped: int = 0
    events_fetched: int = 0
    events_failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        # Every new event failed: nothing came back for this sport
        return self.events_failed > 0 and self.events_fetched == 0


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class RefreshScheduler:
    """
    Keeps hit-rate history current from a MarketDataSource.

    Usage::

        refresher = RefreshScheduler(source, aggregator, config)
        refresher.on_refresh_complete(my_callback)
        refresher.start()          # interval job
        refresher.refresh_now()    # manual trigger, same exclusion rule
        refresher.stop()           # lets an in-flight cycle finish
    """

    def __init__(
        self,
        source: MarketDataSource,
        aggregator: HistoricalAggregator,
        config: Optional[EngineConfig] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.source = source
        self.aggregator = aggregator
        self.config = config or aggregator.config
        self._scheduler = scheduler or BackgroundScheduler()
        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._watermark = RefreshWatermark()
        self._callbacks: List[Callable[[RefreshSummary], None]] = []

    # ------------------------------------------------------------------
    # Callback registration
    # ------------------------------------------------------------------

    def on_refresh_complete(self, callback: Callable[[RefreshSummary], None]) -> None:
        """Register a callback fired with the summary of every completed cycle."""
        self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> RefreshState:
        with self._lock:
            return RefreshState.REFRESHING if self._watermark.in_flight else RefreshState.IDLE

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self, interval_minutes: Optional[int] = None) -> None:
        """
        Register the periodic refresh job and start ticking.

        Raises ConfigurationError before anything is scheduled when the
        configuration is unusable.
        """
        self.config.validate()
        minutes = interval_minutes if interval_minutes is not None else self.config.refresh_interval_minutes
        if minutes < 1:
            raise ConfigurationError(f"interval_minutes must be >= 1, got {minutes!r}")

        self._scheduler.add_job(
            self._refresh_job,
            IntervalTrigger(minutes=minutes),
            id=JOB_ID,
            name="Player prop refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(
            "Prop refresh started: every %dmin, %d sports, %d workers",
            minutes, len(self.config.sports), self.config.max_concurrent_fetches,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking.  An in-flight cycle is allowed to finish first."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        if not self._idle.wait(timeout):
            logger.warning("Prop refresh still in flight after %.1fs stop timeout", timeout)
        logger.info("Prop refresh stopped")

    def _refresh_job(self) -> None:
        """APScheduler entry point; never raises."""
        try:
            self.refresh_now()
        except Exception as e:
            logger.error("Prop refresh job failed: %s", e, exc_info=True)

    # ------------------------------------------------------------------
    # Refresh cycle
    # ------------------------------------------------------------------

    def refresh_now(self) -> RefreshSummary:
        """
        Run one cycle synchronously.

        Returns immediately with ``skipped=True`` when another cycle is
        already in flight.
        """
        with self._lock:
            if self._watermark.in_flight:
                logger.info("Prop refresh already in progress, skipping")
                return RefreshSummary(skipped=True, finished_at=datetime.utcnow())
            self._watermark.in_flight = True
            self._idle.clear()
            summary = RefreshSummary()
            self._watermark.last_run_start = summary.started_at
            seen = {sport: self._watermark.seen_for(sport) for sport in self.config.sports}

        t0 = time.monotonic()
        newly_seen: Dict[str, List[str]] = {}
        try:
            newly_seen = self._run_cycle(summary, seen)
        finally:
            summary.duration_seconds = time.monotonic() - t0
            summary.finished_at = datetime.utcnow()
            with self._lock:
                for sport, event_ids in newly_seen.items():
                    self._watermark.mark_seen(sport, event_ids)
                self._watermark.last_run_end = summary.finished_at
                self._watermark.last_duration_seconds = summary.duration_seconds
                self._watermark.last_summary = summary
                self._watermark.in_flight = False
                self._idle.set()

        logger.info(
            "Prop refresh completed in %.2fs: %d sports ok, %d failed, "
            "%d events, %d outcomes recorded (%d graded), %d persistence errors",
            summary.duration_seconds, summary.sports_ok, summary.sports_failed,
            summary.events_fetched, summary.outcomes_recorded, summary.outcomes_graded,
            len(summary.persistence_errors),
        )
        self._publish(summary)
        return summary

    def _run_cycle(self, summary: RefreshSummary, seen: Dict[str, Set[str]]) -> Dict[str, List[str]]:
        """Fan out fetches, drain the queue in arrival order, return fully recorded event ids."""
        sports = list(self.config.sports)
        batches: "queue.Queue" = queue.Queue()
        newly_seen: Dict[str, List[str]] = {sport: [] for sport in sports}
        cycle_keys: Set[str] = set()
        now = summary.started_at

        with ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_fetches,
            thread_name_prefix="prop-fetch",
        ) as pool:
            futures = {
                sport: pool.submit(self._fetch_sport, sport, seen.get(sport, set()), batches)
                for sport in sports
            }

            pending = len(sports)
            while pending:
                item = batches.get()
                if isinstance(item, _SportDone):
                    pending -= 1
                    continue
                if self._record_batch(item, summary, cycle_keys, now):
                    newly_seen[item.sport_key].append(item.event_id)

        for sport, future in futures.items():
            exc = future.exception()
            if exc is not None:
                summary.sports_failed += 1
                summary.fetch_errors.append(f"{sport}: {exc}")
                logger.warning("Prop refresh failed for %s: %s", sport, exc)
                continue
            report: _SportReport = future.result()
            summary.events_fetched += report.events_fetched
            summary.events_skipped += report.events_skipped
            summary.fetch_errors.extend(report.errors)
            if report.failed:
                summary.sports_failed += 1
                logger.warning(
                    "Prop refresh failed for %s: all %d event fetches failed",
                    sport, report.events_failed,
                )
            else:
                summary.sports_ok += 1

        return newly_seen

    def _fetch_sport(self, sport_key: str, seen: Set[str], batches: "queue.Queue") -> _SportReport:
        """Fetch stage for one sport.  Always posts a _SportDone marker."""
        report = _SportReport(sport_key)
        platforms = set(self.config.platforms)
        try:
            event_ids = self.source.list_events(sport_key)
            report.events_listed = len(event_ids)
            for event_id in event_ids:
                if event_id in seen:
                    report.events_skipped += 1
                    continue
                try:
                    props = self.source.fetch_market_props(sport_key, event_id)
                except Exception as e:
                    report.events_failed += 1
                    report.errors.append(f"{sport_key}/{event_id}: {e}")
                    logger.warning("Prop fetch failed for %s event %s: %s", sport_key, event_id, e)
                    continue
                report.events_fetched += 1
                if platforms:
                    props = [p for p in props if p.platform_key in platforms]
                batches.put(_Batch(sport_key, event_id, props))
            return report
        finally:
            batches.put(_SportDone(sport_key))

    def _record_batch(
        self, batch: _Batch, summary: RefreshSummary, cycle_keys: Set[str], now: datetime
    ) -> bool:
        """Record one event's props.  Returns False when the store failed for any of them."""
        stored_ok = True
        for raw in batch.props:
            try:
                outcome = Outcome(
                    player_name=raw.player_name,
                    prop_type=raw.prop_type,
                    line=raw.line,
                    game_date=raw.commence_time or now,
                    sport_key=batch.sport_key,
                    platform_key=raw.platform_key,
                    odds=raw.odds,
                    actual_result=raw.actual_result,
                    event_id=raw.event_id or batch.event_id,
                )
                key = outcome.key
            except (AttributeError, TypeError, ValueError) as e:
                summary.persistence_errors.append(f"{batch.sport_key}/{batch.event_id}: malformed prop: {e}")
                logger.warning("Malformed prop in %s event %s: %s", batch.sport_key, batch.event_id, e)
                continue
            if key in cycle_keys:
                summary.duplicates_dropped += 1
                continue
            cycle_keys.add(key)
            try:
                result = self.aggregator.record_outcome(outcome, now=now)
            except (InvalidInput, TypeError) as e:
                summary.persistence_errors.append(f"{key}: {e}")
                logger.warning("Rejected outcome %s: %s", key, e)
                continue
            except Exception as e:
                stored_ok = False
                summary.persistence_errors.append(f"{key}: {e}")
                logger.warning("Failed to record outcome %s: %s", key, e)
                continue
            if result.status is not RecordStatus.UNCHANGED:
                summary.outcomes_recorded += 1
            if result.status is RecordStatus.GRADED:
                summary.outcomes_graded += 1
        return stored_ok

    def _publish(self, summary: RefreshSummary) -> None:
        for cb in self._callbacks:
            try:
                cb(summary)
            except Exception as exc:
                logger.error("Prop refresh callback error: %s", exc)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict:
        """Snapshot for the admin status endpoint.  Never waits on a running cycle."""
        with self._lock:
            wm = self._watermark
            last = wm.last_summary
            status = {
                "is_running": self.is_running,
                "is_refreshing": wm.in_flight,
                "state": (RefreshState.REFRESHING if wm.in_flight else RefreshState.IDLE).value,
                "last_refresh_start": wm.last_run_start.isoformat() if wm.last_run_start else None,
                "last_refresh_time": wm.last_run_end.isoformat() if wm.last_run_end else None,
                "last_duration_seconds": wm.last_duration_seconds,
                "seen_events": {sport: len(ids) for sport, ids in wm.seen_event_ids.items()},
                "last_summary": last.to_dict() if last else None,
            }

        job = self._scheduler.get_job(JOB_ID) if self.is_running else None
        next_run = getattr(job, "next_run_time", None) if job else None
        status["next_run_time"] = next_run.isoformat() if next_run else None
        status["record_counts"] = {
            "outcomes_recorded": last.outcomes_recorded if last else 0,
            "outcomes_graded": last.outcomes_graded if last else 0,
            "sports_failed": last.sports_failed if last else 0,
            "persistence_errors": len(last.persistence_errors) if last else 0,
        }
        return status
