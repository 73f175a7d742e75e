"""
Historical hit-rate aggregation.

HistoricalAggregator is the single entry point for recording outcomes and
recomputing the derived HitRateEstimate records.  Every write goes through
one lock, so updates for a (player, prop, sport) combination apply in
arrival order no matter how many fetch workers produced them.

compute_hit_rate_estimate() is the only function that builds a
HitRateEstimate; record_outcome() and recalculate_all() both route through
it with the same line window, which keeps the two paths idempotent.
"""

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

from propedge.core.confidence import Z_95, consistency_score
from propedge.core.engine_config import EngineConfig, HARD_MIN_SAMPLE_SIZE
from propedge.core.errors import CollaboratorFailure, InsufficientData, InvalidInput
from propedge.core.store_interface import (
    ConfidenceInterval,
    HitRateEstimate,
    Outcome,
    OutcomeFilter,
    PropStore,
)

logger = logging.getLogger(__name__)

#: Outcomes per chronological block when measuring consistency.
CONSISTENCY_BLOCK_SIZE = 5


@dataclass(frozen=True)
class LineWindow:
    """Inclusive range of prop lines treated as the same market."""

    min: float
    max: float

    def __post_init__(self):
        if not (math.isfinite(self.min) and math.isfinite(self.max)):
            raise InvalidInput(f"line window bounds must be finite, got {self.min!r}..{self.max!r}")
        if self.min > self.max:
            raise InvalidInput(f"line window min {self.min!r} exceeds max {self.max!r}")

    @classmethod
    def around(cls, line: float, tolerance: float) -> "LineWindow":
        return cls(min=line - tolerance, max=line + tolerance)


class RecordStatus(str, Enum):
    INSERTED = "inserted"      # new ungraded outcome
    UPDATED = "updated"        # ungraded outcome re-seen
    GRADED = "graded"          # outcome became graded; estimate recomputed
    UNCHANGED = "unchanged"    # already graded; immutable


@dataclass
class RecordResult:
    outcome: Outcome
    status: RecordStatus
    estimate: Optional[Union[HitRateEstimate, InsufficientData]] = None


@dataclass
class RecalculationSummary:
    count: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure aggregation
# ---------------------------------------------------------------------------

def storage_confidence_level(sample_count: int) -> str:
    """Coarse storage tag: >= 30 high, >= 15 medium, otherwise low."""
    if sample_count >= 30:
        return "high"
    if sample_count >= 15:
        return "medium"
    return "low"


def data_quality_label(outcomes: Sequence[Outcome]) -> str:
    """Share of outcomes graded from a recorded stat line."""
    if not outcomes:
        return "low"
    with_result = sum(1 for o in outcomes if o.actual_result is not None)
    share = with_result / len(outcomes)
    if share >= 0.9:
        return "high"
    if share >= 0.5:
        return "medium"
    return "low"


def block_consistency(outcomes: Sequence[Outcome], block_size: int = CONSISTENCY_BLOCK_SIZE) -> float:
    """Consistency of hit rates across full chronological blocks of outcomes."""
    ordered = sorted(outcomes, key=lambda o: o.game_date)
    rates = []
    for start in range(0, len(ordered) - block_size + 1, block_size):
        block = ordered[start:start + block_size]
        rates.append(sum(1 for o in block if o.hit) / block_size)
    return consistency_score(rates)


def compute_hit_rate_estimate(
    player_name: str,
    prop_type: str,
    sport_key: str,
    window: LineWindow,
    outcomes: Sequence[Outcome],
    now: datetime,
    min_sample_size: int = HARD_MIN_SAMPLE_SIZE,
) -> Union[HitRateEstimate, InsufficientData]:
    """
    Summarise graded outcomes into a HitRateEstimate.

    Ungraded outcomes in ``outcomes`` are ignored.  Fewer than
    ``min_sample_size`` graded outcomes returns InsufficientData.
    """
    graded = [o for o in outcomes if o.is_graded]
    total = len(graded)
    required = max(min_sample_size, HARD_MIN_SAMPLE_SIZE)
    if total < required:
        return InsufficientData(
            player_name=player_name,
            prop_type=prop_type,
            sport_key=sport_key,
            sample_count=total,
            required=required,
            line_range_min=window.min,
            line_range_max=window.max,
        )

    hits = sum(1 for o in graded if o.hit)
    hit_rate = hits / total
    standard_error = math.sqrt(hit_rate * (1.0 - hit_rate) / total)
    margin = Z_95 * standard_error
    dates = [o.game_date for o in graded]

    return HitRateEstimate(
        player_name=player_name,
        prop_type=prop_type,
        line_range_min=window.min,
        line_range_max=window.max,
        sport_key=sport_key,
        hit_rate=hit_rate,
        sample_count=total,
        hit_count=hits,
        confidence_level=storage_confidence_level(total),
        standard_error=standard_error,
        confidence_interval_95=ConfidenceInterval(
            lower=max(0.0, hit_rate - margin),
            upper=min(1.0, hit_rate + margin),
        ),
        last_updated=now,
        first_game_date=min(dates),
        last_game_date=max(dates),
        consistency=block_consistency(graded),
        data_quality=data_quality_label(graded),
    )


def grade(outcome: Outcome, actual_result: float) -> Outcome:
    """A hit is a result that meets or exceeds the line."""
    if actual_result is None or not math.isfinite(actual_result):
        raise InvalidInput(f"actual_result must be a finite number, got {actual_result!r}")
    return replace(outcome, actual_result=float(actual_result), hit=actual_result >= outcome.line)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

class HistoricalAggregator:
    """Reads graded history and keeps derived hit rates current."""

    def __init__(self, store: PropStore, config: Optional[EngineConfig] = None):
        if not isinstance(store, PropStore):
            raise TypeError(f"store must implement PropStore, got {type(store).__name__}")
        self.store = store
        self.config = config or EngineConfig()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def estimate(
        self,
        player_name: str,
        prop_type: str,
        line_window: Union[LineWindow, Tuple[float, float]],
        sport_key: str,
        lookback_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Union[HitRateEstimate, InsufficientData]:
        """Hit rate over graded outcomes in the line and lookback windows."""
        if not player_name or not player_name.strip():
            raise InvalidInput("player_name is required")
        if not isinstance(line_window, LineWindow):
            line_window = LineWindow(*line_window)
        days = self.config.lookback_days if lookback_days is None else lookback_days
        if days < 1:
            raise InvalidInput(f"lookback_days must be >= 1, got {days!r}")
        now = now or datetime.utcnow()

        outcomes = self.store.query_outcomes(OutcomeFilter(
            player_name=player_name,
            prop_type=prop_type,
            sport_key=sport_key,
            line_min=line_window.min,
            line_max=line_window.max,
            start_date=now - timedelta(days=days),
            graded_only=True,
        ))
        return compute_hit_rate_estimate(
            player_name, prop_type, sport_key, line_window, outcomes, now,
            min_sample_size=self.config.min_sample_size,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_outcome(self, outcome: Outcome, now: Optional[datetime] = None) -> RecordResult:
        """
        Persist an outcome.  When it is (or becomes) graded, recompute and
        upsert the estimate for its (player, prop, sport) combination.

        Re-recording an already graded outcome is a no-op.
        """
        if not outcome.player_name or not outcome.player_name.strip():
            raise InvalidInput("outcome.player_name is required")
        if not math.isfinite(outcome.line):
            raise InvalidInput(f"outcome.line must be finite, got {outcome.line!r}")
        if outcome.hit is None and outcome.actual_result is not None:
            outcome = grade(outcome, outcome.actual_result)

        with self._lock:
            existing = self.store.get_outcome(outcome.key)
            if existing is not None and existing.is_graded:
                return RecordResult(existing, RecordStatus.UNCHANGED)

            stored = self.store.save_outcome(outcome)
            if not stored.is_graded:
                status = RecordStatus.INSERTED if existing is None else RecordStatus.UPDATED
                return RecordResult(stored, status)

            estimate = self._refresh_combination(
                stored.player_name, stored.prop_type, stored.sport_key, now or datetime.utcnow()
            )
            return RecordResult(stored, RecordStatus.GRADED, estimate)

    def grade_outcome(
        self, outcome: Outcome, actual_result: float, now: Optional[datetime] = None
    ) -> RecordResult:
        return self.record_outcome(grade(outcome, actual_result), now=now)

    def recalculate_all(self, now: Optional[datetime] = None) -> RecalculationSummary:
        """
        Recompute every combination with enough graded history.

        A failing combination is logged and collected; the batch continues.
        """
        now = now or datetime.utcnow()
        summary = RecalculationSummary()
        logger.info("Recalculating all hit rates")

        try:
            combinations = self.store.graded_combinations(self.config.min_sample_size)
        except CollaboratorFailure as exc:
            logger.error("Could not list combinations: %s", exc)
            summary.errors.append(f"list combinations: {exc}")
            return summary

        for player_name, prop_type, sport_key in combinations:
            try:
                with self._lock:
                    result = self._refresh_combination(player_name, prop_type, sport_key, now)
            except (CollaboratorFailure, InvalidInput) as exc:
                msg = f"{player_name} {prop_type} ({sport_key}): {exc}"
                logger.warning("Hit rate recalculation failed for %s", msg)
                summary.errors.append(msg)
                continue
            if isinstance(result, InsufficientData):
                summary.skipped += 1
            else:
                summary.count += 1

        logger.info(
            "Hit rate recalculation complete: %d updated, %d skipped, %d errors",
            summary.count, summary.skipped, len(summary.errors),
        )
        return summary

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _refresh_combination(
        self, player_name: str, prop_type: str, sport_key: str, now: datetime
    ) -> Union[HitRateEstimate, InsufficientData]:
        """Recompute one combination over the full line range it has traded at.

        The result replaces every stored window for the combination, so a
        line move never leaves an older, narrower estimate behind.
        """
        history = self.store.query_outcomes(OutcomeFilter(
            player_name=player_name,
            prop_type=prop_type,
            sport_key=sport_key,
            graded_only=True,
        ))
        if not history:
            return InsufficientData(player_name, prop_type, sport_key, 0, self.config.min_sample_size)

        lines = [o.line for o in history]
        window = LineWindow(min(lines), max(lines))
        cutoff = now - timedelta(days=self.config.lookback_days)
        recent = [o for o in history if o.game_date >= cutoff]

        result = compute_hit_rate_estimate(
            player_name, prop_type, sport_key, window, recent, now,
            min_sample_size=self.config.min_sample_size,
        )
        if isinstance(result, HitRateEstimate):
            self.store.upsert_hit_rate(result)
            logger.debug(
                "Hit rate %s %s [%g, %g]: %.3f over %d",
                player_name, prop_type, window.min, window.max,
                result.hit_rate, result.sample_count,
            )
            keep = result.key
        else:
            keep = None
        # One estimate per combination; windows from an earlier line range are superseded
        dropped = self.store.delete_hit_rates(player_name, prop_type, sport_key, keep=keep)
        if dropped:
            logger.debug("Dropped %d superseded hit rate(s) for %s %s", dropped, player_name, prop_type)
        return result
