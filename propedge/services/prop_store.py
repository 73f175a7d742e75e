"""
PropStore implementations.

  InMemoryPropStore    - dict-backed, guarded by a single lock; tests and
                         ephemeral runs
  SQLAlchemyPropStore  - historical_outcomes / hit_rates tables, one session
                         per call

Both keep the first graded version of an outcome: once ``hit`` is set the
record is never overwritten.
"""

import logging
import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from propedge.core.errors import CollaboratorFailure
from propedge.core.store_interface import (
    ConfidenceInterval,
    HitRateEstimate,
    HitRateKey,
    Outcome,
    OutcomeFilter,
    PropStore,
)
from propedge.models import HistoricalOutcome, HitRate

logger = logging.getLogger(__name__)


def _merge(existing: Optional[Outcome], incoming: Outcome) -> Outcome:
    """Resolve a save against the stored version of the same outcome."""
    if existing is None:
        return incoming
    if existing.is_graded:
        return existing
    # Ungraded record: keep the earliest known odds/event id if the update lacks them
    return replace(
        incoming,
        odds=incoming.odds if incoming.odds is not None else existing.odds,
        event_id=incoming.event_id or existing.event_id,
    )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryPropStore(PropStore):
    """Thread-safe dict-backed store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._outcomes: Dict[str, Outcome] = {}
        self._hit_rates: Dict[HitRateKey, HitRateEstimate] = {}

    def save_outcome(self, outcome: Outcome) -> Outcome:
        with self._lock:
            stored = _merge(self._outcomes.get(outcome.key), outcome)
            self._outcomes[outcome.key] = stored
            return stored

    def get_outcome(self, key: str) -> Optional[Outcome]:
        with self._lock:
            return self._outcomes.get(key)

    def query_outcomes(self, outcome_filter: OutcomeFilter) -> List[Outcome]:
        with self._lock:
            matches = [o for o in self._outcomes.values() if outcome_filter.matches(o)]
        matches.sort(key=lambda o: (o.game_date, o.key))
        if outcome_filter.limit is not None:
            matches = matches[: outcome_filter.limit]
        return matches

    def graded_combinations(self, min_count: int) -> List[Tuple[str, str, str]]:
        counts: Counter = Counter()
        names: Dict[Tuple[str, str, str], str] = {}
        with self._lock:
            for o in self._outcomes.values():
                if not o.is_graded:
                    continue
                norm = (o.player_name.strip().lower(), o.prop_type, o.sport_key)
                counts[norm] += 1
                names.setdefault(norm, o.player_name)
        return sorted(
            (names[norm], norm[1], norm[2])
            for norm, n in counts.items()
            if n >= min_count
        )

    def upsert_hit_rate(self, estimate: HitRateEstimate) -> None:
        with self._lock:
            self._hit_rates[estimate.key] = estimate

    def read_hit_rate(self, key: HitRateKey) -> Optional[HitRateEstimate]:
        with self._lock:
            return self._hit_rates.get(key)

    def delete_hit_rates(
        self,
        player_name: str,
        prop_type: str,
        sport_key: str,
        keep: Optional[HitRateKey] = None,
    ) -> int:
        name = player_name.strip().lower()
        with self._lock:
            stale = [
                key for key in self._hit_rates
                if (key.player_name, key.prop_type, key.sport_key) == (name, prop_type, sport_key)
                and key != keep
            ]
            for key in stale:
                del self._hit_rates[key]
        return len(stale)

    def list_hit_rates(self) -> List[HitRateEstimate]:
        with self._lock:
            return list(self._hit_rates.values())

    def record_counts(self) -> Dict[str, int]:
        with self._lock:
            graded = sum(1 for o in self._outcomes.values() if o.is_graded)
            return {
                "outcomes": len(self._outcomes),
                "graded_outcomes": graded,
                "hit_rates": len(self._hit_rates),
            }


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------

def _row_to_outcome(row: HistoricalOutcome) -> Outcome:
    return Outcome(
        player_name=row.player_name,
        prop_type=row.prop_type,
        line=row.line,
        game_date=row.game_date,
        sport_key=row.sport_key,
        platform_key=row.platform_key,
        odds=row.odds,
        actual_result=row.actual_result,
        hit=row.hit,
        event_id=row.event_id,
    )


def _row_to_estimate(row: HitRate) -> HitRateEstimate:
    return HitRateEstimate(
        player_name=row.player_name,
        prop_type=row.prop_type,
        line_range_min=row.line_range_min,
        line_range_max=row.line_range_max,
        sport_key=row.sport_key,
        hit_rate=row.hit_rate,
        sample_count=row.sample_count,
        hit_count=row.hit_count,
        confidence_level=row.confidence_level,
        standard_error=row.standard_error,
        confidence_interval_95=ConfidenceInterval(row.ci_lower, row.ci_upper),
        last_updated=row.last_updated,
        first_game_date=row.first_game_date,
        last_game_date=row.last_game_date,
        consistency=row.consistency if row.consistency is not None else 0.0,
        data_quality=row.data_quality or "medium",
    )


class SQLAlchemyPropStore(PropStore):
    """Relational store over the ``historical_outcomes`` and ``hit_rates`` tables.

    Every public call opens its own session from ``session_factory`` and
    commits or rolls back before returning.  Driver errors surface as
    :class:`CollaboratorFailure`.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _run(self, operation: str, fn, *, write: bool = False):
        db = self._session_factory()
        try:
            result = fn(db)
            if write:
                db.commit()
            return result
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("prop store %s failed: %s", operation, exc)
            raise CollaboratorFailure(str(exc), source="prop_store", context=operation) from exc
        finally:
            db.close()

    # -- outcomes ---------------------------------------------------------

    def save_outcome(self, outcome: Outcome) -> Outcome:
        def _save(db: Session) -> Outcome:
            row = (
                db.query(HistoricalOutcome)
                .filter(HistoricalOutcome.outcome_key == outcome.key)
                .first()
            )
            existing = _row_to_outcome(row) if row is not None else None
            stored = _merge(existing, outcome)
            if existing is not None and stored is existing:
                return existing

            if row is None:
                row = HistoricalOutcome(outcome_key=outcome.key)
                db.add(row)
            row.player_name = stored.player_name
            row.player_name_normalized = stored.player_name.strip().lower()
            row.prop_type = stored.prop_type
            row.line = stored.line
            row.game_date = stored.game_date
            row.sport_key = stored.sport_key
            row.platform_key = stored.platform_key
            row.event_id = stored.event_id
            row.odds = stored.odds
            row.actual_result = stored.actual_result
            row.hit = stored.hit
            return stored

        return self._run("save_outcome", _save, write=True)

    def get_outcome(self, key: str) -> Optional[Outcome]:
        def _get(db: Session) -> Optional[Outcome]:
            row = (
                db.query(HistoricalOutcome)
                .filter(HistoricalOutcome.outcome_key == key)
                .first()
            )
            return _row_to_outcome(row) if row is not None else None

        return self._run("get_outcome", _get)

    def query_outcomes(self, outcome_filter: OutcomeFilter) -> List[Outcome]:
        f = outcome_filter

        def _query(db: Session) -> List[Outcome]:
            q = db.query(HistoricalOutcome)
            if f.graded_only:
                q = q.filter(HistoricalOutcome.hit.isnot(None))
            if f.player_name is not None:
                q = q.filter(
                    HistoricalOutcome.player_name_normalized == f.player_name.strip().lower()
                )
            if f.prop_type is not None:
                q = q.filter(HistoricalOutcome.prop_type == f.prop_type)
            if f.sport_key is not None:
                q = q.filter(HistoricalOutcome.sport_key == f.sport_key)
            if f.line_min is not None:
                q = q.filter(HistoricalOutcome.line >= f.line_min)
            if f.line_max is not None:
                q = q.filter(HistoricalOutcome.line <= f.line_max)
            if f.start_date is not None:
                q = q.filter(HistoricalOutcome.game_date >= f.start_date)
            if f.end_date is not None:
                q = q.filter(HistoricalOutcome.game_date <= f.end_date)
            q = q.order_by(HistoricalOutcome.game_date.asc(), HistoricalOutcome.outcome_key.asc())
            if f.limit is not None:
                q = q.limit(f.limit)
            return [_row_to_outcome(row) for row in q.all()]

        return self._run("query_outcomes", _query)

    def graded_combinations(self, min_count: int) -> List[Tuple[str, str, str]]:
        def _combos(db: Session) -> List[Tuple[str, str, str]]:
            rows = (
                db.query(
                    func.min(HistoricalOutcome.player_name),
                    HistoricalOutcome.prop_type,
                    HistoricalOutcome.sport_key,
                )
                .filter(HistoricalOutcome.hit.isnot(None))
                .group_by(
                    HistoricalOutcome.player_name_normalized,
                    HistoricalOutcome.prop_type,
                    HistoricalOutcome.sport_key,
                )
                .having(func.count(HistoricalOutcome.id) >= min_count)
                .all()
            )
            return sorted((name, prop, sport) for name, prop, sport in rows)

        return self._run("graded_combinations", _combos)

    # -- hit rates --------------------------------------------------------

    def upsert_hit_rate(self, estimate: HitRateEstimate) -> None:
        key = estimate.key

        def _upsert(db: Session) -> None:
            row = self._hit_rate_query(db, key).first()
            if row is None:
                row = HitRate(
                    player_name_normalized=key.player_name,
                    prop_type=key.prop_type,
                    sport_key=key.sport_key,
                    line_range_min=key.line_range_min,
                    line_range_max=key.line_range_max,
                )
                db.add(row)
            row.player_name = estimate.player_name
            row.hit_rate = estimate.hit_rate
            row.sample_count = estimate.sample_count
            row.hit_count = estimate.hit_count
            row.confidence_level = estimate.confidence_level
            row.standard_error = estimate.standard_error
            row.ci_lower = estimate.confidence_interval_95.lower
            row.ci_upper = estimate.confidence_interval_95.upper
            row.first_game_date = estimate.first_game_date
            row.last_game_date = estimate.last_game_date
            row.consistency = estimate.consistency
            row.data_quality = estimate.data_quality
            row.last_updated = estimate.last_updated or datetime.utcnow()

        self._run("upsert_hit_rate", _upsert, write=True)

    def read_hit_rate(self, key: HitRateKey) -> Optional[HitRateEstimate]:
        def _read(db: Session) -> Optional[HitRateEstimate]:
            row = self._hit_rate_query(db, key).first()
            return _row_to_estimate(row) if row is not None else None

        return self._run("read_hit_rate", _read)

    def delete_hit_rates(
        self,
        player_name: str,
        prop_type: str,
        sport_key: str,
        keep: Optional[HitRateKey] = None,
    ) -> int:
        def _delete(db: Session) -> int:
            query = db.query(HitRate).filter(
                HitRate.player_name_normalized == player_name.strip().lower(),
                HitRate.prop_type == prop_type,
                HitRate.sport_key == sport_key,
            )
            if keep is not None:
                query = query.filter(or_(
                    HitRate.line_range_min != keep.line_range_min,
                    HitRate.line_range_max != keep.line_range_max,
                ))
            return query.delete(synchronize_session=False)

        return self._run("delete_hit_rates", _delete, write=True)

    def list_hit_rates(self) -> List[HitRateEstimate]:
        def _list(db: Session) -> List[HitRateEstimate]:
            return [_row_to_estimate(row) for row in db.query(HitRate).all()]

        return self._run("list_hit_rates", _list)

    def record_counts(self) -> Dict[str, int]:
        def _counts(db: Session) -> Dict[str, int]:
            return {
                "outcomes": db.query(func.count(HistoricalOutcome.id)).scalar() or 0,
                "graded_outcomes": (
                    db.query(func.count(HistoricalOutcome.id))
                    .filter(HistoricalOutcome.hit.isnot(None))
                    .scalar()
                    or 0
                ),
                "hit_rates": db.query(func.count(HitRate.id)).scalar() or 0,
            }

        return self._run("record_counts", _counts)

    @staticmethod
    def _hit_rate_query(db: Session, key: HitRateKey):
        return db.query(HitRate).filter(
            HitRate.player_name_normalized == key.player_name,
            HitRate.prop_type == key.prop_type,
            HitRate.sport_key == key.sport_key,
            HitRate.line_range_min == key.line_range_min,
            HitRate.line_range_max == key.line_range_max,
        )
