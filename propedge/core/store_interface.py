"""Data-transfer objects and collaborator contracts for the decision engine.

The engine never imports a database driver or an HTTP client directly.  It
accepts a :class:`PropStore` and a :class:`MarketDataSource` at construction
time.  This enables:

* **Unit testing** - inject an in-memory store and a fake market source that
  returns fixed :class:`RawOutcome` batches (or raises) on demand.
* **Storage swaps** - the aggregator does not know whether outcomes live in a
  file, Postgres, or a dict.
* **Feed swaps** - another props provider only needs ``list_events`` and
  ``fetch_market_props``.

Design choices
--------------
* The contracts are ABCs rather than ``typing.Protocol`` so constructors can
  ``isinstance``-check their collaborators and implementers are forced to
  read the contract.
* :class:`HitRateEstimate` and :class:`ConfidenceInterval` are frozen and
  slotted so they can be cached and passed across thread boundaries.
* :class:`Outcome` is frozen too; grading produces a new instance via
  :func:`dataclasses.replace`.
* All timestamps are naive UTC (``datetime.utcnow()`` convention), so
  in-memory and SQL-backed stores compare them the same way.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Outcome records
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Outcome:
    """One historical prop line for one player in one game.

    ``actual_result`` and ``hit`` stay ``None`` until the game is graded.
    Once graded the record is immutable: stores keep the first graded version.

    Attributes:
        player_name: Player display name as returned by the feed.
        prop_type: Market key (``"player_points"``, ``"player_pass_yds"``).
        line: The posted line (e.g. ``24.5``).
        game_date: Tip-off / kick-off time.
        sport_key: Feed sport key (``"basketball_nba"``).
        platform_key: Bookmaker or DFS platform key (``"us_dfs.prizepicks"``).
        odds: Price offered when the line was captured, if any.
        actual_result: Stat value the player finished with.
        hit: ``True`` when ``actual_result`` met or exceeded ``line``.
        event_id: Feed event identifier, when known.
    """

    player_name: str
    prop_type: str
    line: float
    game_date: datetime
    sport_key: str
    platform_key: str
    odds: Optional[float] = None
    actual_result: Optional[float] = None
    hit: Optional[bool] = None
    event_id: Optional[str] = None

    @property
    def is_graded(self) -> bool:
        return self.hit is not None

    @property
    def key(self) -> str:
        """Stable identity used for de-duplication and upserts."""
        event = self.event_id or self.game_date.date().isoformat()
        return "|".join(
            (
                self.sport_key,
                event,
                self.player_name.strip().lower(),
                self.prop_type,
                f"{self.line:g}",
                self.platform_key,
            )
        )


@dataclass(slots=True, frozen=True)
class RawOutcome:
    """A single player-prop line as returned by a market source."""

    event_id: str
    player_name: str
    prop_type: str
    line: float
    platform_key: str
    odds: Optional[float] = None
    commence_time: Optional[datetime] = None
    actual_result: Optional[float] = None


@dataclass(slots=True)
class OutcomeFilter:
    """Predicate for :meth:`PropStore.query_outcomes`.

    ``None`` fields are unconstrained.  ``player_name`` matches
    case-insensitively; the line and date bounds are inclusive.
    """

    player_name: Optional[str] = None
    prop_type: Optional[str] = None
    sport_key: Optional[str] = None
    line_min: Optional[float] = None
    line_max: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    graded_only: bool = True
    limit: Optional[int] = None

    def matches(self, outcome: Outcome) -> bool:
        if self.graded_only and not outcome.is_graded:
            return False
        if self.player_name is not None and (
            outcome.player_name.strip().lower() != self.player_name.strip().lower()
        ):
            return False
        if self.prop_type is not None and outcome.prop_type != self.prop_type:
            return False
        if self.sport_key is not None and outcome.sport_key != self.sport_key:
            return False
        if self.line_min is not None and outcome.line < self.line_min:
            return False
        if self.line_max is not None and outcome.line > self.line_max:
            return False
        if self.start_date is not None and outcome.game_date < self.start_date:
            return False
        if self.end_date is not None and outcome.game_date > self.end_date:
            return False
        return True


# ---------------------------------------------------------------------------
# Hit-rate estimates
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ConfidenceInterval:
    lower: float
    upper: float


@dataclass(slots=True, frozen=True)
class HitRateKey:
    """Natural key of a persisted :class:`HitRateEstimate`."""

    player_name: str
    prop_type: str
    sport_key: str
    line_range_min: float
    line_range_max: float

    @classmethod
    def build(
        cls,
        player_name: str,
        prop_type: str,
        sport_key: str,
        line_range_min: float,
        line_range_max: float,
    ) -> HitRateKey:
        return cls(
            player_name=player_name.strip().lower(),
            prop_type=prop_type,
            sport_key=sport_key,
            line_range_min=float(line_range_min),
            line_range_max=float(line_range_max),
        )


@dataclass(slots=True, frozen=True)
class HitRateEstimate:
    """Derived hit-rate statistics for one player/prop/line window.

    Every field is produced by
    :func:`propedge.services.aggregator.compute_hit_rate_estimate` and can be
    reproduced by replaying the graded outcomes it summarises.

    Attributes:
        hit_rate: ``hit_count / sample_count`` in ``[0, 1]``.
        sample_count: Number of graded outcomes used.
        hit_count: Number of those outcomes that hit.
        confidence_level: Coarse storage tag by sample size
            (``"high"`` ≥ 30, ``"medium"`` ≥ 15, else ``"low"``).  This is
            *not* the runtime confidence score; see
            :func:`propedge.core.confidence.score_confidence`.
        standard_error: ``sqrt(p(1−p)/n)``.
        confidence_interval_95: Normal-approximation CI clamped to ``[0, 1]``.
        last_updated: When the estimate was computed.
        first_game_date: Earliest game date in the sample.
        last_game_date: Latest game date in the sample.
        consistency: Stability of hit rates across chronological blocks of the
            sample, in ``[0, 1]``.
        data_quality: ``"high"`` / ``"medium"`` / ``"low"`` by the share of
            outcomes graded from a recorded stat line.
    """

    player_name: str
    prop_type: str
    line_range_min: float
    line_range_max: float
    sport_key: str
    hit_rate: float
    sample_count: int
    hit_count: int
    confidence_level: str
    standard_error: float
    confidence_interval_95: ConfidenceInterval
    last_updated: datetime
    first_game_date: Optional[datetime] = None
    last_game_date: Optional[datetime] = None
    consistency: float = 0.0
    data_quality: str = "medium"

    @property
    def key(self) -> HitRateKey:
        return HitRateKey.build(
            self.player_name,
            self.prop_type,
            self.sport_key,
            self.line_range_min,
            self.line_range_max,
        )

    @property
    def time_range_days(self) -> int:
        if self.first_game_date is None or self.last_game_date is None:
            return 0
        return max(0, (self.last_game_date - self.first_game_date).days)


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


class PropStore(ABC):
    """Persistence contract for outcomes and hit-rate estimates.

    Implementations own their own locking / transaction discipline.  Errors
    from the backing store must surface as
    :class:`~propedge.core.errors.CollaboratorFailure`.
    """

    @abstractmethod
    def save_outcome(self, outcome: Outcome) -> Outcome:
        """Insert or update an outcome and return the stored version.

        A graded outcome already in the store is never overwritten.
        """

    @abstractmethod
    def get_outcome(self, key: str) -> Optional[Outcome]:
        """Return the stored outcome with identity ``key``, if any."""

    @abstractmethod
    def query_outcomes(self, outcome_filter: OutcomeFilter) -> List[Outcome]:
        """Return outcomes matching ``outcome_filter``, oldest game first."""

    @abstractmethod
    def graded_combinations(self, min_count: int) -> List[Tuple[str, str, str]]:
        """Return ``(player_name, prop_type, sport_key)`` triples having at
        least ``min_count`` graded outcomes."""

    @abstractmethod
    def upsert_hit_rate(self, estimate: HitRateEstimate) -> None:
        """Create the estimate if absent, otherwise overwrite it."""

    @abstractmethod
    def read_hit_rate(self, key: HitRateKey) -> Optional[HitRateEstimate]:
        """Return the persisted estimate for ``key``, if any."""

    @abstractmethod
    def delete_hit_rates(
        self,
        player_name: str,
        prop_type: str,
        sport_key: str,
        keep: Optional[HitRateKey] = None,
    ) -> int:
        """Delete the combination's estimates other than ``keep``; return how many went."""

    @abstractmethod
    def list_hit_rates(self) -> List[HitRateEstimate]:
        """Return every persisted estimate."""

    @abstractmethod
    def record_counts(self) -> Dict[str, int]:
        """Return ``{"outcomes": n, "graded_outcomes": n, "hit_rates": n}``."""


class MarketDataSource(ABC):
    """Contract for the third-party props feed.

    Calls must return within a bounded timeout; a timeout is reported as an
    ordinary :class:`~propedge.core.errors.CollaboratorFailure`.
    """

    @abstractmethod
    def list_events(self, sport_key: str) -> List[str]:
        """Return the event (match) ids currently offered for ``sport_key``."""

    @abstractmethod
    def fetch_market_props(self, sport_key: str, match_id: str) -> List[RawOutcome]:
        """Return every player-prop line offered for one event."""
