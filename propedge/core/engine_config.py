"""Engine configuration - every tunable business constant in one place.

Nowhere else in the codebase should the EV threshold, the Kelly cap, the
hit-rate sample floor or the refresh cadence be hard-coded.  Modules accept
these values as arguments; the composition root builds one
:class:`EngineConfig` and hands it down.

Architecture
------------
:class:`EngineConfig` is a frozen dataclass.  :meth:`EngineConfig.from_env`
reads the environment (after ``load_dotenv()``) and :meth:`EngineConfig.validate`
fails fast with :class:`~propedge.core.errors.ConfigurationError` before the
scheduler registers any job.

Typical usage::

    from propedge.core.engine_config import EngineConfig

    cfg = EngineConfig.from_env()
    cfg.validate()

    # Override a single constant for an experiment:
    from dataclasses import replace
    strict_cfg = replace(cfg, ev_threshold=0.60)

The defaults for ``ev_threshold`` (0.565) and ``max_bet_fraction`` (0.05) are
business decisions carried over unchanged; do not re-derive them here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Final, Mapping, Optional, Tuple

from propedge.core.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

#: Minimum hit rate for a positive-EV flag.
DEFAULT_EV_THRESHOLD: Final[float] = 0.565

#: Hard cap on the staked fraction of bankroll.
DEFAULT_MAX_BET_FRACTION: Final[float] = 0.05

#: Floor applied to any non-zero recommended stake, in bankroll currency.
DEFAULT_MIN_BET_AMOUNT: Final[float] = 1.0

DEFAULT_REFRESH_INTERVAL_MINUTES: Final[int] = 60
DEFAULT_MAX_CONCURRENT_FETCHES: Final[int] = 4
DEFAULT_LOOKBACK_DAYS: Final[int] = 90

#: Below five graded outcomes the proportion statistics are not meaningful.
#: Configuration may raise the floor, never lower it.
HARD_MIN_SAMPLE_SIZE: Final[int] = 5

#: Half-width of the line window used when evaluating a single prop line.
DEFAULT_LINE_TOLERANCE: Final[float] = 0.5

#: Leg count assumed for DFS pick'em entries when the caller omits it.
DEFAULT_LEG_COUNT: Final[int] = 3

DEFAULT_FETCH_TIMEOUT_SECONDS: Final[float] = 15.0

DEFAULT_SPORTS: Final[Tuple[str, ...]] = (
    "americanfootball_nfl",
    "basketball_nba",
    "baseball_mlb",
    "icehockey_nhl",
    "basketball_wnba",
)

DEFAULT_PLATFORMS: Final[Tuple[str, ...]] = (
    "us_dfs.prizepicks",
    "us_dfs.underdog",
    "us_dfs.pick6",
)


def _split_csv(raw: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration bundle for the decision engine.

    Attributes:
        ev_threshold: Minimum hit rate before a prop can be flagged +EV.
        max_bet_fraction: Cap on the confidence-adjusted Kelly fraction.
        min_bet_amount: Smallest stake ever recommended (when stake > 0).
        refresh_interval_minutes: Period of the background refresh job.
        max_concurrent_fetches: Width of the outbound fetch worker pool.  The
            pool width is the only rate-limit throttle.
        lookback_days: Game-date window for hit-rate estimation.
        min_sample_size: Graded outcomes required for an estimate.  Never
            below :data:`HARD_MIN_SAMPLE_SIZE`.
        line_tolerance: Half-width of the line window used by ``evaluate``.
        default_leg_count: DFS leg count assumed when none is supplied.
        fetch_timeout_seconds: Per-request timeout for the market source.
        sports: Sport keys the refresh cycle pulls.
        platforms: Platform (bookmaker) keys kept from fetched props.  Empty
            means keep every platform returned.
    """

    ev_threshold: float = DEFAULT_EV_THRESHOLD
    max_bet_fraction: float = DEFAULT_MAX_BET_FRACTION
    min_bet_amount: float = DEFAULT_MIN_BET_AMOUNT
    refresh_interval_minutes: int = DEFAULT_REFRESH_INTERVAL_MINUTES
    max_concurrent_fetches: int = DEFAULT_MAX_CONCURRENT_FETCHES
    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    min_sample_size: int = HARD_MIN_SAMPLE_SIZE
    line_tolerance: float = DEFAULT_LINE_TOLERANCE
    default_leg_count: int = DEFAULT_LEG_COUNT
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    sports: Tuple[str, ...] = field(default=DEFAULT_SPORTS)
    platforms: Tuple[str, ...] = field(default=DEFAULT_PLATFORMS)

    # ------------------------------------------------------------------ #
    #  Construction                                                        #
    # ------------------------------------------------------------------ #

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        """Build a config from environment variables.

        Unparseable numbers raise :class:`ConfigurationError` naming the
        offending variable rather than a bare ``ValueError``.
        """
        env = os.environ if environ is None else environ

        def _num(name: str, default, cast):
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{name}={raw!r} is not a valid {cast.__name__}") from exc

        return cls(
            ev_threshold=_num("EV_THRESHOLD", DEFAULT_EV_THRESHOLD, float),
            max_bet_fraction=_num("MAX_BET_FRACTION", DEFAULT_MAX_BET_FRACTION, float),
            min_bet_amount=_num("MIN_BET_AMOUNT", DEFAULT_MIN_BET_AMOUNT, float),
            refresh_interval_minutes=_num(
                "REFRESH_INTERVAL_MINUTES", DEFAULT_REFRESH_INTERVAL_MINUTES, int
            ),
            max_concurrent_fetches=_num(
                "MAX_CONCURRENT_FETCHES", DEFAULT_MAX_CONCURRENT_FETCHES, int
            ),
            lookback_days=_num("HIT_RATE_LOOKBACK_DAYS", DEFAULT_LOOKBACK_DAYS, int),
            min_sample_size=_num("MIN_SAMPLE_SIZE", HARD_MIN_SAMPLE_SIZE, int),
            line_tolerance=_num("LINE_TOLERANCE", DEFAULT_LINE_TOLERANCE, float),
            default_leg_count=_num("DEFAULT_LEG_COUNT", DEFAULT_LEG_COUNT, int),
            fetch_timeout_seconds=_num(
                "FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS, float
            ),
            sports=_split_csv(env.get("REFRESH_SPORTS"), DEFAULT_SPORTS),
            platforms=_split_csv(env.get("REFRESH_PLATFORMS"), DEFAULT_PLATFORMS),
        )

    # ------------------------------------------------------------------ #
    #  Validation                                                          #
    # ------------------------------------------------------------------ #

    def validate(self) -> EngineConfig:
        """Raise :class:`ConfigurationError` on the first unusable value.

        Returns ``self`` so it can be chained: ``EngineConfig.from_env().validate()``.
        """
        if not (0.0 < self.ev_threshold < 1.0):
            raise ConfigurationError(f"ev_threshold must be in (0, 1), got {self.ev_threshold!r}")
        if not (0.0 < self.max_bet_fraction <= 1.0):
            raise ConfigurationError(
                f"max_bet_fraction must be in (0, 1], got {self.max_bet_fraction!r}"
            )
        if self.min_bet_amount < 0.0:
            raise ConfigurationError(f"min_bet_amount must be >= 0, got {self.min_bet_amount!r}")
        if self.refresh_interval_minutes < 1:
            raise ConfigurationError(
                f"refresh_interval_minutes must be >= 1, got {self.refresh_interval_minutes!r}"
            )
        if self.max_concurrent_fetches < 1:
            raise ConfigurationError(
                f"max_concurrent_fetches must be >= 1, got {self.max_concurrent_fetches!r}"
            )
        if self.lookback_days < 1:
            raise ConfigurationError(f"lookback_days must be >= 1, got {self.lookback_days!r}")
        if self.min_sample_size < HARD_MIN_SAMPLE_SIZE:
            raise ConfigurationError(
                f"min_sample_size must be >= {HARD_MIN_SAMPLE_SIZE}, got {self.min_sample_size!r}"
            )
        if self.line_tolerance < 0.0:
            raise ConfigurationError(f"line_tolerance must be >= 0, got {self.line_tolerance!r}")
        if self.default_leg_count < 1:
            raise ConfigurationError(
                f"default_leg_count must be >= 1, got {self.default_leg_count!r}"
            )
        if self.fetch_timeout_seconds <= 0.0:
            raise ConfigurationError(
                f"fetch_timeout_seconds must be > 0, got {self.fetch_timeout_seconds!r}"
            )
        if not self.sports:
            raise ConfigurationError("at least one sport must be configured for refresh")
        return self

    def __repr__(self) -> str:
        return (
            f"EngineConfig(ev_threshold={self.ev_threshold}, "
            f"max_bet_fraction={self.max_bet_fraction}, "
            f"interval={self.refresh_interval_minutes}min, "
            f"workers={self.max_concurrent_fetches}, "
            f"sports={len(self.sports)})"
        )
