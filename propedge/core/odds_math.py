"""Odds mathematics and the expected-value flag.

Every function here is pure apart from one case: a DFS payout lookup that
misses the table logs a data-quality warning and falls back to a 3.0×
payout.  A bad table entry must never take down an evaluation.

The two pillars exposed are:

1. **Implied probability** from American odds, decimal odds, or a DFS
   platform's fixed multi-leg payout multiplier.
2. **EV flag**: ``ev = p − implied`` and the +EV test against the
   configured minimum hit rate.

DFS payouts
-----------
Pick'em platforms do not quote odds per leg.  An ``L``-leg entry pays a fixed
multiplier ``M`` if every leg hits, so the break-even per-leg probability
``q`` solves ``q^L · M = 1``::

    q = 1 / M^(1/L)                                                (1)

e.g. PrizePicks 3-leg at 5.0× → ``q = 5^(-1/3) ≈ 0.585``.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Final, Mapping, Optional

from propedge.core.engine_config import DEFAULT_EV_THRESHOLD, DEFAULT_LEG_COUNT
from propedge.core.errors import InvalidInput

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: American-odds magnitude floor.  Feeds never return |odds| < 100; values
#: below this indicate a data error.
_MIN_ODDS_MAGNITUDE: Final[int] = 100

#: Payout assumed when a platform or leg count is missing from the table.
FALLBACK_DFS_PAYOUT: Final[float] = 3.0

PRIZEPICKS: Final[str] = "us_dfs.prizepicks"
UNDERDOG: Final[str] = "us_dfs.underdog"
PICK6: Final[str] = "us_dfs.pick6"

#: platform key → leg count → payout multiplier for an all-hit entry.
DFS_PAYOUTS: Final[Mapping[str, Mapping[int, float]]] = {
    PRIZEPICKS: {2: 3.0, 3: 5.0, 4: 10.0, 5: 20.0, 6: 50.0},
    UNDERDOG: {2: 3.0, 3: 6.0, 4: 12.0, 5: 25.0},
    PICK6: {2: 3.0, 3: 6.0, 4: 12.0, 5: 25.0, 6: 50.0},
}

_DFS_PREFIX: Final[str] = "us_dfs."


class OddsKind(str, Enum):
    AMERICAN = "american"
    DECIMAL = "decimal"
    DFS = "dfs"


def is_dfs_platform(platform: Optional[str]) -> bool:
    """True for pick'em platforms priced by payout multiplier, not odds."""
    if not platform:
        return False
    return platform in DFS_PAYOUTS or platform.startswith(_DFS_PREFIX)


# ---------------------------------------------------------------------------
# Odds conversion
# ---------------------------------------------------------------------------


def american_to_decimal(american: int | float) -> float:
    """Convert American odds to decimal (European) format.

    Decimal odds represent the total payout per unit staked, **including**
    the return of the stake itself.  Examples::

        american_to_decimal(-110) → 1.9091   (risk 110 to win 100)
        american_to_decimal(+150) → 2.5000   (risk 100 to win 150)

    Raises:
        InvalidInput: If ``|american| < 100``.
    """
    if abs(american) < _MIN_ODDS_MAGNITUDE:
        raise InvalidInput(
            f"Invalid American odds {american!r}: magnitude must be ≥ 100. "
            "Check upstream odds parsing for data errors."
        )
    if american > 0:
        return american / 100.0 + 1.0
    return 100.0 / abs(american) + 1.0


def implied_prob(american: int | float) -> float:
    """Raw implied probability from American odds (vig-inclusive).

    Positive odds → ``100 / (odds + 100)``; negative → ``|odds| / (|odds| + 100)``.

    Examples::

        implied_prob(+150) → 0.4000
        implied_prob(-110) → 0.5238
    """
    if abs(american) < _MIN_ODDS_MAGNITUDE:
        raise InvalidInput(f"Invalid American odds {american!r}: magnitude must be ≥ 100.")
    if american > 0:
        return 100.0 / (american + 100.0)
    return abs(american) / (abs(american) + 100.0)


def decimal_to_american(decimal_odds: float) -> int:
    """Convert decimal odds to the nearest American integer.

    Inverse of :func:`american_to_decimal`.  Use the result for display and
    logging, not for further arithmetic.

    Raises:
        InvalidInput: If ``decimal_odds <= 1.0``.
    """
    if decimal_odds <= 1.0:
        raise InvalidInput(f"Decimal odds {decimal_odds!r} must be > 1.0.")
    if decimal_odds >= 2.0:
        return round((decimal_odds - 1.0) * 100)
    return round(-100.0 / (decimal_odds - 1.0))


def dfs_implied_probability(platform: str, leg_count: int = DEFAULT_LEG_COUNT) -> float:
    """Per-leg break-even probability for a DFS pick'em entry, equation (1).

    Args:
        platform: DFS platform key (``"us_dfs.prizepicks"``).
        leg_count: Number of legs in the entry, ``>= 1``.

    Returns:
        Implied per-leg probability in ``(0, 1)``.  A platform or leg count
        missing from :data:`DFS_PAYOUTS` uses a 3.0× payout and logs a
        warning.

    Raises:
        InvalidInput: If ``leg_count < 1``.

    Examples::

        dfs_implied_probability("us_dfs.prizepicks", 2) → 0.5774
        dfs_implied_probability("us_dfs.underdog", 3)   → 0.5503
    """
    if leg_count < 1:
        raise InvalidInput(f"leg_count must be >= 1, got {leg_count!r}")

    table = DFS_PAYOUTS.get(platform)
    payout = table.get(leg_count) if table is not None else None
    if payout is None:
        logger.warning(
            "No DFS payout for platform=%s legs=%d; assuming %.1fx",
            platform,
            leg_count,
            FALLBACK_DFS_PAYOUT,
        )
        payout = FALLBACK_DFS_PAYOUT

    return 1.0 / payout ** (1.0 / leg_count)


def implied_probability(
    odds: Optional[float],
    kind: OddsKind | str = OddsKind.AMERICAN,
    *,
    platform: Optional[str] = None,
    leg_count: Optional[int] = None,
) -> float:
    """Implied probability for any supported pricing scheme.

    Args:
        odds: American or decimal odds.  Ignored for :attr:`OddsKind.DFS`.
        kind: How to read ``odds``.
        platform: DFS platform key, required for :attr:`OddsKind.DFS`.
        leg_count: DFS leg count; defaults to three legs.

    Raises:
        InvalidInput: On unusable odds or an unknown ``kind``.
    """
    try:
        kind = OddsKind(kind)
    except ValueError as exc:
        raise InvalidInput(f"Unknown odds kind {kind!r}") from exc

    if kind is OddsKind.DFS:
        if not platform:
            raise InvalidInput("platform is required for DFS implied probability")
        return dfs_implied_probability(platform, leg_count or DEFAULT_LEG_COUNT)

    if odds is None:
        raise InvalidInput(f"odds are required for {kind.value} implied probability")
    if kind is OddsKind.AMERICAN:
        return implied_prob(odds)
    if odds <= 1.0:
        raise InvalidInput(f"Decimal odds {odds!r} must be > 1.0.")
    return 1.0 / odds


def to_decimal_odds(odds: float, kind: OddsKind | str = OddsKind.AMERICAN) -> float:
    """Decimal odds for American or decimal input."""
    kind = OddsKind(kind)
    if kind is OddsKind.AMERICAN:
        return american_to_decimal(odds)
    if kind is OddsKind.DECIMAL:
        if odds <= 1.0:
            raise InvalidInput(f"Decimal odds {odds!r} must be > 1.0.")
        return float(odds)
    raise InvalidInput("DFS entries have no per-leg odds; use 1 / implied probability")


# ---------------------------------------------------------------------------
# Expected value
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EVResult:
    edge: float
    ev_percentage: float
    is_positive_ev: bool


def evaluate_ev(
    hit_rate: float,
    implied_probability: float,
    threshold: float = DEFAULT_EV_THRESHOLD,
) -> EVResult:
    """Edge over the market and the +EV flag.

    ``ev_percentage = (hit_rate − implied) · 100``.  A prop is +EV only when
    the hit rate clears ``threshold`` **and** the edge is strictly positive.

    Raises:
        InvalidInput: If either probability is outside ``[0, 1]``.

    Examples::

        evaluate_ev(0.60, 0.5238) → EVResult(edge=0.0762, ev_percentage=7.62, True)
        evaluate_ev(0.55, 0.40)   → ev_percentage=15.0, is_positive_ev False (< 0.565)
    """
    if not (0.0 <= hit_rate <= 1.0):
        raise InvalidInput(f"hit_rate must be in [0, 1], got {hit_rate!r}")
    if not (0.0 <= implied_probability <= 1.0):
        raise InvalidInput(
            f"implied_probability must be in [0, 1], got {implied_probability!r}"
        )
    edge = hit_rate - implied_probability
    return EVResult(
        edge=edge,
        ev_percentage=edge * 100.0,
        is_positive_ev=hit_rate >= threshold and edge > 0.0,
    )

