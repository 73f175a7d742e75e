"""Kelly criterion staking with confidence scaling and a hard bankroll cap.

All functions here are **pure**: no I/O, no database, no logging.
Import from this module; never reimplement Kelly locally in services.

Pipeline for a single bet (:func:`calculate_stake`):

1. Raw Kelly ``f* = max(0, (b·p − q) / b)`` with ``b = decimal_odds − 1``.
2. Expected value per unit staked ``ev = p·b − q``.  ``ev ≤ 0`` is a hard
   gate: the result is :class:`Avoid` with a zero stake and no sizing.
3. Confidence scaling ``f = min(f* · confidence, max_bet_fraction)``.
4. Dollar stake ``bankroll · f``, floored up to ``min_bet_amount`` with ``f``
   re-synced so the percentage and the dollar figure agree.
5. Risk tier by ``f`` and a recommendation tier from ``(ev, f, confidence)``.

Design decisions
----------------
* **Confidence scaling instead of a fixed divisor.**  The runtime confidence
  score already encodes how trustworthy the hit-rate estimate is, so it
  shrinks the bet directly.  A 0.5 confidence behaves like half-Kelly.
* **The cap binds after scaling.**  The default 5% cap is a business
  constant, supplied by :class:`~propedge.core.engine_config.EngineConfig`.
* **Portfolio correlation discount.**  Concurrent props on the same slate
  share risk; :func:`portfolio_stake` assumes a flat 20% common component
  and scales the naive Kelly sum by 0.8.

Run tests with::

    pytest tests/test_kelly.py -v
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Sequence

from propedge.core.engine_config import DEFAULT_MAX_BET_FRACTION, DEFAULT_MIN_BET_AMOUNT
from propedge.core.errors import InvalidInput

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Share of Kelly kept for a portfolio of concurrent bets (20% assumed
#: common risk).
PORTFOLIO_CORRELATION_FACTOR: Final[float] = 0.8

#: Kelly multiples reported by :func:`bet_sizing_strategies`.
_STRATEGY_MULTIPLES: Final[dict] = {
    "conservative": 0.25,
    "moderate": 0.5,
    "aggressive": 0.75,
    "full_kelly": 1.0,
}


class RiskLevel(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class Recommendation(str, Enum):
    STRONG_BET = "STRONG_BET"
    MODERATE_BET = "MODERATE_BET"
    SMALL_BET = "SMALL_BET"
    AVOID = "AVOID"


_REASONING_TAIL: Final[dict] = {
    Recommendation.STRONG_BET: "Strong positive EV with high confidence - recommended bet.",
    Recommendation.MODERATE_BET: "Good EV with reasonable confidence - moderate bet size.",
    Recommendation.SMALL_BET: "Positive EV but lower confidence - small bet recommended.",
    Recommendation.AVOID: "Insufficient edge or confidence - avoid this bet.",
}

NEGATIVE_EV_REASONING: Final[str] = "Negative expected value - avoid this bet"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StakeResult:
    """Sizing recommendation for one bet.

    Attributes:
        raw_kelly: Uncapped full-Kelly fraction ``f*``.
        adjusted_fraction: Confidence-scaled, capped, floor-synced fraction.
        stake: Dollar stake, rounded to cents.
        expected_value: ``p·b − q`` per unit staked.
        risk_level: Tier of ``adjusted_fraction``.
        recommendation: Bet/no-bet tier.
        reasoning: Deterministic one-paragraph explanation.
    """

    raw_kelly: float
    adjusted_fraction: float
    stake: float
    expected_value: float
    risk_level: RiskLevel
    recommendation: Recommendation
    reasoning: str

    @property
    def is_avoid(self) -> bool:
        return self.recommendation is Recommendation.AVOID

    @property
    def kelly_percentage(self) -> float:
        return self.adjusted_fraction * 100.0


@dataclass(frozen=True)
class Avoid(StakeResult):
    """Hard no-bet result for a non-positive expected value."""

    @classmethod
    def for_expected_value(cls, expected_value: float) -> Avoid:
        return cls(
            raw_kelly=0.0,
            adjusted_fraction=0.0,
            stake=0.0,
            expected_value=expected_value,
            risk_level=RiskLevel.LOW,
            recommendation=Recommendation.AVOID,
            reasoning=NEGATIVE_EV_REASONING,
        )


@dataclass(frozen=True)
class KellyInput:
    hit_rate: float
    decimal_odds: float
    bankroll: float
    confidence: float = 1.0


@dataclass(frozen=True)
class PortfolioStake:
    total_stake: float
    portfolio_fraction: float
    risk_tier: RiskLevel
    diversification_benefit: float


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def _validate_probability_and_odds(hit_rate: float, decimal_odds: float) -> None:
    if not (0.0 < hit_rate < 1.0):
        raise InvalidInput(
            f"hit_rate must be in (0, 1), got {hit_rate!r}. "
            "Check upstream probability clipping."
        )
    if decimal_odds <= 1.0:
        raise InvalidInput(f"decimal_odds must be > 1.0, got {decimal_odds!r}.")


def raw_kelly_fraction(hit_rate: float, decimal_odds: float) -> float:
    """Full Kelly fraction ``max(0, (b·p − q) / b)``.

    Examples::

        raw_kelly_fraction(0.60, 1.91) → 0.1604
        raw_kelly_fraction(0.50, 1.91) → 0.0
    """
    _validate_probability_and_odds(hit_rate, decimal_odds)
    b = decimal_odds - 1.0
    return max(0.0, (b * hit_rate - (1.0 - hit_rate)) / b)


def expected_value(hit_rate: float, decimal_odds: float) -> float:
    """Expected profit per unit staked, ``p·b − q``."""
    return hit_rate * (decimal_odds - 1.0) - (1.0 - hit_rate)


def risk_tier(fraction: float) -> RiskLevel:
    """≤ 1% LOW, ≤ 2.5% MEDIUM, ≤ 5% HIGH, otherwise EXTREME."""
    if fraction <= 0.01:
        return RiskLevel.LOW
    if fraction <= 0.025:
        return RiskLevel.MEDIUM
    if fraction <= 0.05:
        return RiskLevel.HIGH
    return RiskLevel.EXTREME


def recommendation_tier(ev: float, fraction: float, confidence: float) -> Recommendation:
    if ev <= 0.0:
        return Recommendation.AVOID
    if ev >= 0.15 and fraction >= 0.02 and confidence >= 0.8:
        return Recommendation.STRONG_BET
    if ev >= 0.08 and fraction >= 0.01 and confidence >= 0.6:
        return Recommendation.MODERATE_BET
    if confidence >= 0.4:
        return Recommendation.SMALL_BET
    return Recommendation.AVOID


def build_reasoning(
    raw_kelly: float,
    adjusted_fraction: float,
    ev: float,
    confidence: float,
    risk_level: RiskLevel,
    recommendation: Recommendation,
) -> str:
    return (
        f"Expected Value: {ev * 100:.1f}%. "
        f"Raw Kelly: {raw_kelly * 100:.1f}%, Adjusted: {adjusted_fraction * 100:.1f}%. "
        f"Confidence: {confidence * 100:.0f}%. "
        f"Risk Level: {risk_level.value}. "
        f"{_REASONING_TAIL[recommendation]}"
    )


# ---------------------------------------------------------------------------
# Single-bet staking
# ---------------------------------------------------------------------------


def calculate_stake(
    hit_rate: float,
    decimal_odds: float,
    bankroll: float,
    confidence: float,
    *,
    max_bet_fraction: float = DEFAULT_MAX_BET_FRACTION,
    min_bet_amount: float = DEFAULT_MIN_BET_AMOUNT,
) -> StakeResult:
    """Size a single bet.

    Args:
        hit_rate: Estimated probability the bet wins, in ``(0, 1)``.
        decimal_odds: Decimal odds, ``> 1``.
        bankroll: Current bankroll, ``> 0``.
        confidence: Runtime confidence score in ``[0, 1]``; scales raw Kelly.
        max_bet_fraction: Hard cap on the staked fraction.
        min_bet_amount: Smallest non-zero stake.

    Returns:
        :class:`StakeResult`, or :class:`Avoid` when ``ev <= 0``.

    Raises:
        InvalidInput: If any argument is outside its domain.

    Examples::

        calculate_stake(0.60, 1.91, 10_000, 1.0)
            → stake 500.0, adjusted 0.05, HIGH, MODERATE_BET
            # raw 0.160 capped at 0.05; ev 0.146 < 0.15 so not STRONG_BET
        calculate_stake(0.50, 1.91, 10_000, 1.0)
            → Avoid, stake 0.0   # ev = −0.045
    """
    _validate_probability_and_odds(hit_rate, decimal_odds)
    if bankroll <= 0.0:
        raise InvalidInput(f"bankroll must be > 0, got {bankroll!r}.")
    if not (0.0 <= confidence <= 1.0):
        raise InvalidInput(f"confidence must be in [0, 1], got {confidence!r}.")
    if not (0.0 < max_bet_fraction <= 1.0):
        raise InvalidInput(f"max_bet_fraction must be in (0, 1], got {max_bet_fraction!r}.")
    if min_bet_amount < 0.0:
        raise InvalidInput(f"min_bet_amount must be >= 0, got {min_bet_amount!r}.")

    ev = expected_value(hit_rate, decimal_odds)
    if ev <= 0.0:
        return Avoid.for_expected_value(ev)

    raw = raw_kelly_fraction(hit_rate, decimal_odds)
    adjusted = min(raw * confidence, max_bet_fraction)
    stake = bankroll * adjusted

    if 0.0 < stake < min_bet_amount:
        stake = min_bet_amount
        adjusted = min_bet_amount / bankroll

    level = risk_tier(adjusted)
    recommendation = recommendation_tier(ev, adjusted, confidence)

    return StakeResult(
        raw_kelly=raw,
        adjusted_fraction=adjusted,
        stake=round(stake, 2),
        expected_value=ev,
        risk_level=level,
        recommendation=recommendation,
        reasoning=build_reasoning(raw, adjusted, ev, confidence, level, recommendation),
    )


# ---------------------------------------------------------------------------
# Portfolio and strategy views
# ---------------------------------------------------------------------------


def _portfolio_risk(fraction: float) -> RiskLevel:
    if fraction <= 0.05:
        return RiskLevel.LOW
    if fraction <= 0.10:
        return RiskLevel.MEDIUM
    if fraction <= 0.15:
        return RiskLevel.HIGH
    return RiskLevel.EXTREME


def portfolio_stake(bets: Sequence[KellyInput]) -> PortfolioStake:
    """Combined stake for concurrent bets with a flat correlation discount.

    ``portfolio = 0.8 · Σ f*_i``; the total stake uses the first bet's
    bankroll as the reference.  ``diversification_benefit`` is the share of
    the naive sum removed by the discount (0.2 whenever any bet has an edge).

    Returns:
        :class:`PortfolioStake`.  An empty portfolio has risk tier ``NONE``.
    """
    if not bets:
        return PortfolioStake(
            total_stake=0.0,
            portfolio_fraction=0.0,
            risk_tier=RiskLevel.NONE,
            diversification_benefit=0.0,
        )

    naive = sum(raw_kelly_fraction(bet.hit_rate, bet.decimal_odds) for bet in bets)
    combined = naive * PORTFOLIO_CORRELATION_FACTOR
    bankroll = bets[0].bankroll
    benefit = (naive - combined) / naive if naive > 0.0 else 0.0

    return PortfolioStake(
        total_stake=round(combined * bankroll, 2),
        portfolio_fraction=combined,
        risk_tier=_portfolio_risk(combined),
        diversification_benefit=round(benefit, 2),
    )


def bet_sizing_strategies(
    hit_rate: float,
    decimal_odds: float,
    bankroll: float,
    *,
    max_bet_fraction: float = DEFAULT_MAX_BET_FRACTION,
) -> dict:
    """Dollar stakes at 25/50/75/100% of Kelly, each capped.

    Examples::

        bet_sizing_strategies(0.60, 1.91, 1000)
            → {"conservative": 40.11, "moderate": 50.0,
               "aggressive": 50.0, "full_kelly": 50.0}
    """
    raw = raw_kelly_fraction(hit_rate, decimal_odds)
    return {
        name: round(min(raw * multiple, max_bet_fraction) * bankroll, 2)
        for name, multiple in _STRATEGY_MULTIPLES.items()
    }
