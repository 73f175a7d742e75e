"""
Prop evaluation: hit rate -> implied probability -> EV flag -> Kelly stake.

PropEvaluator.evaluate() terminates with a PropEvaluation, an
InsufficientData result, or an InvalidInput exception.  It never
substitutes a default hit rate for missing history.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Union

from propedge.core.confidence import (
    ConfidenceInput,
    ConfidenceRating,
    recency_score,
    score_confidence,
)
from propedge.core.engine_config import EngineConfig
from propedge.core.errors import InsufficientData, InvalidInput
from propedge.core.kelly import (
    KellyInput,
    PortfolioStake,
    Recommendation,
    RiskLevel,
    calculate_stake,
    portfolio_stake,
)
from propedge.core.odds_math import (
    OddsKind,
    evaluate_ev,
    implied_probability,
    is_dfs_platform,
    to_decimal_odds,
)
from propedge.core.store_interface import HitRateEstimate
from propedge.services.aggregator import HistoricalAggregator, LineWindow

logger = logging.getLogger(__name__)

#: Kelly needs p strictly inside (0, 1); an all-hit or all-miss sample is clipped.
KELLY_PROBABILITY_FLOOR = 0.01
KELLY_PROBABILITY_CEILING = 0.99


@dataclass(frozen=True)
class PropRequest:
    player_name: str
    prop_type: str
    line: float
    sport_key: str
    platform: str
    bankroll: float
    odds: Optional[float] = None
    odds_kind: str = OddsKind.AMERICAN.value
    leg_count: Optional[int] = None


@dataclass(frozen=True)
class PropEvaluation:
    """
    Result of one evaluate() call.  Never mutated after return.

    confidence_level is the coarse storage tag of the underlying estimate;
    confidence_score / confidence_rating are the runtime blend that scaled
    the Kelly stake.
    """

    player_name: str
    prop_type: str
    line: float
    platform: str
    sport_key: str
    hit_rate: float
    implied_probability: float
    decimal_odds: float
    ev_percentage: float
    is_positive_ev: bool
    confidence_level: str
    confidence_score: float
    confidence_rating: ConfidenceRating
    recommended_stake: float
    kelly_percentage: float
    raw_kelly_percentage: float
    risk_level: RiskLevel
    recommendation: Recommendation
    reasoning: str
    sample_count: int
    margin_of_error: float
    warnings: List[str] = field(default_factory=list)

    @property
    def identity(self) -> str:
        return f"{self.player_name}|{self.prop_type}|{self.line:g}|{self.platform}"


@dataclass
class PortfolioEvaluation:
    portfolio: PortfolioStake
    evaluations: List[PropEvaluation] = field(default_factory=list)
    insufficient: List[InsufficientData] = field(default_factory=list)


class PropEvaluator:
    """Composes the aggregator with the pure EV, confidence and Kelly math."""

    def __init__(self, aggregator: HistoricalAggregator, config: Optional[EngineConfig] = None):
        self.aggregator = aggregator
        self.config = config or aggregator.config

    def _validate(self, req: PropRequest) -> None:
        if not req.player_name or not req.player_name.strip():
            raise InvalidInput("player_name is required")
        if not req.prop_type:
            raise InvalidInput("prop_type is required")
        if not math.isfinite(req.line):
            raise InvalidInput(f"line must be finite, got {req.line!r}")
        if not (req.bankroll > 0):
            raise InvalidInput(f"bankroll must be > 0, got {req.bankroll!r}")
        if req.leg_count is not None and req.leg_count < 1:
            raise InvalidInput(f"leg_count must be >= 1, got {req.leg_count!r}")
        if not is_dfs_platform(req.platform) and req.odds is None:
            raise InvalidInput(f"odds are required for non-DFS platform {req.platform!r}")

    def _pricing(self, req: PropRequest):
        """(implied probability, decimal odds) for the request's platform."""
        if is_dfs_platform(req.platform):
            legs = req.leg_count or self.config.default_leg_count
            implied = implied_probability(None, OddsKind.DFS, platform=req.platform, leg_count=legs)
            return implied, 1.0 / implied
        implied = implied_probability(req.odds, req.odds_kind)
        return implied, to_decimal_odds(req.odds, req.odds_kind)

    def runtime_confidence(self, estimate: HitRateEstimate, now: datetime):
        age_days = 0
        if estimate.last_game_date is not None:
            age_days = max(0, (now - estimate.last_game_date).days)
        return score_confidence(ConfidenceInput(
            sample_size=estimate.sample_count,
            hit_rate=estimate.hit_rate,
            time_range_days=estimate.time_range_days,
            data_quality=estimate.data_quality,
            consistency=estimate.consistency,
            recency=recency_score(age_days),
        ))

    def evaluate(
        self, req: PropRequest, now: Optional[datetime] = None
    ) -> Union[PropEvaluation, InsufficientData]:
        self._validate(req)
        now = now or datetime.utcnow()

        estimate = self.aggregator.estimate(
            req.player_name,
            req.prop_type,
            LineWindow.around(req.line, self.config.line_tolerance),
            req.sport_key,
            now=now,
        )
        if isinstance(estimate, InsufficientData):
            logger.info("Insufficient data: %s", estimate.reason)
            return estimate

        implied, decimal_odds = self._pricing(req)
        ev = evaluate_ev(estimate.hit_rate, implied, threshold=self.config.ev_threshold)
        confidence = self.runtime_confidence(estimate, now)

        p = min(max(estimate.hit_rate, KELLY_PROBABILITY_FLOOR), KELLY_PROBABILITY_CEILING)
        stake = calculate_stake(
            p,
            decimal_odds,
            req.bankroll,
            confidence.overall,
            max_bet_fraction=self.config.max_bet_fraction,
            min_bet_amount=self.config.min_bet_amount,
        )

        return PropEvaluation(
            player_name=req.player_name,
            prop_type=req.prop_type,
            line=req.line,
            platform=req.platform,
            sport_key=req.sport_key,
            hit_rate=estimate.hit_rate,
            implied_probability=implied,
            decimal_odds=decimal_odds,
            ev_percentage=ev.ev_percentage,
            is_positive_ev=ev.is_positive_ev,
            confidence_level=estimate.confidence_level,
            confidence_score=confidence.overall,
            confidence_rating=confidence.level,
            recommended_stake=stake.stake,
            kelly_percentage=stake.adjusted_fraction * 100.0,
            raw_kelly_percentage=stake.raw_kelly * 100.0,
            risk_level=stake.risk_level,
            recommendation=stake.recommendation,
            reasoning=stake.reasoning,
            sample_count=estimate.sample_count,
            margin_of_error=confidence.margin_of_error,
            warnings=list(confidence.warnings),
        )

    def portfolio(
        self, requests: Sequence[PropRequest], now: Optional[datetime] = None
    ) -> PortfolioEvaluation:
        """
        Evaluate every request and size the playable ones together.

        Requests without enough history are reported, not sized.  Props
        whose recommendation is AVOID carry no edge and are left out of the
        combined stake.
        """
        now = now or datetime.utcnow()
        result = PortfolioEvaluation(portfolio=portfolio_stake([]))
        bets: List[KellyInput] = []

        for req in requests:
            evaluation = self.evaluate(req, now=now)
            if isinstance(evaluation, InsufficientData):
                result.insufficient.append(evaluation)
                continue
            result.evaluations.append(evaluation)
            if evaluation.recommendation is not Recommendation.AVOID:
                bets.append(KellyInput(
                    hit_rate=min(max(evaluation.hit_rate, KELLY_PROBABILITY_FLOOR),
                                 KELLY_PROBABILITY_CEILING),
                    decimal_odds=evaluation.decimal_odds,
                    bankroll=req.bankroll,
                    confidence=evaluation.confidence_score,
                ))

        result.portfolio = portfolio_stake(bets)
        return result
