"""
Pydantic request/response schemas for the PropEdge API.

Using explicit schemas instead of raw dicts keeps the engine's dataclasses
out of the wire format and generates accurate OpenAPI docs.
"""

from __future__ import annotations

from typing import Literal, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


def _check_american(v: Optional[float], name: str) -> Optional[float]:
    if v is None:
        return v
    if -100 < v < 100:
        raise ValueError(
            f"{name}={v} is not valid American odds. "
            "Must be >= +100 or <= -100."
        )
    return v


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

class PropEvaluateRequest(BaseModel):
    """
    Payload for POST /api/props/evaluate.

    DFS platforms (``us_dfs.*``) are priced from the payout table and need
    no odds; sportsbook platforms need ``odds`` in ``odds_kind`` format.
    """

    player_name: str = Field(..., min_length=2, max_length=120)
    prop_type: str = Field(..., min_length=2, max_length=80, description='e.g. "player_points"')
    line: float = Field(..., description="Posted line, e.g. 24.5")
    sport_key: str = Field("basketball_nba", description="Odds API sport key")
    platform: str = Field(..., description='e.g. "us_dfs.prizepicks" or "draftkings"')
    bankroll: float = Field(..., gt=0)
    odds_kind: Literal["american", "decimal"] = Field("american")
    odds: Optional[float] = Field(None, description="American or decimal odds for sportsbooks")
    leg_count: Optional[int] = Field(None, ge=1, le=10, description="DFS entry size")

    @field_validator("odds")
    @classmethod
    def validate_odds(cls, v: Optional[float], info) -> Optional[float]:
        if v is not None and info.data.get("odds_kind", "american") == "american":
            return _check_american(v, "odds")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "player_name": "Jalen Brunson",
                "prop_type": "player_points",
                "line": 26.5,
                "sport_key": "basketball_nba",
                "platform": "us_dfs.prizepicks",
                "bankroll": 1000.0,
                "leg_count": 3,
            }
        }
    }


class PropEvaluationResponse(BaseModel):
    """Evaluation result.  confidence_level is the storage tag; confidence_score the runtime blend."""
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
    confidence_rating: str
    recommended_stake: float
    kelly_percentage: float
    raw_kelly_percentage: float
    risk_level: str
    recommendation: str
    reasoning: str
    sample_count: int
    margin_of_error: float
    warnings: list[str]


class InsufficientDataResponse(BaseModel):
    """422 body when there is not enough graded history."""
    error: Literal["insufficient_data"] = "insufficient_data"
    player_name: str
    prop_type: str
    sport_key: str
    sample_count: int
    required: int
    line_range_min: Optional[float] = None
    line_range_max: Optional[float] = None
    reason: str


class PortfolioRequest(BaseModel):
    """Payload for POST /api/props/portfolio."""
    props: list[PropEvaluateRequest] = Field(..., min_length=1, max_length=25)


class PortfolioResponse(BaseModel):
    total_stake: float
    portfolio_fraction: float
    risk_tier: str
    diversification_benefit: float
    evaluations: list[PropEvaluationResponse]
    insufficient: list[InsufficientDataResponse]


# ---------------------------------------------------------------------------
# Hit rates and outcomes
# ---------------------------------------------------------------------------

class HitRateResponse(BaseModel):
    player_name: str
    prop_type: str
    sport_key: str
    line_range_min: float
    line_range_max: float
    hit_rate: float
    sample_count: int
    hit_count: int
    confidence_level: str
    standard_error: float
    ci_lower: float
    ci_upper: float
    consistency: float
    data_quality: str
    first_game_date: Optional[datetime] = None
    last_game_date: Optional[datetime] = None
    last_updated: datetime


class OutcomeCreate(BaseModel):
    """
    Payload for POST /api/outcomes.

    Supplying actual_result grades the outcome (hit = actual_result >= line)
    and recomputes the player's hit rate.  A graded outcome is immutable:
    posting it again changes nothing.
    """

    player_name: str = Field(..., min_length=2, max_length=120)
    prop_type: str = Field(..., min_length=2, max_length=80)
    line: float
    game_date: datetime
    sport_key: str = Field("basketball_nba")
    platform_key: str = Field("manual")
    odds: Optional[float] = None
    actual_result: Optional[float] = None
    event_id: Optional[str] = Field(None, max_length=64)

    @field_validator("game_date")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "player_name": "Jalen Brunson",
                "prop_type": "player_points",
                "line": 26.5,
                "game_date": "2025-01-04T00:30:00",
                "sport_key": "basketball_nba",
                "platform_key": "us_dfs.prizepicks",
                "actual_result": 31,
            }
        }
    }


class OutcomeRecordResponse(BaseModel):
    message: str
    status: str
    outcome_key: str
    hit: Optional[bool]
    hit_rate: Optional[HitRateResponse] = None


class RecalculationResponse(BaseModel):
    """Response from /admin/hit-rates/recalculate."""
    message: str
    hit_rates_updated: int
    skipped: int
    errors: list[str]
