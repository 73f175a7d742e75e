"""
FastAPI application for PropEdge
Prop evaluation API, outcome recording, and the background refresh job
"""

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
import logging
import os

from propedge.auth import verify_api_key, verify_admin_api_key
from propedge.core.engine_config import EngineConfig
from propedge.core.errors import InsufficientData, InvalidInput
from propedge.core.store_interface import HitRateEstimate, MarketDataSource, Outcome, PropStore
from propedge.models import SessionLocal, get_db, init_db
from propedge.schemas import (
    HitRateResponse,
    InsufficientDataResponse,
    OutcomeCreate,
    OutcomeRecordResponse,
    PortfolioRequest,
    PortfolioResponse,
    PropEvaluateRequest,
    PropEvaluationResponse,
    RecalculationResponse,
)
from propedge.services.aggregator import HistoricalAggregator
from propedge.services.evaluator import PropEvaluation, PropEvaluator, PropRequest
from propedge.services.market_feed import OddsAPIPropSource
from propedge.services.prop_store import SQLAlchemyPropStore
from propedge.services.refresh_scheduler import RefreshScheduler, RefreshSummary

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class EngineServices:
    """Everything the routes need, wired once by the lifespan."""
    config: EngineConfig
    store: PropStore
    aggregator: HistoricalAggregator
    evaluator: PropEvaluator
    refresher: Optional[RefreshScheduler] = None


def build_services(
    config: EngineConfig,
    store: PropStore,
    source: Optional[MarketDataSource] = None,
    scheduler: Optional[BackgroundScheduler] = None,
) -> EngineServices:
    """Compose the engine.  The refresher exists only when a market source does."""
    aggregator = HistoricalAggregator(store, config)
    evaluator = PropEvaluator(aggregator, config)
    refresher = None
    if source is not None:
        refresher = RefreshScheduler(source, aggregator, config, scheduler=scheduler)
        refresher.on_refresh_complete(_log_refresh_summary)
    return EngineServices(config, store, aggregator, evaluator, refresher)


def _log_refresh_summary(summary: RefreshSummary) -> None:
    if summary.sports_failed:
        logger.warning(
            "Refresh finished with %d failed sports: %s",
            summary.sports_failed, "; ".join(summary.fetch_errors[:5]),
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting PropEdge")

    # A bad configuration is fatal here, before anything is scheduled
    config = EngineConfig.from_env().validate()
    logger.info("Engine config: %r", config)

    init_db()
    store = SQLAlchemyPropStore(SessionLocal)

    source = None
    refresh_enabled = os.getenv("REFRESH_ENABLED", "false").lower() == "true"
    if refresh_enabled:
        if os.getenv("THE_ODDS_API_KEY"):
            source = OddsAPIPropSource(timeout=config.fetch_timeout_seconds)
        else:
            logger.warning("REFRESH_ENABLED=true but THE_ODDS_API_KEY is not set; refresh disabled")

    services = build_services(config, store, source)
    app.state.services = services

    if services.refresher is not None:
        services.refresher.start()

    yield

    logger.info("Shutting down PropEdge")
    if services.refresher is not None:
        services.refresher.stop()


app = FastAPI(
    title="PropEdge",
    description="Player-prop expected-value decision engine",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> EngineServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Engine not initialised")
    return services


# ============================================================================
# CONVERTERS
# ============================================================================

def _to_prop_request(payload: PropEvaluateRequest) -> PropRequest:
    return PropRequest(
        player_name=payload.player_name,
        prop_type=payload.prop_type,
        line=payload.line,
        sport_key=payload.sport_key,
        platform=payload.platform,
        bankroll=payload.bankroll,
        odds=payload.odds,
        odds_kind=payload.odds_kind,
        leg_count=payload.leg_count,
    )


def _evaluation_response(ev: PropEvaluation) -> PropEvaluationResponse:
    return PropEvaluationResponse(
        player_name=ev.player_name,
        prop_type=ev.prop_type,
        line=ev.line,
        platform=ev.platform,
        sport_key=ev.sport_key,
        hit_rate=round(ev.hit_rate, 4),
        implied_probability=round(ev.implied_probability, 4),
        decimal_odds=round(ev.decimal_odds, 4),
        ev_percentage=round(ev.ev_percentage, 2),
        is_positive_ev=ev.is_positive_ev,
        confidence_level=ev.confidence_level,
        confidence_score=ev.confidence_score,
        confidence_rating=ev.confidence_rating.value,
        recommended_stake=ev.recommended_stake,
        kelly_percentage=round(ev.kelly_percentage, 2),
        raw_kelly_percentage=round(ev.raw_kelly_percentage, 2),
        risk_level=ev.risk_level.value,
        recommendation=ev.recommendation.value,
        reasoning=ev.reasoning,
        sample_count=ev.sample_count,
        margin_of_error=round(ev.margin_of_error, 4),
        warnings=list(ev.warnings),
    )


def _insufficient_response(data: InsufficientData) -> InsufficientDataResponse:
    return InsufficientDataResponse(
        player_name=data.player_name,
        prop_type=data.prop_type,
        sport_key=data.sport_key,
        sample_count=data.sample_count,
        required=data.required,
        line_range_min=data.line_range_min,
        line_range_max=data.line_range_max,
        reason=data.reason,
    )


def _hit_rate_response(estimate: HitRateEstimate) -> HitRateResponse:
    return HitRateResponse(
        player_name=estimate.player_name,
        prop_type=estimate.prop_type,
        sport_key=estimate.sport_key,
        line_range_min=estimate.line_range_min,
        line_range_max=estimate.line_range_max,
        hit_rate=round(estimate.hit_rate, 4),
        sample_count=estimate.sample_count,
        hit_count=estimate.hit_count,
        confidence_level=estimate.confidence_level,
        standard_error=round(estimate.standard_error, 4),
        ci_lower=round(estimate.confidence_interval_95.lower, 4),
        ci_upper=round(estimate.confidence_interval_95.upper, 4),
        consistency=round(estimate.consistency, 4),
        data_quality=estimate.data_quality,
        first_game_date=estimate.first_game_date,
        last_game_date=estimate.last_game_date,
        last_updated=estimate.last_updated,
    )


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "status": "online",
        "service": "PropEdge",
        "version": "0.1.0",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/health")
async def health_check(request: Request, db: Session = Depends(get_db)):
    """Detailed health check"""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        db_status = "disconnected"

    services = getattr(request.app.state, "services", None)
    refresher = services.refresher if services else None
    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "refresh": "running" if refresher and refresher.is_running else "stopped",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.post(
    "/api/props/evaluate",
    response_model=PropEvaluationResponse,
    responses={422: {"model": InsufficientDataResponse}},
)
async def evaluate_prop(
    payload: PropEvaluateRequest,
    services: EngineServices = Depends(get_services),
    user: str = Depends(verify_api_key),
):
    """Evaluate one prop: hit rate, EV flag, confidence and Kelly stake."""
    try:
        result = services.evaluator.evaluate(_to_prop_request(payload))
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if isinstance(result, InsufficientData):
        return JSONResponse(
            status_code=422,
            content=_insufficient_response(result).model_dump(),
        )
    return _evaluation_response(result)


@app.post("/api/props/portfolio", response_model=PortfolioResponse)
async def evaluate_portfolio(
    payload: PortfolioRequest,
    services: EngineServices = Depends(get_services),
    user: str = Depends(verify_api_key),
):
    """Evaluate several props and size the playable ones as one portfolio."""
    try:
        result = services.evaluator.portfolio([_to_prop_request(p) for p in payload.props])
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return PortfolioResponse(
        total_stake=round(result.portfolio.total_stake, 2),
        portfolio_fraction=round(result.portfolio.portfolio_fraction, 4),
        risk_tier=result.portfolio.risk_tier.value,
        diversification_benefit=round(result.portfolio.diversification_benefit, 2),
        evaluations=[_evaluation_response(ev) for ev in result.evaluations],
        insufficient=[_insufficient_response(d) for d in result.insufficient],
    )


@app.get("/api/hit-rates", response_model=List[HitRateResponse])
async def list_hit_rates(
    player_name: Optional[str] = Query(None, description="Case-insensitive player filter"),
    prop_type: Optional[str] = Query(None),
    sport_key: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    services: EngineServices = Depends(get_services),
    user: str = Depends(verify_api_key),
):
    """Stored hit-rate estimates, most samples first."""
    estimates = services.store.list_hit_rates()
    if player_name:
        wanted = player_name.strip().lower()
        estimates = [e for e in estimates if e.player_name.lower() == wanted]
    if prop_type:
        estimates = [e for e in estimates if e.prop_type == prop_type]
    if sport_key:
        estimates = [e for e in estimates if e.sport_key == sport_key]

    estimates.sort(key=lambda e: (-e.sample_count, e.player_name.lower(), e.prop_type))
    return [_hit_rate_response(e) for e in estimates[:limit]]


@app.post("/api/outcomes", response_model=OutcomeRecordResponse)
async def record_outcome(
    payload: OutcomeCreate,
    services: EngineServices = Depends(get_services),
    user: str = Depends(verify_api_key),
):
    """
    Record a prop outcome.  With actual_result set the outcome is graded and
    the player's hit rate recomputed.
    """
    outcome = Outcome(
        player_name=payload.player_name.strip(),
        prop_type=payload.prop_type,
        line=payload.line,
        game_date=payload.game_date,
        sport_key=payload.sport_key,
        platform_key=payload.platform_key,
        odds=payload.odds,
        actual_result=payload.actual_result,
        event_id=payload.event_id,
    )
    try:
        result = services.aggregator.record_outcome(outcome)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    logger.info("Outcome %s %s by %s", result.outcome.key, result.status.value, user)
    hit_rate = None
    if isinstance(result.estimate, HitRateEstimate):
        hit_rate = _hit_rate_response(result.estimate)

    return OutcomeRecordResponse(
        message=f"Outcome {result.status.value}",
        status=result.status.value,
        outcome_key=result.outcome.key,
        hit=result.outcome.hit,
        hit_rate=hit_rate,
    )


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/refresh")
def trigger_refresh(
    services: EngineServices = Depends(get_services),
    user: str = Depends(verify_admin_api_key),
):
    """
    Run one refresh cycle now.  A cycle already in flight makes this a no-op.

    Runs in the FastAPI threadpool, off the event loop.
    """
    if services.refresher is None:
        raise HTTPException(
            status_code=409,
            detail="Refresh is disabled. Set REFRESH_ENABLED=true and THE_ODDS_API_KEY.",
        )
    logger.info("Manual refresh triggered by %s", user)
    summary = services.refresher.refresh_now()
    return {
        "message": "Refresh skipped: already in progress" if summary.skipped else "Refresh complete",
        "summary": summary.to_dict(),
    }


@app.get("/admin/refresh/status")
def get_refresh_status(
    services: EngineServices = Depends(get_services),
    user: str = Depends(verify_admin_api_key),
):
    """Refresh job status plus store record counts."""
    if services.refresher is None:
        status = {"is_running": False, "is_refreshing": False, "enabled": False}
    else:
        status = {"enabled": True, **services.refresher.get_status()}
    try:
        status["store_counts"] = services.store.record_counts()
    except Exception as exc:
        logger.error("Could not read store counts: %s", exc)
        status["store_counts"] = None
    return status


@app.post("/admin/hit-rates/recalculate", response_model=RecalculationResponse)
def recalculate_hit_rates(
    services: EngineServices = Depends(get_services),
    user: str = Depends(verify_admin_api_key),
):
    """Recompute every stored hit rate from graded history."""
    logger.info("Hit rate recalculation triggered by %s", user)
    summary = services.aggregator.recalculate_all()
    return RecalculationResponse(
        message="Recalculation complete",
        hit_rates_updated=summary.count,
        skipped=summary.skipped,
        errors=summary.errors,
    )


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
