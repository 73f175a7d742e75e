"""
Shared fixtures: outcome factories and stores
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from propedge.core.engine_config import EngineConfig
from propedge.core.store_interface import Outcome
from propedge.models import Base
from propedge.services.aggregator import HistoricalAggregator
from propedge.services.prop_store import InMemoryPropStore

NOW = datetime(2025, 3, 1, 12, 0, 0)


def make_outcome(
    player_name="Jalen Brunson",
    prop_type="player_points",
    line=26.5,
    days_ago=1,
    sport_key="basketball_nba",
    platform_key="us_dfs.prizepicks",
    actual_result=None,
    hit=None,
    event_id=None,
    odds=None,
):
    game_date = NOW - timedelta(days=days_ago)
    return Outcome(
        player_name=player_name,
        prop_type=prop_type,
        line=line,
        game_date=game_date,
        sport_key=sport_key,
        platform_key=platform_key,
        odds=odds,
        actual_result=actual_result,
        hit=hit,
        event_id=event_id or f"evt-{game_date:%Y%m%d}",
    )


def graded_series(hits, misses, player_name="Jalen Brunson", line=26.5, spacing_days=3, **kwargs):
    """``hits`` graded hits followed by ``misses`` misses, newest first."""
    outcomes = []
    for i in range(hits + misses):
        actual = line + 3 if i < hits else line - 3
        outcomes.append(make_outcome(
            player_name=player_name,
            line=line,
            days_ago=1 + i * spacing_days,
            actual_result=actual,
            **kwargs,
        ))
    return outcomes


@pytest.fixture
def memory_store():
    return InMemoryPropStore()


@pytest.fixture
def aggregator(memory_store):
    return HistoricalAggregator(memory_store, EngineConfig())


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
