"""
Database models for PropEdge
SQLAlchemy ORM; SQLite by default, PostgreSQL in production
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./propedge.db")


def make_engine(url: str = DATABASE_URL):
    """Engine for ``url``; SQLite connections are shared across worker threads."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    # pool_pre_ping keeps long-lived Postgres connections healthy
    return create_engine(url, pool_pre_ping=True, echo=False)


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class HistoricalOutcome(Base):
    """One posted player-prop line, graded once the game is final"""

    __tablename__ = "historical_outcomes"

    id = Column(Integer, primary_key=True, index=True)
    outcome_key = Column(String, unique=True, nullable=False, index=True)

    player_name = Column(String, nullable=False)
    player_name_normalized = Column(String, nullable=False, index=True)  # lower-cased
    prop_type = Column(String, nullable=False, index=True)
    line = Column(Float, nullable=False)
    game_date = Column(DateTime, nullable=False, index=True)
    sport_key = Column(String, nullable=False, index=True)
    platform_key = Column(String, nullable=False)
    event_id = Column(String, index=True)
    odds = Column(Float)

    # Filled by grading
    actual_result = Column(Float)
    hit = Column(Boolean, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class HitRate(Base):
    """Derived hit-rate estimate for a player/prop/line window"""

    __tablename__ = "hit_rates"

    id = Column(Integer, primary_key=True, index=True)
    player_name = Column(String, nullable=False)
    player_name_normalized = Column(String, nullable=False, index=True)
    prop_type = Column(String, nullable=False)
    sport_key = Column(String, nullable=False)
    line_range_min = Column(Float, nullable=False)
    line_range_max = Column(Float, nullable=False)

    hit_rate = Column(Float, nullable=False)
    sample_count = Column(Integer, nullable=False)
    hit_count = Column(Integer, nullable=False)
    confidence_level = Column(String(10), nullable=False)  # high | medium | low
    standard_error = Column(Float, nullable=False)
    ci_lower = Column(Float, nullable=False)
    ci_upper = Column(Float, nullable=False)

    first_game_date = Column(DateTime)
    last_game_date = Column(DateTime)
    consistency = Column(Float, default=0.0)
    data_quality = Column(String(10), default="medium")

    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            'player_name_normalized', 'prop_type', 'sport_key',
            'line_range_min', 'line_range_max',
            name='_hit_rate_window_uc',
        ),
    )


def init_db(bind=None):
    """Initialize database tables"""
    Base.metadata.create_all(bind=bind or engine)
