#!/usr/bin/env python3
"""
Database initialization script
Creates the outcome and hit-rate tables, optionally dropping them first
"""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load .env file
from dotenv import load_dotenv
load_dotenv()

from propedge.models import Base, engine, SessionLocal
import logging
from sqlalchemy import text, inspect

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def init_database(drop_existing: bool = False, assume_yes: bool = False):
    """
    Initialize database tables

    Args:
        drop_existing: If True, drops all tables first (DANGER: data loss!)
        assume_yes: Skip the interactive confirmation for --drop
    """
    logger.info("Initializing PropEdge database...")

    if drop_existing:
        logger.warning("Dropping all existing tables!")
        if not assume_yes:
            response = input("Are you sure? This will delete all data. Type 'yes' to confirm: ")
            if response.lower() != 'yes':
                logger.info("Aborted.")
                return False

        Base.metadata.drop_all(bind=engine)
        logger.info("Existing tables dropped")

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")

    inspector = inspect(engine)
    tables = inspector.get_table_names()
    logger.info("Tables: %s", ", ".join(tables))

    return True


def check_connection():
    """Test database connection"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return True
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        return False
    finally:
        db.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize PropEdge database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (DANGER!)")
    parser.add_argument("--yes", action="store_true", help="Do not prompt before --drop")
    parser.add_argument("--check", action="store_true", help="Only check connection")

    args = parser.parse_args()

    if args.check:
        sys.exit(0 if check_connection() else 1)

    if check_connection():
        if init_database(drop_existing=args.drop, assume_yes=args.yes):
            logger.info("Database initialization complete!")
    else:
        logger.error("Cannot initialize database - connection failed")
        sys.exit(1)
