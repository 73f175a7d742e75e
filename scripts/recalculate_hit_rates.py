#!/usr/bin/env python3
"""
recalculate_hit_rates.py - Rebuild every stored hit rate from graded history.

Same path as POST /admin/hit-rates/recalculate, without the API server.
Safe to run repeatedly: recalculating unchanged history rewrites identical
estimates.

Usage
-----
  python scripts/recalculate_hit_rates.py
  python scripts/recalculate_hit_rates.py --lookback-days 60
"""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("recalculate_hit_rates")


def main() -> int:
    parser = argparse.ArgumentParser(description="Recalculate PropEdge hit rates.")
    parser.add_argument(
        "--lookback-days",
        type=int,
        default=None,
        help="Override HIT_RATE_LOOKBACK_DAYS for this run.",
    )
    args = parser.parse_args()

    from propedge.core.engine_config import EngineConfig
    from propedge.core.errors import ConfigurationError
    from propedge.models import SessionLocal, init_db
    from propedge.services.aggregator import HistoricalAggregator
    from propedge.services.prop_store import SQLAlchemyPropStore

    try:
        config = EngineConfig.from_env()
        if args.lookback_days is not None:
            config = dataclasses.replace(config, lookback_days=args.lookback_days)
        config.validate()
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    init_db()
    aggregator = HistoricalAggregator(SQLAlchemyPropStore(SessionLocal), config)
    summary = aggregator.recalculate_all()

    print(f"\n  Hit rates updated : {summary.count}")
    print(f"  Skipped (thin)    : {summary.skipped}")
    print(f"  Errors            : {len(summary.errors)}")
    for err in summary.errors[:20]:
        print(f"    - {err}")
    print()
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(main())
