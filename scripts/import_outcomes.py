#!/usr/bin/env python3
"""
import_outcomes.py - Backfill prop outcomes from a CSV export.

Required columns
----------------
  player_name, prop_type, line, game_date

Optional columns
----------------
  sport_key       (default: --sport, basketball_nba)
  platform_key    (default: --platform, manual)
  actual_result   graded when present; hit = actual_result >= line
  odds, event_id

Rows are recorded through HistoricalAggregator.record_outcome, so hit rates
are recomputed as graded rows land.  Already graded outcomes are left
untouched, which makes re-running an import safe.

Usage
-----
  python scripts/import_outcomes.py data/nba_points.csv            # dry-run
  python scripts/import_outcomes.py data/nba_points.csv --execute
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pandas as pd
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("import_outcomes")

REQUIRED_COLUMNS = ("player_name", "prop_type", "line", "game_date")


def _optional(row, column):
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    return value


def load_outcomes(path: Path, sport_key: str, platform_key: str):
    """Read ``path`` into Outcome records.  Rows that do not parse are reported and skipped."""
    from propedge.core.store_interface import Outcome

    df = pd.read_csv(path)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: missing required columns {missing}")

    df["game_date"] = pd.to_datetime(df["game_date"], utc=True, errors="coerce")

    outcomes, rejected = [], []
    for idx, row in df.iterrows():
        try:
            if pd.isna(row["game_date"]):
                raise ValueError("unparseable game_date")
            actual = _optional(row, "actual_result")
            odds = _optional(row, "odds")
            event_id = _optional(row, "event_id")
            outcomes.append(Outcome(
                player_name=str(row["player_name"]).strip(),
                prop_type=str(row["prop_type"]).strip(),
                line=float(row["line"]),
                game_date=row["game_date"].tz_convert(None).to_pydatetime(),
                sport_key=_optional(row, "sport_key") or sport_key,
                platform_key=_optional(row, "platform_key") or platform_key,
                odds=float(odds) if odds is not None else None,
                actual_result=float(actual) if actual is not None else None,
                event_id=str(event_id) if event_id is not None else None,
            ))
        except (TypeError, ValueError) as exc:
            rejected.append(f"row {idx + 2}: {exc}")

    return outcomes, rejected


def main() -> int:
    parser = argparse.ArgumentParser(description="Import prop outcomes from CSV.")
    parser.add_argument("csv_path", type=Path, help="CSV file to import")
    parser.add_argument("--sport", default="basketball_nba", help="Default sport_key")
    parser.add_argument("--platform", default="manual", help="Default platform_key")
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Actually write outcomes.  Without this flag the script runs dry.",
    )
    args = parser.parse_args()

    if not args.csv_path.exists():
        logger.error("File not found: %s", args.csv_path)
        return 2

    try:
        outcomes, rejected = load_outcomes(args.csv_path, args.sport, args.platform)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    graded = sum(1 for o in outcomes if o.actual_result is not None)
    print(f"\n  Parsed rows   : {len(outcomes)} ({graded} graded)")
    print(f"  Rejected rows : {len(rejected)}")
    for msg in rejected[:20]:
        print(f"    - {msg}")

    if not args.execute:
        print("\n  Dry run. Re-run with --execute to write.\n")
        return 0

    from propedge.core.engine_config import EngineConfig
    from propedge.core.errors import CollaboratorFailure, InvalidInput
    from propedge.models import SessionLocal, init_db
    from propedge.services.aggregator import HistoricalAggregator, RecordStatus
    from propedge.services.prop_store import SQLAlchemyPropStore

    init_db()
    aggregator = HistoricalAggregator(
        SQLAlchemyPropStore(SessionLocal), EngineConfig.from_env().validate()
    )

    counts = {status: 0 for status in RecordStatus}
    failures = 0
    for outcome in outcomes:
        try:
            result = aggregator.record_outcome(outcome)
        except (CollaboratorFailure, InvalidInput) as exc:
            failures += 1
            logger.warning("Failed to record %s: %s", outcome.key, exc)
            continue
        counts[result.status] += 1

    print()
    for status, n in counts.items():
        print(f"  {status.value:<10}: {n}")
    print(f"  failed    : {failures}\n")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
