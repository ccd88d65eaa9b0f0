#!/usr/bin/env python3
"""Purge old contributions for long-horizon retention."""

import argparse
import asyncio
from datetime import timedelta
from pathlib import Path

from offer_consensus.models import CONTRIBUTION_TABLES, ContributionDatabase, utc_now


def purge(db_path: Path, days: int, table: str = "daily_offers") -> int:
    """Delete contributions in ``table`` older than N days."""
    cutoff = utc_now() - timedelta(days=days)
    db = ContributionDatabase(db_path, table=table)
    return asyncio.run(db.delete_contributions_before(cutoff))


def main() -> None:
    parser = argparse.ArgumentParser(description="Purge old contributions")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("daily_offers.db"),
        help="Path to the SQLite database file (default: daily_offers.db)",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Delete contributions older than this many days (default: 30)",
    )
    parser.add_argument(
        "--table",
        choices=CONTRIBUTION_TABLES,
        default="daily_offers",
        help="Contribution table to purge (default: daily_offers)",
    )
    args = parser.parse_args()

    deleted = purge(args.db, args.days, args.table)
    print(f"Deleted {deleted} contribution(s) from {args.table} older than {args.days} days")


if __name__ == "__main__":
    main()
