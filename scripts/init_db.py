#!/usr/bin/env python3
"""Create the daily-offers database, or report pending migrations with --check."""

import argparse
import sqlite3
import sys
from pathlib import Path

from datasette_daily_offers.migrations import get_pending_migrations, run_migrations


def describe(db_path: Path) -> None:
    conn = sqlite3.connect(db_path)
    try:
        print("\nSchema versions:")
        for version, name, applied_ts in conn.execute(
            "SELECT version, name, applied_ts FROM schema_migrations ORDER BY version"
        ):
            print(f"  v{version} {name or ''} ({applied_ts})")

        tables = [
            name
            for (name,) in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            )
            if not name.startswith("sqlite_")
        ]
        print(f"\nTables: {', '.join(tables)}")
    finally:
        conn.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Initialize the daily-offers database")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("daily_offers.db"),
        help="Path to the SQLite database file (default: daily_offers.db)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only list pending migrations; exit 1 if any",
    )
    args = parser.parse_args()

    if args.check:
        pending = get_pending_migrations(args.db)
        for version, path in pending:
            print(f"pending: v{version} {path.name}")
        return 1 if pending else 0

    print(f"Initializing database: {args.db}")
    applied = run_migrations(args.db, verbose=True)
    print(f"Applied {len(applied)} migration(s).")
    describe(args.db)
    return 0


if __name__ == "__main__":
    sys.exit(main())
