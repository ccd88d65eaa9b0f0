"""
Database migrations for datasette-daily-offers.

Migrations are numbered SQL files in this directory (e.g. 0002_price_contributions.sql),
applied in order of their numeric prefix and recorded in ``schema_migrations``
together with the file they came from.
"""

import logging
import re
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
VERSION_PREFIX = re.compile(r"^(\d+)_")

SCHEMA_MIGRATIONS_DDL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT,
        applied_ts TEXT NOT NULL
    )
"""


def get_migration_files() -> list[tuple[int, Path]]:
    """All migration files as (version, path), sorted by version."""
    found = []
    for path in MIGRATIONS_DIR.glob("*.sql"):
        match = VERSION_PREFIX.match(path.name)
        if match:
            found.append((int(match.group(1)), path))
    found.sort()
    return found


def _applied_versions(conn: sqlite3.Connection) -> set[int]:
    try:
        return {version for (version,) in conn.execute("SELECT version FROM schema_migrations")}
    except sqlite3.OperationalError:
        # Fresh database
        return set()


def get_pending_migrations(db_path: Path) -> list[tuple[int, Path]]:
    """Migration files not yet recorded in ``db_path`` (all of them for a missing file)."""
    if not Path(db_path).exists():
        return get_migration_files()

    conn = sqlite3.connect(db_path)
    try:
        done = _applied_versions(conn)
    finally:
        conn.close()
    return [(version, path) for version, path in get_migration_files() if version not in done]


def run_migrations(db_path: Path, verbose: bool = True) -> list[int]:
    """
    Apply all pending migrations to the database at ``db_path``.

    Idempotent. Returns the versions applied by this call.
    """
    log = logger.info if verbose else logger.debug
    conn = sqlite3.connect(db_path)
    applied: list[int] = []

    try:
        conn.execute(SCHEMA_MIGRATIONS_DDL)
        conn.commit()

        done = _applied_versions(conn)
        for version, path in get_migration_files():
            if version in done:
                continue
            log(f"Applying migration {version}: {path.name}")
            conn.executescript(path.read_text())
            conn.execute(
                "INSERT INTO schema_migrations (version, name, applied_ts) VALUES (?, ?, ?)",
                (version, path.name, datetime.now(UTC).isoformat()),
            )
            conn.commit()
            applied.append(version)

        if not applied:
            log(f"Schema up to date ({len(done)} migration(s) applied)")
    finally:
        conn.close()

    return applied


def get_current_version(db_path: Path) -> int:
    """Highest applied migration version, or 0 for a missing database."""
    if not Path(db_path).exists():
        return 0

    conn = sqlite3.connect(db_path)
    try:
        return max(_applied_versions(conn), default=0)
    finally:
        conn.close()
