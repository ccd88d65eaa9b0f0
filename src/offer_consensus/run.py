"""
CLI runner for the daily-offers expiry reaper.

Usage:
    python -m offer_consensus.run [OPTIONS]

    # Delete expired daily offers once
    python -m offer_consensus.run --once

    # Run as daemon on the configured interval
    python -m offer_consensus.run --daemon
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import ConsensusConfig
from .models import ContributionDatabase
from .reaper import ExpiryReaper, ReapResult

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("offer-consensus")


def build_reaper(config: ConsensusConfig) -> ExpiryReaper:
    # Status records live in the web process; the CLI only reaps rows.
    db = ContributionDatabase(config.db_path, table="daily_offers")
    return ExpiryReaper(db, status_store=None, config=config.reaper)


async def run_once(config: ConsensusConfig) -> ReapResult:
    """Run a single sweep."""
    return await build_reaper(config).sweep()


async def run_daemon(config: ConsensusConfig) -> None:
    """Sweep forever on ``reaper.interval_seconds``."""
    logger.info("Starting expiry reaper daemon")
    logger.info(f"Database: {config.db_path}")
    logger.info(f"Retention: {config.reaper.retention_hours} hours")
    await build_reaper(config).run_forever()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="offer-consensus: expire stale daily offers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Sweep once
    python -m offer_consensus.run --once

    # Run as daemon
    python -m offer_consensus.run --daemon

    # Use a specific config file
    python -m offer_consensus.run --config datasette.yaml --once
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        help="Override database path from config",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sweep and exit",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run as a daemon, sweeping on the configured interval",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = ConsensusConfig.from_yaml(args.config)
    if args.db:
        config.db_path = args.db

    logger.info(f"Config loaded from {args.config}")

    if not config.db_path.exists():
        logger.error(f"Database not found: {config.db_path}")
        logger.error("Run 'python scripts/init_db.py' first to create the database.")
        return 1

    if args.daemon:
        try:
            asyncio.run(run_daemon(config))
        except KeyboardInterrupt:
            logger.info("Daemon stopped by user")
        return 0

    if args.once:
        result = asyncio.run(run_once(config))
        logger.info(f"Deleted {result.contributions_deleted} expired contribution(s)")
        return 0

    # Default: show help
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
