"""
Background expiry of daily-offer contributions and status records.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import ReaperConfig
from .models import ContributionDatabase, utc_now
from .status_store import StatusStore

logger = logging.getLogger(__name__)


@dataclass
class ReapResult:
    contributions_deleted: int = 0
    statuses_dropped: int = 0


class ExpiryReaper:
    """
    Periodically deletes contributions older than the retention window
    and drops stale StatusStore entries.

    Runs as its own asyncio task; a failed sweep is logged and the loop
    keeps going.
    """

    def __init__(
        self,
        db: ContributionDatabase | None,
        status_store: StatusStore | None = None,
        config: ReaperConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.status_store = status_store
        self.config = config or ReaperConfig()
        self.clock = clock
        self._task: asyncio.Task | None = None

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.config.retention_hours)

    async def sweep(self) -> ReapResult:
        result = ReapResult()
        cutoff = self.clock() - self.retention

        if self.db is not None and self.config.delete_contributions:
            result.contributions_deleted = await self.db.delete_contributions_before(cutoff)

        if self.status_store is not None:
            result.statuses_dropped = self.status_store.cleanup(self.retention)

        logger.info(
            f"Reaper sweep: {result.contributions_deleted} contribution(s) deleted, "
            f"{result.statuses_dropped} status record(s) dropped"
        )
        return result

    async def run_forever(self) -> None:
        logger.info(f"Expiry reaper running every {self.config.interval_seconds}s")
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Reaper sweep failed")
            await asyncio.sleep(self.config.interval_seconds)

    def start(self) -> asyncio.Task:
        """Schedule run_forever() on the running loop (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Expiry reaper stopped")
