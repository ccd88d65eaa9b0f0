"""
In-process record of contribution lifecycle state with change notification.

One StatusStore is owned by each running application (the plugin keeps
one per Datasette instance); it is never a module-level global.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import ContributionStatus, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)

StatusListener = Callable[[str, ContributionStatus], None]


@dataclass
class StatusRecord:
    contribution_id: str
    status: ContributionStatus
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.contribution_id,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class StatusStore:
    """
    Mutex-guarded map of contribution id to StatusRecord.

    Listeners registered with subscribe() are called synchronously, outside
    the lock, after every set_status(). A failing listener is logged and
    does not affect the others.
    """

    def __init__(
        self,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.max_age = max_age
        self.clock = clock
        self._records: dict[str, StatusRecord] = {}
        self._listeners: list[StatusListener] = []
        self._lock = threading.Lock()

    def set_status(self, contribution_id: str, status: ContributionStatus | str) -> StatusRecord:
        status = ContributionStatus(status)
        now = self.clock()
        with self._lock:
            record = self._records.get(contribution_id)
            if record is None:
                record = StatusRecord(contribution_id, status, created_at=now, updated_at=now)
                self._records[contribution_id] = record
            else:
                record.status = status
                record.updated_at = now
            listeners = list(self._listeners)

        self.on_status_changed(contribution_id, status, listeners)
        return record

    def get_status(self, contribution_id: str) -> ContributionStatus:
        """Current status, or pending for an unknown id."""
        with self._lock:
            record = self._records.get(contribution_id)
            return record.status if record else ContributionStatus.PENDING

    def list_all(self) -> list[StatusRecord]:
        """Records updated within ``max_age``, oldest first."""
        cutoff = self.clock() - self.max_age
        with self._lock:
            records = [r for r in self._records.values() if r.updated_at >= cutoff]
        return sorted(records, key=lambda r: r.created_at)

    def cleanup(self, max_age: timedelta | None = None) -> int:
        """Drop records not updated within ``max_age``. Returns how many were dropped."""
        cutoff = self.clock() - (max_age or self.max_age)
        with self._lock:
            stale = [cid for cid, r in self._records.items() if r.updated_at < cutoff]
            for cid in stale:
                del self._records[cid]
        if stale:
            logger.info(f"Dropped {len(stale)} stale status record(s)")
        return len(stale)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register ``listener(contribution_id, status)``. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def on_status_changed(
        self,
        contribution_id: str,
        status: ContributionStatus,
        listeners: list[StatusListener] | None = None,
    ) -> None:
        if listeners is None:
            with self._lock:
                listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(contribution_id, status)
            except Exception:
                logger.exception(f"Status listener failed for {contribution_id}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
