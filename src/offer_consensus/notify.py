"""
Webhook delivery of contribution status changes.

WebhookNotifier is a StatusStore listener: each change is POSTed as
``{"id": ..., "status": ...}`` from a background task. Delivery failures
are logged and dropped; they never reach the submitter.
"""

import asyncio
import logging

import httpx

from .models import ContributionStatus

logger = logging.getLogger(__name__)


class WebhookNotifier:
    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self._pending: set[asyncio.Task] = set()

    async def send(self, contribution_id: str, status: ContributionStatus | str) -> bool:
        """POST one status change. Returns True on a 2xx response."""
        payload = {"id": contribution_id, "status": ContributionStatus(status).value}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                return True
            except httpx.HTTPStatusError as e:
                logger.warning(
                    f"Webhook rejected status of {contribution_id}: HTTP {e.response.status_code}"
                )
            except httpx.RequestError as e:
                logger.warning(f"Webhook delivery failed for {contribution_id}: {e}")
        return False

    def __call__(self, contribution_id: str, status: ContributionStatus) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; webhook for {contribution_id} skipped")
            return
        task = loop.create_task(self.send(contribution_id, status))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every in-flight delivery."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
