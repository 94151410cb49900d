"""Periodic batch sync of every connected mailbox."""

from __future__ import annotations

import asyncio
import logging

from mailsync.core.config import settings
from mailsync.core.structured_logging import build_log_context
from mailsync.services.mailbox_sync_service import BatchSyncSummary, MailboxSyncService

logger = logging.getLogger(__name__)


class MailboxSyncScheduler:
    """Runs sync_all_mailboxes every interval, never two cycles at once."""

    def __init__(self, service: MailboxSyncService, *, interval_seconds: float | None = None) -> None:
        self._service = service
        self._interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.MAILBOX_SYNC_INTERVAL_MINUTES * 60
        )
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_cycle(self) -> BatchSyncSummary | None:
        """Run one batch sync; returns None if the previous cycle is still running."""
        if self._running:
            logger.info("Previous mailbox sync cycle still running, skipping")
            return None
        self._running = True
        try:
            return await self._service.sync_all_mailboxes(trigger="scheduled")
        except Exception:
            logger.exception(
                "Scheduled mailbox sync cycle failed",
                extra=build_log_context(trigger="scheduled", stage="batch"),
            )
            return None
        finally:
            self._running = False

    async def run_forever(self) -> None:
        logger.info(
            "Mailbox sync scheduler started (every %s minutes)",
            round(self._interval_seconds / 60, 2),
        )
        while True:
            await self.run_cycle()
            await asyncio.sleep(self._interval_seconds)
