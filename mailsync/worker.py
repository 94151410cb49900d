"""
Mailbox sync worker.

Runs the periodic batch sync outside the API process:

    python -m mailsync.worker
"""

import asyncio
import logging

from mailsync.core.config import settings
from mailsync.core.structured_logging import build_log_context
from mailsync.db.session import SessionLocal
from mailsync.services.mailbox_scheduler import MailboxSyncScheduler
from mailsync.services.mailbox_sync_service import build_mailbox_sync_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def worker_loop() -> None:
    """Run scheduled sync cycles until cancelled."""
    service = build_mailbox_sync_service(SessionLocal)
    scheduler = MailboxSyncScheduler(service)
    try:
        await scheduler.run_forever()
    finally:
        await service.close()


def main() -> None:
    """Entry point for the worker."""
    if not settings.ENABLE_MAILBOX_SCHEDULER:
        logger.info("Mailbox scheduler disabled (ENABLE_MAILBOX_SCHEDULER=false)")
        return
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(stage="worker", trigger="scheduled"),
        )
        raise


if __name__ == "__main__":
    main()
