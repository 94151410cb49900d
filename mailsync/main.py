"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text

from mailsync.core.config import settings
from mailsync.db.session import SessionLocal, engine
from mailsync.routers import internal, webhooks
from mailsync.services.mailbox_sync_service import build_mailbox_sync_service
from mailsync.services.notification_queue import NotificationCoalescingQueue
from mailsync.services.mailbox_scheduler import MailboxSyncScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = build_mailbox_sync_service(SessionLocal)
    queue = NotificationCoalescingQueue(service.sync_from_notifications)
    scheduler = MailboxSyncScheduler(service)
    app.state.sync_service = service
    app.state.sync_queue = queue

    scheduler_task = None
    if settings.ENABLE_MAILBOX_SCHEDULER:
        scheduler_task = asyncio.create_task(scheduler.run_forever(), name="mailbox-sync-scheduler")

    try:
        yield
    finally:
        if scheduler_task is not None:
            scheduler_task.cancel()
            await asyncio.gather(scheduler_task, return_exceptions=True)
        await queue.close()
        await service.close()


app = FastAPI(
    title="Mailbox Sync API",
    description="Mirrors connected Outlook mailboxes into the CRM",
    version=settings.VERSION,
    lifespan=lifespan,
)

# Webhooks (Graph change notifications)
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Internal endpoints (scheduled/cron jobs - protected by INTERNAL_SECRET)
app.include_router(internal.router)


@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
