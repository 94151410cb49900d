"""FastAPI dependencies for database access and the sync pipeline."""

from typing import Generator

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from mailsync.db.session import SessionLocal
from mailsync.services.mailbox_sync_service import MailboxSyncService
from mailsync.services.notification_queue import NotificationCoalescingQueue


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_sync_service(request: Request) -> MailboxSyncService:
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Mailbox sync not initialized")
    return service


def get_sync_queue(request: Request) -> NotificationCoalescingQueue:
    queue = getattr(request.app.state, "sync_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Mailbox sync queue not initialized")
    return queue
