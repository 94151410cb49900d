"""
Internal endpoints for scheduled/cron operations and mailbox administration.

Protected by X-Internal-Secret header.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException

from mailsync.core.config import settings
from mailsync.core.deps import get_sync_service
from mailsync.core.errors import (
    CredentialNotFound,
    ExpiredCredential,
    MailboxSyncError,
    MessageNotFound,
    UnresolvableUser,
)
from mailsync.schemas.mailbox import (
    BatchSyncResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    MessageBodyResponse,
    SubscriptionRefreshResponse,
    SubscriptionReportResponse,
    SyncOutcomeResponse,
)
from mailsync.services.mailbox_sync_service import MailboxSyncService

router = APIRouter(prefix="/internal", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


def _raise_for_sync_error(exc: MailboxSyncError) -> None:
    if isinstance(exc, ExpiredCredential):
        raise HTTPException(
            status_code=401,
            detail="Mailbox authorization expired. Please reconnect the mailbox.",
        )
    if isinstance(exc, (UnresolvableUser, CredentialNotFound, MessageNotFound)):
        raise HTTPException(status_code=404, detail=str(exc))
    raise HTTPException(status_code=502, detail=f"Mailbox sync failed at {exc.stage}: {exc}")


@router.post(
    "/scheduled/mailbox-sync",
    response_model=BatchSyncResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def run_mailbox_batch_sync(service: MailboxSyncService = Depends(get_sync_service)):
    """Sync every connected mailbox; returns success/failure counts."""
    summary = await service.sync_all_mailboxes(trigger="cron")
    return BatchSyncResponse(**asdict(summary))


@router.post(
    "/scheduled/mailbox-subscriptions",
    response_model=SubscriptionRefreshResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def refresh_mailbox_subscriptions(service: MailboxSyncService = Depends(get_sync_service)):
    """Renew push subscriptions that are missing, near expiry or expired."""
    summary = await service.refresh_all_subscriptions()
    return SubscriptionRefreshResponse(**asdict(summary))


@router.get(
    "/mailbox-subscriptions",
    response_model=SubscriptionReportResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def get_mailbox_subscriptions(service: MailboxSyncService = Depends(get_sync_service)):
    """Subscription status across every connected mailbox."""
    return SubscriptionReportResponse(**asdict(service.get_subscriptions_report()))


@router.post(
    "/mailboxes/{user_ref}/sync",
    response_model=SyncOutcomeResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def sync_mailbox(
    user_ref: str,
    reset: bool = False,
    service: MailboxSyncService = Depends(get_sync_service),
):
    """Sync one mailbox now. reset=true ignores the stored delta cursor."""
    try:
        outcome = await service.sync_user_with_timeout(user_ref, reset=reset, trigger="api")
    except MailboxSyncError as exc:
        _raise_for_sync_error(exc)
    return SyncOutcomeResponse(**asdict(outcome))


@router.get(
    "/mailboxes/{user_ref}/status",
    response_model=ConnectionStatusResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def get_mailbox_status(user_ref: str, service: MailboxSyncService = Depends(get_sync_service)):
    try:
        status = service.get_connection_status(user_ref)
    except MailboxSyncError as exc:
        _raise_for_sync_error(exc)
    return ConnectionStatusResponse(**asdict(status))


@router.delete(
    "/mailboxes/{user_ref}",
    response_model=DisconnectResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def disconnect_mailbox(user_ref: str, service: MailboxSyncService = Depends(get_sync_service)):
    try:
        removed = await service.disconnect(user_ref)
    except MailboxSyncError as exc:
        _raise_for_sync_error(exc)
    return DisconnectResponse(user_id=user_ref, disconnected=removed)


@router.get(
    "/mailboxes/{user_ref}/messages/{message_id}/body",
    response_model=MessageBodyResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def get_message_body(
    user_ref: str,
    message_id: str,
    service: MailboxSyncService = Depends(get_sync_service),
):
    """Return a message body, fetching it from Graph if it has not been hydrated yet."""
    try:
        body = await service.get_message_body(user_ref, message_id)
    except MailboxSyncError as exc:
        _raise_for_sync_error(exc)
    return MessageBodyResponse(**asdict(body))
