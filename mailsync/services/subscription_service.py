"""Graph push-subscription lifecycle for mailbox change notifications."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from mailsync.core.config import settings
from mailsync.core.errors import SubscriptionError
from mailsync.core.structured_logging import build_log_context
from mailsync.db.enums import SubscriptionStatus
from mailsync.services.graph_client import GraphApiError, GraphClient, quote_segment
from mailsync.services.sync_state_store import SyncState, SyncStateStore

logger = logging.getLogger(__name__)

CHANGE_TYPES = "created"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# clientState encoding
# =============================================================================


def _client_state_signature(user_id: str) -> str:
    secret = settings.GRAPH_WEBHOOK_CLIENT_STATE_SECRET.encode()
    digest = hmac.new(secret, user_id.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest[:18]).decode().rstrip("=")


def encode_client_state(user_id: uuid.UUID | str) -> str:
    """Opaque clientState carried by every notification for this subscription."""
    user_key = str(user_id)
    if not settings.GRAPH_WEBHOOK_CLIENT_STATE_SECRET:
        return user_key
    return f"{user_key}.{_client_state_signature(user_key)}"


def decode_client_state(client_state: str | None) -> str | None:
    """Return the user id a clientState was issued for, or None if it does not verify."""
    if not client_state:
        return None
    if not settings.GRAPH_WEBHOOK_CLIENT_STATE_SECRET:
        return client_state
    user_key, _, signature = client_state.rpartition(".")
    if not user_key or not signature:
        return None
    if not hmac.compare_digest(signature, _client_state_signature(user_key)):
        return None
    return user_key


# =============================================================================
# State machine
# =============================================================================


def subscription_status(
    state: SyncState | None,
    *,
    now: datetime | None = None,
    renew_before: timedelta | None = None,
) -> SubscriptionStatus:
    if state is None or not state.subscription_id:
        return SubscriptionStatus.ABSENT
    if state.subscription_expiry is None:
        return SubscriptionStatus.EXPIRED
    current = now or _now_utc()
    threshold = renew_before or timedelta(hours=settings.SUBSCRIPTION_RENEW_BEFORE_HOURS)
    expiry = _as_utc(state.subscription_expiry)
    if expiry <= current:
        return SubscriptionStatus.EXPIRED
    if expiry - current < threshold:
        return SubscriptionStatus.NEAR_EXPIRY
    return SubscriptionStatus.ACTIVE


class SubscriptionManager:
    """ensure_subscription keeps one live Graph subscription per user."""

    def __init__(
        self,
        graph: GraphClient,
        state_store: SyncStateStore,
        *,
        notification_url: str | None = None,
        lifetime: timedelta | None = None,
        renew_before: timedelta | None = None,
    ) -> None:
        self._graph = graph
        self._state_store = state_store
        self._notification_url = (
            notification_url
            if notification_url is not None
            else settings.GRAPH_WEBHOOK_NOTIFICATION_URL
        )
        self._lifetime = lifetime or timedelta(minutes=settings.SUBSCRIPTION_LIFETIME_MINUTES)
        self._renew_before = renew_before or timedelta(hours=settings.SUBSCRIPTION_RENEW_BEFORE_HOURS)

    def status(self, state: SyncState | None, *, now: datetime | None = None) -> SubscriptionStatus:
        return subscription_status(state, now=now, renew_before=self._renew_before)

    async def ensure_subscription(
        self,
        db: Session,
        user_id: uuid.UUID,
        access_token: str,
        mailbox_address: str,
        current_state: SyncState | None,
    ) -> SyncState | None:
        """Create or renew the subscription when absent, near expiry or expired."""
        status = self.status(current_state)
        if status == SubscriptionStatus.ACTIVE:
            return current_state

        if not self._notification_url:
            logger.warning(
                "GRAPH_WEBHOOK_NOTIFICATION_URL not configured; skipping subscription for user %s",
                user_id,
            )
            return current_state

        context = build_log_context(user_id=str(user_id), mailbox=mailbox_address, stage="subscription")
        async with self._graph.open() as client:
            if current_state is not None and current_state.subscription_id:
                try:
                    await self._graph.delete(
                        client,
                        self._graph.url(f"subscriptions/{quote_segment(current_state.subscription_id)}"),
                        access_token,
                    )
                except GraphApiError as exc:
                    # An orphaned subscription lapses on its own.
                    logger.warning("Failed to delete old subscription: %s", exc, extra=context)

            expiration = _now_utc() + self._lifetime
            body = {
                "changeType": CHANGE_TYPES,
                "notificationUrl": self._notification_url,
                "resource": f"users/{mailbox_address}/mailFolders('Inbox')/messages",
                "expirationDateTime": expiration.isoformat().replace("+00:00", "Z"),
                "clientState": encode_client_state(user_id),
            }
            try:
                created = await self._graph.post_json(
                    client, self._graph.url("subscriptions"), access_token, body
                )
            except GraphApiError as exc:
                self._state_store.upsert(
                    db,
                    user_id,
                    subscription_id=None,
                    subscription_expiry=None,
                    subscription_last_error=str(exc)[:500],
                )
                raise SubscriptionError(f"Subscription create failed: {exc}") from exc

        subscription_id = created.get("id")
        if not subscription_id:
            raise SubscriptionError("Subscription create returned no id")
        expiry = _parse_expiry(created.get("expirationDateTime")) or expiration

        new_state = self._state_store.upsert(
            db,
            user_id,
            subscription_id=subscription_id,
            subscription_expiry=expiry,
            subscription_last_renewed_at=_now_utc(),
            subscription_last_error=None,
        )
        logger.info(
            "Subscription %s for user %s (was %s), expires %s",
            "created" if status == SubscriptionStatus.ABSENT else "renewed",
            user_id,
            status.value,
            expiry.isoformat(),
            extra=context,
        )
        return new_state

    async def delete_subscription(self, subscription_id: str, access_token: str) -> bool:
        async with self._graph.open() as client:
            try:
                await self._graph.delete(
                    client, self._graph.url(f"subscriptions/{quote_segment(subscription_id)}"), access_token
                )
            except GraphApiError as exc:
                logger.warning("Failed to delete subscription %s: %s", subscription_id, exc)
                return False
        return True


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None
