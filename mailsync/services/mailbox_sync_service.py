"""Mailbox sync orchestration.

One user's sync runs: credential read -> token exchange (persisting any
rotated refresh token) -> delta fetch -> persist -> cursor write ->
subscription renewal. The cursor is written only after fetch and persist
both completed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import anyio
import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from mailsync.core.config import settings
from mailsync.core.errors import (
    CorruptCredential,
    CredentialNotFound,
    ExpiredCredential,
    FetchFailed,
    MailboxSyncError,
    MessageNotFound,
    SyncTimeout,
)
from mailsync.core.structured_logging import build_log_context
from mailsync.db.enums import SubscriptionStatus
from mailsync.db.models import MailboxMessage
from mailsync.services.body_hydration import BodyHydrator
from mailsync.services.collaborators import (
    EntityResolver,
    LoggingNotifier,
    Notifier,
    NullEntityResolver,
)
from mailsync.services.credential_store import CredentialStore, StoredCredential
from mailsync.services.delta_fetch import DeltaFetchEngine
from mailsync.services.graph_client import GraphClient
from mailsync.services.identity_service import IdentityResolver
from mailsync.services.message_persistence import MessagePersistence
from mailsync.services.subscription_service import SubscriptionManager
from mailsync.services.sync_state_store import SyncStateStore
from mailsync.services.token_exchange import TokenExchangeClient, TokenGrant

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncOutcome:
    user_id: str
    processed: int
    inserted: int
    skipped: int
    used_snapshot: bool
    cursor_advanced: bool
    subscription_status: str


@dataclass(frozen=True)
class UserSyncResult:
    user_id: str
    success: bool
    processed: int = 0
    inserted: int = 0
    stage: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchSyncSummary:
    processed: int
    successful: int
    failed: int
    results: list[UserSyncResult] = field(default_factory=list)


@dataclass(frozen=True)
class SubscriptionRefreshSummary:
    checked: int
    renewed: int
    unchanged: int
    failed: int


@dataclass(frozen=True)
class ConnectionStatus:
    user_id: str
    connected: bool
    mailbox_address: str | None = None
    last_synced_at: datetime | None = None
    has_cursor: bool = False
    subscription_status: str = SubscriptionStatus.ABSENT.value
    subscription_expiry: datetime | None = None
    error: str | None = None


@dataclass(frozen=True)
class SubscriptionReportEntry:
    user_id: str
    mailbox_address: str | None
    subscription_id: str | None
    subscription_expiry: datetime | None
    status: str


@dataclass(frozen=True)
class SubscriptionReport:
    webhook_url_configured: bool
    total_mailboxes: int
    subscriptions: list[SubscriptionReportEntry] = field(default_factory=list)


@dataclass(frozen=True)
class MessageBody:
    message_id: str
    body: str
    fetched: bool


class MailboxSyncService:
    """Runs per-user and batch mailbox syncs."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        credential_store: CredentialStore,
        state_store: SyncStateStore,
        token_client: TokenExchangeClient,
        delta_engine: DeltaFetchEngine,
        persistence: MessagePersistence,
        subscriptions: SubscriptionManager,
        hydrator: BodyHydrator | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._credentials = credential_store
        self._states = state_store
        self._token_client = token_client
        self._delta_engine = delta_engine
        self._persistence = persistence
        self._subscriptions = subscriptions
        self._hydrator = hydrator
        self._timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.SYNC_TIMEOUT_SECONDS
        )

    @property
    def hydrator(self) -> BodyHydrator | None:
        return self._hydrator

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def states(self) -> SyncStateStore:
        return self._states

    # =========================================================================
    # Single user
    # =========================================================================

    async def _acquire_access_token(
        self, db: Session, user_ref: str | uuid.UUID
    ) -> tuple[StoredCredential, TokenGrant]:
        credential = self._credentials.get(db, user_ref)
        if credential is None:
            raise CredentialNotFound(f"No mailbox connected for user {user_ref}")

        grant = await self._token_client.exchange(credential.refresh_token, credential.account_hint)
        if grant.refresh_token and grant.refresh_token != credential.refresh_token:
            # Store the rotated token before anything else can fail.
            credential = credential.with_refresh_token(grant.refresh_token, grant.expires_on)
            self._credentials.put(db, credential.user_id, credential)
            logger.info("Stored rotated refresh token for user %s", credential.user_id)
        return credential, grant

    async def sync_user(
        self,
        user_ref: str | uuid.UUID,
        *,
        reset: bool = False,
        trigger: str = "manual",
    ) -> SyncOutcome:
        """Sync one mailbox. reset=True ignores the stored cursor."""
        stage = "credential"
        with self._session_factory() as db:
            try:
                credential, grant = await self._acquire_access_token(db, user_ref)
                user_id = credential.user_id
                mailbox = credential.mailbox_address

                stage = "state"
                state = self._states.get(db, user_id)
                cursor = None if reset or state is None else state.delta_cursor

                stage = "fetch"
                delta = await self._delta_engine.fetch_changes(grant.access_token, mailbox, cursor)

                stage = "persist"
                persisted = await self._persistence.persist(
                    db, user_id, mailbox, delta.messages, access_token=grant.access_token
                )

                stage = "state"
                state = self._states.upsert(
                    db,
                    user_id,
                    mailbox_address=mailbox,
                    delta_cursor=delta.next_cursor,
                    last_synced_at=_now_utc(),
                )

                stage = "subscription"
                try:
                    state = await self._subscriptions.ensure_subscription(
                        db, user_id, grant.access_token, mailbox, state
                    )
                except MailboxSyncError as exc:
                    logger.warning(
                        "Subscription renewal failed after sync: %s",
                        exc,
                        extra=build_log_context(user_id=str(user_id), stage=stage, trigger=trigger),
                    )
            except ExpiredCredential:
                logger.warning(
                    "Mailbox credential expired for user %s; re-authorization required",
                    user_ref,
                    extra=build_log_context(user_id=str(user_ref), stage=stage, trigger=trigger),
                )
                raise
            except Exception as exc:
                logger.error(
                    "Mailbox sync failed for user %s at %s: %s",
                    user_ref,
                    stage,
                    exc,
                    extra=build_log_context(user_id=str(user_ref), stage=stage, trigger=trigger),
                )
                raise

        logger.info(
            "Mailbox sync complete for user %s: %s processed, %s new%s",
            user_id,
            persisted.processed_count,
            persisted.inserted_count,
            " (snapshot)" if delta.used_snapshot else "",
            extra=build_log_context(user_id=str(user_id), mailbox=mailbox, trigger=trigger),
        )
        return SyncOutcome(
            user_id=str(user_id),
            processed=persisted.processed_count,
            inserted=persisted.inserted_count,
            skipped=persisted.skipped_count,
            used_snapshot=delta.used_snapshot,
            cursor_advanced=delta.next_cursor != cursor,
            subscription_status=self._subscriptions.status(state).value,
        )

    async def sync_user_with_timeout(
        self,
        user_ref: str | uuid.UUID,
        *,
        reset: bool = False,
        trigger: str = "manual",
    ) -> SyncOutcome:
        """sync_user bounded by SYNC_TIMEOUT_SECONDS; raises SyncTimeout."""
        try:
            with anyio.fail_after(self._timeout_seconds):
                return await self.sync_user(user_ref, reset=reset, trigger=trigger)
        except TimeoutError as exc:
            logger.error(
                "Mailbox sync for user %s timed out after %ss",
                user_ref,
                self._timeout_seconds,
                extra=build_log_context(user_id=str(user_ref), stage="timeout", trigger=trigger),
            )
            raise SyncTimeout(f"Sync for user {user_ref} exceeded {self._timeout_seconds}s") from exc

    async def sync_from_notifications(self, user_key: str, events: list[dict[str, Any]]) -> SyncOutcome:
        """Runner for the coalescing queue."""
        return await self.sync_user_with_timeout(user_key, trigger="webhook")

    # =========================================================================
    # Batch
    # =========================================================================

    def _connected_user_ids(self) -> list[uuid.UUID]:
        with self._session_factory() as db:
            return self._credentials.list_user_ids(db)

    async def sync_all_mailboxes(self, *, trigger: str = "scheduled") -> BatchSyncSummary:
        """Sync every connected mailbox in turn; one failure never stops the rest."""
        user_ids = self._connected_user_ids()
        logger.info("Syncing %s connected mailboxes (%s)", len(user_ids), trigger)

        results: list[UserSyncResult] = []
        for user_id in user_ids:
            try:
                outcome = await self.sync_user_with_timeout(user_id, trigger=trigger)
            except MailboxSyncError as exc:
                results.append(
                    UserSyncResult(
                        user_id=str(user_id), success=False, stage=exc.stage, error=str(exc)[:500]
                    )
                )
                continue
            except Exception as exc:
                logger.exception(
                    "Unexpected mailbox sync failure",
                    extra=build_log_context(user_id=str(user_id), trigger=trigger),
                )
                results.append(
                    UserSyncResult(user_id=str(user_id), success=False, error=str(exc)[:500])
                )
                continue
            results.append(
                UserSyncResult(
                    user_id=outcome.user_id,
                    success=True,
                    processed=outcome.processed,
                    inserted=outcome.inserted,
                )
            )

        successful = sum(1 for result in results if result.success)
        summary = BatchSyncSummary(
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )
        logger.info(
            "Mailbox batch sync finished: %s ok, %s failed",
            summary.successful,
            summary.failed,
        )
        return summary

    async def refresh_all_subscriptions(self) -> SubscriptionRefreshSummary:
        """Renew every subscription that is absent, near expiry or expired."""
        checked = renewed = unchanged = failed = 0
        for user_id in self._connected_user_ids():
            checked += 1
            with self._session_factory() as db:
                try:
                    state = self._states.get(db, user_id)
                    if self._subscriptions.status(state) == SubscriptionStatus.ACTIVE:
                        unchanged += 1
                        continue
                    credential, grant = await self._acquire_access_token(db, user_id)
                    await self._subscriptions.ensure_subscription(
                        db, user_id, grant.access_token, credential.mailbox_address, state
                    )
                    renewed += 1
                except MailboxSyncError as exc:
                    failed += 1
                    logger.warning(
                        "Subscription refresh failed: %s",
                        exc,
                        extra=build_log_context(user_id=str(user_id), stage=exc.stage),
                    )
                except Exception:
                    db.rollback()
                    failed += 1
                    logger.exception(
                        "Unexpected subscription refresh failure",
                        extra=build_log_context(user_id=str(user_id), stage="subscription"),
                    )
        return SubscriptionRefreshSummary(
            checked=checked, renewed=renewed, unchanged=unchanged, failed=failed
        )

    def get_subscriptions_report(self) -> SubscriptionReport:
        """Subscription state of every connected mailbox."""
        entries: list[SubscriptionReportEntry] = []
        with self._session_factory() as db:
            for user_id in self._credentials.list_user_ids(db):
                state = self._states.get(db, user_id)
                entries.append(
                    SubscriptionReportEntry(
                        user_id=str(user_id),
                        mailbox_address=state.mailbox_address if state else None,
                        subscription_id=state.subscription_id if state else None,
                        subscription_expiry=state.subscription_expiry if state else None,
                        status=self._subscriptions.status(state).value,
                    )
                )
        return SubscriptionReport(
            webhook_url_configured=bool(settings.GRAPH_WEBHOOK_NOTIFICATION_URL),
            total_mailboxes=len(entries),
            subscriptions=entries,
        )

    # =========================================================================
    # Message bodies
    # =========================================================================

    async def get_message_body(self, user_ref: str | uuid.UUID, message_id: str) -> MessageBody:
        """Return a stored body, fetching and caching it first if it is not hydrated yet."""
        with self._session_factory() as db:
            credential = self._credentials.get(db, user_ref)
            if credential is None:
                raise CredentialNotFound(f"No mailbox connected for user {user_ref}")
            row = db.scalar(
                select(MailboxMessage).where(
                    MailboxMessage.message_id == message_id,
                    MailboxMessage.user_id == credential.user_id,
                )
            )
            if row is None:
                raise MessageNotFound(f"Message {message_id[:24]} not found for user {user_ref}")
            if row.body_hydrated:
                return MessageBody(message_id=message_id, body=row.body_full or "", fetched=False)
            if self._hydrator is None:
                raise FetchFailed("Body hydration is not configured")
            credential, grant = await self._acquire_access_token(db, credential.user_id)

        body = await self._hydrator.hydrate_message(
            credential.mailbox_address, grant.access_token, message_id
        )
        logger.info(
            "Fetched body on demand for message %s",
            message_id[:24],
            extra=build_log_context(user_id=str(credential.user_id), stage="body"),
        )
        return MessageBody(message_id=message_id, body=body, fetched=True)

    # =========================================================================
    # Connection management
    # =========================================================================

    def get_connection_status(self, user_ref: str | uuid.UUID) -> ConnectionStatus:
        with self._session_factory() as db:
            state = self._states.get(db, user_ref)
            try:
                credential = self._credentials.get(db, user_ref)
                error = None
            except CorruptCredential as exc:
                credential = None
                error = str(exc)
            user_id = str(credential.user_id if credential else state.user_id if state else user_ref)
            return ConnectionStatus(
                user_id=user_id,
                connected=credential is not None,
                mailbox_address=credential.mailbox_address if credential else None,
                last_synced_at=state.last_synced_at if state else None,
                has_cursor=bool(state and state.delta_cursor),
                subscription_status=self._subscriptions.status(state).value,
                subscription_expiry=state.subscription_expiry if state else None,
                error=error,
            )

    async def disconnect(self, user_ref: str | uuid.UUID) -> bool:
        """Remove the credential and forget cursor/subscription state."""
        with self._session_factory() as db:
            state = self._states.get(db, user_ref)
            if state is not None and state.subscription_id:
                try:
                    _, grant = await self._acquire_access_token(db, user_ref)
                    await self._subscriptions.delete_subscription(state.subscription_id, grant.access_token)
                except MailboxSyncError as exc:
                    logger.warning("Could not delete subscription on disconnect: %s", exc)

            removed = self._credentials.remove(db, user_ref)
            if state is not None:
                self._states.clear(db, user_ref)
        logger.info("Mailbox disconnected for user %s (credential removed: %s)", user_ref, removed)
        return removed

    async def close(self) -> None:
        if self._hydrator is not None:
            await self._hydrator.close()


def build_mailbox_sync_service(
    session_factory: Callable[[], Session],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    entity_resolver: EntityResolver | None = None,
    notifier: Notifier | None = None,
) -> MailboxSyncService:
    """Wire the sync pipeline from settings."""
    resolver = IdentityResolver()
    state_store = SyncStateStore(resolver)
    graph = GraphClient(transport=transport)
    hydrator = BodyHydrator(graph, session_factory)
    return MailboxSyncService(
        session_factory=session_factory,
        credential_store=CredentialStore(resolver),
        state_store=state_store,
        token_client=TokenExchangeClient(transport=transport),
        delta_engine=DeltaFetchEngine(graph),
        persistence=MessagePersistence(
            entity_resolver=entity_resolver or NullEntityResolver(),
            notifier=notifier or LoggingNotifier(),
            hydrator=hydrator,
        ),
        subscriptions=SubscriptionManager(graph, state_store),
        hydrator=hydrator,
    )
