"""Per-user sync cursor and subscription watermark storage."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from mailsync.db.models import MailboxSyncState
from mailsync.services.identity_service import IdentityResolver

_PATCHABLE_FIELDS = frozenset(
    {
        "mailbox_address",
        "delta_cursor",
        "subscription_id",
        "subscription_expiry",
        "subscription_last_renewed_at",
        "subscription_last_error",
        "last_synced_at",
    }
)


@dataclass(frozen=True)
class SyncState:
    user_id: uuid.UUID
    mailbox_address: str | None
    delta_cursor: str | None
    subscription_id: str | None
    subscription_expiry: datetime | None
    subscription_last_renewed_at: datetime | None
    subscription_last_error: str | None
    last_synced_at: datetime | None
    updated_at: datetime | None


def _to_state(row: MailboxSyncState) -> SyncState:
    return SyncState(
        user_id=row.user_id,
        mailbox_address=row.mailbox_address,
        delta_cursor=row.delta_cursor,
        subscription_id=row.subscription_id,
        subscription_expiry=row.subscription_expiry,
        subscription_last_renewed_at=row.subscription_last_renewed_at,
        subscription_last_error=row.subscription_last_error,
        last_synced_at=row.last_synced_at,
        updated_at=row.updated_at,
    )


class SyncStateStore:
    """get/upsert of the sync state row per user."""

    def __init__(self, resolver: IdentityResolver) -> None:
        self._resolver = resolver

    def get(self, db: Session, user_ref: str | uuid.UUID) -> SyncState | None:
        """Return the state, or None if the user has never synced."""
        user_id = self._resolver.resolve_or_raise(db, user_ref)
        row = db.get(MailboxSyncState, user_id)
        if row is None:
            return None
        return _to_state(row)

    def upsert(self, db: Session, user_ref: str | uuid.UUID, **patch) -> SyncState:
        """Merge the given fields into the user's state, stamping updated_at."""
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync state fields: {sorted(unknown)}")

        user_id = self._resolver.resolve_or_raise(db, user_ref)
        row = db.get(MailboxSyncState, user_id)
        if row is None:
            row = MailboxSyncState(user_id=user_id)
            db.add(row)
        for field, value in patch.items():
            setattr(row, field, value)
        row.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(row)
        return _to_state(row)

    def clear(self, db: Session, user_ref: str | uuid.UUID) -> SyncState:
        """Forget cursor and subscription after a disconnect."""
        return self.upsert(
            db,
            user_ref,
            delta_cursor=None,
            subscription_id=None,
            subscription_expiry=None,
            subscription_last_error=None,
        )
