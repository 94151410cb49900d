"""Encrypted-at-rest storage of per-user mailbox credentials."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from mailsync.core.encryption import decrypt_token, encrypt_token
from mailsync.core.errors import CorruptCredential
from mailsync.db.models import MailboxCredential
from mailsync.services.identity_service import IdentityResolver
from mailsync.services.token_exchange import AccountHint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredCredential:
    """Decrypted credential as handed to the sync pipeline."""

    user_id: uuid.UUID | None
    mailbox_address: str
    refresh_token: str
    provider_account_id: str | None = None
    tenant_id: str | None = None
    account_environment: str | None = None
    last_known_expiry: datetime | None = None

    @property
    def account_hint(self) -> AccountHint:
        return AccountHint(
            mailbox_address=self.mailbox_address,
            provider_account_id=self.provider_account_id,
            tenant_id=self.tenant_id,
            account_environment=self.account_environment,
        )

    def with_refresh_token(self, refresh_token: str, expires_on: datetime | None) -> "StoredCredential":
        return replace(self, refresh_token=refresh_token, last_known_expiry=expires_on)

    def __repr__(self) -> str:
        return (
            f"StoredCredential(user_id={self.user_id!s}, "
            f"mailbox_address={self.mailbox_address!r}, refresh_token=<redacted>)"
        )


class CredentialStore:
    """put/get/remove of the single credential row per user."""

    def __init__(self, resolver: IdentityResolver) -> None:
        self._resolver = resolver

    def put(self, db: Session, user_ref: str | uuid.UUID, credential: StoredCredential) -> uuid.UUID:
        """Replace any existing credential for the user."""
        user_id = self._resolver.resolve_or_raise(db, user_ref)
        now = datetime.now(timezone.utc)
        encrypted = encrypt_token(credential.refresh_token)

        row = db.scalar(select(MailboxCredential).where(MailboxCredential.user_id == user_id))
        if row is None:
            row = MailboxCredential(user_id=user_id, created_at=now)
            db.add(row)

        row.mailbox_address = credential.mailbox_address
        row.provider_account_id = credential.provider_account_id
        row.tenant_id = credential.tenant_id
        row.account_environment = credential.account_environment
        row.refresh_token_encrypted = encrypted
        row.last_known_expiry = credential.last_known_expiry
        row.updated_at = now
        db.commit()
        return user_id

    def get(self, db: Session, user_ref: str | uuid.UUID) -> StoredCredential | None:
        """Return the decrypted credential, or None when the user has none stored."""
        user_id = self._resolver.resolve_or_raise(db, user_ref)
        row = db.scalar(select(MailboxCredential).where(MailboxCredential.user_id == user_id))
        if row is None:
            return None
        return self._to_credential(row)

    def remove(self, db: Session, user_ref: str | uuid.UUID) -> bool:
        user_id = self._resolver.resolve_or_raise(db, user_ref)
        result = db.execute(delete(MailboxCredential).where(MailboxCredential.user_id == user_id))
        db.commit()
        return bool(result.rowcount)

    def list_user_ids(self, db: Session) -> list[uuid.UUID]:
        """All users with a stored credential, oldest connection first."""
        return list(
            db.scalars(
                select(MailboxCredential.user_id).order_by(MailboxCredential.created_at)
            ).all()
        )

    @staticmethod
    def _to_credential(row: MailboxCredential) -> StoredCredential:
        try:
            refresh_token = decrypt_token(row.refresh_token_encrypted)
        except ValueError as exc:
            logger.error("Stored credential for user %s could not be decrypted", row.user_id)
            raise CorruptCredential(f"Credential for user {row.user_id} is unreadable") from exc
        if not refresh_token:
            raise CorruptCredential(f"Credential for user {row.user_id} is empty")
        return StoredCredential(
            user_id=row.user_id,
            mailbox_address=row.mailbox_address,
            refresh_token=refresh_token,
            provider_account_id=row.provider_account_id,
            tenant_id=row.tenant_id,
            account_environment=row.account_environment,
            last_known_expiry=row.last_known_expiry,
        )
