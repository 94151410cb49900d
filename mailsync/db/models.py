"""Mailbox sync ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mailsync.db.base import Base
from mailsync.db.enums import MessageDirection


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Store str-enums by value as portable VARCHAR."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


_json_type = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """CRM user that may own a connected mailbox."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    auth_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class MailboxCredential(Base):
    """Encrypted long-lived mailbox credential (one per user)."""

    __tablename__ = "mailbox_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_mailbox_credentials_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    mailbox_address: Mapped[str] = mapped_column(String(320), nullable=False)
    provider_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_environment: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    last_known_expiry: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    user: Mapped["User"] = relationship()


class MailboxSyncState(Base):
    """Per-user delta cursor and push subscription watermark."""

    __tablename__ = "mailbox_sync_states"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    mailbox_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    delta_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_expiry: Mapped[datetime | None] = mapped_column(nullable=True)
    subscription_last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    subscription_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class MailboxMessage(Base):
    """Mirrored mailbox message, unique on the provider message id."""

    __tablename__ = "mailbox_messages"
    __table_args__ = (
        UniqueConstraint("message_id", name="uq_mailbox_messages_message_id"),
        Index("idx_mailbox_messages_user_sent", "user_id", "sent_at"),
        Index("idx_mailbox_messages_linked_entity", "linked_entity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[str] = mapped_column(String(512), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[MessageDirection] = mapped_column(
        _enum_type(MessageDirection, name="message_direction"), nullable=False
    )
    sender_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    recipient_addresses: Mapped[list[str]] = mapped_column(_json_type, nullable=False, default=list)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    body_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_full: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_hydrated: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    sent_at: Mapped[datetime] = mapped_column(nullable=False)
    linked_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    internet_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_attachments: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    is_read: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
