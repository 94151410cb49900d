"""Create users, mailbox credential, sync state and message tables.

Revision ID: 20261017_1000
Revises:
Create Date: 2026-10-17 10:00:00.000000
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261017_1000"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("auth_id", sa.String(255), nullable=True, unique=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "mailbox_credentials",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("mailbox_address", sa.String(320), nullable=False),
        sa.Column("provider_account_id", sa.String(255), nullable=True),
        sa.Column("tenant_id", sa.String(255), nullable=True),
        sa.Column("account_environment", sa.String(255), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=False),
        sa.Column("last_known_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_mailbox_credentials_user"),
    )

    op.create_table(
        "mailbox_sync_states",
        sa.Column(
            "user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("mailbox_address", sa.String(320), nullable=True),
        sa.Column("delta_cursor", sa.Text(), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("subscription_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_last_renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_last_error", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "mailbox_messages",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("message_id", sa.String(512), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("direction", sa.String(32), nullable=False),
        sa.Column("sender_address", sa.String(320), nullable=True),
        sa.Column("sender_name", sa.Text(), nullable=True),
        sa.Column(
            "recipient_addresses",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body_preview", sa.Text(), nullable=True),
        sa.Column("body_full", sa.Text(), nullable=True),
        sa.Column("body_hydrated", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("linked_entity_id", sa.String(255), nullable=True),
        sa.Column("conversation_id", sa.String(512), nullable=True),
        sa.Column("internet_message_id", sa.Text(), nullable=True),
        sa.Column("has_attachments", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("message_id", name="uq_mailbox_messages_message_id"),
    )
    op.create_index("idx_mailbox_messages_user_sent", "mailbox_messages", ["user_id", "sent_at"])
    op.create_index("idx_mailbox_messages_linked_entity", "mailbox_messages", ["linked_entity_id"])


def downgrade() -> None:
    op.drop_index("idx_mailbox_messages_linked_entity", table_name="mailbox_messages")
    op.drop_index("idx_mailbox_messages_user_sent", table_name="mailbox_messages")
    op.drop_table("mailbox_messages")
    op.drop_table("mailbox_sync_states")
    op.drop_table("mailbox_credentials")
    op.drop_table("users")
