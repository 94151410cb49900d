"""Idempotent persistence of listed messages keyed on the provider id."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailsync.core.config import settings
from mailsync.core.errors import PersistenceFailure
from mailsync.core.structured_logging import build_log_context
from mailsync.db.enums import MessageDirection
from mailsync.db.models import MailboxMessage
from mailsync.services.body_hydration import BodyHydrator
from mailsync.services.collaborators import EntityResolver, Notifier

logger = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"
_PREVIEW_NOTIFY_CHARS = 120
_UPSERT_CHUNK_SIZE = 500

# Listing fields refreshed on re-delivery; hydration fields are never touched.
_UPSERT_UPDATE_FIELDS = (
    "direction",
    "sender_address",
    "sender_name",
    "recipient_addresses",
    "subject",
    "body_preview",
    "sent_at",
    "conversation_id",
    "internet_message_id",
    "has_attachments",
    "is_read",
    "updated_at",
)


@dataclass(frozen=True)
class PersistResult:
    processed_count: int
    inserted_count: int
    skipped_count: int = 0


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def normalize_address(address: str | None) -> str:
    return (address or "").strip().lower()


def _parse_graph_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _email_address(entry: dict[str, Any] | None) -> tuple[str, str | None]:
    address = (entry or {}).get("emailAddress") or {}
    return normalize_address(address.get("address")), address.get("name")


def map_message(
    raw: dict[str, Any], *, user_id: uuid.UUID, mailbox_address: str, now: datetime
) -> dict[str, Any]:
    """Map a Graph message resource to a mailbox_messages row."""
    sender_address, sender_name = _email_address(raw.get("from"))
    recipients: list[str] = []
    for key in ("toRecipients", "ccRecipients"):
        for entry in raw.get(key) or []:
            address, _ = _email_address(entry)
            if address and address not in recipients:
                recipients.append(address)

    direction = (
        MessageDirection.OUTGOING
        if sender_address and sender_address == normalize_address(mailbox_address)
        else MessageDirection.INCOMING
    )
    sent_at = (
        _parse_graph_datetime(raw.get("sentDateTime"))
        or _parse_graph_datetime(raw.get("receivedDateTime"))
        or now
    )
    return {
        "id": uuid.uuid4(),
        "message_id": raw["id"],
        "user_id": user_id,
        "direction": direction,
        "sender_address": sender_address or None,
        "sender_name": sender_name,
        "recipient_addresses": recipients,
        "subject": raw.get("subject") or NO_SUBJECT,
        "body_preview": raw.get("bodyPreview") or "",
        "body_full": None,
        "body_hydrated": False,
        "sent_at": sent_at,
        "linked_entity_id": None,
        "conversation_id": raw.get("conversationId"),
        "internet_message_id": raw.get("internetMessageId"),
        "has_attachments": bool(raw.get("hasAttachments")),
        "is_read": bool(raw.get("isRead")),
        "created_at": now,
        "updated_at": now,
    }


def _is_blocked_sender(address: str | None) -> bool:
    if not address:
        return False
    if address in settings.blocked_sender_addresses_list:
        return True
    domain = address.rpartition("@")[2]
    return bool(domain) and domain in settings.blocked_sender_domains_list


def _is_lead_worthy(row: dict[str, Any]) -> bool:
    recipients = settings.lead_notification_recipients_list
    if not recipients:
        return False
    if row["direction"] != MessageDirection.INCOMING or row["linked_entity_id"]:
        return False
    return any(address in recipients for address in row["recipient_addresses"])


def _upsert_statement(db: Session, rows: list[dict[str, Any]]):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(MailboxMessage).values(rows)
    elif dialect == "sqlite":
        stmt = sqlite.insert(MailboxMessage).values(rows)
    else:
        raise PersistenceFailure(f"Upsert not supported on dialect {dialect}")

    set_ = {name: getattr(stmt.excluded, name) for name in _UPSERT_UPDATE_FIELDS}
    set_["linked_entity_id"] = func.coalesce(
        stmt.excluded.linked_entity_id, MailboxMessage.__table__.c.linked_entity_id
    )
    return stmt.on_conflict_do_update(index_elements=["message_id"], set_=set_)


class MessagePersistence:
    """persist(user, mailbox, raw messages) with notify and hydrate side effects."""

    def __init__(
        self,
        *,
        entity_resolver: EntityResolver,
        notifier: Notifier,
        hydrator: BodyHydrator | None = None,
    ) -> None:
        self._entity_resolver = entity_resolver
        self._notifier = notifier
        self._hydrator = hydrator

    async def persist(
        self,
        db: Session,
        user_id: uuid.UUID,
        mailbox_address: str,
        raw_messages: list[dict[str, Any]],
        *,
        access_token: str | None = None,
    ) -> PersistResult:
        now = datetime.now(timezone.utc)
        rows_by_id: dict[str, dict[str, Any]] = {}
        skipped = 0
        for raw in raw_messages:
            if not raw.get("id"):
                skipped += 1
                continue
            row = map_message(raw, user_id=user_id, mailbox_address=mailbox_address, now=now)
            if _is_blocked_sender(row["sender_address"]):
                skipped += 1
                continue
            # Overlapping pages can repeat an id; the last sighting wins.
            rows_by_id[row["message_id"]] = row

        rows = list(rows_by_id.values())
        if not rows:
            return PersistResult(processed_count=len(raw_messages), inserted_count=0, skipped_count=skipped)

        await self._associate_entities(rows, user_id)

        message_ids = list(rows_by_id)
        existing: set[str] = set()
        unhydrated: list[str] = []
        try:
            for chunk in _chunks(message_ids, _UPSERT_CHUNK_SIZE):
                existing.update(
                    db.scalars(
                        select(MailboxMessage.message_id).where(MailboxMessage.message_id.in_(chunk))
                    ).all()
                )
            for chunk in _chunks(rows, _UPSERT_CHUNK_SIZE):
                db.execute(_upsert_statement(db, chunk))
            db.commit()
            for chunk in _chunks(message_ids, _UPSERT_CHUNK_SIZE):
                unhydrated.extend(
                    db.scalars(
                        select(MailboxMessage.message_id).where(
                            MailboxMessage.message_id.in_(chunk),
                            MailboxMessage.body_hydrated.is_(False),
                        )
                    ).all()
                )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Message upsert failed: %s",
                exc.__class__.__name__,
                extra=build_log_context(user_id=str(user_id), stage="persist"),
            )
            raise PersistenceFailure(f"Bulk upsert of {len(rows)} messages failed") from exc

        new_rows = [row for row in rows if row["message_id"] not in existing]
        await self._notify_new_leads(user_id, new_rows)

        if self._hydrator is not None and access_token and unhydrated:
            self._hydrator.schedule(user_id, mailbox_address, access_token, unhydrated)

        logger.info(
            "Persisted %s messages for user %s (%s new, %s skipped)",
            len(rows),
            user_id,
            len(new_rows),
            skipped,
        )
        return PersistResult(
            processed_count=len(raw_messages),
            inserted_count=len(new_rows),
            skipped_count=skipped,
        )

    async def _associate_entities(self, rows: list[dict[str, Any]], user_id: uuid.UUID) -> None:
        addresses: set[str] = set()
        for row in rows:
            if row["direction"] == MessageDirection.INCOMING:
                if row["sender_address"]:
                    addresses.add(row["sender_address"])
            else:
                addresses.update(row["recipient_addresses"])
        if not addresses:
            return

        try:
            matches = await self._entity_resolver.resolve(sorted(addresses))
        except Exception as exc:
            logger.warning(
                "Entity association failed, storing messages unlinked: %s",
                exc,
                extra=build_log_context(user_id=str(user_id), stage="persist"),
            )
            return

        for row in rows:
            if row["direction"] == MessageDirection.INCOMING:
                row["linked_entity_id"] = matches.get(row["sender_address"] or "")
            else:
                row["linked_entity_id"] = next(
                    (matches[a] for a in row["recipient_addresses"] if a in matches), None
                )

    async def _notify_new_leads(self, user_id: uuid.UUID, new_rows: list[dict[str, Any]]) -> None:
        for row in new_rows:
            if not _is_lead_worthy(row):
                continue
            sender = row["sender_name"] or row["sender_address"] or "Unknown sender"
            preview = (row["body_preview"] or row["subject"])[:_PREVIEW_NOTIFY_CHARS]
            payload = {
                "type": "notification",
                "title": "New Email Lead",
                "body": f"{sender}: {preview}",
                "url": "/email-leads",
                "tag": f"email-lead-{row['message_id']}",
                "id": row["message_id"],
            }
            try:
                await self._notifier.notify(str(user_id), payload)
            except Exception as exc:
                logger.warning("Lead notification failed for user %s: %s", user_id, exc)
