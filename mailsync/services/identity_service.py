"""Shared resolution of external user references to internal user ids.

Callers hold whatever identity they were handed (the internal UUID, or the
external auth provider id). Both the credential store and the sync state
store go through one resolver so they share a single resolution policy.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailsync.core.errors import UnresolvableUser
from mailsync.db.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolved:
    user_id: uuid.UUID


@dataclass(frozen=True)
class NotFound:
    user_ref: str


@dataclass(frozen=True)
class AmbiguousOrError:
    user_ref: str
    reason: str


IdentityResolution = Resolved | NotFound | AmbiguousOrError


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class IdentityResolver:
    """Resolve a user reference by primary key or auth provider id."""

    def resolve(self, db: Session, user_ref: str | uuid.UUID) -> IdentityResolution:
        ref = str(user_ref).strip() if user_ref is not None else ""
        if not ref:
            return NotFound(user_ref="")

        conditions = [User.auth_id == ref]
        parsed = _parse_uuid(ref)
        if parsed is not None:
            conditions.append(User.id == parsed)

        try:
            user_ids = set(db.scalars(select(User.id).where(or_(*conditions))).all())
        except SQLAlchemyError as exc:
            logger.warning("Identity lookup failed for %s: %s", ref, exc)
            return AmbiguousOrError(user_ref=ref, reason=f"lookup failed: {exc}"[:500])

        if not user_ids:
            return NotFound(user_ref=ref)
        if len(user_ids) > 1:
            return AmbiguousOrError(user_ref=ref, reason="reference matches multiple users")
        return Resolved(user_id=user_ids.pop())

    def resolve_or_raise(self, db: Session, user_ref: str | uuid.UUID) -> uuid.UUID:
        result = self.resolve(db, user_ref)
        if isinstance(result, Resolved):
            return result.user_id
        if isinstance(result, NotFound):
            raise UnresolvableUser(f"No user found for reference {result.user_ref!r}")
        raise UnresolvableUser(f"Could not resolve user {result.user_ref!r}: {result.reason}")
