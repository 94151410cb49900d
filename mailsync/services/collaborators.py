"""Interfaces for collaborators owned by the wider CRM."""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class EntityResolver(Protocol):
    """Maps email addresses to known CRM entity ids."""

    async def resolve(self, addresses: list[str]) -> dict[str, str]:
        """Return {normalized_address: entity_id} for the addresses it knows."""
        ...


class Notifier(Protocol):
    """Push-notification delivery (black box)."""

    async def notify(self, user_id: str, payload: dict[str, Any]) -> None:
        ...


class NullEntityResolver:
    """Resolver used when no CRM matching is wired in."""

    async def resolve(self, addresses: list[str]) -> dict[str, str]:
        return {}


class LoggingNotifier:
    """Notifier that records the notification in the log only."""

    async def notify(self, user_id: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Lead notification for user %s: %s",
            user_id,
            payload.get("tag"),
        )
