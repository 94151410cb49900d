"""Enum definitions for mailbox sync."""

from enum import Enum


class MessageDirection(str, Enum):
    """Direction of a mirrored message relative to the owning mailbox."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"


class SubscriptionStatus(str, Enum):
    """Lifecycle state of a mailbox push subscription."""

    ABSENT = "absent"
    ACTIVE = "active"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"
