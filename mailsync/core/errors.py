"""Mailbox sync error taxonomy."""


class MailboxSyncError(Exception):
    """Base error for mailbox sync failures."""

    retryable: bool = True
    stage: str = "sync"


class UnresolvableUser(MailboxSyncError):
    """User reference could not be resolved to exactly one internal user."""

    retryable = False
    stage = "identity"


class CredentialNotFound(MailboxSyncError):
    """No mailbox credential is stored for the user."""

    retryable = False
    stage = "credential"


class CorruptCredential(MailboxSyncError):
    """Stored refresh token could not be decrypted."""

    retryable = False
    stage = "credential"


class ExpiredCredential(MailboxSyncError):
    """Refresh token was rejected as expired or revoked; re-authorization required."""

    retryable = False
    stage = "token_exchange"


class TransientExchangeFailure(MailboxSyncError):
    """Token exchange failed for a reason other than credential expiry."""

    stage = "token_exchange"


class FetchFailed(MailboxSyncError):
    """Delta or snapshot listing failed; stored cursor left untouched."""

    stage = "fetch"


class MessageNotFound(MailboxSyncError):
    """No stored message with that id belongs to the user."""

    retryable = False
    stage = "body"


class PersistenceFailure(MailboxSyncError):
    """Bulk upsert of message records failed."""

    stage = "persist"


class SubscriptionError(MailboxSyncError):
    """Push subscription create/renew failed."""

    stage = "subscription"


class SyncTimeout(MailboxSyncError):
    """Per-user sync attempt exceeded its wall-clock timeout."""

    stage = "timeout"
