"""Response models for mailbox sync endpoints."""

from datetime import datetime

from pydantic import BaseModel


class SyncOutcomeResponse(BaseModel):
    user_id: str
    processed: int
    inserted: int
    skipped: int
    used_snapshot: bool
    cursor_advanced: bool
    subscription_status: str


class UserSyncResultResponse(BaseModel):
    user_id: str
    success: bool
    processed: int = 0
    inserted: int = 0
    stage: str | None = None
    error: str | None = None


class BatchSyncResponse(BaseModel):
    processed: int
    successful: int
    failed: int
    results: list[UserSyncResultResponse]


class SubscriptionRefreshResponse(BaseModel):
    checked: int
    renewed: int
    unchanged: int
    failed: int


class ConnectionStatusResponse(BaseModel):
    user_id: str
    connected: bool
    mailbox_address: str | None = None
    last_synced_at: datetime | None = None
    has_cursor: bool = False
    subscription_status: str
    subscription_expiry: datetime | None = None
    error: str | None = None


class DisconnectResponse(BaseModel):
    user_id: str
    disconnected: bool


class WebhookAcceptedResponse(BaseModel):
    status: str = "accepted"
    accepted: int
    rejected: int


class SubscriptionReportEntryResponse(BaseModel):
    user_id: str
    mailbox_address: str | None = None
    subscription_id: str | None = None
    subscription_expiry: datetime | None = None
    status: str


class SubscriptionReportResponse(BaseModel):
    webhook_url_configured: bool
    total_mailboxes: int
    subscriptions: list[SubscriptionReportEntryResponse]


class MessageBodyResponse(BaseModel):
    message_id: str
    body: str
    fetched: bool
