"""Application configuration with environment variables."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # Refresh token encryption (Fernet, supports key rotation)
    TOKEN_ENCRYPTION_KEY: str = ""
    TOKEN_ENCRYPTION_KEY_PREVIOUS: str = ""  # Set during rotation, clear after

    # Microsoft identity platform / Graph
    GRAPH_CLIENT_ID: str = ""
    GRAPH_CLIENT_SECRET: str = ""
    GRAPH_TENANT_ID: str = "common"
    GRAPH_AUTHORITY_HOST: str = "https://login.microsoftonline.com"
    GRAPH_API_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_SCOPES: str = "offline_access,Mail.Read,User.Read"
    GRAPH_HTTP_TIMEOUT_SECONDS: float = 30.0
    GRAPH_MAX_ATTEMPTS: int = 3
    GRAPH_RETRY_BASE_DELAY_SECONDS: float = 0.5

    # Delta listing
    GRAPH_DELTA_PAGE_SIZE: int = 50
    GRAPH_SNAPSHOT_SIZE: int = 50
    # on_empty: snapshot whenever delta yields nothing
    # initial_only: snapshot only when there was no stored cursor
    # disabled: never snapshot
    SNAPSHOT_FALLBACK_MODE: Literal["on_empty", "initial_only", "disabled"] = "on_empty"

    # Body hydration
    HYDRATION_BATCH_SIZE: int = 5
    HYDRATION_BATCH_DELAY_MS: int = 100
    HYDRATION_CONCURRENCY: int = 5

    # Push subscriptions / webhook intake
    GRAPH_WEBHOOK_NOTIFICATION_URL: str = ""
    GRAPH_WEBHOOK_CLIENT_STATE_SECRET: str = ""
    GRAPH_WEBHOOK_DEBOUNCE_MS: int = 1500
    SUBSCRIPTION_LIFETIME_MINUTES: int = 4230  # Graph allows up to 10080 for messages
    SUBSCRIPTION_RENEW_BEFORE_HOURS: int = 24

    # Sync orchestration
    SYNC_TIMEOUT_SECONDS: float = 120.0
    ENABLE_MAILBOX_SCHEDULER: bool = True
    MAILBOX_SYNC_INTERVAL_MINUTES: int = 10

    # Lead notifications and sender filtering (comma-separated)
    LEAD_NOTIFICATION_RECIPIENTS: str = ""
    BLOCKED_SENDER_ADDRESSES: str = ""
    BLOCKED_SENDER_DOMAINS: str = ""

    # Internal scheduled endpoints
    INTERNAL_SECRET: str = ""

    @staticmethod
    def _split_lower(value: str) -> list[str]:
        return [item.strip().lower() for item in value.split(",") if item.strip()]

    @property
    def graph_scopes_list(self) -> list[str]:
        """Parse GRAPH_SCOPES into list (Graph expects them space-separated on the wire)."""
        return [scope.strip() for scope in self.GRAPH_SCOPES.split(",") if scope.strip()]

    @property
    def lead_notification_recipients_list(self) -> list[str]:
        return self._split_lower(self.LEAD_NOTIFICATION_RECIPIENTS)

    @property
    def blocked_sender_addresses_list(self) -> list[str]:
        return self._split_lower(self.BLOCKED_SENDER_ADDRESSES)

    @property
    def blocked_sender_domains_list(self) -> list[str]:
        return [domain.lstrip("@") for domain in self._split_lower(self.BLOCKED_SENDER_DOMAINS)]


settings = Settings()
