"""Refresh-token exchange against the Microsoft identity platform."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from mailsync.core.config import settings
from mailsync.core.errors import ExpiredCredential, TransientExchangeFailure

logger = logging.getLogger(__name__)

# Error codes meaning the refresh token itself is dead; retrying cannot help.
_EXPIRED_ERROR_CODES = frozenset({"invalid_grant", "interaction_required"})
_EXPIRED_DESCRIPTION_MARKERS = (
    "AADSTS700082",  # refresh token expired due to inactivity
    "AADSTS70008",  # refresh token or auth code expired
    "AADSTS50173",  # grant revoked (password change)
    "refresh token has expired",
)


@dataclass(frozen=True)
class AccountHint:
    """Provider account metadata captured at authorization time."""

    mailbox_address: str
    provider_account_id: str | None = None
    tenant_id: str | None = None
    account_environment: str | None = None


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_on: datetime
    refresh_token: str | None = None

    def __repr__(self) -> str:
        return f"TokenGrant(expires_on={self.expires_on.isoformat()}, rotated={self.refresh_token is not None})"


def _is_expired_credential_error(payload: dict[str, Any]) -> bool:
    error = str(payload.get("error") or "").lower()
    description = str(payload.get("error_description") or "")
    if error in _EXPIRED_ERROR_CODES:
        return True
    return any(marker.lower() in description.lower() for marker in _EXPIRED_DESCRIPTION_MARKERS)


class TokenExchangeClient:
    """Stateless refresh_token grant client; callers persist rotated tokens."""

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        authority_host: str | None = None,
        default_tenant: str | None = None,
        scopes: list[str] | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id if client_id is not None else settings.GRAPH_CLIENT_ID
        self._client_secret = (
            client_secret if client_secret is not None else settings.GRAPH_CLIENT_SECRET
        )
        self._authority_host = (authority_host or settings.GRAPH_AUTHORITY_HOST).rstrip("/")
        self._default_tenant = default_tenant or settings.GRAPH_TENANT_ID
        self._scopes = scopes if scopes is not None else settings.graph_scopes_list
        self._timeout = timeout if timeout is not None else settings.GRAPH_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def token_url(self, hint: AccountHint) -> str:
        tenant = hint.tenant_id or self._default_tenant
        return f"{self._authority_host}/{tenant}/oauth2/v2.0/token"

    async def exchange(self, refresh_token: str, hint: AccountHint) -> TokenGrant:
        """Exchange a refresh token for an access token.

        Raises ExpiredCredential when the provider rejects the refresh token
        as expired or revoked, TransientExchangeFailure for anything else.
        """
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": " ".join(self._scopes),
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self.token_url(hint), data=data)
        except httpx.RequestError as exc:
            raise TransientExchangeFailure(f"Token endpoint unreachable: {exc.__class__.__name__}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            if isinstance(payload, dict) and _is_expired_credential_error(payload):
                logger.warning(
                    "Refresh token rejected as expired for account %s",
                    hint.provider_account_id or "unknown",
                )
                raise ExpiredCredential(
                    str(payload.get("error_description") or payload.get("error"))[:300]
                )
            error_code = payload.get("error") if isinstance(payload, dict) else None
            raise TransientExchangeFailure(
                f"Token exchange failed: {response.status_code} {error_code or ''}".strip()
            )

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise TransientExchangeFailure("Token exchange returned a malformed response")

        try:
            expires_in = int(payload.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600

        new_refresh_token = payload.get("refresh_token") or None
        return TokenGrant(
            access_token=payload["access_token"],
            expires_on=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            refresh_token=new_refresh_token,
        )
