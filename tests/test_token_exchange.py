"""Tests for refresh-token exchange and failure classification."""

import httpx
import pytest

from mailsync.core.errors import ExpiredCredential, TransientExchangeFailure
from mailsync.services.token_exchange import AccountHint, TokenExchangeClient

HINT = AccountHint(mailbox_address="office@example.com", tenant_id="tenant-1")


def _client(handler) -> TokenExchangeClient:
    return TokenExchangeClient(
        client_id="client-id",
        client_secret="client-secret",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_exchange_returns_access_token_and_rotated_refresh_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        return httpx.Response(
            200,
            json={"access_token": "access-1", "refresh_token": "refresh-2", "expires_in": 3599},
        )

    grant = await _client(handler).exchange("refresh-1", HINT)

    assert grant.access_token == "access-1"
    assert grant.refresh_token == "refresh-2"
    assert seen["url"] == "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
    assert "grant_type=refresh_token" in seen["body"]
    assert "refresh_token=refresh-1" in seen["body"]


@pytest.mark.asyncio
async def test_exchange_without_rotation_has_no_refresh_token():
    def handler(request):
        return httpx.Response(200, json={"access_token": "access-1", "expires_in": 3600})

    grant = await _client(handler).exchange("refresh-1", HINT)

    assert grant.refresh_token is None
    assert "refresh-1" not in repr(grant)


@pytest.mark.asyncio
async def test_tenant_falls_back_to_default():
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, json={"access_token": "access-1"})

    client = TokenExchangeClient(default_tenant="common", transport=httpx.MockTransport(handler))
    await client.exchange("refresh-1", AccountHint(mailbox_address="office@example.com"))

    assert urls == ["https://login.microsoftonline.com/common/oauth2/v2.0/token"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"error": "invalid_grant", "error_description": "AADSTS50173: The grant was revoked"},
        {"error": "invalid_request", "error_description": "AADSTS700082: The refresh token has expired due to inactivity."},
        {"error": "interaction_required", "error_description": "AADSTS50076"},
    ],
)
async def test_expired_credential_is_terminal(payload):
    def handler(request):
        return httpx.Response(400, json=payload)

    with pytest.raises(ExpiredCredential) as exc_info:
        await _client(handler).exchange("refresh-1", HINT)

    assert exc_info.value.retryable is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"error": "temporarily_unavailable"}),
        httpx.Response(429, text="slow down"),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"token_type": "Bearer"}),
        httpx.Response(400, json={"error": "invalid_client", "error_description": "AADSTS7000215"}),
    ],
)
async def test_other_failures_are_transient(response):
    def handler(request):
        return response

    with pytest.raises(TransientExchangeFailure) as exc_info:
        await _client(handler).exchange("refresh-1", HINT)

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(TransientExchangeFailure):
        await _client(handler).exchange("refresh-1", HINT)
