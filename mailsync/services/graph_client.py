"""Thin Microsoft Graph REST client."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from mailsync.core.config import settings
from mailsync.services.http_service import request_with_retries

logger = logging.getLogger(__name__)


class GraphApiError(RuntimeError):
    """Graph returned a non-success status or an unreadable body."""

    def __init__(self, status_code: int | None, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Graph API error {status_code}: {detail}")


def quote_segment(value: str) -> str:
    """Quote a mailbox address or message id for use as one URL path segment."""
    return quote(value, safe="@")


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return f"{error.get('code', '')}: {error.get('message', '')}"[:300]
    return str(payload)[:300]


class GraphClient:
    """Authenticated Graph requests with retry/backoff."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.GRAPH_API_BASE_URL).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.GRAPH_HTTP_TIMEOUT_SECONDS
        self._max_attempts = max_attempts if max_attempts is not None else settings.GRAPH_MAX_ATTEMPTS
        self._retry_base_delay = (
            retry_base_delay
            if retry_base_delay is not None
            else settings.GRAPH_RETRY_BASE_DELAY_SECONDS
        )
        self._transport = transport

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def open(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        request_headers = {"Authorization": f"Bearer {access_token}"}
        if headers:
            request_headers.update(headers)

        async def _send() -> httpx.Response:
            return await client.request(
                method, url, params=params, json=json, headers=request_headers
            )

        return await request_with_retries(
            _send,
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            label=f"Graph {method}",
        )

    async def get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self.request(
                client, "GET", url, access_token, params=params, headers=headers
            )
        except httpx.RequestError as exc:
            raise GraphApiError(None, f"request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            raise GraphApiError(response.status_code, _error_detail(response))
        try:
            payload = response.json()
        except ValueError as exc:
            raise GraphApiError(response.status_code, "response was not JSON") from exc
        if not isinstance(payload, dict):
            raise GraphApiError(response.status_code, "unexpected response shape")
        return payload

    async def post_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        access_token: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            response = await self.request(client, "POST", url, access_token, json=body)
        except httpx.RequestError as exc:
            raise GraphApiError(None, f"request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            raise GraphApiError(response.status_code, _error_detail(response))
        try:
            payload = response.json()
        except ValueError as exc:
            raise GraphApiError(response.status_code, "response was not JSON") from exc
        return payload if isinstance(payload, dict) else {}

    async def delete(self, client: httpx.AsyncClient, url: str, access_token: str) -> None:
        try:
            response = await self.request(client, "DELETE", url, access_token)
        except httpx.RequestError as exc:
            raise GraphApiError(None, f"request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 400 and response.status_code != 404:
            raise GraphApiError(response.status_code, _error_detail(response))
