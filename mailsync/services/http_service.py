"""HTTP helpers with retry/backoff for Graph calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def _retry_after_seconds(response: httpx.Response, max_delay: float) -> float | None:
    """Graph throttling responses carry Retry-After in seconds."""
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return min(max_delay, max(0.0, float(raw)))
    except ValueError:
        return None


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_statuses: set[int] | None = None,
    label: str = "HTTP request",
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries.

    Network errors on the last attempt propagate; a retryable status on the
    last attempt is returned to the caller as-is.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES
    attempts = max(1, max_attempts)

    for attempt in range(attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= attempts - 1:
                raise
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning("%s failed (%s), retrying", label, exc.__class__.__name__)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < attempts - 1:
            delay = _retry_after_seconds(response, max_delay)
            if delay is None:
                delay = _backoff(attempt, base_delay, max_delay)
            logger.warning("%s returned %s, retrying", label, response.status_code)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
