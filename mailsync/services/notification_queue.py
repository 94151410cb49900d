"""Debounced, single-flight-per-user sync triggering for webhook bursts.

All bookkeeping happens on the event loop thread, so the set operations
below never interleave.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from mailsync.core.config import settings
from mailsync.core.structured_logging import build_log_context

logger = logging.getLogger(__name__)

SyncRunner = Callable[[str, list[dict[str, Any]]], Awaitable[Any]]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


CallLater = Callable[[float, Callable[[], None]], TimerHandle]


class NotificationCoalescingQueue:
    """Owns pending/active user sets and the single shared debounce timer."""

    def __init__(
        self,
        sync_runner: SyncRunner,
        *,
        debounce_seconds: float | None = None,
        call_later: CallLater | None = None,
    ) -> None:
        self._sync_runner = sync_runner
        self._debounce_seconds = (
            debounce_seconds
            if debounce_seconds is not None
            else settings.GRAPH_WEBHOOK_DEBOUNCE_MS / 1000
        )
        self._call_later = call_later
        self._pending_users: set[str] = set()
        self._active_users: set[str] = set()
        self._pending_events: dict[str, list[dict[str, Any]]] = {}
        self._timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending_users(self) -> frozenset[str]:
        return frozenset(self._pending_users)

    @property
    def active_users(self) -> frozenset[str]:
        return frozenset(self._active_users)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def enqueue(self, user_id: str, event_meta: dict[str, Any] | None = None) -> None:
        if not user_id or self._closed:
            return
        user_key = str(user_id)
        if user_key in self._active_users:
            logger.info("Sync running for user %s, queued follow-up run", user_key)
        self._pending_users.add(user_key)
        self._pending_events.setdefault(user_key, []).append(dict(event_meta or {}))
        self._arm_timer()

    def _arm_timer(self) -> None:
        if self._timer is not None or self._closed:
            return
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._timer = call_later(self._debounce_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def flush(self) -> None:
        """Launch a sync for every pending user that is not already syncing."""
        users = list(self._pending_users)
        self._pending_users.clear()
        loop = asyncio.get_running_loop()
        for user_key in users:
            if user_key in self._active_users:
                # Picked up once the running sync completes.
                self._pending_users.add(user_key)
                continue
            self._active_users.add(user_key)
            events = self._pending_events.pop(user_key, [])
            task = loop.create_task(self._run(user_key, events), name=f"mailbox-sync-{user_key}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, user_key: str, events: list[dict[str, Any]]) -> None:
        logger.info("Webhook-triggered sync for user %s (%s events)", user_key, len(events))
        try:
            await self._sync_runner(user_key, events)
        except Exception:
            logger.exception(
                "Webhook-triggered sync failed",
                extra=build_log_context(user_id=user_key, trigger="webhook"),
            )
        finally:
            self._active_users.discard(user_key)
            if user_key in self._pending_users:
                self._arm_timer()

    async def close(self) -> None:
        """Stop accepting events, cancel the timer and wait for running syncs."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
