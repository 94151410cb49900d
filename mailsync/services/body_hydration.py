"""Background hydration of full message bodies.

Runs after the listing upsert has committed. Each scheduled run is its own
task with its own error boundary; the sync that scheduled it never waits
for it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailsync.core.config import settings
from mailsync.core.errors import FetchFailed, PersistenceFailure
from mailsync.core.structured_logging import build_log_context
from mailsync.db.models import MailboxMessage
from mailsync.services.graph_client import GraphApiError, GraphClient, quote_segment

logger = logging.getLogger(__name__)


class BodyHydrator:
    """Fetches message bodies in paced, bounded-concurrency batches."""

    def __init__(
        self,
        graph: GraphClient,
        session_factory: Callable[[], Session],
        *,
        batch_size: int | None = None,
        batch_delay_seconds: float | None = None,
        concurrency: int | None = None,
    ) -> None:
        self._graph = graph
        self._session_factory = session_factory
        self._batch_size = max(1, batch_size or settings.HYDRATION_BATCH_SIZE)
        self._batch_delay = (
            batch_delay_seconds
            if batch_delay_seconds is not None
            else settings.HYDRATION_BATCH_DELAY_MS / 1000
        )
        self._semaphore = asyncio.Semaphore(max(1, concurrency or settings.HYDRATION_CONCURRENCY))
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    @property
    def running(self) -> int:
        return len(self._tasks)

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def schedule(
        self,
        user_id: uuid.UUID,
        mailbox_address: str,
        access_token: str,
        message_ids: list[str],
    ) -> asyncio.Task | None:
        """Spawn a hydration task; returns None when there is nothing to do.

        Ids already queued or being fetched by an earlier run are skipped.
        """
        pending = list(dict.fromkeys(mid for mid in message_ids if mid not in self._in_flight))
        if not pending:
            return None
        self._in_flight.update(pending)
        task = asyncio.get_running_loop().create_task(
            self._run(user_id, mailbox_address, access_token, pending),
            name=f"hydrate-bodies-{user_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _task: self._in_flight.difference_update(pending))
        return task

    async def wait_idle(self) -> None:
        """Wait for every scheduled hydration task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def hydrate_message(self, mailbox_address: str, access_token: str, message_id: str) -> str:
        """Fetch and store one body right away; returns the stored body."""
        async with self._graph.open() as client:
            try:
                content = await self._fetch_body(client, mailbox_address, access_token, message_id)
            except GraphApiError as exc:
                raise FetchFailed(f"Body fetch for message {message_id[:24]} failed: {exc}") from exc
        try:
            return self._store_body(message_id, content)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Storing body for message {message_id[:24]} failed") from exc

    async def _run(
        self,
        user_id: uuid.UUID,
        mailbox_address: str,
        access_token: str,
        message_ids: list[str],
    ) -> None:
        hydrated = 0
        failed = 0
        try:
            async with self._graph.open() as client:
                for start in range(0, len(message_ids), self._batch_size):
                    if start and self._batch_delay:
                        await asyncio.sleep(self._batch_delay)
                    batch = message_ids[start : start + self._batch_size]
                    outcomes = await asyncio.gather(
                        *(
                            self._hydrate_one(client, mailbox_address, access_token, message_id)
                            for message_id in batch
                        )
                    )
                    hydrated += sum(1 for ok in outcomes if ok)
                    failed += sum(1 for ok in outcomes if not ok)
        except Exception:
            logger.exception(
                "Body hydration run aborted",
                extra=build_log_context(user_id=str(user_id), stage="hydrate"),
            )
            return

        logger.info(
            "Hydrated %s/%s message bodies for user %s (%s failed)",
            hydrated,
            len(message_ids),
            user_id,
            failed,
        )

    async def _fetch_body(
        self,
        client: httpx.AsyncClient,
        mailbox_address: str,
        access_token: str,
        message_id: str,
    ) -> str:
        url = self._graph.url(
            f"users/{quote_segment(mailbox_address)}/messages/{quote_segment(message_id)}"
        )
        async with self._semaphore:
            payload = await self._graph.get_json(
                client, url, access_token, params={"$select": "body"}
            )
        return (payload.get("body") or {}).get("content") or ""

    def _store_body(self, message_id: str, content: str) -> str:
        # An empty provider body falls back to the preview and still counts as hydrated.
        body = content if content.strip() else func.coalesce(MailboxMessage.body_preview, "")
        with self._session_factory() as db:
            db.execute(
                update(MailboxMessage)
                .where(
                    MailboxMessage.message_id == message_id,
                    MailboxMessage.body_hydrated.is_(False),
                )
                .values(
                    body_full=body,
                    body_hydrated=True,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
            stored = db.scalar(
                select(MailboxMessage.body_full).where(MailboxMessage.message_id == message_id)
            )
        return stored or ""

    async def _hydrate_one(
        self,
        client: httpx.AsyncClient,
        mailbox_address: str,
        access_token: str,
        message_id: str,
    ) -> bool:
        try:
            content = await self._fetch_body(client, mailbox_address, access_token, message_id)
        except GraphApiError as exc:
            logger.warning("Failed to fetch body for message %s: %s", message_id[:24], exc)
            return False

        if not content.strip():
            logger.info("Message %s has an empty body; keeping the preview", message_id[:24])

        try:
            self._store_body(message_id, content)
        except SQLAlchemyError as exc:
            logger.warning("Failed to store body for message %s: %s", message_id[:24], exc)
            return False
        return True
