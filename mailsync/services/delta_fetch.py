"""Incremental (delta) message listing with snapshot fallback.

Cursor and page links are opaque: they are replayed verbatim and never
parsed or rebuilt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from mailsync.core.config import settings
from mailsync.core.errors import FetchFailed
from mailsync.core.structured_logging import mask_email
from mailsync.services.graph_client import GraphApiError, GraphClient, quote_segment

logger = logging.getLogger(__name__)

# Minimal projection needed to build a message record; bodies are hydrated later.
MESSAGE_SELECT_FIELDS = (
    "id",
    "subject",
    "from",
    "toRecipients",
    "ccRecipients",
    "conversationId",
    "bodyPreview",
    "receivedDateTime",
    "sentDateTime",
    "isRead",
    "hasAttachments",
    "internetMessageId",
    "parentFolderId",
)
PREFER_TEXT_PREVIEW = 'outlook.body-preview="text"'

_NEXT_LINK = "@odata.nextLink"
_DELTA_LINK = "@odata.deltaLink"


@dataclass
class DeltaResult:
    messages: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    used_snapshot: bool = False
    pages: int = 0
    removed_count: int = 0


class DeltaFetchEngine:
    """fetch_changes(access_token, mailbox, cursor) over Graph messages/delta."""

    def __init__(
        self,
        graph: GraphClient,
        *,
        page_size: int | None = None,
        snapshot_size: int | None = None,
        fallback_mode: str | None = None,
    ) -> None:
        self._graph = graph
        self._page_size = page_size or settings.GRAPH_DELTA_PAGE_SIZE
        self._snapshot_size = snapshot_size or settings.GRAPH_SNAPSHOT_SIZE
        self._fallback_mode = fallback_mode or settings.SNAPSHOT_FALLBACK_MODE

    def _select(self) -> str:
        return ",".join(MESSAGE_SELECT_FIELDS)

    def _headers(self) -> dict[str, str]:
        return {"Prefer": f"{PREFER_TEXT_PREVIEW}, odata.maxpagesize={self._page_size}"}

    def _should_snapshot(self, cursor: str | None) -> bool:
        if self._fallback_mode == "disabled":
            return False
        if self._fallback_mode == "initial_only":
            return cursor is None
        return True

    async def fetch_changes(
        self, access_token: str, mailbox_address: str, cursor: str | None
    ) -> DeltaResult:
        """Page through delta results, falling back to a snapshot when empty.

        Raises FetchFailed if any page (or the snapshot) cannot be retrieved.
        """
        result = DeltaResult()
        mailbox = quote_segment(mailbox_address)

        async with self._graph.open() as client:
            if cursor:
                url: str | None = cursor
                params: dict[str, Any] | None = None
            else:
                url = self._graph.url(
                    f"users/{mailbox}/mailFolders('MsgFolderRoot')/messages/delta"
                )
                params = {"$select": self._select(), "$top": self._page_size}

            while url:
                try:
                    page = await self._graph.get_json(
                        client, url, access_token, params=params, headers=self._headers()
                    )
                except GraphApiError as exc:
                    logger.warning(
                        "Delta page %s failed for %s: %s",
                        result.pages + 1,
                        mask_email(mailbox_address),
                        exc,
                    )
                    raise FetchFailed(f"Delta fetch failed on page {result.pages + 1}: {exc}") from exc

                result.pages += 1
                params = None
                for item in page.get("value") or []:
                    if not isinstance(item, dict):
                        continue
                    if "@removed" in item:
                        result.removed_count += 1
                        continue
                    result.messages.append(item)

                next_link = page.get(_NEXT_LINK)
                delta_link = page.get(_DELTA_LINK)
                if next_link:
                    url = next_link
                elif delta_link:
                    result.next_cursor = delta_link
                    url = None
                else:
                    url = None

            if result.next_cursor is None:
                result.next_cursor = cursor

            if not result.messages and self._should_snapshot(cursor):
                logger.info(
                    "Delta returned no messages for %s (cursor=%s), using snapshot fallback",
                    mask_email(mailbox_address),
                    "stored" if cursor else "none",
                )
                result.messages = await self._fetch_snapshot(client, access_token, mailbox)
                result.used_snapshot = True

        return result

    async def _fetch_snapshot(
        self, client, access_token: str, mailbox: str
    ) -> list[dict[str, Any]]:
        url = self._graph.url(f"users/{mailbox}/mailFolders('Inbox')/messages")
        params = {
            "$orderby": "receivedDateTime desc",
            "$select": self._select(),
            "$top": self._snapshot_size,
        }
        try:
            page = await self._graph.get_json(
                client,
                url,
                access_token,
                params=params,
                headers={"Prefer": PREFER_TEXT_PREVIEW},
            )
        except GraphApiError as exc:
            raise FetchFailed(f"Snapshot fetch failed: {exc}") from exc
        return [item for item in page.get("value") or [] if isinstance(item, dict)]
