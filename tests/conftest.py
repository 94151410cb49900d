"""
Test configuration and fixtures.

Provides:
- In-memory SQLite engine/session (fresh schema per test)
- A seeded user
- FakeGraph: httpx.MockTransport standing in for the identity platform and Graph
"""
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Generator
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["TOKEN_ENCRYPTION_KEY_PREVIOUS"] = ""
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["ENABLE_MAILBOX_SCHEDULER"] = "False"
os.environ["GRAPH_WEBHOOK_NOTIFICATION_URL"] = "https://crm.example.com/webhooks/graph/mail"
os.environ["GRAPH_WEBHOOK_CLIENT_STATE_SECRET"] = "client-state-secret"
os.environ["GRAPH_CLIENT_ID"] = "client-id"
os.environ["GRAPH_CLIENT_SECRET"] = "client-secret"
os.environ["GRAPH_TENANT_ID"] = "tenant-default"

from mailsync.db.base import Base
from mailsync.db.models import User
import mailsync.db.models  # noqa: F401


GRAPH = "https://graph.microsoft.com/v1.0"
MAILBOX = "office@example.com"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user(db) -> User:
    user = User(id=uuid.uuid4(), auth_id="auth0|user-1", email="agent@example.com")
    db.add(user)
    db.commit()
    return user


# =============================================================================
# Graph fake
# =============================================================================

def graph_message(
    message_id: str,
    *,
    sender: str = "lead@customer.com",
    to: tuple[str, ...] = (MAILBOX,),
    subject: str | None = "Hello",
    preview: str = "Hi there",
    sent: str = "2026-10-01T09:00:00Z",
) -> dict:
    return {
        "id": message_id,
        "subject": subject,
        "from": {"emailAddress": {"address": sender, "name": sender.split("@")[0].title()}},
        "toRecipients": [{"emailAddress": {"address": address}} for address in to],
        "ccRecipients": [],
        "conversationId": f"conv-{message_id}",
        "bodyPreview": preview,
        "receivedDateTime": sent,
        "sentDateTime": sent,
        "isRead": False,
        "hasAttachments": False,
        "internetMessageId": f"<{message_id}@mail.example.com>",
    }


def delta_link(token: str, mailbox: str = MAILBOX) -> str:
    return f"{GRAPH}/users/{mailbox}/mailFolders('MsgFolderRoot')/messages/delta?$deltatoken={token}"


def next_link(token: str, mailbox: str = MAILBOX) -> str:
    return f"{GRAPH}/users/{mailbox}/mailFolders('MsgFolderRoot')/messages/delta?$skiptoken={token}"


class FakeGraph:
    """Routes identity-platform and Graph calls to canned responses.

    delta_pages keys: "initial", "skip:<token>", "delta:<token>". A value is
    either a page dict or an int status code to fail with.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_payload: dict = {"access_token": "access-1", "expires_in": 3600}
        self.token_status = 200
        self.refresh_tokens_used: list[str] = []
        self.delta_pages: dict[str, object] = {}
        self.snapshot: list[dict] = []
        self.snapshot_status = 200
        self.bodies: dict[str, str] = {}
        self.body_failures: set[str] = set()
        self.subscription_status = 201
        self.delete_status = 204
        self.created_subscriptions: list[dict] = []
        self.deleted_subscriptions: list[str] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, kind: str) -> list[httpx.Request]:
        return [request for request in self.requests if self._kind(request) == kind]

    @staticmethod
    def _kind(request: httpx.Request) -> str:
        path = request.url.path
        if path.endswith("/oauth2/v2.0/token"):
            return "token"
        if "/subscriptions" in path:
            return "subscription"
        if path.endswith("/messages/delta"):
            return "delta"
        if "Inbox" in path and path.endswith("/messages"):
            return "snapshot"
        if "/messages/" in path:
            return "body"
        return "unknown"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind = self._kind(request)

        if kind == "token":
            form = parse_qs(request.content.decode())
            self.refresh_tokens_used.append(form["refresh_token"][0])
            return httpx.Response(self.token_status, json=self.token_payload)

        if kind == "delta":
            params = request.url.params
            if "$deltatoken" in params:
                key = f"delta:{params['$deltatoken']}"
            elif "$skiptoken" in params:
                key = f"skip:{params['$skiptoken']}"
            else:
                key = "initial"
            page = self.delta_pages.get(key, {"value": []})
            if isinstance(page, int):
                return httpx.Response(page, json={"error": {"code": "Fail", "message": key}})
            return httpx.Response(200, json=page)

        if kind == "snapshot":
            if self.snapshot_status >= 400:
                return httpx.Response(self.snapshot_status, json={"error": {"code": "Fail"}})
            top = int(request.url.params.get("$top", len(self.snapshot)))
            return httpx.Response(200, json={"value": self.snapshot[:top]})

        if kind == "body":
            message_id = request.url.path.rsplit("/", 1)[-1]
            if message_id in self.body_failures:
                return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound"}})
            content = self.bodies.get(message_id, f"<p>Body of {message_id}</p>")
            return httpx.Response(200, json={"body": {"contentType": "html", "content": content}})

        if kind == "subscription":
            if request.method == "DELETE":
                self.deleted_subscriptions.append(request.url.path.rsplit("/", 1)[-1])
                return httpx.Response(self.delete_status)
            body = json.loads(request.content)
            self.created_subscriptions.append(body)
            if self.subscription_status >= 400:
                return httpx.Response(
                    self.subscription_status,
                    json={"error": {"code": "InvalidRequest", "message": "nope"}},
                )
            return httpx.Response(
                201,
                json={
                    "id": f"sub-{len(self.created_subscriptions)}",
                    "expirationDateTime": body["expirationDateTime"],
                },
            )

        return httpx.Response(404)


@pytest.fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()


def utc_in(**delta) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**delta)
