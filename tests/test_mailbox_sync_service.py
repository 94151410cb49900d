"""End-to-end tests for mailbox sync orchestration against a fake Graph."""

import asyncio
import uuid

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from mailsync.core.config import settings
from mailsync.core.errors import ExpiredCredential, FetchFailed, MessageNotFound, SyncTimeout
from mailsync.db.enums import MessageDirection
from mailsync.db.models import MailboxCredential, MailboxMessage, User
from mailsync.services.credential_store import StoredCredential
from mailsync.services.mailbox_sync_service import build_mailbox_sync_service
from tests.conftest import MAILBOX, delta_link, graph_message, next_link, utc_in


@pytest.fixture
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "GRAPH_MAX_ATTEMPTS", 1)
    monkeypatch.setattr(settings, "GRAPH_RETRY_BASE_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "HYDRATION_BATCH_DELAY_MS", 0)


@pytest.fixture
def service(session_factory, fake_graph, fast_settings):
    return build_mailbox_sync_service(session_factory, transport=fake_graph.transport)


def _connect(service, db, user_ref, refresh_token="refresh-1"):
    service.credentials.put(
        db,
        user_ref,
        StoredCredential(
            user_id=None,
            mailbox_address=MAILBOX,
            refresh_token=refresh_token,
            tenant_id="tenant-1",
        ),
    )


def _state(service, db, user):
    db.expire_all()
    return service.states.get(db, user.id)


def _message_count(db) -> int:
    return db.scalar(select(func.count()).select_from(MailboxMessage))


@pytest.mark.asyncio
async def test_first_sync_snapshot_then_incremental(service, db, user, fake_graph):
    _connect(service, db, user.id)
    fake_graph.delta_pages = {
        "initial": {"value": [], "@odata.deltaLink": delta_link("C1")},
        "delta:C1": {
            "value": [graph_message("m1"), graph_message("m2")],
            "@odata.deltaLink": delta_link("C2"),
        },
    }
    fake_graph.snapshot = [graph_message(f"s{i}") for i in range(3)]

    first = await service.sync_user(user.id)

    assert first.used_snapshot is True
    assert first.inserted == 3
    assert _state(service, db, user).delta_cursor == delta_link("C1")
    assert first.subscription_status == "active"

    second = await service.sync_user(user.auth_id)

    assert second.used_snapshot is False
    assert second.inserted == 2
    assert second.processed == 2
    assert _state(service, db, user).delta_cursor == delta_link("C2")
    assert _message_count(db) == 5
    assert len(fake_graph.calls("snapshot")) == 1
    # Subscription was created once and left alone while active
    assert len(fake_graph.created_subscriptions) == 1

    await service.hydrator.wait_idle()


@pytest.mark.asyncio
async def test_cursor_unchanged_when_fetch_fails_mid_pagination(service, db, user, fake_graph):
    _connect(service, db, user.id)
    service.states.upsert(db, user.id, delta_cursor=delta_link("C1"))
    before = _state(service, db, user)
    fake_graph.delta_pages = {
        "delta:C1": {"value": [graph_message("m1")], "@odata.nextLink": next_link("p2")},
        "skip:p2": 503,
    }

    with pytest.raises(FetchFailed):
        await service.sync_user(user.id)

    after = _state(service, db, user)
    assert after.delta_cursor == delta_link("C1")
    assert after.last_synced_at == before.last_synced_at
    assert _message_count(db) == 0


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_stored_and_used_next(service, db, user, fake_graph):
    _connect(service, db, user.id, refresh_token="refresh-1")
    fake_graph.token_payload = {"access_token": "access-1", "refresh_token": "refresh-2", "expires_in": 3600}
    fake_graph.delta_pages = {"initial": 500}

    # The fetch fails, but the rotated token must already be persisted
    with pytest.raises(FetchFailed):
        await service.sync_user(user.id)

    db.expire_all()
    assert service.credentials.get(db, user.id).refresh_token == "refresh-2"

    fake_graph.token_payload = {"access_token": "access-2", "expires_in": 3600}
    fake_graph.delta_pages = {"initial": {"value": [graph_message("m1")], "@odata.deltaLink": delta_link("C1")}}
    await service.sync_user(user.id)

    assert fake_graph.refresh_tokens_used == ["refresh-1", "refresh-2"]
    await service.hydrator.wait_idle()


@pytest.mark.asyncio
async def test_expired_credential_stops_before_fetch(service, db, user, fake_graph):
    _connect(service, db, user.id)
    fake_graph.token_status = 400
    fake_graph.token_payload = {"error": "invalid_grant", "error_description": "AADSTS700082: expired"}

    with pytest.raises(ExpiredCredential):
        await service.sync_user(user.id)

    assert fake_graph.calls("delta") == []
    assert _state(service, db, user) is None


@pytest.mark.asyncio
async def test_reset_ignores_stored_cursor(service, db, user, fake_graph):
    _connect(service, db, user.id)
    service.states.upsert(db, user.id, delta_cursor=delta_link("C1"))
    fake_graph.delta_pages = {"initial": {"value": [graph_message("m1")], "@odata.deltaLink": delta_link("C9")}}

    outcome = await service.sync_user(user.id, reset=True)

    assert "$deltatoken" not in fake_graph.calls("delta")[0].url.params
    assert outcome.cursor_advanced is True
    assert _state(service, db, user).delta_cursor == delta_link("C9")
    await service.hydrator.wait_idle()


@pytest.mark.asyncio
async def test_sync_times_out(session_factory, db, user, fast_settings, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_TIMEOUT_SECONDS", 0.05)

    async def hang(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    service = build_mailbox_sync_service(session_factory, transport=httpx.MockTransport(hang))
    _connect(service, db, user.id)

    with pytest.raises(SyncTimeout):
        await service.sync_user_with_timeout(user.id)

    assert _state(service, db, user) is None


@pytest.mark.asyncio
async def test_sync_all_contains_failures(service, db, user, fake_graph):
    _connect(service, db, user.id)
    broken = User(id=uuid.uuid4(), auth_id="auth0|user-2")
    db.add(broken)
    db.commit()
    db.add(
        MailboxCredential(
            id=uuid.uuid4(),
            user_id=broken.id,
            mailbox_address="other@example.com",
            refresh_token_encrypted="garbage",
        )
    )
    db.commit()
    fake_graph.delta_pages = {"initial": {"value": [graph_message("m1")], "@odata.deltaLink": delta_link("C1")}}

    summary = await service.sync_all_mailboxes()

    assert (summary.processed, summary.successful, summary.failed) == (2, 1, 1)
    failure = next(result for result in summary.results if not result.success)
    assert failure.user_id == str(broken.id)
    assert failure.stage == "credential"
    await service.hydrator.wait_idle()


@pytest.mark.asyncio
async def test_refresh_all_subscriptions_renews_near_expiry(service, db, user, fake_graph):
    _connect(service, db, user.id)
    service.states.upsert(db, user.id, subscription_id="sub-old", subscription_expiry=utc_in(hours=1))

    summary = await service.refresh_all_subscriptions()

    assert (summary.checked, summary.renewed, summary.failed) == (1, 1, 0)
    assert fake_graph.deleted_subscriptions == ["sub-old"]
    assert _state(service, db, user).subscription_id == "sub-1"


@pytest.mark.asyncio
async def test_status_and_disconnect(service, db, user, fake_graph):
    _connect(service, db, user.id)
    fake_graph.delta_pages = {"initial": {"value": [graph_message("m1")], "@odata.deltaLink": delta_link("C1")}}
    await service.sync_user(user.id)
    await service.hydrator.wait_idle()

    status = service.get_connection_status(user.auth_id)
    assert status.connected is True
    assert status.mailbox_address == MAILBOX
    assert status.has_cursor is True
    assert status.subscription_status == "active"

    assert await service.disconnect(user.id) is True

    status = service.get_connection_status(user.id)
    assert status.connected is False
    assert status.has_cursor is False
    assert status.subscription_status == "absent"
    assert fake_graph.deleted_subscriptions == ["sub-1"]


def _second_user(service, db, auth_id="auth0|user-2"):
    other = User(id=uuid.uuid4(), auth_id=auth_id)
    db.add(other)
    db.commit()
    _connect(service, db, other.id, refresh_token="refresh-2")
    return other


@pytest.mark.asyncio
async def test_refresh_all_subscriptions_contains_database_errors(service, db, user, fake_graph, monkeypatch):
    _connect(service, db, user.id)
    other = _second_user(service, db)
    original_get = service.states.get

    def flaky_get(session, user_ref):
        if user_ref == user.id:
            raise OperationalError("SELECT mailbox_sync_states", {}, Exception("connection lost"))
        return original_get(session, user_ref)

    monkeypatch.setattr(service.states, "get", flaky_get)

    summary = await service.refresh_all_subscriptions()

    assert (summary.checked, summary.renewed, summary.failed) == (2, 1, 1)
    assert original_get(db, other.id).subscription_id == "sub-1"


def test_subscriptions_report_covers_every_connected_mailbox(service, db, user):
    _connect(service, db, user.id)
    service.states.upsert(
        db,
        user.id,
        mailbox_address=MAILBOX,
        subscription_id="sub-live",
        subscription_expiry=utc_in(days=2),
    )
    other = _second_user(service, db)

    report = service.get_subscriptions_report()

    assert report.webhook_url_configured is True
    assert report.total_mailboxes == 2
    by_user = {entry.user_id: entry for entry in report.subscriptions}
    assert by_user[str(user.id)].status == "active"
    assert by_user[str(user.id)].subscription_id == "sub-live"
    assert by_user[str(user.id)].mailbox_address == MAILBOX
    assert by_user[str(other.id)].status == "absent"
    assert by_user[str(other.id)].subscription_id is None


def _unhydrated_message(db, user, message_id="m9"):
    db.add(
        MailboxMessage(
            id=uuid.uuid4(),
            message_id=message_id,
            user_id=user.id,
            direction=MessageDirection.INCOMING,
            sender_address="lead@customer.com",
            recipient_addresses=[MAILBOX],
            subject="Quote request",
            body_preview="Could you send",
            sent_at=utc_in(days=-1),
        )
    )
    db.commit()


@pytest.mark.asyncio
async def test_get_message_body_fetches_once_then_serves_cache(service, db, user, fake_graph):
    _connect(service, db, user.id)
    _unhydrated_message(db, user)
    fake_graph.bodies["m9"] = "<p>Could you send a quote?</p>"

    first = await service.get_message_body(user.auth_id, "m9")
    second = await service.get_message_body(user.id, "m9")

    assert (first.fetched, first.body) == (True, "<p>Could you send a quote?</p>")
    assert (second.fetched, second.body) == (False, "<p>Could you send a quote?</p>")
    assert len(fake_graph.calls("body")) == 1
    assert len(fake_graph.calls("token")) == 1
    db.expire_all()
    row = db.scalar(select(MailboxMessage).where(MailboxMessage.message_id == "m9"))
    assert row.body_hydrated is True


@pytest.mark.asyncio
async def test_get_message_body_graph_failure_leaves_message_unhydrated(service, db, user, fake_graph):
    _connect(service, db, user.id)
    _unhydrated_message(db, user)
    fake_graph.body_failures = {"m9"}

    with pytest.raises(FetchFailed):
        await service.get_message_body(user.id, "m9")

    db.expire_all()
    row = db.scalar(select(MailboxMessage).where(MailboxMessage.message_id == "m9"))
    assert row.body_hydrated is False


@pytest.mark.asyncio
async def test_get_message_body_rejects_other_users_messages(service, db, user, fake_graph):
    _connect(service, db, user.id)
    other = _second_user(service, db)
    _unhydrated_message(db, other, message_id="theirs")

    with pytest.raises(MessageNotFound):
        await service.get_message_body(user.id, "theirs")
    assert fake_graph.calls("body") == []
