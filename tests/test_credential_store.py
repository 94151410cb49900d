"""Tests for encrypted mailbox credential storage."""

import uuid

import pytest
from sqlalchemy import func, select

from mailsync.core.errors import CorruptCredential, UnresolvableUser
from mailsync.db.models import MailboxCredential
from mailsync.services.credential_store import CredentialStore, StoredCredential
from mailsync.services.identity_service import IdentityResolver


def _credential(refresh_token: str = "refresh-1") -> StoredCredential:
    return StoredCredential(
        user_id=None,
        mailbox_address="office@example.com",
        refresh_token=refresh_token,
        provider_account_id="home-account-1",
        tenant_id="tenant-1",
        account_environment="login.microsoftonline.com",
    )


def test_put_encrypts_and_get_decrypts(db, user):
    store = CredentialStore(IdentityResolver())

    store.put(db, user.auth_id, _credential())

    row = db.scalar(select(MailboxCredential))
    assert row.refresh_token_encrypted != "refresh-1"
    assert "refresh-1" not in row.refresh_token_encrypted

    credential = store.get(db, str(user.id))
    assert credential.user_id == user.id
    assert credential.refresh_token == "refresh-1"
    assert credential.account_hint.tenant_id == "tenant-1"


def test_put_replaces_existing_record(db, user):
    store = CredentialStore(IdentityResolver())

    store.put(db, user.id, _credential("refresh-1"))
    store.put(db, user.id, _credential("refresh-2"))

    assert db.scalar(select(func.count()).select_from(MailboxCredential)) == 1
    assert store.get(db, user.id).refresh_token == "refresh-2"


def test_get_returns_none_when_not_connected(db, user):
    assert CredentialStore(IdentityResolver()).get(db, user.id) is None


def test_undecryptable_token_is_corrupt_not_missing(db, user):
    db.add(
        MailboxCredential(
            id=uuid.uuid4(),
            user_id=user.id,
            mailbox_address="office@example.com",
            refresh_token_encrypted="not-a-fernet-token",
        )
    )
    db.commit()

    with pytest.raises(CorruptCredential):
        CredentialStore(IdentityResolver()).get(db, user.id)


def test_unknown_user_raises_unresolvable(db):
    store = CredentialStore(IdentityResolver())

    with pytest.raises(UnresolvableUser):
        store.get(db, "auth0|ghost")
    with pytest.raises(UnresolvableUser):
        store.put(db, "auth0|ghost", _credential())


def test_remove_deletes_record(db, user):
    store = CredentialStore(IdentityResolver())
    store.put(db, user.id, _credential())

    assert store.remove(db, user.id) is True
    assert store.get(db, user.id) is None
    assert store.remove(db, user.id) is False


def test_repr_never_exposes_refresh_token():
    assert "refresh-1" not in repr(_credential())
