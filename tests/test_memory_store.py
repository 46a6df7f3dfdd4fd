"""Tests for the in-process store and its JSON mirror."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import RevokedToken, Session

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    identity = store.create_identity("Persist@Example.com", role="admin")
    store.save_password(identity.id, "hash", "argon2id")
    session = Session.new(identity.id, ttl_minutes=30, user_agent="pytest", now=NOW)
    session.refresh_count = 4
    store.create_session(session)
    store.add_revoked_token(
        RevokedToken(token_hash="h1", expires_at=NOW + timedelta(minutes=5), session_id=session.id)
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    loaded_identity = reloaded.get_identity_by_email("persist@example.com")
    assert loaded_identity.id == identity.id
    assert loaded_identity.role == "admin"
    assert reloaded.get_password_record(identity.id) == ("hash", "argon2id")
    loaded_session = reloaded.get_session(session.id)
    assert loaded_session.expires_at == session.expires_at
    assert loaded_session.refresh_count == 4
    assert loaded_session.user_agent == "pytest"
    assert reloaded.is_token_revoked("h1", NOW) is True


def test_duplicate_email_rejected():
    store = MemoryStore()
    store.create_identity("dup@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_identity(" DUP@example.com ")


def test_session_requires_identity():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new("ghost", ttl_minutes=5, now=NOW))


def test_get_session_hands_out_copies():
    store = MemoryStore()
    identity = store.create_identity("copy@example.com")
    session = store.create_session(Session.new(identity.id, ttl_minutes=5, now=NOW))

    fetched = store.get_session(session.id)
    fetched.is_active = False

    assert store.get_session(session.id).is_active is True


def test_revocation_keeps_latest_expiry():
    store = MemoryStore()
    store.add_revoked_token(RevokedToken(token_hash="h", expires_at=NOW + timedelta(minutes=10)))
    store.add_revoked_token(RevokedToken(token_hash="h", expires_at=NOW + timedelta(minutes=1)))

    assert store.is_token_revoked("h", NOW + timedelta(minutes=5)) is True
    assert store.is_token_revoked("h", NOW + timedelta(minutes=10)) is False


def test_delete_expired_sessions_respects_retention():
    store = MemoryStore()
    identity = store.create_identity("sweep@example.com")
    expired = store.create_session(Session.new(identity.id, ttl_minutes=1, now=NOW))
    live = store.create_session(Session.new(identity.id, ttl_minutes=60, now=NOW))
    old_revoked = Session.new(identity.id, ttl_minutes=60, now=NOW)
    old_revoked.is_active = False
    store.create_session(old_revoked)
    recent_revoked = Session.new(identity.id, ttl_minutes=60, now=NOW + timedelta(minutes=9))
    recent_revoked.is_active = False
    store.create_session(recent_revoked)

    deleted = store.delete_expired_sessions(
        NOW + timedelta(minutes=10), inactive_before=NOW + timedelta(minutes=5)
    )

    assert deleted == 2
    assert store.get_session(expired.id) is None
    assert store.get_session(old_revoked.id) is None
    assert store.get_session(live.id) is not None
    assert store.get_session(recent_revoked.id) is not None


def test_persist_failure_raises_storage_unavailable(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    state_file = tmp_path / "state" / "memory_store.json"
    state_file.parent.mkdir(parents=True, exist_ok=True)
    state_file.mkdir()

    with pytest.raises(StorageUnavailable):
        store.create_identity("fail@example.com")


def test_concurrent_deactivation_is_consistent():
    store = MemoryStore()
    identity = store.create_identity("threads@example.com")
    sessions = [
        store.create_session(Session.new(identity.id, ttl_minutes=60, now=NOW))
        for _ in range(50)
    ]
    results = []

    def worker(session_id):
        results.append(store.deactivate_session(session_id))

    threads = [threading.Thread(target=worker, args=(s.id,)) for s in sessions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(results)
    assert store.deactivate_identity_sessions(identity.id) == []
    assert all(not s.is_active for s in store.list_identity_sessions(identity.id))


def test_update_refuses_deactivated_session():
    store = MemoryStore()
    identity = store.create_identity("inactive@example.com")
    session = store.create_session(Session.new(identity.id, ttl_minutes=30, now=NOW))
    store.deactivate_session(session.id)

    session.access_token_hash = "new-hash"
    session.refresh_count = 1

    assert store.update_session(session) is False
    stored = store.get_session(session.id)
    assert stored.access_token_hash != "new-hash"
    assert stored.refresh_count == 0
