"""Tests for the cache-aside session registry."""

from datetime import timedelta

import pytest

from sessionguard.service.errors import ConflictError, PersistenceFailure
from sessionguard.service.session_store import SessionStore
from sessionguard.storage.models import Session, SessionState
from sessionguard.storage.redis_cache import SESSION_KEY


def _identity(store, email="owner@example.com"):
    return store.create_identity(email)


def _session(identity_id, clock, minutes=60):
    return Session.new(identity_id, ttl_minutes=minutes, now=clock())


@pytest.fixture
def sessions(flaky_store, flaky_cache, clock):
    return SessionStore(flaky_store, flaky_cache, default_ttl_seconds=3600, clock=clock)


class TestCacheAside:
    """Reads fill the cache, writes hit the store first."""

    async def test_put_persists_then_caches(self, sessions, memory_store, flaky_cache, clock):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)

        await sessions.put(session)

        assert memory_store.get_session(session.id) is not None
        assert await flaky_cache.get_session_record(session.id) is not None

    async def test_put_leaves_cache_untouched_when_store_fails(
        self, sessions, memory_store, flaky_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        flaky_store.down = True

        with pytest.raises(PersistenceFailure):
            await sessions.put(session)

        assert await flaky_cache.get_session_record(session.id) is None

    async def test_get_repopulates_cache_after_miss(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        memory_store.create_session(session)

        found = await sessions.get(session.id)

        assert found.id == session.id
        assert await flaky_cache.get_session_record(session.id) is not None

    async def test_cache_ttl_capped_by_default(self, sessions, memory_store, clock):
        identity = _identity(memory_store)
        session = _session(identity.id, clock, minutes=60 * 24)
        assert sessions.cache_ttl(session) == 3600

    async def test_cache_ttl_capped_by_remaining_lifetime(self, sessions, memory_store, clock):
        identity = _identity(memory_store)
        session = _session(identity.id, clock, minutes=10)
        assert sessions.cache_ttl(session) == 600

    async def test_cache_entry_expires_with_session(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock, minutes=10)
        await sessions.put(session)

        clock.advance(minutes=10)

        assert await flaky_cache.get_session_record(session.id) is None
        assert await sessions.get(session.id) is None

    async def test_unknown_session_returns_none(self, sessions):
        assert await sessions.get("missing") is None

    async def test_expired_record_returns_none(self, sessions, memory_store, clock):
        identity = _identity(memory_store)
        session = _session(identity.id, clock, minutes=5)
        memory_store.create_session(session)
        clock.advance(minutes=6)
        assert await sessions.get(session.id) is None

    async def test_corrupt_cache_entry_falls_back_to_store(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        memory_store.create_session(session)
        await flaky_cache.client.set(SESSION_KEY.format(session.id), "{not json", ex=60)

        found = await sessions.get(session.id)

        assert found.id == session.id


class TestInvalidation:
    async def test_invalidate_deactivates_and_evicts(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)

        assert await sessions.invalidate(session.id) is True

        assert await flaky_cache.get_session_record(session.id) is None
        found = await sessions.get(session.id)
        assert found is not None
        assert found.is_active is False

    async def test_inactive_record_is_not_cached(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        session.is_active = False
        memory_store.create_session(session)

        await sessions.get(session.id)

        assert await flaky_cache.get_session_record(session.id) is None

    async def test_invalidate_unknown_session(self, sessions):
        assert await sessions.invalidate("missing") is False

    async def test_invalidate_identity_evicts_every_session(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        other = _identity(memory_store, "other@example.com")
        mine = [_session(identity.id, clock) for _ in range(3)]
        theirs = _session(other.id, clock)
        for session in mine + [theirs]:
            await sessions.put(session)

        invalidated = await sessions.invalidate_identity(identity.id)

        assert sorted(invalidated) == sorted(s.id for s in mine)
        for session in mine:
            assert await flaky_cache.get_session_record(session.id) is None
            assert (await sessions.get(session.id)).is_active is False
        assert (await sessions.get(theirs.id)).is_active is True

    async def test_update_of_deleted_row_evicts_cache(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)
        memory_store.sessions.pop(session.id)

        assert await sessions.update(session) is False
        assert await flaky_cache.get_session_record(session.id) is None

    async def test_update_of_deactivated_row_is_refused(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)
        stale = await sessions.get(session.id)
        await sessions.invalidate(session.id)
        stale.access_token_hash = "rotated"

        assert await sessions.update(stale) is False
        assert memory_store.get_session(session.id).is_active is False
        assert memory_store.get_session(session.id).access_token_hash != "rotated"
        assert await flaky_cache.get_session_record(session.id) is None

    async def test_update_evicts_instead_of_rewriting_cache(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)
        session.refresh_count = 1

        assert await sessions.update(session) is True
        assert await flaky_cache.get_session_record(session.id) is None
        assert (await sessions.get(session.id)).refresh_count == 1
        assert await flaky_cache.get_session_record(session.id) is not None

    async def test_put_for_unknown_identity_is_a_conflict(
        self, sessions, flaky_cache, clock
    ):
        session = _session("no-such-identity", clock)

        with pytest.raises(ConflictError) as excinfo:
            await sessions.put(session)

        assert excinfo.value.status_code == 409
        assert excinfo.value.detail == {"identity_id": "no-such-identity"}
        assert await flaky_cache.get_session_record(session.id) is None


class TestBackendOutages:
    """Cache failures degrade to the store; store failures fail closed."""

    async def test_cache_outage_reads_from_store(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        memory_store.create_session(session)
        flaky_cache.down = True

        found = await sessions.get(session.id)

        assert found.id == session.id

    async def test_cache_outage_does_not_block_writes(
        self, sessions, memory_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        flaky_cache.down = True

        await sessions.put(session)
        assert await sessions.invalidate(session.id) is True

        assert memory_store.get_session(session.id).is_active is False

    async def test_store_outage_with_cold_cache_fails_closed(
        self, sessions, memory_store, flaky_store, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        memory_store.create_session(session)
        flaky_store.down = True

        with pytest.raises(PersistenceFailure):
            await sessions.get(session.id)

    async def test_store_outage_with_warm_cache_serves_entry(
        self, sessions, memory_store, flaky_store, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)
        flaky_store.down = True

        found = await sessions.get(session.id)

        assert found.id == session.id

    async def test_invalidate_fails_closed_when_store_down(
        self, sessions, memory_store, flaky_store, flaky_cache, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)
        flaky_store.down = True

        with pytest.raises(PersistenceFailure):
            await sessions.invalidate(session.id)

        # Nothing was persisted, so the cache entry is left alone
        assert await flaky_cache.get_session_record(session.id) is not None


class TestTouch:
    async def test_touch_throttled_within_interval(self, sessions, memory_store, clock):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)

        clock.advance(seconds=30)

        assert await sessions.touch(session) is False
        assert memory_store.get_session(session.id).last_used_at == session.created_at

    async def test_touch_updates_last_used(self, sessions, memory_store, clock):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)

        now = clock.advance(minutes=5)

        assert await sessions.touch(session) is True
        assert memory_store.get_session(session.id).last_used_at == now
        assert session.last_used_at == now

    async def test_touch_failure_is_swallowed(
        self, sessions, memory_store, flaky_store, clock
    ):
        identity = _identity(memory_store)
        session = _session(identity.id, clock)
        await sessions.put(session)
        clock.advance(minutes=5)
        flaky_store.down = True

        assert await sessions.touch(session) is False

    async def test_state_transitions(self, memory_store, clock):
        identity = _identity(memory_store)
        session = _session(identity.id, clock, minutes=30)
        assert session.state(clock()) is SessionState.CREATED

        session.last_used_at = clock() + timedelta(minutes=1)
        assert session.state(clock()) is SessionState.ACTIVE

        session.refresh_count = 1
        assert session.state(clock()) is SessionState.REFRESHED

        assert session.state(clock() + timedelta(minutes=30)) is SessionState.EXPIRED
        assert SessionState.EXPIRED.terminal

        session.is_active = False
        assert session.state(clock()) is SessionState.REVOKED
        assert SessionState.REVOKED.terminal
        assert not SessionState.ACTIVE.terminal
