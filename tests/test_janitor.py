"""Tests for the background session sweep."""

import asyncio
from datetime import timedelta

from sessionguard.service.janitor import SessionJanitor
from sessionguard.storage.errors import StorageUnavailable
from sessionguard.storage.models import RevokedToken, Session


def _seed(store, clock):
    identity = store.create_identity("janitor@example.com")
    expired = store.create_session(Session.new(identity.id, ttl_minutes=1, now=clock()))
    live = store.create_session(Session.new(identity.id, ttl_minutes=120, now=clock()))
    store.add_revoked_token(
        RevokedToken(token_hash="gone", expires_at=clock() + timedelta(minutes=1))
    )
    store.add_revoked_token(
        RevokedToken(token_hash="kept", expires_at=clock() + timedelta(hours=2))
    )
    return expired, live


class TestSweep:
    def test_sweep_removes_expired_rows(self, runtime, memory_store, clock):
        expired, live = _seed(memory_store, clock)
        clock.advance(minutes=5)

        result = runtime.janitor.sweep()

        assert result.sessions_deleted == 1
        assert result.revocations_deleted == 1
        assert memory_store.get_session(expired.id) is None
        assert memory_store.get_session(live.id) is not None
        assert list(memory_store.revoked) == ["kept"]
        assert runtime.janitor.last_result is result

    def test_sweep_is_idempotent(self, runtime, memory_store, clock):
        _seed(memory_store, clock)
        clock.advance(minutes=5)

        runtime.janitor.sweep()
        second = runtime.janitor.sweep()

        assert second.sessions_deleted == 0
        assert second.revocations_deleted == 0

    def test_revoked_sessions_kept_for_retention_window(self, runtime, memory_store, clock):
        _, live = _seed(memory_store, clock)
        memory_store.deactivate_session(live.id)

        clock.advance(hours=1)
        runtime.janitor.sweep()
        assert memory_store.get_session(live.id) is not None

        clock.advance(hours=24)
        runtime.janitor.sweep()
        assert memory_store.get_session(live.id) is None

    async def test_run_once_off_loop(self, runtime, memory_store, clock):
        _seed(memory_store, clock)
        clock.advance(minutes=5)

        result = await runtime.janitor.run_once()

        assert result.sessions_deleted == 1


class TestLoop:
    async def test_start_and_stop(self, memory_store, clock):
        janitor = SessionJanitor(memory_store, interval=3600, clock=clock)
        _seed(memory_store, clock)
        clock.advance(minutes=5)

        await janitor.start()
        assert janitor.running
        for _ in range(20):
            if janitor.last_result is not None:
                break
            await asyncio.sleep(0.01)
        await janitor.stop()

        assert not janitor.running
        assert janitor.last_result.sessions_deleted == 1

    async def test_start_twice_keeps_one_task(self, memory_store, clock):
        janitor = SessionJanitor(memory_store, interval=3600, clock=clock)

        await janitor.start()
        task = janitor._task
        await janitor.start()

        assert janitor._task is task
        await janitor.stop()

    async def test_failed_sweep_keeps_loop_alive(self, clock):
        class BrokenStore:
            calls = 0

            def delete_expired_sessions(self, now, inactive_before=None):
                BrokenStore.calls += 1
                raise StorageUnavailable("database unavailable")

        janitor = SessionJanitor(BrokenStore(), interval=3600, clock=clock)

        await janitor.start()
        for _ in range(20):
            if BrokenStore.calls:
                break
            await asyncio.sleep(0.01)

        assert janitor.running
        await janitor.stop()
        assert BrokenStore.calls == 1
