from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from sessionguard.logging import get_logger
from sessionguard.service.errors import ConflictError, PersistenceFailure
from sessionguard.storage.errors import (
    CacheUnavailable,
    ConstraintViolation,
    StorageUnavailable,
)
from sessionguard.storage.models import Session, utcnow
from sessionguard.storage.redis_cache import SessionCacheBase, ttl_until

logger = get_logger(__name__)
# Advisory activity updates log on their own channel so their noise
# never reads like a verification failure.
activity_logger = get_logger("sessionguard.session_activity")


class SessionRecordStore(Protocol):
    def create_session(self, session: Session) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def update_session(self, session: Session) -> bool:
        ...

    def touch_session(self, session_id: str, at: datetime) -> bool:
        ...

    def deactivate_session(self, session_id: str) -> bool:
        ...

    def deactivate_identity_sessions(self, identity_id: str) -> List[str]:
        ...

    def delete_expired_sessions(
        self, now: datetime, inactive_before: Optional[datetime] = None
    ) -> int:
        ...


class SessionStore:
    """Cache-aside registry of session records.

    The persistent store is the source of truth. Writes go to it first and
    only then replace or drop the cache entry; the cache is never written
    alone. A cache outage turns reads into store reads; a store outage
    raises :class:`PersistenceFailure`.
    """

    def __init__(
        self,
        store: SessionRecordStore,
        cache: Optional[SessionCacheBase],
        *,
        default_ttl_seconds: int = 3600,
        touch_interval_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.default_ttl_seconds = default_ttl_seconds
        self.touch_interval = timedelta(seconds=touch_interval_seconds)
        self.clock = clock

    def cache_ttl(self, session: Session, now: Optional[datetime] = None) -> int:
        return ttl_until(
            session.expires_at, now=now or self.clock(), cap=self.default_ttl_seconds
        )

    async def _cache_write(self, session: Session) -> None:
        if not self.cache or not session.is_active:
            return
        try:
            await self.cache.cache_session_record(
                session.id, session.to_dict(), self.cache_ttl(session)
            )
        except CacheUnavailable as exc:
            logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))

    async def _cache_evict(self, session_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.evict_session(session_id)
        except CacheUnavailable as exc:
            # Stale entry lives at most session_cache_ttl_seconds
            logger.error("session_cache_evict_failed", session_id=session_id, error=str(exc))

    async def get(self, session_id: str) -> Optional[Session]:
        """Return the session record, or None if unknown or past expiry.

        Deactivated records are returned so callers can tell a revoked
        session from a missing one, but they are never cached.
        """
        now = self.clock()
        cache_ok = self.cache is not None
        if self.cache is not None:
            try:
                record = await self.cache.get_session_record(session_id)
            except CacheUnavailable as exc:
                logger.warning("session_cache_read_failed", session_id=session_id, error=str(exc))
                record = None
                cache_ok = False
            if record is not None:
                try:
                    cached = Session.from_dict(record)
                except (KeyError, TypeError, ValueError):
                    logger.warning("session_cache_record_invalid", session_id=session_id)
                    cached = None
                if cached is not None and cached.is_active and not cached.is_expired(now):
                    return cached

        try:
            session = self.store.get_session(session_id)
        except StorageUnavailable as exc:
            logger.error("session_store_read_failed", session_id=session_id, error=str(exc))
            raise PersistenceFailure() from exc
        if session is None or session.is_expired(now):
            return None
        if cache_ok:
            await self._cache_write(session)
        return session

    async def put(self, session: Session) -> Session:
        try:
            self.store.create_session(session)
        except StorageUnavailable as exc:
            logger.error("session_store_write_failed", session_id=session.id, error=str(exc))
            raise PersistenceFailure() from exc
        except ConstraintViolation as exc:
            logger.warning(
                "session_store_constraint_violation", session_id=session.id, detail=exc.detail
            )
            raise ConflictError("session could not be created", detail=exc.detail) from exc
        await self._cache_write(session)
        return session

    async def update(self, session: Session) -> bool:
        """Persist new token hashes and activity.

        Returns False if the row is gone or already deactivated. The cache
        entry is evicted, never rewritten from ``session``; the next read
        refills it from the store.
        """
        try:
            updated = self.store.update_session(session)
        except StorageUnavailable as exc:
            logger.error("session_store_write_failed", session_id=session.id, error=str(exc))
            raise PersistenceFailure() from exc
        await self._cache_evict(session.id)
        return updated

    async def invalidate(self, session_id: str) -> bool:
        try:
            found = self.store.deactivate_session(session_id)
        except StorageUnavailable as exc:
            logger.error("session_invalidate_failed", session_id=session_id, error=str(exc))
            raise PersistenceFailure() from exc
        await self._cache_evict(session_id)
        if found:
            logger.info("session_invalidated", session_id=session_id)
        return found

    async def invalidate_identity(self, identity_id: str) -> List[str]:
        try:
            session_ids = self.store.deactivate_identity_sessions(identity_id)
        except StorageUnavailable as exc:
            logger.error(
                "identity_sessions_invalidate_failed", identity_id=identity_id, error=str(exc)
            )
            raise PersistenceFailure() from exc
        for session_id in session_ids:
            await self._cache_evict(session_id)
        logger.info(
            "identity_sessions_invalidated", identity_id=identity_id, count=len(session_ids)
        )
        return session_ids

    async def touch(self, session: Session) -> bool:
        """Best-effort ``last_used_at`` bump; never raises."""
        now = self.clock()
        if now - session.last_used_at < self.touch_interval:
            return False
        try:
            touched = self.store.touch_session(session.id, now)
        except Exception as exc:
            activity_logger.warning(
                "session_touch_failed", session_id=session.id, error=str(exc)
            )
            return False
        if touched:
            session.last_used_at = now
        return touched
