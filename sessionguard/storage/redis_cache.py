from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sessionguard.logging import get_logger
from sessionguard.storage.errors import CacheUnavailable
from sessionguard.storage.models import ensure_utc, utcnow

logger = get_logger(__name__)

SESSION_KEY = "auth:session:{}"
REVOKED_KEY = "auth:revoked:{}"


def ttl_until(expires_at: datetime, *, now: Optional[datetime] = None, cap: Optional[int] = None) -> int:
    """Seconds from ``now`` until ``expires_at``, optionally capped.

    Returns 0 when the instant has already passed; callers treat that as
    "do not cache". Naive timestamps are read as UTC.
    """
    remaining = int((ensure_utc(expires_at) - ensure_utc(now or utcnow())).total_seconds())
    if cap is not None:
        remaining = min(remaining, cap)
    return max(0, remaining)


class SessionCacheBase:
    """Session record and revocation key operations over an async client.

    Subclasses provide ``self.client`` exposing awaitable ``get``, ``set``,
    ``delete`` and ``exists``. Client failures surface as
    :class:`CacheUnavailable`.
    """

    client: Any
    backend = "unknown"

    async def _call(self, op: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await getattr(self.client, op)(*args, **kwargs)
        except RedisError as exc:
            raise CacheUnavailable(f"cache {op} failed: {exc}") from exc

    async def get_session_record(self, session_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._call("get", SESSION_KEY.format(session_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("session_cache_corrupt_entry", session_id=session_id)
            await self._call("delete", SESSION_KEY.format(session_id))
            return None

    async def cache_session_record(
        self, session_id: str, record: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        if ttl_seconds <= 0:
            return False
        await self._call(
            "set", SESSION_KEY.format(session_id), json.dumps(record), ex=ttl_seconds
        )
        return True

    async def evict_session(self, session_id: str) -> None:
        await self._call("delete", SESSION_KEY.format(session_id))

    async def evict_sessions(self, session_ids: Iterable[str]) -> int:
        evicted = 0
        for session_id in session_ids:
            await self.evict_session(session_id)
            evicted += 1
        return evicted

    async def mark_revoked(self, token_hash: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            return False
        await self._call("set", REVOKED_KEY.format(token_hash), "1", ex=ttl_seconds)
        return True

    async def is_revoked(self, token_hash: str) -> bool:
        return bool(await self._call("exists", REVOKED_KEY.format(token_hash)))

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisCache(SessionCacheBase):
    """Redis-backed session cache and revocation registry."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    backend = "redis"

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()


class _SyncClientAdapter:
    """Wraps a sync Redis client with async method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)


class SyncRedisCache(SessionCacheBase):
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues when each test runs in its own ``asyncio.run`` loop, but exposes
    the same awaitable interface as :class:`RedisCache`.
    """

    backend = "redis"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()
