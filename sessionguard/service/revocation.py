from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from sessionguard.logging import get_logger
from sessionguard.service.errors import PersistenceFailure
from sessionguard.service.tokens import TokenClaims, hash_token
from sessionguard.storage.errors import CacheUnavailable, StorageUnavailable
from sessionguard.storage.models import RevokedToken, utcnow
from sessionguard.storage.redis_cache import SessionCacheBase, ttl_until

logger = get_logger(__name__)


class RevocationStore(Protocol):
    def add_revoked_token(self, entry: RevokedToken) -> None:
        ...

    def is_token_revoked(self, token_hash: str, now: Optional[datetime] = None) -> bool:
        ...

    def delete_expired_revocations(self, now: datetime) -> int:
        ...


class RevocationRegistry:
    """Self-expiring set of explicitly revoked tokens, keyed by token hash.

    Every entry lives exactly as long as the token it blocks: the cache key
    gets a TTL of ``exp - now`` and the durable row stores ``exp`` so the
    janitor can purge it. Raw tokens are never stored.

    Membership is answered by the cache. When the cache cannot be reached
    the durable rows answer instead; when neither can, the check fails
    closed. ``confirm_misses`` makes a cache miss consult the durable rows
    too, for caches that are not shared between processes.
    """

    def __init__(
        self,
        cache: Optional[SessionCacheBase],
        store: RevocationStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        confirm_misses: bool = False,
    ) -> None:
        self.cache = cache
        self.store = store
        self.clock = clock
        self.confirm_misses = confirm_misses or cache is None

    async def add(self, token: str, claims: TokenClaims, *, ttl: Optional[int] = None) -> bool:
        """Record ``token`` as revoked until its own expiry.

        Returns False when the token has already expired, since there is
        nothing left to block.
        """
        now = self.clock()
        remaining = ttl_until(claims.expires_at, now=now)
        if ttl is not None:
            remaining = min(remaining, ttl)
        if remaining <= 0:
            return False
        token_hash = hash_token(token)
        entry = RevokedToken(
            token_hash=token_hash,
            expires_at=claims.expires_at,
            token_type=claims.token_type.value,
            session_id=claims.session_id,
            revoked_at=now,
        )
        try:
            self.store.add_revoked_token(entry)
        except StorageUnavailable as exc:
            logger.error(
                "token_revocation_persist_failed", session_id=claims.session_id, error=str(exc)
            )
            raise PersistenceFailure() from exc
        if self.cache is not None:
            try:
                await self.cache.mark_revoked(token_hash, remaining)
            except CacheUnavailable as exc:
                logger.warning(
                    "token_revocation_cache_failed", session_id=claims.session_id, error=str(exc)
                )
        logger.info(
            "token_revoked",
            session_id=claims.session_id,
            token_type=claims.token_type.value,
            ttl=remaining,
        )
        return True

    async def contains(self, token: str) -> bool:
        token_hash = hash_token(token)
        if self.cache is not None:
            try:
                if await self.cache.is_revoked(token_hash):
                    return True
                if not self.confirm_misses:
                    return False
            except CacheUnavailable as exc:
                logger.warning("revocation_cache_unavailable", error=str(exc))
        try:
            return self.store.is_token_revoked(token_hash, self.clock())
        except StorageUnavailable as exc:
            logger.error("revocation_check_failed", error=str(exc))
            raise PersistenceFailure() from exc

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_revocations(now or self.clock())
