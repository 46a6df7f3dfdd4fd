from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger
from sessionguard.service.auth import AuthService
from sessionguard.service.identity import IdentityService
from sessionguard.service.issuer import CredentialIssuer
from sessionguard.service.janitor import SessionJanitor
from sessionguard.service.refresh import RefreshCoordinator
from sessionguard.service.revocation import RevocationRegistry
from sessionguard.service.session_store import SessionStore
from sessionguard.service.tokens import TokenCodec
from sessionguard.service.verifier import TokenVerifier
from sessionguard.storage.local_cache import LocalCache
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import utcnow
from sessionguard.storage.postgres import PostgresStore
from sessionguard.storage.redis_cache import RedisCache, SessionCacheBase, SyncRedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the session components together once per process.

    Built at application startup and handed to request handlers; there is
    no module-level instance. ``store``, ``cache`` and ``clock`` can be
    injected, which is how tests swap in failing backends.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Store] = None,
        cache: Optional[SessionCacheBase] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()
        s = self.settings

        self.codec = TokenCodec(
            access_secret=s.jwt_secret,
            refresh_secret=s.jwt_refresh_secret,
            issuer=s.jwt_issuer,
            audience=s.jwt_audience,
            clock=clock,
            leeway_seconds=s.clock_skew_leeway_seconds,
        )
        self.identities = IdentityService(self.store, clock=clock)
        self.sessions = SessionStore(
            self.store,
            self.cache,
            default_ttl_seconds=s.session_cache_ttl_seconds,
            clock=clock,
        )
        self.revocations = RevocationRegistry(
            self.cache,
            self.store,
            clock=clock,
            confirm_misses=getattr(self.cache, "backend", None) == "local",
        )
        self.issuer = CredentialIssuer(
            self.codec,
            self.sessions,
            access_ttl=timedelta(minutes=s.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=s.refresh_token_ttl_minutes),
            clock=clock,
        )
        self.verifier = TokenVerifier(self.codec, self.sessions, self.revocations)
        self.refresher = RefreshCoordinator(
            self.verifier, self.sessions, self.issuer, self.identities, clock=clock
        )
        self.auth = AuthService(
            self.identities,
            self.sessions,
            self.revocations,
            self.codec,
            self.issuer,
            self.verifier,
            self.refresher,
        )
        self.janitor = SessionJanitor(
            self.store,
            self.revocations,
            interval=s.janitor_interval_seconds,
            inactive_retention=timedelta(hours=s.inactive_session_retention_hours),
            clock=clock,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_backend=getattr(self.cache, "backend", "custom"),
            access_ttl_minutes=s.access_token_ttl_minutes,
            refresh_ttl_minutes=s.refresh_token_ttl_minutes,
        )

    def _build_store(self) -> Store:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> SessionCacheBase:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under test so each asyncio.run loop can reuse it
                if self.settings.test_mode:
                    cache: SessionCacheBase = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the session cache and revocation registry; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; session cache and "
                "revocation lookups are process-local."
            ),
            mode=fallback_mode,
        )
        return LocalCache()

    async def start(self) -> None:
        if self.settings.janitor_enabled:
            await self.janitor.start()

    async def close(self) -> None:
        await self.janitor.stop()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
