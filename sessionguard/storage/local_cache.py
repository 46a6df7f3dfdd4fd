from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from sessionguard.storage.redis_cache import SessionCacheBase


class _LocalClient:
    """Dict-backed key/value client where expiry is metadata on each entry.

    Entries are checked lazily on read; nothing is scheduled. When the
    store is full the entries closest to expiry are dropped first.
    """

    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.max_entries = max_entries

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def _evict_for_insert(self) -> None:
        now = self._clock()
        expired = [k for k, (_, deadline) in self._entries.items() if deadline <= now]
        for key in expired:
            self._entries.pop(key, None)
        if len(self._entries) < self.max_entries:
            return
        by_deadline = sorted(self._entries.items(), key=lambda item: item[1][1])
        for key, _ in by_deadline[: max(1, self.max_entries // 10)]:
            self._entries.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        ttl = ex if ex is not None else 3600
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_for_insert()
            self._entries[key] = (value, self._clock() + ttl)
        return True

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    async def exists(self, key: str) -> int:
        with self._lock:
            return 1 if self._live(key) is not None else 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LocalCache(SessionCacheBase):
    """In-process cache used when Redis is disabled for tests or local dev.

    Not shared across workers, so revocations recorded here are only
    visible to this process; the persistent revocation rows remain the
    source of truth.
    """

    backend = "local"

    def __init__(self, *, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        self.client = _LocalClient(max_entries=max_entries, clock=clock)
