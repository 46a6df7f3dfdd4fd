"""Background sweep that retires expired session records.

Cache entries expire on their own TTL; the janitor only deals with the
persistent store:
- session rows past ``expires_at``
- deactivated session rows older than the retention window
- revocation rows whose token has expired

Each sweep is idempotent, so running several janitors (one per worker
process) is safe.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sessionguard.logging import get_logger
from sessionguard.service.revocation import RevocationRegistry
from sessionguard.service.session_store import SessionRecordStore
from sessionguard.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60
DEFAULT_INACTIVE_RETENTION = timedelta(hours=24)
MAX_BACKOFF_SECONDS = 6 * 60 * 60


@dataclass
class SweepResult:
    sessions_deleted: int = 0
    revocations_deleted: int = 0


class SessionJanitor:
    """Periodic expired-session sweeper running on its own asyncio task."""

    def __init__(
        self,
        store: SessionRecordStore,
        revocations: Optional[RevocationRegistry] = None,
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        inactive_retention: timedelta = DEFAULT_INACTIVE_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.interval = interval
        self.inactive_retention = inactive_retention
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[SweepResult] = None

    @property
    def running(self) -> bool:
        return self._running

    def sweep(self) -> SweepResult:
        """Run one synchronous sweep against the store."""
        now = self.clock()
        result = SweepResult(
            sessions_deleted=self.store.delete_expired_sessions(
                now, inactive_before=now - self.inactive_retention
            )
        )
        if self.revocations is not None:
            result.revocations_deleted = self.revocations.purge_expired(now)
        self.last_result = result
        logger.info(
            "session_janitor_sweep",
            sessions_deleted=result.sessions_deleted,
            revocations_deleted=result.revocations_deleted,
        )
        return result

    async def run_once(self) -> SweepResult:
        # Store calls block; keep them off the event loop
        return await asyncio.to_thread(self.sweep)

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("session_janitor_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_janitor_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_janitor_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                backoff = min(MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 1)))
                logger.error(
                    "session_janitor_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                    retry_in=backoff,
                )
                await asyncio.sleep(backoff)
                continue

            await asyncio.sleep(self.interval)
