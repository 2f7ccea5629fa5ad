"""Periodic cleanup of expired revocation and reset records.

Three sweeps run on their own intervals:

- blacklist entries past their expiry (daily by default)
- password reset records past their expiry (daily by default)
- consumed reset records older than the retention window (weekly by default)

The worker polls every ``poll_interval`` seconds and runs whichever sweeps are
due. Store calls are blocking, so each sweep runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional

from inkwell.logging import get_logger
from inkwell.service.password_reset import PasswordResetService
from inkwell.service.token_blacklist import TokenBlacklistService

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 300
HOUR = 3600


class MaintenanceWorker:
    def __init__(
        self,
        store,
        blacklist: TokenBlacklistService,
        resets: PasswordResetService,
        *,
        poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS,
        blacklist_interval: int = 24 * HOUR,
        reset_interval: int = 24 * HOUR,
        used_reset_interval: int = 7 * 24 * HOUR,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.blacklist = blacklist
        self.resets = resets
        self.poll_interval = poll_interval
        self._clock = clock
        self._sweeps: Dict[str, tuple[int, Callable[[], int]]] = {
            "blacklist_expired": (blacklist_interval, self.blacklist.cleanup_expired_tokens),
            "resets_expired": (reset_interval, self.resets.cleanup_expired_tokens),
            "resets_used": (used_reset_interval, self.resets.cleanup_used_tokens),
        }
        self._last_run: Dict[str, float] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    def _due(self, name: str, interval: int, now: float) -> bool:
        if interval <= 0:
            return False
        last = self._last_run.get(name)
        return last is None or (now - last) >= interval

    async def run_due_tasks(self) -> Dict[str, int]:
        """Run every sweep whose interval has elapsed; returns removed counts by sweep."""
        results: Dict[str, int] = {}
        now = self._clock()
        for name, (interval, sweep) in self._sweeps.items():
            if not self._due(name, interval, now):
                continue
            self._last_run[name] = now
            results[name] = await asyncio.to_thread(sweep)
        if results:
            await self._log_stats()
        return results

    async def _log_stats(self) -> None:
        entries = await asyncio.to_thread(self.blacklist.count)
        pending = await asyncio.to_thread(self.store.list_users_with_pending_reset)
        logger.info(
            "maintenance_stats",
            blacklist_entries=entries,
            users_with_pending_reset=len(pending),
        )

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_due_tasks()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(3600, self.poll_interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "maintenance_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.poll_interval)
