"""Periodic cleanup of the in-process limit stores.

The shared store relies on native key expiry; the local stores need an
explicit sweep so memory stays bounded to active principals.
"""

from __future__ import annotations

import asyncio

from ratewarden.core.limits.engine import Clock, epoch_ms
from ratewarden.core.limits.memory import InMemoryViolationStore, InMemoryWindowCounterStore
from ratewarden.core.logging import get_logger

logger = get_logger(__name__)


class LimitStoreSweeper:
    """Background task pruning expired windows and violation records."""

    def __init__(
        self,
        window_store: InMemoryWindowCounterStore,
        violation_store: InMemoryViolationStore,
        interval_seconds: int = 300,
        clock: Clock = epoch_ms,
    ):
        self.window_store = window_store
        self.violation_store = violation_store
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    async def sweep_once(self) -> tuple[int, int]:
        """Run one sweep. Returns (windows removed, records removed)."""
        now_ms = self.clock()
        windows = await self.window_store.sweep(now_ms)
        records = await self.violation_store.sweep(now_ms)
        if windows or records:
            logger.debug(
                "Swept local limit stores",
                data={"windows_removed": windows, "records_removed": records},
            )
        return windows, records

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="limit-store-sweeper")
        logger.info("Limit store sweeper started", data={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Limit store sweeper stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.error("Limit store sweep failed", data={"error": str(exc)})
