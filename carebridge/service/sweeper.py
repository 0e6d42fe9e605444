"""Owned background task that periodically evicts stale guard state."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from carebridge.logging import get_logger

logger = get_logger(__name__)


class PeriodicSweeper:
    """Run ``sweep`` every ``interval_seconds`` until stopped.

    ``run_once`` performs a single pass synchronously so tests can drive
    eviction without waiting on the loop. Failures are logged and the loop
    keeps going.
    """

    def __init__(self, name: str, sweep: Callable[[], int], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self.runs = 0
        self.failures = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self) -> int:
        self.runs += 1
        try:
            removed = self.sweep()
        except Exception as exc:
            self.failures += 1
            logger.error(
                "sweep_failed",
                sweeper=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0
        if removed:
            logger.info("sweep_completed", sweeper=self.name, removed=removed)
        return removed

    async def start(self) -> None:
        if self._running:
            logger.warning("sweeper_already_running", sweeper=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("sweeper_started", sweeper=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("sweeper_stopped", sweeper=self.name)

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            if not self._running:
                break
            self.run_once()
