"""Cancellable periodic task."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from relaypay.core.logging import get_logger


class PeriodicTask:
    """
    Runs ``tick`` every ``interval`` seconds until stopped.

    The tick contract: ``tick`` runs once immediately on ``start``, ticks never
    overlap, and an exception from ``tick`` is logged without stopping the
    loop. ``stop`` lets an in-progress tick finish.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[object]],
        interval: float,
    ) -> None:
        self.name = name
        self._tick = tick
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._logger = get_logger(f"periodic.{name}")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        self._logger.info(f"Started ({self._interval:g}s interval)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        self._logger.info("Stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._tick()
            except Exception as e:
                self._logger.error(f"Tick failed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
