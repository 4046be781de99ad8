"""
Periodic tasks: fixed-interval background loops.

Used for the scheduler's sweep/reaper/retention passes and for the
domain sweeps (hourly flag reconciliation, overdue-ticket alerts,
ticket auto-close). One failing pass is logged and the loop carries on.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class PeriodicTask:
    """
    Runs ``func`` every ``interval_seconds`` until stopped.

    Usage:
        task = PeriodicTask("flag_sweep", tracker.reconcile_all, 3600)
        await task.start_background()
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        initial_delay_seconds: float = 0,
    ):
        self.name = name
        self.func = func
        self.interval = interval_seconds
        self.initial_delay = initial_delay_seconds
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> Any:
        result = await self.func()
        self.runs += 1
        return result

    async def _run(self):
        logger.info("periodic_task_started", task=self.name, interval=self.interval)
        if self.initial_delay:
            await asyncio.sleep(self.initial_delay)
        while True:
            try:
                result = await self.run_once()
                logger.debug("periodic_task_ran", task=self.name, result=result)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("periodic_task_error", task=self.name, error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)
