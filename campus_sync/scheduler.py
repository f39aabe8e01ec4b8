from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol
from zoneinfo import ZoneInfo

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from campus_sync.trigger import RefreshTrigger

logger = logging.getLogger(__name__)

BACKGROUND_TASK_ID = "background-refresh-task"


class SchedulerBackend(Protocol):
    @property
    def running(self) -> bool: ...

    def start(self) -> None: ...

    async def stop(self) -> None: ...


async def _tick(trigger: RefreshTrigger, source: str) -> None:
    try:
        await trigger.maybe_refresh()
    except Exception:
        logger.exception("%s refresh tick failed", source)


class ForegroundIntervalBackend:
    """Polls the trigger while the app is in the foreground."""

    def __init__(self, trigger: RefreshTrigger, *, interval_seconds: float = 300.0) -> None:
        self._trigger = trigger
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await _tick(self._trigger, "foreground")
            await asyncio.sleep(self.interval_seconds)


class ApsBackgroundScheduler:
    """Opportunistic task runner standing in for the OS background scheduler."""

    def __init__(self, *, timezone: str, interval_minutes: int = 15) -> None:
        self.interval_minutes = interval_minutes
        self._scheduler = AsyncIOScheduler(timezone=ZoneInfo(timezone))

    def register(self, task_id: str, callback: Callable[[], Awaitable[Any]]) -> None:
        self._scheduler.add_job(
            callback,
            trigger="interval",
            minutes=self.interval_minutes,
            id=task_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()

    def unregister(self, task_id: str) -> None:
        try:
            self._scheduler.remove_job(task_id)
        except JobLookupError:
            pass

    def is_registered(self, task_id: str) -> bool:
        return self._scheduler.get_job(task_id) is not None

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)


class BackgroundTaskBackend:
    """Registers the periodic background task and owns the cycles it starts.

    ``stop`` unregisters the task and cancels any cycle still in flight, so
    nothing is written to the cache after the caller moves on.
    """

    def __init__(
        self,
        trigger: RefreshTrigger,
        os_scheduler: ApsBackgroundScheduler,
        *,
        task_id: str = BACKGROUND_TASK_ID,
    ) -> None:
        self._trigger = trigger
        self._os_scheduler = os_scheduler
        self.task_id = task_id
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._os_scheduler.is_registered(self.task_id)

    def start(self) -> None:
        if self.running:
            return
        self._os_scheduler.register(self.task_id, self._run)

    async def stop(self) -> None:
        self._os_scheduler.unregister(self.task_id)
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self) -> None:
        task = asyncio.create_task(_tick(self._trigger, "background"))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            logger.info("background refresh cycle cancelled")
