from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from campus_sync.errors import CredentialsMissing
from campus_sync.executor import BackgroundExecutor, RefreshReport
from campus_sync.models import ScheduleType
from campus_sync.store import JsonFileStore

logger = logging.getLogger(__name__)

MARKER_PREFIX = "refresh:"
WINDOW_HOURS = {0: ScheduleType.MIDNIGHT, 17: ScheduleType.AFTERNOON}


class RefreshMarker(BaseModel):
    schedule_type: ScheduleType
    last_run_date: dt.date | None = None
    claimed_date: dt.date | None = None
    claimed_at: float | None = None


def _marker_key(schedule_type: ScheduleType) -> str:
    return f"{MARKER_PREFIX}{schedule_type.value}"


def _parse_marker(schedule_type: ScheduleType, raw: Any) -> RefreshMarker:
    if raw is None:
        return RefreshMarker(schedule_type=schedule_type)
    try:
        return RefreshMarker.model_validate(raw)
    except ValidationError:
        logger.warning("resetting unreadable %s marker", schedule_type.value)
        return RefreshMarker(schedule_type=schedule_type)


def in_window(now: dt.datetime, window_minutes: int = 30) -> ScheduleType | None:
    schedule_type = WINDOW_HOURS.get(now.hour)
    if schedule_type is None or now.minute > window_minutes:
        return None
    return schedule_type


class RefreshTrigger:
    """Runs the full refresh at most once per window per calendar day.

    The marker for a window is claimed atomically before the refresh body
    runs, so concurrent callers (foreground timer, background task) cannot
    both start a cycle. ``last_run_date`` is written only once the cycle
    completes; a cycle aborted for missing credentials releases its claim.
    """

    def __init__(
        self,
        *,
        store: JsonFileStore,
        executor: BackgroundExecutor,
        window_minutes: int = 30,
        claim_timeout_seconds: float = 600.0,
        now: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self._store = store
        self._executor = executor
        self.window_minutes = window_minutes
        self.claim_timeout_seconds = claim_timeout_seconds
        self._now = now

    def in_window(self, now: dt.datetime) -> ScheduleType | None:
        return in_window(now, self.window_minutes)

    async def marker(self, schedule_type: ScheduleType) -> RefreshMarker:
        return _parse_marker(schedule_type, await self._store.get(_marker_key(schedule_type)))

    async def already_ran_today(self, schedule_type: ScheduleType, today: dt.date | None = None) -> bool:
        day = today or self._now().date()
        return (await self.marker(schedule_type)).last_run_date == day

    async def _claim(self, schedule_type: ScheduleType, today: dt.date, now_ts: float) -> bool:
        def fn(raw: Any) -> tuple[Any, bool]:
            m = _parse_marker(schedule_type, raw)
            if m.last_run_date == today:
                return raw, False
            if m.claimed_date == today and m.claimed_at is not None:
                if now_ts - m.claimed_at < self.claim_timeout_seconds:
                    return raw, False
                logger.warning("reclaiming abandoned %s refresh claim", schedule_type.value)
            m = m.model_copy(update={"claimed_date": today, "claimed_at": now_ts})
            return m.model_dump(mode="json"), True

        return await self._store.update(_marker_key(schedule_type), fn)

    async def _finish(self, schedule_type: ScheduleType, today: dt.date, *, completed: bool) -> None:
        def fn(raw: Any) -> tuple[Any, None]:
            m = _parse_marker(schedule_type, raw)
            update: dict[str, Any] = {"claimed_date": None, "claimed_at": None}
            if completed:
                update["last_run_date"] = today
            return m.model_copy(update=update).model_dump(mode="json"), None

        await self._store.update(_marker_key(schedule_type), fn)

    async def maybe_refresh(self, now: dt.datetime | None = None) -> RefreshReport | None:
        now = now or self._now()
        schedule_type = self.in_window(now)
        if schedule_type is None:
            return None
        today = now.date()
        if not await self._claim(schedule_type, today, now.timestamp()):
            logger.debug("%s refresh already ran or is running for %s", schedule_type.value, today)
            return None

        logger.info("starting scheduled %s refresh", schedule_type.value)
        try:
            report = await self._executor.run_full_refresh()
        except asyncio.CancelledError:
            await self._finish(schedule_type, today, completed=False)
            raise
        except CredentialsMissing as e:
            logger.warning("scheduled %s refresh skipped: %s", schedule_type.value, e)
            await self._finish(schedule_type, today, completed=False)
            return None
        except Exception:
            logger.exception("scheduled %s refresh crashed", schedule_type.value)
            await self._finish(schedule_type, today, completed=False)
            return None
        await self._finish(schedule_type, today, completed=True)
        return report

    async def status(self) -> dict[str, str | None]:
        out: dict[str, str | None] = {}
        for schedule_type in ScheduleType:
            m = await self.marker(schedule_type)
            out[schedule_type.value] = m.last_run_date.isoformat() if m.last_run_date else None
        return out

    async def clear_history(self) -> None:
        await self._store.delete_many([_marker_key(s) for s in ScheduleType])
