from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from pydantic import BaseModel

from campus_sync.errors import PreferenceReadError, describe
from campus_sync.models import Course, Exam
from campus_sync.notifier import Notifier
from campus_sync.preferences import PreferenceStore
from campus_sync.store import JsonFileStore

logger = logging.getLogger(__name__)

NOTIFY_PREFIX = "notify:"


class DedupCategory(str, Enum):
    LOW_ATTENDANCE = "low_attendance"
    EXAM_REMINDER = "exam_reminder"
    EXAM_DAY = "exam_day"


class NotificationDedupKey(BaseModel):
    category: DedupCategory
    date: dt.date | None = None
    course_code: str | None = None
    exam_date: dt.date | None = None

    @classmethod
    def for_day(cls, category: DedupCategory, day: dt.date) -> "NotificationDedupKey":
        return cls(category=category, date=day)

    @classmethod
    def for_exam(cls, exam: Exam) -> "NotificationDedupKey":
        return cls(category=DedupCategory.EXAM_DAY, course_code=exam.course_code, exam_date=exam.date)

    def storage_key(self) -> str:
        if self.category is DedupCategory.EXAM_DAY:
            return f"{NOTIFY_PREFIX}{self.category.value}:{self.course_code}:{self.exam_date.isoformat()}"
        return f"{NOTIFY_PREFIX}{self.category.value}:{self.date.isoformat()}"


@dataclass
class NotificationPassResult:
    sent: int = 0
    failed: int = 0
    skipped: list[str] = field(default_factory=list)

    def merge(self, other: "NotificationPassResult") -> "NotificationPassResult":
        return NotificationPassResult(
            sent=self.sent + other.sent,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
        )


def _fmt_pct(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


class NotificationEngine:
    """Decides which alerts to emit for freshly fetched data.

    Low-attendance and exam-reminder alerts are deduplicated per calendar day
    for the whole category; exam-day alerts are deduplicated per
    (course, exam date). Markers never expire; ``clear_history`` removes them.
    """

    def __init__(
        self,
        store: JsonFileStore,
        preferences: PreferenceStore,
        notifier: Notifier,
        *,
        low_attendance_threshold: float = 80.0,
        spacing_seconds: float = 1.0,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self._store = store
        self._preferences = preferences
        self._notifier = notifier
        self.low_attendance_threshold = low_attendance_threshold
        self.spacing_seconds = spacing_seconds
        self._today = today
        self._lock = asyncio.Lock()

    async def _enabled(self, read: Callable[[], Awaitable[bool]], name: str) -> bool:
        try:
            return await read()
        except PreferenceReadError as e:
            logger.warning("%s preference unreadable, using default (enabled): %s", name, e)
            return True

    async def _is_marked(self, key: NotificationDedupKey) -> bool:
        return bool(await self._store.get(key.storage_key()))

    async def _mark(self, key: NotificationDedupKey) -> None:
        await self._store.set(key.storage_key(), True)

    async def _send(self, title: str, body: str, result: NotificationPassResult) -> bool:
        if result.sent or result.failed:
            if self.spacing_seconds > 0:
                await asyncio.sleep(self.spacing_seconds)
        try:
            await self._notifier.schedule_immediate(title, body, "high")
        except Exception as e:
            result.failed += 1
            logger.error("notification %r failed: %s", title, describe(e))
            return False
        result.sent += 1
        logger.info("notification sent: %s", body)
        return True

    async def check_low_attendance(
        self, courses: list[Course], user_name: str, *, today: dt.date | None = None
    ) -> NotificationPassResult:
        result = NotificationPassResult()
        if not await self._enabled(self._preferences.attendance_enabled, "attendance"):
            result.skipped.append("low_attendance: disabled")
            return result
        if not user_name or not user_name.strip():
            result.skipped.append("low_attendance: no user name")
            return result
        low = [c for c in courses if c.percentage < self.low_attendance_threshold]
        if not low:
            return result

        day = today or self._today()
        key = NotificationDedupKey.for_day(DedupCategory.LOW_ATTENDANCE, day)
        async with self._lock:
            if await self._is_marked(key):
                result.skipped.append("low_attendance: already sent today")
                return result
            for course in low:
                await self._send(
                    "Attendance Alert",
                    f"Hey {user_name}, {course.code} is at {_fmt_pct(course.percentage)}% - Action needed!",
                    result,
                )
            if result.sent:
                await self._mark(key)
        return result

    async def check_exams(
        self, exams: list[Exam], user_name: str, *, today: dt.date | None = None
    ) -> NotificationPassResult:
        result = NotificationPassResult()
        if not await self._enabled(self._preferences.exam_enabled, "exam"):
            result.skipped.append("exams: disabled")
            return result
        if not user_name or not user_name.strip():
            result.skipped.append("exams: no user name")
            return result
        if not exams:
            return result

        day = today or self._today()
        tomorrow = day + dt.timedelta(days=1)
        async with self._lock:
            tomorrow_exams = [e for e in exams if e.date == tomorrow]
            if tomorrow_exams:
                key = NotificationDedupKey.for_day(DedupCategory.EXAM_REMINDER, day)
                if await self._is_marked(key):
                    result.skipped.append("exam_reminder: already sent today")
                else:
                    before = result.sent
                    for exam in tomorrow_exams:
                        await self._send(
                            "Exam Reminder",
                            f"Hey {user_name}, {exam.course_code} exam tomorrow at {exam.time}",
                            result,
                        )
                    if result.sent > before:
                        await self._mark(key)

            for exam in exams:
                if exam.date != day:
                    continue
                key = NotificationDedupKey.for_exam(exam)
                if await self._is_marked(key):
                    result.skipped.append(f"exam_day: {exam.course_code} already sent")
                    continue
                if await self._send("Exam Today", f"Hey {user_name}, {exam.course_code} exam time", result):
                    await self._mark(key)
        return result

    async def run(
        self,
        *,
        attendance: list[Course] | None,
        exams: list[Exam] | None,
        user_name: str,
        today: dt.date | None = None,
    ) -> NotificationPassResult:
        result = NotificationPassResult()
        if attendance is not None:
            result = result.merge(await self.check_low_attendance(attendance, user_name, today=today))
        if exams is not None:
            result = result.merge(await self.check_exams(exams, user_name, today=today))
        return result

    async def clear_history(self) -> None:
        keys = await self._store.keys(NOTIFY_PREFIX)
        await self._store.delete_many(keys)
        logger.info("notification history cleared (%d markers)", len(keys))
