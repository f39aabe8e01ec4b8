from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from campus_sync.cache import TtlCache
from campus_sync.credentials import CredentialStore
from campus_sync.crypto_store import SecretBox
from campus_sync.executor import BackgroundExecutor
from campus_sync.models import CacheKind, Course, Credentials, Exam, InternalsRecord, Semester
from campus_sync.notifications import NotificationEngine
from campus_sync.preferences import PreferenceStore
from campus_sync.store import JsonFileStore
from campus_sync.trigger import RefreshTrigger

TZ = dt.timezone(dt.timedelta(hours=5, minutes=30))


class Clock:
    def __init__(self, start: dt.datetime) -> None:
        self.current = start

    def now(self) -> dt.datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def today(self) -> dt.date:
        return self.current.date()

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + dt.timedelta(**kwargs)


@dataclass
class RecordingNotifier:
    sent: list[tuple[str, str, str]] = field(default_factory=list)
    fail_on: set[str] = field(default_factory=set)

    async def schedule_immediate(self, title: str, body: str, priority: str = "high") -> None:
        if any(token in body for token in self.fail_on):
            raise RuntimeError("delivery refused")
        self.sent.append((title, body, priority))


def default_payloads(today: dt.date) -> dict[CacheKind, Any]:
    return {
        CacheKind.ATTENDANCE: [
            Course(code="CS101", total=40, present=38, absent=2, percentage=95.0),
            Course(code="MA102", total=40, present=28, absent=12, percentage=70.0),
        ],
        CacheKind.EXAM_SCHEDULE: [
            Exam(course_code="PH103", date=today + dt.timedelta(days=1), time="10:00 AM"),
            Exam(course_code="CH104", date=today + dt.timedelta(days=10), time="2:00 PM"),
        ],
        CacheKind.INTERNALS: [InternalsRecord(course="CS101", marks=["18", "19"])],
        CacheKind.CGPA: [Semester(semester="1", gpa="8.5", cgpa="8.5", credits="22")],
        CacheKind.GREETING: "Good Morning, Jane Doe!",
    }


class StubGateway:
    """In-memory gateway. A value that is an exception is raised instead of returned."""

    def __init__(self, results: dict[CacheKind, Any]) -> None:
        self.results = dict(results)
        self.calls: list[str] = []
        self.login_error: Exception | None = None
        self.hang: set[CacheKind] = set()

    async def _answer(self, kind: CacheKind) -> Any:
        self.calls.append(kind.value)
        if kind in self.hang:
            await asyncio.Event().wait()
        value = self.results[kind]
        if isinstance(value, Exception):
            raise value
        return value

    async def login(self, credentials: Credentials) -> Any:
        self.calls.append("login")
        if self.login_error is not None:
            raise self.login_error
        return {"ok": True}

    async def fetch_attendance(self, credentials: Credentials):
        return await self._answer(CacheKind.ATTENDANCE)

    async def fetch_exam_schedule(self, credentials: Credentials):
        return await self._answer(CacheKind.EXAM_SCHEDULE)

    async def fetch_internals(self, credentials: Credentials):
        return await self._answer(CacheKind.INTERNALS)

    async def fetch_cgpa(self, credentials: Credentials):
        return await self._answer(CacheKind.CGPA)

    async def fetch_greeting(self, credentials: Credentials):
        return await self._answer(CacheKind.GREETING)


@dataclass
class Harness:
    clock: Clock
    store: JsonFileStore
    credentials: CredentialStore
    cache: TtlCache
    preferences: PreferenceStore
    notifier: RecordingNotifier
    engine: NotificationEngine
    gateway: StubGateway
    executor: BackgroundExecutor
    trigger: RefreshTrigger

    async def login_as(self, user_id: str = "21CS1001", secret: str = "secret-pass") -> Credentials:
        creds = Credentials(user_id=user_id, secret=secret)
        await self.credentials.save(creds, login_time=self.clock.time())
        return creds


def build_harness(data_dir: Path, start: dt.datetime, *, timeout_seconds: float = 5.0) -> Harness:
    clock = Clock(start)
    store = JsonFileStore(data_dir / "store.json")
    credentials = CredentialStore(store, SecretBox(data_dir))
    cache = TtlCache(store, ttl_hours=24, clock=clock.time)
    preferences = PreferenceStore(store)
    notifier = RecordingNotifier()
    engine = NotificationEngine(store, preferences, notifier, spacing_seconds=0, today=clock.today)
    gateway = StubGateway(default_payloads(start.date()))
    executor = BackgroundExecutor(
        gateway=gateway,
        cache=cache,
        credentials=credentials,
        engine=engine,
        timeout_seconds=timeout_seconds,
        clock=clock.time,
    )
    trigger = RefreshTrigger(store=store, executor=executor, now=clock.now)
    return Harness(
        clock=clock,
        store=store,
        credentials=credentials,
        cache=cache,
        preferences=preferences,
        notifier=notifier,
        engine=engine,
        gateway=gateway,
        executor=executor,
        trigger=trigger,
    )


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return build_harness(tmp_path / "data", dt.datetime(2026, 3, 10, 9, 0, tzinfo=TZ))
