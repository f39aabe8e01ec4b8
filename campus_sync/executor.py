from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from campus_sync.cache import MISS, TtlCache
from campus_sync.credentials import CredentialStore
from campus_sync.errors import CredentialsMissing, GatewayError, NetworkError, describe
from campus_sync.gateway import DataGateway
from campus_sync.models import CacheKind, Credentials, first_name_from_greeting
from campus_sync.notifications import NotificationEngine, NotificationPassResult

logger = logging.getLogger(__name__)


@dataclass
class KindOutcome:
    kind: CacheKind
    ok: bool
    error: str | None = None
    error_type: str | None = None
    duration_ms: float = 0.0


@dataclass
class RefreshReport:
    started_at: float
    finished_at: float | None = None
    outcomes: dict[CacheKind, KindOutcome] = field(default_factory=dict)
    notifications: NotificationPassResult | None = None

    @property
    def succeeded(self) -> list[CacheKind]:
        return [k for k, o in self.outcomes.items() if o.ok]

    @property
    def failed(self) -> list[CacheKind]:
        return [k for k, o in self.outcomes.items() if not o.ok]

    @property
    def notifications_sent(self) -> int:
        return self.notifications.sent if self.notifications else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "succeeded": [k.value for k in self.succeeded],
            "failed": {k.value: self.outcomes[k].error for k in self.failed},
            "notifications_sent": self.notifications_sent,
        }


class BackgroundExecutor:
    def __init__(
        self,
        *,
        gateway: DataGateway,
        cache: TtlCache,
        credentials: CredentialStore,
        engine: NotificationEngine,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._credentials = credentials
        self._engine = engine
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def _fetchers(self) -> dict[CacheKind, Callable[[Credentials], Awaitable[Any]]]:
        return {
            CacheKind.ATTENDANCE: self._gateway.fetch_attendance,
            CacheKind.EXAM_SCHEDULE: self._gateway.fetch_exam_schedule,
            CacheKind.INTERNALS: self._gateway.fetch_internals,
            CacheKind.CGPA: self._gateway.fetch_cgpa,
            CacheKind.GREETING: self._gateway.fetch_greeting,
        }

    async def _fetch_one(
        self,
        kind: CacheKind,
        fetch: Callable[[Credentials], Awaitable[Any]],
        credentials: Credentials,
        payloads: dict[CacheKind, Any],
    ) -> KindOutcome:
        start = time.perf_counter()
        try:
            try:
                result = await asyncio.wait_for(fetch(credentials), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                raise NetworkError(f"{kind.value} timed out after {self.timeout_seconds:g}s") from e
            await self._cache.set(kind, result)
        except GatewayError as e:
            logger.warning("refresh of %s failed: %s", kind.value, describe(e))
            return KindOutcome(kind, ok=False, error=str(e), error_type=type(e).__name__,
                               duration_ms=(time.perf_counter() - start) * 1000.0)
        except Exception as e:
            logger.exception("unexpected error refreshing %s", kind.value)
            return KindOutcome(kind, ok=False, error=describe(e), error_type=type(e).__name__,
                               duration_ms=(time.perf_counter() - start) * 1000.0)
        payloads[kind] = result
        return KindOutcome(kind, ok=True, duration_ms=(time.perf_counter() - start) * 1000.0)

    async def _user_name(self, payloads: dict[CacheKind, Any]) -> str:
        greeting = payloads.get(CacheKind.GREETING)
        if greeting is None:
            cached = await self._cache.get(CacheKind.GREETING)
            greeting = None if cached is MISS else cached
        return first_name_from_greeting(greeting)

    async def run_full_refresh(self, credentials: Credentials | None = None) -> RefreshReport:
        creds = credentials or await self._credentials.load()
        if creds is None:
            raise CredentialsMissing()

        report = RefreshReport(started_at=self._clock())
        payloads: dict[CacheKind, Any] = {}
        outcomes = await asyncio.gather(
            *(self._fetch_one(kind, fetch, creds, payloads) for kind, fetch in self._fetchers().items())
        )
        report.outcomes = {o.kind: o for o in outcomes}
        logger.info(
            "refresh finished: ok=%s failed=%s",
            [k.value for k in report.succeeded],
            [k.value for k in report.failed],
        )

        if CacheKind.ATTENDANCE in payloads or CacheKind.EXAM_SCHEDULE in payloads:
            try:
                report.notifications = await self._engine.run(
                    attendance=payloads.get(CacheKind.ATTENDANCE),
                    exams=payloads.get(CacheKind.EXAM_SCHEDULE),
                    user_name=await self._user_name(payloads),
                )
            except Exception:
                logger.exception("notification pass failed")
        report.finished_at = self._clock()
        return report
