from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable

from campus_sync.cache import TtlCache
from campus_sync.credentials import CredentialStore, validate_credentials
from campus_sync.errors import describe
from campus_sync.executor import BackgroundExecutor, RefreshReport
from campus_sync.gateway import DataGateway
from campus_sync.scheduler import SchedulerBackend

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True)
class SessionState:
    phase: SessionPhase = SessionPhase.UNINITIALIZED
    user_id: str | None = None
    last_login_time: float | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.phase is SessionPhase.AUTHENTICATED

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value
        return d


Listener = Callable[[SessionState], None]


class SessionTransitionError(RuntimeError):
    pass


class SessionManager:
    def __init__(
        self,
        *,
        credentials: CredentialStore,
        gateway: DataGateway,
        cache: TtlCache,
        executor: BackgroundExecutor,
        foreground: SchedulerBackend,
        background: SchedulerBackend,
        cache_ttl_hours: float = 24.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._gateway = gateway
        self._cache = cache
        self._executor = executor
        self._foreground = foreground
        self._background = background
        self.cache_ttl_hours = cache_ttl_hours
        self._clock = clock
        self._state = SessionState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, state: SessionState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("session listener failed")

    def _start_schedulers(self) -> None:
        self._foreground.start()
        self._background.start()

    async def _stop_schedulers(self) -> None:
        await self._foreground.stop()
        await self._background.stop()

    async def initialize(self) -> SessionState:
        self._set(SessionState(phase=SessionPhase.LOADING))
        creds = await self._credentials.load()
        if creds is None:
            self._set(SessionState(phase=SessionPhase.UNAUTHENTICATED))
            return self._state
        self._start_schedulers()
        self._set(
            SessionState(
                phase=SessionPhase.AUTHENTICATED,
                user_id=creds.user_id,
                last_login_time=await self._credentials.login_time(),
            )
        )
        return self._state

    async def login(self, user_id: str, secret: str) -> RefreshReport | None:
        if self._state.phase is SessionPhase.LOADING:
            raise SessionTransitionError("a session transition is already in progress")
        if self._state.is_authenticated:
            raise SessionTransitionError("already logged in; log out first")
        creds = validate_credentials(user_id, secret)

        self._set(SessionState(phase=SessionPhase.LOADING))
        try:
            await self._gateway.login(creds)
        except Exception:
            self._set(SessionState(phase=SessionPhase.UNAUTHENTICATED))
            raise

        login_time = self._clock()
        await self._credentials.save(creds, login_time=login_time)

        report: RefreshReport | None = None
        try:
            report = await self._executor.run_full_refresh(creds)
        except Exception as e:
            logger.warning("warm-up refresh after login failed: %s", describe(e))

        self._start_schedulers()
        self._set(SessionState(phase=SessionPhase.AUTHENTICATED, user_id=creds.user_id, last_login_time=login_time))
        return report

    async def logout(self) -> None:
        if self._state.phase is SessionPhase.LOADING:
            raise SessionTransitionError("a session transition is already in progress")
        self._set(SessionState(phase=SessionPhase.LOADING))
        try:
            await self._stop_schedulers()
            await self._cache.clear_all()
            await self._credentials.clear()
        finally:
            self._set(SessionState(phase=SessionPhase.UNAUTHENTICATED))

    async def force_refresh(self) -> RefreshReport:
        return await self._executor.run_full_refresh()

    async def cache_status(self) -> dict[str, Any]:
        status = await self._cache.status()
        status["is_stale"] = await self._cache.is_stale(self.cache_ttl_hours)
        return status

    def on_foreground(self) -> None:
        if self._state.is_authenticated:
            self._foreground.start()

    async def on_background(self) -> None:
        await self._foreground.stop()

    async def shutdown(self) -> None:
        await self._stop_schedulers()
