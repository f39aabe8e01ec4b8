import asyncio
import datetime as dt

import pytest

from campus_sync.cache import MISS
from campus_sync.errors import HttpStatusError, InvalidCredentials, NetworkError
from campus_sync.models import CacheKind, ScheduleType
from campus_sync.scheduler import ApsBackgroundScheduler, BackgroundTaskBackend
from campus_sync.session import SessionManager, SessionPhase, SessionTransitionError

from conftest import TZ, build_harness


class _FakeBackend:
    def __init__(self) -> None:
        self.running = False
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1
        self.running = True

    async def stop(self) -> None:
        self.stops += 1
        self.running = False


def _manager(h) -> tuple[SessionManager, _FakeBackend, _FakeBackend, list]:
    fg, bg = _FakeBackend(), _FakeBackend()
    manager = SessionManager(
        credentials=h.credentials,
        gateway=h.gateway,
        cache=h.cache,
        executor=h.executor,
        foreground=fg,
        background=bg,
        clock=h.clock.time,
    )
    seen = []
    manager.subscribe(lambda state: seen.append(state.phase))
    return manager, fg, bg, seen


def test_initialize_without_credentials_makes_no_calls(harness) -> None:
    manager, fg, bg, seen = _manager(harness)

    state = asyncio.run(manager.initialize())
    assert state.phase is SessionPhase.UNAUTHENTICATED
    assert seen == [SessionPhase.LOADING, SessionPhase.UNAUTHENTICATED]
    assert harness.gateway.calls == []
    assert fg.starts == 0 and bg.starts == 0


def test_initialize_with_stored_credentials_starts_schedulers(harness) -> None:
    manager, fg, bg, seen = _manager(harness)

    async def scenario():
        await harness.login_as("21CS1001")
        return await manager.initialize()

    state = asyncio.run(scenario())
    assert state.phase is SessionPhase.AUTHENTICATED
    assert state.user_id == "21CS1001"
    assert state.last_login_time == harness.clock.time()
    assert fg.running and bg.running
    assert harness.gateway.calls == []


def test_login_warms_cache_and_authenticates(harness) -> None:
    manager, fg, bg, seen = _manager(harness)

    async def scenario():
        await manager.initialize()
        report = await manager.login("21CS1001", "secret-pass")
        stored = await harness.credentials.load()
        return report, stored, await harness.cache.get(CacheKind.CGPA)

    report, stored, cgpa = asyncio.run(scenario())
    assert report is not None and report.failed == []
    assert stored.user_id == "21CS1001" and stored.secret == "secret-pass"
    assert cgpa is not MISS
    assert harness.gateway.calls[0] == "login"
    assert manager.state.phase is SessionPhase.AUTHENTICATED
    assert seen[-2:] == [SessionPhase.LOADING, SessionPhase.AUTHENTICATED]
    assert fg.running and bg.running


def test_warmup_failure_does_not_block_login(harness) -> None:
    for kind in CacheKind:
        harness.gateway.results[kind] = NetworkError("offline")
    manager, fg, bg, _ = _manager(harness)

    report = asyncio.run(manager.login("21CS1001", "secret-pass"))
    assert set(report.failed) == set(CacheKind)
    assert manager.state.phase is SessionPhase.AUTHENTICATED


def test_rejected_login_ends_unauthenticated(harness) -> None:
    harness.gateway.login_error = HttpStatusError(401, "/login")
    manager, fg, bg, seen = _manager(harness)

    async def scenario():
        with pytest.raises(HttpStatusError):
            await manager.login("21CS1001", "wrong-pass")
        return await harness.credentials.load()

    assert asyncio.run(scenario()) is None
    assert manager.state.phase is SessionPhase.UNAUTHENTICATED
    assert fg.starts == 0


def test_invalid_format_is_rejected_before_loading(harness) -> None:
    manager, _, _, seen = _manager(harness)

    with pytest.raises(InvalidCredentials):
        asyncio.run(manager.login("bad id!", "secret-pass"))
    with pytest.raises(InvalidCredentials):
        asyncio.run(manager.login("21CS1001", "123"))
    assert seen == []
    assert harness.gateway.calls == []


def test_logout_clears_everything(harness) -> None:
    manager, fg, bg, seen = _manager(harness)

    async def scenario():
        await manager.login("21CS1001", "secret-pass")
        await manager.logout()
        return await harness.credentials.load(), await harness.cache.last_update(), await harness.store.keys("cache:")

    creds, last_update, cache_keys = asyncio.run(scenario())
    assert creds is None
    assert last_update is None and cache_keys == []
    assert manager.state.phase is SessionPhase.UNAUTHENTICATED
    assert not fg.running and not bg.running
    assert seen[-2:] == [SessionPhase.LOADING, SessionPhase.UNAUTHENTICATED]


def test_login_twice_requires_logout(harness) -> None:
    manager, _, _, _ = _manager(harness)

    async def scenario():
        await manager.login("21CS1001", "secret-pass")
        with pytest.raises(SessionTransitionError):
            await manager.login("21CS1002", "secret-pass")

    asyncio.run(scenario())
    assert manager.state.user_id == "21CS1001"


def test_subscriber_errors_are_contained_and_unsubscribe_works(harness) -> None:
    manager, _, _, seen = _manager(harness)

    def broken(state):
        raise ValueError("ui went away")

    manager.subscribe(broken)
    extra = []
    unsubscribe = manager.subscribe(extra.append)
    asyncio.run(manager.initialize())
    unsubscribe()
    asyncio.run(manager.initialize())

    assert len(extra) == 2
    assert len(seen) == 4


def test_foreground_toggles_only_when_authenticated(harness) -> None:
    manager, fg, _, _ = _manager(harness)

    async def scenario():
        manager.on_foreground()
        started_while_logged_out = fg.starts
        await manager.login("21CS1001", "secret-pass")
        await manager.on_background()
        stopped = not fg.running
        manager.on_foreground()
        return started_while_logged_out, stopped

    started, stopped = asyncio.run(scenario())
    assert started == 0
    assert stopped
    assert fg.running


def test_force_refresh_and_cache_status(harness) -> None:
    manager, _, _, _ = _manager(harness)

    async def scenario():
        await harness.login_as()
        report = await manager.force_refresh()
        return report, await manager.cache_status()

    report, status = asyncio.run(scenario())
    assert report.failed == []
    assert status["is_stale"] is False
    assert status["last_update"] == harness.clock.time()


def test_logout_cancels_background_cycle_in_flight(tmp_path) -> None:
    h = build_harness(tmp_path / "data", dt.datetime(2026, 3, 10, 0, 5, tzinfo=TZ))
    h.gateway.hang.add(CacheKind.ATTENDANCE)

    async def scenario():
        os_scheduler = ApsBackgroundScheduler(timezone="Asia/Kolkata")
        background = BackgroundTaskBackend(h.trigger, os_scheduler)
        manager = SessionManager(
            credentials=h.credentials,
            gateway=h.gateway,
            cache=h.cache,
            executor=h.executor,
            foreground=_FakeBackend(),
            background=background,
            clock=h.clock.time,
        )
        await h.login_as()
        await manager.initialize()
        cycle = asyncio.create_task(background._run())
        await asyncio.sleep(0.05)
        await manager.logout()
        await cycle
        os_scheduler.shutdown()
        return (
            await h.store.keys("cache:"),
            await h.trigger.marker(ScheduleType.MIDNIGHT),
            background.running,
        )

    cache_keys, marker, registered = asyncio.run(scenario())
    assert "attendance" in h.gateway.calls
    assert cache_keys == []
    assert marker.last_run_date is None and marker.claimed_date is None
    assert h.notifier.sent == []
    assert registered is False
