import asyncio

import pytest

from campus_sync.cache import MISS
from campus_sync.errors import NetworkError
from campus_sync.models import CacheKind, Course


def test_set_then_get_returns_payload(harness) -> None:
    courses = [Course(code="CS101", total=10, present=9, absent=1, percentage=90.0)]

    async def scenario():
        await harness.cache.set(CacheKind.ATTENDANCE, courses)
        await harness.cache.set(CacheKind.GREETING, "Good Evening, Ravi!")
        return await harness.cache.get(CacheKind.ATTENDANCE), await harness.cache.get(CacheKind.GREETING)

    attendance, greeting = asyncio.run(scenario())
    assert attendance == courses
    assert greeting == "Good Evening, Ravi!"


def test_entry_expires_after_24h_but_stays_stored(harness) -> None:
    async def scenario():
        await harness.cache.set(CacheKind.GREETING, "hi")
        harness.clock.advance(hours=23, minutes=59)
        before = await harness.cache.get(CacheKind.GREETING)
        harness.clock.advance(minutes=1)
        after = await harness.cache.get(CacheKind.GREETING)
        raw = await harness.store.get("cache:greeting")
        return before, after, raw

    before, after, raw = asyncio.run(scenario())
    assert before == "hi"
    assert after is MISS
    assert raw is not None


def test_get_or_fetch_uses_cache_on_hit(harness) -> None:
    calls = []

    async def fetch():
        calls.append(1)
        return "fetched"

    async def scenario():
        first = await harness.cache.get_or_fetch(CacheKind.GREETING, fetch)
        second = await harness.cache.get_or_fetch(CacheKind.GREETING, fetch)
        return first, second

    assert asyncio.run(scenario()) == ("fetched", "fetched")
    assert len(calls) == 1


def test_get_or_fetch_does_not_cache_failures(harness) -> None:
    async def failing():
        raise NetworkError("down")

    async def scenario():
        with pytest.raises(NetworkError):
            await harness.cache.get_or_fetch(CacheKind.CGPA, failing)
        return await harness.cache.get(CacheKind.CGPA), await harness.cache.last_update()

    value, last_update = asyncio.run(scenario())
    assert value is MISS
    assert last_update is None


def test_clear_all_and_is_stale(harness) -> None:
    async def scenario():
        stale_empty = await harness.cache.is_stale(24)
        await harness.cache.set(CacheKind.GREETING, "hi")
        fresh = await harness.cache.is_stale(24)
        harness.clock.advance(hours=2)
        stale_short = await harness.cache.is_stale(1)
        await harness.cache.clear_all()
        cleared = await harness.cache.get(CacheKind.GREETING), await harness.cache.last_update()
        return stale_empty, fresh, stale_short, cleared

    stale_empty, fresh, stale_short, cleared = asyncio.run(scenario())
    assert stale_empty is True
    assert fresh is False
    assert stale_short is True
    assert cleared == (MISS, None)


def test_clear_all_keeps_non_cache_keys(harness) -> None:
    async def scenario():
        await harness.cache.set(CacheKind.GREETING, "hi")
        await harness.store.set("notify:low_attendance:2026-03-10", True)
        await harness.cache.clear_all()
        return await harness.store.keys()

    assert asyncio.run(scenario()) == ["notify:low_attendance:2026-03-10"]


def test_unreadable_entry_reads_as_miss(harness) -> None:
    async def scenario():
        entry = {"kind": "attendance", "payload": "nope", "fetched_at": harness.clock.time()}
        await harness.store.set("cache:attendance", entry)
        return await harness.cache.get(CacheKind.ATTENDANCE)

    assert asyncio.run(scenario()) is MISS


def test_status_reports_each_kind(harness) -> None:
    async def scenario():
        await harness.cache.set(CacheKind.GREETING, "hi")
        return await harness.cache.status()

    status = asyncio.run(scenario())
    assert status["is_stale"] is False
    assert status["kinds"]["greeting"]["valid"] is True
    assert status["kinds"]["attendance"] == {"fetched_at": None, "valid": False}
