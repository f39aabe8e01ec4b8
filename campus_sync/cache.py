from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from campus_sync.models import CacheKind, dump_payload, load_payload
from campus_sync.store import JsonFileStore

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache:"
LAST_UPDATE_KEY = "cache:last_update"


class _Miss:
    _instance: "_Miss | None" = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS: Any = _Miss()


class CacheEntry(BaseModel):
    kind: CacheKind
    payload: Any
    fetched_at: float


def _entry_key(kind: CacheKind) -> str:
    return f"{CACHE_PREFIX}{kind.value}"


class TtlCache:
    def __init__(
        self,
        store: JsonFileStore,
        *,
        ttl_hours: float = 24.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_hours * 3600.0
        self._clock = clock
        self._locks = {kind: asyncio.Lock() for kind in CacheKind}

    async def _entry(self, kind: CacheKind) -> CacheEntry | None:
        raw = await self._store.get(_entry_key(kind))
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate(raw)
        except ValidationError:
            logger.warning("dropping unreadable cache entry for %s", kind.value)
            return None

    def _valid(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.fetched_at) < self.ttl_seconds

    async def get(self, kind: CacheKind) -> Any:
        entry = await self._entry(kind)
        if entry is None or not self._valid(entry):
            return MISS
        try:
            return load_payload(kind, entry.payload)
        except ValidationError:
            logger.warning("cached %s payload no longer decodes; treating as miss", kind.value)
            return MISS

    async def set(self, kind: CacheKind, payload: Any) -> None:
        now = self._clock()
        entry = CacheEntry(kind=kind, payload=dump_payload(kind, payload), fetched_at=now)
        async with self._locks[kind]:
            await self._store.set(_entry_key(kind), entry.model_dump(mode="json"))
            await self._store.set(LAST_UPDATE_KEY, now)

    async def get_or_fetch(self, kind: CacheKind, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        hit = await self.get(kind)
        if hit is not MISS:
            return hit
        result = await fetch_fn()
        await self.set(kind, result)
        return result

    async def clear_all(self) -> None:
        keys = await self._store.keys(CACHE_PREFIX)
        await self._store.delete_many(keys)

    async def last_update(self) -> float | None:
        v = await self._store.get(LAST_UPDATE_KEY)
        return float(v) if isinstance(v, (int, float)) else None

    async def is_stale(self, max_age_hours: float = 24.0) -> bool:
        last = await self.last_update()
        if last is None:
            return True
        return (self._clock() - last) >= max_age_hours * 3600.0

    async def status(self) -> dict[str, Any]:
        kinds: dict[str, Any] = {}
        for kind in CacheKind:
            entry = await self._entry(kind)
            kinds[kind.value] = {
                "fetched_at": entry.fetched_at if entry else None,
                "valid": bool(entry and self._valid(entry)),
            }
        return {
            "last_update": await self.last_update(),
            "is_stale": await self.is_stale(self.ttl_seconds / 3600.0),
            "kinds": kinds,
        }
