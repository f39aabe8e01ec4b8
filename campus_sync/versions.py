from __future__ import annotations

import logging
import time
from typing import Callable

from campus_sync.cache import TtlCache
from campus_sync.credentials import CredentialStore
from campus_sync.errors import CredentialsMissing
from campus_sync.executor import BackgroundExecutor, RefreshReport
from campus_sync.store import JsonFileStore

logger = logging.getLogger(__name__)

VERSION_KEY = "app:version"
LAST_CHECK_KEY = "app:last_update_check"
CHECK_INTERVAL_SECONDS = 24 * 3600.0


class VersionTracker:
    def __init__(
        self,
        *,
        store: JsonFileStore,
        cache: TtlCache,
        credentials: CredentialStore,
        executor: BackgroundExecutor,
        current_version: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cache = cache
        self._credentials = credentials
        self._executor = executor
        self.current_version = current_version
        self._clock = clock

    async def stored_version(self) -> str | None:
        v = await self._store.get(VERSION_KEY)
        return str(v) if v else None

    async def _record(self) -> None:
        await self._store.set(VERSION_KEY, self.current_version)
        await self._store.set(LAST_CHECK_KEY, self._clock())

    async def was_updated(self) -> bool:
        stored = await self.stored_version()
        return stored is not None and stored != self.current_version

    async def should_check(self) -> bool:
        last = await self._store.get(LAST_CHECK_KEY)
        if not isinstance(last, (int, float)):
            return True
        return (self._clock() - last) >= CHECK_INTERVAL_SECONDS

    async def handle_app_update(self) -> bool:
        """Clear the cache and refetch everything when the app version changed."""
        if not await self.should_check():
            return False
        if not await self.was_updated():
            await self._record()
            return False

        logger.info("app version changed to %s; refreshing all cached data", self.current_version)
        try:
            if not await self._credentials.has_credentials():
                logger.info("no credentials stored, skipping post-update refresh")
                return False
            await self._refresh_all()
            return True
        except CredentialsMissing:
            return False
        finally:
            # Always recorded, also when the refresh fails.
            await self._record()

    async def _refresh_all(self) -> RefreshReport:
        await self._cache.clear_all()
        return await self._executor.run_full_refresh()

    async def force_update_refresh(self) -> RefreshReport:
        report = await self._refresh_all()
        await self._record()
        return report
