from __future__ import annotations

from pydantic import BaseModel

from campus_sync.errors import PreferenceReadError
from campus_sync.store import JsonFileStore

ATTENDANCE_KEY = "prefs:attendance_notifications_enabled"
EXAM_KEY = "prefs:exam_notifications_enabled"


class NotificationPreferences(BaseModel):
    attendance_notifications_enabled: bool = True
    exam_notifications_enabled: bool = True


class PreferenceStore:
    def __init__(self, store: JsonFileStore) -> None:
        self._store = store

    async def _read_flag(self, key: str) -> bool:
        v = await self._store.get(key)
        if v is None:
            return True
        if isinstance(v, bool):
            return v
        if isinstance(v, str) and v.strip().lower() in {"true", "false"}:
            return v.strip().lower() == "true"
        raise PreferenceReadError(f"unreadable preference {key}={v!r}")

    async def attendance_enabled(self) -> bool:
        return await self._read_flag(ATTENDANCE_KEY)

    async def exam_enabled(self) -> bool:
        return await self._read_flag(EXAM_KEY)

    async def load(self) -> NotificationPreferences:
        return NotificationPreferences(
            attendance_notifications_enabled=await self.attendance_enabled(),
            exam_notifications_enabled=await self.exam_enabled(),
        )

    async def set_attendance_enabled(self, enabled: bool) -> None:
        await self._store.set(ATTENDANCE_KEY, bool(enabled))

    async def set_exam_enabled(self, enabled: bool) -> None:
        await self._store.set(EXAM_KEY, bool(enabled))
