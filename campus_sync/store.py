from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)


class JsonFileStore:
    """Persistent key-value store backed by a single JSON document.

    Every mutation rewrites the file through a temp file and ``os.replace`` so a
    crash never leaves a half-written document behind. All access goes through
    one ``asyncio.Lock``; this object is the single writer of its file within a
    process, and ``update`` gives callers an atomic read-modify-write.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        data: dict[str, Any] = {}
        if self.path.exists():
            try:
                raw = self.path.read_text(encoding="utf-8").strip()
                loaded = json.loads(raw) if raw else {}
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning("store %s does not hold an object; starting empty", self.path)
            except (OSError, ValueError) as e:
                logger.error("failed to read store %s: %s", self.path, e)
        self._data = data
        return data

    def _flush(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def _commit(self, data: dict[str, Any]) -> None:
        # Memory only follows a successful write.
        self._flush(data)
        self._data = data

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            return self._load().get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = dict(self._load())
            data[key] = value
            self._commit(data)

    async def delete(self, key: str) -> None:
        await self.delete_many([key])

    async def delete_many(self, keys: Iterable[str]) -> None:
        async with self._lock:
            data = dict(self._load())
            removed = False
            for k in keys:
                if k in data:
                    del data[k]
                    removed = True
            if removed:
                self._commit(data)

    async def keys(self, prefix: str = "") -> list[str]:
        async with self._lock:
            return [k for k in self._load() if k.startswith(prefix)]

    async def update(self, key: str, fn: Callable[[Any], tuple[Any, Any]]) -> Any:
        """Atomically replace ``key`` with ``fn(current)``.

        ``fn`` returns ``(new_value, result)``; ``result`` is handed back to the
        caller. Returning the current value unchanged skips the write, and
        returning ``None`` deletes the key.
        """
        async with self._lock:
            current = self._load().get(key)
            new_value, result = fn(current)
            if new_value is None:
                if key in self._load():
                    data = dict(self._load())
                    del data[key]
                    self._commit(data)
            elif new_value != current:
                data = dict(self._load())
                data[key] = new_value
                self._commit(data)
            return result
