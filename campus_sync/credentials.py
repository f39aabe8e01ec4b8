from __future__ import annotations

import logging
import re
import time

from campus_sync.crypto_store import SecretBox
from campus_sync.errors import InvalidCredentials
from campus_sync.models import Credentials
from campus_sync.store import JsonFileStore

logger = logging.getLogger(__name__)

USER_ID_KEY = "auth:user_id"
SECRET_KEY = "auth:secret"
LOGIN_TIME_KEY = "auth:login_time"

_USER_ID_RE = re.compile(r"[A-Za-z0-9]{6,20}")


def sanitize(value: str) -> str:
    return value.replace("<", "").replace(">", "")


def validate_credentials(user_id: str, secret: str) -> Credentials:
    user_id = sanitize((user_id or "").strip())
    secret = sanitize(secret or "")
    if not _USER_ID_RE.fullmatch(user_id):
        raise InvalidCredentials("invalid roll number format")
    if len(secret) < 6:
        raise InvalidCredentials("password must be at least 6 characters long")
    return Credentials(user_id=user_id, secret=secret)


class CredentialStore:
    def __init__(self, store: JsonFileStore, box: SecretBox) -> None:
        self._store = store
        self._box = box

    async def has_credentials(self) -> bool:
        return bool(await self._store.get(USER_ID_KEY)) and bool(await self._store.get(SECRET_KEY))

    async def load(self) -> Credentials | None:
        user_id = await self._store.get(USER_ID_KEY)
        token = await self._store.get(SECRET_KEY)
        if not user_id or not token:
            return None
        secret = self._box.decrypt(token)
        if secret is None:
            logger.warning("stored secret for %s could not be decrypted", user_id)
            return None
        return Credentials(user_id=user_id, secret=secret)

    async def save(self, credentials: Credentials, *, login_time: float | None = None) -> None:
        await self._store.set(USER_ID_KEY, credentials.user_id)
        await self._store.set(SECRET_KEY, self._box.encrypt(credentials.secret))
        await self._store.set(LOGIN_TIME_KEY, login_time if login_time is not None else time.time())

    async def login_time(self) -> float | None:
        v = await self._store.get(LOGIN_TIME_KEY)
        return float(v) if isinstance(v, (int, float)) else None

    async def clear(self) -> None:
        await self._store.delete_many([USER_ID_KEY, SECRET_KEY, LOGIN_TIME_KEY])
