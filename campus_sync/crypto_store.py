from __future__ import annotations

from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

KEY_NAME = "secret.key"


class SecretBox:
    """Fernet key kept next to the store; encrypts the stored login secret."""

    def __init__(self, data_dir: Path) -> None:
        self.key_path = data_dir / KEY_NAME
        self._fernet: Fernet | None = None

    def _load_or_create_key(self) -> bytes:
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        if self.key_path.exists():
            key = self.key_path.read_bytes().strip()
            if key:
                return key
        key = Fernet.generate_key()
        self.key_path.write_bytes(key)
        return key

    def _get(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def encrypt(self, plain: str) -> str:
        if not plain:
            return ""
        return self._get().encrypt(plain.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str | None:
        t = (token or "").strip()
        if not t:
            return None
        try:
            return self._get().decrypt(t.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError):
            return None
