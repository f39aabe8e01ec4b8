from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path

from pydantic import BaseModel, Field


ENV_PREFIX = "CS_"


def _env(name: str) -> str | None:
    v = os.environ.get(ENV_PREFIX + name)
    if v is None or not v.strip():
        return None
    return v.strip()


def _env_bool(name: str, default: bool) -> bool:
    v = _env(name)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}


def _env_number(name: str, default: float, cast: type = float):
    v = _env(name)
    if v is None:
        return default
    try:
        return cast(v)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    return _env(name) or default


def _env_list(name: str) -> list[str]:
    v = _env(name)
    if v is None:
        return []
    return [x.strip() for x in v.split(",") if x.strip()]


DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
SETTINGS_OVERRIDE_NAME = "app_settings.json"


class SettingsOverride(BaseModel):
    timezone: str | None = None
    cache_ttl_hours: float | None = Field(None, gt=0)
    foreground_interval_seconds: float | None = Field(None, ge=1)
    background_interval_minutes: int | None = Field(None, ge=1)
    low_attendance_threshold: float | None = Field(None, ge=0, le=100)
    notify_spacing_seconds: float | None = Field(None, ge=0)
    email_enabled: bool | None = None
    mail_from: str | None = None
    mail_to: list[str] | None = None


def load_settings_override(data_dir: Path) -> SettingsOverride | None:
    path = data_dir / SETTINGS_OVERRIDE_NAME
    try:
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8").strip()
        if not raw:
            return None
        return SettingsOverride.model_validate_json(raw)
    except Exception:
        return None


def save_settings_override(data_dir: Path, override: SettingsOverride) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / SETTINGS_OVERRIDE_NAME).write_text(override.model_dump_json(indent=2), encoding="utf-8")


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    timezone: str
    api_base_url: str
    app_version: str
    log_level: str

    gateway_timeout_seconds: float
    cache_ttl_hours: float
    foreground_interval_seconds: float
    background_interval_minutes: int
    window_minutes: int
    claim_timeout_seconds: float

    low_attendance_threshold: float
    notify_spacing_seconds: float

    email_enabled: bool
    smtp_host: str | None
    smtp_port: int
    smtp_username: str | None
    smtp_password: str | None
    smtp_use_starttls: bool
    mail_from: str | None
    mail_to: list[str]

    @property
    def store_path(self) -> Path:
        return self.data_dir / "store.json"

    @staticmethod
    def load(data_dir: Path | None = None) -> "Settings":
        root = data_dir or Path(_env_str("DATA_DIR") or DEFAULT_DATA_DIR)
        base = Settings(
            data_dir=root,
            timezone=_env_str("TIMEZONE", "Asia/Kolkata"),
            api_base_url=_env_str("API_BASE_URL", "https://nimora-server.vercel.app") or "",
            app_version=_env_str("APP_VERSION", "1.0.0"),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            gateway_timeout_seconds=max(1.0, _env_number("GATEWAY_TIMEOUT_SECONDS", 15.0)),
            cache_ttl_hours=max(0.1, _env_number("CACHE_TTL_HOURS", 24.0)),
            foreground_interval_seconds=max(1.0, _env_number("FOREGROUND_INTERVAL_SECONDS", 300.0)),
            background_interval_minutes=max(1, _env_number("BACKGROUND_INTERVAL_MINUTES", 15, int)),
            window_minutes=max(0, min(59, _env_number("WINDOW_MINUTES", 30, int))),
            claim_timeout_seconds=max(1.0, _env_number("CLAIM_TIMEOUT_SECONDS", 600.0)),
            low_attendance_threshold=max(0.0, min(100.0, _env_number("LOW_ATTENDANCE_THRESHOLD", 80.0))),
            notify_spacing_seconds=max(0.0, _env_number("NOTIFY_SPACING_SECONDS", 1.0)),
            email_enabled=_env_bool("EMAIL_ENABLED", False),
            smtp_host=_env_str("SMTP_HOST"),
            smtp_port=_env_number("SMTP_PORT", 587, int),
            smtp_username=_env_str("SMTP_USERNAME"),
            smtp_password=_env_str("SMTP_PASSWORD"),
            smtp_use_starttls=_env_bool("SMTP_USE_STARTTLS", True),
            mail_from=_env_str("MAIL_FROM"),
            mail_to=_env_list("MAIL_TO"),
        )
        ov = load_settings_override(root)
        if not ov:
            return base
        return replace(
            base,
            timezone=ov.timezone or base.timezone,
            cache_ttl_hours=ov.cache_ttl_hours or base.cache_ttl_hours,
            foreground_interval_seconds=ov.foreground_interval_seconds or base.foreground_interval_seconds,
            background_interval_minutes=ov.background_interval_minutes or base.background_interval_minutes,
            low_attendance_threshold=(
                ov.low_attendance_threshold if ov.low_attendance_threshold is not None else base.low_attendance_threshold
            ),
            notify_spacing_seconds=(
                ov.notify_spacing_seconds if ov.notify_spacing_seconds is not None else base.notify_spacing_seconds
            ),
            email_enabled=ov.email_enabled if ov.email_enabled is not None else base.email_enabled,
            mail_from=ov.mail_from if ov.mail_from is not None else base.mail_from,
            mail_to=ov.mail_to if ov.mail_to is not None else base.mail_to,
        )


def effective_settings_dict(settings: Settings) -> dict:
    d = asdict(settings)
    d["data_dir"] = str(settings.data_dir)
    d["smtp_password"] = "***" if d.get("smtp_password") else None
    return d
