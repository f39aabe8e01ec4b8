from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from campus_sync.cache import MISS, TtlCache
from campus_sync.credentials import CredentialStore
from campus_sync.crypto_store import SecretBox
from campus_sync.errors import (
    CredentialsMissing,
    GatewayError,
    HttpStatusError,
    InvalidCredentials,
    PreferenceReadError,
    describe,
)
from campus_sync.executor import BackgroundExecutor
from campus_sync.gateway import DataGateway, RemoteGateway
from campus_sync.logs import setup_logging
from campus_sync.models import CacheKind, dump_payload
from campus_sync.notifications import NotificationEngine
from campus_sync.notifier import Notifier, build_notifier
from campus_sync.preferences import PreferenceStore
from campus_sync.scheduler import ApsBackgroundScheduler, BackgroundTaskBackend, ForegroundIntervalBackend
from campus_sync.session import SessionManager, SessionTransitionError
from campus_sync.settings import Settings, effective_settings_dict
from campus_sync.store import JsonFileStore
from campus_sync.trigger import RefreshTrigger
from campus_sync.versions import VersionTracker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: JsonFileStore
    gateway: DataGateway
    cache: TtlCache
    preferences: PreferenceStore
    engine: NotificationEngine
    executor: BackgroundExecutor
    trigger: RefreshTrigger
    os_scheduler: ApsBackgroundScheduler
    background: BackgroundTaskBackend
    foreground: ForegroundIntervalBackend
    versions: VersionTracker
    session: SessionManager


def build_services(
    settings: Settings,
    *,
    gateway: DataGateway | None = None,
    notifier: Notifier | None = None,
) -> Services:
    tz = ZoneInfo(settings.timezone)

    def now() -> datetime:
        return datetime.now(tz=tz)

    def today() -> date:
        return now().date()

    store = JsonFileStore(settings.store_path)
    credentials = CredentialStore(store, SecretBox(settings.data_dir))
    gateway = gateway or RemoteGateway(
        base_url=settings.api_base_url,
        timeout_seconds=settings.gateway_timeout_seconds,
        now=now,
    )
    cache = TtlCache(store, ttl_hours=settings.cache_ttl_hours)
    preferences = PreferenceStore(store)
    engine = NotificationEngine(
        store,
        preferences,
        notifier or build_notifier(settings),
        low_attendance_threshold=settings.low_attendance_threshold,
        spacing_seconds=settings.notify_spacing_seconds,
        today=today,
    )
    executor = BackgroundExecutor(
        gateway=gateway,
        cache=cache,
        credentials=credentials,
        engine=engine,
        timeout_seconds=settings.gateway_timeout_seconds,
    )
    trigger = RefreshTrigger(
        store=store,
        executor=executor,
        window_minutes=settings.window_minutes,
        claim_timeout_seconds=settings.claim_timeout_seconds,
        now=now,
    )
    os_scheduler = ApsBackgroundScheduler(
        timezone=settings.timezone,
        interval_minutes=settings.background_interval_minutes,
    )
    background = BackgroundTaskBackend(trigger, os_scheduler)
    foreground = ForegroundIntervalBackend(trigger, interval_seconds=settings.foreground_interval_seconds)
    versions = VersionTracker(
        store=store,
        cache=cache,
        credentials=credentials,
        executor=executor,
        current_version=settings.app_version,
    )
    session = SessionManager(
        credentials=credentials,
        gateway=gateway,
        cache=cache,
        executor=executor,
        foreground=foreground,
        background=background,
        cache_ttl_hours=settings.cache_ttl_hours,
    )
    return Services(
        settings=settings,
        store=store,
        gateway=gateway,
        cache=cache,
        preferences=preferences,
        engine=engine,
        executor=executor,
        trigger=trigger,
        os_scheduler=os_scheduler,
        background=background,
        foreground=foreground,
        versions=versions,
        session=session,
    )


class ApiLoginRequest(BaseModel):
    user_id: str
    secret: str


class ApiPreferencesRequest(BaseModel):
    attendance_notifications_enabled: bool | None = None
    exam_notifications_enabled: bool | None = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


def create_app(settings: Settings | None = None, *, services: Services | None = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.load())
    svc = services or build_services(settings)
    app = FastAPI(title="Campus Sync")
    app.state.services = svc

    @app.on_event("startup")
    async def _startup() -> None:
        setup_logging(settings.log_level)
        try:
            await svc.versions.handle_app_update()
        except Exception as e:
            logger.error("app update check failed: %s", describe(e))
        await svc.session.initialize()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await svc.session.shutdown()
        svc.os_scheduler.shutdown()
        close = getattr(svc.gateway, "close", None)
        if close is not None:
            await close()

    @app.get("/health")
    async def health() -> dict:
        return {
            "ok": True,
            "session": svc.session.state.phase.value,
            "cache_last_update": await svc.cache.last_update(),
        }

    @app.get("/api/session")
    async def api_session() -> JSONResponse:
        return JSONResponse(svc.session.state.to_dict())

    @app.post("/api/login")
    async def api_login(req: ApiLoginRequest) -> JSONResponse:
        try:
            report = await svc.session.login(req.user_id, req.secret)
        except InvalidCredentials as e:
            return _error(400, str(e))
        except SessionTransitionError as e:
            return _error(409, str(e))
        except HttpStatusError as e:
            return _error(401 if e.status_code in (401, 403) else 502, str(e))
        except GatewayError as e:
            return _error(502, str(e))
        return JSONResponse(
            {
                "ok": True,
                "session": svc.session.state.to_dict(),
                "warmup": report.to_dict() if report else None,
            }
        )

    @app.post("/api/logout")
    async def api_logout() -> JSONResponse:
        try:
            await svc.session.logout()
        except SessionTransitionError as e:
            return _error(409, str(e))
        return JSONResponse({"ok": True, "session": svc.session.state.to_dict()})

    @app.post("/api/refresh")
    async def api_refresh() -> JSONResponse:
        try:
            report = await svc.session.force_refresh()
        except CredentialsMissing as e:
            return _error(409, str(e))
        return JSONResponse({"ok": True, "report": report.to_dict()})

    @app.get("/api/cache/status")
    async def api_cache_status() -> JSONResponse:
        return JSONResponse(await svc.session.cache_status())

    @app.get("/api/cache/{kind}")
    async def api_cache_get(kind: CacheKind) -> JSONResponse:
        payload = await svc.cache.get(kind)
        if payload is MISS:
            return _error(404, f"no fresh {kind.value} data cached")
        return JSONResponse({"ok": True, "kind": kind.value, "payload": dump_payload(kind, payload)})

    @app.get("/api/preferences")
    async def api_preferences_get() -> JSONResponse:
        try:
            prefs = await svc.preferences.load()
        except PreferenceReadError as e:
            return _error(500, str(e))
        return JSONResponse(prefs.model_dump())

    @app.post("/api/preferences")
    async def api_preferences_update(req: ApiPreferencesRequest) -> JSONResponse:
        if req.attendance_notifications_enabled is not None:
            await svc.preferences.set_attendance_enabled(req.attendance_notifications_enabled)
        if req.exam_notifications_enabled is not None:
            await svc.preferences.set_exam_enabled(req.exam_notifications_enabled)
        try:
            prefs = await svc.preferences.load()
        except PreferenceReadError as e:
            return _error(500, str(e))
        return JSONResponse(prefs.model_dump())

    @app.post("/api/notifications/clear-history")
    async def api_clear_notification_history() -> JSONResponse:
        await svc.engine.clear_history()
        return JSONResponse({"ok": True})

    @app.get("/api/background/status")
    async def api_background_status() -> JSONResponse:
        return JSONResponse(
            {
                "registered": svc.background.running,
                "foreground_running": svc.foreground.running,
                "last_refresh": await svc.trigger.status(),
            }
        )

    @app.post("/api/app/foreground")
    async def api_app_foreground() -> JSONResponse:
        svc.session.on_foreground()
        return JSONResponse({"ok": True, "foreground_running": svc.foreground.running})

    @app.post("/api/app/background")
    async def api_app_background() -> JSONResponse:
        await svc.session.on_background()
        return JSONResponse({"ok": True, "foreground_running": svc.foreground.running})

    @app.get("/api/settings")
    async def api_settings() -> JSONResponse:
        return JSONResponse(effective_settings_dict(settings))

    @app.post("/api/app/update-refresh")
    async def api_update_refresh() -> JSONResponse:
        try:
            report = await svc.versions.force_update_refresh()
        except CredentialsMissing as e:
            return _error(409, str(e))
        return JSONResponse({"ok": True, "report": report.to_dict()})

    @app.post("/api/background/clear-history")
    async def api_background_clear_history() -> JSONResponse:
        await svc.trigger.clear_history()
        return JSONResponse({"ok": True})

    return app
