from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from campus_sync.settings import Settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def schedule_immediate(self, title: str, body: str, priority: str = "high") -> None: ...


class NotificationSendError(RuntimeError):
    pass


class LogNotifier:
    async def schedule_immediate(self, title: str, body: str, priority: str = "high") -> None:
        logger.info("[%s] %s: %s", priority, title, body)


def send_email(*, settings: Settings, subject: str, body: str) -> tuple[bool, str | None]:
    if not settings.email_enabled:
        return False, "email disabled"
    if not settings.smtp_host or not settings.mail_from or not settings.mail_to:
        return False, "email not configured"

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.mail_from
    msg["To"] = ", ".join(settings.mail_to)
    msg.set_content(body)

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=20) as smtp:
            smtp.ehlo()
            if settings.smtp_use_starttls:
                smtp.starttls()
                smtp.ehlo()
            if settings.smtp_username and settings.smtp_password:
                smtp.login(settings.smtp_username, settings.smtp_password)
            smtp.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as e:
        return False, f"{type(e).__name__}: {e}"


class EmailNotifier:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def schedule_immediate(self, title: str, body: str, priority: str = "high") -> None:
        subject = f"[{priority.upper()}] {title}" if priority == "high" else title
        ok, err = await asyncio.to_thread(send_email, settings=self._settings, subject=subject, body=body)
        if not ok:
            raise NotificationSendError(err or "send failed")


def build_notifier(settings: Settings) -> Notifier:
    if settings.email_enabled:
        return EmailNotifier(settings)
    return LogNotifier()
