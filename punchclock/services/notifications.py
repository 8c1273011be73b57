from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Protocol

from punchclock.services.timezones import to_local
from punchclock.settings import Settings

logger = logging.getLogger("punchclock.notifications")


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str


@dataclass(frozen=True, slots=True)
class PunchInfo:
    punch_type: str
    punch_time: datetime
    timezone: str


class NotificationSender(Protocol):
    def send_weekend_warning(self, user: Any, punch_info: PunchInfo) -> bool: ...

    def send_missed_punch_out_alert(self, user: Any, in_time: datetime, out_time: datetime) -> bool: ...

    def send_reminder(self, user: Any, in_time: datetime) -> bool: ...


def notify_best_effort(event: str, send: Callable[..., Any], *args: Any, user_id: int | None = None) -> bool:
    """Call a notification method and report whether it was delivered.

    Failures are logged and never raised. A sender that skips delivery
    (channel disabled or not configured) returns False.
    """
    try:
        delivered = send(*args)
    except Exception:
        logger.exception(
            "notification_send_failed",
            extra={"notification": event, "user_id": user_id},
        )
        return False
    if not delivered:
        logger.info("notification_not_delivered", extra={"notification": event, "user_id": user_id})
    return bool(delivered)


def _format_local(value: datetime, tz_name: str) -> str:
    return to_local(value, tz_name).strftime("%Y-%m-%d %I:%M %p")


class EmailNotificationSender:
    def __init__(self, settings: Settings, *, default_timezone: str) -> None:
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = settings.smtp_host.strip()
        self.smtp_port = int(settings.smtp_port)
        self.smtp_user = settings.smtp_user.strip()
        self.smtp_pass = settings.smtp_pass
        self.smtp_from = settings.smtp_from.strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.configured = bool(self.smtp_host and self.smtp_from)
        self.default_timezone = default_timezone

    def _user_timezone(self, user: Any) -> str:
        return (getattr(user, "timezone", None) or "").strip() or self.default_timezone

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            logger.info(
                "email_channel_disabled",
                extra={"subject": message.subject, "recipient_count": len(recipients)},
            )
            return {"mode": "disabled", "sent": 0, "recipients": recipients}
        if not recipients:
            logger.info("email_channel_skip_no_recipients", extra={"subject": message.subject})
            return {"mode": "skipped_no_recipients", "sent": 0, "recipients": []}
        if not self.configured:
            logger.info(
                "email_channel_placeholder_send",
                extra={"subject": message.subject, "recipients": recipients, "body": message.body},
            )
            return {"mode": "not_configured", "sent": 0, "recipients": recipients}

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients}

    def _deliver(self, message: NotificationMessage) -> bool:
        return self.send(message)["mode"] == "sent"

    def send_weekend_warning(self, user: Any, punch_info: PunchInfo) -> bool:
        local_text = _format_local(punch_info.punch_time, punch_info.timezone)
        return self._deliver(
            NotificationMessage(
                recipients=[user.email],
                subject="Punch recorded on a non-working day",
                body=(
                    f"Hello {user.name},\n\n"
                    f"A {punch_info.punch_type} punch was recorded at {local_text}, "
                    "which is outside your configured working days.\n"
                    "If this was not expected, please contact your manager."
                ),
            )
        )

    def send_missed_punch_out_alert(self, user: Any, in_time: datetime, out_time: datetime) -> bool:
        tz_name = self._user_timezone(user)
        return self._deliver(
            NotificationMessage(
                recipients=[user.email],
                subject="Missed punch out: session auto-closed",
                body=(
                    f"Hello {user.name},\n\n"
                    f"You punched IN at {_format_local(in_time, tz_name)} and did not punch OUT.\n"
                    f"The system closed the session at {_format_local(out_time, tz_name)}.\n"
                    "Please review the entry and request a correction if needed."
                ),
            )
        )

    def send_reminder(self, user: Any, in_time: datetime) -> bool:
        tz_name = self._user_timezone(user)
        return self._deliver(
            NotificationMessage(
                recipients=[user.email],
                subject="Reminder: you are still punched in",
                body=(
                    f"Hello {user.name},\n\n"
                    f"You have been punched IN since {_format_local(in_time, tz_name)}.\n"
                    "Remember to punch OUT when you finish for the day."
                ),
            )
        )

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "enabled": self.enabled,
            "configured": self.configured,
            "smtp_host_set": bool(self.smtp_host),
            "smtp_from_set": bool(self.smtp_from),
            "smtp_use_tls": self.smtp_use_tls,
            "missing_fields": missing_fields,
        }
