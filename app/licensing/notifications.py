"""
Outbound notifications for workflow events.

Sending is best-effort: callers log a failed send and move on, a committed
workflow step is never undone because an email could not be delivered.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any, Mapping

logger = logging.getLogger(__name__)


# Workflow events that produce a notification
EVENT_REGISTRATION_SUBMITTED = "registration_submitted"
EVENT_REGISTRATION_APPROVED = "registration_approved"
EVENT_REGISTRATION_REJECTED = "registration_rejected"
EVENT_IMPORT_SUBMITTED = "import_submitted"
EVENT_IMPORT_ARRIVED = "import_arrived"
EVENT_INSPECTION_SCHEDULED = "inspection_scheduled"
EVENT_IMPORT_APPROVED = "import_approved"
EVENT_IMPORT_REJECTED = "import_rejected"
EVENT_TECHNICIAN_SUBMITTED = "technician_submitted"
EVENT_TECHNICIAN_APPROVED = "technician_approved"
EVENT_TECHNICIAN_REJECTED = "technician_rejected"

SUBJECTS = {
    EVENT_REGISTRATION_SUBMITTED: "Registration {year} submitted",
    EVENT_REGISTRATION_APPROVED: "Registration {year} approved - certificate #{certificate_number}",
    EVENT_REGISTRATION_REJECTED: "Registration {year} rejected",
    EVENT_IMPORT_SUBMITTED: "Import #{import_number} submitted",
    EVENT_IMPORT_ARRIVED: "Import #{import_number} arrived - inspection to be scheduled",
    EVENT_INSPECTION_SCHEDULED: "Import #{import_number} inspection scheduled",
    EVENT_IMPORT_APPROVED: "Import #{import_number} approved",
    EVENT_IMPORT_REJECTED: "Import #{import_number} rejected",
    EVENT_TECHNICIAN_SUBMITTED: "Technician application received - {full_name}",
    EVENT_TECHNICIAN_APPROVED: "Technician certificate #{certificate_number} issued",
    EVENT_TECHNICIAN_REJECTED: "Technician application rejected",
}


@dataclass(frozen=True)
class Notification:
    event: str
    recipients: tuple[str, ...]
    subject: str
    body: str


def build_notification(event: str, recipients, context: Mapping[str, Any]) -> Notification:
    subject = SUBJECTS.get(event, event).format_map(_Missing(context))
    lines = [subject, ""]
    for k in sorted(context):
        if context[k] is not None:
            lines.append(f"{k.replace('_', ' ').capitalize()}: {context[k]}")
    return Notification(
        event=event,
        recipients=tuple(r for r in recipients if r),
        subject=subject,
        body="\n".join(lines) + "\n",
    )


class _Missing(dict):
    def __init__(self, data: Mapping[str, Any]):
        super().__init__(data)

    def __missing__(self, key: str) -> str:
        return "?"


class NotificationSender:
    def send(self, notification: Notification) -> tuple[bool, str]:
        """Returns (success, message)."""
        raise NotImplementedError


class LogNotificationSender(NotificationSender):
    """Used when no SMTP server is configured."""

    def send(self, notification: Notification) -> tuple[bool, str]:
        logger.info(
            "Notification %s to=%s subject=%r",
            notification.event,
            ",".join(notification.recipients) or "-",
            notification.subject,
        )
        return True, "logged"


@dataclass(frozen=True)
class SmtpNotificationSender(NotificationSender):
    server: str
    email_from: str
    port: str = ""
    use_tls: bool = True
    username: str = ""
    password: str = ""
    timeout: int = 10

    def send(self, notification: Notification) -> tuple[bool, str]:
        if not notification.recipients:
            return False, "no recipients"

        msg = MIMEText(notification.body, "plain")
        msg["Subject"] = notification.subject
        msg["From"] = self.email_from
        msg["To"] = ", ".join(notification.recipients)

        try:
            if self.port:
                server = smtplib.SMTP(self.server, int(self.port), timeout=self.timeout)
            else:
                server = smtplib.SMTP(self.server, timeout=self.timeout)
            try:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
            finally:
                server.quit()
        except smtplib.SMTPAuthenticationError as e:
            logger.error("SMTP authentication failed: %s", e)
            return False, f"SMTP authentication failed: {e}"
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP error sending %s: %s", notification.event, e)
            return False, f"SMTP error: {e}"

        logger.info("Sent %s to %s", notification.event, msg["To"])
        return True, "sent"


def notifier_from_config(config: Mapping[str, Any]) -> NotificationSender:
    server = (config.get("SMTP_SERVER") or "").strip()
    email_from = (config.get("EMAIL_FROM") or "").strip()
    if not server or not email_from:
        return LogNotificationSender()
    return SmtpNotificationSender(
        server=server,
        email_from=email_from,
        port=str(config.get("SMTP_PORT") or ""),
        use_tls=bool(config.get("SMTP_USE_TLS", True)),
        username=(config.get("SMTP_USERNAME") or "").strip(),
        password=(config.get("SMTP_PASSWORD") or "").strip(),
    )
