import smtplib

import pytest

from app.licensing import notifications
from app.licensing.notifications import (
    EVENT_IMPORT_APPROVED,
    EVENT_REGISTRATION_APPROVED,
    LogNotificationSender,
    SmtpNotificationSender,
    build_notification,
    notifier_from_config,
)


class FakeSMTP:
    instances: list["FakeSMTP"] = []
    fail_login = False

    def __init__(self, host, port=None, timeout=None):
        self.host = host
        self.port = port
        self.calls: list[str] = []
        self.sent = []
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append("login")
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def send_message(self, msg):
        self.calls.append("send")
        self.sent.append(msg)

    def quit(self):
        self.calls.append("quit")


@pytest.fixture()
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_build_notification_fills_subject_and_drops_blank_recipients():
    n = build_notification(
        EVENT_REGISTRATION_APPROVED,
        ["ops@coolair.example", None, ""],
        {"year": 2026, "certificate_number": 1001, "registration_id": 7},
    )
    assert n.subject == "Registration 2026 approved - certificate #1001"
    assert n.recipients == ("ops@coolair.example",)
    assert "Certificate number: 1001" in n.body


def test_missing_context_key_renders_placeholder():
    n = build_notification(EVENT_IMPORT_APPROVED, ["a@example.com"], {})
    assert n.subject == "Import #? approved"


def test_notifier_from_config_defaults_to_log_sender():
    assert isinstance(notifier_from_config({}), LogNotificationSender)
    assert isinstance(notifier_from_config({"SMTP_SERVER": "smtp.example.com"}), LogNotificationSender)
    sender = notifier_from_config({"SMTP_SERVER": "smtp.example.com", "EMAIL_FROM": "noreply@example.com", "SMTP_PORT": 587})
    assert isinstance(sender, SmtpNotificationSender)
    assert sender.port == "587"


def test_smtp_sender_sends(fake_smtp):
    sender = SmtpNotificationSender(
        server="smtp.example.com", email_from="noreply@example.com", port="587", username="u", password="p"
    )
    ok, msg = sender.send(build_notification(EVENT_IMPORT_APPROVED, ["ops@coolair.example"], {"import_number": 1001}))
    assert ok is True and msg == "sent"
    smtp = fake_smtp.instances[0]
    assert smtp.port == 587
    assert smtp.calls == ["starttls", "login", "send", "quit"]
    assert smtp.sent[0]["To"] == "ops@coolair.example"


def test_smtp_sender_reports_auth_failure(fake_smtp):
    fake_smtp.fail_login = True
    sender = SmtpNotificationSender(server="smtp.example.com", email_from="noreply@example.com", username="u", password="p")
    ok, msg = sender.send(build_notification(EVENT_IMPORT_APPROVED, ["ops@coolair.example"], {"import_number": 1}))
    assert ok is False
    assert "authentication" in msg
    assert fake_smtp.instances[0].calls[-1] == "quit"


def test_smtp_sender_without_recipients_does_not_connect(fake_smtp):
    sender = SmtpNotificationSender(server="smtp.example.com", email_from="noreply@example.com")
    ok, _ = sender.send(build_notification(EVENT_IMPORT_APPROVED, [None], {"import_number": 1}))
    assert ok is False
    assert fake_smtp.instances == []
