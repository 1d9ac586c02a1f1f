"""Tests for technician certification."""
from datetime import date, datetime

import pytest

from app.licensing import create_app
from app.licensing.db import session_scope
from app.licensing.errors import InvalidStateError, PreconditionError, ValidationError
from app.licensing.models import AuditEvent, Base, User
from app.licensing.modules.counters.service import peek
from app.licensing.modules.technicians.models import TechnicianState
from app.licensing.modules.technicians.service import document_type_for, list_applications
from app.licensing.notifications import NotificationSender

FIXED_NOW = datetime(2026, 6, 15, 12, 0, 0)

APPLICANT = {
    "full_name": "Jo Mensah",
    "email": "Jo@Example.com",
    "national_id": "GHA-123",
    "qualification_level": "Level 2",
    "training_institution": "Accra Technical Institute",
    "date_of_birth": "1990-04-01",
}

DOCS = [
    ("passport scan.pdf", b"%PDF-1.4 id", "application/pdf"),
    ("training_certificate.pdf", b"%PDF-1.4 cert", "application/pdf"),
]


class RecordingNotifier(NotificationSender):
    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)
        return True, "recorded"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("ADMIN_NOTIFY_EMAIL", "licensing@example.gov")
    for k in ("SMTP_SERVER", "EMAIL_FROM", "COUNTER_SEED"):
        monkeypatch.delenv(k, raising=False)

    app = create_app(clock=lambda: FIXED_NOW, notifier=RecordingNotifier())
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    app.extensions["licensing_engine"].bootstrap()
    return app


@pytest.fixture()
def engine(app):
    return app.extensions["licensing_engine"]


@pytest.fixture()
def admin(app):
    with session_scope(app) as s:
        u = User(email="officer@example.com", display_name="A. Officer", password_hash="x", is_active=True)
        s.add(u)
        s.flush()
        return u


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("passport scan.pdf", "ID"),
        ("National-ID.png", "ID"),
        ("training_certificate.pdf", "Training Certificate"),
        ("reference letter.docx", "Other"),
        ("video.mp4", "Other"),
    ],
)
def test_document_type_for(filename, expected):
    assert document_type_for(filename) == expected


def test_submit_stores_documents_and_notifies(engine):
    t = engine.submit_technician_application(files=DOCS, **APPLICANT)
    assert t.state == TechnicianState.PENDING
    assert t.email == "jo@example.com"
    assert t.date_of_birth == date(1990, 4, 1)
    assert t.certificate_number is None

    docs = t.supporting_documents
    assert [d["document_type"] for d in docs] == ["ID", "Training Certificate"]
    for d in docs:
        assert d["storage_key"].startswith("technicians/")
        assert engine.storage.exists(d["storage_key"])

    sent = engine.notifier.sent[-1]
    assert sent.event == "technician_submitted"
    assert "licensing@example.gov" in sent.recipients


@pytest.mark.parametrize(
    "override",
    [
        {"full_name": "  "},
        {"national_id": ""},
        {"qualification_level": "Level 9"},
        {"date_of_birth": "01/04/1990"},
    ],
)
def test_submit_validation(engine, override):
    with pytest.raises(ValidationError):
        engine.submit_technician_application(files=DOCS, **{**APPLICANT, **override})


def test_submit_requires_a_document(app, engine):
    with pytest.raises(ValidationError) as exc:
        engine.submit_technician_application(files=[], **APPLICANT)
    assert exc.value.details["field"] == "documents"
    with session_scope(app) as s:
        assert list_applications(s) == []


def test_failed_submission_discards_uploaded_documents(engine):
    engine.submit_technician_application(files=DOCS, **APPLICANT)
    with pytest.raises(PreconditionError):
        engine.submit_technician_application(files=[("id card.jpg", b"jpeg", "image/jpeg")], **APPLICANT)
    root = engine.storage.root
    stored = [p.name for p in root.rglob("*") if p.is_file()]
    assert not [n for n in stored if n.endswith("id_card.jpg")]


def test_approve_allocates_technician_certificate(app, engine, admin):
    t = engine.submit_technician_application(files=DOCS, **APPLICANT)
    approved = engine.approve_technician(t.id, user=admin)

    assert approved.state == TechnicianState.APPROVED
    assert approved.certificate_number == 1001
    assert approved.document_storage_key.startswith("certificates/technicians/1001_")
    with engine.storage.open(approved.document_storage_key) as fh:
        assert b"REFRIGERANT TECHNICIAN CERTIFICATE" in fh.read()

    with session_scope(app) as s:
        assert peek(s, "technicianCert") == 1001
        assert peek(s, "registrationCert") == 1000
        actions = [e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_type == "TechnicianApplication").order_by(AuditEvent.id)]
    assert actions == ["technician.submit", "technician.approve"]
    assert engine.notifier.sent[-1].event == "technician_approved"

    with pytest.raises(InvalidStateError):
        engine.approve_technician(t.id, user=admin)


def test_certificate_numbers_are_sequential(engine, admin):
    certs = []
    for i in range(3):
        t = engine.submit_technician_application(files=DOCS, **{**APPLICANT, "email": f"tech{i}@example.com"})
        certs.append(engine.approve_technician(t.id, user=admin).certificate_number)
    assert certs == [1001, 1002, 1003]


def test_reject_consumes_no_number_and_allows_reapplication(app, engine, admin):
    t = engine.submit_technician_application(files=DOCS, **APPLICANT)
    with pytest.raises(ValidationError):
        engine.reject_technician(t.id, reason=" ", user=admin)
    rejected = engine.reject_technician(t.id, reason="Certificate unreadable", user=admin)
    assert rejected.state == TechnicianState.REJECTED
    assert rejected.certificate_number is None
    with pytest.raises(InvalidStateError):
        engine.approve_technician(t.id, user=admin)

    again = engine.submit_technician_application(files=DOCS, **APPLICANT)
    assert again.id != t.id
    with session_scope(app) as s:
        assert peek(s, "technicianCert") == 1000
        assert [a.id for a in list_applications(s, state=TechnicianState.PENDING)] == [again.id]


def test_duplicate_live_application_rejected(engine, admin):
    t = engine.submit_technician_application(files=DOCS, **APPLICANT)
    engine.approve_technician(t.id, user=admin)
    with pytest.raises(PreconditionError):
        engine.submit_technician_application(files=DOCS, **{**APPLICANT, "email": "JO@example.com"})
