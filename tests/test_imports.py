"""Tests for the import license workflow."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from app.licensing import create_app
from app.licensing.constants import QUOTA_POLICY_BLOCK
from app.licensing.db import session_scope
from app.licensing.errors import InvalidStateError, PreconditionError, QuotaExceededError, ValidationError
from app.licensing.models import AuditEvent, Base, User
from app.licensing.modules.counters.service import peek
from app.licensing.modules.imports.models import ImportLineItem, ImportState
from app.licensing.modules.imports.service import approve_import, get_import, list_imports
from app.licensing.modules.quota.models import ImporterAccount
from app.licensing.modules.quota.service import create_importer
from app.licensing.modules.refrigerants.service import upsert_refrigerant
from app.licensing.notifications import NotificationSender

FIXED_NOW = datetime(2026, 6, 15, 12, 0, 0)
INSPECTION_AT = FIXED_NOW + timedelta(days=3)

LINES = [
    {"refrigerant_code": "R-134a", "volume": "50", "unit": "kg", "quantity": 1},
    {"refrigerant_code": "R-410A", "volume": "2", "unit": "lb", "quantity": 1},
]


class RecordingNotifier(NotificationSender):
    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)
        return True, "recorded"


class FailingNotifier(NotificationSender):
    def send(self, notification):
        raise ConnectionError("smtp down")


class FailingDocuments:
    def render_registration_certificate(self, reg):
        raise OSError("disk full")

    def render_import_license(self, imp):
        raise OSError("disk full")


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("REGISTRATION_OPEN_OVERRIDE", "1")
    monkeypatch.setenv("ADMIN_NOTIFY_EMAIL", "licensing@example.gov")
    for k in ("SMTP_SERVER", "EMAIL_FROM", "QUOTA_OVER_LIMIT_POLICY", "CO2_STRICT_UNITS"):
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


def _approved_importer(app, engine, admin, *, name="Cool Air Ltd", quota="100000", codes=("R-134a", "R-410A")):
    with session_scope(app) as s:
        importer_id = create_importer(s, name=name, email="ops@coolair.example").id
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=list(codes))
    engine.approve_registration(reg.id, user=admin, import_quota=quota)
    return importer_id, reg.id


@pytest.fixture()
def registered(app, engine, admin):
    return _approved_importer(app, engine, admin)


def _scheduled_import(engine, registered, admin, lines=LINES):
    importer_id, registration_id = registered
    imp = engine.submit_import(importer_id=importer_id, registration_id=registration_id, line_items=lines)
    engine.mark_arrived(imp.id, user=admin)
    engine.schedule_inspection(imp.id, when_utc=INSPECTION_AT, user=admin)
    return imp


def _account(app, importer_id):
    with session_scope(app) as s:
        return s.get(ImporterAccount, importer_id)


class TestSubmitGating:
    def test_requires_approved_registration(self, app, engine):
        with session_scope(app) as s:
            importer_id = create_importer(s, name="Pending Co").id
        reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
        with pytest.raises(PreconditionError):
            engine.submit_import(importer_id=importer_id, registration_id=reg.id, line_items=LINES[:1])

    def test_registration_must_belong_to_importer(self, app, engine, admin, registered):
        other_id, _ = _approved_importer(app, engine, admin, name="Other Co")
        with pytest.raises(PreconditionError):
            engine.submit_import(importer_id=other_id, registration_id=registered[1], line_items=LINES)

    def test_import_year_follows_the_clock(self, engine, registered):
        imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
        assert imp.year == FIXED_NOW.year

    def test_registration_must_be_for_current_year(self, engine, registered):
        engine.clock = lambda: datetime(FIXED_NOW.year + 1, 3, 1, 9, 0, 0)
        with pytest.raises(PreconditionError) as exc:
            engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
        assert exc.value.details["registration_year"] == FIXED_NOW.year
        assert exc.value.details["current_year"] == FIXED_NOW.year + 1

    def test_empty_line_items(self, engine, registered):
        with pytest.raises(ValidationError):
            engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=[])

    def test_refrigerant_not_on_registration(self, engine, registered):
        lines = [{"refrigerant_code": "R-22", "volume": "10", "unit": "kg"}]
        with pytest.raises(ValidationError) as exc:
            engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=lines)
        assert exc.value.details["not_registered"] == ["R-22"]

    @pytest.mark.parametrize(
        "line",
        [
            {"refrigerant_code": "R-134a", "volume": "10", "unit": "kg", "quantity": 0},
            {"refrigerant_code": "R-134a", "volume": "-1", "unit": "kg", "quantity": 1},
            {"refrigerant_code": "R-134a", "volume": "abc", "unit": "kg", "quantity": 1},
        ],
    )
    def test_bad_line_values(self, engine, registered, line):
        with pytest.raises(ValidationError):
            engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=[line])


def test_submit_computes_total_without_debit(app, engine, registered):
    imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
    assert imp.state == ImportState.AWAITING_ARRIVAL
    assert imp.import_number == 1001
    assert imp.total_co2_equivalent == Decimal("73394.20")
    assert [li.gwp_at_time_of_import for li in imp.line_items] == [Decimal("1430"), Decimal("2088")]
    assert imp.pending and not imp.arrived and not imp.approved
    assert _account(app, registered[0]).cumulative_imports == Decimal("0")


def test_quota_check_preview(engine, registered):
    preview = engine.quota_check(registered[0], LINES)
    assert preview["will_exceed_quota"] is False
    assert preview["import_co2"] == Decimal("73394.20")
    assert preview["quota_remaining"] == Decimal("100000.00")

    big = [{"refrigerant_code": "R-134a", "volume": "100", "unit": "kg"}]
    preview = engine.quota_check(registered[0], big)
    assert preview["will_exceed_quota"] is True
    assert preview["deficit"] == Decimal("43000.00")


class TestStateLegality:
    def test_schedule_before_arrival(self, engine, registered, admin):
        imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
        with pytest.raises(InvalidStateError):
            engine.schedule_inspection(imp.id, when_utc=INSPECTION_AT, user=admin)

    def test_approve_before_inspection(self, engine, registered, admin):
        imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
        with pytest.raises(InvalidStateError):
            engine.approve_import(imp.id, user=admin)
        engine.mark_arrived(imp.id, user=admin)
        with pytest.raises(InvalidStateError):
            engine.approve_import(imp.id, user=admin)

    def test_arrive_twice(self, engine, registered, admin):
        imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
        engine.mark_arrived(imp.id, user=admin)
        with pytest.raises(InvalidStateError):
            engine.mark_arrived(imp.id, user=admin)

    @pytest.mark.parametrize("when", [FIXED_NOW, FIXED_NOW - timedelta(hours=1)])
    def test_inspection_must_be_in_future(self, engine, registered, admin, when):
        imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
        engine.mark_arrived(imp.id, user=admin)
        with pytest.raises(ValidationError):
            engine.schedule_inspection(imp.id, when_utc=when, user=admin)
        assert engine.run(lambda s: get_import(s, imp.id).state) == ImportState.AWAITING_INSPECTION_SCHEDULE


def test_mark_arrived_stores_supporting_documents(engine, registered, admin):
    imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
    imp = engine.mark_arrived(imp.id, files=[("bill of lading.pdf", b"%PDF-1.4", "application/pdf")], user=admin)
    assert imp.state == ImportState.AWAITING_INSPECTION_SCHEDULE
    assert imp.arrived
    docs = imp.supporting_documents
    assert len(docs) == 1
    assert docs[0]["storage_key"].startswith(f"imports/{imp.id}/")
    assert docs[0]["storage_key"].endswith("bill_of_lading.pdf")
    assert engine.storage.exists(docs[0]["storage_key"])


def test_full_lifecycle_debits_quota(app, engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)
    approved = engine.approve_import(imp.id, user=admin)

    assert approved.state == ImportState.APPROVED
    assert approved.total_co2_equivalent == Decimal("73394.20")
    assert approved.document_storage_key is not None
    assert engine.storage.exists(approved.document_storage_key)

    acct = _account(app, registered[0])
    assert acct.cumulative_imports == Decimal("73394.20")
    assert acct.balance == Decimal("26605.80")

    events = [n.event for n in engine.notifier.sent]
    assert events[-4:] == ["import_submitted", "import_arrived", "inspection_scheduled", "import_approved"]


def test_second_approval_does_not_debit_again(app, engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)
    engine.approve_import(imp.id, user=admin)
    with pytest.raises(InvalidStateError):
        engine.approve_import(imp.id, user=admin)
    assert _account(app, registered[0]).cumulative_imports == Decimal("73394.20")


def test_stale_double_approve_debits_once(app, engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)

    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1: Session = sm()
    s2: Session = sm()
    try:
        i1 = get_import(s1, imp.id)
        i2 = get_import(s2, imp.id)
        approve_import(s1, i1, user=admin)
        s1.commit()
        with pytest.raises(InvalidStateError):
            approve_import(s2, i2, user=admin)
        s2.rollback()
    finally:
        s1.close()
        s2.close()

    assert _account(app, registered[0]).cumulative_imports == Decimal("73394.20")
    with session_scope(app) as s:
        debits = s.query(AuditEvent).filter(AuditEvent.action == "quota.debit").count()
    assert debits == 1


def test_reject_keeps_import_number(app, engine, registered, admin):
    imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
    rejected = engine.reject_import(imp.id, reason="Wrong HS code", user=admin)
    assert rejected.state == ImportState.REJECTED
    assert rejected.import_number == 1001
    assert rejected.rejection_reason == "Wrong HS code"

    nxt = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
    assert nxt.import_number == 1002
    assert _account(app, registered[0]).cumulative_imports == Decimal("0")


@pytest.mark.parametrize("steps", [0, 1, 2])
def test_reject_from_any_non_terminal_state(engine, registered, admin, steps):
    imp = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
    if steps >= 1:
        engine.mark_arrived(imp.id, user=admin)
    if steps >= 2:
        engine.schedule_inspection(imp.id, when_utc=INSPECTION_AT, user=admin)
    assert engine.reject_import(imp.id, reason="Failed inspection", user=admin).state == ImportState.REJECTED


def test_terminal_import_cannot_be_rejected(engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)
    engine.approve_import(imp.id, user=admin)
    with pytest.raises(InvalidStateError):
        engine.reject_import(imp.id, reason="too late", user=admin)


def test_clamp_policy_approves_over_quota(app, engine, admin):
    registered = _approved_importer(app, engine, admin, quota="50000")
    imp = _scheduled_import(engine, registered, admin)
    assert engine.approve_import(imp.id, user=admin).state == ImportState.APPROVED
    acct = _account(app, registered[0])
    assert acct.cumulative_imports == Decimal("73394.20")
    assert acct.balance == Decimal("0.00")


def test_block_policy_rolls_back_approval(app, engine, admin):
    engine.quota_policy = QUOTA_POLICY_BLOCK
    registered = _approved_importer(app, engine, admin, quota="50000")
    imp = _scheduled_import(engine, registered, admin)

    with pytest.raises(QuotaExceededError):
        engine.approve_import(imp.id, user=admin)

    with session_scope(app) as s:
        fresh = get_import(s, imp.id)
        assert fresh.state == ImportState.INSPECTION_SCHEDULED
        assert fresh.approved_at is None
    acct = _account(app, registered[0])
    assert acct.cumulative_imports == Decimal("0")
    assert acct.balance == Decimal("50000.00")


def test_notification_failure_does_not_undo_approval(app, engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)
    engine.notifier = FailingNotifier()
    approved = engine.approve_import(imp.id, user=admin)
    assert approved.state == ImportState.APPROVED
    with session_scope(app) as s:
        assert get_import(s, imp.id).state == ImportState.APPROVED


def test_document_failure_does_not_undo_approval(app, engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)
    engine.documents = FailingDocuments()
    approved = engine.approve_import(imp.id, user=admin)
    assert approved.document_storage_key is None
    with session_scope(app) as s:
        assert get_import(s, imp.id).state == ImportState.APPROVED
    assert _account(app, registered[0]).cumulative_imports == Decimal("73394.20")


def test_gwp_frozen_at_submission(app, engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)
    with session_scope(app) as s:
        upsert_refrigerant(s, code="R-134a", gwp_value="1", user=admin)
    approved = engine.approve_import(imp.id, user=admin)
    assert approved.total_co2_equivalent == Decimal("73394.20")


def test_approval_restates_line_co2_to_match_total(app, engine, registered, admin):
    imp = _scheduled_import(engine, registered, admin)
    with session_scope(app) as s:
        for li in s.query(ImportLineItem).filter(ImportLineItem.import_id == imp.id):
            li.co2_equivalent = Decimal("1.00")
    approved = engine.approve_import(imp.id, user=admin)
    with session_scope(app) as s:
        lines = s.query(ImportLineItem).filter(ImportLineItem.import_id == imp.id).all()
        assert sum(li.co2_equivalent for li in lines) == approved.total_co2_equivalent
        assert all(li.co2_equivalent != Decimal("1.00") for li in lines)


def test_list_imports_filters(app, engine, registered, admin):
    a = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
    b = engine.submit_import(importer_id=registered[0], registration_id=registered[1], line_items=LINES)
    engine.reject_import(b.id, reason="dup", user=admin)
    with session_scope(app) as s:
        pending = list_imports(s, importer_id=registered[0], state=ImportState.AWAITING_ARRIVAL)
        assert [i.id for i in pending] == [a.id]
        assert len(list_imports(s, year=2026)) == 2
        assert peek(s, "importLicense") == 1002
