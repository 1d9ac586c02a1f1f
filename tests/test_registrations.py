"""Tests for the registration workflow."""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.licensing import create_app
from app.licensing.db import session_scope
from app.licensing.errors import InvalidStateError, NotFoundError, PreconditionError, ValidationError
from app.licensing.models import AuditEvent, Base, User
from app.licensing.modules.counters.service import peek
from app.licensing.modules.quota.models import ImporterAccount
from app.licensing.modules.quota.service import create_importer
from app.licensing.modules.refrigerants.service import seed_default_catalog, upsert_refrigerant
from app.licensing.modules.registrations import service as registrations_svc
from app.licensing.modules.registrations.models import Registration, RegistrationState
from app.licensing.modules.registrations.service import (
    approve_registration,
    approved_refrigerant_codes,
    get_registration,
    list_registrations,
    registration_period_status,
    submit_registration,
)

FIXED_NOW = datetime(2026, 6, 15, 12, 0, 0)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("REGISTRATION_OPEN_OVERRIDE", "1")
    for k in ("SMTP_SERVER", "EMAIL_FROM", "QUOTA_OVER_LIMIT_POLICY", "CO2_STRICT_UNITS"):
        monkeypatch.delenv(k, raising=False)

    app = create_app(clock=lambda: FIXED_NOW)
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


@pytest.fixture()
def importer_id(app):
    with session_scope(app) as s:
        return create_importer(s, name="Cool Air Ltd", email="ops@coolair.example").id


class TestRegistrationPeriod:
    def test_open_in_december_for_next_year(self):
        p = registration_period_status(datetime(2026, 12, 10, 9, 0))
        assert p.is_open is True
        assert p.registration_year == 2027
        assert p.days_until_close == 22

    def test_closed_outside_december(self):
        p = registration_period_status(datetime(2026, 11, 30, 0, 0))
        assert p.is_open is False
        assert p.registration_year == 2026
        assert p.days_until_open == 1

    def test_override_opens_for_current_year(self):
        p = registration_period_status(datetime(2026, 3, 1), override_open=True)
        assert p.is_open is True
        assert p.registration_year == 2026


def test_submit_creates_submitted_registration(engine, importer_id):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a", "R-410A"], is_retail=True)
    assert reg.state == RegistrationState.SUBMITTED
    assert reg.year == 2026
    assert reg.certificate_number is None
    assert reg.is_pending and not reg.is_completed
    assert reg.refrigerant_codes == ["R-134a", "R-410A"]
    assert reg.selected_refrigerants[0]["gwp_value"] == "1430.000"


def test_submit_empty_selection_rejected(engine, importer_id):
    with pytest.raises(ValidationError):
        engine.submit_registration(importer_id=importer_id, refrigerant_codes=[])


def test_submit_unknown_code_rejected(engine, importer_id):
    with pytest.raises(ValidationError) as exc:
        engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a", "R-999"])
    assert exc.value.details["unknown"] == ["R-999"]


def test_submit_wrong_year_rejected(engine, importer_id):
    with pytest.raises(ValidationError):
        engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"], year=2027)


def test_submit_unknown_importer(engine):
    with pytest.raises(NotFoundError):
        engine.submit_registration(importer_id=999, refrigerant_codes=["R-134a"])


def test_submit_when_closed(app, importer_id):
    with session_scope(app) as s:
        closed = registration_period_status(FIXED_NOW)
        with pytest.raises(ValidationError):
            submit_registration(s, importer_id=importer_id, refrigerant_codes=["R-134a"], is_retail=False, period=closed)


def test_duplicate_registration_for_year_rejected(engine, importer_id):
    engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    with pytest.raises(PreconditionError):
        engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-32"])


def test_resubmit_after_rejection_allowed(engine, importer_id, admin):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    engine.reject_registration(reg.id, reason="Missing business license", user=admin)
    again = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    assert again.id != reg.id


def test_approve_allocates_certificate_and_sets_allowance(app, engine, importer_id, admin):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    approved = engine.approve_registration(reg.id, user=admin, import_quota="500000")

    assert approved.state == RegistrationState.APPROVED
    assert approved.certificate_number == 1001
    assert approved.approver_name == "A. Officer"
    assert approved.document_storage_key is not None
    assert engine.storage.exists(approved.document_storage_key)

    with session_scope(app) as s:
        acct = s.get(ImporterAccount, importer_id)
        assert acct.import_quota == Decimal("500000.00")
        assert acct.balance == Decimal("500000.00")
        assert acct.importer_number == 1001
        assert approved_refrigerant_codes(s, importer_id, 2026) == ["R-134a"]
        actions = [e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_type == "Registration").order_by(AuditEvent.id)]
    assert actions == ["registration.submit", "registration.approve"]


def test_certificate_numbers_are_sequential(app, engine, admin):
    with session_scope(app) as s:
        ids = [create_importer(s, name=f"Importer {i}").id for i in range(3)]
    certs = []
    for importer_id in ids:
        reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-32"])
        certs.append(engine.approve_registration(reg.id, user=admin).certificate_number)
    assert certs == [1001, 1002, 1003]


def test_approve_stores_signature(engine, importer_id, admin):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    approved = engine.approve_registration(reg.id, user=admin, signature="data:image/png;base64,iVBORw0KGgo=")
    assert approved.signature_storage_key.startswith(f"signatures/registrations/{reg.id}_admin_")
    assert engine.storage.exists(approved.signature_storage_key)


def test_reject_consumes_no_certificate(app, engine, importer_id, admin):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    rejected = engine.reject_registration(reg.id, reason="Incomplete", user=admin)
    assert rejected.state == RegistrationState.REJECTED
    assert rejected.certificate_number is None
    assert rejected.rejection_reason == "Incomplete"
    with session_scope(app) as s:
        assert peek(s, "registrationCert") == 1000


def test_reject_requires_reason(engine, importer_id, admin):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    with pytest.raises(ValidationError):
        engine.reject_registration(reg.id, reason="  ", user=admin)


def test_terminal_states_are_final(engine, importer_id, admin):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    engine.approve_registration(reg.id, user=admin)
    with pytest.raises(InvalidStateError):
        engine.approve_registration(reg.id, user=admin)
    with pytest.raises(InvalidStateError):
        engine.reject_registration(reg.id, reason="late", user=admin)


def test_stale_double_approve_has_one_winner(app, importer_id, admin):
    engine = app.extensions["licensing_engine"]
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])

    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1: Session = sm()
    s2: Session = sm()
    try:
        r1 = get_registration(s1, reg.id)
        r2 = get_registration(s2, reg.id)
        approve_registration(s1, r1, user=admin)
        s1.commit()
        with pytest.raises(InvalidStateError):
            approve_registration(s2, r2, user=admin)
        s2.rollback()
    finally:
        s1.close()
        s2.close()

    with session_scope(app) as s:
        regs = list_registrations(s, importer_id=importer_id)
        assert [r.certificate_number for r in regs] == [1001]
        assert peek(s, "registrationCert") == 1001


def test_gwp_captured_at_selection_time(app, engine, importer_id, admin):
    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
    with session_scope(app) as s:
        upsert_refrigerant(s, code="R-134a", gwp_value="1300", user=admin)
    with session_scope(app) as s:
        assert get_registration(s, reg.id).selected_refrigerants[0]["gwp_value"] == "1430.000"


def test_concurrent_submissions_leave_one_registration(app, engine, importer_id, monkeypatch):
    # Both submitters pass the duplicate lookup before either inserts.
    barrier = threading.Barrier(2, timeout=10)
    real_find = registrations_svc.find_registration

    def find_then_wait(*args, **kwargs):
        found = real_find(*args, **kwargs)
        barrier.wait()
        return found

    monkeypatch.setattr(registrations_svc, "find_registration", find_then_wait)

    def submit(_):
        try:
            return engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-134a"])
        except PreconditionError as e:
            return e

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(submit, range(2)))

    assert len([r for r in results if isinstance(r, PreconditionError)]) == 1
    with session_scope(app) as s:
        assert len(list_registrations(s, importer_id=importer_id)) == 1


def test_database_allows_one_open_registration_per_year(app, importer_id):
    with session_scope(app) as s:
        s.add(Registration(importer_id=importer_id, year=2026, state=RegistrationState.REJECTED))
        s.add(Registration(importer_id=importer_id, year=2026, state=RegistrationState.SUBMITTED))
        s.add(Registration(importer_id=importer_id, year=2027, state=RegistrationState.SUBMITTED))

    with pytest.raises(IntegrityError):
        with session_scope(app) as s:
            s.add(Registration(importer_id=importer_id, year=2026, state=RegistrationState.SUBMITTED))


def test_certificate_numbers_start_after_configured_seed(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'seeded.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("REGISTRATION_OPEN_OVERRIDE", "1")
    monkeypatch.setenv("COUNTER_SEED", "5000")
    app = create_app(clock=lambda: FIXED_NOW)
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    engine = app.extensions["licensing_engine"]

    # Counters are created lazily on first allocation.
    with session_scope(app) as s:
        seed_default_catalog(s)
        importer_id = create_importer(s, name="Late Starter Ltd").id
        admin = User(email="seed-officer@example.com", password_hash="x", is_active=True)
        s.add(admin)
        s.flush()

    reg = engine.submit_registration(importer_id=importer_id, refrigerant_codes=["R-32"])
    approved = engine.approve_registration(reg.id, user=admin)
    assert approved.certificate_number == 5001
    with session_scope(app) as s:
        assert s.get(ImporterAccount, importer_id).importer_number == 5001
