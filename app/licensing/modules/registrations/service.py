"""
Registration workflow service layer.
Handles yearly registration submission, approval (certificate numbering) and rejection.

    Draft -> Submitted -> Approved | Rejected
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.constants import COUNTER_REGISTRATION_CERT, REGISTRATION_OPEN_MONTH
from app.licensing.errors import NotFoundError, PreconditionError, ValidationError
from app.licensing.modules.counters.service import DEFAULT_COUNTER_SEED, next_value
from app.licensing.modules.quota.service import assign_importer_number, get_importer, set_allowance
from app.licensing.modules.refrigerants.models import Refrigerant
from app.licensing.workflow import allowed_sources, ensure_state, transition

from .models import Registration, RegistrationState

if TYPE_CHECKING:
    from app.licensing.models import User


# Valid state transitions
STATE_TRANSITIONS = {
    RegistrationState.DRAFT: {RegistrationState.SUBMITTED},
    RegistrationState.SUBMITTED: {RegistrationState.APPROVED, RegistrationState.REJECTED},
    RegistrationState.APPROVED: set(),
    RegistrationState.REJECTED: set(),
}

# States that block a second registration for the same importer/year
OPEN_OR_APPROVED = (RegistrationState.SUBMITTED, RegistrationState.APPROVED)


@dataclass(frozen=True)
class RegistrationPeriod:
    is_open: bool
    registration_year: int
    days_until_open: int
    days_until_close: int


def registration_period_status(now: datetime, *, override_open: bool = False) -> RegistrationPeriod:
    """
    Registration opens in December for the following calendar year.
    The operator override opens it at any other time for the current year.
    """
    if now.month == REGISTRATION_OPEN_MONTH:
        close = datetime(now.year, 12, 31, 23, 59, 59)
        return RegistrationPeriod(
            is_open=True,
            registration_year=now.year + 1,
            days_until_open=0,
            days_until_close=max(0, math.ceil((close - now).total_seconds() / 86400)),
        )

    opens = datetime(now.year, REGISTRATION_OPEN_MONTH, 1)
    days_until_open = max(0, math.ceil((opens - now).total_seconds() / 86400))
    if override_open:
        close = datetime(now.year, 12, 31, 23, 59, 59)
        return RegistrationPeriod(
            is_open=True,
            registration_year=now.year,
            days_until_open=0,
            days_until_close=max(0, math.ceil((close - now).total_seconds() / 86400)),
        )
    return RegistrationPeriod(
        is_open=False,
        registration_year=now.year,
        days_until_open=days_until_open,
        days_until_close=0,
    )


def get_registration(s: Session, registration_id: int) -> Registration:
    r = s.get(Registration, registration_id)
    if r is None:
        raise NotFoundError(f"Registration {registration_id} not found.", details={"registration_id": registration_id})
    return r


def find_registration(s: Session, importer_id: int, year: int, states=OPEN_OR_APPROVED) -> Registration | None:
    return (
        s.query(Registration)
        .filter(Registration.importer_id == importer_id)
        .filter(Registration.year == year)
        .filter(Registration.state.in_(states))
        .order_by(Registration.id.desc())
        .first()
    )


def get_active_registration(s: Session, importer_id: int, year: int) -> Registration | None:
    """The importer's Approved registration for `year`, if any."""
    return find_registration(s, importer_id, year, states=(RegistrationState.APPROVED,))


def approved_refrigerant_codes(s: Session, importer_id: int, year: int) -> list[str]:
    reg = get_active_registration(s, importer_id, year)
    return reg.refrigerant_codes if reg else []


def list_registrations(
    s: Session,
    *,
    year: int | None = None,
    state: RegistrationState | None = None,
    importer_id: int | None = None,
) -> list[Registration]:
    q = s.query(Registration)
    if year is not None:
        q = q.filter(Registration.year == year)
    if state is not None:
        q = q.filter(Registration.state == state)
    if importer_id is not None:
        q = q.filter(Registration.importer_id == importer_id)
    return q.order_by(Registration.created_at.desc(), Registration.id.desc()).all()


def _normalize_codes(codes) -> list[str]:
    out: list[str] = []
    for c in codes or []:
        c = (c or "").strip()
        if c and c not in out:
            out.append(c)
    return out


def submit_registration(
    s: Session,
    *,
    importer_id: int,
    refrigerant_codes: list[str],
    is_retail: bool,
    period: RegistrationPeriod,
    year: int | None = None,
    user: User | None = None,
) -> Registration:
    """Create a Submitted registration for the open registration year."""
    importer = get_importer(s, importer_id)

    if not period.is_open:
        raise ValidationError(
            f"Registration is closed. It opens in {period.days_until_open} day(s).",
            details={"days_until_open": period.days_until_open},
        )
    if year is None or year == "":
        year = period.registration_year
    try:
        year = int(year)
    except (TypeError, ValueError) as e:
        raise ValidationError("year must be an integer.", details={"field": "year"}) from e
    if year != period.registration_year:
        raise ValidationError(
            f"Registration is only open for {period.registration_year}.",
            details={"year": year, "registration_year": period.registration_year},
        )

    codes = _normalize_codes(refrigerant_codes)
    if not codes:
        raise ValidationError("Select at least one refrigerant.", details={"field": "refrigerants"})

    catalog = {r.code: r for r in s.query(Refrigerant).filter(Refrigerant.code.in_(codes)).all()}
    unknown = [c for c in codes if c not in catalog]
    if unknown:
        raise ValidationError(
            f"Unknown refrigerant(s): {', '.join(unknown)}",
            details={"field": "refrigerants", "unknown": unknown},
        )

    existing = find_registration(s, importer.id, year)
    if existing is not None:
        raise PreconditionError(
            f"A registration for {year} already exists ({existing.state.value}).",
            details={"registration_id": existing.id, "state": existing.state.value},
        )

    now = datetime.utcnow()
    reg = Registration(
        importer_id=importer.id,
        year=year,
        is_retail=bool(is_retail),
        state=RegistrationState.SUBMITTED,
        submitted_at=now,
        submitted_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    # GWP captured at selection time; later catalog edits do not change it.
    reg.selected_refrigerants = [
        {"code": c, "gwp_value": str(catalog[c].gwp_value), "restricted": catalog[c].restricted} for c in codes
    ]
    s.add(reg)
    try:
        s.flush()
    except IntegrityError as e:
        # Lost the race against a concurrent submission for the same importer/year.
        raise PreconditionError(
            f"A registration for {year} already exists.",
            details={"importer_id": importer.id, "year": year},
        ) from e

    record_event(
        s,
        actor=user,
        action="registration.submit",
        entity_type="Registration",
        entity_id=str(reg.id),
        metadata={"importer_id": importer.id, "year": year, "refrigerants": codes, "is_retail": reg.is_retail},
    )
    return reg


def approve_registration(
    s: Session,
    reg: Registration,
    *,
    user: User | None,
    approver_name: str | None = None,
    signature_storage_key: str | None = None,
    import_quota: Any = None,
    counter_seed: int = DEFAULT_COUNTER_SEED,
) -> Registration:
    """
    Approve a Submitted registration: allocate the certificate number and stamp it.
    Optionally assign the importer's yearly allowance in the same transaction.
    """
    ensure_state(reg, allowed_sources(STATE_TRANSITIONS, RegistrationState.APPROVED), "approve")

    other = get_active_registration(s, reg.importer_id, reg.year)
    if other is not None and other.id != reg.id:
        raise PreconditionError(
            f"Importer already holds an approved registration for {reg.year}.",
            details={"registration_id": other.id, "certificate_number": other.certificate_number},
        )

    cert_no = next_value(s, COUNTER_REGISTRATION_CERT, seed=counter_seed)
    transition(
        s,
        reg,
        transitions=STATE_TRANSITIONS,
        to=RegistrationState.APPROVED,
        action="approve",
        values={
            "certificate_number": cert_no,
            "approved_at": datetime.utcnow(),
            "approved_by_user_id": user.id if user else None,
            "approver_name": (approver_name or (user.display_name or user.email if user else None)),
            "signature_storage_key": signature_storage_key,
        },
    )

    importer = get_importer(s, reg.importer_id)
    if import_quota is not None:
        set_allowance(s, importer.id, import_quota, user=user)
    importer_number = assign_importer_number(s, importer, user=user, seed=counter_seed)

    record_event(
        s,
        actor=user,
        action="registration.approve",
        entity_type="Registration",
        entity_id=str(reg.id),
        metadata={
            "certificate_number": cert_no,
            "importer_id": reg.importer_id,
            "importer_number": importer_number,
            "year": reg.year,
            "import_quota": None if import_quota is None else str(import_quota),
        },
    )
    return reg


def reject_registration(s: Session, reg: Registration, *, reason: str, user: User | None) -> Registration:
    """Reject a Submitted registration. No certificate number is consumed."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required.", details={"field": "reason"})

    transition(
        s,
        reg,
        transitions=STATE_TRANSITIONS,
        to=RegistrationState.REJECTED,
        action="reject",
        values={
            "rejection_reason": reason[:512],
            "rejected_at": datetime.utcnow(),
            "rejected_by_user_id": user.id if user else None,
        },
    )

    record_event(
        s,
        actor=user,
        action="registration.reject",
        entity_type="Registration",
        entity_id=str(reg.id),
        reason=reason[:512],
        metadata={"importer_id": reg.importer_id, "year": reg.year},
    )
    return reg


def registration_to_dict(reg: Registration) -> dict[str, Any]:
    return {
        "id": reg.id,
        "importer_id": reg.importer_id,
        "year": reg.year,
        "state": reg.state.value,
        "is_retail": reg.is_retail,
        "refrigerants": reg.selected_refrigerants,
        "certificate_number": reg.certificate_number,
        "pending": reg.is_pending,
        "completed": reg.is_completed,
        "approved_at": reg.approved_at.isoformat() if reg.approved_at else None,
        "rejection_reason": reg.rejection_reason,
        "document_storage_key": reg.document_storage_key,
    }
