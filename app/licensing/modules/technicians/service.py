"""
Technician certification service layer.

    Pending -> Approved | Rejected

Approval allocates the next technician certificate number in the caller's
transaction; rejection consumes none.
"""
from __future__ import annotations

import json
import re
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.constants import COUNTER_TECHNICIAN_CERT, TECHNICIAN_QUALIFICATION_LEVELS
from app.licensing.errors import NotFoundError, PreconditionError, ValidationError
from app.licensing.modules.counters.service import DEFAULT_COUNTER_SEED, next_value
from app.licensing.workflow import allowed_sources, ensure_state, transition

from .models import TechnicianApplication, TechnicianState

if TYPE_CHECKING:
    from app.licensing.models import User


STATE_TRANSITIONS = {
    TechnicianState.PENDING: {TechnicianState.APPROVED, TechnicianState.REJECTED},
    TechnicianState.APPROVED: set(),
    TechnicianState.REJECTED: set(),
}

LIVE_STATES = (TechnicianState.PENDING, TechnicianState.APPROVED)


def document_type_for(filename: str) -> str:
    tokens = set(re.split(r"[^a-z0-9]+", (filename or "").lower()))
    if tokens & {"id", "nid", "national", "passport"}:
        return "ID"
    if tokens & {"certificate", "cert", "training"}:
        return "Training Certificate"
    return "Other"


def _parse_date(value: Any, field: str) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as e:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD).", details={"field": field}) from e


def _required(value: Any, field: str, label: str) -> str:
    v = str(value or "").strip()
    if not v:
        raise ValidationError(f"{label} is required.", details={"field": field})
    return v


def get_application(s: Session, application_id: int) -> TechnicianApplication:
    t = s.get(TechnicianApplication, application_id)
    if t is None:
        raise NotFoundError(
            f"Technician application {application_id} not found.", details={"application_id": application_id}
        )
    return t


def find_live_application(s: Session, email: str) -> TechnicianApplication | None:
    return (
        s.query(TechnicianApplication)
        .filter(TechnicianApplication.email == email)
        .filter(TechnicianApplication.state.in_(LIVE_STATES))
        .first()
    )


def list_applications(s: Session, *, state: TechnicianState | None = None) -> list[TechnicianApplication]:
    q = s.query(TechnicianApplication)
    if state is not None:
        q = q.filter(TechnicianApplication.state == state)
    return q.order_by(TechnicianApplication.created_at.desc(), TechnicianApplication.id.desc()).all()


def submit_application(
    s: Session,
    *,
    full_name: str,
    email: str,
    national_id: str,
    qualification_level: str,
    training_institution: str,
    documents: list[dict[str, Any]],
    telephone: str | None = None,
    address: str | None = None,
    date_of_birth: Any = None,
    training_completion_date: Any = None,
    user: User | None = None,
) -> TechnicianApplication:
    """`documents` are storage references, already uploaded."""
    full_name = _required(full_name, "full_name", "Full name")
    email = _required(email, "email", "Email").lower()
    national_id = _required(national_id, "national_id", "National ID")
    training_institution = _required(training_institution, "training_institution", "Training institution")
    qualification_level = (qualification_level or "").strip()
    if qualification_level not in TECHNICIAN_QUALIFICATION_LEVELS:
        raise ValidationError(
            "Select a qualification level.",
            details={"field": "qualification_level", "allowed": list(TECHNICIAN_QUALIFICATION_LEVELS)},
        )
    if not documents:
        raise ValidationError(
            "Upload at least one supporting document (ID, training certificate, etc.).",
            details={"field": "documents"},
        )

    existing = find_live_application(s, email)
    if existing is not None:
        raise PreconditionError(
            f"An application for {email} already exists ({existing.state.value}).",
            details={"application_id": existing.id, "state": existing.state.value},
        )

    now = datetime.utcnow()
    t = TechnicianApplication(
        user_id=user.id if user else None,
        full_name=full_name,
        email=email,
        telephone=(telephone or "").strip() or None,
        address=(address or "").strip() or None,
        national_id=national_id,
        date_of_birth=_parse_date(date_of_birth, "date_of_birth"),
        qualification_level=qualification_level,
        training_institution=training_institution,
        training_completion_date=_parse_date(training_completion_date, "training_completion_date"),
        documents_json=json.dumps(documents, sort_keys=True, default=str),
        state=TechnicianState.PENDING,
        created_at=now,
        updated_at=now,
    )
    s.add(t)
    try:
        s.flush()
    except IntegrityError as e:
        raise PreconditionError(f"An application for {email} already exists.", details={"email": email}) from e

    record_event(
        s,
        actor=user,
        action="technician.submit",
        entity_type="TechnicianApplication",
        entity_id=str(t.id),
        metadata={
            "email": email,
            "qualification_level": qualification_level,
            "documents": [d.get("storage_key") for d in documents],
        },
    )
    return t


def approve_application(
    s: Session,
    t: TechnicianApplication,
    *,
    user: User | None,
    counter_seed: int = DEFAULT_COUNTER_SEED,
) -> TechnicianApplication:
    ensure_state(t, allowed_sources(STATE_TRANSITIONS, TechnicianState.APPROVED), "approve")
    cert_no = next_value(s, COUNTER_TECHNICIAN_CERT, seed=counter_seed)
    transition(
        s,
        t,
        transitions=STATE_TRANSITIONS,
        to=TechnicianState.APPROVED,
        action="approve",
        values={
            "certificate_number": cert_no,
            "approved_at": datetime.utcnow(),
            "approved_by_user_id": user.id if user else None,
        },
    )
    record_event(
        s,
        actor=user,
        action="technician.approve",
        entity_type="TechnicianApplication",
        entity_id=str(t.id),
        metadata={"certificate_number": cert_no, "email": t.email},
    )
    return t


def reject_application(s: Session, t: TechnicianApplication, *, reason: str, user: User | None) -> TechnicianApplication:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required.", details={"field": "reason"})
    transition(
        s,
        t,
        transitions=STATE_TRANSITIONS,
        to=TechnicianState.REJECTED,
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
        action="technician.reject",
        entity_type="TechnicianApplication",
        entity_id=str(t.id),
        reason=reason[:512],
        metadata={"email": t.email},
    )
    return t


def technician_to_dict(t: TechnicianApplication) -> dict[str, Any]:
    return {
        "id": t.id,
        "full_name": t.full_name,
        "email": t.email,
        "telephone": t.telephone,
        "national_id": t.national_id,
        "date_of_birth": t.date_of_birth.isoformat() if t.date_of_birth else None,
        "qualification_level": t.qualification_level,
        "training_institution": t.training_institution,
        "training_completion_date": t.training_completion_date.isoformat() if t.training_completion_date else None,
        "state": t.state.value,
        "certificate_number": t.certificate_number,
        "supporting_documents": t.supporting_documents,
        "rejection_reason": t.rejection_reason,
        "document_storage_key": t.document_storage_key,
    }
