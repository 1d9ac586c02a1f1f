"""
Import license workflow service layer.

    AwaitingArrival -> AwaitingInspectionSchedule -> InspectionScheduled -> Approved
                 \\__________________ any non-terminal ________________/ -> Rejected

Approval is the only step that touches the quota ledger: the CO2 total is
recomputed from the stored line items, debited, and the import frozen, all in
the caller's transaction.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.constants import COUNTER_IMPORT_LICENSE, QUOTA_POLICY_CLAMP
from app.licensing.errors import NotFoundError, PreconditionError, ValidationError
from app.licensing.modules.counters.service import DEFAULT_COUNTER_SEED, next_value
from app.licensing.modules.quota.service import check_import_quota, debit, get_importer
from app.licensing.modules.refrigerants.co2 import LineItemInput, import_total_co2, line_item_co2, quantize_co2
from app.licensing.modules.refrigerants.service import gwp_lookup
from app.licensing.modules.registrations.models import RegistrationState
from app.licensing.modules.registrations.service import get_registration
from app.licensing.utils import to_decimal
from app.licensing.workflow import allowed_sources, ensure_state, transition

from .models import ImportLicense, ImportLineItem, ImportState

if TYPE_CHECKING:
    from app.licensing.models import User

logger = logging.getLogger(__name__)


# Valid state transitions
STATE_TRANSITIONS = {
    ImportState.AWAITING_ARRIVAL: {ImportState.AWAITING_INSPECTION_SCHEDULE, ImportState.REJECTED},
    ImportState.AWAITING_INSPECTION_SCHEDULE: {ImportState.INSPECTION_SCHEDULED, ImportState.REJECTED},
    ImportState.INSPECTION_SCHEDULED: {ImportState.APPROVED, ImportState.REJECTED},
    ImportState.APPROVED: set(),
    ImportState.REJECTED: set(),
}


def parse_line_items(raw: Iterable[LineItemInput | Mapping[str, Any]] | None) -> list[LineItemInput]:
    """Normalize JSON/form line items. GWP is resolved later from the catalog."""
    items: list[LineItemInput] = []
    for idx, item in enumerate(raw or []):
        if isinstance(item, LineItemInput):
            code, volume, unit, quantity = item.refrigerant_code, item.volume, item.unit, item.quantity
        else:
            code = item.get("refrigerant_code") or item.get("refrigerant")
            volume = item.get("volume")
            unit = item.get("unit") or "kg"
            quantity = item.get("quantity", 1)

        code = (code or "").strip()
        if not code:
            raise ValidationError(f"Line {idx + 1}: refrigerant is required.", details={"line": idx + 1})
        vol = to_decimal(volume, "volume")
        if vol < 0:
            raise ValidationError(f"Line {idx + 1}: volume cannot be negative.", details={"line": idx + 1})
        try:
            qty = int(quantity)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Line {idx + 1}: quantity must be a whole number.", details={"line": idx + 1}) from e
        if qty < 1:
            raise ValidationError(f"Line {idx + 1}: quantity must be at least 1.", details={"line": idx + 1})

        items.append(LineItemInput(refrigerant_code=code, volume=vol, unit=(unit or "kg").strip(), quantity=qty))
    return items


def _with_gwp(items: list[LineItemInput], gwp_by_code: Mapping[str, Decimal | None]) -> list[LineItemInput]:
    return [
        LineItemInput(
            refrigerant_code=i.refrigerant_code,
            volume=i.volume,
            unit=i.unit,
            quantity=i.quantity,
            gwp=gwp_by_code.get(i.refrigerant_code),
        )
        for i in items
    ]


def get_import(s: Session, import_id: int) -> ImportLicense:
    imp = s.get(ImportLicense, import_id)
    if imp is None:
        raise NotFoundError(f"Import {import_id} not found.", details={"import_id": import_id})
    return imp


def list_imports(
    s: Session,
    *,
    importer_id: int | None = None,
    year: int | None = None,
    state: ImportState | None = None,
) -> list[ImportLicense]:
    q = s.query(ImportLicense)
    if importer_id is not None:
        q = q.filter(ImportLicense.importer_id == importer_id)
    if year is not None:
        q = q.filter(ImportLicense.year == year)
    if state is not None:
        q = q.filter(ImportLicense.state == state)
    return q.order_by(ImportLicense.created_at.desc(), ImportLicense.id.desc()).all()


def quota_check(
    s: Session,
    importer_id: int,
    line_items,
    *,
    strict: bool = False,
) -> dict[str, Any]:
    """Preview an import against the remaining balance before it is submitted."""
    items = parse_line_items(line_items)
    gwp = gwp_lookup(s, [i.refrigerant_code for i in items])
    import_co2 = import_total_co2(_with_gwp(items, gwp), strict=strict)
    return check_import_quota(s, importer_id, import_co2)


def submit_import(
    s: Session,
    *,
    importer_id: int,
    registration_id: int,
    line_items,
    current_year: int,
    user: User | None = None,
    strict: bool = False,
    counter_seed: int = DEFAULT_COUNTER_SEED,
) -> ImportLicense:
    """
    Create an import against the importer's Approved registration for `current_year`.
    The CO2 total is computed for display only; nothing is debited until approval.
    """
    importer = get_importer(s, importer_id)
    reg = get_registration(s, registration_id)

    if reg.importer_id != importer.id:
        raise PreconditionError(
            "Registration does not belong to this importer.",
            details={"registration_id": reg.id, "importer_id": importer.id},
        )
    if reg.state != RegistrationState.APPROVED:
        raise PreconditionError(
            f"Registration {reg.id} is not approved ({reg.state.value}).",
            details={"registration_id": reg.id, "state": reg.state.value},
        )
    if reg.year != current_year:
        raise PreconditionError(
            f"Registration {reg.id} is for {reg.year}; imports need an approved {current_year} registration.",
            details={"registration_id": reg.id, "registration_year": reg.year, "current_year": current_year},
        )

    items = parse_line_items(line_items)
    if not items:
        raise ValidationError("Add at least one line item.", details={"field": "line_items"})

    allowed = set(reg.refrigerant_codes)
    not_registered = sorted({i.refrigerant_code for i in items if i.refrigerant_code not in allowed})
    if not_registered:
        raise ValidationError(
            f"Refrigerant(s) not on the approved registration: {', '.join(not_registered)}",
            details={"field": "line_items", "not_registered": not_registered},
        )

    # Current catalog GWP; the registration snapshot covers entries removed since.
    gwp: dict[str, Decimal | None] = {
        r["code"]: (Decimal(r["gwp_value"]) if r.get("gwp_value") is not None else None) for r in reg.selected_refrigerants
    }
    gwp.update(gwp_lookup(s, allowed))
    items = _with_gwp(items, gwp)

    import_number = next_value(s, COUNTER_IMPORT_LICENSE, seed=counter_seed)
    now = datetime.utcnow()
    imp = ImportLicense(
        importer_id=importer.id,
        registration_id=reg.id,
        year=current_year,
        import_number=import_number,
        state=ImportState.AWAITING_ARRIVAL,
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    total = Decimal("0")
    for i in items:
        co2 = line_item_co2(i.volume, i.unit, i.gwp, i.quantity, strict=strict)
        total += co2
        imp.line_items.append(
            ImportLineItem(
                refrigerant_code=i.refrigerant_code,
                quantity=i.quantity,
                volume=i.volume,
                unit=i.unit,
                gwp_at_time_of_import=i.gwp,
                co2_equivalent=co2,
            )
        )
    imp.total_co2_equivalent = quantize_co2(total)
    s.add(imp)
    s.flush()

    record_event(
        s,
        actor=user,
        action="import.submit",
        entity_type="ImportLicense",
        entity_id=str(imp.id),
        metadata={
            "import_number": import_number,
            "importer_id": importer.id,
            "registration_id": reg.id,
            "total_co2_equivalent": str(imp.total_co2_equivalent),
            "lines": len(items),
        },
    )
    return imp


def mark_arrived(
    s: Session,
    imp: ImportLicense,
    *,
    supporting_documents: list[dict[str, Any]] | None = None,
    user: User | None = None,
) -> ImportLicense:
    """Shipment has arrived. `supporting_documents` are storage references, already uploaded."""
    docs = imp.supporting_documents + list(supporting_documents or [])
    transition(
        s,
        imp,
        transitions=STATE_TRANSITIONS,
        to=ImportState.AWAITING_INSPECTION_SCHEDULE,
        action="mark arrived",
        values={"arrived_at": datetime.utcnow(), "documents_json": json.dumps(docs, sort_keys=True, default=str)},
    )
    record_event(
        s,
        actor=user,
        action="import.arrived",
        entity_type="ImportLicense",
        entity_id=str(imp.id),
        metadata={"import_number": imp.import_number, "documents": [d.get("storage_key") for d in docs]},
    )
    return imp


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def schedule_inspection(
    s: Session,
    imp: ImportLicense,
    *,
    when_utc: datetime,
    user: User | None = None,
    now: datetime | None = None,
) -> ImportLicense:
    ensure_state(imp, allowed_sources(STATE_TRANSITIONS, ImportState.INSPECTION_SCHEDULED), "schedule inspection for")
    if not isinstance(when_utc, datetime):
        raise ValidationError("Inspection date/time is required.", details={"field": "inspection_at"})
    when = _as_naive_utc(when_utc)
    current = _as_naive_utc(now) if now is not None else datetime.utcnow()
    if when <= current:
        raise ValidationError(
            "Inspection must be scheduled in the future.",
            details={"field": "inspection_at", "inspection_at": when.isoformat()},
        )

    transition(
        s,
        imp,
        transitions=STATE_TRANSITIONS,
        to=ImportState.INSPECTION_SCHEDULED,
        action="schedule inspection for",
        values={"inspection_at": when, "inspection_scheduled_by_user_id": user.id if user else None},
    )
    record_event(
        s,
        actor=user,
        action="import.schedule_inspection",
        entity_type="ImportLicense",
        entity_id=str(imp.id),
        metadata={"import_number": imp.import_number, "inspection_at": when.isoformat()},
    )
    return imp


def approve_import(
    s: Session,
    imp: ImportLicense,
    *,
    user: User | None,
    approver_name: str | None = None,
    signature_storage_key: str | None = None,
    policy: str = QUOTA_POLICY_CLAMP,
    strict: bool = False,
) -> ImportLicense:
    """
    Recompute the CO2 total from the stored line items, freeze the import as
    Approved and debit the importer's quota. A second approval raises
    InvalidStateError before anything is debited.
    """
    ensure_state(imp, allowed_sources(STATE_TRANSITIONS, ImportState.APPROVED), "approve")

    line_co2 = [
        (li, line_item_co2(li.volume, li.unit, li.gwp_at_time_of_import, li.quantity, strict=strict))
        for li in imp.line_items
    ]
    total = quantize_co2(sum((co2 for _, co2 in line_co2), Decimal("0")))

    transition(
        s,
        imp,
        transitions=STATE_TRANSITIONS,
        to=ImportState.APPROVED,
        action="approve",
        values={
            "total_co2_equivalent": total,
            "approved_at": datetime.utcnow(),
            "approved_by_user_id": user.id if user else None,
            "approver_name": (approver_name or (user.display_name or user.email if user else None)),
            "signature_storage_key": signature_storage_key,
        },
    )
    # Frozen line values always sum to the frozen total
    for li, co2 in line_co2:
        li.co2_equivalent = co2
    s.flush()

    result = debit(
        s,
        imp.importer_id,
        total,
        user=user,
        reference=f"import:{imp.import_number}",
        policy=policy,
    )

    record_event(
        s,
        actor=user,
        action="import.approve",
        entity_type="ImportLicense",
        entity_id=str(imp.id),
        metadata={
            "import_number": imp.import_number,
            "total_co2_equivalent": str(total),
            "balance": str(result.balance),
            "policy": policy,
        },
    )
    return imp


def reject_import(s: Session, imp: ImportLicense, *, reason: str, user: User | None) -> ImportLicense:
    """Reject from any non-terminal state. Nothing is debited; the import number stays used."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required.", details={"field": "reason"})

    transition(
        s,
        imp,
        transitions=STATE_TRANSITIONS,
        to=ImportState.REJECTED,
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
        action="import.reject",
        entity_type="ImportLicense",
        entity_id=str(imp.id),
        reason=reason[:512],
        metadata={"import_number": imp.import_number},
    )
    return imp


def import_to_dict(imp: ImportLicense) -> dict[str, Any]:
    return {
        "id": imp.id,
        "import_number": imp.import_number,
        "importer_id": imp.importer_id,
        "registration_id": imp.registration_id,
        "year": imp.year,
        "state": imp.state.value,
        "arrived": imp.arrived,
        "pending": imp.pending,
        "approved": imp.approved,
        "total_co2_equivalent": str(imp.total_co2_equivalent),
        "inspection_at": imp.inspection_at.isoformat() if imp.inspection_at else None,
        "supporting_documents": imp.supporting_documents,
        "rejection_reason": imp.rejection_reason,
        "document_storage_key": imp.document_storage_key,
        "line_items": [
            {
                "refrigerant_code": li.refrigerant_code,
                "quantity": li.quantity,
                "volume": str(li.volume),
                "unit": li.unit,
                "gwp_at_time_of_import": None if li.gwp_at_time_of_import is None else str(li.gwp_at_time_of_import),
                "co2_equivalent": str(li.co2_equivalent),
            }
            for li in imp.line_items
        ],
    }
