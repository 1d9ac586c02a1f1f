from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.constants import DEFAULT_REFRIGERANTS
from app.licensing.errors import NotFoundError, ValidationError
from app.licensing.utils import to_decimal

from .models import Refrigerant

if TYPE_CHECKING:
    from app.licensing.models import User


def get_refrigerant(s: Session, code: str) -> Refrigerant | None:
    code = (code or "").strip()
    if not code:
        return None
    return s.query(Refrigerant).filter(Refrigerant.code == code).one_or_none()


def require_refrigerant(s: Session, code: str) -> Refrigerant:
    r = get_refrigerant(s, code)
    if r is None:
        raise NotFoundError(f"Refrigerant '{code}' is not in the catalog.", details={"code": code})
    return r


def gwp_lookup(s: Session, codes: Iterable[str]) -> dict[str, Decimal]:
    """Map catalog code -> current GWP for the given codes (missing codes are omitted)."""
    wanted = {c.strip() for c in codes if c and c.strip()}
    if not wanted:
        return {}
    rows = s.query(Refrigerant).filter(Refrigerant.code.in_(wanted)).all()
    return {r.code: r.gwp_value for r in rows}


def list_refrigerants(s: Session, *, q: str | None = None, restricted: bool | None = None) -> list[Refrigerant]:
    query = s.query(Refrigerant)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(
            or_(
                Refrigerant.code.ilike(like),
                Refrigerant.chemical_name.ilike(like),
                Refrigerant.hs_code.ilike(like),
                Refrigerant.refrigerant_type.ilike(like),
            )
        )
    if restricted is not None:
        query = query.filter(Refrigerant.restricted == restricted)
    return query.order_by(Refrigerant.code.asc()).all()


def upsert_refrigerant(
    s: Session,
    *,
    code: str,
    gwp_value,
    chemical_name: str | None = None,
    restricted: bool = False,
    hs_code: str | None = None,
    refrigerant_type: str | None = None,
    user: User | None = None,
) -> Refrigerant:
    """Create or update a catalog entry. GWP changes never touch existing registrations or imports."""
    code = (code or "").strip()
    if not code:
        raise ValidationError("Refrigerant code is required.", details={"field": "code"})
    gwp = to_decimal(gwp_value, "gwp_value")
    if gwp < 0:
        raise ValidationError("GWP value cannot be negative.", details={"field": "gwp_value"})

    r = get_refrigerant(s, code)
    created = r is None
    if r is None:
        r = Refrigerant(code=code, gwp_value=gwp)
        s.add(r)
    old_gwp = r.gwp_value
    r.gwp_value = gwp
    r.chemical_name = chemical_name.strip() if chemical_name else r.chemical_name
    r.restricted = bool(restricted)
    r.hs_code = hs_code.strip() if hs_code else r.hs_code
    r.refrigerant_type = refrigerant_type.strip() if refrigerant_type else r.refrigerant_type
    r.updated_at = datetime.utcnow()
    s.flush()

    record_event(
        s,
        actor=user,
        action="refrigerant.create" if created else "refrigerant.edit",
        entity_type="Refrigerant",
        entity_id=str(r.id),
        metadata={
            "code": r.code,
            "gwp_value": str(r.gwp_value),
            "previous_gwp_value": None if created else str(old_gwp),
            "restricted": r.restricted,
        },
    )
    return r


def seed_default_catalog(s: Session) -> int:
    """Insert the default catalog entries that are missing. Returns the number inserted."""
    inserted = 0
    for code, name, gwp, restricted, kind in DEFAULT_REFRIGERANTS:
        if get_refrigerant(s, code) is not None:
            continue
        s.add(
            Refrigerant(
                code=code,
                chemical_name=name,
                gwp_value=Decimal(gwp),
                restricted=restricted,
                refrigerant_type=kind,
            )
        )
        inserted += 1
    s.flush()
    return inserted


def refrigerant_to_dict(r: Refrigerant) -> dict:
    return {
        "code": r.code,
        "chemical_name": r.chemical_name,
        "gwp_value": str(r.gwp_value),
        "restricted": r.restricted,
        "hs_code": r.hs_code,
        "type": r.refrigerant_type,
    }
