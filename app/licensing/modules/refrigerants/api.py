from __future__ import annotations

from flask import Blueprint, g, jsonify, request
from sqlalchemy.orm import Session

from app.licensing.db import db_session
from app.licensing.rbac import require_permission

from .service import list_refrigerants, refrigerant_to_dict, require_refrigerant, upsert_refrigerant

bp = Blueprint("refrigerants", __name__)


@bp.get("/refrigerants")
@require_permission("refrigerants.view")
def refrigerants_list():
    s: Session = db_session()
    restricted_raw = (request.args.get("restricted") or "").strip().lower()
    restricted = None if not restricted_raw else restricted_raw in ("1", "true", "yes")
    rows = list_refrigerants(s, q=request.args.get("q"), restricted=restricted)
    return jsonify({"refrigerants": [refrigerant_to_dict(r) for r in rows]})


@bp.get("/refrigerants/<path:code>")
@require_permission("refrigerants.view")
def refrigerants_detail(code: str):
    s: Session = db_session()
    return jsonify(refrigerant_to_dict(require_refrigerant(s, code)))


@bp.put("/refrigerants/<path:code>")
@require_permission("refrigerants.edit")
def refrigerants_upsert(code: str):
    payload = request.get_json(silent=True) or {}
    s: Session = db_session()
    r = upsert_refrigerant(
        s,
        code=code,
        gwp_value=payload.get("gwp_value"),
        chemical_name=payload.get("chemical_name"),
        restricted=bool(payload.get("restricted")),
        hs_code=payload.get("hs_code"),
        refrigerant_type=payload.get("type"),
        user=g.current_user,
    )
    s.commit()
    return jsonify(refrigerant_to_dict(r))
