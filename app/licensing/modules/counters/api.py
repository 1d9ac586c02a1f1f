from __future__ import annotations

from flask import Blueprint, g, jsonify, request
from sqlalchemy.orm import Session

from app.licensing.db import db_session
from app.licensing.errors import ValidationError
from app.licensing.rbac import require_permission

from .service import advance_counter, counters_snapshot

bp = Blueprint("counters", __name__)


@bp.get("/counters")
@require_permission("counters.manage")
def counters_list():
    s: Session = db_session()
    return jsonify(counters_snapshot(s))


@bp.post("/counters/<name>")
@require_permission("counters.manage")
def counters_advance(name: str):
    payload = request.get_json(silent=True) or {}
    try:
        value = int(payload.get("value"))
    except (TypeError, ValueError) as e:
        raise ValidationError("value must be an integer.", details={"field": "value"}) from e
    s: Session = db_session()
    advance_counter(s, name, value, user=g.current_user)
    s.commit()
    return jsonify(counters_snapshot(s))
