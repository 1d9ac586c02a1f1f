from __future__ import annotations

from flask import Blueprint, g, jsonify, request
from sqlalchemy.orm import Session

from app.licensing.db import db_session
from app.licensing.engine import get_engine
from app.licensing.rbac import require_permission, resolve_importer_id

from .service import create_importer, get_importer, importer_to_dict, set_allowance

bp = Blueprint("quota", __name__)


@bp.get("/quota")
@require_permission("quota.view")
def quota_view():
    s: Session = db_session()
    importer_id = resolve_importer_id(s, g.current_user, request.args.get("importer_id"))
    info = get_engine().quota_info(importer_id)
    return jsonify({k: (str(v) if v is not None and not isinstance(v, int) else v) for k, v in info.items()})


@bp.get("/importers/<int:importer_id>")
@require_permission("quota.manage")
def importers_detail(importer_id: int):
    s: Session = db_session()
    return jsonify(importer_to_dict(get_importer(s, importer_id)))


@bp.post("/importers")
@require_permission("quota.manage")
def importers_create():
    payload = request.get_json(silent=True) or {}
    s: Session = db_session()
    acct = create_importer(
        s,
        name=payload.get("name") or "",
        email=payload.get("email"),
        user_id=payload.get("user_id"),
        business_address=payload.get("business_address"),
        import_quota=payload.get("import_quota", 0),
        user=g.current_user,
    )
    s.commit()
    return jsonify(importer_to_dict(acct)), 201


@bp.post("/importers/<int:importer_id>/allowance")
@require_permission("quota.manage")
def importers_allowance(importer_id: int):
    payload = request.get_json(silent=True) or {}
    s: Session = db_session()
    acct = set_allowance(
        s,
        importer_id,
        payload.get("import_quota"),
        user=g.current_user,
        reset_consumption=bool(payload.get("reset_consumption", True)),
    )
    s.commit()
    return jsonify(importer_to_dict(acct))
