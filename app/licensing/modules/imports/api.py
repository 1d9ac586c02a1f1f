"""
Import license JSON endpoints.
"""
from __future__ import annotations

from datetime import datetime

from flask import Blueprint, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.db import db_session
from app.licensing.engine import get_engine
from app.licensing.errors import NotFoundError, ValidationError
from app.licensing.rbac import require_permission, resolve_importer_id, user_has_permission

from .models import ImportState
from .service import get_import, import_to_dict, list_imports

bp = Blueprint("imports", __name__)

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024


def _state_arg(raw: str | None) -> ImportState | None:
    if not raw:
        return None
    try:
        return ImportState(raw)
    except ValueError as e:
        raise ValidationError(f"Unknown import state '{raw}'.", details={"state": raw}) from e


def _parse_when(raw) -> datetime:
    if not raw or not isinstance(raw, str):
        raise ValidationError("inspection_at is required (ISO 8601, UTC).", details={"field": "inspection_at"})
    try:
        return datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError("inspection_at must be an ISO 8601 date/time.", details={"field": "inspection_at"}) from e


def _visible_import(s: Session, import_id: int):
    imp = get_import(s, import_id)
    user = g.current_user
    if not user_has_permission(user, "importers.view_all") and imp.importer_id != resolve_importer_id(s, user):
        raise NotFoundError(f"Import {import_id} not found.", details={"import_id": import_id})
    return imp


@bp.get("/imports")
@require_permission("imports.view")
def imports_list():
    s: Session = db_session()
    importer_id = request.args.get("importer_id", type=int)
    if not user_has_permission(g.current_user, "importers.view_all"):
        importer_id = resolve_importer_id(s, g.current_user)
    imps = list_imports(
        s,
        importer_id=importer_id,
        year=request.args.get("year", type=int),
        state=_state_arg(request.args.get("state")),
    )
    return jsonify({"imports": [import_to_dict(i) for i in imps]})


@bp.get("/imports/<int:import_id>")
@require_permission("imports.view")
def imports_detail(import_id: int):
    s: Session = db_session()
    return jsonify(import_to_dict(_visible_import(s, import_id)))


@bp.post("/imports/quota-check")
@require_permission("imports.submit")
def imports_quota_check():
    payload = request.get_json(silent=True) or {}
    s: Session = db_session()
    importer_id = resolve_importer_id(s, g.current_user, payload.get("importer_id"))
    result = get_engine().quota_check(importer_id, payload.get("line_items") or [])
    return jsonify({k: (str(v) if not isinstance(v, bool) else v) for k, v in result.items()})


@bp.post("/imports")
@require_permission("imports.submit")
def imports_submit():
    payload = request.get_json(silent=True) or {}
    s: Session = db_session()
    importer_id = resolve_importer_id(s, g.current_user, payload.get("importer_id"))
    try:
        registration_id = int(payload.get("registration_id"))
    except (TypeError, ValueError) as e:
        raise ValidationError("registration_id is required.", details={"field": "registration_id"}) from e
    imp = get_engine().submit_import(
        importer_id=importer_id,
        registration_id=registration_id,
        line_items=payload.get("line_items") or [],
        user=g.current_user,
    )
    return jsonify(import_to_dict(imp)), 201


@bp.post("/imports/<int:import_id>/arrive")
@require_permission("imports.submit")
def imports_arrive(import_id: int):
    s: Session = db_session()
    _visible_import(s, import_id)
    files: list[tuple[str, bytes, str | None]] = []
    for f in request.files.getlist("documents"):
        if not f or not f.filename:
            continue
        data = f.read()
        if len(data) > MAX_DOCUMENT_BYTES:
            raise ValidationError(f"{f.filename} is larger than 10MB.", details={"file": f.filename})
        files.append((f.filename, data, f.mimetype))
    imp = get_engine().mark_arrived(import_id, files=files, user=g.current_user)
    return jsonify(import_to_dict(imp))


@bp.post("/imports/<int:import_id>/schedule-inspection")
@require_permission("imports.schedule")
def imports_schedule(import_id: int):
    payload = request.get_json(silent=True) or {}
    imp = get_engine().schedule_inspection(
        import_id, when_utc=_parse_when(payload.get("inspection_at")), user=g.current_user
    )
    return jsonify(import_to_dict(imp))


@bp.post("/imports/<int:import_id>/approve")
@require_permission("imports.approve")
def imports_approve(import_id: int):
    payload = request.get_json(silent=True) or {}
    imp = get_engine().approve_import(
        import_id,
        user=g.current_user,
        signature=payload.get("signature"),
        approver_name=payload.get("approver_name"),
    )
    return jsonify(import_to_dict(imp))


@bp.post("/imports/<int:import_id>/reject")
@require_permission("imports.approve")
def imports_reject(import_id: int):
    payload = request.get_json(silent=True) or {}
    imp = get_engine().reject_import(import_id, reason=payload.get("reason") or "", user=g.current_user)
    return jsonify(import_to_dict(imp))


@bp.get("/imports/<int:import_id>/license")
@require_permission("imports.view")
def imports_license_download(import_id: int):
    s: Session = db_session()
    imp = _visible_import(s, import_id)
    if not imp.document_storage_key:
        raise NotFoundError(f"No import license has been generated for import {import_id}.", details={"import_id": import_id})
    fobj = get_engine().storage.open(imp.document_storage_key)
    record_event(
        s,
        actor=g.current_user,
        action="import.license_download",
        entity_type="ImportLicense",
        entity_id=str(imp.id),
        metadata={"storage_key": imp.document_storage_key},
    )
    s.commit()
    filename = f"import_license_{imp.import_number}.txt"
    return send_file(fobj, mimetype="text/plain", as_attachment=True, download_name=filename, max_age=0)
