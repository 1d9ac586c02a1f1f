"""
Registration JSON endpoints.
"""
from __future__ import annotations

from flask import Blueprint, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.db import db_session
from app.licensing.engine import get_engine
from app.licensing.errors import NotFoundError, ValidationError
from app.licensing.rbac import require_permission, resolve_importer_id, user_has_permission

from .models import RegistrationState
from .service import get_registration, list_registrations, registration_to_dict

bp = Blueprint("registrations", __name__)


def _state_arg(raw: str | None) -> RegistrationState | None:
    if not raw:
        return None
    try:
        return RegistrationState(raw)
    except ValueError as e:
        raise ValidationError(f"Unknown registration state '{raw}'.", details={"state": raw}) from e


def _visible_registration(s: Session, registration_id: int):
    reg = get_registration(s, registration_id)
    user = g.current_user
    if not user_has_permission(user, "importers.view_all") and reg.importer_id != resolve_importer_id(s, user):
        raise NotFoundError(f"Registration {registration_id} not found.", details={"registration_id": registration_id})
    return reg


@bp.get("/registrations")
@require_permission("registrations.view")
def registrations_list():
    s: Session = db_session()
    importer_id = request.args.get("importer_id", type=int)
    if not user_has_permission(g.current_user, "importers.view_all"):
        importer_id = resolve_importer_id(s, g.current_user)
    regs = list_registrations(
        s,
        year=request.args.get("year", type=int),
        state=_state_arg(request.args.get("state")),
        importer_id=importer_id,
    )
    return jsonify({"registrations": [registration_to_dict(r) for r in regs]})


@bp.get("/registrations/<int:registration_id>")
@require_permission("registrations.view")
def registrations_detail(registration_id: int):
    s: Session = db_session()
    return jsonify(registration_to_dict(_visible_registration(s, registration_id)))


@bp.post("/registrations")
@require_permission("registrations.submit")
def registrations_submit():
    payload = request.get_json(silent=True) or {}
    s: Session = db_session()
    importer_id = resolve_importer_id(s, g.current_user, payload.get("importer_id"))
    codes = payload.get("refrigerants") or []
    if not isinstance(codes, list):
        raise ValidationError("refrigerants must be a list of codes.", details={"field": "refrigerants"})
    reg = get_engine().submit_registration(
        importer_id=importer_id,
        refrigerant_codes=codes,
        is_retail=bool(payload.get("is_retail")),
        year=payload.get("year"),
        user=g.current_user,
    )
    return jsonify(registration_to_dict(reg)), 201


@bp.post("/registrations/<int:registration_id>/approve")
@require_permission("registrations.approve")
def registrations_approve(registration_id: int):
    payload = request.get_json(silent=True) or {}
    reg = get_engine().approve_registration(
        registration_id,
        user=g.current_user,
        signature=payload.get("signature"),
        import_quota=payload.get("import_quota"),
        approver_name=payload.get("approver_name"),
    )
    return jsonify(registration_to_dict(reg))


@bp.post("/registrations/<int:registration_id>/reject")
@require_permission("registrations.approve")
def registrations_reject(registration_id: int):
    payload = request.get_json(silent=True) or {}
    reg = get_engine().reject_registration(registration_id, reason=payload.get("reason") or "", user=g.current_user)
    return jsonify(registration_to_dict(reg))


@bp.get("/registrations/<int:registration_id>/certificate")
@require_permission("registrations.view")
def registrations_certificate(registration_id: int):
    s: Session = db_session()
    reg = _visible_registration(s, registration_id)
    if not reg.document_storage_key:
        raise NotFoundError(
            f"No certificate has been generated for registration {registration_id}.",
            details={"registration_id": registration_id},
        )
    fobj = get_engine().storage.open(reg.document_storage_key)
    record_event(
        s,
        actor=g.current_user,
        action="registration.certificate_download",
        entity_type="Registration",
        entity_id=str(reg.id),
        metadata={"storage_key": reg.document_storage_key},
    )
    s.commit()
    filename = f"registration_certificate_{reg.certificate_number}.txt"
    return send_file(fobj, mimetype="text/plain", as_attachment=True, download_name=filename, max_age=0)
