"""
Technician certification endpoints.

Applications are public (multipart form with `documents` files); review is for officers.
"""
from __future__ import annotations

from flask import Blueprint, g, jsonify, request, send_file
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.db import db_session
from app.licensing.engine import get_engine
from app.licensing.errors import NotFoundError, ValidationError
from app.licensing.rbac import require_permission

from .models import TechnicianState
from .service import get_application, list_applications, technician_to_dict

bp = Blueprint("technicians", __name__)

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024

APPLICATION_FIELDS = (
    "full_name",
    "email",
    "telephone",
    "address",
    "national_id",
    "date_of_birth",
    "qualification_level",
    "training_institution",
    "training_completion_date",
)


@bp.post("/technicians")
def technicians_apply():
    files: list[tuple[str, bytes, str | None]] = []
    for f in request.files.getlist("documents"):
        if not f or not f.filename:
            continue
        data = f.read()
        if len(data) > MAX_DOCUMENT_BYTES:
            raise ValidationError(f"{f.filename} is larger than 10MB.", details={"file": f.filename})
        files.append((f.filename, data, f.mimetype))
    fields = {k: request.form.get(k) for k in APPLICATION_FIELDS}
    t = get_engine().submit_technician_application(files=files, user=getattr(g, "current_user", None), **fields)
    return jsonify(technician_to_dict(t)), 201


@bp.get("/technicians")
@require_permission("technicians.review")
def technicians_list():
    s: Session = db_session()
    raw = request.args.get("state")
    try:
        state = TechnicianState(raw) if raw else None
    except ValueError as e:
        raise ValidationError(f"Unknown application state '{raw}'.", details={"state": raw}) from e
    return jsonify({"technicians": [technician_to_dict(t) for t in list_applications(s, state=state)]})


@bp.get("/technicians/<int:application_id>")
@require_permission("technicians.review")
def technicians_detail(application_id: int):
    s: Session = db_session()
    return jsonify(technician_to_dict(get_application(s, application_id)))


@bp.post("/technicians/<int:application_id>/approve")
@require_permission("technicians.review")
def technicians_approve(application_id: int):
    t = get_engine().approve_technician(application_id, user=g.current_user)
    return jsonify(technician_to_dict(t))


@bp.post("/technicians/<int:application_id>/reject")
@require_permission("technicians.review")
def technicians_reject(application_id: int):
    payload = request.get_json(silent=True) or {}
    t = get_engine().reject_technician(application_id, reason=payload.get("reason") or "", user=g.current_user)
    return jsonify(technician_to_dict(t))


@bp.get("/technicians/<int:application_id>/certificate")
@require_permission("technicians.review")
def technicians_certificate(application_id: int):
    s: Session = db_session()
    t = get_application(s, application_id)
    if not t.document_storage_key:
        raise NotFoundError(
            f"No certificate has been generated for application {application_id}.",
            details={"application_id": application_id},
        )
    fobj = get_engine().storage.open(t.document_storage_key)
    record_event(
        s,
        actor=g.current_user,
        action="technician.certificate_download",
        entity_type="TechnicianApplication",
        entity_id=str(t.id),
        metadata={"storage_key": t.document_storage_key},
    )
    s.commit()
    return send_file(
        fobj,
        mimetype="text/plain",
        as_attachment=True,
        download_name=f"technician_certificate_{t.certificate_number}.txt",
        max_age=0,
    )
