from __future__ import annotations

import io
import logging
from datetime import datetime

from app.licensing.modules.imports.models import ImportLicense, ImportState
from app.licensing.modules.registrations.models import Registration, RegistrationState
from app.licensing.modules.technicians.models import TechnicianApplication, TechnicianState
from app.licensing.storage import Storage

logger = logging.getLogger(__name__)


class DocumentGenerator:
    """
    Renders approved registrations and imports into plain-text certificates
    and stores them as immutable artifacts (a new key per render, no overwrites).
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    def _put(self, key: str, text: str) -> str:
        self.storage.put_bytes(key, text.encode("utf-8"), content_type="text/plain")
        logger.info("Stored document %s", key)
        return key

    def render_registration_certificate(self, reg: Registration) -> str:
        if reg.state != RegistrationState.APPROVED or reg.certificate_number is None:
            raise ValueError(f"Registration {reg.id} is not approved.")
        importer = reg.importer
        out = io.StringIO()
        out.write("CERTIFICATE OF REGISTRATION\n")
        out.write(f"Certificate No.: {reg.certificate_number}\n")
        out.write(f"Registration year: {reg.year}\n")
        out.write(f"Importer: {importer.name if importer else reg.importer_id}\n")
        if importer is not None and importer.importer_number is not None:
            out.write(f"Importer No.: {importer.importer_number}\n")
        out.write(f"Retail: {'yes' if reg.is_retail else 'no'}\n")
        out.write("\nRegistered refrigerants:\n")
        for r in reg.selected_refrigerants:
            flag = " (restricted)" if r.get("restricted") else ""
            out.write(f"  {r['code']}  GWP {r.get('gwp_value')}{flag}\n")
        out.write(f"\nApproved: {reg.approved_at:%Y-%m-%d %H:%M} UTC\n" if reg.approved_at else "\n")
        out.write(f"Approved by: {reg.approver_name or '-'}\n")
        if reg.signature_storage_key:
            out.write(f"Signature: {reg.signature_storage_key}\n")

        ts = datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S")
        return self._put(f"certificates/registrations/{reg.year}/{reg.certificate_number}_{ts}.txt", out.getvalue())

    def render_import_license(self, imp: ImportLicense) -> str:
        if imp.state != ImportState.APPROVED:
            raise ValueError(f"Import {imp.id} is not approved.")
        importer = imp.importer
        out = io.StringIO()
        out.write("IMPORT LICENSE\n")
        out.write(f"Import No.: {imp.import_number}\n")
        out.write(f"Year: {imp.year}\n")
        out.write(f"Importer: {importer.name if importer else imp.importer_id}\n")
        if imp.registration is not None and imp.registration.certificate_number is not None:
            out.write(f"Registration certificate No.: {imp.registration.certificate_number}\n")
        out.write("\nLine items:\n")
        for li in imp.line_items:
            out.write(
                f"  {li.refrigerant_code}  {li.quantity} x {li.volume} {li.unit}"
                f"  GWP {li.gwp_at_time_of_import if li.gwp_at_time_of_import is not None else '-'}"
                f"  CO2e {li.co2_equivalent}\n"
            )
        out.write(f"\nTotal CO2 equivalent: {imp.total_co2_equivalent}\n")
        if imp.inspection_at:
            out.write(f"Inspected: {imp.inspection_at:%Y-%m-%d %H:%M} UTC\n")
        out.write(f"Approved: {imp.approved_at:%Y-%m-%d %H:%M} UTC\n" if imp.approved_at else "")
        out.write(f"Approved by: {imp.approver_name or '-'}\n")

        ts = datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S")
        return self._put(f"certificates/imports/{imp.year}/{imp.import_number}_{ts}.txt", out.getvalue())

    def render_technician_certificate(self, t: TechnicianApplication) -> str:
        if t.state != TechnicianState.APPROVED or t.certificate_number is None:
            raise ValueError(f"Technician application {t.id} is not approved.")
        out = io.StringIO()
        out.write("REFRIGERANT TECHNICIAN CERTIFICATE\n")
        out.write(f"Certificate No.: {t.certificate_number}\n")
        out.write(f"Name: {t.full_name}\n")
        out.write(f"National ID: {t.national_id}\n")
        out.write(f"Qualification: {t.qualification_level}\n")
        out.write(f"Training institution: {t.training_institution}\n")
        if t.training_completion_date:
            out.write(f"Training completed: {t.training_completion_date:%Y-%m-%d}\n")
        out.write(f"Approved: {t.approved_at:%Y-%m-%d %H:%M} UTC\n" if t.approved_at else "")

        ts = datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S")
        return self._put(f"certificates/technicians/{t.certificate_number}_{ts}.txt", out.getvalue())
