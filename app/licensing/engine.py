"""
Licensing engine: one entry point per workflow operation.

Each operation runs in exactly one `session_scope` unit of work and is retried
from fresh state when it loses an optimistic race. Signatures are stored before
the transaction; generated documents and notifications run after commit and are
best-effort, so a failing collaborator never undoes a committed step.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from flask import Flask, current_app
from sqlalchemy.orm import Session

from app.licensing.db import session_scope
from app.licensing.documents import DocumentGenerator
from app.licensing.modules.counters.service import DEFAULT_COUNTER_SEED, ensure_counters
from app.licensing.modules.imports import service as imports_svc
from app.licensing.modules.imports.models import ImportLicense
from app.licensing.modules.quota import service as quota_svc
from app.licensing.modules.refrigerants.service import seed_default_catalog
from app.licensing.modules.registrations import service as registrations_svc
from app.licensing.modules.registrations.models import Registration
from app.licensing.modules.technicians import service as technicians_svc
from app.licensing.modules.technicians.models import TechnicianApplication
from app.licensing.notifications import (
    EVENT_IMPORT_APPROVED,
    EVENT_IMPORT_ARRIVED,
    EVENT_IMPORT_REJECTED,
    EVENT_IMPORT_SUBMITTED,
    EVENT_INSPECTION_SCHEDULED,
    EVENT_REGISTRATION_APPROVED,
    EVENT_REGISTRATION_REJECTED,
    EVENT_REGISTRATION_SUBMITTED,
    EVENT_TECHNICIAN_APPROVED,
    EVENT_TECHNICIAN_REJECTED,
    EVENT_TECHNICIAN_SUBMITTED,
    NotificationSender,
    build_notification,
    notifier_from_config,
)
from app.licensing.storage import Storage, storage_from_config
from app.licensing.utils import (
    decode_signature,
    sha256_hex,
    signature_storage_key,
    supporting_document_key,
    technician_document_key,
)
from app.licensing.workflow import retry_on_conflict

if TYPE_CHECKING:
    from app.licensing.models import User

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LicensingEngine:
    def __init__(
        self,
        app: Flask,
        *,
        storage: Storage | None = None,
        notifier: NotificationSender | None = None,
        documents: DocumentGenerator | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.app = app
        cfg = app.config
        self.storage = storage or storage_from_config(cfg)
        self.notifier = notifier or notifier_from_config(cfg)
        self.documents = documents or DocumentGenerator(self.storage)
        self.clock = clock or datetime.utcnow
        self.quota_policy = cfg.get("QUOTA_OVER_LIMIT_POLICY", "clamp")
        self.strict_units = bool(cfg.get("CO2_STRICT_UNITS", False))
        self.registration_override = bool(cfg.get("REGISTRATION_OPEN_OVERRIDE", False))
        self.counter_seed = int(cfg.get("COUNTER_SEED", DEFAULT_COUNTER_SEED))
        self.max_retries = int(cfg.get("CONFLICT_MAX_RETRIES", 3))
        self.admin_email = (cfg.get("ADMIN_NOTIFY_EMAIL") or "").strip()

    # ---- plumbing ----

    def run(self, fn: Callable[[Session], T]) -> T:
        """Run `fn` in its own transaction, retrying it on ConcurrencyConflictError."""

        def attempt() -> T:
            with session_scope(self.app) as s:
                return fn(s)

        return retry_on_conflict(attempt, attempts=self.max_retries)

    def bootstrap(self) -> None:
        """Create missing counters at the configured seed and the default refrigerant catalog."""

        def _do(s: Session) -> None:
            ensure_counters(s, seed=self.counter_seed)
            inserted = seed_default_catalog(s)
            if inserted:
                logger.info("Seeded %s refrigerant(s)", inserted)

        self.run(_do)

    def _store_signature(self, kind: str, entity_id: int, signature: bytes | str | None) -> str | None:
        data = decode_signature(signature)
        if data is None:
            return None
        key = signature_storage_key(kind, entity_id, self.clock())
        try:
            self.storage.put_bytes(key, data, content_type="image/png")
        except Exception:
            logger.warning("Signature upload failed for %s %s; approving without it", kind, entity_id, exc_info=True)
            return None
        return key

    def _discard(self, key: str | None) -> None:
        if not key:
            return
        try:
            self.storage.delete(key)
        except Exception:
            logger.warning("Could not remove orphaned object %s", key, exc_info=True)

    def _notify(self, event: str, recipients, context: dict[str, Any]) -> None:
        try:
            ok, msg = self.notifier.send(build_notification(event, recipients, context))
            if not ok:
                logger.warning("Notification %s not sent: %s", event, msg)
        except Exception:
            logger.exception("Notification %s failed", event)

    def _importer_email(self, importer_id: int) -> str | None:
        try:
            return self.run(lambda s: quota_svc.get_importer(s, importer_id).email)
        except Exception:
            logger.warning("Could not resolve importer %s email", importer_id, exc_info=True)
            return None

    # ---- registrations ----

    def registration_period(self, now: datetime | None = None) -> registrations_svc.RegistrationPeriod:
        return registrations_svc.registration_period_status(now or self.clock(), override_open=self.registration_override)

    def submit_registration(
        self,
        *,
        importer_id: int,
        refrigerant_codes: list[str],
        is_retail: bool = False,
        year: int | None = None,
        user: User | None = None,
    ) -> Registration:
        period = self.registration_period()
        reg = self.run(
            lambda s: registrations_svc.submit_registration(
                s,
                importer_id=importer_id,
                refrigerant_codes=refrigerant_codes,
                is_retail=is_retail,
                period=period,
                year=year,
                user=user,
            )
        )
        self._notify(
            EVENT_REGISTRATION_SUBMITTED,
            [self.admin_email],
            {"year": reg.year, "registration_id": reg.id, "importer_id": reg.importer_id},
        )
        return reg

    def approve_registration(
        self,
        registration_id: int,
        *,
        user: User | None,
        signature: bytes | str | None = None,
        import_quota: Any = None,
        approver_name: str | None = None,
    ) -> Registration:
        sig_key = self._store_signature("registrations", registration_id, signature)
        try:
            reg = self.run(
                lambda s: registrations_svc.approve_registration(
                    s,
                    registrations_svc.get_registration(s, registration_id),
                    user=user,
                    approver_name=approver_name,
                    signature_storage_key=sig_key,
                    import_quota=import_quota,
                    counter_seed=self.counter_seed,
                )
            )
        except Exception:
            self._discard(sig_key)
            raise

        self._render_registration(reg)
        self._notify(
            EVENT_REGISTRATION_APPROVED,
            [self._importer_email(reg.importer_id)],
            {"year": reg.year, "certificate_number": reg.certificate_number, "registration_id": reg.id},
        )
        return reg

    def _render_registration(self, reg: Registration) -> None:
        try:

            def _do(s: Session) -> str:
                fresh = registrations_svc.get_registration(s, reg.id)
                key = self.documents.render_registration_certificate(fresh)
                fresh.document_storage_key = key
                return key

            reg.document_storage_key = self.run(_do)
        except Exception:
            logger.exception("Certificate generation failed for registration %s", reg.id)

    def reject_registration(self, registration_id: int, *, reason: str, user: User | None) -> Registration:
        reg = self.run(
            lambda s: registrations_svc.reject_registration(
                s, registrations_svc.get_registration(s, registration_id), reason=reason, user=user
            )
        )
        self._notify(
            EVENT_REGISTRATION_REJECTED,
            [self._importer_email(reg.importer_id)],
            {"year": reg.year, "registration_id": reg.id, "reason": reg.rejection_reason},
        )
        return reg

    # ---- imports ----

    def quota_check(self, importer_id: int, line_items) -> dict[str, Any]:
        return self.run(lambda s: imports_svc.quota_check(s, importer_id, line_items, strict=self.strict_units))

    def quota_info(self, importer_id: int) -> dict[str, Any]:
        return self.run(lambda s: quota_svc.quota_info(s, importer_id))

    def submit_import(
        self,
        *,
        importer_id: int,
        registration_id: int,
        line_items,
        user: User | None = None,
    ) -> ImportLicense:
        """Imports are always filed against the current calendar year's registration."""
        current_year = self.clock().year
        imp = self.run(
            lambda s: imports_svc.submit_import(
                s,
                importer_id=importer_id,
                registration_id=registration_id,
                line_items=line_items,
                current_year=current_year,
                user=user,
                strict=self.strict_units,
                counter_seed=self.counter_seed,
            )
        )
        self._notify(
            EVENT_IMPORT_SUBMITTED,
            [self.admin_email, self._importer_email(imp.importer_id)],
            {"import_number": imp.import_number, "total_co2_equivalent": imp.total_co2_equivalent},
        )
        return imp

    def mark_arrived(
        self,
        import_id: int,
        *,
        files: list[tuple[str, bytes, str | None]] | None = None,
        user: User | None = None,
    ) -> ImportLicense:
        """`files` are (filename, bytes, content_type); they are stored before the state changes."""
        refs: list[dict[str, Any]] = []
        for filename, data, content_type in files or []:
            key = supporting_document_key(import_id, filename, self.clock())
            self.storage.put_bytes(key, data, content_type=content_type)
            refs.append(
                {
                    "name": filename,
                    "storage_key": key,
                    "content_type": content_type,
                    "sha256": sha256_hex(data),
                    "uploaded_at": self.clock().isoformat(),
                }
            )
        try:
            imp = self.run(
                lambda s: imports_svc.mark_arrived(
                    s, imports_svc.get_import(s, import_id), supporting_documents=refs, user=user
                )
            )
        except Exception:
            for ref in refs:
                self._discard(ref["storage_key"])
            raise

        self._notify(EVENT_IMPORT_ARRIVED, [self.admin_email], {"import_number": imp.import_number})
        return imp

    def schedule_inspection(self, import_id: int, *, when_utc: datetime, user: User | None = None) -> ImportLicense:
        now = self.clock()
        imp = self.run(
            lambda s: imports_svc.schedule_inspection(
                s, imports_svc.get_import(s, import_id), when_utc=when_utc, user=user, now=now
            )
        )
        self._notify(
            EVENT_INSPECTION_SCHEDULED,
            [self._importer_email(imp.importer_id)],
            {"import_number": imp.import_number, "inspection_at": imp.inspection_at},
        )
        return imp

    def approve_import(
        self,
        import_id: int,
        *,
        user: User | None,
        signature: bytes | str | None = None,
        approver_name: str | None = None,
    ) -> ImportLicense:
        sig_key = self._store_signature("imports", import_id, signature)
        try:
            imp = self.run(
                lambda s: imports_svc.approve_import(
                    s,
                    imports_svc.get_import(s, import_id),
                    user=user,
                    approver_name=approver_name,
                    signature_storage_key=sig_key,
                    policy=self.quota_policy,
                    strict=self.strict_units,
                )
            )
        except Exception:
            self._discard(sig_key)
            raise

        self._render_import(imp)
        self._notify(
            EVENT_IMPORT_APPROVED,
            [self._importer_email(imp.importer_id)],
            {"import_number": imp.import_number, "total_co2_equivalent": imp.total_co2_equivalent},
        )
        return imp

    def _render_import(self, imp: ImportLicense) -> None:
        try:

            def _do(s: Session) -> str:
                fresh = imports_svc.get_import(s, imp.id)
                key = self.documents.render_import_license(fresh)
                fresh.document_storage_key = key
                return key

            imp.document_storage_key = self.run(_do)
        except Exception:
            logger.exception("Import license generation failed for import %s", imp.id)

    def reject_import(self, import_id: int, *, reason: str, user: User | None) -> ImportLicense:
        imp = self.run(
            lambda s: imports_svc.reject_import(s, imports_svc.get_import(s, import_id), reason=reason, user=user)
        )
        self._notify(
            EVENT_IMPORT_REJECTED,
            [self._importer_email(imp.importer_id)],
            {"import_number": imp.import_number, "reason": imp.rejection_reason},
        )
        return imp

    # ---- technicians ----

    def submit_technician_application(
        self,
        *,
        files: list[tuple[str, bytes, str | None]],
        user: User | None = None,
        **fields: Any,
    ) -> TechnicianApplication:
        """`files` are (filename, bytes, content_type); `fields` are the applicant's details."""
        reference = uuid.uuid4().hex
        refs: list[dict[str, Any]] = []
        try:
            for filename, data, content_type in files or []:
                key = technician_document_key(reference, filename, self.clock())
                self.storage.put_bytes(key, data, content_type=content_type)
                refs.append(
                    {
                        "name": filename,
                        "document_type": technicians_svc.document_type_for(filename),
                        "storage_key": key,
                        "content_type": content_type,
                        "sha256": sha256_hex(data),
                        "uploaded_at": self.clock().isoformat(),
                    }
                )
            t = self.run(lambda s: technicians_svc.submit_application(s, documents=refs, user=user, **fields))
        except Exception:
            for ref in refs:
                self._discard(ref["storage_key"])
            raise

        self._notify(
            EVENT_TECHNICIAN_SUBMITTED,
            [self.admin_email, t.email],
            {"full_name": t.full_name, "application_id": t.id, "qualification_level": t.qualification_level},
        )
        return t

    def approve_technician(self, application_id: int, *, user: User | None) -> TechnicianApplication:
        t = self.run(
            lambda s: technicians_svc.approve_application(
                s, technicians_svc.get_application(s, application_id), user=user, counter_seed=self.counter_seed
            )
        )
        try:

            def _do(s: Session) -> str:
                fresh = technicians_svc.get_application(s, t.id)
                key = self.documents.render_technician_certificate(fresh)
                fresh.document_storage_key = key
                return key

            t.document_storage_key = self.run(_do)
        except Exception:
            logger.exception("Technician certificate generation failed for application %s", t.id)

        self._notify(
            EVENT_TECHNICIAN_APPROVED,
            [t.email],
            {"certificate_number": t.certificate_number, "full_name": t.full_name},
        )
        return t

    def reject_technician(self, application_id: int, *, reason: str, user: User | None) -> TechnicianApplication:
        t = self.run(
            lambda s: technicians_svc.reject_application(
                s, technicians_svc.get_application(s, application_id), reason=reason, user=user
            )
        )
        self._notify(EVENT_TECHNICIAN_REJECTED, [t.email], {"full_name": t.full_name, "reason": t.rejection_reason})
        return t


def get_engine(app: Flask | None = None) -> LicensingEngine:
    app = app or current_app
    return app.extensions["licensing_engine"]
