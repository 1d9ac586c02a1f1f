from __future__ import annotations

import enum
import json
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.licensing.models import Base

if TYPE_CHECKING:
    from app.licensing.modules.quota.models import ImporterAccount
    from app.licensing.modules.registrations.models import Registration


class ImportState(str, enum.Enum):
    AWAITING_ARRIVAL = "AwaitingArrival"
    AWAITING_INSPECTION_SCHEDULE = "AwaitingInspectionSchedule"
    INSPECTION_SCHEDULED = "InspectionScheduled"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportState.APPROVED, ImportState.REJECTED)


class ImportLicense(Base):
    """One shipment. Immutable once Approved or Rejected."""

    __tablename__ = "import_licenses"
    __table_args__ = (
        Index("idx_import_licenses_importer_year", "importer_id", "year"),
        Index("idx_import_licenses_registration", "registration_id"),
        Index("idx_import_licenses_state", "state"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    importer_id: Mapped[int] = mapped_column(ForeignKey("importer_accounts.id", ondelete="RESTRICT"), nullable=False)
    registration_id: Mapped[int] = mapped_column(ForeignKey("registrations.id", ondelete="RESTRICT"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    # Public import number; consumed even if the import is later rejected
    import_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)

    state: Mapped[ImportState] = mapped_column(
        Enum(ImportState, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ImportState.AWAITING_ARRIVAL,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Display value at submission; recomputed and frozen on approval
    total_co2_equivalent: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))

    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    # [{"name": ..., "storage_key": ..., "content_type": ..., "sha256": ..., "uploaded_at": ...}]
    documents_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    inspection_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)  # UTC
    inspection_scheduled_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approver_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejected_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    document_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    line_items: Mapped[list["ImportLineItem"]] = relationship(
        "ImportLineItem",
        back_populates="import_license",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ImportLineItem.id",
    )
    importer: Mapped["ImporterAccount"] = relationship("ImporterAccount", foreign_keys=[importer_id], lazy="selectin")
    registration: Mapped["Registration"] = relationship("Registration", foreign_keys=[registration_id], lazy="selectin")

    @property
    def supporting_documents(self) -> list[dict[str, Any]]:
        return json.loads(self.documents_json or "[]")

    # Display flags derived from state; never stored.
    @property
    def arrived(self) -> bool:
        return self.arrived_at is not None

    @property
    def pending(self) -> bool:
        return not self.state.is_terminal

    @property
    def approved(self) -> bool:
        return self.state == ImportState.APPROVED


class ImportLineItem(Base):
    __tablename__ = "import_line_items"
    __table_args__ = (
        Index("idx_import_line_items_import", "import_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    import_id: Mapped[int] = mapped_column(ForeignKey("import_licenses.id", ondelete="CASCADE"), nullable=False)

    refrigerant_code: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # number of containers
    volume: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)  # per container
    unit: Mapped[str] = mapped_column(String(8), nullable=False, default="kg")
    gwp_at_time_of_import: Mapped[Decimal | None] = mapped_column(Numeric(12, 3), nullable=True)
    co2_equivalent: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))

    import_license: Mapped["ImportLicense"] = relationship("ImportLicense", back_populates="line_items", lazy="selectin")
