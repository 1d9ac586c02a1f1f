from __future__ import annotations

import enum
import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.licensing.models import Base

if TYPE_CHECKING:
    from app.licensing.modules.quota.models import ImporterAccount


class RegistrationState(str, enum.Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (RegistrationState.APPROVED, RegistrationState.REJECTED)


# At most one Submitted or Approved registration per importer and year
OPEN_OR_APPROVED_PREDICATE = "state IN ('Submitted', 'Approved')"


class Registration(Base):
    """One importer's yearly request to handle a list of refrigerants."""

    __tablename__ = "registrations"
    __table_args__ = (
        Index("idx_registrations_importer_year", "importer_id", "year"),
        Index("idx_registrations_state", "state"),
        Index(
            "uq_registrations_importer_year_open",
            "importer_id",
            "year",
            unique=True,
            sqlite_where=text(OPEN_OR_APPROVED_PREDICATE),
            postgresql_where=text(OPEN_OR_APPROVED_PREDICATE),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    importer_id: Mapped[int] = mapped_column(ForeignKey("importer_accounts.id", ondelete="RESTRICT"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    is_retail: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # [{"code": "R-134a", "gwp_value": "1430.000", "restricted": false}, ...] captured at selection time
    refrigerants_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    state: Mapped[RegistrationState] = mapped_column(
        Enum(RegistrationState, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RegistrationState.DRAFT,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Set iff state == Approved
    certificate_number: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    submitted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approver_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejected_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Rendered certificate (written after approval, best-effort)
    document_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    importer: Mapped["ImporterAccount"] = relationship("ImporterAccount", foreign_keys=[importer_id], lazy="selectin")

    @property
    def selected_refrigerants(self) -> list[dict[str, Any]]:
        return json.loads(self.refrigerants_json or "[]")

    @selected_refrigerants.setter
    def selected_refrigerants(self, value: list[dict[str, Any]]) -> None:
        self.refrigerants_json = json.dumps(value, sort_keys=True)

    @property
    def refrigerant_codes(self) -> list[str]:
        return [r["code"] for r in self.selected_refrigerants]

    # Display flags derived from state; never stored.
    @property
    def is_pending(self) -> bool:
        return self.state == RegistrationState.SUBMITTED

    @property
    def is_completed(self) -> bool:
        return self.state == RegistrationState.APPROVED
