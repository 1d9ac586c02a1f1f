from __future__ import annotations

import enum
import json
from datetime import date, datetime
from typing import Any

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.licensing.models import Base


class TechnicianState(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


# One live application (Pending or Approved) per applicant email
PENDING_OR_APPROVED_PREDICATE = "state IN ('Pending', 'Approved')"


class TechnicianApplication(Base):
    __tablename__ = "technicians"
    __table_args__ = (
        Index("idx_technicians_state", "state"),
        Index(
            "uq_technicians_email_live",
            "email",
            unique=True,
            sqlite_where=text(PENDING_OR_APPROVED_PREDICATE),
            postgresql_where=text(PENDING_OR_APPROVED_PREDICATE),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    telephone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    national_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)

    qualification_level: Mapped[str] = mapped_column(String(32), nullable=False)
    training_institution: Mapped[str] = mapped_column(String(255), nullable=False)
    training_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # [{"name", "document_type", "storage_key", "content_type", "sha256", "uploaded_at"}]
    documents_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    state: Mapped[TechnicianState] = mapped_column(
        Enum(TechnicianState, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TechnicianState.PENDING,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    certificate_number: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejected_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    document_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def supporting_documents(self) -> list[dict[str, Any]]:
        return json.loads(self.documents_json or "[]")
