from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.licensing.models import Base


class Refrigerant(Base):
    """Catalog entry: ASHRAE code -> global-warming-potential factor."""

    __tablename__ = "refrigerants"
    __table_args__ = (
        Index("idx_refrigerants_restricted", "restricted"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # ASHRAE, e.g. "R-134a"
    chemical_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gwp_value: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    restricted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hs_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    refrigerant_type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # "HFC", "HCFC", "blend"

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
