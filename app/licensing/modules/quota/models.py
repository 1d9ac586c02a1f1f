from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.licensing.models import Base

if TYPE_CHECKING:
    from app.licensing.models import User


class ImporterAccount(Base):
    """
    An importer and its CO2-equivalent quota.

    `balance` is written only by the quota ledger and always equals
    max(0, import_quota - cumulative_imports) after a ledger write.
    """

    __tablename__ = "importer_accounts"
    __table_args__ = (
        CheckConstraint("import_quota >= 0", name="ck_importer_quota_nonneg"),
        CheckConstraint("cumulative_imports >= 0", name="ck_importer_cumulative_nonneg"),
        CheckConstraint("balance >= 0", name="ck_importer_balance_nonneg"),
        Index("idx_importer_accounts_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)  # enterprise name
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    business_address: Mapped[str | None] = mapped_column(String(512), nullable=True)

    import_quota: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    cumulative_imports: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))

    importer_number: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped["User | None"] = relationship("User", foreign_keys=[user_id], lazy="selectin")
