"""
Quota ledger.

Every write to an importer's quota columns is a single guarded UPDATE computed
in SQL from the row's current values, so concurrent debits for the same importer
are serialized by the row lock and none is lost. The UPDATE runs in the caller's
transaction; if the enclosing workflow step fails, the debit rolls back with it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.constants import COUNTER_IMPORTER_NUMBER, QUOTA_POLICIES, QUOTA_POLICY_BLOCK, QUOTA_POLICY_CLAMP
from app.licensing.errors import NotFoundError, QuotaExceededError, ValidationError
from app.licensing.modules.counters.service import DEFAULT_COUNTER_SEED, next_value
from app.licensing.utils import to_decimal

from .models import ImporterAccount

if TYPE_CHECKING:
    from app.licensing.models import User

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class DebitResult:
    importer_id: int
    amount: Decimal
    cumulative_imports: Decimal
    balance: Decimal


def get_importer(s: Session, importer_id: int) -> ImporterAccount:
    acct = s.get(ImporterAccount, importer_id)
    if acct is None:
        raise NotFoundError(f"Importer {importer_id} not found.", details={"importer_id": importer_id})
    return acct


def importer_for_user(s: Session, user_id: int) -> ImporterAccount | None:
    return s.query(ImporterAccount).filter(ImporterAccount.user_id == user_id).one_or_none()


def create_importer(
    s: Session,
    *,
    name: str,
    email: str | None = None,
    user_id: int | None = None,
    business_address: str | None = None,
    import_quota: Any = 0,
    user: User | None = None,
) -> ImporterAccount:
    """Account provisioning. Starts with a full balance and no consumption."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Importer name is required.", details={"field": "name"})
    quota = to_decimal(import_quota, "import_quota")
    if quota < 0:
        raise ValidationError("Import quota cannot be negative.", details={"field": "import_quota"})

    acct = ImporterAccount(
        name=name,
        email=email.strip().lower() if email else None,
        user_id=user_id,
        business_address=business_address.strip() if business_address else None,
        import_quota=quota,
        cumulative_imports=ZERO,
        balance=quota,
    )
    s.add(acct)
    s.flush()

    record_event(
        s,
        actor=user,
        action="importer.create",
        entity_type="ImporterAccount",
        entity_id=str(acct.id),
        metadata={"name": acct.name, "import_quota": str(quota)},
    )
    return acct


def debit(
    s: Session,
    importer_id: int,
    amount: Any,
    *,
    user: User | None = None,
    reference: str | None = None,
    policy: str = QUOTA_POLICY_CLAMP,
) -> DebitResult:
    """
    Add `amount` to the importer's cumulative imports and recompute the balance.

    clamp: the balance floors at zero and the debit always applies.
    block: a debit larger than the remaining balance raises QuotaExceededError.
    """
    amount = to_decimal(amount, "amount")
    if amount < 0:
        raise ValidationError("Debit amount cannot be negative.", details={"amount": str(amount)})
    if policy not in QUOTA_POLICIES:
        raise ValidationError(f"Unknown quota policy '{policy}'.", details={"policy": policy})

    new_cumulative = ImporterAccount.cumulative_imports + amount
    remaining = ImporterAccount.import_quota - new_cumulative
    stmt = update(ImporterAccount).where(ImporterAccount.id == importer_id)
    if policy == QUOTA_POLICY_BLOCK:
        stmt = stmt.where(ImporterAccount.import_quota - ImporterAccount.cumulative_imports >= amount)
    stmt = (
        stmt.values(
            cumulative_imports=new_cumulative,
            balance=case((remaining < 0, ZERO), else_=remaining),
            version=ImporterAccount.version + 1,
            updated_at=datetime.utcnow(),
        )
        .returning(ImporterAccount.cumulative_imports, ImporterAccount.balance)
        .execution_options(synchronize_session=False)
    )
    row = s.execute(stmt).one_or_none()

    if row is None:
        acct = get_importer(s, importer_id)
        raise QuotaExceededError(
            f"Import of {amount} CO2e exceeds the remaining quota of {acct.balance}.",
            details={"importer_id": importer_id, "amount": str(amount), "balance": str(acct.balance)},
        )

    cumulative, balance = row
    record_event(
        s,
        actor=user,
        action="quota.debit",
        entity_type="ImporterAccount",
        entity_id=str(importer_id),
        reason=reference,
        metadata={
            "amount": str(amount),
            "cumulative_imports": str(cumulative),
            "balance": str(balance),
            "policy": policy,
        },
    )
    logger.info("Quota debit importer=%s amount=%s cumulative=%s balance=%s", importer_id, amount, cumulative, balance)

    # Keep any already-loaded instance in step with the row.
    s.get(ImporterAccount, importer_id, populate_existing=True)

    return DebitResult(importer_id=importer_id, amount=amount, cumulative_imports=cumulative, balance=balance)


def set_allowance(
    s: Session,
    importer_id: int,
    import_quota: Any,
    *,
    user: User | None = None,
    reset_consumption: bool = True,
) -> ImporterAccount:
    """
    Assign the yearly allowance (done when a registration is approved).
    With reset_consumption the year starts over: cumulative 0, balance = quota.
    """
    quota = to_decimal(import_quota, "import_quota")
    if quota < 0:
        raise ValidationError("Import quota cannot be negative.", details={"field": "import_quota"})
    acct = get_importer(s, importer_id)
    previous = {"import_quota": str(acct.import_quota), "cumulative_imports": str(acct.cumulative_imports)}

    values: dict[str, Any] = {
        "import_quota": quota,
        "version": ImporterAccount.version + 1,
        "updated_at": datetime.utcnow(),
    }
    if reset_consumption:
        values["cumulative_imports"] = ZERO
        values["balance"] = quota
    else:
        remaining = quota - ImporterAccount.cumulative_imports
        values["balance"] = case((remaining < 0, ZERO), else_=remaining)
    s.execute(
        update(ImporterAccount)
        .where(ImporterAccount.id == importer_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    s.refresh(acct)

    record_event(
        s,
        actor=user,
        action="quota.set_allowance",
        entity_type="ImporterAccount",
        entity_id=str(importer_id),
        metadata={"from": previous, "import_quota": str(quota), "reset_consumption": reset_consumption},
    )
    return acct


def assign_importer_number(
    s: Session, importer: ImporterAccount, *, user: User | None = None, seed: int = DEFAULT_COUNTER_SEED
) -> int:
    """Give the importer a permanent importer number if it has none yet."""
    if importer.importer_number is not None:
        return importer.importer_number

    number = next_value(s, COUNTER_IMPORTER_NUMBER, seed=seed)
    result = s.execute(
        update(ImporterAccount)
        .where(ImporterAccount.id == importer.id)
        .where(ImporterAccount.importer_number.is_(None))
        .values(importer_number=number, version=ImporterAccount.version + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    s.refresh(importer)
    if result.rowcount == 1:
        record_event(
            s,
            actor=user,
            action="importer.assign_number",
            entity_type="ImporterAccount",
            entity_id=str(importer.id),
            metadata={"importer_number": number},
        )
    return importer.importer_number  # type: ignore[return-value]


def quota_info(s: Session, importer_id: int) -> dict[str, Any]:
    acct = get_importer(s, importer_id)
    total = acct.import_quota or ZERO
    used = acct.cumulative_imports or ZERO
    percentage = int((used / total * 100).to_integral_value()) if total > 0 else 0
    return {
        "importer_id": acct.id,
        "importer_number": acct.importer_number,
        "total": total,
        "used": used,
        "remaining": acct.balance,
        "percentage": percentage,
    }


def check_import_quota(s: Session, importer_id: int, import_co2: Decimal) -> dict[str, Any]:
    """Preview whether an import of `import_co2` would exceed the remaining balance. No write."""
    acct = get_importer(s, importer_id)
    remaining = acct.balance or ZERO
    will_exceed = import_co2 > remaining
    return {
        "will_exceed_quota": will_exceed,
        "import_co2": import_co2,
        "quota_remaining": remaining,
        "deficit": (import_co2 - remaining) if will_exceed else ZERO,
    }


def importer_to_dict(acct: ImporterAccount) -> dict[str, Any]:
    return {
        "id": acct.id,
        "name": acct.name,
        "email": acct.email,
        "importer_number": acct.importer_number,
        "import_quota": str(acct.import_quota),
        "cumulative_imports": str(acct.cumulative_imports),
        "balance": str(acct.balance),
    }
