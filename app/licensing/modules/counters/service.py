"""
Sequence counter allocator.

Each allocation is one atomic `UPDATE ... SET value = value + 1 ... RETURNING value`
executed in the caller's transaction. The row lock taken by that UPDATE is held
until commit, so concurrent callers for the same counter are serialized by the
database and can never observe the same value. If the caller's transaction rolls
back, the increment rolls back with it; gaps only come from committed work that
was later rejected or abandoned.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.licensing.audit import record_event
from app.licensing.constants import COUNTER_NAMES
from app.licensing.errors import ConcurrencyConflictError, ValidationError

from .models import SequenceCounter

if TYPE_CHECKING:
    from app.licensing.models import User

logger = logging.getLogger(__name__)

DEFAULT_COUNTER_SEED = 1000


def _check_name(name: str) -> None:
    if name not in COUNTER_NAMES:
        raise ValidationError(
            f"Unknown counter '{name}'. Expected one of: {', '.join(sorted(COUNTER_NAMES))}",
            details={"counter": name},
        )


def _insert_if_missing(s: Session, name: str, seed: int) -> None:
    dialect = s.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        s.execute(pg_insert(SequenceCounter).values(name=name, value=seed).on_conflict_do_nothing(index_elements=["name"]))
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert

        s.execute(sqlite_insert(SequenceCounter).values(name=name, value=seed).on_conflict_do_nothing(index_elements=["name"]))
    else:
        try:
            s.execute(insert(SequenceCounter).values(name=name, value=seed))
        except IntegrityError as e:
            raise ConcurrencyConflictError(f"Counter '{name}' was created concurrently; retry.") from e


def _increment(s: Session, name: str) -> int | None:
    stmt = (
        update(SequenceCounter)
        .where(SequenceCounter.name == name)
        .values(value=SequenceCounter.value + 1, updated_at=datetime.utcnow())
        .returning(SequenceCounter.value)
        .execution_options(synchronize_session=False)
    )
    return s.execute(stmt).scalar_one_or_none()


def next_value(s: Session, name: str, *, seed: int = DEFAULT_COUNTER_SEED) -> int:
    """Allocate the next value of counter `name`. First use starts at seed + 1."""
    _check_name(name)
    value = _increment(s, name)
    if value is None:
        _insert_if_missing(s, name, seed)
        value = _increment(s, name)
    if value is None:
        raise ConcurrencyConflictError(f"Counter '{name}' could not be allocated; retry.")
    logger.info("Allocated %s=%s", name, value)
    return value


def peek(s: Session, name: str) -> int | None:
    """Last issued value, or None if the counter has never been used."""
    _check_name(name)
    return s.execute(select(SequenceCounter.value).where(SequenceCounter.name == name)).scalar_one_or_none()


def ensure_counters(s: Session, *, seed: int = DEFAULT_COUNTER_SEED) -> None:
    """Create every known counter at `seed` if missing. Existing values are left alone."""
    for name in sorted(COUNTER_NAMES):
        _insert_if_missing(s, name, seed)


def advance_counter(s: Session, name: str, value: int, *, user: User | None = None) -> int:
    """
    Operator adjustment of a counter (e.g. continuing a paper-based numbering).
    Counters may only move forward; lowering one would re-issue numbers.
    """
    _check_name(name)
    current = peek(s, name)
    if current is not None and value < current:
        raise ValidationError(
            f"Counter '{name}' cannot be moved back from {current} to {value}.",
            details={"counter": name, "current": current, "requested": value},
        )
    if current is None:
        _insert_if_missing(s, name, value)
    else:
        s.execute(
            update(SequenceCounter)
            .where(SequenceCounter.name == name)
            .where(SequenceCounter.value <= value)
            .values(value=value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
    record_event(
        s,
        actor=user,
        action="counter.advance",
        entity_type="SequenceCounter",
        entity_id=name,
        metadata={"from": current, "to": value},
    )
    return value


def counters_snapshot(s: Session) -> dict[str, int | None]:
    rows = dict(s.execute(select(SequenceCounter.name, SequenceCounter.value)).all())
    return {name: rows.get(name) for name in sorted(COUNTER_NAMES)}
