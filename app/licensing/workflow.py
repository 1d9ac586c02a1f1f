"""
State-transition and retry helpers shared by the registration and import workflows.

Transitions are written as a compare-and-set:

    UPDATE <table> SET state = :to, version = version + 1, ...
    WHERE id = :id AND state = :from AND version = :seen_version

so two callers racing on the same entity produce exactly one winner. The loser
re-reads the row: if the state moved it gets InvalidStateError, if only the
version moved it gets ConcurrencyConflictError.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.licensing.errors import ConcurrencyConflictError, InvalidStateError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def allowed_sources(transitions: Mapping[Any, Iterable[Any]], to: Any) -> frozenset:
    """States from which `to` is reachable according to a module's STATE_TRANSITIONS."""
    return frozenset(src for src, dsts in transitions.items() if to in dsts)


def ensure_state(entity: Any, allowed: Iterable[Any], action: str) -> None:
    allowed = set(allowed)
    if entity.state not in allowed:
        raise InvalidStateError(
            f"Cannot {action} {type(entity).__name__} in state '{entity.state.value}'.",
            details={"id": entity.id, "state": entity.state.value},
        )


def transition(
    s: Session,
    entity: Any,
    *,
    transitions: Mapping[Any, Iterable[Any]],
    to: Any,
    action: str,
    values: dict[str, Any] | None = None,
) -> None:
    """Move `entity` to state `to`, writing `values` in the same guarded UPDATE."""
    ensure_state(entity, allowed_sources(transitions, to), action)

    model = type(entity)
    seen_state = entity.state
    seen_version = entity.version
    stmt = (
        update(model)
        .where(model.id == entity.id)
        .where(model.state == seen_state)
        .where(model.version == seen_version)
        .values(state=to, version=model.version + 1, updated_at=datetime.utcnow(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = s.execute(stmt)
    s.refresh(entity)

    if result.rowcount != 1:
        if entity.state != seen_state:
            raise InvalidStateError(
                f"Cannot {action} {model.__name__}: state changed to '{entity.state.value}'.",
                details={"id": entity.id, "state": entity.state.value},
            )
        raise ConcurrencyConflictError(
            f"{model.__name__} {entity.id} was modified concurrently; reload and retry.",
            details={"id": entity.id, "seen_version": seen_version, "version": entity.version},
        )

    logger.info("%s %s: %s -> %s", model.__name__, entity.id, seen_state.value, to.value)


def retry_on_conflict(fn: Callable[[], T], *, attempts: int = 3) -> T:
    """
    Run a whole unit of work again when it loses an optimistic race.
    `fn` must open its own session so each attempt starts from fresh state.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrencyConflictError as e:
            if attempt == attempts:
                logger.warning("Giving up after %s conflicting attempts: %s", attempts, e)
                raise
            logger.info("Concurrency conflict (attempt %s/%s), retrying: %s", attempt, attempts, e)
    raise AssertionError("unreachable")
