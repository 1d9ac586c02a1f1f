"""Tests for the state-transition helpers."""
import pytest

from app.licensing.errors import InvalidStateError
from app.licensing.modules.imports.models import ImportState
from app.licensing.modules.imports.service import STATE_TRANSITIONS as IMPORT_TRANSITIONS
from app.licensing.modules.registrations.models import RegistrationState
from app.licensing.modules.registrations.service import STATE_TRANSITIONS as REGISTRATION_TRANSITIONS
from app.licensing.modules.technicians.models import TechnicianState
from app.licensing.modules.technicians.service import STATE_TRANSITIONS as TECHNICIAN_TRANSITIONS
from app.licensing.workflow import allowed_sources, ensure_state


def test_allowed_sources_reads_transition_map():
    transitions = {"a": {"b", "c"}, "b": {"c"}, "c": set()}
    assert allowed_sources(transitions, "c") == frozenset({"a", "b"})
    assert allowed_sources(transitions, "b") == frozenset({"a"})
    assert allowed_sources(transitions, "a") == frozenset()


def test_import_rejection_is_reachable_from_every_open_state():
    assert allowed_sources(IMPORT_TRANSITIONS, ImportState.REJECTED) == frozenset(
        {
            ImportState.AWAITING_ARRIVAL,
            ImportState.AWAITING_INSPECTION_SCHEDULE,
            ImportState.INSPECTION_SCHEDULED,
        }
    )
    assert allowed_sources(IMPORT_TRANSITIONS, ImportState.APPROVED) == frozenset({ImportState.INSPECTION_SCHEDULED})


def test_terminal_states_are_never_a_source():
    for transitions in (IMPORT_TRANSITIONS, REGISTRATION_TRANSITIONS, TECHNICIAN_TRANSITIONS):
        terminal = {state for state, targets in transitions.items() if not targets}
        for target in transitions:
            assert not terminal & allowed_sources(transitions, target)
    assert allowed_sources(REGISTRATION_TRANSITIONS, RegistrationState.APPROVED) == frozenset({RegistrationState.SUBMITTED})
    assert allowed_sources(TECHNICIAN_TRANSITIONS, TechnicianState.APPROVED) == frozenset({TechnicianState.PENDING})


class _Entity:
    def __init__(self, state):
        self.id = 7
        self.state = state


def test_ensure_state_rejects_states_outside_the_map():
    entity = _Entity(ImportState.APPROVED)
    with pytest.raises(InvalidStateError):
        ensure_state(entity, allowed_sources(IMPORT_TRANSITIONS, ImportState.REJECTED), "reject")
