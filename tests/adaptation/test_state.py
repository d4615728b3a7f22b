"""Tests for the adaptation cycle state machine."""

import pytest

from weft.adaptation.state import CycleStateMachine, VALID_TRANSITIONS
from weft.exceptions import CycleStateError
from weft.types import CycleState


def _walk(machine, *states):
    for state in states:
        machine.transition(state)


def test_happy_path():
    machine = CycleStateMachine()
    _walk(
        machine,
        CycleState.DETECTING,
        CycleState.STRATEGY_SELECTED,
        CycleState.MUTATED,
        CycleState.VALIDATING,
        CycleState.ACCEPTED,
        CycleState.STABLE,
    )
    assert machine.state == CycleState.STABLE
    assert machine.trail[-1] == CycleState.STABLE


def test_invalid_transition_raises():
    machine = CycleStateMachine()
    with pytest.raises(CycleStateError):
        machine.transition(CycleState.ACCEPTED)
    assert machine.state == CycleState.STABLE


def test_replacing_at_most_once_per_cycle():
    machine = CycleStateMachine()
    _walk(
        machine,
        CycleState.DETECTING,
        CycleState.STRATEGY_SELECTED,
        CycleState.MUTATED,
        CycleState.VALIDATING,
        CycleState.REPAIRING,
        CycleState.REPLACING,
        CycleState.MUTATED,
        CycleState.VALIDATING,
    )
    assert machine.escalated
    with pytest.raises(CycleStateError, match="already escalated"):
        machine.transition(CycleState.REPLACING)


def test_escalation_resets_on_next_cycle():
    machine = CycleStateMachine()
    _walk(
        machine,
        CycleState.DETECTING,
        CycleState.STRATEGY_SELECTED,
        CycleState.MUTATED,
        CycleState.VALIDATING,
        CycleState.REPLACING,
        CycleState.FAILED,
        CycleState.STABLE,
        CycleState.DETECTING,
    )
    assert not machine.escalated


def test_listeners_see_every_transition():
    machine = CycleStateMachine()
    seen = []
    machine.on_transition(lambda old, new: seen.append((old, new)))
    _walk(machine, CycleState.DETECTING, CycleState.STABLE)
    assert seen == [
        (CycleState.STABLE, CycleState.DETECTING),
        (CycleState.DETECTING, CycleState.STABLE),
    ]


def test_every_state_has_outgoing_transitions():
    for state in CycleState:
        assert VALID_TRANSITIONS[state]
