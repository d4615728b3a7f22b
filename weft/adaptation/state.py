"""Adaptation cycle state machine — enforces valid cycle transitions."""

from __future__ import annotations

import logging
from typing import Callable

from weft.exceptions import CycleStateError
from weft.types import CycleState

_logger = logging.getLogger(__name__)

TransitionCallback = Callable[[CycleState, CycleState], None]

# Valid state transitions for one adaptation cycle
VALID_TRANSITIONS: dict[CycleState, set[CycleState]] = {
    CycleState.STABLE: {CycleState.DETECTING},
    CycleState.DETECTING: {
        CycleState.STRATEGY_SELECTED,
        CycleState.ACCEPTED,  # execution-state sync without triggers
        CycleState.STABLE,
        CycleState.FAILED,
    },
    CycleState.STRATEGY_SELECTED: {
        CycleState.MUTATED,
        CycleState.STRATEGY_SELECTED,  # fallback to the next strategy
        CycleState.FAILED,
    },
    CycleState.MUTATED: {CycleState.VALIDATING, CycleState.FAILED},
    CycleState.VALIDATING: {
        CycleState.ACCEPTED,
        CycleState.REPAIRING,
        CycleState.REPLACING,
        CycleState.FAILED,
    },
    CycleState.REPAIRING: {CycleState.VALIDATING, CycleState.REPLACING, CycleState.FAILED},
    CycleState.REPLACING: {CycleState.MUTATED, CycleState.FAILED},
    CycleState.ACCEPTED: {CycleState.STABLE, CycleState.FAILED},
    CycleState.FAILED: {CycleState.STABLE},
}


class CycleStateMachine:
    """Tracks where the current adaptation cycle is.

    Also remembers whether the cycle has already escalated to
    Replacement, which may happen at most once per cycle.
    """

    def __init__(self) -> None:
        self._state = CycleState.STABLE
        self._escalated = False
        self._listeners: list[TransitionCallback] = []
        self.trail: list[CycleState] = [CycleState.STABLE]

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def escalated(self) -> bool:
        return self._escalated

    def transition(self, target: CycleState) -> None:
        valid = VALID_TRANSITIONS.get(self._state, set())
        if target not in valid:
            raise CycleStateError(
                f"Cannot move adaptation cycle from {self._state.value} to {target.value}"
            )
        if target == CycleState.REPLACING:
            if self._escalated:
                raise CycleStateError("Cycle already escalated to replacement once")
            self._escalated = True
        if target == CycleState.DETECTING:
            self._escalated = False
            self.trail = [self._state]
        old = self._state
        self._state = target
        self.trail.append(target)
        _logger.debug("Cycle %s -> %s", old.value, target.value)
        for listener in self._listeners:
            listener(old, target)

    def on_transition(self, callback: TransitionCallback) -> None:
        self._listeners.append(callback)
