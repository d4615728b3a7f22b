"""Custom exception hierarchy for weft."""

from __future__ import annotations

from typing import Any


class WeftError(Exception):
    """Base for all weft errors."""


class TriggerDetectionError(WeftError):
    """An observation could not be interpreted by a detector.

    Recorded and skipped, never fatal to the cycle.
    """

    def __init__(self, message: str, observation: Any = None, detector: str = ""):
        super().__init__(message)
        self.observation = observation
        self.detector = detector


class PlanMutationError(WeftError):
    """A strategy produced a structurally invalid candidate plan."""


class CoherenceRepairExhausted(WeftError):
    """Blocking coherence issues remain after the repair iteration cap."""

    def __init__(self, issues: list, iterations: int):
        kinds = ", ".join(sorted({i.kind.value for i in issues}))
        super().__init__(
            f"Coherence repair exhausted after {iterations} iterations: {kinds}"
        )
        self.issues = issues
        self.iterations = iterations


class ContextIntegrityError(WeftError):
    """The optimizer dropped information that could not be restored."""


class ContextOverflow(WeftError):
    """Context snapshot exceeds its retention budget."""

    def __init__(self, size: int, budget: int):
        super().__init__(f"Context size {size} exceeds budget {budget}")
        self.size = size
        self.budget = budget


class CycleStateError(WeftError):
    """Invalid adaptation cycle state transition."""


class PlanStoreError(WeftError):
    """A candidate could not be committed to the plan store."""
