"""AdaptationStrategy — the interface every plan mutation strategy implements.

A strategy turns (plan snapshot, triggers) into a Candidate. It never
touches the plan store: the candidate goes through coherence
validation first, and only the engine commits.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict, Field

from weft.exceptions import PlanMutationError
from weft.plan.models import Plan
from weft.triggers.base import AdaptationTrigger
from weft.types import StrategyKind, TaskId, TriggerKind

_logger = logging.getLogger(__name__)


class TransitionNote(BaseModel):
    """What in-flight work a Replacement keeps and what it throws away."""

    model_config = ConfigDict(frozen=True)

    preserved: list[TaskId] = Field(default_factory=list)
    discarded: list[TaskId] = Field(default_factory=list)
    in_flight_preserved: list[TaskId] = Field(default_factory=list)
    in_flight_discarded: list[TaskId] = Field(default_factory=list)
    summary: str = ""


class Candidate(BaseModel):
    """A proposed next plan, not yet validated."""

    model_config = ConfigDict(frozen=True)

    plan: Plan
    strategy: StrategyKind
    tactics: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    transition: TransitionNote | None = None
    handled: list[str] = Field(default_factory=list)  # trigger ids acted upon


class AdaptationStrategy(ABC):
    """Base class for the three mutation granularities."""

    kind: StrategyKind
    handles: frozenset[TriggerKind] = frozenset()

    @abstractmethod
    def propose(self, plan: Plan, triggers: list[AdaptationTrigger]) -> Candidate:
        """Build a candidate plan from ``plan`` in response to ``triggers``."""
        ...

    def relevant(self, triggers: list[AdaptationTrigger]) -> list[AdaptationTrigger]:
        return [t for t in triggers if t.kind in self.handles]

    def check_structure(self, candidate: Candidate) -> Candidate:
        """Reject candidates that reference things that do not exist."""
        errors = candidate.plan.structural_errors()
        if errors:
            _logger.warning("%s produced a malformed candidate: %s", self.kind.value, errors[0])
            raise PlanMutationError(
                f"{self.kind.value} candidate is malformed: {'; '.join(errors[:3])}"
            )
        return candidate


def slug(text: str) -> str:
    """Short identifier fragment derived from free text."""
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:32] or "item"
