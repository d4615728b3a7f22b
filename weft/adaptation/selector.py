"""Strategy selection — which mutation granularity answers a set of triggers.

Each trigger kind maps to the strategy that can answer it. Only the
highest-severity triggers vote; among the strategies they imply, the
one ranked highest in the configured priority wins. The strategies
ranked below the winner are the fallbacks tried, in order, if the
winner produces a malformed candidate.
"""

from __future__ import annotations

import logging

from weft.config import settings
from weft.plan.models import Plan
from weft.triggers.base import AdaptationTrigger
from weft.types import Severity, StrategyKind, TriggerKind

_logger = logging.getLogger(__name__)

DEFAULT_PRIORITY: tuple[StrategyKind, ...] = (
    StrategyKind.REPLACEMENT,
    StrategyKind.RESTRUCTURING,
    StrategyKind.REFINEMENT,
)


class StrategySelector:
    """Deterministic, total-ordered strategy choice."""

    def __init__(self, priority: list[str] | None = None) -> None:
        names = priority if priority is not None else settings.strategy_priority
        order = [StrategyKind(n) for n in names]
        # Kinds left out of a custom order rank last, in default order
        order += [k for k in DEFAULT_PRIORITY if k not in order]
        self.priority: tuple[StrategyKind, ...] = tuple(order)

    def strategy_for(self, plan: Plan, trigger: AdaptationTrigger) -> StrategyKind:
        kind = trigger.kind
        if kind in (TriggerKind.VELOCITY_ANOMALY, TriggerKind.COMPLEXITY_ANOMALY):
            return StrategyKind.REFINEMENT
        if kind == TriggerKind.DEPENDENCY_ANOMALY:
            if trigger.severity >= Severity.CRITICAL:
                return StrategyKind.RESTRUCTURING
            return StrategyKind.REFINEMENT
        if kind == TriggerKind.CONSTRAINT_VIOLATION:
            clashing = set(trigger.payload.get("conflicting_constraints") or [])
            if all(c.relaxable for c in plan.constraints if c.id in clashing):
                return StrategyKind.REFINEMENT
            return StrategyKind.RESTRUCTURING
        if kind == TriggerKind.ASSUMPTION_VIOLATION:
            if trigger.severity >= Severity.CRITICAL:
                return StrategyKind.REPLACEMENT
            return StrategyKind.RESTRUCTURING
        # Requirement conflicts and environment changes
        return StrategyKind.RESTRUCTURING

    def select(self, plan: Plan, triggers: list[AdaptationTrigger]) -> list[StrategyKind]:
        """Chosen strategy first, then its fallbacks. Empty if no triggers."""
        if not triggers:
            return []
        top = max(t.severity for t in triggers)
        implied = {self.strategy_for(plan, t) for t in triggers if t.severity == top}
        chosen = next(k for k in self.priority if k in implied)
        order = list(self.priority[self.priority.index(chosen):])
        _logger.info(
            "Selected %s for %d %s trigger(s)",
            chosen.value, sum(1 for t in triggers if t.severity == top), top.name.lower(),
        )
        return order
