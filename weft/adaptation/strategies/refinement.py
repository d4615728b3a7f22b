"""Refinement — the smallest mutation.

Only task parameters, dependency ordering, resource assignment and
constraint values change. The task set and the edge set of the output
are exactly those of the input.
"""

from __future__ import annotations

import logging
from typing import Any

from weft.adaptation.strategies.base import AdaptationStrategy, Candidate
from weft.plan.models import Constraint, Plan, Task
from weft.triggers.base import AdaptationTrigger
from weft.types import Complexity, StrategyKind, TaskStatus, TriggerKind

_logger = logging.getLogger(__name__)

PARAMETER_ADJUSTMENT = "parameter_adjustment"
TASK_REORDERING = "task_reordering"
RESOURCE_REALLOCATION = "resource_reallocation"
CONSTRAINT_RELAXATION = "constraint_relaxation"

_COMPLEXITY_SCALE = {Complexity.LOW: 0.5, Complexity.MEDIUM: 1.0, Complexity.HIGH: 2.0}


class _Draft:
    """Mutable working copy used while a refinement is being assembled."""

    def __init__(self, plan: Plan) -> None:
        self.plan = plan
        self.tasks: dict[str, Task] = dict(plan.tasks)
        self.constraints: list[Constraint] = list(plan.constraints)
        self.fields: dict[str, Any] = {}
        self.tactics: list[str] = []
        self.notes: list[str] = []
        self.handled: list[str] = []

    def set_params(self, tid: str, **params: Any) -> None:
        task = self.tasks[tid]
        self.tasks[tid] = task.model_copy(update={"parameters": {**task.parameters, **params}})

    def use(self, tactic: str, note: str) -> None:
        if tactic not in self.tactics:
            self.tactics.append(tactic)
        self.notes.append(note)

    def build(self) -> Plan:
        return self.plan.evolve(tasks=self.tasks, constraints=self.constraints, **self.fields)


class RefinementStrategy(AdaptationStrategy):
    kind = StrategyKind.REFINEMENT
    handles = frozenset({
        TriggerKind.VELOCITY_ANOMALY,
        TriggerKind.COMPLEXITY_ANOMALY,
        TriggerKind.DEPENDENCY_ANOMALY,
        TriggerKind.CONSTRAINT_VIOLATION,
    })

    def propose(self, plan: Plan, triggers: list[AdaptationTrigger]) -> Candidate:
        draft = _Draft(plan)
        for trigger in self.relevant(triggers):
            if trigger.kind == TriggerKind.VELOCITY_ANOMALY:
                self._adjust_pace(draft, trigger)
            elif trigger.kind == TriggerKind.COMPLEXITY_ANOMALY:
                self._adjust_complexity(draft, trigger)
            elif trigger.kind == TriggerKind.DEPENDENCY_ANOMALY:
                self._reorder(draft, trigger)
            elif trigger.kind == TriggerKind.CONSTRAINT_VIOLATION:
                self._relax(draft, trigger)
            draft.handled.append(trigger.id)

        skipped = [t.kind.value for t in triggers if t.id not in draft.handled]
        if skipped:
            _logger.info("Refinement left trigger(s) for a later cycle: %s", skipped)

        candidate = Candidate(
            plan=draft.build(),
            strategy=self.kind,
            tactics=draft.tactics,
            notes=draft.notes,
            handled=draft.handled,
        )
        return self.check_structure(candidate)

    # ── Tactics ─────────────────────────────────────────────────

    def _adjust_pace(self, draft: _Draft, trigger: AdaptationTrigger) -> None:
        expected = trigger.payload["expected"]
        actual = trigger.payload["actual"]
        factor = round(actual / expected, 4) if expected else 1.0
        for tid, task in sorted(draft.tasks.items()):
            if task.status == TaskStatus.COMPLETED:
                continue
            params: dict[str, Any] = {"pace_factor": factor}
            if isinstance(task.parameters.get("estimate_hours"), (int, float)) and factor > 0:
                params["estimate_hours"] = round(task.parameters["estimate_hours"] / factor, 2)
            draft.set_params(tid, **params)
        draft.fields["expected_velocity"] = actual
        draft.use(
            PARAMETER_ADJUSTMENT,
            f"Re-baselined velocity {expected}/h -> {actual}/h (pace factor {factor})",
        )

    def _adjust_complexity(self, draft: _Draft, trigger: AdaptationTrigger) -> None:
        tid = trigger.payload["task_id"]
        if tid not in draft.tasks:
            return
        observed = Complexity(trigger.payload["observed"])
        expected = Complexity(trigger.payload["expected"])
        scale = _COMPLEXITY_SCALE[observed] / _COMPLEXITY_SCALE[expected]

        task = draft.tasks[tid]
        params: dict[str, Any] = {"observed_complexity": observed.value}
        if isinstance(task.parameters.get("estimate_hours"), (int, float)):
            params["estimate_hours"] = round(task.parameters["estimate_hours"] * scale, 2)
        draft.set_params(tid, **params)

        expected_map = dict(draft.fields.get("expected_complexity", draft.plan.expected_complexity))
        expected_map[tid] = observed
        draft.fields["expected_complexity"] = expected_map
        draft.use(PARAMETER_ADJUSTMENT, f"Task {tid} is {observed.value}, not {expected.value}")

        if scale > 1:
            self._reallocate(draft, tid, scale)

    def _reallocate(self, draft: _Draft, tid: str, scale: float) -> None:
        """Give a harder task more of each resource, within free capacity."""
        task = draft.tasks[tid]
        resources = dict(task.resources)
        changed = []
        for resource, units in task.resources.items():
            capacity = draft.plan.capacities.get(resource)
            if capacity is None:
                continue
            used = sum(
                t.resources.get(resource, 0.0)
                for t in draft.tasks.values()
                if t.status == TaskStatus.ACTIVE and t.id != tid
            )
            target = min(units * scale, capacity - used)
            if target > units:
                resources[resource] = round(target, 6)
                changed.append(resource)
        if changed:
            draft.tasks[tid] = task.model_copy(update={"resources": resources})
            draft.use(RESOURCE_REALLOCATION, f"Raised {', '.join(changed)} for {tid}")

    def _reorder(self, draft: _Draft, trigger: AdaptationTrigger) -> None:
        """Move the blocked dependency to the back of the task's queue."""
        tid = trigger.payload["task_id"]
        blocked = trigger.payload["blocked_dependency"]
        task = draft.tasks.get(tid)
        if task is None or blocked not in task.dependencies:
            return
        ready_first = sorted(
            task.dependencies,
            key=lambda d: draft.tasks[d].status == TaskStatus.BLOCKED if d in draft.tasks else True,
        )
        draft.tasks[tid] = task.model_copy(update={
            "dependencies": ready_first,
            "parameters": {**task.parameters, "waiting_on": blocked},
        })
        draft.use(TASK_REORDERING, f"Task {tid} now works around blocked {blocked} first")

    def _relax(self, draft: _Draft, trigger: AdaptationTrigger) -> None:
        """Adopt a discovered constraint, relaxing the ones it clashes with."""
        found = Constraint.model_validate(trigger.payload["constraint"])
        clashing = set(trigger.payload.get("conflicting_constraints") or [])
        kept = [c for c in draft.constraints if c.id not in clashing or not c.relaxable]
        relaxed = len(draft.constraints) - len(kept)
        if all(c.id != found.id for c in kept):
            kept.append(found)
        draft.constraints = kept

        for tid in trigger.payload.get("violating_tasks") or []:
            if tid not in draft.tasks:
                continue
            if found.operator == "ne":
                params = {k: v for k, v in draft.tasks[tid].parameters.items() if k != found.subject}
                draft.tasks[tid] = draft.tasks[tid].model_copy(update={"parameters": params})
            else:
                draft.set_params(tid, **{found.subject: found.value})
        draft.use(
            CONSTRAINT_RELAXATION,
            f"Adopted constraint on {found.subject}, relaxed {relaxed} existing",
        )
