"""Restructuring — rebuild the part of the plan a trigger touches.

Each trigger defines an impact set (tasks, edges, resources). Everything
outside that set is carried over verbatim; inside it, a new
sub-structure is synthesized from what the trigger implies. Goals are
never added or removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from weft.adaptation.strategies.base import AdaptationStrategy, Candidate, slug
from weft.adaptation.strategies.refinement import RefinementStrategy
from weft.plan.models import Assumption, Constraint, Plan, Requirement, Task
from weft.triggers.base import AdaptationTrigger
from weft.types import Edge, Severity, StrategyKind, TaskStatus, TriggerKind

_logger = logging.getLogger(__name__)


@dataclass
class ImpactSet:
    """The slice of the plan one trigger is allowed to rebuild."""

    tasks: set[str] = field(default_factory=set)
    edges: set[Edge] = field(default_factory=set)
    resources: set[str] = field(default_factory=set)


class _Workspace:
    """Mutable working copy of the plan parts restructuring may change."""

    def __init__(self, plan: Plan) -> None:
        self.plan = plan
        self.tasks: dict[str, Task] = dict(plan.tasks)
        self.edges: set[Edge] = set(plan.dependencies)
        self.requirements: list[Requirement] = list(plan.requirements)
        self.constraints: list[Constraint] = list(plan.constraints)
        self.assumptions: list[Assumption] = list(plan.assumptions)
        self.goal_tasks = plan.goal_task_ids()
        self.impact = ImpactSet()
        self.notes: list[str] = []

    def add_task(self, task: Task) -> None:
        self.tasks[task.id] = task
        self.impact.tasks.add(task.id)

    def connect(self, source: str, target: str) -> None:
        self.edges.add((source, target))
        self.impact.edges.add((source, target))

    def disconnect(self, source: str, target: str) -> None:
        if (source, target) in self.edges:
            self.edges.discard((source, target))
            self.impact.edges.add((source, target))

    def remove_task(self, tid: str) -> None:
        """Drop a task, bridging its parents to its children."""
        parents = [s for s, t in self.edges if t == tid]
        children = [t for s, t in self.edges if s == tid]
        for edge in [e for e in self.edges if tid in e]:
            self.disconnect(*edge)
        for p in parents:
            for c in children:
                self.connect(p, c)
        self.tasks.pop(tid, None)
        self.impact.tasks.add(tid)

    def unique_id(self, base: str) -> str:
        tid, n = base, 2
        while tid in self.tasks:
            tid, n = f"{base}-{n}", n + 1
        return tid

    def build(self) -> Plan:
        plan = self.plan.evolve(
            tasks=self.tasks,
            requirements=self.requirements,
            constraints=self.constraints,
            assumptions=self.assumptions,
        )
        return plan.with_edges(self.edges)


class RestructuringStrategy(AdaptationStrategy):
    kind = StrategyKind.RESTRUCTURING
    handles = frozenset({
        TriggerKind.REQUIREMENT_CONFLICT,
        TriggerKind.CONSTRAINT_VIOLATION,
        TriggerKind.ENVIRONMENT_CHANGE,
        TriggerKind.DEPENDENCY_ANOMALY,
        TriggerKind.ASSUMPTION_VIOLATION,
    })

    def __init__(self) -> None:
        self._refinement = RefinementStrategy()

    def propose(self, plan: Plan, triggers: list[AdaptationTrigger]) -> Candidate:
        # Parameter-level triggers are folded in first, then structure changes
        base = plan
        tactics: list[str] = []
        notes: list[str] = []
        handled: list[str] = []
        minor = [
            t for t in triggers
            if t.kind in (TriggerKind.VELOCITY_ANOMALY, TriggerKind.COMPLEXITY_ANOMALY)
        ]
        if minor:
            refined = self._refinement.propose(plan, minor)
            base, tactics = refined.plan, list(refined.tactics)
            notes, handled = list(refined.notes), list(refined.handled)

        ws = _Workspace(base)
        for trigger in self.relevant(triggers):
            if trigger.kind == TriggerKind.REQUIREMENT_CONFLICT:
                self._requirement(ws, trigger)
            elif trigger.kind == TriggerKind.CONSTRAINT_VIOLATION:
                self._constraint(ws, trigger)
            elif trigger.kind == TriggerKind.ENVIRONMENT_CHANGE:
                self._environment(ws, trigger)
            elif trigger.kind == TriggerKind.DEPENDENCY_ANOMALY:
                self._workaround(ws, trigger)
            elif trigger.kind == TriggerKind.ASSUMPTION_VIOLATION:
                self._assumption(ws, trigger)
            handled.append(trigger.id)

        _logger.info(
            "Restructuring impact: %d task(s), %d edge(s)",
            len(ws.impact.tasks), len(ws.impact.edges),
        )
        candidate = Candidate(
            plan=ws.build(),
            strategy=self.kind,
            tactics=tactics + ["restructure"],
            notes=notes + ws.notes,
            handled=handled,
        )
        return self.check_structure(candidate)

    # ── Synthesis per trigger kind ──────────────────────────────

    def _requirement(self, ws: _Workspace, trigger: AdaptationTrigger) -> None:
        name = trigger.payload["requirement"]
        if trigger.payload.get("change") == "obsolete":
            self._drop_requirement(ws, name)
            return

        tid = ws.unique_id(trigger.payload.get("task_id") or f"req-{slug(name)}")
        after = trigger.payload.get("after")
        before = trigger.payload.get("before")
        after = after if after in ws.tasks else None
        before = before if before in ws.tasks else None

        ws.add_task(Task(
            id=tid,
            description=trigger.payload.get("description") or f"Satisfy requirement: {name}",
            provides=[name],
            parameters={"requirement": name},
        ))
        if after:
            ws.connect(after, tid)
        if before:
            ws.connect(tid, before)
            if after:
                ws.disconnect(after, before)
        if not before:
            for goal_task in sorted(ws.goal_tasks):
                if goal_task != after and goal_task in ws.tasks:
                    ws.connect(tid, goal_task)
                    task = ws.tasks[goal_task]
                    ws.tasks[goal_task] = task.model_copy(
                        update={"requires": sorted(set(task.requires) | {name})}
                    )
        else:
            task = ws.tasks[before]
            ws.tasks[before] = task.model_copy(
                update={"requires": sorted(set(task.requires) | {name})}
            )

        if all(r.name != name for r in ws.requirements):
            ws.requirements.append(Requirement(name=name, description=trigger.payload.get("description", "")))
        ws.notes.append(f"Inserted {tid} to satisfy {name}")

    def _drop_requirement(self, ws: _Workspace, name: str) -> None:
        ws.requirements = [r for r in ws.requirements if r.name != name]
        for tid, task in sorted(ws.tasks.items()):
            if (
                task.provides == [name]
                and task.status == TaskStatus.PENDING
                and tid not in ws.goal_tasks
            ):
                ws.remove_task(tid)
                ws.notes.append(f"Removed {tid}: requirement {name} is obsolete")
        for tid, task in list(ws.tasks.items()):
            if name in task.requires:
                ws.tasks[tid] = task.model_copy(
                    update={"requires": [r for r in task.requires if r != name]}
                )

    def _constraint(self, ws: _Workspace, trigger: AdaptationTrigger) -> None:
        found = Constraint.model_validate(trigger.payload["constraint"])
        clashing = set(trigger.payload.get("conflicting_constraints") or [])
        ws.constraints = [c for c in ws.constraints if c.id not in clashing or not c.relaxable]
        if all(c.id != found.id for c in ws.constraints):
            ws.constraints.append(found)

        # Completed work that broke the constraint has to be redone
        for tid in trigger.payload.get("violating_tasks") or []:
            task = ws.tasks.get(tid)
            if task is None:
                continue
            params = dict(task.parameters)
            if found.operator == "ne":
                params.pop(found.subject, None)
            else:
                params[found.subject] = found.value
            update: dict = {"parameters": params}
            if task.status == TaskStatus.COMPLETED:
                update["status"] = TaskStatus.PENDING
            ws.tasks[tid] = task.model_copy(update=update)
            ws.impact.tasks.add(tid)
        ws.notes.append(f"Re-planned around constraint on {found.subject}")

    def _environment(self, ws: _Workspace, trigger: AdaptationTrigger) -> None:
        affected = [t for t in trigger.payload.get("affected_tasks") or [] if t in ws.tasks]
        if not affected:
            ws.notes.append("Environment changed; no task depends on what changed")
            return
        changes = trigger.payload.get("changes") or []
        keys = sorted({c["key"] for c in changes})
        tid = ws.unique_id(f"reconcile-{slug(keys[0]) if keys else 'env'}")
        ws.add_task(Task(
            id=tid,
            description=f"Reconcile environment changes: {', '.join(keys[:5])}",
            parameters={"changes": changes},
        ))
        for target in affected:
            task = ws.tasks[target]
            if task.status == TaskStatus.COMPLETED:
                ws.tasks[target] = task.model_copy(update={
                    "status": TaskStatus.PENDING,
                    "parameters": {**task.parameters, "rework_reason": "environment changed"},
                })
            ws.connect(tid, target)
            ws.impact.tasks.add(target)
        ws.notes.append(f"Inserted {tid} ahead of {', '.join(affected)}")

    def _workaround(self, ws: _Workspace, trigger: AdaptationTrigger) -> None:
        """Replace a long-blocked dependency with a workaround task."""
        waiting = trigger.payload["task_id"]
        blocked = trigger.payload["blocked_dependency"]
        if blocked not in ws.tasks or waiting not in ws.tasks:
            return
        if trigger.severity < Severity.CRITICAL and blocked in ws.goal_tasks:
            return
        old = ws.tasks[blocked]
        tid = ws.unique_id(f"workaround-{blocked}")
        ws.add_task(Task(
            id=tid,
            description=f"Work around blocked task: {old.description or blocked}",
            provides=list(old.provides),
            requires=list(old.requires),
            resources=dict(old.resources),
            parameters={"replaces": blocked},
        ))
        for source, target in sorted(ws.edges):
            if target == blocked:
                ws.connect(source, tid)
            elif source == blocked:
                ws.connect(tid, target)
        if blocked in ws.goal_tasks:
            ws.disconnect(blocked, waiting)
            ws.connect(tid, waiting)
        else:
            ws.remove_task(blocked)
            # remove_task bridged the blocked task's parents to its children
            for parent in [s for s, t in list(ws.edges) if t == waiting]:
                if (parent, tid) in ws.edges and parent != tid:
                    ws.disconnect(parent, waiting)
        ws.notes.append(f"Replaced blocked {blocked} with {tid}")

    def _assumption(self, ws: _Workspace, trigger: AdaptationTrigger) -> None:
        subject = trigger.payload["subject"]
        observed = trigger.payload["observed"]
        ws.assumptions = [
            a.model_copy(update={"expected": observed}) if a.subject == subject else a
            for a in ws.assumptions
        ]
        for tid, task in sorted(ws.tasks.items()):
            if subject not in task.parameters and subject not in task.requires:
                continue
            update: dict = {"parameters": {**task.parameters, subject: observed}}
            if task.status == TaskStatus.COMPLETED:
                update["status"] = TaskStatus.PENDING
            ws.tasks[tid] = task.model_copy(update=update)
            ws.impact.tasks.add(tid)
        ws.notes.append(f"Assumption on {subject} updated to {observed!r}")
