"""Plan data model — immutable, versioned snapshots.

A Plan is never edited in place. Every change goes through
``Plan.evolve()`` (or one of the helpers built on it), which returns a
new snapshot and leaves the original untouched for readers that still
hold it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field

from weft.types import (
    Complexity, Edge, GoalId, PlanId, Severity, TaskId, TaskStatus, new_id,
)


class Task(BaseModel):
    """A unit of work. Owned exclusively by one Plan version."""

    model_config = ConfigDict(frozen=True)

    id: TaskId = Field(default_factory=new_id)
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[TaskId] = Field(default_factory=list)  # ordered
    resources: dict[str, float] = Field(default_factory=dict)  # resource -> units
    complexity: Complexity = Complexity.MEDIUM
    requires: list[str] = Field(default_factory=list)  # capabilities needed
    provides: list[str] = Field(default_factory=list)  # capabilities produced
    blocked_since: datetime | None = None


class Goal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: GoalId = Field(default_factory=new_id)
    description: str
    task_ids: list[TaskId] = Field(default_factory=list)  # tasks that achieve it
    requires: list[str] = Field(default_factory=list)
    achieved: bool = False


class Assumption(BaseModel):
    """Something the plan takes for granted about the world."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    subject: str  # e.g. "db.engine"
    expected: Any
    description: str = ""
    severity: Severity = Severity.HIGH  # CRITICAL means the plan rests on it


class Constraint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    subject: str
    operator: Literal["eq", "ne", "max", "min"] = "eq"
    value: Any
    description: str = ""
    relaxable: bool = True

    def admits(self, value: Any) -> bool:
        """Does ``value`` satisfy this constraint?"""
        try:
            if self.operator == "eq":
                return value == self.value
            if self.operator == "ne":
                return value != self.value
            if self.operator == "max":
                return value <= self.value
            return value >= self.value
        except TypeError:
            return False

    def conflicts_with(self, other: Constraint) -> bool:
        """True when no value could satisfy both constraints."""
        if self.subject != other.subject:
            return False
        if self.operator == "eq":
            return not other.admits(self.value)
        if other.operator == "eq":
            return not self.admits(other.value)
        bounds = {self.operator: self.value, other.operator: other.value}
        if set(bounds) == {"max", "min"}:
            try:
                return bounds["max"] < bounds["min"]
            except TypeError:
                return True
        return False


class Requirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    explicit: bool = True


class Plan(BaseModel):
    """A versioned set of goals, tasks, dependencies and context.

    ``dependencies`` is the authoritative edge set. Each task's
    ``dependencies`` list carries the same sources in execution order.
    """

    model_config = ConfigDict(frozen=True)

    id: PlanId = Field(default_factory=new_id)
    version: int = 1
    goals: list[Goal] = Field(default_factory=list)
    tasks: dict[TaskId, Task] = Field(default_factory=dict)
    dependencies: frozenset[Edge] = Field(default_factory=frozenset)
    assumptions: list[Assumption] = Field(default_factory=list)
    constraints: list[Constraint] = Field(default_factory=list)
    requirements: list[Requirement] = Field(default_factory=list)
    capacities: dict[str, float] = Field(default_factory=dict)
    expected_velocity: float = 0.0  # tasks/hour, 0 disables velocity checks
    expected_complexity: dict[TaskId, Complexity] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    superseded_by: PlanId | None = None

    # ── Construction ────────────────────────────────────────────

    @classmethod
    def build(
        cls,
        goals: Iterable[Goal],
        tasks: Iterable[Task],
        edges: Iterable[Edge] = (),
        **fields: Any,
    ) -> Plan:
        """Create a plan from tasks and edges, syncing task dependency lists.

        Edges may be given explicitly, through each task's
        ``dependencies``, or both.
        """
        tasks = list(tasks)
        edge_set = set(edges)
        edge_set.update((dep, t.id) for t in tasks for dep in t.dependencies)
        plan = cls(
            goals=list(goals),
            tasks={t.id: t for t in tasks},
            **fields,
        )
        return plan.with_edges(edge_set)

    def evolve(self, **changes: Any) -> Plan:
        """Return a new snapshot with ``changes`` applied."""
        return self.model_copy(update=changes)

    def with_edges(self, edges: Iterable[Edge]) -> Plan:
        """Replace the edge set and resync every task's dependency list.

        Existing dependency order is kept; new sources are appended.
        """
        edge_set = frozenset(edges)
        incoming: dict[TaskId, set[TaskId]] = {tid: set() for tid in self.tasks}
        for source, target in edge_set:
            if target in incoming:
                incoming[target].add(source)

        tasks = {}
        for tid, task in self.tasks.items():
            sources = incoming[tid]
            ordered = [d for d in task.dependencies if d in sources]
            ordered += sorted(sources - set(ordered))
            if ordered != task.dependencies:
                task = task.model_copy(update={"dependencies": ordered})
            tasks[tid] = task
        return self.evolve(tasks=tasks, dependencies=edge_set)

    def with_task(self, task: Task) -> Plan:
        """Add or replace a task. Edges are untouched."""
        tasks = dict(self.tasks)
        tasks[task.id] = task
        return self.evolve(tasks=tasks)

    def without_tasks(self, task_ids: Iterable[TaskId]) -> Plan:
        """Drop tasks, every edge touching them, and goal references."""
        drop = set(task_ids)
        tasks = {tid: t for tid, t in self.tasks.items() if tid not in drop}
        goals = [
            g.model_copy(update={"task_ids": [t for t in g.task_ids if t not in drop]})
            for g in self.goals
        ]
        edges = {(s, t) for s, t in self.dependencies if s not in drop and t not in drop}
        return self.evolve(tasks=tasks, goals=goals).with_edges(edges)

    # ── Queries ─────────────────────────────────────────────────

    @property
    def execution_state(self) -> dict[TaskId, TaskStatus]:
        return {tid: t.status for tid, t in self.tasks.items()}

    @property
    def goal_ids(self) -> frozenset[GoalId]:
        return frozenset(g.id for g in self.goals)

    def requirement_names(self) -> set[str]:
        """Explicit requirements plus the implicit ones tasks provide."""
        names = {r.name for r in self.requirements}
        for task in self.tasks.values():
            names.update(task.provides)
        return names

    def tasks_with_status(self, status: TaskStatus) -> list[Task]:
        return [t for t in self.tasks.values() if t.status == status]

    def goal_task_ids(self) -> set[TaskId]:
        return {tid for g in self.goals for tid in g.task_ids if tid in self.tasks}

    def structural_errors(self) -> list[str]:
        """Referential problems that make a snapshot unusable.

        These are never repaired — a candidate with any of them is
        discarded by the engine.
        """
        errors = []
        for tid, task in self.tasks.items():
            if task.id != tid:
                errors.append(f"task key {tid!r} does not match id {task.id!r}")
            for dep in task.dependencies:
                if dep not in self.tasks:
                    errors.append(f"task {tid!r} depends on unknown task {dep!r}")
        for source, target in sorted(self.dependencies):
            if source not in self.tasks or target not in self.tasks:
                errors.append(f"edge {source!r} -> {target!r} references an unknown task")
        for goal in self.goals:
            for tid in goal.task_ids:
                if tid not in self.tasks:
                    errors.append(f"goal {goal.id!r} references unknown task {tid!r}")
        goal_ids = [g.id for g in self.goals]
        if len(goal_ids) != len(set(goal_ids)):
            errors.append("duplicate goal ids")
        return errors

    # ── Export ──────────────────────────────────────────────────

    def export(self) -> dict[str, Any]:
        """Read-only snapshot handed to the packaging collaborator."""
        return {
            "id": self.id,
            "version": self.version,
            "goals": [g.model_dump(mode="json") for g in self.goals],
            "tasks": {
                tid: t.model_dump(mode="json") for tid, t in sorted(self.tasks.items())
            },
            "dependencies": [list(e) for e in sorted(self.dependencies)],
            "assumptions": [a.model_dump(mode="json") for a in self.assumptions],
            "constraints": [c.model_dump(mode="json") for c in self.constraints],
            "executionState": {
                tid: status.value for tid, status in sorted(self.execution_state.items())
            },
        }


class PlanChange(BaseModel):
    """One accepted adaptation cycle, as seen on the plan-change feed."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    plan_id: PlanId
    from_version: int
    to_version: int
    strategy_used: str
    triggers: list[dict[str, Any]] = Field(default_factory=list)
    added_tasks: list[TaskId] = Field(default_factory=list)
    removed_tasks: list[TaskId] = Field(default_factory=list)
    changed_tasks: list[TaskId] = Field(default_factory=list)
    transition_note: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def between(
        cls,
        old: Plan,
        new: Plan,
        strategy_used: str,
        triggers: list[dict[str, Any]],
        transition_note: str = "",
    ) -> PlanChange:
        old_ids, new_ids = set(old.tasks), set(new.tasks)
        changed = sorted(
            tid for tid in old_ids & new_ids if old.tasks[tid] != new.tasks[tid]
        )
        return cls(
            plan_id=new.id,
            from_version=old.version,
            to_version=new.version,
            strategy_used=strategy_used,
            triggers=triggers,
            added_tasks=sorted(new_ids - old_ids),
            removed_tasks=sorted(old_ids - new_ids),
            changed_tasks=changed,
            transition_note=transition_note,
        )
