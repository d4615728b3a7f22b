"""Coherence Validator — is a candidate plan internally consistent?

Checks run in four groups:

- logical: dependency cycles, constraint pairs that cannot both hold,
  goals that cannot be reached under the current constraints
- dependency: capabilities a task needs from a provider it does not
  depend on, and transitively redundant edges (informational)
- resource: demands above declared capacity
- goal alignment: tasks with no path to any goal

Acceptance depends only on the blocking issue count being zero. The
score is diagnostic.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from weft.plan.graph import DependencyGraph
from weft.plan.models import Plan
from weft.types import IssueKind, NON_BLOCKING_ISSUES, Severity, TaskStatus

CAPABILITY_PREFIX = "capability:"


class CoherenceIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: IssueKind
    affected: list[str] = Field(default_factory=list)  # task / constraint / goal ids
    severity: Severity = Severity.HIGH
    detail: dict[str, Any] = Field(default_factory=dict)

    @property
    def blocking(self) -> bool:
        return self.kind not in NON_BLOCKING_ISSUES


class CoherenceReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = 1.0
    issues: list[CoherenceIssue] = Field(default_factory=list)
    checks: int = 0

    @property
    def blocking(self) -> list[CoherenceIssue]:
        return [i for i in self.issues if i.blocking]

    @property
    def accepted(self) -> bool:
        return not self.blocking

    def of_kind(self, kind: IssueKind) -> list[CoherenceIssue]:
        return [i for i in self.issues if i.kind == kind]


class CoherenceValidator:
    """Scores a plan and lists its coherence issues."""

    def validate(self, plan: Plan) -> CoherenceReport:
        graph = DependencyGraph(plan.tasks, plan.dependencies)
        issues: list[CoherenceIssue] = []
        issues += self._circular(graph)
        issues += self._constraint_conflicts(plan)
        issues += self._impossible_goals(plan, graph)
        issues += self._missing_dependencies(plan, graph)
        issues += self._unnecessary_dependencies(graph)
        issues += self._resource_overalloc(plan)
        issues += self._goal_misalignment(plan, graph)

        checks = (
            1
            + len(plan.tasks)
            + len(plan.dependencies)
            + len(plan.constraints)
            + len(plan.goals)
            + len(plan.capacities)
        )
        blocking = sum(1 for i in issues if i.blocking)
        score = max(0.0, 1.0 - blocking / checks)
        return CoherenceReport(score=round(score, 4), issues=issues, checks=checks)

    # ── Logical consistency ─────────────────────────────────────

    def _circular(self, graph: DependencyGraph) -> list[CoherenceIssue]:
        return [
            CoherenceIssue(
                kind=IssueKind.CIRCULAR_DEPENDENCY,
                affected=sorted(set(cycle)),
                severity=Severity.CRITICAL,
                detail={"cycle": list(cycle)},
            )
            for cycle in graph.detect_cycles()
        ]

    def _constraint_conflicts(self, plan: Plan) -> list[CoherenceIssue]:
        issues = []
        constraints = plan.constraints
        for i, a in enumerate(constraints):
            for b in constraints[i + 1:]:
                if a.conflicts_with(b):
                    issues.append(CoherenceIssue(
                        kind=IssueKind.CONSTRAINT_CONFLICT,
                        affected=[a.id, b.id],
                        detail={"subject": a.subject},
                    ))
        for tid, task in sorted(plan.tasks.items()):
            if task.status == TaskStatus.COMPLETED:
                continue
            for c in constraints:
                if c.subject in task.parameters and not c.admits(task.parameters[c.subject]):
                    issues.append(CoherenceIssue(
                        kind=IssueKind.CONSTRAINT_CONFLICT,
                        affected=[tid, c.id],
                        severity=Severity.MEDIUM,
                        detail={"subject": c.subject, "value": task.parameters[c.subject]},
                    ))
        return issues

    def _impossible_goals(self, plan: Plan, graph: DependencyGraph) -> list[CoherenceIssue]:
        forbidden = {
            c.subject[len(CAPABILITY_PREFIX):]
            for c in plan.constraints
            if c.subject.startswith(CAPABILITY_PREFIX) and not c.admits(True)
        }
        provided = {cap for t in plan.tasks.values() for cap in t.provides}

        issues = []
        for goal in plan.goals:
            if goal.achieved:
                continue
            path = {tid for tid in goal.task_ids if tid in plan.tasks}
            for tid in list(path):
                path |= graph.ancestors(tid)
            needed = set(goal.requires)
            for tid in path:
                needed.update(plan.tasks[tid].requires)

            blocked_by = sorted(needed & forbidden)
            unprovided = sorted(set(goal.requires) - provided) if not path else []
            if blocked_by or unprovided:
                issues.append(CoherenceIssue(
                    kind=IssueKind.IMPOSSIBLE_GOAL,
                    affected=[goal.id],
                    severity=Severity.CRITICAL if blocked_by else Severity.HIGH,
                    detail={"forbidden": blocked_by, "unprovided": unprovided},
                ))
        return issues

    # ── Dependency coherence ────────────────────────────────────

    def _missing_dependencies(self, plan: Plan, graph: DependencyGraph) -> list[CoherenceIssue]:
        providers: dict[str, list[str]] = {}
        for tid, task in sorted(plan.tasks.items()):
            for cap in task.provides:
                providers.setdefault(cap, []).append(tid)

        issues = []
        for tid, task in sorted(plan.tasks.items()):
            if task.status == TaskStatus.COMPLETED:
                continue
            ancestors = graph.ancestors(tid)
            for cap in task.requires:
                candidates = [p for p in providers.get(cap, []) if p != tid]
                if not candidates or any(p in ancestors for p in candidates):
                    continue
                issues.append(CoherenceIssue(
                    kind=IssueKind.MISSING_DEPENDENCY,
                    affected=[tid, candidates[0]],
                    severity=Severity.MEDIUM,
                    detail={"capability": cap, "provider": candidates[0]},
                ))
        return issues

    def _unnecessary_dependencies(self, graph: DependencyGraph) -> list[CoherenceIssue]:
        if not graph.is_acyclic():
            return []  # redundancy is meaningless until cycles are gone
        return [
            CoherenceIssue(
                kind=IssueKind.UNNECESSARY_DEPENDENCY,
                affected=[source, target],
                severity=Severity.LOW,
                detail={"edge": [source, target]},
            )
            for source, target in graph.redundant_edges()
        ]

    # ── Resource coherence ──────────────────────────────────────

    def _resource_overalloc(self, plan: Plan) -> list[CoherenceIssue]:
        issues = []
        for resource, capacity in sorted(plan.capacities.items()):
            for tid, task in sorted(plan.tasks.items()):
                demand = task.resources.get(resource, 0.0)
                if demand > capacity:
                    issues.append(CoherenceIssue(
                        kind=IssueKind.RESOURCE_OVERALLOC,
                        affected=[tid],
                        detail={"resource": resource, "demand": demand, "capacity": capacity},
                    ))
            active = [
                t for t in plan.tasks.values()
                if t.status == TaskStatus.ACTIVE and resource in t.resources
            ]
            total = sum(t.resources[resource] for t in active)
            if len(active) > 1 and total > capacity:
                issues.append(CoherenceIssue(
                    kind=IssueKind.RESOURCE_OVERALLOC,
                    affected=sorted(t.id for t in active),
                    detail={"resource": resource, "demand": total, "capacity": capacity},
                ))
        return issues

    # ── Goal alignment ──────────────────────────────────────────

    def _goal_misalignment(self, plan: Plan, graph: DependencyGraph) -> list[CoherenceIssue]:
        targets = plan.goal_task_ids()
        if not targets:
            return []
        issues = []
        for tid, task in sorted(plan.tasks.items()):
            if tid in targets or task.status == TaskStatus.COMPLETED:
                continue
            if graph.descendants(tid) & targets:
                continue
            issues.append(CoherenceIssue(
                kind=IssueKind.GOAL_MISALIGNMENT,
                affected=[tid],
                severity=Severity.MEDIUM,
            ))
        return issues
