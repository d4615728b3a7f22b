"""Coherence Repairer — bounded, iterative repair of candidate plans.

Repair is a plain loop with a counter: fix what the last validation
found, validate again, stop at a fixed point or at the iteration cap.
At the cap the repairer raises ``CoherenceRepairExhausted`` and the
engine escalates; it never retries on its own.
"""

from __future__ import annotations

import logging
from typing import Callable

from weft.coherence.validator import CoherenceIssue, CoherenceReport, CoherenceValidator
from weft.exceptions import CoherenceRepairExhausted
from weft.plan.graph import DependencyGraph
from weft.plan.models import Plan, Task
from weft.types import REPAIR_ORDER, IssueKind, TaskStatus, new_id

_logger = logging.getLogger(__name__)

MAX_REPAIR_ITERATIONS = 3

RepairHandler = Callable[[Plan, list[CoherenceIssue]], Plan]


class CoherenceRepairer:
    """Repairs issues kind by kind in a fixed order.

    Informational issues (redundant edges) are left alone unless
    ``prune_redundant`` is set, so repairing an already-coherent plan
    hands back the very same object.
    """

    def __init__(
        self,
        validator: CoherenceValidator | None = None,
        max_iterations: int = MAX_REPAIR_ITERATIONS,
        prune_redundant: bool = False,
    ) -> None:
        self.validator = validator or CoherenceValidator()
        self.max_iterations = max_iterations
        self.prune_redundant = prune_redundant
        self.iterations_used = 0
        self._handlers: dict[IssueKind, RepairHandler] = {
            IssueKind.CIRCULAR_DEPENDENCY: self._repair_circular,
            IssueKind.CONSTRAINT_CONFLICT: self._repair_constraints,
            IssueKind.RESOURCE_OVERALLOC: self._repair_resources,
            IssueKind.GOAL_MISALIGNMENT: self._repair_misalignment,
            IssueKind.MISSING_DEPENDENCY: self._repair_missing,
            IssueKind.IMPOSSIBLE_GOAL: self._repair_impossible,
            IssueKind.UNNECESSARY_DEPENDENCY: self._repair_unnecessary,
        }

    def repair(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """Return a coherent plan or raise CoherenceRepairExhausted."""
        self.iterations_used = 0
        pending = self._actionable(issues)
        if not pending:
            return plan

        current = plan
        report: CoherenceReport | None = None
        for iteration in range(1, self.max_iterations + 1):
            self.iterations_used = iteration
            current = self.repair_once(current, pending)
            report = self.validator.validate(current)
            _logger.info(
                "Repair iteration %d: %d blocking issue(s) left (score %.2f)",
                iteration, len(report.blocking), report.score,
            )
            pending = self._actionable(report.issues)
            if not pending:
                return current

        if report is not None and report.accepted:
            return current
        remaining = report.blocking if report else list(issues)
        _logger.warning("Repair exhausted after %d iterations", self.max_iterations)
        raise CoherenceRepairExhausted(remaining, self.max_iterations)

    def repair_once(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """One pass over every issue kind, in repair order."""
        for kind in REPAIR_ORDER:
            group = [i for i in issues if i.kind == kind]
            if group:
                plan = self._handlers[kind](plan, group)
        return plan

    def _actionable(self, issues: list[CoherenceIssue]) -> list[CoherenceIssue]:
        if self.prune_redundant:
            return list(issues)
        return [i for i in issues if i.blocking]

    # ── Handlers ────────────────────────────────────────────────

    def _repair_circular(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """Drop the edge that closes each cycle."""
        back_edges = set(DependencyGraph(plan.tasks, plan.dependencies).back_edges())
        if not back_edges:
            return plan
        _logger.info("Breaking cycle edge(s): %s", sorted(back_edges))
        return plan.with_edges(plan.dependencies - back_edges)

    def _repair_constraints(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """Relax one side of conflicting pairs; clamp offending parameters."""
        by_id = {c.id: c for c in plan.constraints}
        dropped: set[str] = set()
        tasks = dict(plan.tasks)

        for issue in issues:
            first, second = issue.affected[0], issue.affected[1]
            if first in by_id and second in by_id:
                if first in dropped or second in dropped:
                    continue
                # The older constraint yields; a non-relaxable one never does
                for cid in (first, second):
                    if by_id[cid].relaxable:
                        dropped.add(cid)
                        break
            elif first in tasks and second in by_id and second not in dropped:
                constraint = by_id[second]
                params = dict(tasks[first].parameters)
                if constraint.operator == "ne":
                    params.pop(constraint.subject, None)
                else:
                    params[constraint.subject] = constraint.value
                tasks[first] = tasks[first].model_copy(update={"parameters": params})

        constraints = [c for c in plan.constraints if c.id not in dropped]
        return plan.evolve(constraints=constraints, tasks=tasks)

    def _repair_resources(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """Scale allocations down so demand fits capacity."""
        tasks = dict(plan.tasks)
        for issue in issues:
            resource = issue.detail["resource"]
            demand, capacity = issue.detail["demand"], issue.detail["capacity"]
            if demand <= 0:
                continue
            factor = capacity / demand
            for tid in issue.affected:
                task = tasks[tid]
                resources = dict(task.resources)
                resources[resource] = round(resources[resource] * factor, 6)
                tasks[tid] = task.model_copy(update={"resources": resources})
        return plan.evolve(tasks=tasks)

    def _repair_misalignment(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """Attach orphans that feed a goal task; drop the rest if not started."""
        graph = DependencyGraph(plan.tasks, plan.dependencies)
        targets = sorted(plan.goal_task_ids())
        edges = set(plan.dependencies)
        drop = []
        for issue in issues:
            tid = issue.affected[0]
            task = plan.tasks[tid]
            consumer = next(
                (
                    g for g in targets
                    if set(task.provides) & set(plan.tasks[g].requires)
                    and g not in graph.ancestors(tid)
                ),
                None,
            )
            if consumer is not None:
                edges.add((tid, consumer))
            elif task.status == TaskStatus.PENDING:
                drop.append(tid)
        repaired = plan.with_edges(edges)
        if drop:
            _logger.info("Dropping tasks with no path to a goal: %s", drop)
            repaired = repaired.without_tasks(drop)
        return repaired

    def _repair_missing(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """Add provider -> consumer edges that do not close a cycle."""
        edges = set(plan.dependencies)
        for issue in issues:
            consumer, provider = issue.affected[0], issue.affected[1]
            if consumer not in plan.tasks or provider not in plan.tasks:
                continue
            graph = DependencyGraph(plan.tasks, edges)
            if consumer in graph.ancestors(provider) or consumer == provider:
                continue
            edges.add((provider, consumer))
        return plan.with_edges(edges)

    def _repair_impossible(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        """Add a provider task for capabilities nobody provides.

        Goals blocked by a forbidden capability cannot be fixed here;
        they stay blocking and force escalation.
        """
        goals = {g.id: g for g in plan.goals}
        for issue in issues:
            unprovided = issue.detail.get("unprovided") or []
            if not unprovided or issue.detail.get("forbidden"):
                continue
            goal = goals[issue.affected[0]]
            task = Task(
                id=f"provide-{new_id()[:6]}",
                description=f"Provide {', '.join(unprovided)} for goal {goal.id}",
                provides=list(unprovided),
            )
            plan = plan.with_task(task)
            goals[goal.id] = goal.model_copy(update={"task_ids": goal.task_ids + [task.id]})
        return plan.evolve(goals=[goals[g.id] for g in plan.goals])

    def _repair_unnecessary(self, plan: Plan, issues: list[CoherenceIssue]) -> Plan:
        redundant = {tuple(i.detail["edge"]) for i in issues}
        return plan.with_edges(plan.dependencies - redundant)
