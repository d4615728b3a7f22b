"""Replacement — abandon the plan and build a new one from what was learned.

The outgoing plan (and its history) is mined for lessons: which
assumptions turned out wrong, which approaches got stuck, which
constraints were discovered, and which work already succeeded. Several
candidate plans are generated from those lessons, each is scored, and
the best one wins. Replacement may change the goal set, and always
says what in-flight work it keeps.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field

from weft.adaptation.strategies.base import (
    AdaptationStrategy, Candidate, TransitionNote, slug,
)
from weft.coherence.validator import CAPABILITY_PREFIX, CoherenceValidator
from weft.config import settings
from weft.plan.graph import DependencyGraph
from weft.plan.models import Assumption, Constraint, Goal, Plan, Requirement, Task
from weft.triggers.base import AdaptationTrigger
from weft.types import Complexity, Edge, StrategyKind, TaskStatus, TriggerKind, new_id

_logger = logging.getLogger(__name__)

PRESERVATION_WEIGHT = 0.3
PARALLELISM_WEIGHT = 0.1


class LessonsLearned(BaseModel):
    """What the outgoing plan taught us."""

    model_config = ConfigDict(frozen=True)

    invalidated_assumptions: list[Assumption] = Field(default_factory=list)
    failed_approaches: list[str] = Field(default_factory=list)  # task ids
    discovered_constraints: list[Constraint] = Field(default_factory=list)
    successful_patterns: list[str] = Field(default_factory=list)  # task ids
    new_requirements: list[dict[str, Any]] = Field(default_factory=list)
    obsolete_requirements: list[str] = Field(default_factory=list)
    stale_tasks: list[str] = Field(default_factory=list)
    observed_velocity: float | None = None
    observed_complexity: dict[str, Complexity] = Field(default_factory=dict)

    @classmethod
    def extract(
        cls,
        plan: Plan,
        triggers: list[AdaptationTrigger],
        history: Iterable[Plan] = (),
    ) -> LessonsLearned:
        assumptions = {a.id: a for a in plan.assumptions}
        invalidated: list[Assumption] = []
        failed: set[str] = {t.id for t in plan.tasks_with_status(TaskStatus.BLOCKED)}
        discovered: list[Constraint] = []
        new_reqs: list[dict[str, Any]] = []
        obsolete: list[str] = []
        stale: set[str] = set()
        velocity = None
        complexity: dict[str, Complexity] = {}

        # Tasks that were blocked in an earlier version and are still around
        for old in history:
            failed.update(
                t.id for t in old.tasks_with_status(TaskStatus.BLOCKED)
                if t.id in plan.tasks and plan.tasks[t.id].status != TaskStatus.COMPLETED
            )

        for trigger in triggers:
            p = trigger.payload
            if trigger.kind == TriggerKind.ASSUMPTION_VIOLATION:
                base = assumptions.get(p.get("assumption_id"))
                if base is not None:
                    invalidated.append(base.model_copy(update={"expected": p["observed"]}))
            elif trigger.kind == TriggerKind.CONSTRAINT_VIOLATION:
                discovered.append(Constraint.model_validate(p["constraint"]))
            elif trigger.kind == TriggerKind.REQUIREMENT_CONFLICT:
                if p.get("change") == "obsolete":
                    obsolete.append(p["requirement"])
                else:
                    new_reqs.append(p)
            elif trigger.kind == TriggerKind.DEPENDENCY_ANOMALY:
                failed.add(p["blocked_dependency"])
            elif trigger.kind == TriggerKind.ENVIRONMENT_CHANGE:
                stale.update(p.get("affected_tasks") or [])
            elif trigger.kind == TriggerKind.VELOCITY_ANOMALY:
                velocity = p["actual"]
            elif trigger.kind == TriggerKind.COMPLEXITY_ANOMALY:
                complexity[p["task_id"]] = Complexity(p["observed"])

        return cls(
            invalidated_assumptions=invalidated,
            failed_approaches=sorted(failed & set(plan.tasks)),
            discovered_constraints=discovered,
            successful_patterns=sorted(
                t.id for t in plan.tasks_with_status(TaskStatus.COMPLETED)
            ),
            new_requirements=new_reqs,
            obsolete_requirements=obsolete,
            stale_tasks=sorted(stale & set(plan.tasks)),
            observed_velocity=velocity,
            observed_complexity=complexity,
        )

    def summary(self) -> str:
        parts = []
        if self.invalidated_assumptions:
            parts.append(
                "invalidated " + ", ".join(a.subject for a in self.invalidated_assumptions)
            )
        if self.failed_approaches:
            parts.append("abandoned " + ", ".join(self.failed_approaches))
        if self.discovered_constraints:
            parts.append(
                "discovered constraints on "
                + ", ".join(c.subject for c in self.discovered_constraints)
            )
        if self.new_requirements:
            parts.append("new requirements " + ", ".join(r["requirement"] for r in self.new_requirements))
        return "; ".join(parts) or "no new lessons"


class _Scored(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    plan: Plan
    score: float
    accepted: bool


class ReplacementStrategy(AdaptationStrategy):
    kind = StrategyKind.REPLACEMENT
    handles = frozenset(TriggerKind)

    def __init__(
        self,
        validator: CoherenceValidator | None = None,
        candidates: int | None = None,
    ) -> None:
        self.validator = validator or CoherenceValidator()
        self.candidates = candidates if candidates is not None else settings.replacement_candidates
        self._generators: list[tuple[str, Callable[[Plan], Plan]]] = [
            ("salvage", lambda p: p),
            ("sequential", self._sequential),
        ]
        self.last_lessons: LessonsLearned | None = None

    def propose(
        self,
        plan: Plan,
        triggers: list[AdaptationTrigger],
        history: Iterable[Plan] = (),
    ) -> Candidate:
        lessons = LessonsLearned.extract(plan, triggers, history)
        self.last_lessons = lessons
        salvage = self._salvage(plan, lessons)

        scored = []
        for name, generate in self._generators[: max(1, self.candidates)]:
            candidate = generate(salvage)
            scored.append(self._score(name, plan, candidate))
        best = max(scored, key=lambda s: s.score)  # first wins ties
        _logger.info(
            "Replacement candidates: %s -> %s",
            ", ".join(f"{s.name}={s.score:.3f}" for s in scored), best.name,
        )

        transition = self._transition(plan, best.plan, lessons)
        candidate = Candidate(
            plan=best.plan,
            strategy=self.kind,
            tactics=[best.name],
            notes=[lessons.summary(), transition.summary],
            transition=transition,
            handled=[t.id for t in triggers],
        )
        return self.check_structure(candidate)

    # ── Candidate generation ────────────────────────────────────

    def _salvage(self, plan: Plan, lessons: LessonsLearned) -> Plan:
        """Keep what worked; rebuild around what did not."""
        tasks = dict(plan.tasks)
        edges: set[Edge] = set(plan.dependencies)
        renamed: dict[str, str] = {}

        # Stuck approaches are swapped for fresh alternatives
        for tid in lessons.failed_approaches:
            old = tasks.pop(tid)
            parents = {s for s, t in edges if t == tid}
            children = {t for s, t in edges if s == tid}
            edges = {e for e in edges if tid not in e}
            alt_id = _unique(tasks, f"alt-{tid}")
            tasks[alt_id] = Task(
                id=alt_id,
                description=f"Alternative approach to: {old.description or tid}",
                parameters={**old.parameters, "avoid": tid},
                resources=dict(old.resources),
                requires=list(old.requires),
                provides=list(old.provides),
                complexity=old.complexity,
            )
            edges |= {(p, alt_id) for p in parents} | {(alt_id, c) for c in children}
            renamed[tid] = alt_id

        # Discovered constraints supersede whatever they clash with
        constraints = list(plan.constraints)
        for found in lessons.discovered_constraints:
            constraints = [
                c for c in constraints if c.id != found.id and not c.conflicts_with(found)
            ]
            constraints.append(found)

        invalidated = {a.id: a for a in lessons.invalidated_assumptions}
        assumptions = [invalidated.get(a.id, a) for a in plan.assumptions]

        for tid, task in list(tasks.items()):
            params = dict(task.parameters)
            for a in lessons.invalidated_assumptions:
                if a.subject in params or a.subject in task.requires:
                    params[a.subject] = a.expected
            for c in constraints:
                if c.subject in params and not c.admits(params[c.subject]):
                    if c.operator == "ne":
                        params.pop(c.subject)
                    else:
                        params[c.subject] = c.value
            rework = params != task.parameters or tid in lessons.stale_tasks
            if rework:
                update: dict[str, Any] = {"parameters": params}
                if task.status == TaskStatus.COMPLETED:
                    update["status"] = TaskStatus.PENDING
                tasks[tid] = task.model_copy(update=update)

        requirements = [
            r for r in plan.requirements if r.name not in lessons.obsolete_requirements
        ]
        goals = [
            g.model_copy(update={"task_ids": [renamed.get(t, t) for t in g.task_ids]})
            for g in plan.goals
        ]
        goal_tasks = {tid for g in goals for tid in g.task_ids}
        for req in lessons.new_requirements:
            name = req["requirement"]
            rid = _unique(tasks, req.get("task_id") or f"req-{slug(name)}")
            tasks[rid] = Task(
                id=rid,
                description=req.get("description") or f"Satisfy requirement: {name}",
                provides=[name],
                parameters={"requirement": name},
            )
            if req.get("after") in tasks:
                edges.add((req["after"], rid))
            targets = [req["before"]] if req.get("before") in tasks else sorted(goal_tasks)
            for target in targets:
                if target in tasks and target != rid:
                    edges.add((rid, target))
            requirements.append(Requirement(name=name, description=req.get("description", "")))

        goals = self._reachable_goals(goals, tasks, edges, constraints)
        fields: dict[str, Any] = {}
        if lessons.observed_velocity is not None:
            fields["expected_velocity"] = lessons.observed_velocity
        if lessons.observed_complexity:
            fields["expected_complexity"] = {
                **plan.expected_complexity, **lessons.observed_complexity,
            }

        fresh = Plan(
            id=new_id(),
            version=plan.version,
            goals=goals,
            tasks=tasks,
            assumptions=assumptions,
            constraints=constraints,
            requirements=requirements,
            capacities=dict(plan.capacities),
            expected_velocity=plan.expected_velocity,
            expected_complexity=dict(plan.expected_complexity),
        ).evolve(**fields)
        fresh = fresh.with_edges(edges)

        # New requirement edges may close a cycle through existing work
        back = DependencyGraph(fresh.tasks, fresh.dependencies).back_edges()
        if back:
            fresh = fresh.with_edges(fresh.dependencies - set(back))
        return self._drop_orphans(fresh)

    def _reachable_goals(
        self,
        goals: list[Goal],
        tasks: dict[str, Task],
        edges: set[Edge],
        constraints: list[Constraint],
    ) -> list[Goal]:
        """Drop goals whose only path needs a forbidden capability."""
        forbidden = {
            c.subject[len(CAPABILITY_PREFIX):]
            for c in constraints
            if c.subject.startswith(CAPABILITY_PREFIX) and not c.admits(True)
        }
        if not forbidden:
            return goals
        graph = DependencyGraph(tasks, edges)
        kept = []
        for goal in goals:
            path = {tid for tid in goal.task_ids if tid in tasks}
            for tid in list(path):
                path |= graph.ancestors(tid)
            needed = set(goal.requires)
            for tid in path:
                needed.update(tasks[tid].requires)
            if needed & forbidden:
                _logger.info("Dropping goal %s: needs %s", goal.id, sorted(needed & forbidden))
                continue
            kept.append(goal)
        return kept

    def _drop_orphans(self, plan: Plan) -> Plan:
        """Unstarted work that no longer leads to any goal is not carried over."""
        targets = plan.goal_task_ids()
        if not targets:
            return plan
        graph = DependencyGraph(plan.tasks, plan.dependencies)
        orphans = [
            tid for tid, task in plan.tasks.items()
            if tid not in targets
            and task.status == TaskStatus.PENDING
            and not graph.descendants(tid) & targets
        ]
        return plan.without_tasks(orphans) if orphans else plan

    def _sequential(self, plan: Plan) -> Plan:
        """Same work, run one task at a time in dependency order."""
        order = DependencyGraph(plan.tasks, plan.dependencies).topological_sort()
        chain = {(a, b) for a, b in zip(order, order[1:])}
        return plan.with_edges(chain)

    # ── Scoring ─────────────────────────────────────────────────

    def _score(self, name: str, old: Plan, candidate: Plan) -> _Scored:
        report = self.validator.validate(candidate)
        completed = {t.id for t in old.tasks_with_status(TaskStatus.COMPLETED)}
        kept = {
            tid for tid in completed
            if tid in candidate.tasks and candidate.tasks[tid].status == TaskStatus.COMPLETED
        }
        preservation = len(kept) / len(completed) if completed else 1.0
        score = (
            report.score
            + (1.0 if report.accepted else 0.0)
            + PRESERVATION_WEIGHT * preservation
            + PARALLELISM_WEIGHT * _parallelism(candidate)
        )
        return _Scored(name=name, plan=candidate, score=round(score, 6), accepted=report.accepted)

    def _transition(self, old: Plan, new: Plan, lessons: LessonsLearned) -> TransitionNote:
        preserved = sorted(set(old.tasks) & set(new.tasks))
        discarded = sorted(set(old.tasks) - set(new.tasks))
        active = {t.id for t in old.tasks_with_status(TaskStatus.ACTIVE)}
        in_flight_kept = sorted(active & set(new.tasks))
        in_flight_lost = sorted(active - set(new.tasks))
        summary = (
            f"Plan {old.id} replaced by {new.id}: kept {len(preserved)} task(s), "
            f"discarded {len(discarded)}; in-flight kept {in_flight_kept or 'none'}, "
            f"in-flight discarded {in_flight_lost or 'none'}"
        )
        dropped_goals = sorted(old.goal_ids - new.goal_ids)
        if dropped_goals:
            summary += f"; goals dropped: {', '.join(dropped_goals)}"
        return TransitionNote(
            preserved=preserved,
            discarded=discarded,
            in_flight_preserved=in_flight_kept,
            in_flight_discarded=in_flight_lost,
            summary=summary,
        )


def _unique(tasks: dict[str, Task], base: str) -> str:
    tid, n = base, 2
    while tid in tasks:
        tid, n = f"{base}-{n}", n + 1
    return tid


def _parallelism(plan: Plan) -> float:
    """1 - longest chain / task count. A fully serial plan scores 0."""
    if len(plan.tasks) < 2:
        return 0.0
    graph = DependencyGraph(plan.tasks, plan.dependencies)
    depth: dict[str, int] = {}
    for node in graph.topological_sort():
        depth[node] = 1 + max((depth[p] for p in graph.parents(node) if p in depth), default=0)
    return 1.0 - max(depth.values()) / len(plan.tasks)
