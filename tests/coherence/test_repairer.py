"""Tests for the coherence repairer."""

import pytest

from weft.coherence.repairer import CoherenceRepairer
from weft.coherence.validator import CoherenceValidator
from weft.exceptions import CoherenceRepairExhausted
from weft.plan.graph import DependencyGraph
from weft.plan.models import Constraint, Goal, Plan, Task
from weft.types import IssueKind


class CycleBlindRepairer(CoherenceRepairer):
    """Never manages to break a cycle."""

    def _repair_circular(self, plan, issues):
        return plan


def _repair(plan, repairer=None):
    repairer = repairer or CoherenceRepairer()
    report = repairer.validator.validate(plan)
    return repairer.repair(plan, report.issues), repairer


def test_coherent_plan_comes_back_unchanged(linear_plan):
    repaired, repairer = _repair(linear_plan)
    assert repaired is linear_plan
    assert repairer.iterations_used == 0


def test_redundant_edges_alone_are_left_in_place(linear_plan):
    plan = linear_plan.with_edges(linear_plan.dependencies | {("A", "C")})
    repaired, _ = _repair(plan)
    assert repaired is plan


def test_prune_redundant_removes_them(linear_plan):
    plan = linear_plan.with_edges(linear_plan.dependencies | {("A", "C")})
    repaired, _ = _repair(plan, CoherenceRepairer(prune_redundant=True))
    assert ("A", "C") not in repaired.dependencies


def test_cycle_is_broken(linear_plan):
    plan = linear_plan.with_edges(linear_plan.dependencies | {("C", "A")})
    repaired, repairer = _repair(plan)
    assert DependencyGraph(repaired.tasks, repaired.dependencies).is_acyclic()
    assert repairer.iterations_used == 1
    assert ("A", "B") in repaired.dependencies


def test_repair_is_idempotent(linear_plan):
    plan = linear_plan.with_edges(linear_plan.dependencies | {("C", "A")})
    once, _ = _repair(plan)
    twice, _ = _repair(once)
    assert twice is once


def test_repair_is_bounded(linear_plan):
    plan = linear_plan.with_edges(linear_plan.dependencies | {("C", "A")})
    repairer = CycleBlindRepairer(max_iterations=3)
    report = CoherenceValidator().validate(plan)
    with pytest.raises(CoherenceRepairExhausted) as exc:
        repairer.repair(plan, report.issues)
    assert repairer.iterations_used == 3
    assert exc.value.iterations == 3
    assert exc.value.issues[0].kind == IssueKind.CIRCULAR_DEPENDENCY


def test_relaxable_constraint_yields(linear_plan):
    plan = linear_plan.evolve(constraints=[
        Constraint(id="soft", subject="workers", operator="max", value=2),
        Constraint(id="hard", subject="workers", operator="min", value=4, relaxable=False),
    ])
    repaired, _ = _repair(plan)
    assert [c.id for c in repaired.constraints] == ["hard"]


def test_parameter_clamped_to_constraint(linear_plan):
    plan = linear_plan.evolve(constraints=[Constraint(subject="workers", operator="max", value=2)])
    plan = plan.with_task(plan.tasks["B"].model_copy(update={"parameters": {"workers": 6}}))
    repaired, _ = _repair(plan)
    assert repaired.tasks["B"].parameters["workers"] == 2


def test_resources_scaled_to_capacity(linear_plan):
    plan = linear_plan.evolve(capacities={"gpu": 1.0})
    plan = plan.with_task(plan.tasks["A"].model_copy(update={"resources": {"gpu": 4.0}}))
    repaired, _ = _repair(plan)
    assert repaired.tasks["A"].resources["gpu"] == 1.0


def test_missing_edge_added():
    plan = Plan.build(
        goals=[Goal(id="g", description="g", task_ids=["use", "make"])],
        tasks=[Task(id="make", provides=["token"]), Task(id="use", requires=["token"])],
    )
    repaired, _ = _repair(plan)
    assert ("make", "use") in repaired.dependencies


def test_orphan_feeding_a_goal_is_attached(linear_plan):
    plan = linear_plan.with_task(Task(id="docs", provides=["manual"]))
    plan = plan.with_task(plan.tasks["C"].model_copy(update={"requires": ["manual"]}))
    repaired, _ = _repair(plan)
    assert ("docs", "C") in repaired.dependencies


def test_unstarted_orphan_is_dropped(linear_plan):
    repaired, _ = _repair(linear_plan.with_task(Task(id="stray")))
    assert "stray" not in repaired.tasks


def test_unprovided_goal_capability_gets_a_provider():
    plan = Plan.build(goals=[Goal(id="g", description="needs docs", requires=["docs"])], tasks=[])
    repaired, _ = _repair(plan)
    provider = [t for t in repaired.tasks.values() if "docs" in t.provides]
    assert len(provider) == 1
    assert repaired.goals[0].task_ids == [provider[0].id]
