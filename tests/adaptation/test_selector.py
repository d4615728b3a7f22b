"""Tests for strategy selection."""

from weft.adaptation.selector import StrategySelector
from weft.plan.models import Constraint
from weft.triggers.base import AdaptationTrigger
from weft.types import Severity, StrategyKind, TriggerKind


def _trigger(kind, severity=Severity.MEDIUM, **payload):
    return AdaptationTrigger(kind=kind, severity=severity, payload=payload)


def test_velocity_maps_to_refinement(linear_plan):
    selector = StrategySelector()
    assert selector.select(linear_plan, [_trigger(TriggerKind.VELOCITY_ANOMALY)]) == [
        StrategyKind.REFINEMENT,
    ]


def test_requirement_conflict_falls_back_to_refinement(linear_plan):
    order = StrategySelector().select(linear_plan, [_trigger(TriggerKind.REQUIREMENT_CONFLICT)])
    assert order == [StrategyKind.RESTRUCTURING, StrategyKind.REFINEMENT]


def test_critical_assumption_selects_replacement(linear_plan):
    selector = StrategySelector()
    trigger = _trigger(TriggerKind.ASSUMPTION_VIOLATION, Severity.CRITICAL)
    assert selector.select(linear_plan, [trigger])[0] == StrategyKind.REPLACEMENT
    milder = _trigger(TriggerKind.ASSUMPTION_VIOLATION, Severity.HIGH)
    assert selector.strategy_for(linear_plan, milder) == StrategyKind.RESTRUCTURING


def test_only_highest_severity_votes(linear_plan):
    triggers = [
        _trigger(TriggerKind.VELOCITY_ANOMALY, Severity.HIGH),
        _trigger(TriggerKind.ENVIRONMENT_CHANGE, Severity.MEDIUM),
    ]
    assert StrategySelector().select(linear_plan, triggers)[0] == StrategyKind.REFINEMENT


def test_ties_go_to_priority(linear_plan):
    triggers = [
        _trigger(TriggerKind.VELOCITY_ANOMALY, Severity.HIGH),
        _trigger(TriggerKind.ENVIRONMENT_CHANGE, Severity.HIGH),
    ]
    assert StrategySelector().select(linear_plan, triggers)[0] == StrategyKind.RESTRUCTURING
    custom = StrategySelector(["refinement"])
    assert custom.priority == (
        StrategyKind.REFINEMENT, StrategyKind.REPLACEMENT, StrategyKind.RESTRUCTURING,
    )
    assert custom.select(linear_plan, triggers)[0] == StrategyKind.REFINEMENT


def test_constraint_routing_depends_on_relaxability(linear_plan):
    plan = linear_plan.evolve(constraints=[
        Constraint(id="soft", subject="x", value=1),
        Constraint(id="hard", subject="y", value=1, relaxable=False),
    ])
    selector = StrategySelector()
    soft = _trigger(TriggerKind.CONSTRAINT_VIOLATION, conflicting_constraints=["soft"])
    hard = _trigger(TriggerKind.CONSTRAINT_VIOLATION, conflicting_constraints=["hard"])
    assert selector.strategy_for(plan, soft) == StrategyKind.REFINEMENT
    assert selector.strategy_for(plan, hard) == StrategyKind.RESTRUCTURING


def test_dependency_anomaly_escalates_when_critical(linear_plan):
    selector = StrategySelector()
    assert selector.strategy_for(linear_plan, _trigger(TriggerKind.DEPENDENCY_ANOMALY, Severity.HIGH)) \
        == StrategyKind.REFINEMENT
    assert selector.strategy_for(linear_plan, _trigger(TriggerKind.DEPENDENCY_ANOMALY, Severity.CRITICAL)) \
        == StrategyKind.RESTRUCTURING


def test_no_triggers_no_strategy(linear_plan):
    assert StrategySelector().select(linear_plan, []) == []
