"""Tests for the adaptation engine — full cycles against a plan store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from weft.adaptation.engine import AdaptationEngine, sync_execution_state
from weft.adaptation.strategies import Candidate, RestructuringStrategy
from weft.audit import AuditTrail
from weft.coherence.repairer import CoherenceRepairer
from weft.events.bus import PLAN_CHANGED, PLAN_CYCLE_FAILED, EventBus
from weft.exceptions import PlanMutationError
from weft.observations import parse_batch
from weft.plan.graph import DependencyGraph
from weft.triggers.base import TriggerDetector
from weft.triggers.progress import ProgressAnomalyDetector
from weft.types import CycleState, StrategyKind, TaskStatus


class CyclicRestructuring(RestructuringStrategy):
    """Inserts the requested task, then wires it into a loop with B."""

    def propose(self, plan, triggers):
        candidate = super().propose(plan, triggers)
        broken = candidate.plan.with_edges(candidate.plan.dependencies | {("D", "B"), ("B", "D")})
        return candidate.model_copy(update={"plan": broken})


class MalformedRestructuring(RestructuringStrategy):
    def propose(self, plan, triggers):
        ghost = plan.with_edges(plan.dependencies | {("ghost", "C")})
        return self.check_structure(Candidate(plan=ghost, strategy=self.kind))


class CycleBlindRepairer(CoherenceRepairer):
    def _repair_circular(self, plan, issues):
        return plan


class NoisyDetector(TriggerDetector):
    """Always reports one unusable observation."""

    name = "noisy"

    def detect(self, plan, observations, errors=None):
        if observations:
            self._skip(errors, observations[0], "cannot read this")
        return []


def _oauth_message(obs):
    return obs(
        "user_message",
        text="Login must go through OAuth",
        requirements=[{"name": "oauth", "task_id": "D", "after": "B", "before": "C"}],
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def audit():
    return AuditTrail()


@pytest.fixture
def engine(plan_store, bus, audit):
    return AdaptationEngine(plan_store, event_bus=bus, audit=audit)


# ── Execution sync ──────────────────────────────────────────────


def test_sync_execution_state(linear_plan, obs):
    stamp = datetime(2026, 3, 1, 12, 0)
    batch = parse_batch([
        obs("progress_report", timestamp=stamp, task_status={"A": "completed", "B": "blocked", "Z": "active"}),
    ])
    synced = sync_execution_state(linear_plan, batch.observations)
    assert synced.tasks["A"].status == TaskStatus.COMPLETED
    assert synced.tasks["B"].blocked_since == stamp
    assert linear_plan.tasks["A"].status == TaskStatus.PENDING


def test_sync_without_news_returns_same_plan(linear_plan, obs):
    batch = parse_batch([obs("user_message", text="hello")])
    assert sync_execution_state(linear_plan, batch.observations) is linear_plan


# ── Cycles ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_velocity_drop_is_refined(engine, plan_store, linear_plan, obs):
    result = await engine.submit([obs("progress_report", velocity=1.0)])

    assert result.status == "accepted"
    assert result.strategy == StrategyKind.REFINEMENT.value
    assert result.plan_version == 2
    current = plan_store.current
    assert set(current.tasks) == set(linear_plan.tasks)
    assert current.dependencies == linear_plan.dependencies
    assert current.expected_velocity == 1.0
    assert engine.state == CycleState.STABLE


@pytest.mark.asyncio
async def test_new_requirement_is_restructured(engine, plan_store, obs, bus, audit):
    result = await engine.submit([_oauth_message(obs)])

    assert result.strategy == StrategyKind.RESTRUCTURING.value
    assert result.plan_version == 2
    assert result.change.added_tasks == ["D"]
    plan = plan_store.current
    assert {("B", "D"), ("D", "C")} <= plan.dependencies
    assert ("B", "C") not in plan.dependencies

    events = bus.history(PLAN_CHANGED)
    assert len(events) == 1
    assert events[0].data["to_version"] == 2
    entries = await audit.query(action="cycle_accepted")
    assert entries[0].strategy == "restructuring"
    assert entries[0].triggers[0]["kind"] == "requirement_conflict"


@pytest.mark.asyncio
async def test_unrepairable_cycle_escalates_to_replacement(plan_store, linear_plan, obs, bus, audit):
    engine = AdaptationEngine(
        plan_store,
        event_bus=bus,
        audit=audit,
        strategies={StrategyKind.RESTRUCTURING: CyclicRestructuring()},
        repairer=CycleBlindRepairer(max_iterations=3),
    )
    result = await engine.submit([_oauth_message(obs)])

    assert result.status == "accepted"
    assert result.escalated
    assert result.strategy == StrategyKind.REPLACEMENT.value
    assert result.transition is not None
    plan = plan_store.current
    assert plan.id != linear_plan.id
    assert DependencyGraph(plan.tasks, plan.dependencies).is_acyclic()
    assert "D" in plan.tasks
    assert plan_store.history()[0].superseded_by == plan.id
    assert CycleState.REPLACING in engine.machine.trail
    entries = await audit.query()
    assert entries[0].escalated


@pytest.mark.asyncio
async def test_malformed_candidate_falls_back(plan_store, obs, bus):
    engine = AdaptationEngine(
        plan_store, event_bus=bus,
        strategies={StrategyKind.RESTRUCTURING: MalformedRestructuring()},
    )
    result = await engine.submit([_oauth_message(obs)])
    assert result.strategy == StrategyKind.REFINEMENT.value


@pytest.mark.asyncio
async def test_cycle_failure_keeps_last_good_plan(plan_store, linear_plan, obs, bus, audit):
    engine = AdaptationEngine(
        plan_store,
        event_bus=bus,
        audit=audit,
        strategies={
            StrategyKind.RESTRUCTURING: MalformedRestructuring(),
            StrategyKind.REFINEMENT: MalformedRestructuring(),
        },
    )
    with pytest.raises(PlanMutationError):
        await engine.submit([_oauth_message(obs)])

    assert plan_store.current is linear_plan
    assert engine.state == CycleState.STABLE
    assert len(bus.history(PLAN_CYCLE_FAILED)) == 1
    assert len(await audit.failures()) == 1


@pytest.mark.asyncio
async def test_low_severity_changes_are_not_acted_on(engine, plan_store, obs):
    result = await engine.submit([obs("file_added", path="notes.md", hash="1")])
    assert result.status == "stable"
    assert plan_store.version == 1
    assert engine.baseline.files == {"notes.md": "1"}


@pytest.mark.asyncio
async def test_detection_errors_are_reported(plan_store, obs, bus):
    engine = AdaptationEngine(plan_store, event_bus=bus, detectors=[NoisyDetector()])
    result = await engine.submit([obs("user_message", text="hi"), "garbage"])
    assert result.status == "stable"
    assert len(result.detection_errors) == 2
    assert len(bus.history("trigger.*")) == 2


@pytest.mark.asyncio
async def test_progress_only_commits_execution_sync(engine, plan_store, obs):
    result = await engine.submit([obs("progress_report", task_status={"A": "completed"})])
    assert result.strategy == "execution_sync"
    assert plan_store.current.tasks["A"].status == TaskStatus.COMPLETED
    assert plan_store.version == 2


@pytest.mark.asyncio
async def test_store_retires_when_all_goals_are_met(engine, plan_store, obs):
    done = {t: "completed" for t in "ABC"}
    await engine.submit([obs("progress_report", task_status=done)])
    assert plan_store.retired
    assert plan_store.current.goals[0].achieved

    result = await engine.submit([obs("progress_report", velocity=0.1)])
    assert result.status == "retired"


@pytest.mark.asyncio
async def test_blocked_dependency_past_patience(plan_store, obs, bus):
    now = datetime.now()
    engine = AdaptationEngine(plan_store, event_bus=bus, clock=lambda: now + timedelta(hours=2))
    result = await engine.submit([obs("progress_report", timestamp=now, task_status={"A": "blocked"})])
    assert result.strategy == StrategyKind.REFINEMENT.value
    assert result.triggers[0]["kind"] == "dependency_anomaly"
    assert plan_store.current.tasks["A"].status == TaskStatus.BLOCKED
    assert plan_store.current.tasks["B"].parameters["waiting_on"] == "A"


@pytest.mark.asyncio
async def test_batches_during_a_cycle_are_queued(engine, plan_store, obs):
    first, second = await asyncio.gather(
        engine.submit([obs("progress_report", velocity=1.0)]),
        engine.submit([_oauth_message(obs)]),
    )
    assert first is not None
    assert second is None
    assert first.strategy == StrategyKind.RESTRUCTURING.value  # last drained cycle
    assert plan_store.version == 3
    assert engine.queued == 0


@pytest.mark.asyncio
async def test_cancel_before_swap(plan_store, obs, bus, audit):
    engine = AdaptationEngine(
        plan_store, event_bus=bus, audit=audit,
        detectors=[NoisyDetector(), ProgressAnomalyDetector()],
    )

    async def cancel_on_error(event):
        engine.cancel()

    bus.subscribe("trigger.detection_error", cancel_on_error)
    result = await engine.submit([obs("progress_report", velocity=1.0)])

    assert result.status == "cancelled"
    assert plan_store.version == 1
    assert engine.state == CycleState.STABLE
    entries = await audit.query(action="cycle_cancelled")
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_cancelled_cycle_keeps_environment_baseline(plan_store, obs, bus):
    engine = AdaptationEngine(plan_store, event_bus=bus, detectors=[NoisyDetector()])

    async def cancel_on_error(event):
        engine.cancel()

    outage = [obs("service_changed", name="db", available=False)]
    bus.subscribe("trigger.detection_error", cancel_on_error)
    first = await engine.submit(outage)
    assert first.status == "cancelled"
    assert engine.baseline.services == {}

    bus.unsubscribe("trigger.detection_error", cancel_on_error)
    again = await engine.submit(outage)
    assert again.status == "accepted"
    assert again.triggers[0]["kind"] == "environment_change"
    assert engine.baseline.services == {"db": False}


@pytest.mark.asyncio
async def test_failed_cycle_keeps_environment_baseline(plan_store, obs, bus):
    engine = AdaptationEngine(
        plan_store,
        event_bus=bus,
        strategies={
            StrategyKind.RESTRUCTURING: MalformedRestructuring(),
            StrategyKind.REFINEMENT: MalformedRestructuring(),
        },
    )
    change = [obs("config_changed", key="db.url", value="postgres://replica")]
    for _ in range(2):
        with pytest.raises(PlanMutationError):
            await engine.submit(change)
        assert engine.baseline.config == {}

    failures = bus.history(PLAN_CYCLE_FAILED)
    assert len(failures) == 2
    assert all(f.data["triggers"][0]["kind"] == "environment_change" for f in failures)
