"""Adaptation Engine — runs one adaptation cycle per observation batch.

    Stable -> Detecting -> StrategySelected -> Mutated -> Validating
           -> (Repairing -> Validating) -> Accepted -> Stable

with one side edge: if repair is exhausted the cycle moves to Replacing
and re-enters the pipeline once with the Replacement strategy. If that
candidate is incoherent too, the cycle fails, the last good plan stays
current and ``PlanMutationError`` reaches the caller.

Only one cycle runs at a time. Batches submitted while a cycle is in
flight are queued and folded into the next cycle.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from functools import reduce
from typing import Any, Callable, Iterable, Literal

from pydantic import BaseModel, Field

from weft.adaptation.selector import StrategySelector
from weft.adaptation.state import CycleStateMachine
from weft.adaptation.strategies import (
    AdaptationStrategy,
    Candidate,
    RefinementStrategy,
    ReplacementStrategy,
    RestructuringStrategy,
    TransitionNote,
)
from weft.audit import AuditTrail
from weft.coherence.repairer import CoherenceRepairer
from weft.coherence.validator import CoherenceReport, CoherenceValidator
from weft.config import WeftSettings, settings as default_settings
from weft.events.bus import PLAN_CHANGED, PLAN_CYCLE_FAILED, TRIGGER_DETECTION_ERROR, EventBus
from weft.exceptions import CoherenceRepairExhausted, PlanMutationError, PlanStoreError
from weft.observations import Observation, ObservationBatch, parse_batch
from weft.plan.models import Plan, PlanChange
from weft.plan.store import PlanStore
from weft.triggers.base import AdaptationTrigger, TriggerDetector
from weft.triggers.contradiction import ContradictionDetector
from weft.triggers.environment import EnvironmentalChangeDetector, EnvironmentSnapshot
from weft.triggers.progress import ProgressAnomalyDetector
from weft.triggers.runner import DetectionRunner
from weft.types import CycleState, ObservationType, StrategyKind, TaskStatus

_logger = logging.getLogger(__name__)

EXECUTION_SYNC = "execution_sync"


class CycleResult(BaseModel):
    """Outcome of one adaptation cycle."""

    status: Literal["accepted", "stable", "cancelled", "retired"]
    plan_id: str
    plan_version: int
    strategy: str = ""
    triggers: list[dict[str, Any]] = Field(default_factory=list)
    change: PlanChange | None = None
    score: float | None = None
    repair_iterations: int = 0
    escalated: bool = False
    transition: TransitionNote | None = None
    detection_errors: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)


def sync_execution_state(plan: Plan, observations: list[Observation]) -> Plan:
    """Fold reported task statuses into the plan.

    Reads ``task_status`` ({task_id: status}) and ``goals_achieved``
    from progress reports. A task that becomes blocked is stamped with
    the report's timestamp. Returns ``plan`` itself when nothing changed.
    """
    tasks = dict(plan.tasks)
    achieved: set[str] = set()
    for obs in observations:
        if obs.type != ObservationType.PROGRESS_REPORT:
            continue
        reached, statuses = obs.get("goals_achieved") or [], obs.get("task_status") or {}
        if not isinstance(reached, list) or not isinstance(statuses, dict):
            _logger.warning("Progress report %s: unreadable goals_achieved or task_status", obs.id)
            continue
        achieved.update(reached)
        for tid, raw in statuses.items():
            task = tasks.get(tid)
            if task is None:
                _logger.warning("Progress report %s names unknown task %s", obs.id, tid)
                continue
            try:
                status = TaskStatus(raw)
            except ValueError:
                _logger.warning("Progress report %s: bad status %r for %s", obs.id, raw, tid)
                continue
            if status == task.status:
                continue
            blocked_since = obs.timestamp if status == TaskStatus.BLOCKED else None
            tasks[tid] = task.model_copy(update={"status": status, "blocked_since": blocked_since})

    goals = []
    for goal in plan.goals:
        done = goal.id in achieved or (
            bool(goal.task_ids)
            and all(
                tasks[t].status == TaskStatus.COMPLETED for t in goal.task_ids if t in tasks
            )
        )
        goals.append(goal.model_copy(update={"achieved": True}) if done and not goal.achieved else goal)

    if tasks == plan.tasks and goals == plan.goals:
        return plan
    return plan.evolve(tasks=tasks, goals=goals)


class AdaptationEngine:
    """Owns the mutation pipeline for one plan store."""

    def __init__(
        self,
        store: PlanStore,
        *,
        event_bus: EventBus | None = None,
        audit: AuditTrail | None = None,
        detectors: list[TriggerDetector] | None = None,
        selector: StrategySelector | None = None,
        strategies: dict[StrategyKind, AdaptationStrategy] | None = None,
        validator: CoherenceValidator | None = None,
        repairer: CoherenceRepairer | None = None,
        baseline: EnvironmentSnapshot | None = None,
        config: WeftSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or default_settings
        self.store = store
        self.event_bus = event_bus or EventBus(self.config.event_history_limit)
        self.audit = audit
        self.validator = validator or CoherenceValidator()
        self.repairer = repairer or CoherenceRepairer(
            self.validator, max_iterations=self.config.max_repair_iterations
        )
        self.selector = selector or StrategySelector(self.config.strategy_priority)
        self.strategies: dict[StrategyKind, AdaptationStrategy] = {
            StrategyKind.REFINEMENT: RefinementStrategy(),
            StrategyKind.RESTRUCTURING: RestructuringStrategy(),
            StrategyKind.REPLACEMENT: ReplacementStrategy(
                self.validator, self.config.replacement_candidates
            ),
        }
        self.strategies.update(strategies or {})
        self.baseline = baseline or EnvironmentSnapshot()
        self.machine = CycleStateMachine()
        self._detectors = detectors
        self._clock = clock
        self._lock = asyncio.Lock()
        self._queue: list[ObservationBatch] = []
        self._cancel_requested = False

    @property
    def state(self) -> CycleState:
        return self.machine.state

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def queued(self) -> int:
        return len(self._queue)

    # ── Public surface ──────────────────────────────────────────

    async def submit(self, observations: ObservationBatch | Iterable[Any]) -> CycleResult | None:
        """Run a cycle for ``observations``.

        If a cycle is already running the batch is queued and ``None``
        is returned; the running call drains the queue before it
        returns, so queued batches are handled in the next cycle.
        """
        batch = observations if isinstance(observations, ObservationBatch) else parse_batch(observations)
        if self._lock.locked():
            self._queue.append(batch)
            _logger.info("Cycle in flight; queued batch of %d observation(s)", len(batch))
            return None

        async with self._lock:
            result = await self._run(batch)
            while self._queue:
                pending, self._queue = self._queue, []
                result = await self._run(reduce(ObservationBatch.merge, pending))
        return result

    def cancel(self) -> None:
        """Abort the in-flight cycle before its plan swap, if there is one."""
        if self._lock.locked():
            self._cancel_requested = True
            _logger.info("Cancellation requested for the in-flight cycle")

    # ── Cycle ───────────────────────────────────────────────────

    async def _run(self, batch: ObservationBatch) -> CycleResult:
        self._cancel_requested = False
        base = self.store.current
        if self.store.retired:
            _logger.info("Plan %s is retired; ignoring %d observation(s)", base.id, len(batch))
            return CycleResult(status="retired", plan_id=base.id, plan_version=base.version)

        self.machine.transition(CycleState.DETECTING)
        synced = sync_execution_state(base, batch.observations)
        env = EnvironmentalChangeDetector(self.baseline)
        report = await DetectionRunner(self._build_detectors() + [env]).run(synced, batch)
        detection_errors = [str(e) for e in report.errors]
        for error in report.errors:
            await self.event_bus.emit(
                TRIGGER_DETECTION_ERROR,
                {"error": str(error), "detector": error.detector},
                source="engine",
            )
        # Adopted only when the cycle ends stable or accepted
        next_baseline = env.snapshot_after(batch.observations)

        floor = self.config.adaptation_min_severity
        triggers = [t for t in report.triggers if t.severity >= floor]
        ignored = len(report.triggers) - len(triggers)
        if ignored:
            _logger.info("%d low-severity trigger(s) recorded but not acted on", ignored)

        if not triggers:
            if synced is base:
                self.machine.transition(CycleState.STABLE)
                self.baseline = next_baseline
                return CycleResult(
                    status="stable", plan_id=base.id, plan_version=base.version,
                    detection_errors=detection_errors,
                )
            self.machine.transition(CycleState.ACCEPTED)
            return await self._accept(
                base, synced, EXECUTION_SYNC, [],
                baseline=next_baseline, detection_errors=detection_errors,
            )

        audit_triggers = [t.to_audit() for t in triggers]
        try:
            candidate = self._mutate(synced, triggers)
        except PlanMutationError as exc:
            await self._fail(base, audit_triggers, exc, "")
            raise

        escalated = False
        try:
            plan, coherence, iterations = self._validate_and_repair(candidate.plan)
        except CoherenceRepairExhausted as exc:
            if candidate.strategy == StrategyKind.REPLACEMENT:
                await self._fail(base, audit_triggers, exc, candidate.strategy.value)
                raise PlanMutationError(f"Replacement plan is incoherent: {exc}") from exc
            _logger.warning("%s; escalating to replacement", exc)
            self.machine.transition(CycleState.REPLACING)
            escalated = True
            try:
                candidate = self._propose(StrategyKind.REPLACEMENT, synced, triggers)
            except PlanMutationError as fatal:
                await self._fail(base, audit_triggers, fatal, StrategyKind.REPLACEMENT.value)
                raise
            self.machine.transition(CycleState.MUTATED)
            try:
                plan, coherence, iterations = self._validate_and_repair(candidate.plan)
            except CoherenceRepairExhausted as fatal:
                await self._fail(base, audit_triggers, fatal, StrategyKind.REPLACEMENT.value)
                raise PlanMutationError(f"Replacement plan is incoherent: {fatal}") from fatal

        if self._cancel_requested:
            return await self._cancelled(base, audit_triggers, candidate.strategy.value)

        self.machine.transition(CycleState.ACCEPTED)
        return await self._accept(
            base,
            plan,
            candidate.strategy.value,
            audit_triggers,
            candidate=candidate,
            coherence=coherence,
            iterations=iterations,
            escalated=escalated,
            baseline=next_baseline,
            detection_errors=detection_errors,
        )

    def _mutate(self, plan: Plan, triggers: list[AdaptationTrigger]) -> Candidate:
        """Try the selected strategy, then its fallbacks in priority order."""
        last_error: PlanMutationError | None = None
        for kind in self.selector.select(plan, triggers):
            self.machine.transition(CycleState.STRATEGY_SELECTED)
            try:
                candidate = self._propose(kind, plan, triggers)
            except PlanMutationError as e:
                _logger.warning("%s candidate discarded: %s", kind.value, e)
                last_error = e
                continue
            self.machine.transition(CycleState.MUTATED)
            return candidate
        raise last_error or PlanMutationError("no strategy produced a candidate")

    def _propose(
        self, kind: StrategyKind, plan: Plan, triggers: list[AdaptationTrigger]
    ) -> Candidate:
        strategy = self.strategies[kind]
        if isinstance(strategy, ReplacementStrategy):
            return strategy.propose(plan, triggers, history=self.store.history())
        return strategy.propose(plan, triggers)

    def _validate_and_repair(self, plan: Plan) -> tuple[Plan, CoherenceReport, int]:
        self.machine.transition(CycleState.VALIDATING)
        report = self.validator.validate(plan)
        if report.accepted:
            return plan, report, 0
        self.machine.transition(CycleState.REPAIRING)
        repaired = self.repairer.repair(plan, report.issues)
        self.machine.transition(CycleState.VALIDATING)
        return repaired, self.validator.validate(repaired), self.repairer.iterations_used

    # ── Outcomes ────────────────────────────────────────────────

    async def _accept(
        self,
        base: Plan,
        plan: Plan,
        strategy: str,
        audit_triggers: list[dict[str, Any]],
        *,
        candidate: Candidate | None = None,
        coherence: CoherenceReport | None = None,
        iterations: int = 0,
        escalated: bool = False,
        baseline: EnvironmentSnapshot | None = None,
        detection_errors: list[str] | None = None,
    ) -> CycleResult:
        transition = candidate.transition if candidate else None
        try:
            new = await self.store.commit(plan, base_version=base.version)
        except PlanStoreError as exc:
            await self._fail(base, audit_triggers, exc, strategy)
            raise
        if baseline is not None:
            self.baseline = baseline

        change = PlanChange.between(
            base, new, strategy, audit_triggers,
            transition_note=transition.summary if transition else "",
        )
        await self.event_bus.emit(PLAN_CHANGED, change.model_dump(mode="json"), source="engine")
        if self.audit is not None:
            await self.audit.log_accepted(
                new.id, base.version, new.version, strategy, audit_triggers,
                repair_iterations=iterations,
                escalated=escalated,
                detail="; ".join(candidate.notes) if candidate else "",
            )
        if new.goals and all(g.achieved for g in new.goals):
            await self.store.retire()
        self.machine.transition(CycleState.STABLE)
        _logger.info(
            "Cycle accepted: %s v%d -> v%d via %s",
            new.id, base.version, new.version, strategy,
        )
        return CycleResult(
            status="accepted",
            plan_id=new.id,
            plan_version=new.version,
            strategy=strategy,
            triggers=audit_triggers,
            change=change,
            score=coherence.score if coherence else None,
            repair_iterations=iterations,
            escalated=escalated,
            transition=transition,
            detection_errors=detection_errors or [],
            notes=list(candidate.notes) if candidate else [],
        )

    async def _fail(
        self,
        base: Plan,
        audit_triggers: list[dict[str, Any]],
        error: Exception,
        strategy: str,
    ) -> None:
        self.machine.transition(CycleState.FAILED)
        _logger.error("Adaptation cycle failed; keeping plan %s v%d: %s", base.id, base.version, error)
        await self.event_bus.emit(
            PLAN_CYCLE_FAILED,
            {
                "plan_id": base.id,
                "version": base.version,
                "strategy": strategy,
                "error": str(error),
                "triggers": audit_triggers,
            },
            source="engine",
        )
        if self.audit is not None:
            await self.audit.log_failed(base.id, base.version, audit_triggers, str(error), strategy=strategy)
        self.machine.transition(CycleState.STABLE)

    async def _cancelled(
        self, base: Plan, audit_triggers: list[dict[str, Any]], strategy: str
    ) -> CycleResult:
        self.machine.transition(CycleState.FAILED)
        self.machine.transition(CycleState.STABLE)
        _logger.info("Cycle cancelled before swap; plan stays at v%d", base.version)
        if self.audit is not None:
            await self.audit.log_failed(
                base.id, base.version, audit_triggers, "cancelled",
                action="cycle_cancelled", strategy=strategy,
            )
        return CycleResult(
            status="cancelled",
            plan_id=base.id,
            plan_version=base.version,
            strategy=strategy,
            triggers=audit_triggers,
        )

    def _build_detectors(self) -> list[TriggerDetector]:
        if self._detectors is not None:
            return list(self._detectors)
        return [
            ContradictionDetector(),
            ProgressAnomalyDetector(
                self.config.velocity_threshold,
                timedelta(seconds=self.config.patience_window_seconds),
                now=self._clock() if self._clock else None,
            ),
        ]
