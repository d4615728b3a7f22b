"""Progress anomaly detection — is execution going the way the plan expected?"""

from __future__ import annotations

from datetime import datetime, timedelta

from weft.exceptions import TriggerDetectionError
from weft.observations import Observation
from weft.plan.models import Plan
from weft.triggers.base import AdaptationTrigger, TriggerDetector
from weft.types import Complexity, ObservationType, Severity, TaskStatus, TriggerKind

DEFAULT_VELOCITY_THRESHOLD = 0.30

_COMPLEXITY_RANK = {Complexity.LOW: 0, Complexity.MEDIUM: 1, Complexity.HIGH: 2}


def velocity_deviation(expected: float, actual: float) -> float:
    """Relative deviation ``|expected - actual| / expected``."""
    if expected <= 0:
        raise ValueError("expected velocity must be positive")
    return abs(expected - actual) / expected


def _deviation_severity(deviation: float) -> Severity:
    if deviation > 0.9:
        return Severity.CRITICAL
    if deviation > 0.6:
        return Severity.HIGH
    return Severity.MEDIUM


class ProgressAnomalyDetector(TriggerDetector):
    """Velocity, complexity and blocked-dependency anomalies.

    Reads ``progress_report`` observations. A report may carry any of:
    ``velocity`` (tasks/hour) or ``completed`` + ``elapsed_hours``,
    ``task_complexity`` ({task_id: "low"|"medium"|"high"}).
    """

    name = "progress"

    def __init__(
        self,
        velocity_threshold: float = DEFAULT_VELOCITY_THRESHOLD,
        patience_window: timedelta = timedelta(hours=1),
        now: datetime | None = None,
    ) -> None:
        self.velocity_threshold = velocity_threshold
        self.patience_window = patience_window
        self._now = now

    def detect(
        self,
        plan: Plan,
        observations: list[Observation],
        errors: list[TriggerDetectionError] | None = None,
    ) -> list[AdaptationTrigger]:
        reports = [o for o in observations if o.type == ObservationType.PROGRESS_REPORT]
        triggers: list[AdaptationTrigger] = []

        velocity = self._check_velocity(plan, reports, errors)
        if velocity:
            triggers.append(velocity)
        triggers += self._check_complexity(plan, reports, errors)
        triggers += self._check_blocked_dependencies(plan)
        return triggers

    def _check_velocity(
        self,
        plan: Plan,
        reports: list[Observation],
        errors: list[TriggerDetectionError] | None,
    ) -> AdaptationTrigger | None:
        if plan.expected_velocity <= 0:
            return None

        actual: float | None = None
        for obs in reports:  # latest report wins
            try:
                if "velocity" in obs.payload:
                    actual = float(obs.payload["velocity"])
                elif "completed" in obs.payload and "elapsed_hours" in obs.payload:
                    hours = float(obs.payload["elapsed_hours"])
                    if hours <= 0:
                        raise ValueError("elapsed_hours must be positive")
                    actual = float(obs.payload["completed"]) / hours
            except (TypeError, ValueError) as e:
                self._skip(errors, obs, f"unreadable velocity: {e}")
        if actual is None or actual < 0:
            return None

        deviation = velocity_deviation(plan.expected_velocity, actual)
        if deviation <= self.velocity_threshold:
            return None
        return self._trigger(
            TriggerKind.VELOCITY_ANOMALY,
            _deviation_severity(deviation),
            expected=plan.expected_velocity,
            actual=actual,
            deviation=round(deviation, 4),
            direction="slow" if actual < plan.expected_velocity else "fast",
        )

    def _check_complexity(
        self,
        plan: Plan,
        reports: list[Observation],
        errors: list[TriggerDetectionError] | None,
    ) -> list[AdaptationTrigger]:
        observed: dict[str, Complexity] = {}
        for obs in reports:
            raw = obs.get("task_complexity") or {}
            if not isinstance(raw, dict):
                self._skip(errors, obs, "task_complexity must be a mapping")
                continue
            for tid, value in raw.items():
                try:
                    observed[tid] = Complexity(value)
                except ValueError:
                    self._skip(errors, obs, f"unknown complexity {value!r} for {tid}")

        triggers = []
        for tid, actual in sorted(observed.items()):
            task = plan.tasks.get(tid)
            if task is None:
                continue
            expected = plan.expected_complexity.get(tid, task.complexity)
            gap = abs(_COMPLEXITY_RANK[actual] - _COMPLEXITY_RANK[expected])
            if gap == 0:
                continue
            triggers.append(self._trigger(
                TriggerKind.COMPLEXITY_ANOMALY,
                Severity.HIGH if gap > 1 else Severity.MEDIUM,
                task_id=tid,
                expected=expected.value,
                observed=actual.value,
            ))
        return triggers

    def _check_blocked_dependencies(self, plan: Plan) -> list[AdaptationTrigger]:
        now = self._now or datetime.now()
        triggers = []
        for tid, task in sorted(plan.tasks.items()):
            if task.status == TaskStatus.COMPLETED:
                continue
            for dep_id in task.dependencies:
                dep = plan.tasks.get(dep_id)
                if dep is None or dep.status != TaskStatus.BLOCKED or dep.blocked_since is None:
                    continue
                waited = now - dep.blocked_since
                if waited <= self.patience_window:
                    continue
                critical = waited > self.patience_window * 3
                triggers.append(self._trigger(
                    TriggerKind.DEPENDENCY_ANOMALY,
                    Severity.CRITICAL if critical else Severity.HIGH,
                    task_id=tid,
                    blocked_dependency=dep_id,
                    blocked_seconds=int(waited.total_seconds()),
                ))
        return triggers
