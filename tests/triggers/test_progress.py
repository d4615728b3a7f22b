"""Tests for progress anomaly detection."""

from datetime import datetime, timedelta

import pytest

from weft.observations import parse_batch
from weft.triggers.progress import ProgressAnomalyDetector, velocity_deviation
from weft.types import Complexity, Severity, TaskStatus, TriggerKind


def test_velocity_deviation():
    assert velocity_deviation(2.0, 1.0) == 0.5
    assert velocity_deviation(2.0, 3.0) == 0.5
    with pytest.raises(ValueError):
        velocity_deviation(0, 1.0)


def test_velocity_anomaly_above_threshold(linear_plan, obs):
    reports = parse_batch([obs("progress_report", velocity=1.0)]).observations
    triggers = ProgressAnomalyDetector(velocity_threshold=0.3).detect(linear_plan, reports)
    assert len(triggers) == 1
    t = triggers[0]
    assert t.kind == TriggerKind.VELOCITY_ANOMALY
    assert t.payload["deviation"] == 0.5
    assert t.payload["direction"] == "slow"
    assert t.severity == Severity.MEDIUM


def test_velocity_within_threshold(linear_plan, obs):
    reports = parse_batch([obs("progress_report", completed=5, elapsed_hours=2.5)]).observations
    assert ProgressAnomalyDetector(0.3).detect(linear_plan, reports) == []


def test_bad_velocity_is_skipped(linear_plan, obs):
    errors = []
    reports = parse_batch([obs("progress_report", completed=3, elapsed_hours=0)]).observations
    assert ProgressAnomalyDetector().detect(linear_plan, reports, errors) == []
    assert len(errors) == 1


def test_complexity_anomaly(linear_plan, obs):
    reports = parse_batch([
        obs("progress_report", task_complexity={"B": "high", "ghost": "low", "A": "medium"}),
    ]).observations
    triggers = ProgressAnomalyDetector().detect(linear_plan.evolve(expected_velocity=0), reports)
    assert [(t.payload["task_id"], t.payload["observed"]) for t in triggers] == [("B", "high")]
    assert linear_plan.tasks["B"].complexity == Complexity.MEDIUM


def test_blocked_dependency_after_patience(linear_plan):
    now = datetime.now()
    blocked = linear_plan.tasks["A"].model_copy(update={
        "status": TaskStatus.BLOCKED, "blocked_since": now - timedelta(hours=2),
    })
    plan = linear_plan.with_task(blocked)
    detector = ProgressAnomalyDetector(patience_window=timedelta(hours=1), now=now)
    triggers = detector.detect(plan, [])
    assert len(triggers) == 1
    assert triggers[0].kind == TriggerKind.DEPENDENCY_ANOMALY
    assert triggers[0].payload["blocked_dependency"] == "A"
    assert triggers[0].severity == Severity.HIGH

    much_later = ProgressAnomalyDetector(patience_window=timedelta(hours=1), now=now + timedelta(hours=5))
    assert much_later.detect(plan, [])[0].severity == Severity.CRITICAL


def test_blocked_within_patience_is_quiet(linear_plan):
    now = datetime.now()
    blocked = linear_plan.tasks["A"].model_copy(update={
        "status": TaskStatus.BLOCKED, "blocked_since": now - timedelta(minutes=10),
    })
    detector = ProgressAnomalyDetector(patience_window=timedelta(hours=1), now=now)
    assert detector.detect(linear_plan.with_task(blocked), []) == []
