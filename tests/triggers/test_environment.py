"""Tests for environmental change detection."""

from weft.observations import parse_batch
from weft.plan.models import Task
from weft.triggers.environment import EnvironmentalChangeDetector, EnvironmentSnapshot
from weft.types import Severity, TriggerKind


def test_fold_and_diff(obs):
    base = EnvironmentSnapshot(files={"a.py": "1"}, dependencies={"httpx": "0.27"})
    batch = parse_batch([
        obs("file_modified", path="a.py", hash="2"),
        obs("file_added", path="b.py", hash="9"),
        obs("dependency_changed", name="httpx", version=None),
    ]).observations
    after = base.fold(batch)
    changes = [(r.category, r.change, r.key) for r in base.diff(after)]
    assert changes == [
        ("files", "modified", "a.py"),
        ("files", "added", "b.py"),
        ("dependencies", "removed", "httpx"),
    ]
    assert base.files == {"a.py": "1"}  # baseline untouched


def test_single_trigger_with_affected_tasks(linear_plan, obs):
    plan = linear_plan.with_task(
        linear_plan.tasks["B"].model_copy(update={"parameters": {"entry": "src/api.py"}})
    )
    detector = EnvironmentalChangeDetector(EnvironmentSnapshot(files={"src/api.py": "old"}))
    triggers = detector.detect(plan, parse_batch([
        obs("file_modified", path="src/api.py", hash="new"),
    ]).observations)
    assert len(triggers) == 1
    assert triggers[0].kind == TriggerKind.ENVIRONMENT_CHANGE
    assert triggers[0].payload["affected_tasks"] == ["B"]
    assert triggers[0].severity == Severity.LOW


def test_service_outage_is_high(linear_plan, obs):
    plan = linear_plan.with_task(Task(id="deploy", requires=["registry"]))
    detector = EnvironmentalChangeDetector(EnvironmentSnapshot(services={"registry": True}))
    triggers = detector.detect(plan, parse_batch([
        obs("service_changed", name="registry", available=False),
    ]).observations)
    assert triggers[0].severity == Severity.HIGH
    assert triggers[0].payload["affected_tasks"] == ["deploy"]


def test_no_change_no_trigger(linear_plan, obs):
    detector = EnvironmentalChangeDetector(EnvironmentSnapshot(config={"mode": "fast"}))
    batch = parse_batch([obs("config_changed", key="mode", value="fast")]).observations
    assert detector.detect(linear_plan, batch) == []


def test_file_modified_without_hash_is_skipped(linear_plan, obs):
    errors = []
    batch = parse_batch([obs("file_modified", path="x.py")]).observations
    assert EnvironmentalChangeDetector().detect(linear_plan, batch, errors) == []
    assert errors[0].detector == "environment"


def test_skipped_observations_stay_out_of_the_next_baseline(obs):
    detector = EnvironmentalChangeDetector(EnvironmentSnapshot(files={"x.py": "1"}))
    batch = parse_batch([
        obs("file_modified", path="x.py"),
        obs("file_added", path="y.py", hash="7"),
    ]).observations
    assert detector.snapshot_after(batch).files == {"x.py": "1", "y.py": "7"}
