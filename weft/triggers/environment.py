"""Environmental change detection — diff the world against the last look.

The environmental collaborator hashes files and checks services; this
module only compares what it reports. The detector itself is stateless:
it is given the last known snapshot, folds the batch into a new one,
and reports the difference. The engine keeps the new snapshot as the
baseline for the next cycle.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from weft.exceptions import TriggerDetectionError
from weft.observations import Observation
from weft.plan.models import Plan
from weft.triggers.base import AdaptationTrigger, TriggerDetector
from weft.types import ObservationType, Severity, TriggerKind

Category = Literal["files", "dependencies", "config", "services"]
ChangeType = Literal["added", "modified", "removed"]


class ChangeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: Category
    change: ChangeType
    key: str
    old: Any = None
    new: Any = None


class EnvironmentSnapshot(BaseModel):
    """External state as last reported: files, manifest, config, services."""

    model_config = ConfigDict(frozen=True)

    files: dict[str, str] = Field(default_factory=dict)  # path -> content hash
    dependencies: dict[str, str] = Field(default_factory=dict)  # name -> version
    config: dict[str, Any] = Field(default_factory=dict)
    services: dict[str, bool] = Field(default_factory=dict)  # name -> available

    def fold(self, observations: list[Observation]) -> EnvironmentSnapshot:
        """Apply a batch of observations, returning a new snapshot."""
        files = dict(self.files)
        deps = dict(self.dependencies)
        config = dict(self.config)
        services = dict(self.services)

        for obs in observations:
            if obs.type in (ObservationType.FILE_ADDED, ObservationType.FILE_MODIFIED):
                files[obs.get("path")] = str(obs.get("hash", ""))
            elif obs.type == ObservationType.FILE_DELETED:
                files.pop(obs.get("path"), None)
            elif obs.type == ObservationType.DEPENDENCY_CHANGED:
                if obs.get("version") is None:
                    deps.pop(obs.get("name"), None)
                else:
                    deps[obs.get("name")] = str(obs.get("version"))
            elif obs.type == ObservationType.CONFIG_CHANGED:
                if obs.get("removed"):
                    config.pop(obs.get("key"), None)
                else:
                    config[obs.get("key")] = obs.get("value")
            elif obs.type == ObservationType.SERVICE_CHANGED:
                services[obs.get("name")] = bool(obs.get("available"))

        return EnvironmentSnapshot(
            files=files, dependencies=deps, config=config, services=services,
        )

    def diff(self, newer: EnvironmentSnapshot) -> list[ChangeRecord]:
        """Added/Modified/Removed records per category, deterministic order."""
        records: list[ChangeRecord] = []
        for category in ("files", "dependencies", "config", "services"):
            old: dict[str, Any] = getattr(self, category)
            new: dict[str, Any] = getattr(newer, category)
            for key in sorted(set(old) | set(new)):
                if key not in old:
                    records.append(ChangeRecord(category=category, change="added", key=key, new=new[key]))
                elif key not in new:
                    records.append(ChangeRecord(category=category, change="removed", key=key, old=old[key]))
                elif old[key] != new[key]:
                    records.append(ChangeRecord(
                        category=category, change="modified", key=key, old=old[key], new=new[key],
                    ))
        return records


def _change_severity(records: list[ChangeRecord]) -> Severity:
    for r in records:
        if r.category == "services" and (r.change == "removed" or r.new is False):
            return Severity.HIGH
    if any(r.category in ("dependencies", "config") for r in records):
        return Severity.MEDIUM
    return Severity.LOW


class EnvironmentalChangeDetector(TriggerDetector):
    """Emits one EnvironmentChange trigger carrying every change record."""

    name = "environment"

    def __init__(self, baseline: EnvironmentSnapshot | None = None) -> None:
        self.baseline = baseline or EnvironmentSnapshot()

    def detect(
        self,
        plan: Plan,
        observations: list[Observation],
        errors: list[TriggerDetectionError] | None = None,
    ) -> list[AdaptationTrigger]:
        usable = self._usable(observations, errors)
        records = self.baseline.diff(self.baseline.fold(usable))
        if not records:
            return []

        # Tasks whose parameters mention a changed key are the likely impact
        keys = {r.key for r in records}
        affected = sorted(
            tid for tid, task in plan.tasks.items()
            if keys & {str(v) for v in task.parameters.values()}
            or keys & set(task.requires)
        )
        return [self._trigger(
            TriggerKind.ENVIRONMENT_CHANGE,
            _change_severity(records),
            changes=[r.model_dump(mode="json") for r in records],
            affected_tasks=affected,
        )]

    def snapshot_after(self, observations: list[Observation]) -> EnvironmentSnapshot:
        """Baseline for the next cycle. Skipped observations are not folded in."""
        return self.baseline.fold(self._usable(observations))

    def _usable(
        self,
        observations: list[Observation],
        errors: list[TriggerDetectionError] | None = None,
    ) -> list[Observation]:
        usable = []
        for obs in observations:
            if obs.type == ObservationType.FILE_MODIFIED and "hash" not in obs.payload:
                if errors is not None:
                    self._skip(errors, obs, "file_modified without a content hash")
                continue
            usable.append(obs)
        return usable
