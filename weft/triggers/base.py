"""Trigger model and the detector interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from weft.exceptions import TriggerDetectionError
from weft.observations import Observation
from weft.plan.models import Plan
from weft.types import Severity, TriggerKind, new_id

_logger = logging.getLogger(__name__)


class AdaptationTrigger(BaseModel):
    """Evidence that the current plan may no longer be valid.

    Lives for one adaptation cycle; only its audit form survives.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    kind: TriggerKind
    severity: Severity = Severity.MEDIUM
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str = ""  # detector name
    detected_at: datetime = Field(default_factory=datetime.now)

    def to_audit(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "severity": self.severity.name.lower(),
            "source": self.source,
            "payload": self.payload,
        }


class DetectionReport(BaseModel):
    """Everything one detection pass produced."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    triggers: list[AdaptationTrigger] = Field(default_factory=list)
    errors: list[TriggerDetectionError] = Field(default_factory=list)

    @property
    def highest_severity(self) -> Severity | None:
        if not self.triggers:
            return None
        return max(t.severity for t in self.triggers)

    def of_kind(self, kind: TriggerKind) -> list[AdaptationTrigger]:
        return [t for t in self.triggers if t.kind == kind]


class TriggerDetector(ABC):
    """A pure function over (plan snapshot, observations).

    Detectors hold configuration only. They never keep state between
    calls, so several can run against the same snapshot at once.
    """

    name: str = ""

    @abstractmethod
    def detect(
        self,
        plan: Plan,
        observations: list[Observation],
        errors: list[TriggerDetectionError] | None = None,
    ) -> list[AdaptationTrigger]:
        """Return triggers. Unusable observations go to ``errors``."""
        ...

    def _trigger(
        self,
        kind: TriggerKind,
        severity: Severity,
        **payload: Any,
    ) -> AdaptationTrigger:
        return AdaptationTrigger(
            kind=kind, severity=severity, payload=payload, source=self.name,
        )

    def _skip(
        self,
        errors: list[TriggerDetectionError] | None,
        observation: Observation,
        reason: str,
    ) -> None:
        err = TriggerDetectionError(reason, observation=observation, detector=self.name)
        _logger.warning("%s skipped observation %s: %s", self.name, observation.id, reason)
        if errors is not None:
            errors.append(err)

    def _listed(
        self,
        errors: list[TriggerDetectionError] | None,
        observation: Observation,
        key: str,
    ) -> list[Any]:
        """``observation[key]`` as a list; anything else is skipped."""
        value = observation.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            self._skip(errors, observation, f"{key} must be a list, got {type(value).__name__}")
            return []
        return value
