"""Observations — what the outside world tells the engine.

The environmental collaborator does all the I/O (file hashing, service
checks) and hands over pre-computed observations in batches. This module
only validates them; anything malformed is dropped with a recorded
``TriggerDetectionError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from weft.exceptions import TriggerDetectionError
from weft.types import ObservationType, new_id

_logger = logging.getLogger(__name__)

# Payload keys each observation type must carry
REQUIRED_PAYLOAD: dict[ObservationType, tuple[str, ...]] = {
    ObservationType.FILE_ADDED: ("path",),
    ObservationType.FILE_MODIFIED: ("path",),
    ObservationType.FILE_DELETED: ("path",),
    ObservationType.DEPENDENCY_CHANGED: ("name",),
    ObservationType.CONFIG_CHANGED: ("key",),
    ObservationType.SERVICE_CHANGED: ("name", "available"),
    ObservationType.USER_MESSAGE: ("text",),
    ObservationType.PROGRESS_REPORT: (),
}

# Optional payload keys and the container each must be when present
PAYLOAD_SHAPES: dict[str, type] = {
    "requirements": list,
    "dropped_requirements": list,
    "constraints": list,
    "context": list,
    "goals_achieved": list,
    "facts": dict,
    "task_status": dict,
    "failures": dict,
}


class Observation(BaseModel):
    """A single observed fact about the world."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    type: ObservationType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


class ObservationBatch(BaseModel):
    """Validated observations plus whatever was dropped on the way in."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    observations: list[Observation] = Field(default_factory=list)
    errors: list[TriggerDetectionError] = Field(default_factory=list)

    def of_type(self, *types: ObservationType) -> list[Observation]:
        return [o for o in self.observations if o.type in types]

    def merge(self, other: ObservationBatch) -> ObservationBatch:
        return ObservationBatch(
            observations=self.observations + other.observations,
            errors=self.errors + other.errors,
        )

    def __len__(self) -> int:
        return len(self.observations)


def parse_observation(raw: Any) -> Observation:
    """Validate one raw item, raising TriggerDetectionError if unusable."""
    if isinstance(raw, Observation):
        obs = raw
    else:
        if not isinstance(raw, dict):
            raise TriggerDetectionError(
                f"Observation must be a mapping, got {type(raw).__name__}",
                observation=raw,
            )
        try:
            obs = Observation.model_validate(raw)
        except ValidationError as e:
            raise TriggerDetectionError(
                f"Malformed observation: {e.errors()[0]['msg']}",
                observation=raw,
            ) from e

    missing = [k for k in REQUIRED_PAYLOAD[obs.type] if k not in obs.payload]
    if missing:
        raise TriggerDetectionError(
            f"{obs.type.value} observation missing {', '.join(missing)}",
            observation=raw,
        )
    for key, shape in PAYLOAD_SHAPES.items():
        value = obs.payload.get(key)
        if value is not None and not isinstance(value, shape):
            raise TriggerDetectionError(
                f"{obs.type.value} observation: {key} must be a {shape.__name__}, "
                f"got {type(value).__name__}",
                observation=raw,
            )
    return obs


def parse_batch(items: Iterable[Any]) -> ObservationBatch:
    """Validate a batch. Bad items are skipped, never fatal."""
    batch = ObservationBatch()
    for raw in items:
        try:
            batch.observations.append(parse_observation(raw))
        except TriggerDetectionError as e:
            _logger.warning("Dropped observation: %s", e)
            batch.errors.append(e)
    batch.observations.sort(key=lambda o: o.timestamp.timestamp())
    return batch
