"""Context Adapter — feeds observations and plan changes into the context store.

    user_message                              -> conversational
    file_*, dependency_changed, config_changed -> technical
    service_changed                           -> project
    progress_report                           -> execution
    accepted PlanChange                       -> execution

Any observation may also carry explicit ``context`` entries
({layer, key, value, kind?, subject?}) which are written as given.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import ValidationError

from weft.context.models import ContextSnapshot, ContextUpdate
from weft.context.store import ContextStore
from weft.events.bus import Event
from weft.observations import Observation, ObservationBatch
from weft.plan.models import Plan, PlanChange
from weft.types import ContextLayer, ObservationType, TaskStatus

_logger = logging.getLogger(__name__)

Updates = dict[ContextLayer, list[ContextUpdate]]

# Layers are written in this order so propagation sees user intent first
LAYER_ORDER = (
    ContextLayer.CONVERSATIONAL,
    ContextLayer.TECHNICAL,
    ContextLayer.PROJECT,
    ContextLayer.EXECUTION,
)

_STATUS_KINDS = {
    TaskStatus.COMPLETED: "task_completed",
    TaskStatus.BLOCKED: "task_blocked",
}


def _payload(obs: Observation, key: str, shape: type) -> Any:
    """``obs[key]`` if it is a ``shape``, else an empty one."""
    value = obs.get(key)
    if value is None:
        return shape()
    if not isinstance(value, shape):
        _logger.warning("Observation %s: ignoring %s of type %s", obs.id, key, type(value).__name__)
        return shape()
    return value


class ContextAdapter:
    """Translates engine inputs and outputs into context updates."""

    def __init__(self, store: ContextStore, plan_source: Callable[[], Plan] | None = None) -> None:
        self.store = store
        self._plan_source = plan_source

    async def ingest(self, batch: ObservationBatch, optimize: bool = True) -> ContextSnapshot:
        """Fold a batch into the store, then run the optimizer."""
        updates = self.updates_for(batch.observations)
        for layer in LAYER_ORDER:
            if updates.get(layer):
                await self.store.update(layer, updates[layer])
        if optimize and any(updates.values()):
            return await self.store.optimize()
        return self.store.current

    async def apply_plan_change(self, change: PlanChange, plan: Plan | None = None) -> ContextSnapshot:
        plan = plan or (self._plan_source() if self._plan_source else None)
        updates = [ContextUpdate(
            key="plan:current",
            value={
                "plan_id": change.plan_id,
                "version": change.to_version,
                "strategy": change.strategy_used,
                "triggers": [t.get("kind") for t in change.triggers],
            },
            kind="plan_version",
            subject="plan",
            timestamp=change.timestamp,
            pinned=True,
        )]
        if change.transition_note:
            updates.append(ContextUpdate(
                key=f"transition:{change.plan_id}",
                value=change.transition_note,
                kind="transition_note",
                timestamp=change.timestamp,
            ))
        for tid in change.removed_tasks:
            updates.append(ContextUpdate(
                key=f"task:{tid}", value="removed", kind="task_removed",
                timestamp=change.timestamp,
            ))
        if plan is not None:
            for tid in change.added_tasks + change.changed_tasks:
                task = plan.tasks.get(tid)
                if task is None:
                    continue
                updates.append(ContextUpdate(
                    key=f"task:{tid}",
                    value=task.status.value,
                    kind=_STATUS_KINDS.get(task.status, "task_status"),
                    subject=tid,
                    timestamp=change.timestamp,
                    pinned=task.status != TaskStatus.COMPLETED,
                ))
        return await self.store.update(ContextLayer.EXECUTION, updates)

    async def on_plan_changed(self, event: Event) -> None:
        """EventBus handler for ``plan.changed``."""
        await self.apply_plan_change(PlanChange.model_validate(event.data))

    # ── Observation mapping ─────────────────────────────────────

    def updates_for(self, observations: list[Observation]) -> Updates:
        updates: Updates = {layer: [] for layer in ContextLayer}
        for obs in observations:
            for layer, update in self._map(obs):
                updates[layer].append(update)
            for raw in _payload(obs, "context", list):
                explicit = self._explicit(obs, raw)
                if explicit is not None:
                    updates[explicit[0]].append(explicit[1])
        return updates

    def _map(self, obs: Observation) -> list[tuple[ContextLayer, ContextUpdate]]:
        ts = obs.timestamp
        t = obs.type
        if t == ObservationType.USER_MESSAGE:
            out = [(ContextLayer.CONVERSATIONAL, ContextUpdate(
                key=obs.get("key") or f"message:{obs.id}",
                value=obs.get("text"),
                kind=obs.get("kind") or "user_message",
                subject=obs.get("subject") or "",
                timestamp=ts,
            ))]
            for item in _payload(obs, "requirements", list):
                name = item if isinstance(item, str) else item.get("name") if isinstance(item, dict) else None
                if not name:
                    continue
                out.append((ContextLayer.CONVERSATIONAL, ContextUpdate(
                    key=f"requirement:{name}",
                    value=item if isinstance(item, dict) else {"name": name},
                    kind="user_requirement",
                    subject=f"requirement:{name}",
                    timestamp=ts,
                )))
            for subject, value in _payload(obs, "facts", dict).items():
                out.append((ContextLayer.CONVERSATIONAL, ContextUpdate(
                    key=f"fact:{subject}", value=value, kind="fact", subject=subject, timestamp=ts,
                )))
            return out

        if t in (ObservationType.FILE_ADDED, ObservationType.FILE_MODIFIED, ObservationType.FILE_DELETED):
            path = obs.get("path")
            return [(ContextLayer.TECHNICAL, ContextUpdate(
                key=f"file:{path}",
                value=obs.get("hash") if t != ObservationType.FILE_DELETED else None,
                kind=t.value,
                subject=f"file:{path}",
                timestamp=ts,
            ))]

        if t == ObservationType.DEPENDENCY_CHANGED:
            name = obs.get("name")
            version = obs.get("version")
            if version is None:
                kind = "dependency_removed"
            elif obs.get("previous") is None:
                kind = "dependency_added"
            else:
                kind = "dependency_updated"
            return [(ContextLayer.TECHNICAL, ContextUpdate(
                key=f"dependency:{name}", value=version, kind=kind,
                subject=f"dependency:{name}", timestamp=ts,
            ))]

        if t == ObservationType.CONFIG_CHANGED:
            key = obs.get("key")
            return [(ContextLayer.TECHNICAL, ContextUpdate(
                key=f"config:{key}",
                value=None if obs.get("removed") else obs.get("value"),
                kind="config",
                subject=key,
                timestamp=ts,
            ))]

        if t == ObservationType.SERVICE_CHANGED:
            name = obs.get("name")
            return [(ContextLayer.PROJECT, ContextUpdate(
                key=f"service:{name}", value=obs.get("available"), kind="service",
                subject=f"service:{name}", timestamp=ts,
            ))]

        # progress_report
        out = [(ContextLayer.EXECUTION, ContextUpdate(
            key="progress:latest",
            value={k: v for k, v in obs.payload.items() if k not in ("context", "facts")},
            kind="progress",
            timestamp=ts,
            pinned=True,
        ))]
        for tid, status in _payload(obs, "task_status", dict).items():
            kind = _STATUS_KINDS.get(status, "task_status")
            out.append((ContextLayer.EXECUTION, ContextUpdate(
                key=f"task:{tid}", value=status, kind=kind, subject=tid, timestamp=ts,
                pinned=kind != "task_completed",
            )))
        for tid, reason in _payload(obs, "failures", dict).items():
            out.append((ContextLayer.EXECUTION, ContextUpdate(
                key=f"failure:{tid}", value=reason, kind="task_failed",
                subject=f"failure:{tid}", timestamp=ts,
            )))
        return out

    def _explicit(self, obs: Observation, raw: Any) -> tuple[ContextLayer, ContextUpdate] | None:
        if not isinstance(raw, dict):
            _logger.warning("Observation %s: ignoring context entry %r", obs.id, raw)
            return None
        try:
            layer = ContextLayer(raw.get("layer"))
            update = ContextUpdate.model_validate(
                {"timestamp": obs.timestamp, **{k: v for k, v in raw.items() if k != "layer"}}
            )
        except (ValueError, ValidationError) as e:
            _logger.warning("Observation %s: bad context entry: %s", obs.id, e)
            return None
        return layer, update
