"""Contradiction detection — observations that disagree with the plan.

Three checks, all against the same snapshot:

- assumptions whose subject was observed with a different value
- requirements implied by observations that the plan does not cover
  (or explicit ones the observations say are no longer wanted)
- newly discovered constraints that clash with existing constraints or
  with the parameters tasks already carry
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from weft.exceptions import TriggerDetectionError
from weft.observations import Observation
from weft.plan.models import Constraint, Plan
from weft.triggers.base import AdaptationTrigger, TriggerDetector
from weft.types import ObservationType, Severity, TriggerKind


def observed_facts(observations: list[Observation]) -> dict[str, tuple[Any, Observation]]:
    """Subject -> (latest value, observation that asserted it)."""
    facts: dict[str, tuple[Any, Observation]] = {}
    for obs in observations:
        if obs.type == ObservationType.CONFIG_CHANGED:
            facts[obs.get("key")] = (obs.get("value"), obs)
        elif obs.type == ObservationType.SERVICE_CHANGED:
            facts[f"service:{obs.get('name')}"] = (obs.get("available"), obs)
        elif obs.type == ObservationType.DEPENDENCY_CHANGED:
            facts[f"dependency:{obs.get('name')}"] = (obs.get("version"), obs)
        asserted = obs.get("facts")
        if isinstance(asserted, dict):
            for subject, value in asserted.items():
                facts[subject] = (value, obs)
    return facts


class ContradictionDetector(TriggerDetector):
    """Finds assumption violations, requirement conflicts, and constraint clashes."""

    name = "contradiction"

    def detect(
        self,
        plan: Plan,
        observations: list[Observation],
        errors: list[TriggerDetectionError] | None = None,
    ) -> list[AdaptationTrigger]:
        triggers = self._check_assumptions(plan, observations)
        triggers += self._check_requirements(plan, observations, errors)
        triggers += self._check_constraints(plan, observations, errors)
        return triggers

    def _check_assumptions(
        self, plan: Plan, observations: list[Observation]
    ) -> list[AdaptationTrigger]:
        facts = observed_facts(observations)
        triggers = []
        for assumption in plan.assumptions:
            if assumption.subject not in facts:
                continue
            value, obs = facts[assumption.subject]
            if value == assumption.expected:
                continue
            triggers.append(self._trigger(
                TriggerKind.ASSUMPTION_VIOLATION,
                assumption.severity,
                assumption_id=assumption.id,
                subject=assumption.subject,
                expected=assumption.expected,
                observed=value,
                observation_id=obs.id,
            ))
        return triggers

    def _check_requirements(
        self,
        plan: Plan,
        observations: list[Observation],
        errors: list[TriggerDetectionError] | None,
    ) -> list[AdaptationTrigger]:
        known = plan.requirement_names()
        explicit = {r.name for r in plan.requirements}
        implied: dict[str, dict[str, Any]] = {}
        dropped: dict[str, Observation] = {}

        for obs in observations:
            for item in self._listed(errors, obs, "requirements"):
                if isinstance(item, str):
                    implied.setdefault(item, {"name": item, "observation_id": obs.id})
                elif isinstance(item, dict) and isinstance(item.get("name"), str):
                    implied[item["name"]] = {**item, "observation_id": obs.id}
                else:
                    self._skip(errors, obs, f"unreadable requirement {item!r}")
            for name in self._listed(errors, obs, "dropped_requirements"):
                if isinstance(name, str):
                    dropped[name] = obs

        triggers = []
        for name in sorted(set(implied) - known):
            detail = implied[name]
            triggers.append(self._trigger(
                TriggerKind.REQUIREMENT_CONFLICT,
                Severity.HIGH if detail.get("blocking") else Severity.MEDIUM,
                change="missing",
                requirement=name,
                description=detail.get("description", ""),
                after=detail.get("after"),
                before=detail.get("before"),
                task_id=detail.get("task_id"),
                observation_id=detail["observation_id"],
            ))
        for name in sorted(set(dropped) & explicit):
            triggers.append(self._trigger(
                TriggerKind.REQUIREMENT_CONFLICT,
                Severity.MEDIUM,
                change="obsolete",
                requirement=name,
                observation_id=dropped[name].id,
            ))
        return triggers

    def _check_constraints(
        self,
        plan: Plan,
        observations: list[Observation],
        errors: list[TriggerDetectionError] | None,
    ) -> list[AdaptationTrigger]:
        triggers = []
        for obs in observations:
            for raw in self._listed(errors, obs, "constraints"):
                try:
                    found = Constraint.model_validate(raw)
                except ValidationError:
                    self._skip(errors, obs, f"unreadable constraint {raw!r}")
                    continue

                clashes = [c.id for c in plan.constraints if c.conflicts_with(found)]
                violators = sorted(
                    tid for tid, task in plan.tasks.items()
                    if found.subject in task.parameters
                    and not found.admits(task.parameters[found.subject])
                )
                if not clashes and not violators:
                    continue
                triggers.append(self._trigger(
                    TriggerKind.CONSTRAINT_VIOLATION,
                    Severity.HIGH if clashes else Severity.MEDIUM,
                    constraint=found.model_dump(mode="json"),
                    conflicting_constraints=clashes,
                    violating_tasks=violators,
                    observation_id=obs.id,
                ))
        return triggers
