"""CLI runtime context — bridges the sync CLI to the async session."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Coroutine

from pydantic import BaseModel, Field

from weft.plan.models import Assumption, Constraint, Goal, Plan, Requirement, Task
from weft.types import Complexity


class SessionFile(BaseModel):
    """A recorded session: the initial plan plus the batches that followed."""

    plan: dict[str, Any]
    batches: list[list[dict[str, Any]]] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> SessionFile:
        return cls.model_validate(json.loads(path.read_text(encoding="utf-8")))

    def initial_plan(self) -> Plan:
        raw = dict(self.plan)
        goals = [Goal.model_validate(g) for g in raw.pop("goals", [])]
        tasks = raw.pop("tasks", [])
        if isinstance(tasks, dict):
            tasks = [{"id": tid, **t} for tid, t in tasks.items()]
        edges = [tuple(e) for e in raw.pop("edges", raw.pop("dependencies", []))]
        fields: dict[str, Any] = {}
        if "assumptions" in raw:
            fields["assumptions"] = [Assumption.model_validate(a) for a in raw.pop("assumptions")]
        if "constraints" in raw:
            fields["constraints"] = [Constraint.model_validate(c) for c in raw.pop("constraints")]
        if "requirements" in raw:
            fields["requirements"] = [Requirement.model_validate(r) for r in raw.pop("requirements")]
        if "expected_complexity" in raw:
            fields["expected_complexity"] = {
                tid: Complexity(c) for tid, c in raw.pop("expected_complexity").items()
            }
        fields.update(raw)
        return Plan.build(goals, [Task.model_validate(t) for t in tasks], edges, **fields)


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
