"""Shared test fixtures — small plans and observation builders."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from weft.plan.models import Goal, Plan, Task
from weft.plan.store import PlanStore


def observation(type_: str, timestamp: datetime | None = None, **payload) -> dict:
    """Raw observation as the environmental collaborator would send it."""
    raw = {"type": type_, "payload": payload}
    if timestamp is not None:
        raw["timestamp"] = timestamp
    return raw


@pytest.fixture
def obs():
    return observation


@pytest.fixture
def linear_plan() -> Plan:
    """A -> B -> C, goal achieved by C."""
    return Plan.build(
        goals=[Goal(id="ship", description="Ship the feature", task_ids=["C"])],
        tasks=[
            Task(id="A", description="Design the schema"),
            Task(id="B", description="Implement the API", parameters={"estimate_hours": 4}),
            Task(id="C", description="Release"),
        ],
        edges=[("A", "B"), ("B", "C")],
        expected_velocity=2.0,
    )


@pytest.fixture
def diamond_plan() -> Plan:
    """A -> (B, C) -> D, goal achieved by D."""
    return Plan.build(
        goals=[Goal(id="done", description="Everything merged", task_ids=["D"])],
        tasks=[Task(id=t, description=f"Task {t}") for t in "ABCD"],
        edges=[("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")],
    )


@pytest.fixture
def plan_store(linear_plan) -> PlanStore:
    return PlanStore(linear_plan)


@pytest.fixture
def long_ago() -> datetime:
    return datetime.now() - timedelta(hours=6)
