"""Tests for the hierarchical context store."""

from datetime import datetime, timedelta

import pytest

from weft.context.models import SUMMARY_KIND, ContextUpdate
from weft.context.optimizer import ContextOptimizer, summarized
from weft.context.store import ContextStore
from weft.events.bus import CONTEXT_UPDATED, EventBus
from weft.types import ContextLayer


@pytest.fixture
def store():
    return ContextStore(budget=100_000)


@pytest.mark.asyncio
async def test_update_creates_a_new_snapshot(store):
    before = store.current
    snapshot = await store.update(ContextLayer.TECHNICAL, [ContextUpdate(key="lang", value="python")])
    assert snapshot.version == 1
    assert before.version == 0
    assert len(before) == 0
    assert snapshot.get(ContextLayer.TECHNICAL, "lang").value == "python"


@pytest.mark.asyncio
async def test_same_key_twice_keeps_one_piece(store):
    await store.update(ContextLayer.CONVERSATIONAL, [ContextUpdate(key="file_read:src/auth.ts", value="v1")])
    await store.update(ContextLayer.CONVERSATIONAL, [ContextUpdate(key="file_read:src/auth.ts", value="v2")])
    keys = store.current.keys(ContextLayer.CONVERSATIONAL)
    assert keys == ["file_read:src/auth.ts"]
    assert store.current.get(ContextLayer.CONVERSATIONAL, "file_read:src/auth.ts").value == "v2"


@pytest.mark.asyncio
async def test_older_write_never_replaces_newer(store):
    now = datetime.now()
    await store.update(ContextLayer.PROJECT, [ContextUpdate(key="owner", value="new", timestamp=now)])
    await store.update(
        ContextLayer.PROJECT, [ContextUpdate(key="owner", value="old", timestamp=now - timedelta(hours=1))],
    )
    assert store.current.get(ContextLayer.PROJECT, "owner").value == "new"


@pytest.mark.asyncio
async def test_dependency_added_propagates_to_project(store):
    await store.update(ContextLayer.TECHNICAL, [ContextUpdate(
        key="dependency:httpx", value="0.27", kind="dependency_added", subject="dependency:httpx",
    )])
    derived = store.current.get(ContextLayer.PROJECT, "convention_candidate:dependency:httpx")
    assert derived is not None
    assert derived.source_layer == ContextLayer.TECHNICAL
    assert derived.derived
    assert derived.value == "0.27"


@pytest.mark.asyncio
async def test_task_failure_propagates_to_technical(store):
    await store.update(ContextLayer.EXECUTION, [ContextUpdate(
        key="failure:B", value="timeout", kind="task_failed", subject="failure:B",
    )])
    assert store.current.get(ContextLayer.TECHNICAL, "failure_note:failure:B").value == "timeout"


@pytest.mark.asyncio
async def test_cross_layer_conflict_newest_wins(store):
    now = datetime.now()
    await store.update(ContextLayer.PROJECT, [ContextUpdate(
        key="db", value="postgres", subject="db.engine", timestamp=now - timedelta(minutes=5),
    )])
    await store.update(ContextLayer.TECHNICAL, [ContextUpdate(
        key="config:db.engine", value="sqlite", subject="db.engine", timestamp=now,
    )])
    snapshot = store.current
    assert snapshot.get(ContextLayer.PROJECT, "db").value == "sqlite"
    assert len(snapshot.conflicts) == 1
    conflict = snapshot.conflicts[0]
    assert conflict.winner == "technical:config:db.engine"
    assert conflict.loser == "project:db"
    assert conflict.discarded_value == "postgres"


@pytest.mark.asyncio
async def test_overflow_triggers_compaction():
    store = ContextStore(optimizer=ContextOptimizer(min_cluster=3), budget=1_000, compaction_ratio=0.5)
    base = datetime.now() - timedelta(hours=1)
    updates = [
        ContextUpdate(key=f"log:{i}", value="retrying flaky integration step " + "x" * 180, kind="log",
                      timestamp=base + timedelta(seconds=i))
        for i in range(30)
    ]
    snapshot = await store.update(ContextLayer.EXECUTION, updates)
    keys = snapshot.keys(ContextLayer.EXECUTION)
    assert "summary:log:log" in keys
    assert "log:29" in keys
    summary = snapshot.get(ContextLayer.EXECUTION, "summary:log:log")
    assert summary.kind == SUMMARY_KIND
    assert summary.value["count"] == 29
    assert summarized(summary)["log:0"] == updates[0].value
    assert snapshot.total_size < sum(len(u.key) + len(u.value) for u in updates)


@pytest.mark.asyncio
async def test_updates_are_published():
    bus = EventBus()
    store = ContextStore(event_bus=bus, budget=100_000)
    await store.update(ContextLayer.CONVERSATIONAL, [ContextUpdate(key="greeting", value="hi")])
    events = bus.history(CONTEXT_UPDATED)
    assert events[0].data["updated"] == ["greeting"]
    assert events[0].data["version"] == 1


@pytest.mark.asyncio
async def test_optimize_bumps_version(store):
    await store.update(ContextLayer.TECHNICAL, [ContextUpdate(key="a", value=1)])
    snapshot = await store.optimize()
    assert snapshot.version == 2
    assert snapshot.get(ContextLayer.TECHNICAL, "a").value == 1
