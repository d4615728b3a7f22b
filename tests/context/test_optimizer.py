"""Tests for the context optimizer."""

from datetime import datetime, timedelta

import pytest

from weft.context.models import SUMMARY_KIND, ContextPiece, ContextSnapshot
from weft.context.optimizer import ContextOptimizer, key_prefix, latest_per_key, summarized
from weft.exceptions import ContextIntegrityError
from weft.types import ContextLayer

NOW = datetime(2026, 6, 1, 12, 0)


def _piece(key, value, minutes_ago=0, layer=ContextLayer.TECHNICAL, **extra):
    return ContextPiece(
        layer=layer, key=key, value=value, timestamp=NOW - timedelta(minutes=minutes_ago), **extra,
    )


def test_key_prefix():
    assert key_prefix("file_read:src/auth.ts") == "file_read"
    assert key_prefix("plain") == "plain"


def test_dedup_keeps_newest():
    snapshot = ContextSnapshot.from_pieces([
        _piece("file_read:src/auth.ts", "old", minutes_ago=5, layer=ContextLayer.CONVERSATIONAL),
        _piece("file_read:src/auth.ts", "new", layer=ContextLayer.CONVERSATIONAL),
    ])
    deduped = ContextOptimizer().dedup(snapshot)
    pieces = list(deduped.pieces([ContextLayer.CONVERSATIONAL]))
    assert len(pieces) == 1
    assert pieces[0].value == "new"


def test_dedup_is_idempotent():
    snapshot = ContextSnapshot.from_pieces([_piece("a", 1), _piece("a", 2, minutes_ago=1), _piece("b", 3)])
    optimizer = ContextOptimizer()
    once = optimizer.dedup(snapshot)
    assert optimizer.dedup(once) is once


def test_latest_per_key_prefers_later_on_ties():
    first, second = _piece("k", "first"), _piece("k", "second")
    assert latest_per_key([first, second])[(ContextLayer.TECHNICAL, "k")].value == "second"


def test_compress_merges_near_duplicates():
    pieces = [_piece(f"test_run:{i}", f"pytest suite passed run {i}", minutes_ago=10 - i, kind="test_run")
              for i in range(5)]
    snapshot = ContextSnapshot.from_pieces(pieces)
    result = ContextOptimizer(min_cluster=3).optimize(snapshot, now=NOW)
    keys = result.keys(ContextLayer.TECHNICAL)
    assert "test_run:4" in keys
    summary = result.get(ContextLayer.TECHNICAL, "summary:test_run:test_run")
    assert summary.kind == SUMMARY_KIND
    assert sorted(summary.value["source_keys"]) == [f"test_run:{i}" for i in range(4)]
    assert summary.value["original_kind"] == "test_run"
    assert len(result) == 2


def test_small_clusters_and_pinned_pieces_stay():
    pieces = [_piece(f"task:{i}", "active", minutes_ago=i, kind="task_status", pinned=True) for i in range(5)]
    pieces += [_piece("note:1", "alpha"), _piece("note:2", "beta")]
    snapshot = ContextSnapshot.from_pieces(pieces)
    assert ContextOptimizer(min_cluster=3).compress(snapshot) is snapshot


def test_dissimilar_pieces_are_not_merged():
    pieces = [
        _piece("doc:1", "database migration plan", minutes_ago=3),
        _piece("doc:2", "frontend color palette", minutes_ago=2),
        _piece("doc:3", "oauth token refresh", minutes_ago=1),
    ]
    snapshot = ContextSnapshot.from_pieces(pieces)
    assert ContextOptimizer(min_cluster=3, similarity=0.9).compress(snapshot) is snapshot
    compacted = ContextOptimizer(min_cluster=3, similarity=0.9).compact(snapshot, now=NOW)
    assert compacted.keys(ContextLayer.TECHNICAL) == ["summary:fact:doc", "doc:3"]


def test_existing_summary_grows():
    optimizer = ContextOptimizer(min_cluster=2)
    first = optimizer.compact(ContextSnapshot.from_pieces([
        _piece("log:1", "a", minutes_ago=9), _piece("log:2", "b", minutes_ago=8),
    ]), now=NOW)
    grown = optimizer.compact(ContextSnapshot.from_pieces(
        list(first.pieces()) + [_piece("log:3", "c", minutes_ago=1)]
    ), now=NOW)
    summary = grown.get(ContextLayer.TECHNICAL, "summary:fact:log")
    assert summary.value["source_keys"] == ["log:1", "log:2"]
    assert summary.value["count"] == 2
    assert grown.keys(ContextLayer.TECHNICAL)[-1] == "log:3"


def test_prioritize_decays_with_age():
    snapshot = ContextSnapshot.from_pieces([
        _piece("fresh", "x", weight=1.0), _piece("stale", "y", minutes_ago=120, weight=1.0),
    ])
    scored = ContextOptimizer(half_life=3600).prioritize(snapshot, now=NOW)
    assert scored.get(ContextLayer.TECHNICAL, "fresh").relevance == 1.0
    assert scored.get(ContextLayer.TECHNICAL, "stale").relevance == 0.625


def test_verify_reports_lost_pieces():
    original = ContextSnapshot.from_pieces([_piece("a", 1), _piece("b", 2)])
    lossy = ContextSnapshot.from_pieces([_piece("a", 1)])
    optimizer = ContextOptimizer()
    assert optimizer.verify(original, lossy) == ["technical:b"]
    restored = optimizer.restore(original, lossy, ["technical:b"])
    assert optimizer.verify(original, restored) == []


def test_unrestorable_loss_raises():
    class Forgetful(ContextOptimizer):
        def compress(self, snapshot, aggressive=False):
            return ContextSnapshot()

        def restore(self, original, optimized, missing):
            return optimized

    with pytest.raises(ContextIntegrityError):
        Forgetful().optimize(ContextSnapshot.from_pieces([_piece("a", 1)]), now=NOW)


def test_compaction_keeps_every_value_in_full():
    text = "The login page must accept both email and username, fall back to SSO " * 5
    pieces = [
        _piece(f"clarify:{i}", f"{i}: {text}", minutes_ago=30 - i, layer=ContextLayer.CONVERSATIONAL)
        for i in range(15)
    ]
    original = ContextSnapshot.from_pieces(pieces)
    out = ContextOptimizer(min_cluster=3).compact(original, now=NOW)

    summary = out.get(ContextLayer.CONVERSATIONAL, "summary:fact:clarify")
    kept = summarized(summary)
    assert len(kept) == 14
    assert all(kept[p.key] == p.value for p in pieces[:-1])
    assert out.get(ContextLayer.CONVERSATIONAL, "clarify:14").value == pieces[-1].value
    assert ContextOptimizer().verify(original, out) == []


def test_identical_values_are_stored_once():
    pieces = [_piece(f"retry:{i}", "integration suite flaky", minutes_ago=10 - i) for i in range(6)]
    out = ContextOptimizer(min_cluster=3).compact(ContextSnapshot.from_pieces(pieces), now=NOW)
    summary = out.get(ContextLayer.TECHNICAL, "summary:fact:retry")
    assert summary.value["values"] == ["integration suite flaky"]
    assert summary.value["value_index"] == [0] * 5


def test_newest_value_of_a_rewritten_key_survives():
    optimizer = ContextOptimizer(min_cluster=2)
    first = optimizer.compact(ContextSnapshot.from_pieces([
        _piece("log:1", "old", minutes_ago=9), _piece("log:2", "b", minutes_ago=8),
    ]), now=NOW)
    rewritten = ContextSnapshot.from_pieces(list(first.pieces()) + [
        _piece("log:1", "new", minutes_ago=3), _piece("log:3", "c", minutes_ago=1),
    ])
    grown = optimizer.compact(rewritten, now=NOW)
    summary = grown.get(ContextLayer.TECHNICAL, "summary:fact:log")
    assert summarized(summary) == {"log:1": "new", "log:2": "b"}
    assert optimizer.verify(rewritten, grown) == []


def test_verify_reports_changed_summarized_value():
    original = ContextSnapshot.from_pieces([_piece("a", "full text"), _piece("b", 2)])
    wrong = ContextPiece(
        layer=ContextLayer.TECHNICAL, key="summary:fact:a", kind=SUMMARY_KIND, timestamp=NOW,
        value={"source_keys": ["a"], "values": ["full"], "value_index": [0]},
    )
    lossy = ContextSnapshot.from_pieces([wrong, _piece("b", 2)])
    assert ContextOptimizer().verify(original, lossy) == ["technical:a"]


def test_lossy_summary_is_restored():
    class Truncating(ContextOptimizer):
        def _summarize(self, layer, key, kind, pieces, existing):
            summary = super()._summarize(layer, key, kind, pieces, existing)
            value = dict(summary.value)
            value["values"] = [str(v)[:5] for v in value["values"]]
            return summary.model_copy(update={"value": value})

    pieces = [_piece(f"note:{i}", f"long enough note {i}", minutes_ago=5 - i) for i in range(4)]
    original = ContextSnapshot.from_pieces(pieces)
    out = Truncating(min_cluster=3).compact(original, now=NOW)
    for piece in pieces:
        assert out.get(ContextLayer.TECHNICAL, piece.key).value == piece.value
