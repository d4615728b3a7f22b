"""Hierarchical Context Store — four layers, one current snapshot.

Writes go through ``update(layer, updates)``:

1. apply the updates to the layer by key (newer timestamp supersedes;
   rewriting a key never duplicates it)
2. propagate: some update kinds imply derived updates in other layers
3. resolve cross-layer conflicts (two layers asserting different values
   about one subject): the newer assertion wins
4. swap in the new snapshot; if it has grown past the compaction
   threshold, it is compacted first

Readers take ``store.current`` and never lock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import NamedTuple

from weft.config import settings
from weft.context.models import ContextConflict, ContextPiece, ContextSnapshot, ContextUpdate
from weft.context.optimizer import ContextOptimizer
from weft.events.bus import CONTEXT_OPTIMIZED, CONTEXT_UPDATED, EventBus
from weft.exceptions import ContextOverflow
from weft.types import ContextLayer

_logger = logging.getLogger(__name__)


class Propagation(NamedTuple):
    target: ContextLayer
    kind: str


# (layer, update kind) -> derived update in another layer
PROPAGATION: dict[tuple[ContextLayer, str], Propagation] = {
    (ContextLayer.TECHNICAL, "dependency_added"): Propagation(ContextLayer.PROJECT, "convention_candidate"),
    (ContextLayer.TECHNICAL, "file_modified"): Propagation(ContextLayer.EXECUTION, "stale_artifact"),
    (ContextLayer.CONVERSATIONAL, "user_requirement"): Propagation(ContextLayer.PROJECT, "requirement"),
    (ContextLayer.EXECUTION, "task_completed"): Propagation(ContextLayer.PROJECT, "milestone"),
    (ContextLayer.EXECUTION, "task_failed"): Propagation(ContextLayer.TECHNICAL, "failure_note"),
}

Working = dict[ContextLayer, dict[str, ContextPiece]]


class ContextStore:
    """Single-writer, multi-reader owner of the current ContextSnapshot."""

    def __init__(
        self,
        optimizer: ContextOptimizer | None = None,
        event_bus: EventBus | None = None,
        budget: int | None = None,
        compaction_ratio: float | None = None,
        propagation: dict[tuple[ContextLayer, str], Propagation] | None = None,
    ) -> None:
        self.optimizer = optimizer or ContextOptimizer()
        self.event_bus = event_bus
        self.budget = budget if budget is not None else settings.context_retention_budget
        ratio = compaction_ratio if compaction_ratio is not None else settings.context_compaction_ratio
        self.compaction_threshold = int(self.budget * ratio)
        self.propagation = PROPAGATION if propagation is None else propagation
        self._current = ContextSnapshot()
        self._lock = asyncio.Lock()

    @property
    def current(self) -> ContextSnapshot:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    async def update(self, layer: ContextLayer, updates: list[ContextUpdate]) -> ContextSnapshot:
        """Apply ``updates`` to ``layer`` and everything they imply."""
        async with self._lock:
            base = self._current
            working: Working = {
                lyr: {p.key: p for p in base.layers.get(lyr, ())} for lyr in ContextLayer
            }
            applied = self._apply(working, layer, updates, source=layer)

            derived = 0
            for piece in applied:
                rule = self.propagation.get((layer, piece.kind))
                if rule is None:
                    continue
                derived += len(self._apply(
                    working, rule.target, [self._derive(piece, rule)], source=layer
                ))

            conflicts = list(base.conflicts) + self._resolve_conflicts(working)
            snapshot = ContextSnapshot.from_pieces(
                (p for pieces in working.values() for p in pieces.values()),
                version=base.version + 1,
                conflicts=conflicts,
            )
            try:
                self._check_budget(snapshot)
            except ContextOverflow as overflow:
                _logger.info("%s; compacting", overflow)
                snapshot = self.optimizer.compact(snapshot)
                if snapshot.total_size > self.budget:
                    _logger.warning(
                        "Context still %d chars after compaction (budget %d)",
                        snapshot.total_size, self.budget,
                    )
            self._current = snapshot

        _logger.debug(
            "Context v%d: %d update(s) to %s, %d derived",
            snapshot.version, len(applied), layer.value, derived,
        )
        if self.event_bus is not None:
            await self.event_bus.emit(
                CONTEXT_UPDATED,
                {
                    "version": snapshot.version,
                    "layer": layer.value,
                    "updated": [p.key for p in applied],
                    "derived": derived,
                    "total_size": snapshot.total_size,
                },
                source="context",
            )
        return snapshot

    async def optimize(self) -> ContextSnapshot:
        """Run the optimizer over the current snapshot and swap the result in."""
        async with self._lock:
            base = self._current
            optimized = self.optimizer.optimize(base)
            snapshot = optimized.evolve(version=base.version + 1)
            self._current = snapshot
        if self.event_bus is not None:
            await self.event_bus.emit(
                CONTEXT_OPTIMIZED,
                {
                    "version": snapshot.version,
                    "pieces_before": len(base),
                    "pieces_after": len(snapshot),
                    "size_before": base.total_size,
                    "size_after": snapshot.total_size,
                },
                source="context",
            )
        return snapshot

    # ── Internals ───────────────────────────────────────────────

    def _apply(
        self,
        working: Working,
        layer: ContextLayer,
        updates: list[ContextUpdate],
        source: ContextLayer,
    ) -> list[ContextPiece]:
        pieces = working[layer]
        applied = []
        for update in updates:
            held = pieces.get(update.key)
            if held is not None and update.timestamp.timestamp() < held.timestamp.timestamp():
                continue  # an older write never replaces a newer one
            piece = ContextPiece(
                layer=layer,
                key=update.key,
                value=update.value,
                timestamp=update.timestamp,
                weight=update.weight,
                relevance=update.weight,
                source_layer=source if source != layer else None,
                kind=update.kind,
                subject=update.subject,
                pinned=update.pinned,
            )
            pieces[update.key] = piece
            applied.append(piece)
        return applied

    def _derive(self, piece: ContextPiece, rule: Propagation) -> ContextUpdate:
        return ContextUpdate(
            key=f"{rule.kind}:{piece.subject or piece.key}",
            value=piece.value,
            kind=rule.kind,
            subject=piece.subject,
            timestamp=piece.timestamp,
            weight=piece.weight,
        )

    def _resolve_conflicts(self, working: Working) -> list[ContextConflict]:
        """Newest first-hand assertion about a subject wins in every layer."""
        by_subject: dict[str, list[ContextPiece]] = {}
        for pieces in working.values():
            for piece in pieces.values():
                if piece.subject and not piece.derived:
                    by_subject.setdefault(piece.subject, []).append(piece)

        conflicts = []
        for subject, claims in sorted(by_subject.items()):
            if len({c.layer for c in claims}) < 2:
                continue
            winner = max(claims, key=lambda p: p.timestamp.timestamp())
            for claim in claims:
                if claim.layer == winner.layer or claim.value == winner.value:
                    continue
                working[claim.layer][claim.key] = claim.model_copy(update={
                    "value": winner.value,
                    "timestamp": winner.timestamp,
                })
                conflicts.append(ContextConflict(
                    subject=subject,
                    winner=winner.ref,
                    loser=claim.ref,
                    discarded_value=claim.value,
                ))
                _logger.info(
                    "Context conflict on %s: %s overrides %s", subject, winner.ref, claim.ref,
                )
        return conflicts

    def _check_budget(self, snapshot: ContextSnapshot) -> None:
        if snapshot.total_size > self.compaction_threshold:
            raise ContextOverflow(snapshot.total_size, self.compaction_threshold)

    def __repr__(self) -> str:
        return f"ContextStore(version={self.version}, size={self._current.total_size})"
