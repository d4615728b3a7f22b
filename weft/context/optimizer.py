"""Context Optimizer — keep the context store small without losing facts.

Passes, in order:

1. dedup — one piece per (layer, key); the newest write wins
2. compress — clusters of older, near-duplicate pieces (same kind, same
   key prefix) are merged into a single ``summary`` piece that keeps
   every merged value, identical values once; the newest piece of each
   cluster is always kept as-is
3. prioritize — relevance is recomputed from weight and age

A post-check then makes sure nothing was dropped: every live piece of
the input must still be there with the same value, and every merged
piece must be kept, value included, by a summary. Anything missing is
restored from the input; if that still leaves a gap,
``ContextIntegrityError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from weft.config import settings
from weft.context.models import SUMMARY_KIND, ContextPiece, ContextSnapshot
from weft.context.query import cosine_similarity, piece_vector
from weft.exceptions import ContextIntegrityError
from weft.types import ContextLayer

_logger = logging.getLogger(__name__)

NEAR_DUPLICATE_SIMILARITY = 0.5
SUMMARY_WEIGHT = 0.8


def key_prefix(key: str) -> str:
    return key.split(":", 1)[0]


def summarized(piece: ContextPiece) -> dict[str, Any]:
    """Key -> full value of every piece a summary stands for."""
    if piece.kind != SUMMARY_KIND or not isinstance(piece.value, dict):
        return {}
    keys = piece.value.get("source_keys", [])
    values = piece.value.get("values", [])
    index = piece.value.get("value_index", [])
    return {k: values[i] for k, i in zip(keys, index) if 0 <= i < len(values)}


def latest_per_key(pieces: list[ContextPiece]) -> dict[tuple[ContextLayer, str], ContextPiece]:
    """Newest piece for each (layer, key). Later position wins ties."""
    latest: dict[tuple[ContextLayer, str], ContextPiece] = {}
    for piece in pieces:
        slot = (piece.layer, piece.key)
        held = latest.get(slot)
        if held is None or piece.timestamp.timestamp() >= held.timestamp.timestamp():
            latest[slot] = piece
    return latest


class ContextOptimizer:
    """Dedup, compress and re-score context snapshots."""

    def __init__(
        self,
        min_cluster: int | None = None,
        similarity: float = NEAR_DUPLICATE_SIMILARITY,
        half_life: float | None = None,
    ) -> None:
        self.min_cluster = min_cluster if min_cluster is not None else settings.compression_min_cluster
        self.similarity = similarity
        self.half_life = half_life if half_life is not None else settings.recency_half_life_seconds

    def optimize(self, snapshot: ContextSnapshot, now: datetime | None = None) -> ContextSnapshot:
        """Full pass: dedup, compress, prioritize, then verify."""
        return self._run(snapshot, aggressive=False, now=now)

    def compact(self, snapshot: ContextSnapshot, now: datetime | None = None) -> ContextSnapshot:
        """Like optimize, but merges every older cluster member regardless of similarity."""
        return self._run(snapshot, aggressive=True, now=now)

    def _run(self, snapshot: ContextSnapshot, aggressive: bool, now: datetime | None) -> ContextSnapshot:
        result = self.prioritize(
            self.compress(self.dedup(snapshot), aggressive=aggressive), now=now
        )
        missing = self.verify(snapshot, result)
        if missing:
            _logger.warning("Optimizer dropped %d piece(s); restoring", len(missing))
            result = self.restore(snapshot, result, missing)
            still = self.verify(snapshot, result)
            if still:
                raise ContextIntegrityError(
                    f"Context pieces lost during optimization: {', '.join(sorted(still)[:5])}"
                )
        _logger.debug(
            "Optimized context: %d -> %d piece(s), %d -> %d chars",
            len(snapshot), len(result), snapshot.total_size, result.total_size,
        )
        return result

    # ── Passes ──────────────────────────────────────────────────

    def dedup(self, snapshot: ContextSnapshot) -> ContextSnapshot:
        """Collapse repeated pieces under the same key. Idempotent."""
        pieces = list(snapshot.pieces())
        latest = latest_per_key(pieces)
        if len(latest) == len(pieces):
            return snapshot
        return ContextSnapshot.from_pieces(
            latest.values(), version=snapshot.version, conflicts=snapshot.conflicts
        )

    def compress(self, snapshot: ContextSnapshot, aggressive: bool = False) -> ContextSnapshot:
        kept: list[ContextPiece] = []
        changed = False
        for layer in ContextLayer:
            pieces = list(snapshot.layers.get(layer, ()))
            summaries = {p.key: p for p in pieces if p.kind == SUMMARY_KIND}
            clusters: dict[tuple[str, str], list[ContextPiece]] = {}
            for piece in pieces:
                if piece.pinned or piece.kind == SUMMARY_KIND:
                    continue
                clusters.setdefault((piece.kind, key_prefix(piece.key)), []).append(piece)

            merged: set[str] = set()
            for (kind, prefix), members in sorted(clusters.items()):
                if len(members) < self.min_cluster:
                    continue
                members.sort(key=lambda p: p.timestamp.timestamp())
                newest, older = members[-1], members[:-1]
                if not aggressive:
                    target = piece_vector(newest)
                    older = [
                        p for p in older
                        if cosine_similarity(piece_vector(p), target) >= self.similarity
                    ]
                    if len(older) + 1 < self.min_cluster:
                        continue
                key = f"{SUMMARY_KIND}:{kind}:{prefix}"
                summaries[key] = self._summarize(layer, key, kind, older, summaries.get(key))
                merged.update(p.key for p in older)

            if merged:
                changed = True
                _logger.info(
                    "Compressed %d %s piece(s) into summaries", len(merged), layer.value
                )
            kept += [p for p in pieces if p.key not in merged and p.kind != SUMMARY_KIND]
            kept += summaries.values()

        if not changed:
            return snapshot
        return ContextSnapshot.from_pieces(kept, version=snapshot.version, conflicts=snapshot.conflicts)

    def prioritize(self, snapshot: ContextSnapshot, now: datetime | None = None) -> ContextSnapshot:
        """Relevance = weight scaled by age, halving every half-life, never below half."""
        now_ts = (now or datetime.now()).timestamp()
        layers = {}
        for layer, pieces in snapshot.layers.items():
            rescored = []
            for piece in pieces:
                age = max(0.0, now_ts - piece.timestamp.timestamp())
                decay = 0.5 ** (age / self.half_life) if self.half_life > 0 else 1.0
                relevance = round(piece.weight * (0.5 + 0.5 * decay), 6)
                if relevance != piece.relevance:
                    piece = piece.model_copy(update={"relevance": relevance})
                rescored.append(piece)
            layers[layer] = tuple(rescored)
        return snapshot.evolve(layers=layers)

    def _summarize(
        self,
        layer: ContextLayer,
        key: str,
        kind: str,
        pieces: list[ContextPiece],
        existing: ContextPiece | None,
    ) -> ContextPiece:
        merged = summarized(existing) if existing else {}
        for piece in pieces:
            merged.pop(piece.key, None)
            merged[piece.key] = piece.value  # newer write replaces what was kept

        # Identical values are stored once
        values: list[Any] = []
        index: list[int] = []
        for value in merged.values():
            if value not in values:
                values.append(value)
            index.append(values.index(value))

        stamps = [p.timestamp for p in pieces] + ([existing.timestamp] if existing else [])
        earliest = min(stamps, key=lambda t: t.timestamp())
        latest = max(stamps, key=lambda t: t.timestamp())
        return ContextPiece(
            layer=layer,
            key=key,
            kind=SUMMARY_KIND,
            value={
                "original_kind": kind,
                "count": len(merged),
                "source_keys": list(merged),
                "values": values,
                "value_index": index,
                "earliest": (existing.value.get("earliest") if existing else None) or earliest.isoformat(),
            },
            timestamp=latest,
            weight=round(
                max([p.weight for p in pieces] + ([existing.weight] if existing else []))
                * (1.0 if existing else SUMMARY_WEIGHT),
                6,
            ),
            source_layer=layer,
        )

    # ── Integrity ───────────────────────────────────────────────

    def verify(self, original: ContextSnapshot, optimized: ContextSnapshot) -> list[str]:
        """Refs of original pieces that the optimized snapshot lost."""
        covered: dict[str, Any] = {}
        for piece in optimized.pieces():
            for key, value in summarized(piece).items():
                covered[f"{piece.layer.value}:{key}"] = value

        missing = []
        for piece in latest_per_key(list(original.pieces())).values():
            present = optimized.get(piece.layer, piece.key)
            if present is not None and piece.kind == SUMMARY_KIND:
                # Summaries only ever grow
                if not set(summarized(piece)) <= set(summarized(present)):
                    missing.append(piece.ref)
            elif present is not None:
                if present.value != piece.value:
                    missing.append(piece.ref)
            elif piece.ref not in covered or covered[piece.ref] != piece.value:
                missing.append(piece.ref)
        return missing

    def restore(
        self,
        original: ContextSnapshot,
        optimized: ContextSnapshot,
        missing: list[str],
    ) -> ContextSnapshot:
        wanted = set(missing)
        restored = {
            p.ref: p for p in latest_per_key(list(original.pieces())).values() if p.ref in wanted
        }
        pieces = [p for p in optimized.pieces() if p.ref not in restored]
        pieces += restored.values()
        return ContextSnapshot.from_pieces(
            pieces, version=optimized.version, conflicts=optimized.conflicts
        )
