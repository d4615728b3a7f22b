"""Context Query Engine — what does the session know about X?

Read-only: every call works on the snapshot it is handed (or the
store's current one) and never takes the writer lock. Relevance uses
lightweight term-frequency vectors compared by cosine similarity, with
no external vector index.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from datetime import datetime
from typing import Iterable

from weft.config import settings
from weft.context.models import ContextPiece, ContextSnapshot, RelevantContext
from weft.plan.models import Task
from weft.types import ContextLayer

MIN_SEARCH_SCORE = 0.01
RECENCY_WEIGHT = 0.25
REDUNDANCY_WEIGHT = 0.3
TASK_MENTION_BONUS = 0.5


def tokenize(text: str) -> list[str]:
    """Lowercase, split on non-alphanumeric."""
    return re.findall(r"[a-z0-9]+", text.lower())


def term_frequency(tokens: list[str]) -> dict[str, float]:
    counts = Counter(tokens)
    total = len(tokens) if tokens else 1
    return {t: c / total for t, c in counts.items()}


def cosine_similarity(a: dict[str, float], b: dict[str, float]) -> float:
    """Cosine similarity between two term-frequency vectors."""
    common = set(a) & set(b)
    if not common:
        return 0.0
    dot = sum(a[k] * b[k] for k in common)
    mag_a = math.sqrt(sum(v * v for v in a.values()))
    mag_b = math.sqrt(sum(v * v for v in b.values()))
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (mag_a * mag_b)


def piece_vector(piece: ContextPiece) -> dict[str, float]:
    return term_frequency(tokenize(f"{piece.key} {piece.subject} {piece.text}"))


def recency_boost(piece: ContextPiece, now: datetime, half_life: float) -> float:
    age = max(0.0, now.timestamp() - piece.timestamp.timestamp())
    return RECENCY_WEIGHT * 0.5 ** (age / half_life) if half_life > 0 else 0.0


def task_text(task: Task | str) -> str:
    if isinstance(task, str):
        return task
    parts = [task.id, task.description, *task.requires, *task.provides]
    parts += [f"{k} {v}" for k, v in task.parameters.items()]
    return " ".join(str(p) for p in parts)


def search(
    snapshot: ContextSnapshot,
    query: str,
    layers: Iterable[ContextLayer] | None = None,
    limit: int = 10,
) -> list[ContextPiece]:
    """Pieces matching ``query``, best first, ties broken newest first.

    An empty query returns the most recent pieces.
    """
    candidates = list(snapshot.pieces(layers))
    query_tf = term_frequency(tokenize(query))
    if not query_tf:
        candidates.sort(key=lambda p: p.timestamp.timestamp(), reverse=True)
        return candidates[:limit]

    scored = []
    for piece in candidates:
        score = cosine_similarity(query_tf, piece_vector(piece))
        if score > MIN_SEARCH_SCORE:
            scored.append((score, piece.timestamp.timestamp(), piece))
    scored.sort(key=lambda s: (s[0], s[1]), reverse=True)
    return [p for _, _, p in scored[:limit]]


def redundancy_penalties(snapshot: ContextSnapshot) -> dict[str, float]:
    """Penalty for pieces a newer piece of the same kind largely repeats."""
    penalties: dict[str, float] = {}
    for layer in ContextLayer:
        pieces = list(snapshot.layers.get(layer, ()))
        vectors = [piece_vector(p) for p in pieces]
        for i, piece in enumerate(pieces):
            worst = 0.0
            for j in range(len(pieces)):
                other = pieces[j]
                if (
                    j == i
                    or other.kind != piece.kind
                    or other.timestamp.timestamp() <= piece.timestamp.timestamp()
                ):
                    continue
                worst = max(worst, cosine_similarity(vectors[i], vectors[j]))
            penalties[piece.ref] = REDUNDANCY_WEIGHT * worst
    return penalties


def get_relevant_context(
    snapshot: ContextSnapshot,
    task: Task | str,
    max_size: int,
    now: datetime | None = None,
    half_life: float | None = None,
) -> RelevantContext:
    """Greedy highest-score-first selection until ``max_size`` is used up.

    score = direct relevance + recency boost - redundancy penalty,
    floored at 0. Pieces that would overflow the budget are skipped so
    smaller ones further down can still fit.
    """
    now = now or datetime.now()
    half_life = half_life if half_life is not None else settings.recency_half_life_seconds
    task_tf = term_frequency(tokenize(task_text(task)))
    task_id = task if isinstance(task, str) else task.id
    penalties = redundancy_penalties(snapshot)

    scored: list[tuple[float, float, ContextPiece]] = []
    for piece in snapshot.pieces():
        direct = cosine_similarity(task_tf, piece_vector(piece))
        if task_id and (task_id == piece.subject or piece.key.endswith(f":{task_id}")):
            direct += TASK_MENTION_BONUS
        score = max(0.0, direct + recency_boost(piece, now, half_life) - penalties[piece.ref])
        if score > 0:
            scored.append((round(score, 6), piece.timestamp.timestamp(), piece))
    scored.sort(key=lambda s: (s[0], s[1]), reverse=True)

    chosen: dict[ContextLayer, list[ContextPiece]] = {}
    scores: dict[str, float] = {}
    used = 0
    for score, _, piece in scored:
        if used + piece.size > max_size:
            continue
        chosen.setdefault(piece.layer, []).append(piece)
        scores[piece.ref] = score
        used += piece.size
    return RelevantContext(layers=chosen, total_size=used, scores=scores)


class ContextQueryEngine:
    """Query surface over whatever snapshot a store currently holds."""

    def __init__(self, snapshot_source, half_life: float | None = None) -> None:
        # snapshot_source: a ContextStore, or anything with ``.current``
        self._source = snapshot_source
        self.half_life = half_life if half_life is not None else settings.recency_half_life_seconds

    def search(
        self,
        query: str,
        layers: Iterable[ContextLayer] | None = None,
        limit: int = 10,
    ) -> list[ContextPiece]:
        return search(self._source.current, query, layers, limit)

    def get_relevant_context(
        self, task: Task | str, max_size: int, now: datetime | None = None
    ) -> RelevantContext:
        return get_relevant_context(self._source.current, task, max_size, now, self.half_life)
