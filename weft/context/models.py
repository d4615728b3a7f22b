"""Context data model — layered pieces and immutable snapshots."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Iterator

from pydantic import BaseModel, ConfigDict, Field

from weft.types import ContextLayer

SUMMARY_KIND = "summary"


class ContextPiece(BaseModel):
    """One retained fact. Unique per (layer, key) within a snapshot."""

    model_config = ConfigDict(frozen=True)

    layer: ContextLayer
    key: str
    value: Any = None
    timestamp: datetime = Field(default_factory=datetime.now)
    relevance: float = Field(default=1.0, ge=0.0)
    weight: float = Field(default=1.0, ge=0.0)  # caller-assigned importance
    source_layer: ContextLayer | None = None  # set on propagated pieces
    kind: str = "fact"
    subject: str = ""
    pinned: bool = False  # live state, never compressed

    @property
    def origin(self) -> ContextLayer:
        return self.source_layer or self.layer

    @property
    def derived(self) -> bool:
        return self.origin != self.layer

    @property
    def text(self) -> str:
        if isinstance(self.value, str):
            return self.value
        return json.dumps(self.value, sort_keys=True, default=str)

    @property
    def size(self) -> int:
        return len(self.key) + len(self.text)

    @property
    def ref(self) -> str:
        return f"{self.layer.value}:{self.key}"


class ContextUpdate(BaseModel):
    """A write request for one key of one layer."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: Any = None
    kind: str = "fact"
    subject: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
    weight: float = Field(default=1.0, ge=0.0)
    pinned: bool = False


class ContextConflict(BaseModel):
    """Two layers asserted different values about one subject."""

    model_config = ConfigDict(frozen=True)

    subject: str
    winner: str  # piece ref
    loser: str
    discarded_value: Any = None
    resolved_at: datetime = Field(default_factory=datetime.now)


class ContextSnapshot(BaseModel):
    """Every layer at one version. Never modified after construction."""

    model_config = ConfigDict(frozen=True)

    version: int = 0
    layers: dict[ContextLayer, tuple[ContextPiece, ...]] = Field(
        default_factory=lambda: {layer: () for layer in ContextLayer}
    )
    conflicts: tuple[ContextConflict, ...] = ()

    @classmethod
    def from_pieces(
        cls,
        pieces: Iterable[ContextPiece],
        version: int = 0,
        conflicts: Iterable[ContextConflict] = (),
    ) -> ContextSnapshot:
        """Group pieces by layer, oldest first, ties by key."""
        grouped: dict[ContextLayer, list[ContextPiece]] = {layer: [] for layer in ContextLayer}
        for piece in pieces:
            grouped[piece.layer].append(piece)
        return cls(
            version=version,
            layers={
                layer: tuple(sorted(items, key=lambda p: (p.timestamp.timestamp(), p.key)))
                for layer, items in grouped.items()
            },
            conflicts=tuple(conflicts),
        )

    def evolve(self, **changes: Any) -> ContextSnapshot:
        return self.model_copy(update=changes)

    def pieces(self, layers: Iterable[ContextLayer] | None = None) -> Iterator[ContextPiece]:
        wanted = list(layers) if layers is not None else list(ContextLayer)
        for layer in wanted:
            yield from self.layers.get(layer, ())

    def get(self, layer: ContextLayer, key: str) -> ContextPiece | None:
        for piece in self.layers.get(layer, ()):
            if piece.key == key:
                return piece
        return None

    def keys(self, layer: ContextLayer) -> list[str]:
        return [p.key for p in self.layers.get(layer, ())]

    @property
    def total_size(self) -> int:
        return sum(p.size for p in self.pieces())

    def __len__(self) -> int:
        return sum(len(items) for items in self.layers.values())

    def export(self) -> dict[str, Any]:
        """Read-only per-layer view for the hand-off collaborator."""
        return {
            "version": self.version,
            "totalSize": self.total_size,
            "layers": {
                layer.value: [p.model_dump(mode="json") for p in self.layers.get(layer, ())]
                for layer in ContextLayer
            },
        }


class RelevantContext(BaseModel):
    """Pieces chosen for one task under a size budget."""

    model_config = ConfigDict(frozen=True)

    layers: dict[ContextLayer, list[ContextPiece]] = Field(default_factory=dict)
    total_size: int = 0
    scores: dict[str, float] = Field(default_factory=dict)  # piece ref -> score

    def pieces(self) -> list[ContextPiece]:
        return [p for items in self.layers.values() for p in items]
