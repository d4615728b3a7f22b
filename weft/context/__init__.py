"""Hierarchical context: four layers, propagation, optimization, retrieval."""

from weft.context.adapter import ContextAdapter
from weft.context.models import (
    ContextConflict, ContextPiece, ContextSnapshot, ContextUpdate, RelevantContext,
)
from weft.context.optimizer import ContextOptimizer
from weft.context.query import ContextQueryEngine, get_relevant_context, search
from weft.context.store import PROPAGATION, ContextStore

__all__ = [
    "PROPAGATION",
    "ContextAdapter",
    "ContextConflict",
    "ContextOptimizer",
    "ContextPiece",
    "ContextQueryEngine",
    "ContextSnapshot",
    "ContextStore",
    "ContextUpdate",
    "RelevantContext",
    "get_relevant_context",
    "search",
]
