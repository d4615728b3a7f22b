"""Coherence checking and bounded repair of candidate plans."""

from weft.coherence.repairer import MAX_REPAIR_ITERATIONS, CoherenceRepairer
from weft.coherence.validator import CoherenceIssue, CoherenceReport, CoherenceValidator

__all__ = [
    "MAX_REPAIR_ITERATIONS",
    "CoherenceIssue",
    "CoherenceRepairer",
    "CoherenceReport",
    "CoherenceValidator",
]
