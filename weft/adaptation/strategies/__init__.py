"""The three mutation granularities: refinement, restructuring, replacement."""

from weft.adaptation.strategies.base import AdaptationStrategy, Candidate, TransitionNote
from weft.adaptation.strategies.refinement import RefinementStrategy
from weft.adaptation.strategies.replacement import LessonsLearned, ReplacementStrategy
from weft.adaptation.strategies.restructuring import RestructuringStrategy

__all__ = [
    "AdaptationStrategy",
    "Candidate",
    "LessonsLearned",
    "RefinementStrategy",
    "ReplacementStrategy",
    "RestructuringStrategy",
    "TransitionNote",
]
