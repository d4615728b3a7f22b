"""Adaptation — turn triggers into an accepted next plan."""

from weft.adaptation.engine import AdaptationEngine, CycleResult, sync_execution_state
from weft.adaptation.selector import StrategySelector
from weft.adaptation.state import CycleStateMachine

__all__ = [
    "AdaptationEngine",
    "CycleResult",
    "CycleStateMachine",
    "StrategySelector",
    "sync_execution_state",
]
