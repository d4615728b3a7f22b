"""Trigger detection — does the plan still match reality?"""

from weft.triggers.base import AdaptationTrigger, DetectionReport, TriggerDetector
from weft.triggers.contradiction import ContradictionDetector
from weft.triggers.environment import EnvironmentSnapshot, EnvironmentalChangeDetector
from weft.triggers.progress import ProgressAnomalyDetector
from weft.triggers.runner import DetectionRunner

__all__ = [
    "AdaptationTrigger",
    "ContradictionDetector",
    "DetectionReport",
    "DetectionRunner",
    "EnvironmentSnapshot",
    "EnvironmentalChangeDetector",
    "ProgressAnomalyDetector",
    "TriggerDetector",
]
