"""DetectionRunner — run every detector against one snapshot, concurrently."""

from __future__ import annotations

import asyncio
import logging

from weft.exceptions import TriggerDetectionError
from weft.observations import ObservationBatch
from weft.plan.models import Plan
from weft.triggers.base import AdaptationTrigger, DetectionReport, TriggerDetector

_logger = logging.getLogger(__name__)


def rank_triggers(triggers: list[AdaptationTrigger]) -> list[AdaptationTrigger]:
    """Highest severity first; ties keep detection order."""
    return sorted(triggers, key=lambda t: t.severity, reverse=True)


class DetectionRunner:
    """Fans a batch out to all detectors and gathers a DetectionReport.

    Detectors are pure, so they share the snapshot without locking. A
    detector that blows up costs only its own triggers: the failure is
    recorded as a TriggerDetectionError and the cycle carries on.
    """

    def __init__(self, detectors: list[TriggerDetector]) -> None:
        self._detectors = list(detectors)

    @property
    def detectors(self) -> list[TriggerDetector]:
        return list(self._detectors)

    async def run(self, plan: Plan, batch: ObservationBatch) -> DetectionReport:
        sinks: list[list[TriggerDetectionError]] = [[] for _ in self._detectors]
        results = await asyncio.gather(
            *[
                asyncio.to_thread(d.detect, plan, batch.observations, sink)
                for d, sink in zip(self._detectors, sinks)
            ],
            return_exceptions=True,
        )

        report = DetectionReport(errors=list(batch.errors))
        for detector, sink, result in zip(self._detectors, sinks, results):
            report.errors.extend(sink)
            if isinstance(result, BaseException):
                _logger.warning("Detector %s failed: %s", detector.name, result)
                report.errors.append(TriggerDetectionError(
                    f"detector {detector.name} failed: {result}",
                    detector=detector.name,
                ))
                continue
            report.triggers.extend(result)

        report.triggers = rank_triggers(report.triggers)
        if report.triggers:
            _logger.info(
                "Detected %d trigger(s): %s",
                len(report.triggers),
                ", ".join(t.kind.value for t in report.triggers),
            )
        return report
