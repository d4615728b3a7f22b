"""Plan Store — the single authoritative pointer to the current Plan.

Readers take ``store.current`` and keep that reference for as long as
they like; the object they hold is never modified. The writer path
(``commit``) is serialized with a lock and ends in a plain attribute
assignment, so a reader sees either the old snapshot or the new one,
never a mix.
"""

from __future__ import annotations

import asyncio
import logging

from weft.exceptions import PlanStoreError
from weft.plan.graph import DependencyGraph
from weft.plan.models import Plan

_logger = logging.getLogger(__name__)


class PlanStore:
    """Holds the current Plan snapshot and every version before it."""

    def __init__(self, initial: Plan) -> None:
        if initial.structural_errors():
            raise PlanStoreError(
                f"Initial plan is malformed: {initial.structural_errors()[0]}"
            )
        if not DependencyGraph(initial.tasks, initial.dependencies).is_acyclic():
            raise PlanStoreError("Initial plan has a dependency cycle")
        self._current = initial
        self._history: list[Plan] = [initial]
        self._lock = asyncio.Lock()
        self._retired = False

    @property
    def current(self) -> Plan:
        return self._current

    @property
    def version(self) -> int:
        return self._current.version

    @property
    def retired(self) -> bool:
        return self._retired

    def history(self) -> list[Plan]:
        """All versions, oldest first."""
        return list(self._history)

    def get(self, version: int) -> Plan | None:
        for plan in self._history:
            if plan.version == version:
                return plan
        return None

    async def commit(self, candidate: Plan, base_version: int) -> Plan:
        """Swap in ``candidate`` as the next version.

        ``base_version`` is the version the candidate was derived from;
        a mismatch means another writer got there first.
        """
        async with self._lock:
            if self._retired:
                raise PlanStoreError("Plan store is retired")
            if base_version != self._current.version:
                raise PlanStoreError(
                    f"Stale candidate: based on v{base_version}, "
                    f"current is v{self._current.version}"
                )
            accepted = candidate.evolve(version=self._current.version + 1)
            if accepted.id != self._current.id:
                # A replacement: the old plan stays in history, marked superseded
                self._history[-1] = self._current.evolve(superseded_by=accepted.id)
            self._history.append(accepted)
            self._current = accepted
        _logger.info("Plan %s advanced to v%d", accepted.id, accepted.version)
        return accepted

    async def retire(self) -> None:
        """Close the store once every goal is achieved."""
        async with self._lock:
            self._retired = True
        _logger.info("Plan %s retired at v%d", self._current.id, self._current.version)

    def __repr__(self) -> str:
        return f"PlanStore(plan={self._current.id}, version={self._current.version})"
