"""WeftSession — the explicit owner of one session's planning state.

Constructed at session start and discarded at session end. Every
collaborator receives what it needs from the session by reference;
nothing is reached through module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable

from weft.adaptation.engine import AdaptationEngine, CycleResult
from weft.audit import AuditTrail
from weft.config import WeftSettings, settings as default_settings
from weft.context.adapter import ContextAdapter
from weft.context.models import ContextPiece, ContextSnapshot, RelevantContext
from weft.context.optimizer import ContextOptimizer
from weft.context.query import ContextQueryEngine
from weft.context.store import ContextStore
from weft.events.bus import PLAN_CHANGED, EventBus
from weft.observations import ObservationBatch, parse_batch
from weft.plan.models import Plan, Task
from weft.plan.store import PlanStore
from weft.triggers.environment import EnvironmentSnapshot
from weft.types import ContextLayer

_logger = logging.getLogger(__name__)


class WeftSession:
    """Plan store, context store and the machinery between them."""

    def __init__(
        self,
        plan: Plan,
        config: WeftSettings | None = None,
        *,
        baseline: EnvironmentSnapshot | None = None,
        engine_options: dict[str, Any] | None = None,
    ) -> None:
        self.config = config or default_settings
        self.event_bus = EventBus(self.config.event_history_limit)
        self.audit = AuditTrail(self.config.audit_db_path)
        self.plan_store = PlanStore(plan)
        self.context_store = ContextStore(
            optimizer=ContextOptimizer(
                min_cluster=self.config.compression_min_cluster,
                half_life=self.config.recency_half_life_seconds,
            ),
            event_bus=self.event_bus,
            budget=self.config.context_retention_budget,
            compaction_ratio=self.config.context_compaction_ratio,
        )
        self.engine = AdaptationEngine(
            self.plan_store,
            event_bus=self.event_bus,
            audit=self.audit,
            baseline=baseline,
            config=self.config,
            **(engine_options or {}),
        )
        self.adapter = ContextAdapter(self.context_store, plan_source=lambda: self.plan_store.current)
        self.query = ContextQueryEngine(self.context_store, self.config.recency_half_life_seconds)
        self._started = False

    async def start(self) -> WeftSession:
        if not self._started:
            await self.audit.initialize()
            self.event_bus.subscribe(PLAN_CHANGED, self.adapter.on_plan_changed)
            self._started = True
            _logger.info("Session started on plan %s v%d", self.plan.id, self.plan.version)
        return self

    async def close(self) -> None:
        """Tear down. An in-flight cycle is cancelled before its swap."""
        self.engine.cancel()
        if self._started:
            self.event_bus.unsubscribe(PLAN_CHANGED, self.adapter.on_plan_changed)
            await self.audit.close()
            self._started = False

    async def __aenter__(self) -> WeftSession:
        return await self.start()

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Ingestion ───────────────────────────────────────────────

    async def submit(self, observations: ObservationBatch | Iterable[Any]) -> CycleResult | None:
        """Feed one batch to the engine and to the context store side by side.

        Engine failures are raised after the context side has finished,
        so the context store always reflects the batch.
        """
        await self.start()
        batch = observations if isinstance(observations, ObservationBatch) else parse_batch(observations)
        plan_result, context_result = await asyncio.gather(
            self.engine.submit(batch),
            self.adapter.ingest(batch),
            return_exceptions=True,
        )
        if isinstance(context_result, BaseException):
            _logger.error("Context ingestion failed: %s", context_result)
        if isinstance(plan_result, BaseException):
            raise plan_result
        if isinstance(context_result, BaseException):
            raise context_result
        return plan_result

    # ── Read surface ────────────────────────────────────────────

    @property
    def plan(self) -> Plan:
        return self.plan_store.current

    @property
    def context(self) -> ContextSnapshot:
        return self.context_store.current

    def export(self) -> dict[str, Any]:
        """A consistent plan/context pair, taken without awaiting."""
        plan, context = self.plan_store.current, self.context_store.current
        return {
            "exported_at": datetime.now().isoformat(),
            "plan": plan.export(),
            "context": context.export(),
        }

    def search(
        self,
        query: str,
        layers: Iterable[ContextLayer] | None = None,
        limit: int = 10,
    ) -> list[ContextPiece]:
        return self.query.search(query, layers, limit)

    def get_relevant_context(self, task: Task | str, max_size: int) -> RelevantContext:
        if isinstance(task, str) and task in self.plan.tasks:
            task = self.plan.tasks[task]
        return self.query.get_relevant_context(task, max_size)

    def __repr__(self) -> str:
        return f"WeftSession(plan={self.plan.id} v{self.plan.version}, context v{self.context.version})"
