"""Event Bus — the plan-change feed and the engine's other notifications.

The engine and the context store publish; the context adapter, an
external audit collaborator or a UI subscribe. Patterns are fnmatch
globs: "plan.*" receives both ``plan.changed`` and ``plan.cycle_failed``.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from weft.types import new_id

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

PLAN_CHANGED = "plan.changed"
PLAN_CYCLE_FAILED = "plan.cycle_failed"
CONTEXT_UPDATED = "context.updated"
CONTEXT_OPTIMIZED = "context.optimized"
TRIGGER_DETECTION_ERROR = "trigger.detection_error"


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)

    def matches(self, pattern: str) -> bool:
        return pattern == "*" or fnmatch.fnmatchcase(self.topic, pattern)


class _Subscription(NamedTuple):
    pattern: str
    handler: EventHandler


class EventBus:
    """Async pub/sub. Handlers for one event run concurrently.

    A handler that raises is logged; the others still run and the
    publisher never sees the error.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[_Subscription] = []
        self._history: deque[Event] = deque(maxlen=history_limit)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append(_Subscription(pattern, handler))

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        sub = _Subscription(pattern, handler)
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        event = Event(topic=topic, data=data or {}, source=source)
        self._history.append(event)

        targets = [s for s in self._subscriptions if event.matches(s.pattern)]
        if not targets:
            return event
        outcomes = await asyncio.gather(
            *(s.handler(event) for s in targets), return_exceptions=True
        )
        for sub, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                _logger.error(
                    "Handler %s (%s) failed on %s: %s",
                    getattr(sub.handler, "__qualname__", sub.handler), sub.pattern, topic, outcome,
                )
        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Recent events matching ``topic_filter``, newest first."""
        found: list[Event] = []
        for event in reversed(self._history):
            if len(found) >= limit:
                break
            if event.matches(topic_filter):
                found.append(event)
        return found

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def topics(self) -> list[str]:
        return sorted({e.topic for e in self._history})
