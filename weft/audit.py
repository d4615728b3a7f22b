"""Audit Trail — append-only record of every adaptation cycle.

Triggers only survive a cycle in their audit form; this is where they
end up, together with the strategy used, the version transition and
the outcome. Backed by SQLite when a path is configured, in-memory
otherwise.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from weft.types import new_id


class AuditEntry(BaseModel):
    """One adaptation cycle, as recorded."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=datetime.now)
    plan_id: str = ""
    action: str = ""  # "cycle_accepted", "cycle_failed", "cycle_cancelled"
    from_version: int = 0
    to_version: int = 0
    strategy: str = ""
    triggers: list[dict[str, Any]] = Field(default_factory=list)
    repair_iterations: int = 0
    escalated: bool = False
    detail: str = ""
    success: bool = True


class AuditTrail:
    """Append-only audit log, optionally persisted to SQLite."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = db_path
        self._entries: list[AuditEntry] = []
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create the audit table if needed."""
        if self._db_path is None:
            return
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS cycle_audit (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                plan_id TEXT,
                action TEXT NOT NULL,
                from_version INTEGER,
                to_version INTEGER,
                strategy TEXT,
                triggers TEXT,
                repair_iterations INTEGER DEFAULT 0,
                escalated INTEGER DEFAULT 0,
                detail TEXT,
                success INTEGER DEFAULT 1
            )
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def record(self, entry: AuditEntry) -> None:
        """Append an entry. Entries are never updated or removed."""
        async with self._lock:
            self._entries.append(entry)
            if self._db:
                await self._db.execute(
                    """INSERT INTO cycle_audit
                       (id, timestamp, plan_id, action, from_version,
                        to_version, strategy, triggers, repair_iterations,
                        escalated, detail, success)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.id,
                        entry.timestamp.isoformat(),
                        entry.plan_id,
                        entry.action,
                        entry.from_version,
                        entry.to_version,
                        entry.strategy,
                        json.dumps(entry.triggers, default=str),
                        entry.repair_iterations,
                        int(entry.escalated),
                        entry.detail,
                        int(entry.success),
                    ),
                )
                await self._db.commit()

    async def log_accepted(
        self,
        plan_id: str,
        from_version: int,
        to_version: int,
        strategy: str,
        triggers: list[dict[str, Any]],
        repair_iterations: int = 0,
        escalated: bool = False,
        detail: str = "",
    ) -> AuditEntry:
        entry = AuditEntry(
            plan_id=plan_id,
            action="cycle_accepted",
            from_version=from_version,
            to_version=to_version,
            strategy=strategy,
            triggers=triggers,
            repair_iterations=repair_iterations,
            escalated=escalated,
            detail=detail[:500],
        )
        await self.record(entry)
        return entry

    async def log_failed(
        self,
        plan_id: str,
        version: int,
        triggers: list[dict[str, Any]],
        error: str,
        action: str = "cycle_failed",
        strategy: str = "",
    ) -> AuditEntry:
        entry = AuditEntry(
            plan_id=plan_id,
            action=action,
            from_version=version,
            to_version=version,
            strategy=strategy,
            triggers=triggers,
            detail=error[:500],
            success=False,
        )
        await self.record(entry)
        return entry

    async def query(self, plan_id: str = "", action: str = "", limit: int = 50) -> list[AuditEntry]:
        """Most recent entries first."""
        results = self._entries
        if plan_id:
            results = [e for e in results if e.plan_id == plan_id]
        if action:
            results = [e for e in results if e.action == action]
        results = sorted(results, key=lambda e: e.timestamp, reverse=True)
        return results[:limit]

    async def count(self) -> int:
        return len(self._entries)

    async def failures(self, limit: int = 50) -> list[AuditEntry]:
        return await self.query(action="cycle_failed", limit=limit)

    def __repr__(self) -> str:
        return f"AuditTrail(entries={len(self._entries)})"
