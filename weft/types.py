"""Core types shared across all weft subsystems."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import TypeAlias

# ── ID Types ──────────────────────────────────────────────────────────────────

TaskId: TypeAlias = str
GoalId: TypeAlias = str
PlanId: TypeAlias = str
Edge: TypeAlias = tuple[str, str]  # (source, target): target depends on source


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Plan ──────────────────────────────────────────────────────────────────────


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ── Triggers ──────────────────────────────────────────────────────────────────


class Severity(int, Enum):
    """Ordered severity scale. Comparable with < and >."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class TriggerKind(str, Enum):
    ASSUMPTION_VIOLATION = "assumption_violation"
    REQUIREMENT_CONFLICT = "requirement_conflict"
    CONSTRAINT_VIOLATION = "constraint_violation"
    VELOCITY_ANOMALY = "velocity_anomaly"
    COMPLEXITY_ANOMALY = "complexity_anomaly"
    DEPENDENCY_ANOMALY = "dependency_anomaly"
    ENVIRONMENT_CHANGE = "environment_change"


class StrategyKind(str, Enum):
    REFINEMENT = "refinement"
    RESTRUCTURING = "restructuring"
    REPLACEMENT = "replacement"


# ── Coherence ─────────────────────────────────────────────────────────────────


class IssueKind(str, Enum):
    CIRCULAR_DEPENDENCY = "circular_dependency"
    CONSTRAINT_CONFLICT = "constraint_conflict"
    IMPOSSIBLE_GOAL = "impossible_goal"
    MISSING_DEPENDENCY = "missing_dependency"
    UNNECESSARY_DEPENDENCY = "unnecessary_dependency"
    RESOURCE_OVERALLOC = "resource_overalloc"
    GOAL_MISALIGNMENT = "goal_misalignment"


# Repair order — earlier kinds are repaired first.
REPAIR_ORDER: tuple[IssueKind, ...] = (
    IssueKind.CIRCULAR_DEPENDENCY,
    IssueKind.CONSTRAINT_CONFLICT,
    IssueKind.RESOURCE_OVERALLOC,
    IssueKind.GOAL_MISALIGNMENT,
    IssueKind.MISSING_DEPENDENCY,
    IssueKind.IMPOSSIBLE_GOAL,
    IssueKind.UNNECESSARY_DEPENDENCY,
)

NON_BLOCKING_ISSUES: frozenset[IssueKind] = frozenset({
    IssueKind.UNNECESSARY_DEPENDENCY,
})


# ── Context ───────────────────────────────────────────────────────────────────


class ContextLayer(str, Enum):
    CONVERSATIONAL = "conversational"
    TECHNICAL = "technical"
    PROJECT = "project"
    EXECUTION = "execution"


# ── Observations ──────────────────────────────────────────────────────────────


class ObservationType(str, Enum):
    FILE_ADDED = "file_added"
    FILE_MODIFIED = "file_modified"
    FILE_DELETED = "file_deleted"
    DEPENDENCY_CHANGED = "dependency_changed"
    CONFIG_CHANGED = "config_changed"
    SERVICE_CHANGED = "service_changed"
    USER_MESSAGE = "user_message"
    PROGRESS_REPORT = "progress_report"


# ── Adaptation cycle ─────────────────────────────────────────────────────────


class CycleState(str, Enum):
    STABLE = "stable"
    DETECTING = "detecting"
    STRATEGY_SELECTED = "strategy_selected"
    MUTATED = "mutated"
    VALIDATING = "validating"
    REPAIRING = "repairing"
    REPLACING = "replacing"
    ACCEPTED = "accepted"
    FAILED = "failed"
