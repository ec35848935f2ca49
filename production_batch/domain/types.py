"""
production_batch.domain.types -- Pure frozen dataclasses for production runs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.  ORM models convert to these via ``to_dto()``;
services return them so callers never hold live ORM rows.

Invariants enforced:
    - All DTOs are frozen (immutable snapshots of persisted state).
    - Derived views (overdue, delay, progress) are computed from a supplied
      ``now``, never from the wall clock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


# =============================================================================
# Status enums
# =============================================================================


class BatchStatus(str, Enum):
    """Batch-level lifecycle status."""

    PLANNED = "planned"  # Created, steps materialized
    READY = "ready"  # Released to the floor, not yet started
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"  # Paused by an operator or a critical issue
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_BATCH


_TERMINAL_BATCH = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED})


class StepStatus(str, Enum):
    """Per-step lifecycle status."""

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"  # Side state of in_progress
    COMPLETED = "completed"
    SKIPPED = "skipped"  # Neither success nor failure
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STEP

    @property
    def is_active(self) -> bool:
        return self in (StepStatus.READY, StepStatus.IN_PROGRESS, StepStatus.WAITING)


_TERMINAL_STEP = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED})


class BatchPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ScheduleStatus(str, Enum):
    DRAFT = "draft"
    PLANNED = "planned"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ScheduleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    SPECIAL = "special"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TransitionOrigin(str, Enum):
    """Who is asking for a step transition."""

    CLIENT = "client"  # Operator via the surrounding API
    ENGINE = "engine"  # Progression engine propagation or cancellation


def _minutes_late(planned_end: datetime | None, now: datetime) -> int:
    if planned_end is None or now <= planned_end:
        return 0
    return round((now - planned_end).total_seconds() / 60)


# =============================================================================
# Step DTOs
# =============================================================================


@dataclass(frozen=True)
class StepSnapshot:
    """Immutable snapshot of one production step."""

    step_id: int
    batch_id: int
    step_index: int
    step_name: str
    step_type: str
    status: StepStatus
    planned_duration_minutes: int
    planned_start_time: datetime | None = None
    planned_end_time: datetime | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    progress: int = 0
    activities: tuple[str, ...] = ()
    completed_activities: tuple[str, ...] = ()
    conditions: tuple[dict[str, str], ...] = ()
    parameters: dict[str, Any] = field(default_factory=dict)
    actual_parameters: dict[str, Any] = field(default_factory=dict)
    required_equipment: tuple[str, ...] = ()
    location: str | None = None
    quality_check_required: bool = False
    quality_check_completed: bool = False
    quality_results: dict[str, Any] = field(default_factory=dict)
    has_issues: bool = False
    issues: tuple[dict[str, Any], ...] = ()
    notes: str | None = None
    workflow_notes: str | None = None
    repeat_count: int = 1
    current_repeat: int = 1
    completed_by: int | None = None
    version: int = 1

    def is_overdue(self, now: datetime) -> bool:
        if self.status.is_terminal or self.planned_end_time is None:
            return False
        return now > self.planned_end_time

    def delay_minutes(self, now: datetime) -> int:
        if not self.is_overdue(now):
            return 0
        return _minutes_late(self.planned_end_time, now)

    @property
    def activity_progress(self) -> int:
        if not self.activities:
            return 100
        done = len(set(self.completed_activities) & set(self.activities))
        return round(done / len(self.activities) * 100)

    @property
    def next_activity(self) -> str | None:
        for activity in self.activities:
            if activity not in self.completed_activities:
                return activity
        return None

    def needs_attention(self, now: datetime) -> bool:
        return (
            self.has_issues
            or self.is_overdue(now)
            or (
                self.quality_check_required
                and not self.quality_check_completed
                and self.status == StepStatus.COMPLETED
            )
        )


# =============================================================================
# Batch DTOs
# =============================================================================


@dataclass(frozen=True)
class BatchSnapshot:
    """Immutable snapshot of a production batch (without its steps)."""

    batch_id: int
    name: str
    workflow_id: str
    status: BatchStatus
    planned_start_time: datetime
    planned_end_time: datetime
    planned_quantity: int
    unit: str = "pieces"
    priority: BatchPriority = BatchPriority.MEDIUM
    current_step_index: int = 0
    product_id: int | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    actual_quantity: int | None = None
    assigned_staff_ids: tuple[int, ...] = ()
    required_equipment: tuple[str, ...] = ()
    notes: str | None = None
    quality_notes: str | None = None
    estimated_duration_minutes: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    created_by: int | None = None
    version: int = 1

    @property
    def planned_minutes(self) -> int:
        return round((self.planned_end_time - self.planned_start_time).total_seconds() / 60)

    @property
    def actual_minutes(self) -> int | None:
        if self.actual_start_time is None or self.actual_end_time is None:
            return None
        return round((self.actual_end_time - self.actual_start_time).total_seconds() / 60)

    def is_overdue(self, now: datetime) -> bool:
        if self.status.is_terminal:
            return False
        return now > self.planned_end_time

    def delay_minutes(self, now: datetime) -> int:
        if not self.is_overdue(now):
            return 0
        return _minutes_late(self.planned_end_time, now)


@dataclass(frozen=True)
class BatchWithSteps:
    """A batch and its ordered step snapshot."""

    batch: BatchSnapshot
    steps: tuple[StepSnapshot, ...]

    @property
    def batch_id(self) -> int:
        return self.batch.batch_id

    @property
    def progress_percent(self) -> int:
        if not self.steps:
            return 0
        done = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        return round(done / len(self.steps) * 100)

    @property
    def current_step(self) -> StepSnapshot | None:
        index = self.batch.current_step_index
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def step_at(self, index: int) -> StepSnapshot:
        return self.steps[index]

    def step_by_id(self, step_id: int) -> StepSnapshot:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class BatchRequest:
    """Batch creation request as handed over by the surrounding API layer."""

    workflow_id: str
    planned_start_time: datetime
    name: str | None = None
    product_id: int | None = None
    planned_quantity: int = 1
    unit: str = "pieces"
    priority: str = BatchPriority.MEDIUM.value
    assigned_staff_ids: tuple[int, ...] = ()
    required_equipment: tuple[str, ...] = ()
    notes: str | None = None
    environment: dict[str, float] | None = None


@dataclass(frozen=True)
class StepUpdate:
    """
    Partial update of one step.  ``None`` means "leave unchanged".

    At most one status transition is applied per update.
    """

    status: StepStatus | str | None = None
    progress: int | None = None
    actual_parameters: dict[str, Any] | None = None
    quality_results: dict[str, Any] | None = None
    notes: str | None = None
    has_issues: bool | None = None
    issues: tuple[dict[str, Any], ...] | None = None
    completed_activities: tuple[str, ...] | None = None


@dataclass(frozen=True)
class IssueHandling:
    """What the engine did about a reported issue."""

    issue: dict[str, Any]
    actions: tuple[str, ...]
    escalated: bool = False
    paused: bool = False


@dataclass(frozen=True)
class QualityCheckResult:
    check_id: str
    step_id: int
    score: int
    passed: bool
    checks: tuple[dict[str, Any], ...]
    checked_at: datetime
    checked_by: int


# =============================================================================
# Schedules
# =============================================================================


@dataclass(frozen=True)
class StaffShift:
    staff_id: int
    start: str  # "HH:MM"
    end: str
    role: str | None = None


@dataclass(frozen=True)
class ScheduleSnapshot:
    """Immutable snapshot of a day-level production plan."""

    schedule_id: int
    schedule_date: date
    schedule_type: ScheduleType
    status: ScheduleStatus
    workday_start_time: str
    workday_end_time: str
    workday_minutes: int
    available_staff_ids: tuple[int, ...] = ()
    staff_shifts: dict[str, dict[str, Any]] = field(default_factory=dict)
    total_staff_hours: float = 0.0
    available_equipment: tuple[str, ...] = ()
    planned_batch_ids: tuple[int, ...] = ()
    daily_targets: dict[str, Any] = field(default_factory=dict)
    estimated_production_time: int = 0
    notes: str | None = None
    version: int = 1


@dataclass(frozen=True)
class DayPlan:
    """Result of planning a whole day: the schedule plus its batches."""

    schedule: ScheduleSnapshot
    batches: tuple[BatchWithSteps, ...]


# =============================================================================
# Events
# =============================================================================


class EventType(str, Enum):
    BATCH_CREATED = "batch.created"
    BATCH_STARTED = "batch.started"
    BATCH_COMPLETED = "batch.completed"
    BATCH_FAILED = "batch.failed"
    BATCH_CANCELLED = "batch.cancelled"
    BATCH_PAUSED = "batch.paused"
    BATCH_RESUMED = "batch.resumed"
    BATCH_ISSUE_REPORTED = "batch.issue_reported"
    STEP_ISSUE_REPORTED = "step.issue_reported"
    STEP_QUALITY_FAILED = "step.quality_failed"


@dataclass(frozen=True)
class ProductionEvent:
    """Outbound "something happened" signal for the notification collaborator."""

    event_type: EventType
    batch_id: int
    batch_name: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
