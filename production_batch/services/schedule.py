"""
ScheduleAggregator -- day-level production plans.

Contract:
    A schedule groups the batches planned for one calendar day together
    with the staff shifts, equipment and targets for that day.
    ``plan_day()`` creates the schedule and all of its batches in the
    caller's transaction.

Architecture: production_batch/services.  Uses BatchFactory for batch
    creation; imports models, domain types and the kernel.

Invariants enforced:
    - At most one schedule per date (checked up front and by the UNIQUE
      constraint on ``schedule_date``).
    - No schedule is created for a date before the clock's today.
    - ``total_staff_hours`` is derived from the shifts, never supplied.
    - Status moves only along the schedule transition table.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from production_batch.domain.types import (
    BatchRequest,
    BatchWithSteps,
    DayPlan,
    ScheduleSnapshot,
    ScheduleStatus,
    ScheduleType,
    StaffShift,
)
from production_batch.models.batch import ProductionBatchModel
from production_batch.models.schedule import ProductionScheduleModel
from production_batch.services.factory import BatchFactory
from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.exceptions import (
    BatchNotFoundError,
    DuplicateScheduleForDateError,
    InvalidScheduleError,
    ScheduleNotFoundError,
)
from production_kernel.logging_config import get_logger

logger = get_logger("batch.schedule")

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

SCHEDULE_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.DRAFT: frozenset({ScheduleStatus.PLANNED, ScheduleStatus.CANCELLED}),
    ScheduleStatus.PLANNED: frozenset({ScheduleStatus.ACTIVE, ScheduleStatus.CANCELLED}),
    ScheduleStatus.ACTIVE: frozenset({ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED}),
    ScheduleStatus.COMPLETED: frozenset(),
    ScheduleStatus.CANCELLED: frozenset({ScheduleStatus.DRAFT}),
}

_CLOSED = frozenset({ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED})

ShiftInput = Mapping[Any, Mapping[str, Any]] | Iterable[StaffShift]


def clock_minutes(value: str) -> int:
    """Minutes after midnight for an ``HH:MM`` string."""
    match = _CLOCK_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise InvalidScheduleError(f"invalid time {value!r}, expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise InvalidScheduleError(f"invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


def normalize_shifts(staff_shifts: ShiftInput | None) -> dict[str, dict[str, Any]]:
    """Shifts keyed by staff id (as string), each with start/end/role."""
    if not staff_shifts:
        return {}
    if isinstance(staff_shifts, Mapping):
        items = [(str(k), dict(v)) for k, v in staff_shifts.items()]
    else:
        items = [
            (str(s.staff_id), {"start": s.start, "end": s.end, "role": s.role})
            for s in staff_shifts
        ]

    shifts: dict[str, dict[str, Any]] = {}
    for staff_id, shift in items:
        if not shift.get("start") or not shift.get("end"):
            raise InvalidScheduleError(f"shift for staff {staff_id} needs start and end")
        clock_minutes(shift["start"])
        clock_minutes(shift["end"])
        shifts[staff_id] = {
            "start": shift["start"],
            "end": shift["end"],
            "role": shift.get("role"),
        }
    return shifts


def compute_staff_hours(staff_shifts: ShiftInput | None) -> float:
    """Total scheduled staff hours; a shift ending before it starts counts 0."""
    total = 0
    for shift in normalize_shifts(staff_shifts).values():
        total += max(clock_minutes(shift["end"]) - clock_minutes(shift["start"]), 0)
    return round(total / 60, 2)


def _staff_ids(shifts: dict[str, dict[str, Any]]) -> list[int | str]:
    return [int(k) if k.isdigit() else k for k in shifts]


class ScheduleAggregator:
    """Creates and maintains day-level production schedules.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT check that staff or equipment cover the planned batches.
    """

    def __init__(
        self,
        session: Session,
        factory: BatchFactory,
        clock: Clock | None = None,
    ):
        self._session = session
        self._factory = factory
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create_schedule(
        self,
        schedule_date: date,
        staff_shifts: ShiftInput | None = None,
        equipment: Iterable[str] = (),
        targets: Mapping[str, Any] | None = None,
        schedule_type: ScheduleType | str = ScheduleType.DAILY,
        workday_start: str = "06:00",
        workday_end: str = "18:00",
        notes: str | None = None,
        *,
        actor_id: int,
    ) -> ScheduleSnapshot:
        """Create a draft schedule for one day.

        Raises:
            DuplicateScheduleForDateError: a schedule exists for the date.
            InvalidScheduleError: past date, bad workday, bad type or a
                shift without start/end.
        """
        if not isinstance(schedule_date, date):
            raise InvalidScheduleError("schedule_date must be a date")
        if schedule_date < self._clock.today():
            raise InvalidScheduleError(
                f"cannot schedule production for past date {schedule_date.isoformat()}"
            )
        try:
            kind = ScheduleType(getattr(schedule_type, "value", schedule_type))
        except ValueError:
            raise InvalidScheduleError(f"unknown schedule type {schedule_type!r}") from None

        workday_minutes = clock_minutes(workday_end) - clock_minutes(workday_start)
        if workday_minutes <= 0:
            raise InvalidScheduleError("workday must end after it starts")
        shifts = normalize_shifts(staff_shifts)

        existing = self._find_by_date(schedule_date)
        if existing is not None:
            raise DuplicateScheduleForDateError(schedule_date.isoformat(), existing.id)

        schedule = ProductionScheduleModel(
            schedule_date=schedule_date,
            schedule_type=kind.value,
            workday_start_time=workday_start,
            workday_end_time=workday_end,
            workday_minutes=workday_minutes,
            available_staff_ids=_staff_ids(shifts),
            staff_shifts=shifts,
            total_staff_hours=compute_staff_hours(shifts),
            available_equipment=list(equipment),
            planned_batch_ids=[],
            daily_targets=dict(targets or {}),
            estimated_production_time=0,
            status=ScheduleStatus.DRAFT.value,
            notes=notes,
            created_by_id=actor_id,
        )
        self._session.add(schedule)
        try:
            self._session.flush()
        except IntegrityError as exc:
            # Lost a race with another writer for the same date.
            raise DuplicateScheduleForDateError(schedule_date.isoformat(), -1) from exc

        logger.info(
            "schedule_created",
            extra={
                "schedule_id": schedule.id,
                "schedule_date": schedule_date,
                "staff_count": len(shifts),
                "total_staff_hours": schedule.total_staff_hours,
                "actor": actor_id,
            },
        )
        return schedule.to_dto()

    def plan_day(
        self,
        schedule_date: date,
        requests: Iterable[BatchRequest],
        *,
        actor_id: int,
        staff_shifts: ShiftInput | None = None,
        equipment: Iterable[str] = (),
        targets: Mapping[str, Any] | None = None,
        workday_start: str = "06:00",
        workday_end: str = "18:00",
        notes: str | None = None,
    ) -> DayPlan:
        """Create the day's schedule and every requested batch in one unit.

        Any failure propagates; the caller's rollback discards the
        schedule together with batches created before the failure.
        """
        schedule = self.create_schedule(
            schedule_date,
            staff_shifts,
            equipment,
            targets,
            workday_start=workday_start,
            workday_end=workday_end,
            notes=notes,
            actor_id=actor_id,
        )
        batches: list[BatchWithSteps] = []
        for request in requests:
            created = self._factory.create_from_request(request, actor_id)
            batches.append(created)
            schedule = self.attach_batch(schedule.schedule_id, created.batch_id, actor_id=actor_id)

        logger.info(
            "day_planned",
            extra={
                "schedule_id": schedule.schedule_id,
                "schedule_date": schedule_date,
                "batch_count": len(batches),
                "estimated_production_time": schedule.estimated_production_time,
            },
        )
        return DayPlan(schedule=schedule, batches=tuple(batches))

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def attach_batch(
        self, schedule_id: int, batch_id: int, *, actor_id: int
    ) -> ScheduleSnapshot:
        """Add a batch to the schedule; attaching twice is a no-op."""
        schedule = self._load(schedule_id)
        if ScheduleStatus(schedule.status) in _CLOSED:
            raise InvalidScheduleError(
                f"cannot attach batches to a {schedule.status} schedule"
            )
        batch = self._session.get(ProductionBatchModel, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        planned = list(schedule.planned_batch_ids or ())
        if batch_id in planned:
            return schedule.to_dto()
        schedule.planned_batch_ids = planned + [batch_id]
        schedule.estimated_production_time = (
            schedule.estimated_production_time + batch.estimated_duration_minutes
        )
        schedule.updated_by_id = actor_id
        self._session.flush()
        return schedule.to_dto()

    def update_schedule(
        self,
        schedule_id: int,
        *,
        actor_id: int,
        staff_shifts: ShiftInput | None = None,
        equipment: Iterable[str] | None = None,
        targets: Mapping[str, Any] | None = None,
        notes: str | None = None,
    ) -> ScheduleSnapshot:
        """Edit the resources of an open schedule.

        Each given argument replaces the stored value; ``None`` leaves it.
        New shifts re-derive ``available_staff_ids`` and
        ``total_staff_hours``.

        Raises:
            ScheduleNotFoundError: unknown schedule.
            InvalidScheduleError: schedule is completed or cancelled, or a
                shift is malformed.
        """
        schedule = self._load(schedule_id)
        if ScheduleStatus(schedule.status) in _CLOSED:
            raise InvalidScheduleError(f"cannot edit a {schedule.status} schedule")

        changed: list[str] = []
        if staff_shifts is not None:
            shifts = normalize_shifts(staff_shifts)
            schedule.staff_shifts = shifts
            schedule.available_staff_ids = _staff_ids(shifts)
            schedule.total_staff_hours = compute_staff_hours(shifts)
            changed.append("staff_shifts")
        if equipment is not None:
            schedule.available_equipment = list(equipment)
            changed.append("available_equipment")
        if targets is not None:
            schedule.daily_targets = dict(targets)
            changed.append("daily_targets")
        if notes is not None:
            schedule.notes = notes
            changed.append("notes")
        if not changed:
            return schedule.to_dto()

        schedule.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "schedule_updated",
            extra={
                "schedule_id": schedule.id,
                "fields": changed,
                "total_staff_hours": schedule.total_staff_hours,
                "actor": actor_id,
            },
        )
        return schedule.to_dto()

    def update_schedule_status(
        self,
        schedule_id: int,
        status: ScheduleStatus | str,
        *,
        actor_id: int,
    ) -> ScheduleSnapshot:
        schedule = self._load(schedule_id)
        try:
            target = ScheduleStatus(getattr(status, "value", status))
        except ValueError:
            raise InvalidScheduleError(f"unknown schedule status {status!r}") from None
        current = ScheduleStatus(schedule.status)
        if target not in SCHEDULE_TRANSITIONS[current]:
            raise InvalidScheduleError(
                f"cannot move schedule from {current.value} to {target.value}"
            )
        schedule.status = target.value
        schedule.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "schedule_status_changed",
            extra={
                "schedule_id": schedule.id,
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return schedule.to_dto()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_schedule(self, schedule_id: int) -> ScheduleSnapshot:
        return self._load(schedule_id).to_dto()

    def get_schedule_for_date(self, schedule_date: date) -> ScheduleSnapshot:
        schedule = self._find_by_date(schedule_date)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_date.isoformat())
        return schedule.to_dto()

    def list_schedules(
        self, start: date | None = None, end: date | None = None
    ) -> tuple[ScheduleSnapshot, ...]:
        stmt = select(ProductionScheduleModel).order_by(ProductionScheduleModel.schedule_date)
        if start is not None:
            stmt = stmt.where(ProductionScheduleModel.schedule_date >= start)
        if end is not None:
            stmt = stmt.where(ProductionScheduleModel.schedule_date <= end)
        return tuple(s.to_dto() for s in self._session.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _load(self, schedule_id: int) -> ProductionScheduleModel:
        schedule = self._session.get(ProductionScheduleModel, schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(str(schedule_id))
        return schedule

    def _find_by_date(self, schedule_date: date) -> ProductionScheduleModel | None:
        return self._session.execute(
            select(ProductionScheduleModel).where(
                ProductionScheduleModel.schedule_date == schedule_date
            )
        ).scalar_one_or_none()
