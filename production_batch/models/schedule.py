"""
ORM model for day-level production schedules.

Invariants enforced:
    - ``schedule_date`` is UNIQUE: one schedule per calendar day.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Date, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from production_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from production_batch.domain.types import ScheduleSnapshot


class ProductionScheduleModel(TrackedBase):
    """Staff, equipment and targets planned for one day."""

    __tablename__ = "production_schedules"

    schedule_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    schedule_type: Mapped[str] = mapped_column(String(50), default="daily", nullable=False)
    workday_start_time: Mapped[str] = mapped_column(String(5), default="06:00", nullable=False)
    workday_end_time: Mapped[str] = mapped_column(String(5), default="18:00", nullable=False)
    workday_minutes: Mapped[int] = mapped_column(Integer, default=720, nullable=False)
    available_staff_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    staff_shifts: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    total_staff_hours: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    available_equipment: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    planned_batch_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    daily_targets: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    estimated_production_time: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="draft", nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self) -> ScheduleSnapshot:
        from production_batch.domain.types import (
            ScheduleSnapshot,
            ScheduleStatus,
            ScheduleType,
        )

        return ScheduleSnapshot(
            schedule_id=self.id,
            schedule_date=self.schedule_date,
            schedule_type=ScheduleType(self.schedule_type),
            status=ScheduleStatus(self.status),
            workday_start_time=self.workday_start_time,
            workday_end_time=self.workday_end_time,
            workday_minutes=self.workday_minutes,
            available_staff_ids=tuple(self.available_staff_ids or ()),
            staff_shifts={k: dict(v) for k, v in (self.staff_shifts or {}).items()},
            total_staff_hours=self.total_staff_hours,
            available_equipment=tuple(self.available_equipment or ()),
            planned_batch_ids=tuple(self.planned_batch_ids or ()),
            daily_targets=dict(self.daily_targets or {}),
            estimated_production_time=self.estimated_production_time,
            notes=self.notes,
            version=self.version,
        )
