"""
ORM models for production batches and their steps.

Contract:
    ProductionBatchModel and ProductionStepModel persist a production run
    and its ordered step snapshot.  Each has a ``to_dto()`` method returning
    the frozen domain snapshot.

Architecture: production_batch/models. Imports from production_kernel.db only.

Invariants enforced:
    - ``(batch_id, step_index)`` is UNIQUE: the step index is the execution
      order.
    - Both tables carry a ``version`` column registered as the mapper's
      ``version_id_col``.  A flush that would overwrite a newer row raises
      StaleDataError instead.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from production_kernel.db.base import TrackedBase
from production_kernel.db.types import UTCDateTime

if TYPE_CHECKING:
    from production_batch.domain.types import BatchSnapshot, StepSnapshot


class ProductionBatchModel(TrackedBase):
    """One production run instantiated from a workflow template."""

    __tablename__ = "production_batches"

    __table_args__ = (
        Index("ix_production_batches_status", "status"),
        Index("ix_production_batches_workflow", "workflow_id"),
        Index("ix_production_batches_planned_start", "planned_start_time"),
        CheckConstraint("planned_quantity >= 1", name="ck_production_batches_quantity"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    workflow_id: Mapped[str] = mapped_column(String(200), nullable=False)
    product_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    planned_start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    planned_end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    actual_start_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    actual_end_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    planned_quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    actual_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit: Mapped[str] = mapped_column(String(50), default="pieces", nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="planned", nullable=False)
    current_step_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    priority: Mapped[str] = mapped_column(String(50), default="medium", nullable=False)
    assigned_staff_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    required_equipment: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    quality_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_duration_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batch_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    steps: Mapped[list["ProductionStepModel"]] = relationship(
        "ProductionStepModel",
        back_populates="batch",
        order_by="ProductionStepModel.step_index",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> BatchSnapshot:
        from production_batch.domain.types import (
            BatchPriority,
            BatchSnapshot,
            BatchStatus,
        )

        return BatchSnapshot(
            batch_id=self.id,
            name=self.name,
            workflow_id=self.workflow_id,
            status=BatchStatus(self.status),
            planned_start_time=self.planned_start_time,
            planned_end_time=self.planned_end_time,
            planned_quantity=self.planned_quantity,
            unit=self.unit,
            priority=BatchPriority(self.priority),
            current_step_index=self.current_step_index,
            product_id=self.product_id,
            actual_start_time=self.actual_start_time,
            actual_end_time=self.actual_end_time,
            actual_quantity=self.actual_quantity,
            assigned_staff_ids=tuple(self.assigned_staff_ids or ()),
            required_equipment=tuple(self.required_equipment or ()),
            notes=self.notes,
            quality_notes=self.quality_notes,
            estimated_duration_minutes=self.estimated_duration_minutes,
            metadata=dict(self.batch_metadata or {}),
            created_at=self.created_at,
            created_by=self.created_by_id,
            version=self.version,
        )


class ProductionStepModel(TrackedBase):
    """One step of a batch, snapshotted from the template at creation."""

    __tablename__ = "production_steps"

    __table_args__ = (
        UniqueConstraint("batch_id", "step_index", name="uq_production_steps_batch_index"),
        Index("ix_production_steps_batch_status", "batch_id", "status"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_production_steps_progress"),
    )

    batch_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("production_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    step_type: Mapped[str] = mapped_column(String(50), default="active", nullable=False)
    planned_start_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    planned_end_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    actual_start_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    actual_end_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    planned_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="pending", nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    activities: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    completed_activities: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    conditions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    parameters: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    actual_parameters: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    required_equipment: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    quality_check_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quality_check_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quality_results: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    has_issues: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    issues: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    repeat_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_repeat: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    completed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    batch: Mapped["ProductionBatchModel"] = relationship(
        "ProductionBatchModel",
        back_populates="steps",
        foreign_keys=[batch_id],
    )

    def apply(self, changes: dict[str, Any]) -> None:
        """Assign planned field changes (enum values stored as strings)."""
        for key, value in changes.items():
            if key == "status":
                value = str(getattr(value, "value", value))
            setattr(self, key, value)

    def to_dto(self) -> StepSnapshot:
        from production_batch.domain.types import StepSnapshot, StepStatus

        return StepSnapshot(
            step_id=self.id,
            batch_id=self.batch_id,
            step_index=self.step_index,
            step_name=self.step_name,
            step_type=self.step_type,
            status=StepStatus(self.status),
            planned_duration_minutes=self.planned_duration_minutes,
            planned_start_time=self.planned_start_time,
            planned_end_time=self.planned_end_time,
            actual_start_time=self.actual_start_time,
            actual_end_time=self.actual_end_time,
            progress=self.progress,
            activities=tuple(self.activities or ()),
            completed_activities=tuple(self.completed_activities or ()),
            conditions=tuple(dict(c) for c in self.conditions or ()),
            parameters=dict(self.parameters or {}),
            actual_parameters=dict(self.actual_parameters or {}),
            required_equipment=tuple(self.required_equipment or ()),
            location=self.location,
            quality_check_required=self.quality_check_required,
            quality_check_completed=self.quality_check_completed,
            quality_results=dict(self.quality_results or {}),
            has_issues=self.has_issues,
            issues=tuple(dict(i) for i in self.issues or ()),
            notes=self.notes,
            workflow_notes=self.workflow_notes,
            repeat_count=self.repeat_count,
            current_repeat=self.current_repeat,
            completed_by=self.completed_by,
            version=self.version,
        )
