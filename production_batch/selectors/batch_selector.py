"""
Module: production_batch.selectors.batch_selector
Responsibility: Read-only batch and step listings for the shop-floor views
    (what is running, what is late, what needs someone to look at it).

Overdue and delay are derived at query time from ``planned_end_time`` and the
supplied ``now``; nothing about lateness is stored.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from production_batch.domain.types import (
    BatchSnapshot,
    BatchStatus,
    StepSnapshot,
    StepStatus,
)
from production_batch.models.batch import ProductionBatchModel, ProductionStepModel
from production_batch.selectors.base import BaseSelector, day_bounds

_ACTIVE_BATCH = (BatchStatus.IN_PROGRESS.value, BatchStatus.WAITING.value)
_OPEN_BATCH = tuple(s.value for s in BatchStatus if not s.is_terminal)


class BatchSelector(BaseSelector[ProductionBatchModel]):
    """Batch and step queries.  Results ordered by planned start."""

    def __init__(self, session: Session):
        super().__init__(session)

    def list_batches(
        self,
        status: BatchStatus | str | Iterable[BatchStatus | str] | None = None,
        workflow_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> tuple[BatchSnapshot, ...]:
        stmt = select(ProductionBatchModel).order_by(
            ProductionBatchModel.planned_start_time, ProductionBatchModel.id
        )
        if status is not None:
            wanted = [status] if isinstance(status, str) else list(status)
            stmt = stmt.where(
                ProductionBatchModel.status.in_([getattr(s, "value", s) for s in wanted])
            )
        if workflow_id is not None:
            stmt = stmt.where(ProductionBatchModel.workflow_id == workflow_id)
        lower, upper = day_bounds(start, end)
        if lower is not None:
            stmt = stmt.where(ProductionBatchModel.planned_start_time >= lower)
        if upper is not None:
            stmt = stmt.where(ProductionBatchModel.planned_start_time < upper)
        return tuple(b.to_dto() for b in self.session.execute(stmt).scalars())

    def active_batches(self) -> tuple[BatchSnapshot, ...]:
        """Batches currently running or paused."""
        return self.list_batches(status=_ACTIVE_BATCH)

    def overdue_batches(self, now: datetime) -> tuple[BatchSnapshot, ...]:
        stmt = (
            select(ProductionBatchModel)
            .where(ProductionBatchModel.status.in_(_OPEN_BATCH))
            .where(ProductionBatchModel.planned_end_time < now)
            .order_by(ProductionBatchModel.planned_end_time)
        )
        return tuple(b.to_dto() for b in self.session.execute(stmt).scalars())

    def steps_needing_attention(self, now: datetime) -> tuple[StepSnapshot, ...]:
        """Steps with issues, running late, or completed without a required check."""
        stmt = (
            select(ProductionStepModel)
            .join(ProductionBatchModel, ProductionStepModel.batch_id == ProductionBatchModel.id)
            .where(ProductionBatchModel.status != BatchStatus.CANCELLED.value)
            .where(ProductionStepModel.status != StepStatus.SKIPPED.value)
            .order_by(ProductionStepModel.batch_id, ProductionStepModel.step_index)
        )
        steps = (s.to_dto() for s in self.session.execute(stmt).scalars())
        return tuple(s for s in steps if s.needs_attention(now))
