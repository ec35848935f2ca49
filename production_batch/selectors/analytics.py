"""
Module: production_batch.selectors.analytics
Responsibility: Production KPIs over a date range of batches: volume and
    outcome, timing against plan, quality, and per-workflow breakdowns.

All figures are derived from batch and step rows at query time.  A batch
belongs to a range by its ``planned_start_time``.  Rates are percentages
rounded to one decimal; an empty population yields 0.0, never a division
error.

Timing classification (completed batches only), with
``delay = actual_end_time - planned_end_time`` in minutes:

    delay >  tolerance   -> delayed
    delay < -tolerance   -> early
    otherwise            -> on time
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from production_batch.domain.types import BatchSnapshot, BatchStatus, StepSnapshot
from production_batch.models.batch import ProductionBatchModel, ProductionStepModel
from production_batch.selectors.base import BaseSelector, day_bounds
from production_kernel.domain.clock import Clock, SystemClock

DEFAULT_DELAY_TOLERANCE_MINUTES = 15


def _rate(part: int | float, whole: int | float) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 1)


def _mean(values: list[int]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 1)


@dataclass(frozen=True)
class ProductionOverview:
    total_batches: int
    by_status: dict[str, int]
    completion_rate: float
    failure_rate: float
    planned_quantity: int
    produced_quantity: int
    efficiency: float  # produced vs planned, completed batches only


@dataclass(frozen=True)
class TimingMetrics:
    on_time: int
    delayed: int
    early: int
    on_time_rate: float
    average_delay_minutes: float | None
    currently_delayed: int
    tolerance_minutes: int


@dataclass(frozen=True)
class QualityMetrics:
    total_steps: int
    steps_with_issues: int
    quality_checks_required: int
    quality_checks_completed: int
    issue_rate: float
    check_completion_rate: float


@dataclass(frozen=True)
class WorkflowMetrics:
    workflow_id: str
    total_batches: int
    completed: int
    failed: int
    completion_rate: float
    average_duration_minutes: float | None


@dataclass(frozen=True)
class ProductionReport:
    start: date | None
    end: date | None
    overview: ProductionOverview
    by_priority: dict[str, int]
    average_duration_minutes: float | None
    timing: TimingMetrics
    quality: QualityMetrics
    workflows: tuple[WorkflowMetrics, ...] = field(default_factory=tuple)


class ProductionAnalytics(BaseSelector[ProductionBatchModel]):
    """Read-only production metrics.

    Non-goals:
        - No caching or materialized aggregates; every call re-reads rows.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        delay_tolerance_minutes: int = DEFAULT_DELAY_TOLERANCE_MINUTES,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._tolerance = delay_tolerance_minutes

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def overview(self, start: date | None = None, end: date | None = None) -> ProductionOverview:
        return self._overview(self._batches(start, end))

    def by_priority(self, start: date | None = None, end: date | None = None) -> dict[str, int]:
        return dict(Counter(b.priority.value for b in self._batches(start, end)))

    def average_duration(
        self, start: date | None = None, end: date | None = None
    ) -> float | None:
        """Mean actual minutes of completed batches."""
        return self._average_duration(self._batches(start, end))

    def timing(self, start: date | None = None, end: date | None = None) -> TimingMetrics:
        return self._timing(self._batches(start, end))

    def quality(self, start: date | None = None, end: date | None = None) -> QualityMetrics:
        batches = self._batches(start, end)
        return self._quality(self._steps([b.batch_id for b in batches]))

    def workflows(
        self, start: date | None = None, end: date | None = None
    ) -> tuple[WorkflowMetrics, ...]:
        return self._workflows(self._batches(start, end))

    def report(self, start: date | None = None, end: date | None = None) -> ProductionReport:
        """All metrics over one consistent read of the range."""
        batches = self._batches(start, end)
        return ProductionReport(
            start=start,
            end=end,
            overview=self._overview(batches),
            by_priority=dict(Counter(b.priority.value for b in batches)),
            average_duration_minutes=self._average_duration(batches),
            timing=self._timing(batches),
            quality=self._quality(self._steps([b.batch_id for b in batches])),
            workflows=self._workflows(batches),
        )

    # -------------------------------------------------------------------------
    # Internal: loading
    # -------------------------------------------------------------------------

    def _batches(self, start: date | None, end: date | None) -> list[BatchSnapshot]:
        stmt = select(ProductionBatchModel).order_by(ProductionBatchModel.id)
        lower, upper = day_bounds(start, end)
        if lower is not None:
            stmt = stmt.where(ProductionBatchModel.planned_start_time >= lower)
        if upper is not None:
            stmt = stmt.where(ProductionBatchModel.planned_start_time < upper)
        return [b.to_dto() for b in self.session.execute(stmt).scalars()]

    def _steps(self, batch_ids: list[int]) -> list[StepSnapshot]:
        if not batch_ids:
            return []
        stmt = select(ProductionStepModel).where(ProductionStepModel.batch_id.in_(batch_ids))
        return [s.to_dto() for s in self.session.execute(stmt).scalars()]

    # -------------------------------------------------------------------------
    # Internal: computation
    # -------------------------------------------------------------------------

    @staticmethod
    def _overview(batches: list[BatchSnapshot]) -> ProductionOverview:
        counts = Counter(b.status.value for b in batches)
        completed = [b for b in batches if b.status == BatchStatus.COMPLETED]
        planned_done = sum(b.planned_quantity for b in completed)
        produced = sum(b.actual_quantity or 0 for b in completed)
        return ProductionOverview(
            total_batches=len(batches),
            by_status={s.value: counts.get(s.value, 0) for s in BatchStatus},
            completion_rate=_rate(counts.get(BatchStatus.COMPLETED.value, 0), len(batches)),
            failure_rate=_rate(counts.get(BatchStatus.FAILED.value, 0), len(batches)),
            planned_quantity=sum(b.planned_quantity for b in batches),
            produced_quantity=produced,
            efficiency=_rate(produced, planned_done),
        )

    @staticmethod
    def _average_duration(batches: list[BatchSnapshot]) -> float | None:
        return _mean([
            b.actual_minutes
            for b in batches
            if b.status == BatchStatus.COMPLETED and b.actual_minutes is not None
        ])

    def _timing(self, batches: list[BatchSnapshot]) -> TimingMetrics:
        on_time = delayed = early = 0
        delays: list[int] = []
        for batch in batches:
            if batch.status != BatchStatus.COMPLETED or batch.actual_end_time is None:
                continue
            delay = round((batch.actual_end_time - batch.planned_end_time).total_seconds() / 60)
            if delay > self._tolerance:
                delayed += 1
                delays.append(delay)
            elif delay < -self._tolerance:
                early += 1
            else:
                on_time += 1

        now = self._clock.now()
        currently = sum(
            1
            for b in batches
            if not b.status.is_terminal and b.delay_minutes(now) > self._tolerance
        )
        return TimingMetrics(
            on_time=on_time,
            delayed=delayed,
            early=early,
            on_time_rate=_rate(on_time, on_time + delayed + early),
            average_delay_minutes=_mean(delays),
            currently_delayed=currently,
            tolerance_minutes=self._tolerance,
        )

    @staticmethod
    def _quality(steps: list[StepSnapshot]) -> QualityMetrics:
        with_issues = sum(1 for s in steps if s.has_issues)
        required = [s for s in steps if s.quality_check_required]
        completed = sum(1 for s in steps if s.quality_check_completed)
        return QualityMetrics(
            total_steps=len(steps),
            steps_with_issues=with_issues,
            quality_checks_required=len(required),
            quality_checks_completed=completed,
            issue_rate=_rate(with_issues, len(steps)),
            check_completion_rate=_rate(
                sum(1 for s in required if s.quality_check_completed), len(required)
            ),
        )

    @staticmethod
    def _workflows(batches: list[BatchSnapshot]) -> tuple[WorkflowMetrics, ...]:
        grouped: dict[str, list[BatchSnapshot]] = defaultdict(list)
        for batch in batches:
            grouped[batch.workflow_id].append(batch)

        metrics = []
        for workflow_id in sorted(grouped):
            group = grouped[workflow_id]
            completed = sum(1 for b in group if b.status == BatchStatus.COMPLETED)
            metrics.append(
                WorkflowMetrics(
                    workflow_id=workflow_id,
                    total_batches=len(group),
                    completed=completed,
                    failed=sum(1 for b in group if b.status == BatchStatus.FAILED),
                    completion_rate=_rate(completed, len(group)),
                    average_duration_minutes=ProductionAnalytics._average_duration(group),
                )
            )
        return tuple(metrics)
