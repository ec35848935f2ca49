"""
BatchFactory -- instantiates workflow templates as production batches.

Contract:
    ``create()`` resolves a template, resolves every step's duration, and
    persists one ProductionBatchModel (status ``planned``) plus one
    ProductionStepModel per template step (status ``pending``) in the
    caller's transaction.

Architecture: production_batch/services.  Imports from production_batch.domain,
    production_batch.models, production_config and the kernel.

Invariants enforced:
    - planned_end_time - planned_start_time == sum of resolved step minutes.
    - Step indices are exactly 0..N-1 in template order.
    - Activities, conditions, parameters, equipment, location and repeat
      count are copied into the step rows; later template edits or deletes
      do not reach existing batches.
    - Every step starts ``pending``.
    - All timestamps from the injected Clock.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from production_batch.domain.types import (
    BatchPriority,
    BatchRequest,
    BatchStatus,
    BatchWithSteps,
    EventType,
    ProductionEvent,
    StepStatus,
)
from production_batch.events import EventPublisher, LoggingEventPublisher
from production_batch.models.batch import ProductionBatchModel, ProductionStepModel
from production_config.durations import DEFAULT_STEP_MINUTES, resolve_minutes
from production_config.registry import TemplateRegistry
from production_config.schema import StepKind, WorkflowTemplate
from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.exceptions import InvalidBatchRequestError
from production_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.factory")

_PRIORITIES = frozenset(p.value for p in BatchPriority)


class BatchFactory:
    """Creates batches and their step snapshots from templates.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT check staff or equipment availability; those lists are
          advisory.
    """

    def __init__(
        self,
        session: Session,
        registry: TemplateRegistry,
        clock: Clock | None = None,
        publisher: EventPublisher | None = None,
        default_step_minutes: int = DEFAULT_STEP_MINUTES,
    ):
        self._session = session
        self._registry = registry
        self._clock = clock or SystemClock()
        self._publisher = publisher or LoggingEventPublisher()
        self._default_step_minutes = default_step_minutes

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(
        self,
        template_id: str,
        planned_start: datetime,
        quantity: int = 1,
        unit: str = "pieces",
        priority: str = BatchPriority.MEDIUM.value,
        staff_ids: Iterable[int] = (),
        equipment: Iterable[str] = (),
        *,
        actor_id: int,
        name: str | None = None,
        product_id: int | None = None,
        notes: str | None = None,
        environment: Mapping[str, float] | None = None,
    ) -> BatchWithSteps:
        """Create a planned batch with all of its steps.

        Raises:
            TemplateNotFoundError: unknown or malformed template.
            InvalidWorkflowDefinitionError: template fails validation.
            InvalidBatchRequestError: bad start time, quantity, unit,
                priority or staff ids.
        """
        staff = tuple(staff_ids)
        equipment_list = tuple(equipment)
        priority = getattr(priority, "value", priority)
        self._check_request(planned_start, quantity, unit, priority, staff)

        template = self._registry.get(template_id)
        durations = self.resolve_step_minutes(template, environment)
        total = sum(durations)

        batch = ProductionBatchModel(
            name=name or f"{template.name} {planned_start:%Y-%m-%d %H:%M}",
            workflow_id=template.template_id,
            product_id=product_id,
            planned_start_time=planned_start,
            planned_end_time=planned_start + timedelta(minutes=total),
            planned_quantity=quantity,
            unit=unit,
            status=BatchStatus.PLANNED.value,
            current_step_index=0,
            priority=priority,
            assigned_staff_ids=list(staff),
            required_equipment=list(equipment_list),
            notes=notes,
            estimated_duration_minutes=total,
            batch_metadata={
                "template_version": template.version,
                "environment": dict(environment) if environment else None,
            },
            created_by_id=actor_id,
        )
        self._session.add(batch)
        self._session.flush()

        cursor = planned_start
        for step, minutes in zip(template.steps, durations):
            end = cursor + timedelta(minutes=minutes)
            self._session.add(
                ProductionStepModel(
                    batch_id=batch.id,
                    step_index=step.index,
                    step_name=step.name,
                    step_type=step.kind.value,
                    planned_start_time=cursor,
                    planned_end_time=end,
                    planned_duration_minutes=minutes,
                    status=StepStatus.PENDING.value,
                    progress=0,
                    activities=list(step.activities),
                    completed_activities=[],
                    conditions=[c.to_snapshot() for c in step.conditions],
                    parameters=dict(step.params),
                    actual_parameters={},
                    required_equipment=list(step.equipment),
                    location=step.location,
                    quality_check_required=step.kind == StepKind.QUALITY_CHECK,
                    quality_results={},
                    issues=[],
                    workflow_notes=step.notes,
                    repeat_count=step.repeat,
                    current_repeat=1,
                    created_by_id=actor_id,
                )
            )
            cursor = end
        self._session.flush()
        self._session.refresh(batch)

        result = BatchWithSteps(
            batch=batch.to_dto(),
            steps=tuple(s.to_dto() for s in batch.steps),
        )

        with LogContext.bind(batch_id=batch.id, template_id=template.template_id):
            logger.info(
                "batch_created",
                extra={
                    "batch_name": batch.name,
                    "step_count": len(result.steps),
                    "planned_minutes": total,
                    "planned_quantity": quantity,
                    "actor": actor_id,
                },
            )

        self._publisher.publish(
            ProductionEvent(
                event_type=EventType.BATCH_CREATED,
                batch_id=batch.id,
                batch_name=batch.name,
                occurred_at=self._clock.now(),
                payload={
                    "workflow_id": template.template_id,
                    "planned_start_time": batch.planned_start_time.isoformat(),
                    "planned_end_time": batch.planned_end_time.isoformat(),
                    "planned_quantity": quantity,
                    "unit": unit,
                },
            )
        )
        return result

    def create_from_request(self, request: BatchRequest, actor_id: int) -> BatchWithSteps:
        return self.create(
            request.workflow_id,
            request.planned_start_time,
            quantity=request.planned_quantity,
            unit=request.unit,
            priority=request.priority,
            staff_ids=request.assigned_staff_ids,
            equipment=request.required_equipment,
            actor_id=actor_id,
            name=request.name,
            product_id=request.product_id,
            notes=request.notes,
            environment=request.environment,
        )

    # -------------------------------------------------------------------------
    # Estimates
    # -------------------------------------------------------------------------

    def resolve_step_minutes(
        self,
        template: WorkflowTemplate,
        environment: Mapping[str, float] | None = None,
    ) -> tuple[int, ...]:
        return tuple(
            resolve_minutes(step, environment, self._default_step_minutes)
            for step in template.steps
        )

    def estimate_minutes(
        self, template_id: str, environment: Mapping[str, float] | None = None
    ) -> int:
        """Total planned minutes a batch of this template would take."""
        return sum(self.resolve_step_minutes(self._registry.get(template_id), environment))

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_request(
        planned_start: datetime,
        quantity: int,
        unit: str,
        priority: str,
        staff: tuple,
    ) -> None:
        if not isinstance(planned_start, datetime):
            raise InvalidBatchRequestError("planned_start_time", "must be a datetime")
        if planned_start.tzinfo is None or planned_start.utcoffset() is None:
            raise InvalidBatchRequestError("planned_start_time", "must be timezone-aware")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidBatchRequestError("planned_quantity", "must be an integer >= 1")
        if not isinstance(unit, str) or not unit.strip():
            raise InvalidBatchRequestError("unit", "must be a non-empty string")
        if not isinstance(priority, str) or priority not in _PRIORITIES:
            raise InvalidBatchRequestError(
                "priority", f"must be one of {', '.join(sorted(_PRIORITIES))}"
            )
        for staff_id in staff:
            if isinstance(staff_id, bool) or not isinstance(staff_id, int):
                raise InvalidBatchRequestError("assigned_staff_ids", "must be integers")
