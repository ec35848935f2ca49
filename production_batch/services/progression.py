"""
ProgressionEngine -- applies step transitions and derives batch outcome.

Contract:
    Every mutating call is one unit of work inside the caller's
    transaction: lock the batch row, re-read its steps, validate, apply the
    step change, propagate (activate the next step, recompute batch
    status), flush, then publish events.

Architecture: production_batch/services.  Imports from production_batch.domain,
    production_batch.models, production_batch.events and the kernel.

Invariants enforced:
    - Per-batch serialization: the batch row is locked (SELECT ... FOR
      UPDATE) and refreshed before any step is read or written.
    - Lost updates are rejected: a stale ``expected_version`` or a
      StaleDataError at flush raises ConcurrentUpdateConflictError.
    - Guards run before anything is mutated; a rejected call leaves the
      session unchanged.
    - Batch ``completed``/``failed`` is written only by the completion check
      and ``cancelled`` only by cancel_batch.
    - A terminal batch accepts no step transitions.  Only notes may still
      be added.
    - Completion events fire once: they are emitted only when the batch
      status actually changes.
    - All timestamps from the injected Clock.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from production_batch.domain.state_machine import StepTransition, plan_step_transition
from production_batch.domain.types import (
    BatchSnapshot,
    BatchStatus,
    BatchWithSteps,
    EventType,
    IssueHandling,
    IssueSeverity,
    ProductionEvent,
    QualityCheckResult,
    StepSnapshot,
    StepStatus,
    StepUpdate,
    TransitionOrigin,
)
from production_batch.events import EventPublisher, LoggingEventPublisher
from production_batch.models.batch import ProductionBatchModel, ProductionStepModel
from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.exceptions import (
    BatchNotFoundError,
    BatchNotModifiableError,
    BatchNotStartableError,
    ConcurrentUpdateConflictError,
    InvalidBatchRequestError,
    InvalidStepTransitionError,
    InvalidStepUpdateError,
    StepNotFoundError,
)
from production_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.progression")

DEFAULT_PASSING_SCORE = 70

_SEVERITY_ACTIONS: dict[IssueSeverity, tuple[str, ...]] = {
    IssueSeverity.CRITICAL: ("batch_paused", "escalated_to_supervisor"),
    IssueSeverity.HIGH: ("escalated_to_supervisor",),
    IssueSeverity.MEDIUM: ("logged_for_review",),
    IssueSeverity.LOW: ("logged",),
}


def quality_score(checks: Iterable[Mapping[str, Any]]) -> int:
    """Rounded average of the check scores; 100 when there are no checks."""
    scores = [float(c.get("score") or 0) for c in checks]
    if not scores:
        return 100
    return round(sum(scores) / len(scores))


class ProgressionEngine:
    """Step transitions, propagation and batch lifecycle.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT retry failed steps or preempt overrunning ones.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        publisher: EventPublisher | None = None,
        quality_passing_score: int = DEFAULT_PASSING_SCORE,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._publisher = publisher or LoggingEventPublisher()
        self._quality_passing_score = quality_passing_score

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_batch(self, batch_id: int) -> BatchWithSteps:
        batch = self._session.get(ProductionBatchModel, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return self._view(batch, self._load_steps(batch_id))

    def get_step(self, step_id: int) -> StepSnapshot:
        step = self._session.get(ProductionStepModel, step_id)
        if step is None:
            raise StepNotFoundError(str(step_id))
        return step.to_dto()

    # -------------------------------------------------------------------------
    # Batch lifecycle
    # -------------------------------------------------------------------------

    def start_batch(self, batch_id: int, actor_id: int) -> BatchWithSteps:
        """Move a planned/ready batch to in_progress and activate its first step.

        Raises:
            BatchNotFoundError: unknown batch.
            BatchNotStartableError: batch is not planned/ready, or every
                step was skipped before the start.
        """
        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            batch, steps = self._lock_batch(batch_id)
            status = BatchStatus(batch.status)
            if status not in (BatchStatus.PLANNED, BatchStatus.READY):
                raise BatchNotStartableError(batch.id, status.value)
            if not any(s.status == StepStatus.PENDING.value for s in steps):
                raise BatchNotStartableError(batch.id, status.value, "no pending steps")

            now = self._clock.now()
            batch.status = BatchStatus.IN_PROGRESS.value
            batch.actual_start_time = now
            first = self._activate_next(batch, steps, -1, now, actor_id)
            self._touch(batch, actor_id)
            self._flush("production_batch", batch.id)

            logger.info(
                "batch_started",
                extra={"first_step_index": first.step_index if first else None},
            )
            self._publish([
                self._event(batch, EventType.BATCH_STARTED, now, {
                    "actual_start_time": now.isoformat(),
                    "planned_end_time": batch.planned_end_time.isoformat(),
                    "planned_quantity": batch.planned_quantity,
                    "unit": batch.unit,
                })
            ])
            return self._view(batch, steps)

    def check_batch_completion(self, batch_id: int) -> BatchSnapshot:
        """Recompute batch status from its steps.

        Idempotent: a second call on an already-terminal batch changes
        nothing and emits nothing.
        """
        with LogContext.bind(batch_id=batch_id):
            batch, steps = self._lock_batch(batch_id)
            events = self._converge(batch, steps, self._clock.now())
            if events:
                self._flush("production_batch", batch.id)
                self._publish(events)
            return batch.to_dto()

    def cancel_batch(
        self, batch_id: int, actor_id: int, reason: str | None = None
    ) -> BatchWithSteps:
        """Skip every non-terminal step and mark the batch cancelled.

        Raises:
            BatchNotModifiableError: batch is already terminal.
        """
        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            batch, steps = self._lock_batch(batch_id)
            status = BatchStatus(batch.status)
            if status.is_terminal:
                raise BatchNotModifiableError(batch.id, status.value, "cancel")

            now = self._clock.now()
            skipped = []
            for step in steps:
                if not StepStatus(step.status).is_terminal:
                    self._engine_transition(step, StepStatus.SKIPPED, now, actor_id)
                    skipped.append(step.id)

            batch.status = BatchStatus.CANCELLED.value
            batch.actual_end_time = now
            batch.batch_metadata = {
                **(batch.batch_metadata or {}),
                "cancelled_at": now.isoformat(),
                "cancelled_by": actor_id,
                "cancel_reason": reason,
            }
            self._touch(batch, actor_id)
            self._flush("production_batch", batch.id)

            logger.info(
                "batch_cancelled",
                extra={"skipped_step_ids": skipped, "reason": reason},
            )
            self._publish([
                self._event(batch, EventType.BATCH_CANCELLED, now, {
                    "reason": reason,
                    "skipped_step_ids": skipped,
                })
            ])
            return self._view(batch, steps)

    def pause_batch(
        self, batch_id: int, actor_id: int, reason: str | None = None
    ) -> BatchWithSteps:
        """Put an in-progress batch and its running step(s) into ``waiting``."""
        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            batch, steps = self._lock_batch(batch_id)
            now = self._clock.now()
            event = self._pause(batch, steps, now, actor_id, reason)
            self._touch(batch, actor_id)
            self._flush("production_batch", batch.id)
            self._publish([event])
            return self._view(batch, steps)

    def resume_batch(self, batch_id: int, actor_id: int) -> BatchWithSteps:
        """Reverse pause_batch: the steps it paused go back to in_progress."""
        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            batch, steps = self._lock_batch(batch_id)
            status = BatchStatus(batch.status)
            if status != BatchStatus.WAITING:
                raise BatchNotModifiableError(batch.id, status.value, "resume")

            now = self._clock.now()
            metadata = dict(batch.batch_metadata or {})
            paused_ids = set(metadata.get("paused_step_ids") or ())
            resumed = []
            for step in steps:
                if step.id in paused_ids and step.status == StepStatus.WAITING.value:
                    self._engine_transition(step, StepStatus.IN_PROGRESS, now, actor_id)
                    resumed.append(step.id)

            batch.status = BatchStatus.IN_PROGRESS.value
            metadata.update(
                resumed_at=now.isoformat(),
                resumed_by=actor_id,
                paused_step_ids=[],
            )
            batch.batch_metadata = metadata
            self._touch(batch, actor_id)
            self._flush("production_batch", batch.id)

            logger.info("batch_resumed", extra={"resumed_step_ids": resumed})
            self._publish([
                self._event(batch, EventType.BATCH_RESUMED, now, {"resumed_step_ids": resumed})
            ])
            return self._view(batch, steps)

    # -------------------------------------------------------------------------
    # Step updates
    # -------------------------------------------------------------------------

    def update_step(
        self,
        step_id: int,
        update: StepUpdate,
        actor_id: int,
        expected_version: int | None = None,
    ) -> BatchWithSteps:
        """Apply field updates and at most one status transition to a step.

        Args:
            step_id: Step to update.
            update: Fields to change; ``None`` fields are left alone.
            actor_id: Operator making the change.
            expected_version: Step version the caller last read.  When
                given and stale, the update is rejected.

        Raises:
            StepNotFoundError: unknown step.
            ConcurrentUpdateConflictError: stale ``expected_version`` or a
                concurrent writer detected at flush.
            InvalidStepTransitionError: transition not allowed.
            InvalidStepUpdateError: a field value is out of range.
            BatchNotModifiableError: the batch is terminal (field-only
                update) or paused (transition).
        """
        return self._apply_update(step_id, update, actor_id, expected_version)

    def _apply_update(
        self,
        step_id: int,
        update: StepUpdate,
        actor_id: int,
        expected_version: int | None,
        failure_reason: str | None = None,
    ) -> BatchWithSteps:
        batch, steps, step = self._lock_for_step(step_id)
        with LogContext.bind(batch_id=batch.id, step_id=step.id, actor_id=actor_id):
            current = step.to_dto()
            if expected_version is not None and current.version != expected_version:
                logger.warning(
                    "step_version_mismatch",
                    extra={"expected_version": expected_version, "actual_version": current.version},
                )
                raise ConcurrentUpdateConflictError(
                    "production_step", step.id, expected_version, current.version
                )

            target = self._coerce_status(step.id, update.status)
            batch_status = BatchStatus(batch.status)
            if batch_status.is_terminal:
                if target is not None:
                    raise InvalidStepTransitionError(
                        step.id,
                        current.status.value,
                        target.value,
                        reason=f"batch {batch.id} is {batch_status.value}",
                    )
                raise BatchNotModifiableError(batch.id, batch_status.value, "update steps of")
            if (
                target is not None
                and batch_status == BatchStatus.WAITING
                and target != current.status
            ):
                raise BatchNotModifiableError(batch.id, batch_status.value, "transition steps of")

            changes = self._field_changes(current, update)
            now = self._clock.now()
            if failure_reason:
                # Appended to the issues read under the batch lock.
                changes["issues"] = changes.get("issues", [dict(i) for i in current.issues]) + [{
                    "type": "step_failure",
                    "severity": IssueSeverity.HIGH.value,
                    "description": failure_reason,
                    "reported_by": actor_id,
                    "reported_at": now.isoformat(),
                }]
                changes["has_issues"] = True

            transition: StepTransition | None = None
            if target is not None and (target != current.status or target.is_terminal):
                done = changes.get("completed_activities")
                transition = plan_step_transition(
                    current,
                    target,
                    origin=TransitionOrigin.CLIENT,
                    now=now,
                    actor_id=actor_id,
                    completed_activities=tuple(done) if done is not None else None,
                )

            step.apply(changes)
            events: list[ProductionEvent] = []
            if transition is not None:
                step.apply(transition.changes)
                events = self._propagate(batch, steps, step, transition, now, actor_id)
            step.updated_by_id = actor_id
            self._touch(batch, actor_id)
            self._flush("production_step", step.id)

            if transition is not None:
                logger.info(
                    "step_transitioned",
                    extra={
                        "step_index": step.step_index,
                        "from_status": transition.source.value,
                        "to_status": transition.target.value,
                        "batch_status": batch.status,
                    },
                )
            else:
                logger.info("step_updated", extra={"fields": sorted(changes)})

            self._publish(events)
            return self._view(batch, steps)

    def begin_step(
        self, step_id: int, actor_id: int, expected_version: int | None = None
    ) -> BatchWithSteps:
        return self.update_step(
            step_id, StepUpdate(status=StepStatus.IN_PROGRESS), actor_id, expected_version
        )

    def complete_step(
        self,
        step_id: int,
        actor_id: int,
        completed_activities: Iterable[str] | None = None,
        actual_parameters: dict[str, Any] | None = None,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> BatchWithSteps:
        """Complete an in-progress step.

        ``completed_activities`` defaults to the step's full activity list,
        i.e. the operator confirms everything was done.
        """
        if completed_activities is None:
            completed_activities = self.get_step(step_id).activities
        return self.update_step(
            step_id,
            StepUpdate(
                status=StepStatus.COMPLETED,
                completed_activities=tuple(completed_activities),
                actual_parameters=actual_parameters,
                notes=notes,
            ),
            actor_id,
            expected_version,
        )

    def fail_step(
        self,
        step_id: int,
        actor_id: int,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> BatchWithSteps:
        """Fail an in-progress step; ``reason`` is recorded as a step_failure issue."""
        return self._apply_update(
            step_id,
            StepUpdate(status=StepStatus.FAILED),
            actor_id,
            expected_version,
            failure_reason=reason,
        )

    def skip_step(
        self, step_id: int, actor_id: int, expected_version: int | None = None
    ) -> BatchWithSteps:
        return self.update_step(
            step_id, StepUpdate(status=StepStatus.SKIPPED), actor_id, expected_version
        )

    # -------------------------------------------------------------------------
    # Quality checks and issues
    # -------------------------------------------------------------------------

    def record_quality_check(
        self,
        step_id: int,
        checks: Iterable[Mapping[str, Any]],
        *,
        actor_id: int,
        passing_score: int | None = None,
        notes: str | None = None,
    ) -> QualityCheckResult:
        """Score a set of checks against a step and store the result.

        Quality results are audit records: they may be added after the
        step or the batch has completed, but not to a cancelled batch.
        """
        batch, steps, step = self._lock_for_step(step_id)
        with LogContext.bind(batch_id=batch.id, step_id=step.id, actor_id=actor_id):
            if batch.status == BatchStatus.CANCELLED.value:
                raise BatchNotModifiableError(batch.id, batch.status, "record quality checks on")

            check_list = tuple(dict(c) for c in checks)
            for check in check_list:
                score = check.get("score")
                if score is not None and (
                    isinstance(score, bool) or not isinstance(score, (int, float))
                ):
                    raise InvalidStepUpdateError(step.id, "checks", "scores must be numeric")

            now = self._clock.now()
            threshold = self._quality_passing_score if passing_score is None else passing_score
            score = quality_score(check_list)
            passed = score >= threshold
            existing = dict(step.quality_results or {})
            check_id = f"qc_{step.id}_{len(existing) + 1}"

            existing[check_id] = {
                "check_id": check_id,
                "performed_by": actor_id,
                "performed_at": now.isoformat(),
                "checks": list(check_list),
                "overall_score": score,
                "passing_score": threshold,
                "passed": passed,
                "notes": notes,
            }
            step.quality_results = existing
            step.quality_check_completed = True
            events = []
            if not passed:
                step.has_issues = True
                step.issues = list(step.issues or ()) + [{
                    "type": "quality_failure",
                    "severity": IssueSeverity.HIGH.value,
                    "description": f"Quality check failed with score {score}",
                    "reported_by": actor_id,
                    "reported_at": now.isoformat(),
                }]
                events.append(self._event(batch, EventType.STEP_QUALITY_FAILED, now, {
                    "step_id": step.id,
                    "step_name": step.step_name,
                    "score": score,
                    "passing_score": threshold,
                }))
            step.updated_by_id = actor_id
            self._touch(batch, actor_id)
            self._flush("production_step", step.id)

            logger.info(
                "quality_check_recorded",
                extra={"check_id": check_id, "score": score, "passed": passed},
            )
            self._publish(events)
            return QualityCheckResult(
                check_id=check_id,
                step_id=step.id,
                score=score,
                passed=passed,
                checks=check_list,
                checked_at=now,
                checked_by=actor_id,
            )

    def report_issue(
        self,
        batch_id: int,
        *,
        actor_id: int,
        issue_type: str,
        description: str,
        severity: IssueSeverity | str = IssueSeverity.MEDIUM,
        step_id: int | None = None,
        impact: str | None = None,
    ) -> IssueHandling:
        """Record a production issue and react according to its severity.

        critical pauses the batch (when running) and escalates, high
        escalates, medium is logged for review, low is only logged.
        An issue naming a step is published as ``step.issue_reported``,
        one without a step as ``batch.issue_reported``.
        """
        try:
            level = IssueSeverity(getattr(severity, "value", severity))
        except ValueError:
            raise InvalidBatchRequestError(
                "severity", f"must be one of {', '.join(s.value for s in IssueSeverity)}"
            ) from None

        with LogContext.bind(batch_id=batch_id, step_id=step_id, actor_id=actor_id):
            batch, steps = self._lock_batch(batch_id)
            status = BatchStatus(batch.status)
            if status.is_terminal:
                raise BatchNotModifiableError(batch.id, status.value, "report issues on")

            step = None
            if step_id is not None:
                step = next((s for s in steps if s.id == step_id), None)
                if step is None:
                    raise StepNotFoundError(f"{step_id} in batch {batch.id}")

            now = self._clock.now()
            metadata = dict(batch.batch_metadata or {})
            issues = list(metadata.get("issues") or ())
            issue = {
                "id": f"issue_{batch.id}_{len(issues) + 1}",
                "batch_id": batch.id,
                "step_id": step_id,
                "type": issue_type,
                "severity": level.value,
                "description": description,
                "impact": impact or "unknown",
                "status": "open",
                "reported_by": actor_id,
                "reported_at": now.isoformat(),
            }
            metadata["issues"] = issues + [issue]
            batch.batch_metadata = metadata

            if step is not None:
                step.issues = list(step.issues or ()) + [issue]
                step.has_issues = True
                step.updated_by_id = actor_id

            escalated = level in (IssueSeverity.CRITICAL, IssueSeverity.HIGH)
            event_type = (
                EventType.STEP_ISSUE_REPORTED if step is not None else EventType.BATCH_ISSUE_REPORTED
            )
            events = [self._event(batch, event_type, now, {
                "issue": issue,
                "escalated": escalated,
            })]
            actions = list(_SEVERITY_ACTIONS[level])
            paused = False
            if level == IssueSeverity.CRITICAL:
                if status == BatchStatus.IN_PROGRESS:
                    events.append(
                        self._pause(batch, steps, now, actor_id, f"critical issue: {description}")
                    )
                    paused = True
                else:
                    actions.remove("batch_paused")

            self._touch(batch, actor_id)
            self._flush("production_batch", batch.id)

            log = logger.warning if escalated else logger.info
            log(
                "production_issue_reported",
                extra={"issue_id": issue["id"], "severity": level.value, "actions": actions},
            )
            self._publish(events)
            return IssueHandling(
                issue=issue,
                actions=tuple(actions),
                escalated=escalated,
                paused=paused,
            )

    # -------------------------------------------------------------------------
    # Batch annotations
    # -------------------------------------------------------------------------

    def add_batch_note(self, batch_id: int, note: str, *, actor_id: int) -> BatchSnapshot:
        """Append an audit note.  Allowed in every status, terminal included."""
        if not isinstance(note, str) or not note.strip():
            raise InvalidBatchRequestError("notes", "must be a non-empty string")
        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            batch, _ = self._lock_batch(batch_id)
            now = self._clock.now()
            line = f"[{now.isoformat()}] #{actor_id}: {note.strip()}"
            batch.notes = f"{batch.notes}\n{line}" if batch.notes else line
            self._touch(batch, actor_id)
            self._flush("production_batch", batch.id)
            logger.info("batch_note_added")
            return batch.to_dto()

    def record_actual_quantity(
        self, batch_id: int, quantity: int, *, actor_id: int
    ) -> BatchSnapshot:
        """Override the produced quantity before the batch completes."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise InvalidBatchRequestError("actual_quantity", "must be an integer >= 0")
        with LogContext.bind(batch_id=batch_id, actor_id=actor_id):
            batch, _ = self._lock_batch(batch_id)
            status = BatchStatus(batch.status)
            if status.is_terminal:
                raise BatchNotModifiableError(batch.id, status.value, "record quantity on")
            batch.actual_quantity = quantity
            self._touch(batch, actor_id)
            self._flush("production_batch", batch.id)
            logger.info("actual_quantity_recorded", extra={"actual_quantity": quantity})
            return batch.to_dto()

    # -------------------------------------------------------------------------
    # Internal: loading and locking
    # -------------------------------------------------------------------------

    def _load_steps(self, batch_id: int) -> list[ProductionStepModel]:
        return list(
            self._session.execute(
                select(ProductionStepModel)
                .where(ProductionStepModel.batch_id == batch_id)
                .order_by(ProductionStepModel.step_index)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def _lock_batch(
        self, batch_id: int
    ) -> tuple[ProductionBatchModel, list[ProductionStepModel]]:
        batch = self._session.execute(
            select(ProductionBatchModel)
            .where(ProductionBatchModel.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch, self._load_steps(batch_id)

    def _lock_for_step(
        self, step_id: int
    ) -> tuple[ProductionBatchModel, list[ProductionStepModel], ProductionStepModel]:
        batch_id = self._session.execute(
            select(ProductionStepModel.batch_id).where(ProductionStepModel.id == step_id)
        ).scalar_one_or_none()
        if batch_id is None:
            raise StepNotFoundError(str(step_id))
        batch, steps = self._lock_batch(batch_id)
        for step in steps:
            if step.id == step_id:
                return batch, steps, step
        raise StepNotFoundError(str(step_id))

    # -------------------------------------------------------------------------
    # Internal: validation
    # -------------------------------------------------------------------------

    @staticmethod
    def _coerce_status(step_id: int, status: StepStatus | str | None) -> StepStatus | None:
        if status is None:
            return None
        try:
            return StepStatus(getattr(status, "value", status))
        except ValueError:
            raise InvalidStepUpdateError(step_id, "status", f"unknown status {status!r}") from None

    @staticmethod
    def _field_changes(current: StepSnapshot, update: StepUpdate) -> dict[str, Any]:
        step_id = current.step_id
        changes: dict[str, Any] = {}

        if update.progress is not None:
            progress = update.progress
            if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
                raise InvalidStepUpdateError(step_id, "progress", "must be an integer between 0 and 100")
            changes["progress"] = progress

        if update.completed_activities is not None:
            done: list[str] = []
            for activity in update.completed_activities:
                if activity not in current.activities:
                    raise InvalidStepUpdateError(
                        step_id, "completed_activities", f"unknown activity {activity!r}"
                    )
                if activity not in done:
                    done.append(activity)
            changes["completed_activities"] = done

        if update.actual_parameters is not None:
            if not isinstance(update.actual_parameters, dict):
                raise InvalidStepUpdateError(step_id, "actual_parameters", "must be a mapping")
            changes["actual_parameters"] = {**current.actual_parameters, **update.actual_parameters}

        if update.quality_results is not None:
            if not isinstance(update.quality_results, dict):
                raise InvalidStepUpdateError(step_id, "quality_results", "must be a mapping")
            changes["quality_results"] = {**current.quality_results, **update.quality_results}

        if update.notes is not None:
            if not isinstance(update.notes, str):
                raise InvalidStepUpdateError(step_id, "notes", "must be a string")
            changes["notes"] = update.notes

        if update.issues is not None:
            issues = list(update.issues)
            if not all(isinstance(i, dict) for i in issues):
                raise InvalidStepUpdateError(step_id, "issues", "must be a list of mappings")
            changes["issues"] = [dict(i) for i in issues]
            if issues and update.has_issues is None:
                changes["has_issues"] = True

        if update.has_issues is not None:
            changes["has_issues"] = bool(update.has_issues)

        return changes

    # -------------------------------------------------------------------------
    # Internal: propagation
    # -------------------------------------------------------------------------

    def _engine_transition(
        self,
        step: ProductionStepModel,
        target: StepStatus,
        now: datetime,
        actor_id: int,
    ) -> None:
        plan = plan_step_transition(
            step.to_dto(), target, origin=TransitionOrigin.ENGINE, now=now, actor_id=actor_id
        )
        step.apply(plan.changes)
        step.updated_by_id = actor_id

    def _activate_next(
        self,
        batch: ProductionBatchModel,
        steps: list[ProductionStepModel],
        after_index: int,
        now: datetime,
        actor_id: int,
    ) -> ProductionStepModel | None:
        """Make the first non-skipped step after ``after_index`` ready.

        ``current_step_index`` follows it, or moves one past the end when no
        step is left.
        """
        for candidate in steps:
            if candidate.step_index <= after_index:
                continue
            if candidate.status == StepStatus.SKIPPED.value:
                continue
            if candidate.status == StepStatus.PENDING.value:
                self._engine_transition(candidate, StepStatus.READY, now, actor_id)
                with LogContext.bind(step_id=candidate.id):
                    logger.info("step_activated", extra={"step_index": candidate.step_index})
            batch.current_step_index = candidate.step_index
            return candidate
        batch.current_step_index = len(steps)
        return None

    def _propagate(
        self,
        batch: ProductionBatchModel,
        steps: list[ProductionStepModel],
        step: ProductionStepModel,
        transition: StepTransition,
        now: datetime,
        actor_id: int,
    ) -> list[ProductionEvent]:
        if transition.target == StepStatus.COMPLETED:
            self._activate_next(batch, steps, step.step_index, now, actor_id)
        elif (
            transition.target == StepStatus.SKIPPED
            and transition.source.is_active
            and batch.status == BatchStatus.IN_PROGRESS.value
        ):
            self._activate_next(batch, steps, step.step_index, now, actor_id)
        return self._converge(batch, steps, now)

    def _converge(
        self,
        batch: ProductionBatchModel,
        steps: list[ProductionStepModel],
        now: datetime,
    ) -> list[ProductionEvent]:
        """Derive terminal batch status from step statuses.

        Returns the events to publish; empty when nothing changed.
        """
        if BatchStatus(batch.status).is_terminal:
            return []

        statuses = [StepStatus(s.status) for s in steps]
        if StepStatus.FAILED in statuses:
            failed = [s for s in steps if s.status == StepStatus.FAILED.value]
            batch.status = BatchStatus.FAILED.value
            batch.actual_end_time = now
            logger.warning(
                "batch_failed",
                extra={"batch_id": batch.id, "failed_step_ids": [s.id for s in failed]},
            )
            return [self._event(batch, EventType.BATCH_FAILED, now, {
                "actual_end_time": now.isoformat(),
                "failed_steps": [s.step_name for s in failed],
                "failed_step_ids": [s.id for s in failed],
            })]

        finished = (StepStatus.COMPLETED, StepStatus.SKIPPED)
        if statuses and all(s in finished for s in statuses) and StepStatus.COMPLETED in statuses:
            batch.status = BatchStatus.COMPLETED.value
            batch.actual_end_time = now
            batch.current_step_index = len(steps)
            if batch.actual_quantity is None:
                batch.actual_quantity = batch.planned_quantity
            duration = None
            if batch.actual_start_time is not None:
                duration = round((now - batch.actual_start_time).total_seconds() / 60)
            logger.info(
                "batch_completed",
                extra={
                    "batch_id": batch.id,
                    "actual_quantity": batch.actual_quantity,
                    "actual_minutes": duration,
                },
            )
            return [self._event(batch, EventType.BATCH_COMPLETED, now, {
                "actual_end_time": now.isoformat(),
                "actual_quantity": batch.actual_quantity,
                "planned_quantity": batch.planned_quantity,
                "unit": batch.unit,
                "actual_minutes": duration,
            })]

        return []

    def _pause(
        self,
        batch: ProductionBatchModel,
        steps: list[ProductionStepModel],
        now: datetime,
        actor_id: int,
        reason: str | None,
    ) -> ProductionEvent:
        if batch.status != BatchStatus.IN_PROGRESS.value:
            raise BatchNotModifiableError(batch.id, batch.status, "pause")
        paused = []
        for step in steps:
            if step.status == StepStatus.IN_PROGRESS.value:
                self._engine_transition(step, StepStatus.WAITING, now, actor_id)
                paused.append(step.id)
        batch.status = BatchStatus.WAITING.value
        batch.batch_metadata = {
            **(batch.batch_metadata or {}),
            "paused_at": now.isoformat(),
            "paused_by": actor_id,
            "pause_reason": reason,
            "paused_step_ids": paused,
        }
        logger.info(
            "batch_paused",
            extra={"batch_id": batch.id, "paused_step_ids": paused, "reason": reason},
        )
        return self._event(batch, EventType.BATCH_PAUSED, now, {
            "reason": reason,
            "paused_step_ids": paused,
        })

    # -------------------------------------------------------------------------
    # Internal: persistence and events
    # -------------------------------------------------------------------------

    @staticmethod
    def _touch(batch: ProductionBatchModel, actor_id: int) -> None:
        # Any change inside the batch bumps the batch version.
        batch.updated_by_id = actor_id
        flag_modified(batch, "updated_by_id")

    def _flush(self, entity_type: str, entity_id: int) -> None:
        try:
            self._session.flush()
        except StaleDataError as exc:
            logger.warning(
                "concurrent_update_conflict",
                extra={"entity_type": entity_type, "entity_id": entity_id},
            )
            raise ConcurrentUpdateConflictError(entity_type, entity_id) from exc

    def _publish(self, events: list[ProductionEvent]) -> None:
        for event in events:
            self._publisher.publish(event)

    @staticmethod
    def _event(
        batch: ProductionBatchModel,
        event_type: EventType,
        now: datetime,
        payload: dict[str, Any],
    ) -> ProductionEvent:
        return ProductionEvent(
            event_type=event_type,
            batch_id=batch.id,
            batch_name=batch.name,
            occurred_at=now,
            payload=payload,
        )

    @staticmethod
    def _view(
        batch: ProductionBatchModel, steps: list[ProductionStepModel]
    ) -> BatchWithSteps:
        return BatchWithSteps(
            batch=batch.to_dto(),
            steps=tuple(s.to_dto() for s in steps),
        )
