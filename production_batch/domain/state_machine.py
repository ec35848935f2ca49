"""
Step state machine -- pure transition table and guards.

Contract:
    ``plan_step_transition()`` decides whether a step may move from its
    current status to a requested one and, if so, returns the field
    changes the transition must apply.  It never mutates anything; the
    progression engine applies the returned changes.

Transition table:

    from              to           origin            effects
    ----------------  -----------  ----------------  ---------------------------------
    pending           ready        engine            planned_start/end re-based on now
    ready             in_progress  client, engine    actual_start_time = now
    in_progress       waiting      client, engine    -
    waiting           in_progress  client, engine    -
    in_progress       completed    client            actual_end_time, progress=100,
                                                     completed_by (activity guard)
    in_progress       failed       client            actual_end_time, has_issues
    any non-terminal  skipped      client, engine    -

Invariants enforced:
    - A client cannot move a step to ``ready``; only progression does.
    - Completing a step with declared activities requires every activity,
      and nothing else, in ``completed_activities``.
    - Terminal states (completed, failed, skipped) have no exits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from production_batch.domain.types import StepSnapshot, StepStatus, TransitionOrigin
from production_kernel.exceptions import InvalidStepTransitionError

_BOTH = frozenset({TransitionOrigin.CLIENT, TransitionOrigin.ENGINE})
_CLIENT = frozenset({TransitionOrigin.CLIENT})
_ENGINE = frozenset({TransitionOrigin.ENGINE})

TRANSITIONS: dict[tuple[StepStatus, StepStatus], frozenset[TransitionOrigin]] = {
    (StepStatus.PENDING, StepStatus.READY): _ENGINE,
    (StepStatus.READY, StepStatus.IN_PROGRESS): _BOTH,
    (StepStatus.IN_PROGRESS, StepStatus.WAITING): _BOTH,
    (StepStatus.WAITING, StepStatus.IN_PROGRESS): _BOTH,
    (StepStatus.IN_PROGRESS, StepStatus.COMPLETED): _CLIENT,
    (StepStatus.IN_PROGRESS, StepStatus.FAILED): _CLIENT,
    (StepStatus.PENDING, StepStatus.SKIPPED): _BOTH,
    (StepStatus.READY, StepStatus.SKIPPED): _BOTH,
    (StepStatus.IN_PROGRESS, StepStatus.SKIPPED): _BOTH,
    (StepStatus.WAITING, StepStatus.SKIPPED): _BOTH,
}


@dataclass(frozen=True)
class StepTransition:
    """A legal transition plus the field changes it implies."""

    step_id: int
    source: StepStatus
    target: StepStatus
    changes: dict[str, Any] = field(default_factory=dict)


def allowed_targets(
    current: StepStatus, origin: TransitionOrigin = TransitionOrigin.CLIENT
) -> frozenset[StepStatus]:
    return frozenset(
        target
        for (source, target), origins in TRANSITIONS.items()
        if source == current and origin in origins
    )


def plan_step_transition(
    step: StepSnapshot,
    target: StepStatus,
    *,
    origin: TransitionOrigin,
    now: datetime,
    actor_id: int,
    completed_activities: tuple[str, ...] | None = None,
) -> StepTransition:
    """
    Check a requested transition and compute its effects.

    Args:
        step: Current persisted state of the step.
        target: Requested status.
        origin: CLIENT for operator requests, ENGINE for propagation.
        now: Clock time to stamp.
        actor_id: Who is asking (recorded as ``completed_by``).
        completed_activities: Activities completed as part of the same
            update; defaults to what the step already records.

    Raises:
        InvalidStepTransitionError: the pair is not in the table, the origin
            is not allowed to trigger it, or a guard fails.
    """
    source = step.status
    origins = TRANSITIONS.get((source, target))
    if origins is None:
        raise InvalidStepTransitionError(step.step_id, source.value, target.value)
    if origin not in origins:
        raise InvalidStepTransitionError(
            step.step_id,
            source.value,
            target.value,
            reason=f"only the {'/'.join(sorted(o.value for o in origins))} may do this",
        )

    changes: dict[str, Any] = {"status": target}

    if target == StepStatus.READY:
        changes["planned_start_time"] = now
        changes["planned_end_time"] = now + timedelta(minutes=step.planned_duration_minutes)

    elif target == StepStatus.IN_PROGRESS and source == StepStatus.READY:
        changes["actual_start_time"] = now

    elif target == StepStatus.COMPLETED:
        done = step.completed_activities if completed_activities is None else completed_activities
        if step.activities and set(done) != set(step.activities):
            missing = [a for a in step.activities if a not in done]
            raise InvalidStepTransitionError(
                step.step_id,
                source.value,
                target.value,
                reason=f"activities not completed: {', '.join(missing) or 'unexpected entries'}",
            )
        changes["actual_end_time"] = now
        changes["progress"] = 100
        changes["completed_by"] = actor_id

    elif target == StepStatus.FAILED:
        changes["actual_end_time"] = now
        changes["has_issues"] = True

    return StepTransition(step_id=step.step_id, source=source, target=target, changes=changes)
