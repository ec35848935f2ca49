"""
Typed Exception Hierarchy for the Production Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Shop-floor callers (request handlers, schedulers, tests) must be able to tell
a caller mistake from a lost update without parsing message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        engine.complete_step(step_id, actor_id=7)
    except Exception as e:
        if "not in progress" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way (what this module enables):
    try:
        engine.complete_step(step_id, actor_id=7)
    except InvalidStepTransitionError as e:
        api_response(code=e.code, current=e.current_status)
    except ConcurrentUpdateConflictError:
        # Re-read current state and re-issue the transition
        ...

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ProductionError (base)
    |
    +-- TemplateError
    |   +-- TemplateNotFoundError
    |   +-- DefinitionMalformedError
    |   +-- InvalidWorkflowDefinitionError
    |
    +-- ScheduleError
    |   +-- DuplicateScheduleForDateError
    |   +-- InvalidScheduleError
    |   +-- ScheduleNotFoundError
    |
    +-- BatchError
    |   +-- BatchNotFoundError
    |   +-- BatchNotStartableError
    |   +-- BatchNotModifiableError
    |   +-- InvalidBatchRequestError
    |
    +-- StepError
    |   +-- StepNotFoundError
    |   +-- InvalidStepTransitionError
    |   +-- InvalidStepUpdateError
    |
    +-- ConcurrencyError
        +-- ConcurrentUpdateConflictError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|----------------------------------------
Template     | TEMPLATE_NOT_FOUND            | No (parseable) definition for the id
             | DEFINITION_MALFORMED          | YAML could not be parsed
             | INVALID_WORKFLOW_DEFINITION   | Parsed but semantically invalid
-------------|-------------------------------|----------------------------------------
Schedule     | DUPLICATE_SCHEDULE_FOR_DATE   | A schedule already exists for the date
             | INVALID_SCHEDULE              | Past date, malformed shift, bad status
             | SCHEDULE_NOT_FOUND            | Schedule id doesn't exist
-------------|-------------------------------|----------------------------------------
Batch        | BATCH_NOT_FOUND               | Batch id doesn't exist
             | BATCH_NOT_STARTABLE           | Start requested from a wrong status
             | BATCH_NOT_MODIFIABLE          | Mutation of a terminal/paused batch
             | INVALID_BATCH_REQUEST         | Bad quantity, priority or timestamp
-------------|-------------------------------|----------------------------------------
Step         | STEP_NOT_FOUND                | Step id doesn't exist
             | INVALID_STEP_TRANSITION       | Guard violation in the state machine
             | INVALID_STEP_UPDATE           | Progress out of range, bad payload
-------------|-------------------------------|----------------------------------------
Concurrency  | CONCURRENT_UPDATE_CONFLICT    | Lost update detected (retryable)

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Codes are CLASS attributes: ``InvalidStepTransitionError.code`` works
   without instantiation, for API docs and static analysis.

2. ``to_dict()`` exposes only ``code`` and ``message``.  No stack traces or
   schema details leave the kernel.

3. ``retryable`` is True only for concurrency conflicts.  Validation and
   lookup errors are caller mistakes and are never retried.
"""

from __future__ import annotations

from typing import Any


class ProductionError(Exception):
    """
    Base exception for all production kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "PRODUCTION_ERROR"
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        """User-visible representation: stable kind plus readable message."""
        return {"code": self.code, "message": str(self)}


# Template-related exceptions


class TemplateError(ProductionError):
    """Base exception for workflow template errors."""

    code: str = "TEMPLATE_ERROR"


class TemplateNotFoundError(TemplateError):
    """No usable workflow definition exists for the requested id."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Workflow template not found: {template_id}")


class DefinitionMalformedError(TemplateError):
    """
    The definition document could not be parsed.

    Kept apart from InvalidWorkflowDefinitionError so callers can tell
    "could not parse" from "parsed but invalid".
    """

    code: str = "DEFINITION_MALFORMED"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Workflow definition {source} is malformed: {reason}")


class InvalidWorkflowDefinitionError(TemplateError):
    """The definition parsed but failed semantic validation."""

    code: str = "INVALID_WORKFLOW_DEFINITION"

    def __init__(self, template_id: str, errors: list[str] | tuple[str, ...]):
        self.template_id = template_id
        self.errors = tuple(errors)
        super().__init__(
            f"Workflow definition {template_id} is invalid: "
            + "; ".join(self.errors)
        )


# Schedule-related exceptions


class ScheduleError(ProductionError):
    """Base exception for production schedule errors."""

    code: str = "SCHEDULE_ERROR"


class DuplicateScheduleForDateError(ScheduleError):
    """A production schedule already exists for this date."""

    code: str = "DUPLICATE_SCHEDULE_FOR_DATE"

    def __init__(self, schedule_date: str, existing_schedule_id: int):
        self.schedule_date = schedule_date
        self.existing_schedule_id = existing_schedule_id
        super().__init__(
            f"Production schedule already exists for {schedule_date} "
            f"(schedule {existing_schedule_id})"
        )


class InvalidScheduleError(ScheduleError):
    """Schedule data failed validation."""

    code: str = "INVALID_SCHEDULE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid production schedule: {reason}")


class ScheduleNotFoundError(ScheduleError):
    """Schedule does not exist."""

    code: str = "SCHEDULE_NOT_FOUND"

    def __init__(self, schedule_ref: str):
        self.schedule_ref = schedule_ref
        super().__init__(f"Production schedule not found: {schedule_ref}")


# Batch-related exceptions


class BatchError(ProductionError):
    """Base exception for production batch errors."""

    code: str = "BATCH_ERROR"


class BatchNotFoundError(BatchError):
    """Batch does not exist."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: int):
        self.batch_id = batch_id
        super().__init__(f"Production batch not found: {batch_id}")


class BatchNotStartableError(BatchError):
    """Only planned or ready batches may be started."""

    code: str = "BATCH_NOT_STARTABLE"

    def __init__(self, batch_id: int, status: str, reason: str = ""):
        self.batch_id = batch_id
        self.status = status
        self.reason = reason
        message = f"Batch {batch_id} cannot be started in status: {status}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class BatchNotModifiableError(BatchError):
    """The batch status does not allow the requested operation."""

    code: str = "BATCH_NOT_MODIFIABLE"

    def __init__(self, batch_id: int, status: str, operation: str):
        self.batch_id = batch_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} batch {batch_id} in status: {status}"
        )


class InvalidBatchRequestError(BatchError):
    """Batch creation request failed a precondition."""

    code: str = "INVALID_BATCH_REQUEST"

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid batch request ({field_name}): {reason}")


# Step-related exceptions


class StepError(ProductionError):
    """Base exception for production step errors."""

    code: str = "STEP_ERROR"


class StepNotFoundError(StepError):
    """Step does not exist."""

    code: str = "STEP_NOT_FOUND"

    def __init__(self, step_ref: str):
        self.step_ref = step_ref
        super().__init__(f"Production step not found: {step_ref}")


class InvalidStepTransitionError(StepError):
    """
    A step status change violated the transition table or a guard.

    The step's stored state is left untouched.
    """

    code: str = "INVALID_STEP_TRANSITION"

    def __init__(
        self,
        step_id: int | None,
        current_status: str,
        requested_status: str,
        reason: str = "",
    ):
        self.step_id = step_id
        self.current_status = current_status
        self.requested_status = requested_status
        self.reason = reason
        message = (
            f"Step {step_id} cannot move from {current_status} "
            f"to {requested_status}"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidStepUpdateError(StepError):
    """A non-status field of a step update was rejected."""

    code: str = "INVALID_STEP_UPDATE"

    def __init__(self, step_id: int | None, field_name: str, reason: str):
        self.step_id = step_id
        self.field_name = field_name
        self.reason = reason
        super().__init__(
            f"Invalid update for step {step_id} ({field_name}): {reason}"
        )


# Concurrency-related exceptions


class ConcurrencyError(ProductionError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class ConcurrentUpdateConflictError(ConcurrencyError):
    """
    Another writer changed the record since it was read.

    Safe to retry: re-read current state and re-issue the transition.
    """

    code: str = "CONCURRENT_UPDATE_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: int | None,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent update conflict on {entity_type} {entity_id}: "
            "record was modified by another transaction"
        )
