"""
Tests for production_batch.services.progression -- step lifecycle.

Start, step transitions, propagation to the next step, batch completion and
failure, skip semantics, field updates and version checks.
"""

from datetime import timedelta

import pytest

from production_batch.domain.types import (
    BatchStatus,
    EventType,
    StepStatus,
    StepUpdate,
)
from production_kernel.exceptions import (
    BatchNotFoundError,
    BatchNotModifiableError,
    BatchNotStartableError,
    ConcurrentUpdateConflictError,
    InvalidStepTransitionError,
    InvalidStepUpdateError,
    StepNotFoundError,
)


def _step_id(view, index):
    return view.step_at(index).step_id


def _finish(engine_service, view, index, actor_id):
    engine_service.begin_step(_step_id(view, index), actor_id)
    return engine_service.complete_step(_step_id(view, index), actor_id)


def _run_all(engine_service, view, actor_id):
    for index in range(len(view.steps)):
        view = _finish(engine_service, view, index, actor_id)
    return view


# =============================================================================
# start_batch
# =============================================================================


class TestStartBatch:
    def test_start_activates_first_step(self, started_batch, deterministic_clock):
        assert started_batch.batch.status == BatchStatus.IN_PROGRESS
        assert started_batch.batch.actual_start_time == deterministic_clock.now()
        assert started_batch.batch.current_step_index == 0
        assert [s.status for s in started_batch.steps] == [
            StepStatus.READY,
            StepStatus.PENDING,
            StepStatus.PENDING,
        ]

    def test_ready_step_rebased_on_start(self, make_batch, engine_service, actor_id, deterministic_clock):
        created = make_batch()
        deterministic_clock.advance_minutes(20)
        started = engine_service.start_batch(created.batch_id, actor_id)
        first = started.step_at(0)
        assert first.planned_start_time == deterministic_clock.now()
        assert first.planned_end_time == deterministic_clock.now() + timedelta(minutes=15)

    def test_started_event(self, started_batch, publisher):
        (event,) = publisher.of_type(EventType.BATCH_STARTED)
        assert event.batch_id == started_batch.batch_id
        assert event.payload["planned_quantity"] == 1

    def test_start_twice_rejected(self, started_batch, engine_service, actor_id):
        with pytest.raises(BatchNotStartableError) as exc_info:
            engine_service.start_batch(started_batch.batch_id, actor_id)
        assert exc_info.value.status == "in_progress"

    def test_unknown_batch(self, engine_service, actor_id):
        with pytest.raises(BatchNotFoundError):
            engine_service.start_batch(999, actor_id)

    def test_all_steps_skipped_before_start(self, make_batch, engine_service, actor_id):
        created = make_batch()
        for step in created.steps:
            engine_service.skip_step(step.step_id, actor_id)
        with pytest.raises(BatchNotStartableError, match="no pending steps"):
            engine_service.start_batch(created.batch_id, actor_id)


# =============================================================================
# Forward progression
# =============================================================================


class TestProgression:
    def test_begin_stamps_actual_start(self, started_batch, engine_service, actor_id, deterministic_clock):
        deterministic_clock.advance_minutes(3)
        view = engine_service.begin_step(_step_id(started_batch, 0), actor_id)
        step = view.step_at(0)
        assert step.status == StepStatus.IN_PROGRESS
        assert step.actual_start_time == deterministic_clock.now()

    def test_complete_activates_next(self, started_batch, engine_service, actor_id, deterministic_clock):
        engine_service.begin_step(_step_id(started_batch, 0), actor_id)
        deterministic_clock.advance_minutes(17)
        view = engine_service.complete_step(_step_id(started_batch, 0), actor_id)

        mix, proof, _ = view.steps
        assert mix.status == StepStatus.COMPLETED
        assert mix.progress == 100
        assert mix.completed_by == actor_id
        assert mix.actual_end_time == deterministic_clock.now()
        assert proof.status == StepStatus.READY
        assert proof.planned_start_time == deterministic_clock.now()
        assert view.batch.current_step_index == 1
        assert view.batch.status == BatchStatus.IN_PROGRESS

    def test_full_run_completes_batch(self, started_batch, engine_service, actor_id, publisher):
        view = _run_all(engine_service, started_batch, actor_id)
        assert view.batch.status == BatchStatus.COMPLETED
        assert view.batch.current_step_index == 3
        assert view.batch.actual_quantity == view.batch.planned_quantity
        assert view.batch.actual_end_time is not None
        assert view.progress_percent == 100
        assert len(publisher.of_type(EventType.BATCH_COMPLETED)) == 1

    def test_recorded_quantity_kept_on_completion(self, started_batch, engine_service, actor_id):
        engine_service.record_actual_quantity(started_batch.batch_id, 0, actor_id=actor_id)
        view = _run_all(engine_service, started_batch, actor_id)
        assert view.batch.actual_quantity == 0

    def test_check_completion_is_idempotent(self, started_batch, engine_service, actor_id, publisher):
        _run_all(engine_service, started_batch, actor_id)
        snapshot = engine_service.check_batch_completion(started_batch.batch_id)
        assert snapshot.status == BatchStatus.COMPLETED
        assert len(publisher.of_type(EventType.BATCH_COMPLETED)) == 1

    def test_check_completion_on_running_batch_changes_nothing(self, started_batch, engine_service):
        snapshot = engine_service.check_batch_completion(started_batch.batch_id)
        assert snapshot.status == BatchStatus.IN_PROGRESS

    def test_client_cannot_jump_ahead(self, started_batch, engine_service, actor_id):
        with pytest.raises(InvalidStepTransitionError):
            engine_service.begin_step(_step_id(started_batch, 1), actor_id)

    def test_complete_requires_all_activities(self, started_batch, engine_service, actor_id):
        step_id = _step_id(started_batch, 0)
        engine_service.begin_step(step_id, actor_id)
        with pytest.raises(InvalidStepTransitionError, match="knead"):
            engine_service.complete_step(step_id, actor_id, completed_activities=["weigh"])
        assert engine_service.get_step(step_id).status == StepStatus.IN_PROGRESS

    def test_activities_recorded_over_several_updates(self, started_batch, engine_service, actor_id):
        step_id = _step_id(started_batch, 0)
        engine_service.begin_step(step_id, actor_id)
        engine_service.update_step(step_id, StepUpdate(completed_activities=("weigh",)), actor_id)
        engine_service.update_step(
            step_id, StepUpdate(completed_activities=("weigh", "knead")), actor_id
        )
        view = engine_service.update_step(step_id, StepUpdate(status="completed"), actor_id)
        assert view.step_at(0).status == StepStatus.COMPLETED

    def test_step_transition_logged(self, started_batch, engine_service, actor_id, captured_logs):
        step_id = _step_id(started_batch, 0)
        engine_service.begin_step(step_id, actor_id)
        record = next(r for r in captured_logs() if r["message"] == "step_transitioned")
        assert record["from_status"] == "ready"
        assert record["to_status"] == "in_progress"
        assert record["step_id"] == step_id
        assert record["batch_id"] == started_batch.batch_id


# =============================================================================
# Failure
# =============================================================================


class TestFailure:
    def test_failed_step_fails_batch(self, started_batch, engine_service, actor_id, publisher):
        step_id = _step_id(started_batch, 0)
        engine_service.begin_step(step_id, actor_id)
        view = engine_service.fail_step(step_id, actor_id, reason="dough too wet")

        failed = view.step_at(0)
        assert failed.status == StepStatus.FAILED
        assert failed.has_issues
        assert failed.issues[-1]["description"] == "dough too wet"
        assert view.batch.status == BatchStatus.FAILED
        assert view.batch.actual_end_time is not None
        (event,) = publisher.of_type(EventType.BATCH_FAILED)
        assert event.payload["failed_steps"] == ["mix"]

    def test_no_transitions_after_failure(self, started_batch, engine_service, actor_id):
        step_id = _step_id(started_batch, 0)
        engine_service.begin_step(step_id, actor_id)
        engine_service.fail_step(step_id, actor_id)
        with pytest.raises(InvalidStepTransitionError, match="is failed"):
            engine_service.skip_step(_step_id(started_batch, 1), actor_id)

    def test_fail_requires_in_progress(self, started_batch, engine_service, actor_id):
        with pytest.raises(InvalidStepTransitionError):
            engine_service.fail_step(_step_id(started_batch, 0), actor_id)


# =============================================================================
# Skipping
# =============================================================================


class TestSkip:
    def test_skip_active_step_activates_next(self, started_batch, engine_service, actor_id):
        view = engine_service.skip_step(_step_id(started_batch, 0), actor_id)
        assert view.step_at(0).status == StepStatus.SKIPPED
        assert view.step_at(1).status == StepStatus.READY
        assert view.batch.current_step_index == 1

    def test_completion_jumps_over_skipped(self, started_batch, engine_service, actor_id):
        engine_service.skip_step(_step_id(started_batch, 1), actor_id)
        view = _finish(engine_service, started_batch, 0, actor_id)
        assert view.step_at(1).status == StepStatus.SKIPPED
        assert view.step_at(2).status == StepStatus.READY
        assert view.batch.current_step_index == 2

    def test_completed_with_skipped_steps(self, started_batch, engine_service, actor_id):
        engine_service.skip_step(_step_id(started_batch, 1), actor_id)
        _finish(engine_service, started_batch, 0, actor_id)
        view = _finish(engine_service, started_batch, 2, actor_id)
        assert view.batch.status == BatchStatus.COMPLETED

    def test_all_skipped_stays_open(self, started_batch, engine_service, actor_id, publisher):
        view = started_batch
        for index in range(3):
            view = engine_service.skip_step(_step_id(started_batch, index), actor_id)
        assert all(s.status == StepStatus.SKIPPED for s in view.steps)
        assert view.batch.status == BatchStatus.IN_PROGRESS
        assert view.batch.current_step_index == 3
        assert publisher.of_type(EventType.BATCH_COMPLETED) == []

    def test_skip_terminal_step_rejected(self, started_batch, engine_service, actor_id):
        _finish(engine_service, started_batch, 0, actor_id)
        with pytest.raises(InvalidStepTransitionError):
            engine_service.skip_step(_step_id(started_batch, 0), actor_id)


# =============================================================================
# Same-status and terminal-batch handling
# =============================================================================


class TestGating:
    def test_same_status_is_noop(self, started_batch, engine_service, actor_id):
        view = engine_service.update_step(
            _step_id(started_batch, 0), StepUpdate(status=StepStatus.READY), actor_id
        )
        assert view.step_at(0).status == StepStatus.READY

    def test_same_terminal_status_rejected(self, started_batch, engine_service, actor_id):
        _finish(engine_service, started_batch, 0, actor_id)
        with pytest.raises(InvalidStepTransitionError):
            engine_service.update_step(
                _step_id(started_batch, 0), StepUpdate(status="completed"), actor_id
            )

    def test_terminal_batch_rejects_field_updates(self, started_batch, engine_service, actor_id):
        _run_all(engine_service, started_batch, actor_id)
        with pytest.raises(BatchNotModifiableError):
            engine_service.update_step(
                _step_id(started_batch, 0), StepUpdate(notes="late note"), actor_id
            )

    def test_unknown_step(self, engine_service, actor_id):
        with pytest.raises(StepNotFoundError):
            engine_service.begin_step(4242, actor_id)


# =============================================================================
# Field updates
# =============================================================================


class TestFieldUpdates:
    def test_progress_and_notes(self, started_batch, engine_service, actor_id):
        step_id = _step_id(started_batch, 0)
        view = engine_service.update_step(step_id, StepUpdate(progress=40, notes="half mixed"), actor_id)
        step = view.step_at(0)
        assert step.progress == 40
        assert step.notes == "half mixed"
        assert step.status == StepStatus.READY

    def test_actual_parameters_merge(self, started_batch, engine_service, actor_id):
        step_id = _step_id(started_batch, 0)
        engine_service.update_step(step_id, StepUpdate(actual_parameters={"temp": 26}), actor_id)
        view = engine_service.update_step(
            step_id, StepUpdate(actual_parameters={"humidity": 70}), actor_id
        )
        assert view.step_at(0).actual_parameters == {"temp": 26, "humidity": 70}

    def test_issues_imply_flag(self, started_batch, engine_service, actor_id):
        view = engine_service.update_step(
            _step_id(started_batch, 0),
            StepUpdate(issues=({"type": "equipment", "description": "mixer noisy"},)),
            actor_id,
        )
        assert view.step_at(0).has_issues

    @pytest.mark.parametrize(
        "update, field_name",
        [
            (StepUpdate(progress=101), "progress"),
            (StepUpdate(progress=-1), "progress"),
            (StepUpdate(progress=True), "progress"),
            (StepUpdate(completed_activities=("dance",)), "completed_activities"),
            (StepUpdate(actual_parameters=["temp"]), "actual_parameters"),
            (StepUpdate(quality_results="ok"), "quality_results"),
            (StepUpdate(notes=5), "notes"),
            (StepUpdate(issues=("broken",)), "issues"),
            (StepUpdate(status="exploded"), "status"),
        ],
    )
    def test_rejected_without_mutation(self, started_batch, engine_service, actor_id, update, field_name):
        step_id = _step_id(started_batch, 0)
        before = engine_service.get_step(step_id)
        with pytest.raises(InvalidStepUpdateError) as exc_info:
            engine_service.update_step(step_id, update, actor_id)
        assert exc_info.value.field_name == field_name
        assert engine_service.get_step(step_id) == before

    def test_update_bumps_batch_version(self, started_batch, engine_service, actor_id):
        view = engine_service.update_step(
            _step_id(started_batch, 0), StepUpdate(progress=10), actor_id
        )
        assert view.batch.version == started_batch.batch.version + 1


# =============================================================================
# expected_version
# =============================================================================


class TestExpectedVersion:
    def test_matching_version_accepted(self, started_batch, engine_service, actor_id):
        step = started_batch.step_at(0)
        view = engine_service.begin_step(step.step_id, actor_id, expected_version=step.version)
        assert view.step_at(0).version == step.version + 1

    def test_stale_version_rejected(self, started_batch, engine_service, actor_id):
        step = started_batch.step_at(0)
        engine_service.update_step(step.step_id, StepUpdate(progress=5), actor_id)
        with pytest.raises(ConcurrentUpdateConflictError) as exc_info:
            engine_service.begin_step(step.step_id, actor_id, expected_version=step.version)
        assert exc_info.value.expected_version == step.version
        assert exc_info.value.actual_version == step.version + 1
        assert exc_info.value.retryable
