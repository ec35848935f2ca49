"""
Property-based tests for batch materialization and step progression.

Each example builds its own in-memory database so state never leaks
between generated cases.

Properties:
- Step windows are contiguous and sum to the batch window.
- current_step_index never moves backwards.
- Terminal steps and terminal batches never change status again.
- A batch whose steps are all completed or skipped, with at least one
  completed, is completed.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import yaml
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from production_batch.domain.types import BatchStatus, StepStatus
from production_batch.events import RecordingEventPublisher
from production_batch.orchestrator import ProductionOrchestrator
from production_config.registry import InMemoryTemplateSource, TemplateRegistry
from production_kernel.db.base import Base
from production_kernel.domain.clock import DeterministicClock
from production_kernel.exceptions import InvalidStepTransitionError

START = datetime(2025, 8, 15, 6, 0, tzinfo=timezone.utc)
ACTOR = 3

step_minutes = st.lists(st.integers(min_value=1, max_value=600), min_size=1, max_size=8)

actions = st.lists(
    st.tuples(
        st.sampled_from(["begin", "complete", "skip", "fail"]),
        st.integers(min_value=0, max_value=7),
        st.integers(min_value=0, max_value=90),
    ),
    max_size=30,
)


def _workflow(minutes: list[int]) -> str:
    return yaml.safe_dump({
        "name": "Generated",
        "steps": [{"name": f"step {i}", "duration": f"{m}m"} for i, m in enumerate(minutes)],
    })


@contextmanager
def _orchestrator(minutes: list[int]):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine)()
    try:
        registry = TemplateRegistry(InMemoryTemplateSource({"generated": _workflow(minutes)}))
        yield ProductionOrchestrator.from_session(
            session,
            clock=DeterministicClock(START),
            registry=registry,
            publisher=RecordingEventPublisher(),
        )
    finally:
        session.close()
        engine.dispose()


# =============================================================================
# Materialization
# =============================================================================


class TestMaterializationProperties:
    @given(step_minutes)
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_windows_are_contiguous(self, minutes):
        with _orchestrator(minutes) as orch:
            view = orch.factory.create("generated", START, actor_id=ACTOR)

            assert view.batch.estimated_duration_minutes == sum(minutes)
            assert view.batch.planned_end_time == START + timedelta(minutes=sum(minutes))
            assert [s.step_index for s in view.steps] == list(range(len(minutes)))
            assert view.steps[0].planned_start_time == START
            for previous, step in zip(view.steps, view.steps[1:]):
                assert step.planned_start_time == previous.planned_end_time
            assert view.steps[-1].planned_end_time == view.batch.planned_end_time


# =============================================================================
# Progression
# =============================================================================


class TestProgressionProperties:
    @given(step_minutes, actions)
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_progression_is_monotonic(self, minutes, script):
        with _orchestrator(minutes) as orch:
            engine = orch.progression
            created = orch.factory.create("generated", START, actor_id=ACTOR)
            view = engine.start_batch(created.batch_id, ACTOR)

            for action, index, elapsed in script:
                if index >= len(view.steps):
                    continue
                before = view
                step_id = view.step_at(index).step_id
                orch.clock.advance_minutes(elapsed)
                try:
                    if action == "begin":
                        view = engine.begin_step(step_id, ACTOR)
                    elif action == "complete":
                        view = engine.complete_step(step_id, ACTOR)
                    elif action == "skip":
                        view = engine.skip_step(step_id, ACTOR)
                    else:
                        view = engine.fail_step(step_id, ACTOR)
                except InvalidStepTransitionError:
                    assert engine.get_batch(view.batch_id) == before
                    continue

                assert view.batch.current_step_index >= before.batch.current_step_index
                for old, new in zip(before.steps, view.steps):
                    if old.status.is_terminal:
                        assert new.status == old.status
                if before.batch.status.is_terminal:
                    assert view.batch.status == before.batch.status

            statuses = {s.status for s in view.steps}
            if StepStatus.FAILED in statuses:
                assert view.batch.status == BatchStatus.FAILED
            elif statuses <= {StepStatus.COMPLETED, StepStatus.SKIPPED} and StepStatus.COMPLETED in statuses:
                assert view.batch.status == BatchStatus.COMPLETED
                assert view.batch.current_step_index == len(view.steps)
            else:
                assert view.batch.status == BatchStatus.IN_PROGRESS

            completed_events = len(orch.publisher.of_type("batch.completed"))
            assert completed_events <= 1

    @given(step_minutes)
    @settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_straight_run_completes(self, minutes):
        with _orchestrator(minutes) as orch:
            engine = orch.progression
            created = orch.factory.create("generated", START, actor_id=ACTOR)
            view = engine.start_batch(created.batch_id, ACTOR)
            for index, step in enumerate(view.steps):
                assert view.batch.current_step_index == index
                assert view.step_at(index).status == StepStatus.READY
                engine.begin_step(step.step_id, ACTOR)
                orch.clock.advance_minutes(step.planned_duration_minutes)
                view = engine.complete_step(step.step_id, ACTOR)

            assert view.batch.status == BatchStatus.COMPLETED
            assert view.batch.actual_minutes == sum(minutes)
            assert view.progress_percent == 100
