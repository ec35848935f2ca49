"""
Tests for ProductionOrchestrator wiring and an end-to-end production day.
"""

from datetime import date, datetime, timezone

from sqlalchemy.orm import sessionmaker

from production_batch.domain.types import BatchRequest, BatchStatus, EventType
from production_batch.events import LoggingEventPublisher, RecordingEventPublisher
from production_batch.orchestrator import ProductionOrchestrator
from production_config.settings import EngineSettings
from production_kernel.domain.clock import DeterministicClock, SystemClock

START = datetime(2025, 8, 15, 6, 0, tzinfo=timezone.utc)

LOAF = """\
name: Tiny Loaf
steps:
  - name: knead
    duration: 10m
  - name: bake
    duration: 25m
"""


class TestWiring:
    def test_services_share_collaborators(self, orchestrator, session, deterministic_clock, publisher):
        assert orchestrator.session is session
        assert orchestrator.clock is deterministic_clock
        assert orchestrator.publisher is publisher
        assert orchestrator.factory is not None
        assert orchestrator.progression is not None
        assert orchestrator.schedules is not None
        assert orchestrator.batches is not None
        assert orchestrator.analytics is not None

    def test_defaults(self, session, registry):
        orch = ProductionOrchestrator.from_session(session, registry=registry)
        assert isinstance(orch.clock, SystemClock)
        assert isinstance(orch.publisher, LoggingEventPublisher)
        assert orch.settings == EngineSettings()

    def test_registry_from_settings(self, session, tmp_path):
        (tmp_path / "tiny_loaf.yaml").write_text(LOAF, encoding="utf-8")
        orch = ProductionOrchestrator.from_session(
            session, settings=EngineSettings(templates_dir=tmp_path)
        )
        assert "tiny_loaf" in orch.registry
        assert len(orch.registry) == 1

    def test_settings_reach_services(self, session, registry, make_batch):
        orch = ProductionOrchestrator.from_session(
            session,
            clock=DeterministicClock(START),
            registry=registry,
            settings=EngineSettings(delay_tolerance_minutes=40, quality_passing_score=95),
        )
        assert orch.analytics.timing().tolerance_minutes == 40
        created = make_batch()
        result = orch.progression.record_quality_check(
            created.step_at(0).step_id, [{"score": 90}], actor_id=1
        )
        assert not result.passed

    def test_for_session(self, orchestrator, engine):
        other = sessionmaker(bind=engine)()
        try:
            rewired = orchestrator.for_session(other)
            assert rewired.session is other
            assert rewired.registry is orchestrator.registry
            assert rewired.clock is orchestrator.clock
            assert rewired.settings is orchestrator.settings
        finally:
            other.close()

    def test_wiring_logged(self, session, registry, captured_logs):
        ProductionOrchestrator.from_session(session, registry=registry)
        record = next(r for r in captured_logs() if r["message"] == "orchestrator_wired")
        assert record["templates"] == 2


class TestProductionDay:
    def test_plan_run_and_report(self, file_session_factory, registry, actor_id):
        clock = DeterministicClock(START)
        publisher = RecordingEventPublisher()

        with file_session_factory() as session:
            orch = ProductionOrchestrator.from_session(
                session, clock=clock, registry=registry, publisher=publisher
            )
            plan = orch.schedules.plan_day(
                date(2025, 8, 15),
                [
                    BatchRequest(workflow_id="simple_loaf", planned_start_time=START, planned_quantity=24),
                    BatchRequest(workflow_id="inspected_roll", planned_start_time=START),
                ],
                actor_id=actor_id,
            )
            session.commit()
        roll_id = plan.batches[1].batch_id

        with file_session_factory() as session:
            orch = ProductionOrchestrator.from_session(
                session, clock=clock, registry=registry, publisher=publisher
            )
            view = orch.progression.start_batch(roll_id, actor_id)
            for step in view.steps:
                orch.progression.begin_step(step.step_id, actor_id)
                clock.advance_minutes(step.planned_duration_minutes)
                view = orch.progression.complete_step(step.step_id, actor_id)
            orch.progression.record_quality_check(
                view.step_at(1).step_id, [{"score": 92}], actor_id=actor_id
            )
            session.commit()

        with file_session_factory() as session:
            orch = ProductionOrchestrator.from_session(session, clock=clock, registry=registry)
            stored = orch.progression.get_batch(roll_id)
            assert stored.batch.status == BatchStatus.COMPLETED
            assert stored.batch.actual_minutes == 30
            overview = orch.analytics.overview(date(2025, 8, 15), date(2025, 8, 15))
            assert overview.total_batches == 2
            assert overview.completion_rate == 50.0
            schedule = orch.schedules.get_schedule_for_date(date(2025, 8, 15))
            assert schedule.planned_batch_ids == tuple(b.batch_id for b in plan.batches)

        assert [e.event_type for e in publisher.events] == [
            EventType.BATCH_CREATED,
            EventType.BATCH_CREATED,
            EventType.BATCH_STARTED,
            EventType.BATCH_COMPLETED,
        ]
