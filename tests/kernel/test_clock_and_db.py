"""
Tests for production_kernel.domain.clock and production_kernel.db.

Clock determinism, UTCDateTime binding rules, and the engine/session_scope
lifecycle against SQLite.
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from production_batch.models.batch import ProductionBatchModel
from production_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from production_kernel.db.types import UTCDateTime
from production_kernel.domain.clock import DeterministicClock, SystemClock

START = datetime(2025, 8, 15, 6, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock
# =============================================================================


class TestDeterministicClock:
    def test_default_time(self):
        assert DeterministicClock().now() == START

    def test_now_is_stable(self):
        clock = DeterministicClock(START)
        assert clock.now() == clock.now()

    def test_advance_minutes(self):
        clock = DeterministicClock(START)
        clock.advance_minutes(135)
        assert clock.now() == START + timedelta(minutes=135)

    def test_tick(self):
        clock = DeterministicClock(START)
        assert clock.tick() == START + timedelta(seconds=1)

    def test_set_time_resets_advance(self):
        clock = DeterministicClock(START)
        clock.advance(60)
        later = datetime(2025, 9, 1, tzinfo=timezone.utc)
        clock.set_time(later)
        assert clock.now() == later

    def test_today(self):
        assert DeterministicClock(START).today() == date(2025, 8, 15)

    def test_naive_rejected(self):
        with pytest.raises(ValueError):
            DeterministicClock(datetime(2025, 8, 15, 6, 0))

    def test_offset_input_normalized_to_utc(self):
        cest = timezone(timedelta(hours=2))
        clock = DeterministicClock(datetime(2025, 8, 15, 8, 0, tzinfo=cest))
        assert clock.now() == START
        assert clock.now().utcoffset() == timedelta(0)

    def test_system_clock_is_aware(self):
        assert SystemClock().now().tzinfo is not None


# =============================================================================
# UTCDateTime
# =============================================================================


class TestUTCDateTime:
    def test_bind_rejects_naive(self):
        with pytest.raises(ValueError):
            UTCDateTime().process_bind_param(datetime(2025, 8, 15), None)

    def test_bind_normalizes_to_utc(self):
        cest = timezone(timedelta(hours=2))
        value = UTCDateTime().process_bind_param(datetime(2025, 8, 15, 8, 0, tzinfo=cest), None)
        assert value == START
        assert value.utcoffset() == timedelta(0)

    def test_result_attaches_utc(self):
        value = UTCDateTime().process_result_value(datetime(2025, 8, 15, 6, 0), None)
        assert value.tzinfo is timezone.utc

    def test_none_passes_through(self):
        assert UTCDateTime().process_bind_param(None, None) is None
        assert UTCDateTime().process_result_value(None, None) is None


# =============================================================================
# Engine and session_scope
# =============================================================================


@pytest.fixture
def memory_engine():
    init_engine_from_url("sqlite:///:memory:")
    create_tables()
    yield get_engine()
    reset_engine()


def _batch(**overrides):
    values = dict(
        name="loaf",
        workflow_id="simple_loaf",
        planned_start_time=START,
        planned_end_time=START + timedelta(minutes=30),
        planned_quantity=1,
        created_by_id=1,
    )
    values.update(overrides)
    return ProductionBatchModel(**values)


class TestSessionScope:
    def test_get_engine_before_init_raises(self):
        reset_engine()
        with pytest.raises(RuntimeError):
            get_engine()

    def test_commit_on_success(self, memory_engine):
        with session_scope() as session:
            session.add(_batch())

        session = get_session()
        try:
            names = session.execute(select(ProductionBatchModel.name)).scalars().all()
        finally:
            session.close()
        assert names == ["loaf"]

    def test_rollback_on_error(self, memory_engine):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(_batch())
                session.flush()
                raise RuntimeError("abort")

        session = get_session()
        try:
            assert session.execute(select(ProductionBatchModel)).first() is None
        finally:
            session.close()

    def test_version_starts_at_one(self, memory_engine):
        with session_scope() as session:
            batch = _batch()
            session.add(batch)
            session.flush()
            assert batch.version == 1
            batch.notes = "changed"
            session.flush()
            assert batch.version == 2

    def test_timestamps_round_trip_aware(self, memory_engine):
        with session_scope() as session:
            session.add(_batch())

        session = get_session()
        try:
            batch = session.execute(select(ProductionBatchModel)).scalar_one()
            assert batch.planned_start_time == START
            assert batch.planned_start_time.tzinfo is not None
            assert batch.created_at.tzinfo is not None
        finally:
            session.close()

    def test_reinit_replaces_engine(self, memory_engine):
        replacement = init_engine_from_url("sqlite:///:memory:")
        assert get_engine() is replacement
        assert replacement is not memory_engine

    def test_correlation_id_bound_inside_scope(self, memory_engine, captured_logs):
        with session_scope(correlation_id="req-42") as session:
            session.add(_batch())

        committed = [r for r in captured_logs() if r["message"] == "transaction_committed"]
        assert committed[-1]["correlation_id"] == "req-42"

    def test_rollback_logged_with_error(self, memory_engine, captured_logs):
        with pytest.raises(ValueError):
            with session_scope():
                raise ValueError("bad tray count")

        [record] = [r for r in captured_logs() if r["message"] == "transaction_rolled_back"]
        assert record["exc_message"] == "bad tray count"
        assert "correlation_id" not in record
