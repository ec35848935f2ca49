"""
Pytest fixtures for the production engine test suite.

Provides:
- In-memory SQLite sessions for unit and service tests
- File-backed SQLite session factories for two-session concurrency tests
- Deterministic clock, template registry and recording event publisher
- Structured log capture
"""

import json
import logging
from datetime import datetime, timezone
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

import production_batch.models  # noqa: F401  (registers tables on Base.metadata)
from production_batch.events import RecordingEventPublisher
from production_batch.orchestrator import ProductionOrchestrator
from production_config.registry import InMemoryTemplateSource, TemplateRegistry
from production_config.settings import DEFAULT_TEMPLATES_DIR, EngineSettings
from production_kernel.db.base import Base
from production_kernel.domain.clock import DeterministicClock
from production_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

START = datetime(2025, 8, 15, 6, 0, tzinfo=timezone.utc)
ACTOR = 7


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture production_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.factory.create(...)
            logs = captured_logs()
            assert any(r["message"] == "batch_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("production_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    sess = factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory over a file-backed database shared by several sessions."""
    eng = create_engine(f"sqlite:///{tmp_path / 'production.db'}")
    Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng, expire_on_commit=False)
    yield factory
    eng.dispose()


# =============================================================================
# Clock, registry, publisher
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(START)


@pytest.fixture
def actor_id() -> int:
    return ACTOR


SIMPLE_WORKFLOW = """\
name: Simple Loaf
version: "1.0"
steps:
  - name: mix
    type: active
    duration: 15m
    activities: [weigh, knead]
  - name: proof
    type: sleep
    duration: 2h
  - name: bake
    type: active
    duration: 40m
    activities: [load oven, unload oven]
"""

INSPECTED_WORKFLOW = """\
name: Inspected Roll
steps:
  - name: shape
    duration: 20m
  - name: inspect
    type: quality_check
    duration: 10m
"""


@pytest.fixture
def template_source() -> InMemoryTemplateSource:
    return InMemoryTemplateSource(
        {"simple_loaf": SIMPLE_WORKFLOW, "inspected_roll": INSPECTED_WORKFLOW}
    )


@pytest.fixture
def registry(template_source) -> TemplateRegistry:
    return TemplateRegistry(template_source)


@pytest.fixture
def bundled_registry() -> TemplateRegistry:
    """Registry over the workflow files shipped with production_config."""
    return TemplateRegistry.from_directory(DEFAULT_TEMPLATES_DIR)


@pytest.fixture
def publisher() -> RecordingEventPublisher:
    return RecordingEventPublisher()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def orchestrator(session, deterministic_clock, registry, publisher, settings):
    return ProductionOrchestrator.from_session(
        session,
        clock=deterministic_clock,
        registry=registry,
        publisher=publisher,
        settings=settings,
    )


@pytest.fixture
def factory(orchestrator):
    return orchestrator.factory


@pytest.fixture
def engine_service(orchestrator):
    return orchestrator.progression


@pytest.fixture
def make_batch(factory, actor_id):
    """Factory fixture creating a batch of ``simple_loaf`` at START."""

    def _make(template_id="simple_loaf", planned_start=START, **kwargs):
        return factory.create(template_id, planned_start, actor_id=actor_id, **kwargs)

    return _make


@pytest.fixture
def started_batch(make_batch, engine_service, actor_id):
    """A started ``simple_loaf`` batch: step 0 is ready."""
    created = make_batch()
    return engine_service.start_batch(created.batch_id, actor_id)
