"""
ProductionOrchestrator -- DI container for the production engine.

Contract:
    Wires the template registry, BatchFactory, ProgressionEngine,
    ScheduleAggregator and the read-side selectors around one Session,
    one Clock and one EventPublisher.  Single place where all production
    dependencies are composed.

Architecture: production_batch (top-level).  This is the canonical entry
    point for the surrounding API layer.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - Every service shares the caller's Session; none commits.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from production_batch.events import EventPublisher, LoggingEventPublisher
from production_batch.selectors.analytics import ProductionAnalytics
from production_batch.selectors.batch_selector import BatchSelector
from production_batch.services.factory import BatchFactory
from production_batch.services.progression import ProgressionEngine
from production_batch.services.schedule import ScheduleAggregator
from production_config import get_registry
from production_config.registry import TemplateRegistry
from production_config.settings import EngineSettings
from production_kernel.domain.clock import Clock, SystemClock
from production_kernel.logging_config import get_logger

logger = get_logger("batch.orchestrator")


class ProductionOrchestrator:
    """DI container for the production engine.

    Contract:
        - ``from_session()`` factory creates a fully wired orchestrator.
        - ``for_session()`` rewires the same configuration onto another
          session (one orchestrator per unit of work).

    Non-goals:
        - Does NOT manage session lifecycle -- caller controls commits.
    """

    def __init__(
        self,
        session: Session,
        registry: TemplateRegistry,
        clock: Clock | None = None,
        publisher: EventPublisher | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._session = session
        self._registry = registry
        self._clock = clock or SystemClock()
        self._publisher = publisher or LoggingEventPublisher()
        self._settings = settings or EngineSettings()

        self._factory = BatchFactory(
            session,
            registry,
            clock=self._clock,
            publisher=self._publisher,
            default_step_minutes=self._settings.default_step_minutes,
        )
        self._progression = ProgressionEngine(
            session,
            clock=self._clock,
            publisher=self._publisher,
            quality_passing_score=self._settings.quality_passing_score,
        )
        self._schedules = ScheduleAggregator(session, self._factory, clock=self._clock)
        self._batches = BatchSelector(session)
        self._analytics = ProductionAnalytics(
            session,
            clock=self._clock,
            delay_tolerance_minutes=self._settings.delay_tolerance_minutes,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        clock: Clock | None = None,
        registry: TemplateRegistry | None = None,
        publisher: EventPublisher | None = None,
        settings: EngineSettings | None = None,
    ) -> ProductionOrchestrator:
        """Create a fully wired ProductionOrchestrator from a session.

        Args:
            session: SQLAlchemy session for persistence.
            clock: Optional clock for deterministic testing.
            registry: Optional pre-built registry.  If None, one is built
                over ``settings.templates_dir``.
            publisher: Optional event publisher (default: log lines).
            settings: Optional engine settings (default: built-in defaults).
        """
        effective_settings = settings or EngineSettings()
        effective_registry = registry if registry is not None else get_registry(effective_settings)
        logger.debug(
            "orchestrator_wired",
            extra={"templates": len(effective_registry)},
        )
        return cls(
            session=session,
            registry=effective_registry,
            clock=clock,
            publisher=publisher,
            settings=effective_settings,
        )

    def for_session(self, session: Session) -> ProductionOrchestrator:
        return type(self)(
            session=session,
            registry=self._registry,
            clock=self._clock,
            publisher=self._publisher,
            settings=self._settings,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def registry(self) -> TemplateRegistry:
        return self._registry

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def factory(self) -> BatchFactory:
        return self._factory

    @property
    def progression(self) -> ProgressionEngine:
        return self._progression

    @property
    def schedules(self) -> ScheduleAggregator:
        return self._schedules

    @property
    def batches(self) -> BatchSelector:
        return self._batches

    @property
    def analytics(self) -> ProductionAnalytics:
        return self._analytics
