"""
Database engine and unit-of-work scope for the production engine.

One process-wide engine built from ``EngineSettings.database_url``.  The
services (factory, progression, schedules) only ever flush; the caller's
``session_scope()`` decides commit or rollback for the whole operation.

Dialects:
    PostgreSQL -- pooled, READ COMMITTED.  ``SELECT ... FOR UPDATE`` on the
        batch row serializes writers of one batch.
    SQLite -- FOR UPDATE is ignored; the database lock serializes writers.
        ``sqlite:///:memory:`` shares a single connection (StaticPool) so
        every session sees the same tables.
"""

import atexit
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from production_kernel.logging_config import LogContext, configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Engine not initialized. Call init_engine_from_url() first."


def _is_memory_sqlite(url: str) -> bool:
    return ":memory:" in url or url.rstrip("/") == "sqlite:"


def _engine_options(database_url: str, echo: bool, pool_size: int, max_overflow: int) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        options: dict[str, Any] = {
            "echo": echo,
            "connect_args": {"check_same_thread": False},
        }
        if _is_memory_sqlite(database_url):
            options["poolclass"] = StaticPool
        return options
    return {
        "echo": echo,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "isolation_level": "READ COMMITTED",
    }


def init_engine_from_url(
    database_url: str,
    *,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    log_level: str | int = "INFO",
) -> Engine:
    """
    Build the process engine and session factory.

    Calling it again disposes the previous engine first.  Also configures
    structured logging (first call only), at ``log_level``.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(database_url, **_engine_options(database_url, echo, pool_size, max_overflow))
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging(level=log_level)
    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name, "echo": echo})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session() -> Session:
    """New session from the process factory; the caller closes it."""
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory()


@contextmanager
def session_scope(correlation_id: str | None = None) -> Generator[Session, None, None]:
    """
    One unit of work: commit on success, rollback and re-raise on error.

    ``correlation_id`` (for example the API request id) is bound to every
    log line emitted inside the block.

        with session_scope(correlation_id=request_id) as session:
            orch = ProductionOrchestrator.from_session(session, registry=registry)
            orch.progression.complete_step(step_id, actor_id=7)
    """
    with LogContext.bind(correlation_id=correlation_id):
        session = get_session()
        try:
            yield session
            session.commit()
            logger.debug("transaction_committed")
        except Exception:
            session.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise
        finally:
            session.close()


def create_tables() -> None:
    """Create production_batches, production_steps and production_schedules."""
    from production_kernel.db.base import Base

    import production_batch.models  # noqa: F401  registers the ORM tables

    Base.metadata.create_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the factory (tests, reconfiguration)."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_at_exit() -> None:
    if _engine is not None:
        _engine.dispose()
