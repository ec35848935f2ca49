"""Database layer - engine, base classes and column types."""

from production_kernel.db.base import Base, TrackedBase
from production_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    session_scope,
)
from production_kernel.db.types import JSONDict, JSONList, ShortCode, UTCDateTime

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "JSONDict",
    "JSONList",
    "ShortCode",
]
