"""
Declarative base for the production tables.

Every row gets an integer surrogate key, and every ``Mapped[datetime]``
column is stored through ``UTCDateTime``.  ``TrackedBase`` adds who/when
audit columns; actor ids are opaque integers supplied by the API layer.

Optimistic locking is declared per model (``version`` column registered as
``version_id_col``); a flush over a row that another transaction already
changed raises ``StaleDataError``, which the progression engine reports as
``ConcurrentUpdateConflictError``.
"""

from datetime import datetime
from typing import ClassVar

from sqlalchemy import Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from production_kernel.db.types import UTCDateTime


class Base(DeclarativeBase):
    # INTEGER, not BIGINT: SQLite only autoincrements INTEGER primary keys.
    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        int: Integer,
    }

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)


class TrackedBase(Base):
    """Audit columns: server-side timestamps plus creating/updating actor."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    created_by_id: Mapped[int] = mapped_column(nullable=False)
    # Unset until the first change after creation.
    updated_by_id: Mapped[int | None] = mapped_column(nullable=True)
