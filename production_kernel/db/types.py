"""
Module: production_kernel.db.types
Responsibility: Column types and annotated aliases shared by every model.
Architecture position: Kernel > DB.  May be imported by models/ and
    services/.  MUST NOT import from either.

Invariants enforced:
    - Timestamps are always timezone-aware UTC on the Python side.  Backends
      that drop the offset (SQLite) get UTC re-attached on load; aware
      values are normalized to UTC on bind.
    - Naive datetimes are rejected on bind rather than silently guessed.
"""

from datetime import datetime, timezone
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp stored as UTC.

    Guarantees:
        - process_bind_param: aware datetime -> UTC datetime.
        - process_result_value: always returns an aware UTC datetime.
        - cache_ok=True enables SQLAlchemy statement caching.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime cannot be stored: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSON payloads. Services always assign new containers rather than mutating
# loaded ones, so no mutable-tracking extension is needed.
JSONDict = Annotated[dict, JSON]
JSONList = Annotated[list, JSON]

# Short identifier strings (statuses, priorities, units)
ShortCode = Annotated[str, String(50)]

# Human-readable names
Name = Annotated[str, String(200)]

# Free text (notes, descriptions)
LongText = Annotated[str, Text]
