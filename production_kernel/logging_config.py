"""
Structured JSON logging for the production engine.

Every record is emitted as one JSON line.  Operational context (who acts,
on which batch and step, under which workflow) is carried in a context
variable so services bind it once per operation instead of repeating it
in every ``extra`` dict:

    with LogContext.bind(batch_id=batch.id, actor_id=actor_id):
        logger.info("batch_started", extra={"step_count": 6})

Bound context wins over ``extra`` keys of the same name.  Exceptions
raised from the production hierarchy contribute their ``code`` and their
structured attributes as ``exc_*`` fields.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "actor_id",
    "batch_id",
    "step_id",
    "template_id",
)

_context: ContextVar[Mapping[str, Any]] = ContextVar("production_log_context", default={})


def _known(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if k in CONTEXT_FIELDS and v is not None}


class LogContext:
    """Per-task log context (contextvars, so safe across threads and asyncio)."""

    @staticmethod
    def set(
        *,
        correlation_id: str | None = None,
        actor_id: int | None = None,
        batch_id: int | None = None,
        step_id: int | None = None,
        template_id: str | None = None,
    ) -> None:
        """Merge the given fields into the current context; None leaves a field as is."""
        updates = _known({
            "correlation_id": correlation_id,
            "actor_id": actor_id,
            "batch_id": batch_id,
            "step_id": step_id,
            "template_id": template_id,
        })
        _context.set({**_context.get(), **updates})

    @staticmethod
    def get_all() -> dict[str, Any]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Overlay fields for the duration of a block.

        Unknown names and None values are ignored.  The previous context is
        restored on exit, including fields that were absent before.
        """
        token = _context.set({**_context.get(), **_known(fields)})
        try:
            yield
        finally:
            _context.reset(token)


# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if name.startswith("_") or name == "code":
            continue
        fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: envelope, bound context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            payload.update(_exception_fields(exc))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_to_json)


_ROOT_LOGGER = "production_kernel"


def get_logger(name: str) -> logging.Logger:
    """Child logger of the ``production_kernel`` hierarchy, e.g. ``batch.progression``."""
    return logging.getLogger(f"{_ROOT_LOGGER}.{name}")


_configured = False
_configure_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the production logger tree.

    Only the first call has an effect.  ``level`` accepts a name such as
    ``EngineSettings.log_level``.  Records do not propagate to the root
    logger.
    """
    global _configured
    with _configure_lock:
        if _configured:
            return
        _configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())

    tree = logging.getLogger(_ROOT_LOGGER)
    tree.setLevel(level)
    tree.propagate = False
    tree.addHandler(target)


def reset_logging() -> None:
    """Undo configure_logging(). Test helper."""
    global _configured
    with _configure_lock:
        _configured = False
    tree = logging.getLogger(_ROOT_LOGGER)
    tree.handlers.clear()
    tree.setLevel(logging.WARNING)
    tree.propagate = True
