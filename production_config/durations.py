"""
Duration parsing and resolution.

``parse_duration`` turns an authored value (``"15m"``, ``"2h"``, ``"90"``,
``45``) into a ``Duration`` once, at template load time.
``resolve_minutes`` is the pure resolver the batch factory sums over a
template: first matching condition, else the base duration, else the
default.

Unit handling:
    m, min, mins, minute, minutes  -> minutes
    h, hr, hrs, hour, hours        -> hours (x60)
    anything else or no unit       -> minutes
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from production_config.conditions import evaluate
from production_config.schema import Duration, DurationUnit, StepTemplate

DEFAULT_STEP_MINUTES = 30

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")

_HOUR_UNITS = frozenset({"h", "hr", "hrs", "hour", "hours"})


def parse_duration(value: Any) -> Duration:
    """
    Parse an authored duration.

    Raises:
        ValueError: value is not a non-negative integer magnitude with an
            optional alphabetic unit (booleans are rejected too).
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return Duration(magnitude=value, unit=DurationUnit.MINUTES)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")

    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")

    magnitude = int(match.group(1))
    unit_text = match.group(2).lower()
    unit = DurationUnit.HOURS if unit_text in _HOUR_UNITS else DurationUnit.MINUTES
    return Duration(magnitude=magnitude, unit=unit)


def resolve_minutes(
    step: StepTemplate,
    environment: Mapping[str, float] | None = None,
    default_minutes: int = DEFAULT_STEP_MINUTES,
) -> int:
    """
    Resolve a step's planned duration in minutes.

    Conditional durations are only considered when an environment snapshot
    is supplied; the first one whose predicate holds wins.  Deterministic
    and side-effect free.
    """
    if environment is not None:
        for conditional in step.conditions:
            if evaluate(conditional.predicate, environment):
                return conditional.duration.minutes

    base = step.base_duration
    if base is not None:
        return base.minutes
    return default_minutes


def total_minutes(
    steps: tuple[StepTemplate, ...] | list[StepTemplate],
    environment: Mapping[str, float] | None = None,
    default_minutes: int = DEFAULT_STEP_MINUTES,
) -> int:
    return sum(resolve_minutes(s, environment, default_minutes) for s in steps)
