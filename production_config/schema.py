"""
Workflow template schema.

Defines the typed, immutable form of a workflow definition.  YAML documents
are parsed into these types by the loader (durations and condition
predicates are parsed once, here, at load time) and served by the registry.

Key distinction:
  raw definition   = the mapping produced by YAML (untyped, may be invalid)
  WorkflowTemplate = validated, frozen, safe to snapshot into batches
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


class DurationUnit(str, Enum):
    """Recognized duration units."""

    MINUTES = "m"
    HOURS = "h"


@dataclass(frozen=True)
class Duration:
    """A magnitude plus unit, parsed from strings such as ``15m`` or ``2h``."""

    magnitude: int
    unit: DurationUnit = DurationUnit.MINUTES

    @property
    def minutes(self) -> int:
        if self.unit == DurationUnit.HOURS:
            return self.magnitude * 60
        return self.magnitude

    def __str__(self) -> str:
        return f"{self.magnitude}{self.unit.value}"


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Predicate:
    """
    A single comparison against one environment variable.

    ``temp > 25°C`` parses to variable="temp", operator=">", threshold=25.0,
    unit_label="°C".  The unit label is informational only.
    """

    variable: str
    operator: str
    threshold: float
    unit_label: str = ""


@dataclass(frozen=True)
class ConditionalDuration:
    """Duration override that applies when ``predicate`` holds."""

    predicate: Predicate
    duration: Duration
    source: str  # the predicate text as authored

    def to_snapshot(self) -> dict[str, str]:
        return {self.source: str(self.duration)}


# ---------------------------------------------------------------------------
# Steps and templates
# ---------------------------------------------------------------------------


class StepKind(str, Enum):
    ACTIVE = "active"
    SLEEP = "sleep"
    QUALITY_CHECK = "quality_check"


@dataclass(frozen=True)
class StepTemplate:
    """One step of a workflow, in template order."""

    index: int
    name: str
    kind: StepKind = StepKind.ACTIVE
    duration: Duration | None = None
    timeout: Duration | None = None
    conditions: tuple[ConditionalDuration, ...] = ()
    activities: tuple[str, ...] = ()
    params: dict[str, Any] = field(default_factory=dict)
    equipment: tuple[str, ...] = ()
    location: str | None = None
    repeat: int = 1
    notes: str | None = None

    @property
    def base_duration(self) -> Duration | None:
        """Fixed duration, ``timeout`` taking precedence over ``duration``."""
        return self.timeout or self.duration


@dataclass(frozen=True)
class WorkflowTemplate:
    """
    A validated workflow definition.

    Invariants:
        - ``steps`` is non-empty.
        - ``steps[i].index == i`` for every step.
    """

    template_id: str
    name: str
    steps: tuple[StepTemplate, ...]
    version: str = "1.0"
    description: str | None = None

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"Workflow {self.template_id} has no steps")
        for position, step in enumerate(self.steps):
            if step.index != position:
                raise ValueError(
                    f"Workflow {self.template_id} step {step.name!r} has index "
                    f"{step.index}, expected {position}"
                )

    @property
    def step_count(self) -> int:
        return len(self.steps)


# ---------------------------------------------------------------------------
# Registry read models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TemplateSummary:
    """Listing entry for one parseable definition document."""

    template_id: str
    name: str
    version: str
    description: str | None
    step_count: int
    valid: bool


@dataclass(frozen=True)
class TemplateStatistics:
    total_templates: int
    total_steps: int
    average_steps: int
    by_version: dict[str, int]
    categories: tuple[str, ...] = ()
