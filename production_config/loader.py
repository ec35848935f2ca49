"""
Workflow Definition Loader (``production_config.loader``).

Responsibility
--------------
Turns definition text into a raw mapping (``load_definition``) and a raw
mapping into a typed ``WorkflowTemplate`` (``parse_template``).  Durations
and condition predicates are parsed here, once, so nothing downstream
re-parses duration strings.

Failure modes
-------------
* Invalid YAML or a document that is not a mapping
  -> ``DefinitionMalformedError``.
* A mapping that fails ``validate_definition``
  -> ``InvalidWorkflowDefinitionError`` carrying every error found.
"""

from __future__ import annotations

from typing import Any

import yaml

from production_config.conditions import parse_predicate
from production_config.durations import parse_duration
from production_config.schema import (
    ConditionalDuration,
    StepKind,
    StepTemplate,
    WorkflowTemplate,
)
from production_config.validator import validate_definition
from production_kernel.exceptions import (
    DefinitionMalformedError,
    InvalidWorkflowDefinitionError,
)

DEFAULT_VERSION = "1.0"


def load_definition(text: str, source: str = "<string>") -> dict[str, Any]:
    """
    Parse definition text with ``yaml.safe_load``.

    Raises:
        DefinitionMalformedError: text is not YAML, or not a mapping.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise DefinitionMalformedError(source, str(exc)) from exc
    if not isinstance(data, dict):
        raise DefinitionMalformedError(
            source, f"expected a mapping, got {type(data).__name__}"
        )
    return data


def version_of(raw: dict[str, Any]) -> str:
    """Normalize the authored version (YAML reads ``1.0`` as a float)."""
    version = raw.get("version")
    if version is None or version == "":
        return DEFAULT_VERSION
    return str(version)


def parse_template(template_id: str, raw: dict[str, Any]) -> WorkflowTemplate:
    """
    Validate and convert a raw definition.

    Preconditions:
        - ``raw`` came from ``load_definition`` (or is an equivalent mapping).
    Postconditions:
        - Step indices are 0..N-1 in document order.
    Raises:
        InvalidWorkflowDefinitionError: validation found errors.
    """
    result = validate_definition(raw)
    if not result.valid:
        raise InvalidWorkflowDefinitionError(template_id, result.errors)

    steps = tuple(_parse_step(i, s) for i, s in enumerate(raw["steps"]))
    return WorkflowTemplate(
        template_id=template_id,
        name=raw["name"],
        version=version_of(raw),
        description=raw.get("description"),
        steps=steps,
    )


def _parse_step(index: int, raw: dict[str, Any]) -> StepTemplate:
    conditions = []
    for entry in raw.get("conditions") or []:
        (predicate_text, duration_value), = entry.items()
        conditions.append(
            ConditionalDuration(
                predicate=parse_predicate(predicate_text),
                duration=parse_duration(duration_value),
                source=predicate_text,
            )
        )

    return StepTemplate(
        index=index,
        name=raw["name"],
        kind=StepKind(raw.get("type", StepKind.ACTIVE.value)),
        duration=_optional_duration(raw.get("duration")),
        timeout=_optional_duration(raw.get("timeout")),
        conditions=tuple(conditions),
        activities=tuple(str(a) for a in raw.get("activities") or []),
        params=dict(raw.get("params") or {}),
        equipment=tuple(str(e) for e in raw.get("equipment") or []),
        location=raw.get("location"),
        repeat=raw.get("repeat") or 1,
        notes=raw.get("notes"),
    )


def _optional_duration(value: Any):
    if value is None:
        return None
    return parse_duration(value)
