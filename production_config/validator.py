"""
Workflow Definition Validator (``production_config.validator``).

Responsibility
--------------
Checks a raw definition mapping (as produced by ``load_definition``) for
the structural rules a workflow must satisfy before it can be parsed into a
``WorkflowTemplate`` and instantiated as a batch.

Rules
-----
* ``name`` is a non-empty string.
* ``steps`` is a non-empty list; every step is a mapping with a name.
* ``type`` (if present) is one of ``active``, ``sleep``, ``quality_check``.
* ``sleep`` steps declare a ``duration``.
* ``duration`` / ``timeout`` parse as durations.
* ``activities``, ``conditions`` and ``equipment`` are lists, never scalars.
* every condition is a one-entry mapping ``{predicate: duration}`` whose
  predicate and duration both parse.
* ``params`` is a mapping; ``repeat`` is a positive integer.

Failure modes
-------------
* Errors (``DefinitionValidationResult.errors``) -> the definition MUST NOT
  be parsed into a template.
* Warnings -> the definition is usable but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from production_config.conditions import parse_predicate
from production_config.durations import parse_duration
from production_config.schema import StepKind

KNOWN_STEP_KEYS = frozenset({
    "id", "name", "type", "duration", "timeout", "conditions", "activities",
    "params", "equipment", "location", "repeat", "notes",
})

_KINDS = frozenset(k.value for k in StepKind)


@dataclass
class DefinitionValidationResult:
    """
    Result of definition validation.

    Contract
    --------
    * ``valid`` is ``True`` only when ``errors`` is empty.
    * Warnings never make a definition invalid.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_definition(raw: Any) -> DefinitionValidationResult:
    """
    Validate a raw workflow definition.

    Postconditions:
        - Returns a result listing every problem found, in document order.
        - Never raises for bad input.
    """
    result = DefinitionValidationResult()

    if not isinstance(raw, dict):
        result.add_error("Workflow definition must be a mapping")
        return result

    _validate_header(raw, result)

    steps = raw.get("steps")
    if not isinstance(steps, list):
        result.add_error("Workflow must have a steps array")
        return result
    if not steps:
        result.add_error("Workflow must have at least one step")
        return result

    seen_names: set[str] = set()
    for index, step in enumerate(steps):
        _validate_step(index, step, result)
        if isinstance(step, dict) and isinstance(step.get("name"), str):
            if step["name"] in seen_names:
                result.add_warning(f"Step name {step['name']!r} appears more than once")
            seen_names.add(step["name"])

    return result


def _validate_header(raw: dict[str, Any], result: DefinitionValidationResult) -> None:
    name = raw.get("name")
    if not name:
        result.add_error("Workflow name is required")
    elif not isinstance(name, str):
        result.add_error("Workflow name must be a string")

    version = raw.get("version")
    if version is not None and not isinstance(version, (str, int, float)):
        result.add_error("Workflow version must be a scalar")

    description = raw.get("description")
    if description is not None and not isinstance(description, str):
        result.add_error("Workflow description must be a string")


def _validate_step(
    index: int, step: Any, result: DefinitionValidationResult
) -> None:
    if not isinstance(step, dict):
        result.add_error(f"Step {index + 1} must be a mapping")
        return

    name = step.get("name")
    if not name or not isinstance(name, str):
        result.add_error(f"Step {index + 1} must have a name")
    label = name if isinstance(name, str) and name else str(index)

    kind = step.get("type", StepKind.ACTIVE.value)
    if kind not in _KINDS:
        result.add_error(f'Step "{label}" has unknown type {kind!r}')

    if kind == StepKind.SLEEP.value and step.get("duration") is None:
        result.add_error(f'Sleep step "{label}" must have a duration')

    for key in ("duration", "timeout"):
        if step.get(key) is not None:
            try:
                parse_duration(step[key])
            except ValueError as exc:
                result.add_error(f'Step "{label}" {key}: {exc}')

    for key in ("activities", "conditions", "equipment"):
        if step.get(key) is not None and not isinstance(step[key], list):
            result.add_error(f'Step "{label}" {key} must be an array')

    if isinstance(step.get("conditions"), list):
        for position, entry in enumerate(step["conditions"]):
            _validate_condition(label, position, entry, result)

    if step.get("params") is not None and not isinstance(step["params"], dict):
        result.add_error(f'Step "{label}" params must be a mapping')

    repeat = step.get("repeat")
    if repeat is not None and (
        isinstance(repeat, bool) or not isinstance(repeat, int) or repeat < 1
    ):
        result.add_error(f'Step "{label}" repeat must be a positive integer')

    for key in ("notes", "location"):
        if step.get(key) is not None and not isinstance(step[key], str):
            result.add_error(f'Step "{label}" {key} must be a string')

    unknown = sorted(set(step) - KNOWN_STEP_KEYS)
    if unknown:
        result.add_warning(f'Step "{label}" has unknown keys: {", ".join(unknown)}')


def _validate_condition(
    label: str, position: int, entry: Any, result: DefinitionValidationResult
) -> None:
    if not isinstance(entry, dict) or len(entry) != 1:
        result.add_error(
            f'Step "{label}" condition {position + 1} must be a single '
            "predicate: duration entry"
        )
        return
    (predicate_text, duration_value), = entry.items()
    try:
        parse_predicate(predicate_text)
    except ValueError as exc:
        result.add_error(f'Step "{label}" condition {position + 1}: {exc}')
    try:
        parse_duration(duration_value)
    except ValueError as exc:
        result.add_error(f'Step "{label}" condition {position + 1}: {exc}')
