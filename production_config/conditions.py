"""
Condition predicates for environment-dependent step durations.

Predicates are restricted to a single comparison of one environment
variable against a numeric literal.  Anything else is rejected at load
time, so no authored text is ever evaluated as code.

Accepted form:
    <variable> <op> <number>[<unit label>]

    op is one of  <  <=  >  >=  ==  !=
    e.g. "temp > 25°C", "humidity <= 60%", "altitude >= 1500m"
"""

from __future__ import annotations

import operator
import re
from collections.abc import Mapping
from typing import Any, Callable

from production_config.schema import Predicate

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_PREDICATE_RE = re.compile(
    r"^\s*(?P<var>[A-Za-z_][A-Za-z0-9_.]*)\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<num>[-+]?\d+(?:\.\d+)?)\s*"
    r"(?P<unit>\S*)\s*$"
)


def parse_predicate(text: str) -> Predicate:
    """
    Parse predicate text.

    Raises:
        ValueError: text is not a single supported comparison.
    """
    if not isinstance(text, str):
        raise ValueError(f"Condition must be a string, got {type(text).__name__}")
    match = _PREDICATE_RE.match(text)
    if match is None:
        raise ValueError(f"Unsupported condition: {text!r}")
    return Predicate(
        variable=match.group("var"),
        operator=match.group("op"),
        threshold=float(match.group("num")),
        unit_label=match.group("unit"),
    )


def evaluate(predicate: Predicate, environment: Mapping[str, Any]) -> bool:
    """
    Evaluate a predicate against an environment snapshot.

    A variable that is absent, or not numeric, makes the predicate false.
    """
    value = environment.get(predicate.variable)
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return OPERATORS[predicate.operator](number, predicate.threshold)
