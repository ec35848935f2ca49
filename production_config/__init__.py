"""
production_config -- workflow definitions and engine settings.

Responsibility:
    Loads, validates and serves declarative workflow definitions, parses
    their durations and condition predicates once at load time, and
    provides the engine settings.

Architecture position:
    Configuration -- sits above ``production_kernel`` and below
    ``production_batch``.  The kernel never imports from this package.

Failure modes:
    - ``TemplateNotFoundError`` -- unknown or malformed definition.
    - ``InvalidWorkflowDefinitionError`` -- parsed but semantically invalid.
    - ``DefinitionMalformedError`` -- raised by ``load_definition`` for
      unparseable text; the registry converts it to not-found.
"""

from __future__ import annotations

from production_config.conditions import evaluate, parse_predicate
from production_config.durations import (
    DEFAULT_STEP_MINUTES,
    parse_duration,
    resolve_minutes,
    total_minutes,
)
from production_config.loader import load_definition, parse_template
from production_config.registry import (
    DirectoryTemplateSource,
    InMemoryTemplateSource,
    TemplateRegistry,
    TemplateSource,
)
from production_config.schema import (
    ConditionalDuration,
    Duration,
    DurationUnit,
    Predicate,
    StepKind,
    StepTemplate,
    TemplateStatistics,
    TemplateSummary,
    WorkflowTemplate,
)
from production_config.settings import EngineSettings, load_settings
from production_config.validator import DefinitionValidationResult, validate_definition

__all__ = [
    "ConditionalDuration",
    "DEFAULT_STEP_MINUTES",
    "DefinitionValidationResult",
    "DirectoryTemplateSource",
    "Duration",
    "DurationUnit",
    "EngineSettings",
    "InMemoryTemplateSource",
    "Predicate",
    "StepKind",
    "StepTemplate",
    "TemplateRegistry",
    "TemplateSource",
    "TemplateStatistics",
    "TemplateSummary",
    "WorkflowTemplate",
    "evaluate",
    "get_registry",
    "load_definition",
    "load_settings",
    "parse_duration",
    "parse_predicate",
    "parse_template",
    "resolve_minutes",
    "total_minutes",
    "validate_definition",
]


def get_registry(settings: EngineSettings | None = None) -> TemplateRegistry:
    """Registry over the configured templates directory."""
    settings = settings or load_settings()
    return TemplateRegistry.from_directory(settings.templates_dir)
