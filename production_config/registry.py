"""
TemplateSource protocol, concrete sources, and TemplateRegistry.

Contract:
    ``TemplateSource`` is the storage seam: read one definition by id,
    list the ids it knows.  ``DirectoryTemplateSource`` reads ``*.yaml`` /
    ``*.yml`` files, ``InMemoryTemplateSource`` holds text in a dict for
    tests and embedding.
    ``TemplateRegistry`` layers parsing, validation, listing and
    statistics on top of a source.  It holds no cache: an edited or
    deleted definition is visible on the next call.

Invariants enforced:
    - Template ids are bare file stems.  Path separators, hidden names and
      extensions are stripped or rejected before touching storage.
    - A malformed document never leaks a parse exception: ``get`` raises
      TemplateNotFoundError and ``list`` leaves it out.
"""

from __future__ import annotations

from pathlib import Path, PurePath
from typing import Any, Protocol, runtime_checkable

from production_config.loader import load_definition, parse_template, version_of
from production_config.schema import TemplateStatistics, TemplateSummary, WorkflowTemplate
from production_config.validator import DefinitionValidationResult, validate_definition
from production_kernel.exceptions import DefinitionMalformedError, TemplateNotFoundError
from production_kernel.logging_config import get_logger

logger = get_logger("config.registry")

DEFINITION_SUFFIXES = (".yaml", ".yml")

_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("breads", ("bread", "sourdough", "brot")),
    ("cakes", ("cake", "torte", "kuchen")),
    ("pastries", ("croissant", "pastry", "plunder")),
)


def sanitize_template_id(template_id: str) -> str | None:
    """Reduce ``template_id`` to a bare stem, or None if nothing usable remains."""
    if not isinstance(template_id, str):
        return None
    name = PurePath(template_id.replace("\\", "/")).name
    for suffix in DEFINITION_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if not name or name.startswith("."):
        return None
    return name


# =============================================================================
# Sources
# =============================================================================


@runtime_checkable
class TemplateSource(Protocol):
    """Where definition documents live.

    Contract:
        - ``read()`` returns the raw text, or None when the id is unknown.
        - ``list_ids()`` returns every known id, sorted.
    """

    def read(self, template_id: str) -> str | None: ...

    def list_ids(self) -> tuple[str, ...]: ...


class DirectoryTemplateSource:
    """Definitions stored as one YAML file per template in a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def read(self, template_id: str) -> str | None:
        for suffix in DEFINITION_SUFFIXES:
            path = self._directory / f"{template_id}{suffix}"
            if path.is_file():
                return path.read_text(encoding="utf-8")
        return None

    def list_ids(self) -> tuple[str, ...]:
        if not self._directory.is_dir():
            logger.warning(
                "templates_dir_missing",
                extra={"templates_dir": str(self._directory)},
            )
            return ()
        ids = {
            path.stem
            for path in self._directory.iterdir()
            if path.is_file()
            and path.suffix in DEFINITION_SUFFIXES
            and not path.name.startswith(".")
        }
        return tuple(sorted(ids))


class InMemoryTemplateSource:
    """Definitions held as text keyed by id."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self._documents: dict[str, str] = dict(documents or {})

    def put(self, template_id: str, text: str) -> None:
        self._documents[template_id] = text

    def delete(self, template_id: str) -> None:
        self._documents.pop(template_id, None)

    def read(self, template_id: str) -> str | None:
        return self._documents.get(template_id)

    def list_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._documents))


# =============================================================================
# TemplateRegistry
# =============================================================================


class TemplateRegistry:
    """Lookup, listing and validation over a TemplateSource.

    Contract:
        - ``get()`` returns a WorkflowTemplate; raises TemplateNotFoundError
          for unknown or malformed documents and
          InvalidWorkflowDefinitionError for parsed-but-invalid ones.
        - ``list()`` returns one summary per parseable document, sorted by
          name.  Invalid definitions are listed with ``valid=False``.
        - ``validate()`` checks a raw mapping without touching storage.
    """

    def __init__(self, source: TemplateSource) -> None:
        self._source = source

    @classmethod
    def from_directory(cls, directory: str | Path) -> TemplateRegistry:
        return cls(DirectoryTemplateSource(directory))

    @property
    def source(self) -> TemplateSource:
        return self._source

    def get(self, template_id: str) -> WorkflowTemplate:
        safe_id = sanitize_template_id(template_id)
        if safe_id is None:
            raise TemplateNotFoundError(str(template_id))

        raw = self._load_raw(safe_id)
        if raw is None:
            logger.warning("template_not_found", extra={"template_id": safe_id})
            raise TemplateNotFoundError(safe_id)
        return parse_template(safe_id, raw)

    def list(self) -> tuple[TemplateSummary, ...]:
        summaries = []
        for template_id in self._source.list_ids():
            raw = self._load_raw(template_id)
            if raw is None:
                continue
            steps = raw.get("steps")
            summaries.append(
                TemplateSummary(
                    template_id=template_id,
                    name=str(raw.get("name") or template_id),
                    version=version_of(raw),
                    description=raw.get("description"),
                    step_count=len(steps) if isinstance(steps, list) else 0,
                    valid=validate_definition(raw).valid,
                )
            )
        summaries.sort(key=lambda s: (s.name, s.template_id))
        return tuple(summaries)

    def validate(self, raw: Any) -> DefinitionValidationResult:
        return validate_definition(raw)

    def statistics(self) -> TemplateStatistics:
        summaries = self.list()
        total_steps = sum(s.step_count for s in summaries)
        by_version: dict[str, int] = {}
        for summary in summaries:
            by_version[summary.version] = by_version.get(summary.version, 0) + 1
        average = round(total_steps / len(summaries)) if summaries else 0
        return TemplateStatistics(
            total_templates=len(summaries),
            total_steps=total_steps,
            average_steps=average,
            by_version=by_version,
            categories=self.categories(),
        )

    def categories(self) -> tuple[str, ...]:
        """Coarse product categories derived from template ids."""
        found: set[str] = set()
        for summary in self.list():
            ident = summary.template_id.lower()
            for category, keywords in _CATEGORY_KEYWORDS:
                if any(k in ident for k in keywords):
                    found.add(category)
                    break
            else:
                found.add("other")
        return tuple(sorted(found))

    def __contains__(self, template_id: str) -> bool:
        safe_id = sanitize_template_id(template_id)
        return safe_id is not None and self._source.read(safe_id) is not None

    def __len__(self) -> int:
        return len(self.list())

    def _load_raw(self, template_id: str) -> dict[str, Any] | None:
        text = self._source.read(template_id)
        if text is None:
            return None
        try:
            return load_definition(text, source=template_id)
        except DefinitionMalformedError as exc:
            logger.error(
                "template_malformed",
                extra={"template_id": template_id, "reason": exc.reason},
            )
            return None
