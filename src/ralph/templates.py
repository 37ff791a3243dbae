"""Instruction-document templates for ralph.

Templates are markdown files containing two constructs:

- ``{{> partial-name}}`` markers, replaced verbatim with the content of
  ``partial/partial-name.md`` next to the template.
- ``{{NAME}}`` placeholders, replaced with variable values.

Which variables a template takes is declared outside the template body in
``templates.yaml`` (template name -> variable names), and how each variable
behaves when no value is supplied is declared in ``variables.yaml``
(``required``, ``default``, ``description``).

Substitution is a single pass over the partial-resolved content: substituted
values are never re-scanned, so a value containing ``{{OTHER}}`` is emitted
literally.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

# Packaged defaults (templates, partials and metadata)
PACKAGED_TEMPLATE_DIR = Path(__file__).parent / "templates"

PARTIAL_PATTERN = re.compile(r"\{\{>\s*([A-Za-z0-9_-]+)\s*\}\}")
PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Z_][A-Z0-9_]*)\}\}")

# Bound on partial-in-partial inlining
MAX_PARTIAL_DEPTH = 8


class TemplateError(Exception):
    """Base exception for template loading and rendering errors."""

    pass


class TemplateNotFound(TemplateError):
    """Raised when no template of the given name exists in the search path."""

    def __init__(self, name: str, searched: list[Path]):
        self.name = name
        self.searched = searched
        checked = ", ".join(str(p) for p in searched) or "<no template directories>"
        super().__init__(f"Template not found: {name}.md (checked {checked})")


class PartialNotFound(TemplateError):
    """Raised when a template references a partial that does not exist."""

    def __init__(self, name: str, partial_dir: Path):
        self.name = name
        self.partial_dir = partial_dir
        super().__init__(f"Partial not found: {partial_dir / (name + '.md')}")


class MissingRequiredVariable(TemplateError):
    """Raised when required variables have no value, environment entry or default."""

    def __init__(self, template: str, names: list[str]):
        self.template = template
        self.names = names
        super().__init__(
            f"Missing required variables for template '{template}': {', '.join(names)}"
        )

    @property
    def name(self) -> str:
        """First missing variable name."""
        return self.names[0]


@dataclass
class VariableDefinition:
    """Metadata for one template variable."""

    name: str
    required: bool = True
    default: Optional[str] = None
    description: str = ""
    source: str = ""

    @classmethod
    def from_dict(cls, name: str, data: dict) -> VariableDefinition:
        """Create a VariableDefinition from a variables.yaml entry."""
        default = data.get("default")
        return cls(
            name=name,
            required=bool(data.get("required", False)),
            default=None if default is None else str(default),
            description=data.get("description", ""),
            source=data.get("source", ""),
        )


@dataclass
class TemplateMetadata:
    """Declared variables per template and the variable definitions."""

    templates: dict[str, list[str]] = field(default_factory=dict)
    variables: dict[str, VariableDefinition] = field(default_factory=dict)

    @classmethod
    def load(cls, metadata_dir: Path) -> TemplateMetadata:
        """Load templates.yaml and variables.yaml from a directory.

        Missing files yield empty mappings (a template with no declared
        variables renders without validation).

        Args:
            metadata_dir: Directory holding the metadata files.

        Returns:
            Loaded TemplateMetadata.
        """
        templates: dict[str, list[str]] = {}
        variables: dict[str, VariableDefinition] = {}

        templates_file = metadata_dir / "templates.yaml"
        if templates_file.exists():
            with open(templates_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            for name, entry in data.items():
                if isinstance(entry, dict):
                    templates[name] = list(entry.get("variables", []))
                else:
                    templates[name] = list(entry or [])
        else:
            logger.warning(f"Template metadata not found: {templates_file}")

        variables_file = metadata_dir / "variables.yaml"
        if variables_file.exists():
            with open(variables_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            for name, entry in data.items():
                variables[name] = VariableDefinition.from_dict(name, entry or {})
        else:
            logger.warning(f"Variable definitions not found: {variables_file}")

        return cls(templates=templates, variables=variables)

    def declared(self, template_name: str) -> list[str]:
        """Variable names declared for a template."""
        return self.templates.get(template_name, [])


def extract_partial_refs(content: str) -> list[str]:
    """Return the partial names referenced in content, in first-seen order."""
    seen: list[str] = []
    for match in PARTIAL_PATTERN.finditer(content):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def read_partial(partial_dir: Path, name: str) -> str:
    """Read a partial's text with trailing newlines stripped."""
    path = partial_dir / f"{name}.md"
    if not path.is_file():
        raise PartialNotFound(name, partial_dir)
    return path.read_text(encoding="utf-8").rstrip("\n")


def resolve_partials(content: str, partial_dir: Optional[Path]) -> str:
    """Inline every ``{{> name}}`` marker with the named partial.

    Markers are replaced literally, so multi-line partials keep their line
    structure. Partials may reference further partials; those are resolved
    in later passes up to MAX_PARTIAL_DEPTH.

    Args:
        content: Template content.
        partial_dir: Directory of partial files. When None or absent the
            content is returned unchanged.

    Returns:
        Content with all partial markers replaced.

    Raises:
        PartialNotFound: If a referenced partial does not exist.
        TemplateError: If partials reference each other cyclically.
    """
    if partial_dir is None or not partial_dir.is_dir():
        logger.debug("Partial directory not available, returning content unchanged")
        return content

    cache: dict[str, str] = {}

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in cache:
            cache[name] = read_partial(partial_dir, name)
            logger.debug(f"Resolved partial: {name}")
        return cache[name]

    for _ in range(MAX_PARTIAL_DEPTH):
        if not PARTIAL_PATTERN.search(content):
            return content
        content = PARTIAL_PATTERN.sub(_replace, content)

    if PARTIAL_PATTERN.search(content):
        raise TemplateError(
            f"Partial references nested deeper than {MAX_PARTIAL_DEPTH} levels "
            f"(cycle?): {', '.join(extract_partial_refs(content))}"
        )
    return content


def substitute(content: str, values: Mapping[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders in one pass.

    Only names present in ``values`` are replaced; other placeholders are
    left as they are. Replacement text is inserted literally and is not
    scanned again.
    """

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, content)


class TemplateRenderer:
    """Loads, resolves and renders instruction-document templates."""

    def __init__(
        self,
        search_path: Optional[list[Path]] = None,
        metadata: Optional[TemplateMetadata] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """Initialize the renderer.

        Args:
            search_path: Template directories, highest priority first.
                Defaults to the packaged templates.
            metadata: Template/variable metadata. Defaults to the metadata
                shipped with the packaged templates.
            environ: Environment consulted for variables the caller does not
                supply. Defaults to os.environ.
        """
        self.search_path = search_path if search_path is not None else [PACKAGED_TEMPLATE_DIR]
        self.metadata = metadata if metadata is not None else TemplateMetadata.load(PACKAGED_TEMPLATE_DIR)
        self.environ = environ if environ is not None else os.environ

    @classmethod
    def from_dirs(
        cls,
        ralph_dir: Path,
        template_dir: Optional[Path] = None,
        metadata_dir: Optional[Path] = None,
    ) -> TemplateRenderer:
        """Build a renderer with the standard search order.

        Local ``<ralph_dir>/template`` wins over ``template_dir``
        (RALPH_TEMPLATE_DIR), which wins over the packaged templates.
        """
        search_path = [ralph_dir / "template"]
        if template_dir:
            search_path.append(template_dir)
        search_path.append(PACKAGED_TEMPLATE_DIR)
        metadata = TemplateMetadata.load(metadata_dir or PACKAGED_TEMPLATE_DIR)
        return cls(search_path=search_path, metadata=metadata)

    def find(self, name: str) -> Path:
        """Locate a template file by name.

        Raises:
            TemplateNotFound: If no directory in the search path has it.
        """
        for directory in self.search_path:
            candidate = directory / f"{name}.md"
            if candidate.is_file():
                return candidate
        raise TemplateNotFound(name, list(self.search_path))

    def available(self) -> list[str]:
        """Names of all templates visible through the search path."""
        names: set[str] = set()
        for directory in self.search_path:
            if directory.is_dir():
                names.update(p.stem for p in directory.glob("*.md"))
        return sorted(names)

    def load(self, name: str) -> str:
        """Return a template's content with partials inlined."""
        path = self.find(name)
        logger.debug(f"Rendering template: {path}")
        content = path.read_text(encoding="utf-8")
        return resolve_partials(content, path.parent / "partial")

    def resolve_variables(self, name: str, variables: Mapping[str, str]) -> dict[str, str]:
        """Resolve a value for every variable the template declares.

        Order: caller value, environment, configured default. A variable
        still without a value is missing when its definition is required or
        when it has no definition; otherwise it resolves to "".

        Raises:
            MissingRequiredVariable: Listing every missing name.
        """
        resolved: dict[str, str] = {}
        missing: list[str] = []

        for var_name in self.metadata.declared(name):
            if var_name in variables:
                resolved[var_name] = variables[var_name]
                continue
            if var_name in self.environ:
                resolved[var_name] = self.environ[var_name]
                continue

            definition = self.metadata.variables.get(var_name)
            if definition is not None and definition.default is not None:
                resolved[var_name] = definition.default
                logger.debug(f"Using default for {var_name}: {definition.default or '<empty>'}")
            elif definition is None or definition.required:
                missing.append(var_name)
            else:
                resolved[var_name] = ""

        if missing:
            raise MissingRequiredVariable(name, missing)

        # Caller values for undeclared names still substitute
        for var_name, value in variables.items():
            resolved.setdefault(var_name, value)
        return resolved

    def render(self, name: str, variables: Optional[Mapping[str, str]] = None) -> str:
        """Render a template.

        Args:
            name: Template name (file stem).
            variables: Caller-supplied variable values.

        Returns:
            The rendered instruction document.

        Raises:
            TemplateNotFound: No template with this name.
            PartialNotFound: A referenced partial is missing.
            MissingRequiredVariable: Required variables have no value.
        """
        path = self.find(name)
        values = self.resolve_variables(name, variables or {})
        content = resolve_partials(path.read_text(encoding="utf-8"), path.parent / "partial")
        return substitute(content, values)


@dataclass
class TemplateCheck:
    """Outcome of checking one template."""

    name: str
    ok: bool
    error: Optional[str] = None


def check_templates(renderer: TemplateRenderer) -> list[TemplateCheck]:
    """Dry-run every template with dummy values for its declared variables.

    Catches missing partials, unreadable templates, and templates that
    render to nothing.
    """
    results = []
    for name in renderer.available():
        try:
            dummy = {v: f"DUMMY_{v}" for v in renderer.metadata.declared(name)}
            rendered = renderer.render(name, dummy)
            if not rendered.strip():
                results.append(TemplateCheck(name, False, "rendered output is empty"))
            else:
                results.append(TemplateCheck(name, True))
        except TemplateError as e:
            results.append(TemplateCheck(name, False, str(e)))
    return results
