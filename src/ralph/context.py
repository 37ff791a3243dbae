"""Run context resolution.

The feature a run works on is resolved once at startup, from an explicit
selector or from the persisted current-feature pointer, and then held
unchanged for the whole run. Switching the pointer with ``ralph use`` while
a run is in flight does not affect that run.

State layout under the ralph directory::

    state/current          plain-text label of the current feature
    state/current.json     legacy pointer ({"label": ..., "molecule": ...})
    state/<label>.json     per-feature state ({"molecule": ..., "hidden": ...})
    state/<label>.md       hidden feature specification
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

BEAD_LABEL_PREFIX = "spec-"


class ConfigurationError(Exception):
    """Raised when the run cannot start because required state is missing."""

    pass


class RunMode(str, Enum):
    ONCE = "once"
    LOOP = "loop"


@dataclass(frozen=True)
class RunContext:
    """Immutable per-run state."""

    label: str
    molecule_id: str = ""
    hidden: bool = False
    mode: RunMode = RunMode.LOOP
    ralph_dir: Path = Path(".wrapix/ralph")
    specs_dir: Path = Path("specs")

    @property
    def bead_label(self) -> str:
        """Store label carried by the feature's work items."""
        return f"{BEAD_LABEL_PREFIX}{self.label}"

    @property
    def spec_path(self) -> Path:
        if self.hidden:
            return self.ralph_dir / "state" / f"{self.label}.md"
        return self.specs_dir / f"{self.label}.md"

    @property
    def logs_dir(self) -> Path:
        return self.ralph_dir / "logs"


def _read_json(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read state file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def read_current_label(ralph_dir: Path) -> str:
    """Read the current-feature pointer, falling back to current.json."""
    pointer = ralph_dir / "state" / "current"
    if pointer.is_file():
        label = pointer.read_text(encoding="utf-8").strip()
        if label:
            return label

    legacy = ralph_dir / "state" / "current.json"
    if legacy.is_file():
        return str(_read_json(legacy).get("label") or "")
    return ""


def read_feature_state(ralph_dir: Path, label: str) -> Optional[dict]:
    """Read state/<label>.json, or the legacy current.json; None if neither exists."""
    state_file = ralph_dir / "state" / f"{label}.json"
    if label and state_file.is_file():
        return _read_json(state_file)

    legacy = ralph_dir / "state" / "current.json"
    if legacy.is_file():
        return _read_json(legacy)
    return None


def resolve_run_context(
    ralph_dir: Path,
    spec: Optional[str] = None,
    feature: Optional[str] = None,
    mode: RunMode = RunMode.LOOP,
    specs_dir: Path = Path("specs"),
) -> RunContext:
    """Resolve the run context once, at startup.

    Args:
        ralph_dir: Ralph state directory.
        spec: Explicit ``--spec`` selector. Its state file must exist.
        feature: Positional feature name (used when no ``--spec``).
        mode: Single-step or loop.
        specs_dir: Directory of visible specs.

    Returns:
        The resolved RunContext.

    Raises:
        ConfigurationError: If the explicit spec has no state, or neither a
            label nor a molecule id can be found.
    """
    if spec:
        label = spec.strip()
        if not (ralph_dir / "state" / f"{label}.json").is_file():
            raise ConfigurationError(
                f"Workflow state not found for '{label}': {ralph_dir / 'state' / (label + '.json')}"
            )
    else:
        label = (feature or "").strip() or read_current_label(ralph_dir)

    state = read_feature_state(ralph_dir, label) or {}
    molecule_id = str(state.get("molecule") or "")
    hidden = state.get("hidden") is True or str(state.get("hidden")).lower() == "true"

    if not label and not molecule_id:
        raise ConfigurationError(
            "No molecule ID or feature label found. Run 'ralph todo' first to create a molecule."
        )
    if not label:
        # Items are selected by label; a bare molecule is not enough
        raise ConfigurationError(
            f"Molecule {molecule_id} has no feature label. Pass --spec <name>."
        )

    logger.debug(f"Resolved run context: label={label} molecule={molecule_id or '-'} hidden={hidden}")
    return RunContext(
        label=label,
        molecule_id=molecule_id,
        hidden=hidden,
        mode=mode,
        ralph_dir=ralph_dir,
        specs_dir=specs_dir,
    )


def use_feature(ralph_dir: Path, label: str, specs_dir: Path = Path("specs")) -> Path:
    """Point state/current at ``label`` after validating it exists.

    Raises:
        ConfigurationError: If the spec or the feature state is missing.
    """
    label = label.strip()
    if not label:
        raise ConfigurationError("Label is required")

    spec_file = specs_dir / f"{label}.md"
    hidden_spec = ralph_dir / "state" / f"{label}.md"
    if not spec_file.is_file() and not hidden_spec.is_file():
        raise ConfigurationError(
            f"Spec not found for '{label}' (checked {spec_file} and {hidden_spec})"
        )

    state_file = ralph_dir / "state" / f"{label}.json"
    if not state_file.is_file():
        raise ConfigurationError(f"Workflow state not found for '{label}': {state_file}")

    pointer = ralph_dir / "state" / "current"
    pointer.parent.mkdir(parents=True, exist_ok=True)
    pointer.write_text(label + "\n", encoding="utf-8")
    logger.debug(f"Switched active workflow to: {label}")
    return pointer
