"""Shared test fixtures for ralph tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional

import pytest

from ralph.context import RunContext, RunMode
from ralph.store import KIND_EPIC, KIND_TASK, MockIssueStore, WorkItem

FEATURE = "my-feature"
BEAD_LABEL = f"spec-{FEATURE}"
EPIC_ID = "epic-1"


def make_task(
    issue_id: str,
    priority: int = 2,
    dependencies: Optional[list[str]] = None,
    labels: Optional[list[str]] = None,
    status: str = "open",
) -> WorkItem:
    """Build an open task under the test feature's label and epic."""
    return WorkItem(
        id=issue_id,
        title=f"Task {issue_id}",
        description=f"Do {issue_id}",
        status=status,
        labels=list(labels or [BEAD_LABEL]),
        priority=priority,
        issue_type=KIND_TASK,
        parent=EPIC_ID,
        dependencies=list(dependencies or []),
    )


def make_epic(issue_id: str = EPIC_ID) -> WorkItem:
    return WorkItem(
        id=issue_id,
        title="Feature epic",
        labels=[BEAD_LABEL],
        priority=0,
        issue_type=KIND_EPIC,
    )


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A project directory with specs/ and a ralph state directory for the test feature."""
    monkeypatch.chdir(tmp_path)
    for var in ("RALPH_DIR", "RALPH_TEMPLATE_DIR", "RALPH_METADATA_DIR", "RALPH_DEBUG",
                "RALPH_LOG_LEVEL", "RALPH_WORKER_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)

    specs = tmp_path / "specs"
    specs.mkdir()
    (specs / f"{FEATURE}.md").write_text("# My feature\n")
    (specs / "README.md").write_text("# Specs\n\n- my-feature: WIP\n")

    state = tmp_path / ".wrapix" / "ralph" / "state"
    state.mkdir(parents=True)
    (state / "current").write_text(FEATURE + "\n")
    (state / f"{FEATURE}.json").write_text(json.dumps({"molecule": EPIC_ID, "hidden": False}))
    return tmp_path


@pytest.fixture
def ralph_dir(workspace: Path) -> Path:
    return workspace / ".wrapix" / "ralph"


@pytest.fixture
def run_context(workspace: Path, ralph_dir: Path) -> RunContext:
    return RunContext(
        label=FEATURE,
        molecule_id=EPIC_ID,
        mode=RunMode.LOOP,
        ralph_dir=ralph_dir,
        specs_dir=workspace / "specs",
    )


@pytest.fixture
def make_store() -> Callable[..., MockIssueStore]:
    """Factory for a mock store holding the feature epic plus the given items."""

    def _make(*items: WorkItem, with_epic: bool = True) -> MockIssueStore:
        store = MockIssueStore(list(items))
        if with_epic:
            store.add(make_epic())
        return store

    return _make


@pytest.fixture
def messages() -> list[str]:
    """Collects user-facing notices."""
    return []


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """A template directory with one template, one partial and metadata."""
    directory = tmp_path / "tpl"
    (directory / "partial").mkdir(parents=True)
    (directory / "greet.md").write_text("Hello {{NAME}}\n{{> footer}}\nBye {{NAME}}\n")
    (directory / "partial" / "footer.md").write_text("line1\nline2\n")
    (directory / "templates.yaml").write_text("greet:\n  variables:\n    - NAME\n    - MOOD\n")
    (directory / "variables.yaml").write_text(
        "NAME:\n  required: true\nMOOD:\n  required: false\n  default: calm\n"
    )
    return directory
