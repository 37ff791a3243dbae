"""Issue store access for the ralph work loop.

Work items live in an external issue tracker (beads, driven through the
``bd`` CLI). This module provides:

- WorkItem: the subset of an issue the loop cares about
- IssueStore: the narrow interface the loop consumes
- BeadsStore: IssueStore over the ``bd`` command line tool
- MockIssueStore: in-memory IssueStore with a real readiness predicate

The store owns status transitions; marking an item ``in_progress`` is the
only coordination primitive between cooperating agents.
"""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_CLOSED = "closed"

KIND_EPIC = "epic"
KIND_TASK = "task"

AWAITING_INPUT_LABEL = "awaiting:input"


class StoreError(Exception):
    """Exception raised when an issue store call fails."""

    pass


@dataclass
class WorkItem:
    """A unit of work tracked in the issue store."""

    id: str
    title: str = ""
    description: str = ""
    status: str = STATUS_OPEN
    labels: List[str] = field(default_factory=list)
    priority: int = 2
    issue_type: str = KIND_TASK
    parent: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    notes: str = ""

    @property
    def is_epic(self) -> bool:
        return self.issue_type == KIND_EPIC

    @property
    def awaiting_input(self) -> bool:
        return AWAITING_INPUT_LABEL in self.labels

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WorkItem:
        """Create a WorkItem from store JSON.

        Dependencies may arrive as plain ids or as objects carrying
        ``depends_on_id``/``id``; unknown keys are ignored.
        """
        deps = []
        for dep in data.get("dependencies") or []:
            if isinstance(dep, dict):
                dep_id = dep.get("depends_on_id") or dep.get("id")
                if dep_id:
                    deps.append(str(dep_id))
            else:
                deps.append(str(dep))

        priority = data.get("priority", 2)
        try:
            priority = int(priority)
        except (TypeError, ValueError):
            priority = 2

        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
            status=data.get("status") or STATUS_OPEN,
            labels=list(data.get("labels") or []),
            priority=priority,
            issue_type=data.get("issue_type") or data.get("type") or KIND_TASK,
            parent=data.get("parent"),
            dependencies=deps,
            notes=data.get("notes") or "",
        )


class IssueStore(ABC):
    """Interface to the external issue store.

    All methods raise StoreError on transport or tool failure; callers
    decide whether to degrade.
    """

    @abstractmethod
    def create(
        self,
        title: str,
        kind: str = KIND_TASK,
        labels: Optional[List[str]] = None,
        priority: int = 2,
        parent: Optional[str] = None,
        description: str = "",
    ) -> str:
        pass

    @abstractmethod
    def show(self, issue_id: str) -> WorkItem:
        pass

    @abstractmethod
    def update(
        self,
        issue_id: str,
        status: Optional[str] = None,
        add_label: Optional[str] = None,
        remove_label: Optional[str] = None,
        append_notes: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def close(self, issue_id: str, reason: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def list(
        self,
        label: Optional[str] = None,
        ready: bool = False,
        status: Optional[str] = None,
        sort: str = "priority",
    ) -> List[WorkItem]:
        pass

    @abstractmethod
    def ready(self, molecule: str, limit: Optional[int] = None) -> List[WorkItem]:
        """Ready items belonging to a molecule (aggregate/epic)."""
        pass

    @abstractmethod
    def dependencies_blocked(self, issue_id: str) -> bool:
        pass

    def sync(self) -> None:
        """Refresh local store state from its remote, if any."""
        return None


def extract_json(output: str) -> Any:
    """Decode JSON from tool output that may have leading warning lines.

    Args:
        output: Raw stdout.

    Returns:
        Decoded JSON value.

    Raises:
        StoreError: If no JSON document can be decoded.
    """
    text = output.strip()
    if not text:
        raise StoreError("Empty output from issue store")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    lines = text.splitlines()
    for i, line in enumerate(lines):
        if line.startswith("[") or line.startswith("{"):
            try:
                return json.loads("\n".join(lines[i:]))
            except json.JSONDecodeError as e:
                raise StoreError(f"Invalid JSON from issue store: {e}") from e

    raise StoreError(f"No JSON in issue store output: {text[:100]}...")


class BeadsStore(IssueStore):
    """IssueStore backed by the ``bd`` command line tool."""

    def __init__(self, command: str = "bd", timeout: int = 60):
        """Initialize the beads store.

        Args:
            command: The bd executable.
            timeout: Seconds to wait for each bd call.
        """
        self.command = command
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        """Run a bd command and return its stdout.

        Raises:
            StoreError: If bd is missing, times out or exits non-zero.
        """
        cmd = [self.command, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise StoreError(f"{self.command} not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise StoreError(f"bd {args[0]} timed out after {self.timeout} seconds") from e

        if result.stderr:
            logger.debug(f"bd stderr: {result.stderr[:200]}")

        if result.returncode != 0:
            raise StoreError(
                f"bd {args[0]} failed (exit {result.returncode}): {result.stderr[:200]}"
            )
        return result.stdout

    def _json(self, *args: str) -> Any:
        return extract_json(self._run(*args, "--json"))

    def _items(self, *args: str) -> List[WorkItem]:
        data = self._json(*args)
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise StoreError(f"Expected a JSON array from bd {args[0]}")
        return [WorkItem.from_dict(d) for d in data]

    def create(
        self,
        title: str,
        kind: str = KIND_TASK,
        labels: Optional[List[str]] = None,
        priority: int = 2,
        parent: Optional[str] = None,
        description: str = "",
    ) -> str:
        args = ["create", f"--title={title}", f"--type={kind}", f"--priority={priority}"]
        if labels:
            args.append(f"--labels={','.join(labels)}")
        if parent:
            args.append(f"--parent={parent}")
        if description:
            args.append(f"--description={description}")
        data = self._json(*args)
        if isinstance(data, list):
            data = data[0] if data else {}
        issue_id = data.get("id") if isinstance(data, dict) else None
        if not issue_id:
            raise StoreError("bd create returned no issue id")
        return str(issue_id)

    def show(self, issue_id: str) -> WorkItem:
        items = self._items("show", issue_id)
        if not items:
            raise StoreError(f"Issue not found: {issue_id}")
        return items[0]

    def update(
        self,
        issue_id: str,
        status: Optional[str] = None,
        add_label: Optional[str] = None,
        remove_label: Optional[str] = None,
        append_notes: Optional[str] = None,
    ) -> None:
        args = ["update", issue_id]
        if status:
            args.append(f"--status={status}")
        if add_label:
            args.extend(["--add-label", add_label])
        if remove_label:
            args.extend(["--remove-label", remove_label])
        if append_notes:
            args.extend(["--append-notes", append_notes])
        self._run(*args)

    def close(self, issue_id: str, reason: Optional[str] = None) -> None:
        args = ["close", issue_id]
        if reason:
            args.append(f"--reason={reason}")
        self._run(*args)

    def list(
        self,
        label: Optional[str] = None,
        ready: bool = False,
        status: Optional[str] = None,
        sort: str = "priority",
    ) -> List[WorkItem]:
        args = ["list"]
        if label:
            args.extend(["--label", label])
        if ready:
            args.append("--ready")
        if status:
            args.append(f"--status={status}")
        if sort:
            args.extend(["--sort", sort])
        return self._items(*args)

    def ready(self, molecule: str, limit: Optional[int] = None) -> List[WorkItem]:
        args = ["ready", "--mol", molecule, "--sort", "priority"]
        if limit:
            args.extend(["--limit", str(limit)])
        return self._items(*args)

    def dependencies_blocked(self, issue_id: str) -> bool:
        item = self.show(issue_id)
        for dep_id in item.dependencies:
            if self.show(dep_id).status != STATUS_CLOSED:
                return True
        return False

    def sync(self) -> None:
        self._run("dolt", "pull")


class MockIssueStore(IssueStore):
    """In-memory issue store for testing.

    Readiness follows the beads rule: open status and every dependency
    closed. ``fail_on`` names operations that should raise StoreError.
    """

    def __init__(self, items: Optional[List[WorkItem]] = None):
        self.items: Dict[str, WorkItem] = {}
        self.calls: List[tuple] = []
        self.fail_on: set[str] = set()
        self._next_id = 1
        for item in items or []:
            self.add(item)

    def add(self, item: WorkItem) -> WorkItem:
        self.items[item.id] = item
        return item

    def _record(self, op: str, *args: Any) -> None:
        self.calls.append((op, *args))
        if op in self.fail_on:
            raise StoreError(f"mock {op} failure")

    def _get(self, issue_id: str) -> WorkItem:
        if issue_id not in self.items:
            raise StoreError(f"Issue not found: {issue_id}")
        return self.items[issue_id]

    def _is_ready(self, item: WorkItem) -> bool:
        if item.status != STATUS_OPEN:
            return False
        for dep_id in item.dependencies:
            dep = self.items.get(dep_id)
            if dep is not None and dep.status != STATUS_CLOSED:
                return False
        return True

    def create(
        self,
        title: str,
        kind: str = KIND_TASK,
        labels: Optional[List[str]] = None,
        priority: int = 2,
        parent: Optional[str] = None,
        description: str = "",
    ) -> str:
        self._record("create", title)
        while f"mock-{self._next_id}" in self.items:
            self._next_id += 1
        issue_id = f"mock-{self._next_id}"
        self.add(WorkItem(
            id=issue_id,
            title=title,
            description=description,
            labels=list(labels or []),
            priority=priority,
            issue_type=kind,
            parent=parent,
        ))
        return issue_id

    def show(self, issue_id: str) -> WorkItem:
        self._record("show", issue_id)
        return self._get(issue_id)

    def update(
        self,
        issue_id: str,
        status: Optional[str] = None,
        add_label: Optional[str] = None,
        remove_label: Optional[str] = None,
        append_notes: Optional[str] = None,
    ) -> None:
        self._record("update", issue_id, status, add_label, remove_label, append_notes)
        item = self._get(issue_id)
        if status:
            item.status = status
        if add_label and add_label not in item.labels:
            item.labels.append(add_label)
        if remove_label and remove_label in item.labels:
            item.labels.remove(remove_label)
        if append_notes:
            item.notes = f"{item.notes}\n{append_notes}" if item.notes else append_notes

    def close(self, issue_id: str, reason: Optional[str] = None) -> None:
        self._record("close", issue_id)
        self._get(issue_id).status = STATUS_CLOSED

    def list(
        self,
        label: Optional[str] = None,
        ready: bool = False,
        status: Optional[str] = None,
        sort: str = "priority",
    ) -> List[WorkItem]:
        self._record("list", label, ready)
        items = [
            item for item in self.items.values()
            if (label is None or label in item.labels)
            and (status is None or item.status == status)
            and (not ready or self._is_ready(item))
        ]
        if sort == "priority":
            items.sort(key=lambda i: i.priority)
        return items

    def ready(self, molecule: str, limit: Optional[int] = None) -> List[WorkItem]:
        self._record("ready", molecule)
        items = [
            item for item in self.items.values()
            if item.parent == molecule and self._is_ready(item)
        ]
        items.sort(key=lambda i: i.priority)
        return items[:limit] if limit else items

    def dependencies_blocked(self, issue_id: str) -> bool:
        item = self._get(issue_id)
        return any(
            dep_id in self.items and self.items[dep_id].status != STATUS_CLOSED
            for dep_id in item.dependencies
        )

    def sync(self) -> None:
        self._record("sync")
