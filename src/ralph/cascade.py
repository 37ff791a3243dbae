"""Closing a feature's epic once its work is done."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from .store import IssueStore, StoreError, STATUS_CLOSED

logger = logging.getLogger(__name__)


class CompletionCascade:
    """Closes the epic for a label when no ready work items remain.

    Called both when selection finds nothing and after the last item
    closes; repeated calls are harmless because only an open epic is
    closed.
    """

    def __init__(
        self,
        store: IssueStore,
        notify: Callable[[str], None],
        specs_readme: Optional[Path] = None,
    ):
        """Initialize the cascade.

        Args:
            store: Issue store.
            notify: Receives user-facing notices.
            specs_readme: The human-readable feature index; a reminder to
                update it is shown for non-hidden features when it exists.
        """
        self.store = store
        self.notify = notify
        self.specs_readme = specs_readme

    def remaining(self, label: str) -> int:
        """Count ready non-epic items under a label (0 on store failure)."""
        try:
            items = self.store.list(label=label, ready=True)
        except StoreError as e:
            logger.warning(f"Failed to check remaining issues: {e}")
            return 0
        count = sum(1 for item in items if not item.is_epic)
        logger.debug(f"Remaining ready work items with label {label}: {count}")
        return count

    def close_epic(self, label: str) -> Optional[str]:
        """Close the open epic carrying ``label``.

        Returns:
            The closed epic's id, or None if there was nothing to close.
        """
        try:
            items = self.store.list(label=label)
        except StoreError as e:
            logger.warning(f"Failed to check for epic: {e}")
            return None

        epic = next(
            (item for item in items if item.is_epic and item.status != STATUS_CLOSED),
            None,
        )
        if epic is None:
            logger.debug(f"No open epic with label {label}")
            return None

        self.notify(f"Closing epic: {epic.id}")
        try:
            self.store.close(epic.id, reason="All tasks complete")
        except StoreError as e:
            logger.warning(f"Failed to close epic {epic.id}: {e}")
            return None
        return epic.id

    def announce_review(self, feature: str, hidden: bool) -> None:
        self.notify(f"All tasks for '{feature}' are complete!")
        if not hidden and self.specs_readme is not None and self.specs_readme.exists():
            self.notify(f"Please update {self.specs_readme} to move the spec from WIP to REVIEW.")

    def finish(self, label: str, feature: str, hidden: bool) -> Optional[str]:
        """Close the epic and announce review without re-checking readiness."""
        epic_id = self.close_epic(label)
        self.announce_review(feature, hidden)
        return epic_id

    def check_and_close(self, label: str, feature: str, hidden: bool) -> bool:
        """Close the epic if no ready work remains under ``label``.

        Args:
            label: Store label of the feature's items (``spec-<feature>``).
            feature: Feature name for notices.
            hidden: Whether the feature's spec lives outside the specs index.

        Returns:
            True if the feature had no remaining ready work.
        """
        if self.remaining(label) > 0:
            return False
        self.finish(label, feature, hidden)
        return True
