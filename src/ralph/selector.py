"""Selection of the next eligible work item."""

from __future__ import annotations

import logging
from typing import List, Optional

from .store import IssueStore, StoreError, WorkItem

logger = logging.getLogger(__name__)


def eligible(items: List[WorkItem]) -> List[WorkItem]:
    """Drop containers (epics) and items awaiting human input."""
    return [item for item in items if not item.is_epic and not item.awaiting_input]


def order(items: List[WorkItem]) -> List[WorkItem]:
    """Sort by priority (lower is more urgent), then by id for stability."""
    return sorted(items, key=lambda item: (item.priority, item.id))


class ReadinessSelector:
    """Picks the next ready work item for a label or molecule.

    Every call re-queries the store; nothing is cached between steps.
    """

    def __init__(self, store: IssueStore, strict: bool = False):
        """Initialize the selector.

        Args:
            store: Issue store to query.
            strict: Re-raise StoreError instead of reporting "nothing ready".
                Off by default, in which case a store outage looks the same
                as an empty queue to callers.
        """
        self.store = store
        self.strict = strict

    def candidates(self, label: str, molecule: Optional[str] = None) -> List[WorkItem]:
        """All eligible ready items, in selection order.

        Args:
            label: Label the items must carry.
            molecule: When set, query the molecule's ready set instead and
                keep only items that also carry the label (or any item if
                none carry labels).

        Raises:
            StoreError: Only in strict mode.
        """
        try:
            if molecule:
                items = self.store.ready(molecule)
            else:
                items = self.store.list(label=label, ready=True, sort="priority")
        except StoreError as e:
            if self.strict:
                raise
            logger.warning(f"Ready query failed for {molecule or label}: {e}")
            return []

        if molecule:
            items = [i for i in items if not i.labels or label in i.labels]
        return order(eligible(items))

    def next_ready(self, label: str, molecule: Optional[str] = None) -> Optional[WorkItem]:
        """Return the highest-priority eligible item, or None."""
        items = self.candidates(label, molecule)
        if not items:
            logger.debug(f"No ready items for {label}")
            return None
        logger.debug(f"Next ready item for {label}: {items[0].id}")
        return items[0]
