"""Execution of a single unit of work.

One step: select the next ready item, mark it in progress, render its
instruction document, run the worker with fresh context, and act on the
completion signal the worker reports.

    Selecting -> NoWorkFound                      (ALL_COMPLETE)
    Selecting -> Selected -> InProgress -> Completed | Failed | NeedsClarification

The in_progress write happens before rendering or spawning anything, so a
concurrent agent's selection skips the item. A failed or paused step leaves
the item in_progress (or tagged awaiting input) for a human or a later run
to pick up; nothing is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .cascade import CompletionCascade
from .context import RunContext
from .selector import ReadinessSelector
from .signals import SignalKind, WorkerSignal, parse_signal
from .store import AWAITING_INPUT_LABEL, STATUS_IN_PROGRESS, IssueStore, StoreError
from .templates import TemplateRenderer
from .worker import WorkerRunner

logger = logging.getLogger(__name__)

RUN_TEMPLATE = "run"

EXIT_MORE_WORK = 0
EXIT_FAILURE = 1
EXIT_ALL_COMPLETE = 100


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    ALL_COMPLETE = "all_complete"
    FAILED = "failed"
    NEEDS_CLARIFICATION = "needs_clarification"


@dataclass
class StepResult:
    """Outcome of one step."""

    outcome: StepOutcome
    issue_id: str = ""
    log_path: Optional[Path] = None
    signal: Optional[WorkerSignal] = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        """Step exit code as seen by post-step hooks (0, 100 or 1)."""
        if self.outcome is StepOutcome.COMPLETED:
            return EXIT_MORE_WORK
        if self.outcome is StepOutcome.ALL_COMPLETE:
            return EXIT_ALL_COMPLETE
        return EXIT_FAILURE


class StepExecutor:
    """Runs one work item end to end."""

    def __init__(
        self,
        context: RunContext,
        store: IssueStore,
        selector: ReadinessSelector,
        renderer: TemplateRenderer,
        worker: WorkerRunner,
        cascade: CompletionCascade,
        notify: Callable[[str], None],
        pinned_context: Optional[Path] = None,
        exit_signals: str = "",
    ):
        """Initialize the step executor.

        Args:
            context: The run's resolved context.
            store: Issue store.
            selector: Readiness selector.
            renderer: Template renderer for the instruction document.
            worker: Worker runner.
            cascade: Completion cascade for the feature's epic.
            notify: Receives user-facing progress text.
            pinned_context: Project index document inlined into every
                instruction document, if it exists.
            exit_signals: Extra exit-signal text for the template.
        """
        self.context = context
        self.store = store
        self.selector = selector
        self.renderer = renderer
        self.worker = worker
        self.cascade = cascade
        self.notify = notify
        self.pinned_context = pinned_context
        self.exit_signals = exit_signals

    def run(self) -> StepResult:
        """Execute one step.

        Raises:
            TemplateError: If the instruction document cannot be rendered
                (configuration error; the item stays in_progress).
        """
        ctx = self.context
        label = ctx.bead_label
        logger.debug(f"Looking for issues with label: {label}")

        try:
            item = self.selector.next_ready(label)
        except StoreError as e:
            logger.error(f"Issue store unavailable: {e}")
            return StepResult(StepOutcome.FAILED, message=f"Issue store unavailable: {e}")

        if item is None:
            self.notify(f"No more ready issues with label: {label}")
            self.notify("All work complete!")
            self.cascade.finish(label, ctx.label, ctx.hidden)
            return StepResult(StepOutcome.ALL_COMPLETE, message="No ready work items")

        issue_id = item.id
        self.notify(f"Working on: {issue_id} {item.title}".rstrip())

        try:
            self.store.update(issue_id, status=STATUS_IN_PROGRESS)
        except StoreError as e:
            logger.error(f"Failed to mark {issue_id} in progress: {e}")
            return StepResult(
                StepOutcome.FAILED,
                issue_id=issue_id,
                message=f"Could not claim {issue_id}: {e}",
            )

        title, description = self._issue_details(issue_id)
        prompt = self.renderer.render(RUN_TEMPLATE, self._variables(issue_id, title, description))

        log_path = ctx.logs_dir / f"work-{issue_id}.log"
        self.notify("=== Starting work (fresh context) ===")
        result = self.worker.run(prompt, log_path)

        if result.error:
            self.notify(f"Worker failed: {result.error}")
            self.notify(f"Issue remains in-progress: {issue_id}")
            return StepResult(
                StepOutcome.FAILED,
                issue_id=issue_id,
                log_path=log_path,
                signal=WorkerSignal.none(),
                message=result.error,
            )

        signal = parse_signal(result.result_text)
        return self._apply_signal(issue_id, signal, log_path)

    def _issue_details(self, issue_id: str) -> tuple[str, str]:
        """Fetch title and description; empty strings if the store read fails."""
        try:
            item = self.store.show(issue_id)
        except StoreError as e:
            logger.warning(f"Could not fetch details for {issue_id}, continuing with empty values: {e}")
            return "", ""
        if not item.title:
            logger.warning(f"Issue {issue_id} has no title")
        return item.title, item.description

    def _variables(self, issue_id: str, title: str, description: str) -> dict[str, str]:
        ctx = self.context
        pinned = ""
        if self.pinned_context is not None and self.pinned_context.is_file():
            pinned = self.pinned_context.read_text(encoding="utf-8")
        return {
            "SPEC_PATH": str(ctx.spec_path),
            "ISSUE_ID": issue_id,
            "TITLE": title,
            "LABEL": ctx.label,
            "MOLECULE_ID": ctx.molecule_id,
            "DESCRIPTION": description,
            "PINNED_CONTEXT": pinned,
            "EXIT_SIGNALS": self.exit_signals,
        }

    def _apply_signal(self, issue_id: str, signal: WorkerSignal, log_path: Path) -> StepResult:
        ctx = self.context

        if signal.kind is SignalKind.COMPLETE:
            self.notify(f"Work complete. Closing issue: {issue_id}")
            try:
                self.store.close(issue_id)
            except StoreError as e:
                logger.error(f"Failed to close {issue_id}: {e}")
                return StepResult(
                    StepOutcome.FAILED,
                    issue_id=issue_id,
                    log_path=log_path,
                    signal=signal,
                    message=f"Worker completed but {issue_id} could not be closed: {e}",
                )
            self.cascade.check_and_close(ctx.bead_label, ctx.label, ctx.hidden)
            return StepResult(StepOutcome.COMPLETED, issue_id=issue_id, log_path=log_path, signal=signal)

        if signal.kind is SignalKind.CLARIFY:
            self._request_clarification(issue_id, signal.question)
            return StepResult(
                StepOutcome.NEEDS_CLARIFICATION,
                issue_id=issue_id,
                log_path=log_path,
                signal=signal,
                message=signal.question,
            )

        if signal.kind is SignalKind.BLOCKED and signal.reason:
            self.notify(f"Worker reported blocked: {signal.reason}")
        self.notify(f"Work did not complete. Issue remains in-progress: {issue_id}")
        self.notify(f"Review log: {log_path}")
        self.notify("To retry this issue, reset its status:")
        self.notify(f"  bd update {issue_id} --status=open")
        return StepResult(
            StepOutcome.FAILED,
            issue_id=issue_id,
            log_path=log_path,
            signal=signal,
            message=signal.reason or "Worker did not signal completion",
        )

    def _request_clarification(self, issue_id: str, question: str) -> None:
        self.notify(f"Agent needs clarification on issue: {issue_id}")
        if question:
            self.notify(f"  Question: {question}")

        try:
            self.store.update(
                issue_id,
                add_label=AWAITING_INPUT_LABEL,
                append_notes=f"Question: {question}" if question else None,
            )
        except StoreError as e:
            logger.warning(f"Failed to mark {issue_id} as awaiting input: {e}")

        self.notify("To answer and unblock:")
        self.notify(f"  bd update {issue_id} --append-notes 'Answer: <your answer>'")
        self.notify(f"  bd update {issue_id} --remove-label {AWAITING_INPUT_LABEL}")
