"""The work loop: hooks around repeated steps.

    pre-loop
      { pre-step -> step -> post-step }  repeated
    post-loop

Single-step mode runs exactly one step. Loop mode repeats until the ready
queue is exhausted or a step fails or needs clarification. The post-step
hook runs after every step whatever its outcome, and the post-loop hook
runs once at the end of every run except one aborted by a blocking hook.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .context import RunContext, RunMode
from .hooks import HookFailed, HookRunner, HookTrigger, HookVars
from .loop_logger import LoopLogger
from .selector import ReadinessSelector
from .step import EXIT_ALL_COMPLETE, EXIT_FAILURE, EXIT_MORE_WORK, StepExecutor, StepOutcome, StepResult
from .store import StoreError

logger = logging.getLogger(__name__)


class LoopOutcome(str, Enum):
    MORE_WORK = "more_work"
    ALL_COMPLETE = "all_complete"
    FAILED = "failed"


@dataclass
class LoopResult:
    """Outcome of a run."""

    outcome: LoopOutcome
    mode: RunMode
    steps: int = 0
    last_step: Optional[StepResult] = None

    @property
    def exit_code(self) -> int:
        """Process exit code: 0, 100 (single-step only) or 1."""
        if self.outcome is LoopOutcome.FAILED:
            return EXIT_FAILURE
        if self.outcome is LoopOutcome.ALL_COMPLETE and self.mode is RunMode.ONCE:
            return EXIT_ALL_COMPLETE
        return EXIT_MORE_WORK


class LoopDriver:
    """Runs steps for one RunContext until the mode says stop."""

    def __init__(
        self,
        context: RunContext,
        executor: StepExecutor,
        hooks: HookRunner,
        selector: ReadinessSelector,
        notify: Callable[[str], None],
        run_logger: Optional[LoopLogger] = None,
    ):
        """Initialize the loop driver.

        Args:
            context: The run's resolved context.
            executor: Step executor bound to the same context.
            hooks: Hook runner with the run's failure policy.
            selector: Used to look up the item a pre-step hook will see.
            notify: Receives user-facing progress text.
            run_logger: Optional audit logger.
        """
        self.context = context
        self.executor = executor
        self.hooks = hooks
        self.selector = selector
        self.notify = notify
        self.run_logger = run_logger
        self.step_count = 0

    def run(self) -> LoopResult:
        """Run the loop.

        Raises:
            HookFailed: A hook failed under the block policy; the run stops
                at once and the hook's exit code is the process exit code.
            TemplateError: The instruction document could not be rendered.
        """
        ctx = self.context
        aborted = False
        try:
            self._hook(HookTrigger.PRE_LOOP, HookVars(label=ctx.label))
            return self._iterate()
        except HookFailed as e:
            aborted = True
            if self.run_logger:
                self.run_logger.log_hook_failure(e.trigger.value, e.exit_code)
            raise
        finally:
            if not aborted:
                self._hook(
                    HookTrigger.POST_LOOP,
                    HookVars(label=ctx.label, step_count=self.step_count),
                )

    def _iterate(self) -> LoopResult:
        ctx = self.context
        while True:
            self.step_count += 1
            number = self.step_count
            if ctx.mode is RunMode.LOOP:
                self.notify(f"=== Step {number} ===")

            self._hook(
                HookTrigger.PRE_STEP,
                HookVars(label=ctx.label, issue_id=self._peek_issue_id(), step_count=number),
            )

            if self.run_logger:
                self.run_logger.log_step_start(number)
            result = self.executor.run()
            if self.run_logger:
                self.run_logger.log_step_end(
                    result.outcome.value,
                    result.exit_code,
                    issue_id=result.issue_id,
                    log_path=result.log_path,
                    message=result.message,
                )

            self._hook(
                HookTrigger.POST_STEP,
                HookVars(
                    label=ctx.label,
                    issue_id=result.issue_id,
                    step_count=number,
                    step_exit_code=result.exit_code,
                ),
            )

            if result.outcome is StepOutcome.ALL_COMPLETE:
                return LoopResult(LoopOutcome.ALL_COMPLETE, ctx.mode, number, result)

            if result.outcome is not StepOutcome.COMPLETED:
                self._resume_guidance(result)
                return LoopResult(LoopOutcome.FAILED, ctx.mode, number, result)

            if ctx.mode is RunMode.ONCE:
                return LoopResult(LoopOutcome.MORE_WORK, ctx.mode, number, result)

    def _hook(self, trigger: HookTrigger, variables: HookVars) -> None:
        exit_code = self.hooks.run(trigger, variables)
        if exit_code != 0 and self.run_logger:
            self.run_logger.log_hook_failure(trigger.value, exit_code)

    def _peek_issue_id(self) -> str:
        """Id of the item the next step is expected to pick, for pre-step hooks."""
        if not self.hooks.command_for(HookTrigger.PRE_STEP):
            return ""
        ctx = self.context
        try:
            item = self.selector.next_ready(ctx.bead_label, ctx.molecule_id or None)
        except StoreError as e:
            logger.warning(f"Could not determine next issue for pre-step hook: {e}")
            return ""
        return item.id if item else ""

    def _resume_guidance(self, result: StepResult) -> None:
        if result.outcome is StepOutcome.NEEDS_CLARIFICATION:
            self.notify("Loop paused: waiting for clarification.")
        else:
            self.notify(f"Loop paused: step {self.step_count} did not complete.")
        self.notify("Resume with: ralph run")
