"""User-configured shell hooks around the work loop.

Hooks run at four trigger points (pre-loop, pre-step, post-step, post-loop).
Each hook command is a shell string with a small fixed vocabulary of
placeholders: ``{{LABEL}}``, ``{{ISSUE_ID}}``, ``{{STEP_COUNT}}`` and
``{{STEP_EXIT_CODE}}``. Commands run in a child shell, so an ``exit`` inside
a hook ends only that shell.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


class HookTrigger(str, Enum):
    """Points in the loop where hooks run."""

    PRE_LOOP = "pre-loop"
    PRE_STEP = "pre-step"
    POST_STEP = "post-step"
    POST_LOOP = "post-loop"


class HookPolicy(str, Enum):
    """What a failing hook does to the run."""

    BLOCK = "block"
    WARN = "warn"
    SKIP = "skip"

    @classmethod
    def parse(cls, value: object) -> HookPolicy:
        """Parse a policy name; unknown, empty or non-string values mean BLOCK."""
        try:
            return cls(str(value if value is not None else "").strip().lower())
        except ValueError:
            if value:
                logger.warning(f"Unknown hooks-on-failure value '{value}', treating as block")
            return cls.BLOCK


class HookFailed(Exception):
    """Raised when a hook fails under the block policy."""

    def __init__(self, trigger: HookTrigger, exit_code: int):
        self.trigger = trigger
        self.exit_code = exit_code
        super().__init__(f"Hook '{trigger.value}' failed (exit code: {exit_code}). Stopping.")


@dataclass
class HookVars:
    """Values substituted into hook commands."""

    label: str = ""
    issue_id: str = ""
    step_count: Optional[int] = None
    step_exit_code: Optional[int] = None

    def as_mapping(self) -> dict[str, str]:
        return {
            "LABEL": self.label,
            "ISSUE_ID": self.issue_id,
            "STEP_COUNT": "" if self.step_count is None else str(self.step_count),
            "STEP_EXIT_CODE": "" if self.step_exit_code is None else str(self.step_exit_code),
        }


def substitute_hook_vars(command: str, values: Mapping[str, str]) -> str:
    """Flat replacement of ``{{NAME}}`` for the hook vocabulary."""
    for name, value in values.items():
        command = command.replace("{{" + name + "}}", value)
    return command


class HookRunner:
    """Runs configured hooks and applies the failure policy."""

    def __init__(
        self,
        hooks: Optional[Mapping[str, str]] = None,
        policy: HookPolicy = HookPolicy.BLOCK,
        cwd: Optional[Path] = None,
        shell: str = "/bin/sh",
    ):
        """Initialize the hook runner.

        Args:
            hooks: Trigger name -> command string. Missing or empty entries
                are no-ops.
            policy: Failure policy applied to every hook.
            cwd: Working directory for hook commands.
            shell: Shell executable used to run the commands.
        """
        self.hooks = dict(hooks or {})
        self.policy = policy
        self.cwd = cwd
        self.shell = shell

    def command_for(self, trigger: HookTrigger) -> str:
        return self.hooks.get(trigger.value, "") or ""

    def run(self, trigger: HookTrigger, variables: Optional[HookVars] = None) -> int:
        """Run the hook configured for a trigger.

        Args:
            trigger: Which hook to run.
            variables: Values for the placeholder vocabulary.

        Returns:
            The hook's exit code (0 when no hook is configured).

        Raises:
            HookFailed: If the hook exits non-zero under the block policy.
        """
        command = self.command_for(trigger)
        if not command.strip():
            return 0

        command = substitute_hook_vars(command, (variables or HookVars()).as_mapping())
        logger.debug(f"Running hook {trigger.value}: {command}")

        try:
            result = subprocess.run([self.shell, "-c", command], cwd=self.cwd)
            exit_code = result.returncode
        except OSError as e:
            logger.error(f"Hook '{trigger.value}' could not be started: {e}")
            exit_code = 127

        if exit_code == 0:
            return 0

        if self.policy is HookPolicy.WARN:
            logger.warning(f"Hook '{trigger.value}' failed (exit code: {exit_code}), continuing...")
        elif self.policy is HookPolicy.SKIP:
            logger.debug(f"Hook '{trigger.value}' failed (exit code: {exit_code}), skipping")
        else:
            raise HookFailed(trigger, exit_code)
        return exit_code
