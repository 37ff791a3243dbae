"""Tests for hook execution and failure policies."""

from __future__ import annotations

from pathlib import Path

import pytest

from ralph.hooks import (
    HookFailed,
    HookPolicy,
    HookRunner,
    HookTrigger,
    HookVars,
    substitute_hook_vars,
)


class TestHookPolicy:
    """Tests for HookPolicy.parse."""

    @pytest.mark.parametrize("value,expected", [
        ("block", HookPolicy.BLOCK),
        ("warn", HookPolicy.WARN),
        ("SKIP", HookPolicy.SKIP),
        ("", HookPolicy.BLOCK),
        (None, HookPolicy.BLOCK),
        ("explode", HookPolicy.BLOCK),
        (True, HookPolicy.BLOCK),
        (3, HookPolicy.BLOCK),
    ])
    def test_parse(self, value, expected):
        assert HookPolicy.parse(value) is expected


class TestSubstitution:
    """Tests for hook placeholder substitution."""

    def test_vars(self):
        values = HookVars(label="feat", issue_id="bd-1", step_count=3, step_exit_code=0).as_mapping()
        command = substitute_hook_vars("echo {{LABEL}} {{ISSUE_ID}} {{STEP_COUNT}} {{STEP_EXIT_CODE}}", values)
        assert command == "echo feat bd-1 3 0"

    def test_unset_vars_empty(self):
        command = substitute_hook_vars("echo [{{ISSUE_ID}}]", HookVars(label="feat").as_mapping())
        assert command == "echo []"


class TestHookRunner:
    """Tests for HookRunner.run."""

    def test_empty_command_is_noop(self):
        runner = HookRunner({HookTrigger.PRE_STEP.value: "  "})
        assert runner.run(HookTrigger.PRE_STEP) == 0
        assert runner.run(HookTrigger.POST_LOOP) == 0

    def test_runs_with_substitution(self, tmp_path: Path):
        marker = tmp_path / "marker"
        runner = HookRunner({"post-step": f"echo '{{{{LABEL}}}}:{{{{STEP_EXIT_CODE}}}}' >> {marker}"})
        runner.run(HookTrigger.POST_STEP, HookVars(label="feat", step_exit_code=1))
        assert marker.read_text().strip() == "feat:1"

    def test_exit_inside_hook_does_not_end_caller(self, tmp_path: Path):
        """A hook's own exit only ends the child shell."""
        runner = HookRunner({"pre-loop": "exit 0"}, cwd=tmp_path)
        assert runner.run(HookTrigger.PRE_LOOP) == 0

    def test_block_policy_raises_with_exit_code(self):
        runner = HookRunner({"pre-step": "exit 7"}, policy=HookPolicy.BLOCK)
        with pytest.raises(HookFailed) as exc_info:
            runner.run(HookTrigger.PRE_STEP)
        assert exc_info.value.exit_code == 7
        assert exc_info.value.trigger is HookTrigger.PRE_STEP

    def test_warn_policy_continues(self, caplog):
        runner = HookRunner({"pre-step": "exit 3"}, policy=HookPolicy.WARN)
        assert runner.run(HookTrigger.PRE_STEP) == 3
        assert "failed (exit code: 3)" in caplog.text

    def test_skip_policy_continues(self):
        runner = HookRunner({"post-loop": "exit 2"}, policy=HookPolicy.SKIP)
        assert runner.run(HookTrigger.POST_LOOP) == 2

    def test_missing_shell_treated_as_failure(self):
        runner = HookRunner({"pre-step": "true"}, policy=HookPolicy.WARN, shell="/nonexistent/sh")
        assert runner.run(HookTrigger.PRE_STEP) == 127
