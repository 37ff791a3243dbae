"""Tests for the loop driver, including end-to-end scenarios on the mock store."""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import pytest

from conftest import EPIC_ID, FEATURE, make_task
from ralph.cascade import CompletionCascade
from ralph.context import RunContext, RunMode
from ralph.hooks import HookFailed, HookPolicy, HookRunner, HookTrigger
from ralph.loop import LoopDriver, LoopOutcome
from ralph.loop_logger import LoopLogger
from ralph.selector import ReadinessSelector
from ralph.step import StepExecutor
from ralph.store import AWAITING_INPUT_LABEL, STATUS_CLOSED, STATUS_IN_PROGRESS, MockIssueStore
from ralph.templates import TemplateRenderer
from ralph.worker import MockWorkerRunner


def build_driver(
    ctx: RunContext,
    store: MockIssueStore,
    worker: MockWorkerRunner,
    messages: list,
    hooks: HookRunner = None,
    run_logger: LoopLogger = None,
) -> LoopDriver:
    selector = ReadinessSelector(store)
    executor = StepExecutor(
        context=ctx,
        store=store,
        selector=selector,
        renderer=TemplateRenderer(environ={}),
        worker=worker,
        cascade=CompletionCascade(store, messages.append),
        notify=messages.append,
    )
    return LoopDriver(ctx, executor, hooks or HookRunner(), selector, messages.append, run_logger)


def recording_hooks(tmp_path: Path, policy: HookPolicy = HookPolicy.BLOCK, **overrides: str) -> tuple:
    """Hooks that append '<trigger>:<vars>' lines to a marker file."""
    marker = tmp_path / "hooks.log"
    hooks = {
        "pre-loop": f"echo 'pre-loop:{{{{LABEL}}}}' >> {marker}",
        "pre-step": f"echo 'pre-step:{{{{STEP_COUNT}}}}:{{{{ISSUE_ID}}}}' >> {marker}",
        "post-step": f"echo 'post-step:{{{{STEP_COUNT}}}}:{{{{STEP_EXIT_CODE}}}}' >> {marker}",
        "post-loop": f"echo 'post-loop:{{{{LABEL}}}}' >> {marker}",
    }
    hooks.update({k.replace("_", "-"): v for k, v in overrides.items()})
    return HookRunner(hooks, policy=policy), marker


class TestLoopScenarios:
    """End-to-end loop behavior against the mock store."""

    def test_happy_path_closes_all_and_epic(self, run_context, make_store, messages):
        store = make_store(make_task("a"), make_task("b"), make_task("c"))
        worker = MockWorkerRunner(["RALPH_COMPLETE"])
        result = build_driver(run_context, store, worker, messages).run()

        assert result.outcome is LoopOutcome.ALL_COMPLETE
        assert result.exit_code == 0
        for issue_id in ("a", "b", "c"):
            assert store.show(issue_id).status == STATUS_CLOSED
        assert store.show(EPIC_ID).status == STATUS_CLOSED
        assert worker.call_count == 3

    def test_epic_closed_once(self, run_context, make_store, messages):
        """The last close and the final empty selection both reach the cascade."""
        store = make_store(make_task("a"))
        build_driver(run_context, store, MockWorkerRunner(), messages).run()

        epic_closes = [c for c in store.calls if c == ("close", EPIC_ID)]
        assert len(epic_closes) == 1

    def test_clarify_stops_loop(self, run_context, make_store, messages):
        store = make_store(make_task("a"), make_task("b"))
        worker = MockWorkerRunner(["RALPH_CLARIFY: need more info"])
        result = build_driver(run_context, store, worker, messages).run()

        item = store.show("a")
        assert result.outcome is LoopOutcome.FAILED
        assert result.exit_code == 1
        assert result.steps == 1
        assert item.status == STATUS_IN_PROGRESS
        assert AWAITING_INPUT_LABEL in item.labels
        assert "need more info" in item.notes
        assert store.show("b").status == "open"
        assert "Resume with: ralph run" in messages

    def test_dependency_ordering(self, run_context, make_store, messages):
        store = make_store(make_task("b", priority=0, dependencies=["a"]), make_task("a", priority=4))
        worker = MockWorkerRunner()
        build_driver(run_context, store, worker, messages).run()

        assert "Task a" in worker.prompts[0]
        assert "Task b" in worker.prompts[1]

    def test_failure_stops_loop(self, run_context, make_store, messages):
        store = make_store(make_task("a"), make_task("b"))
        worker = MockWorkerRunner(["nothing useful"])
        result = build_driver(run_context, store, worker, messages).run()

        assert result.outcome is LoopOutcome.FAILED
        assert worker.call_count == 1
        assert store.show("a").status == STATUS_IN_PROGRESS


class TestSingleStepMode:
    """Tests for single-step exit codes."""

    def test_no_work_exits_100(self, run_context, make_store, messages):
        ctx = dataclasses.replace(run_context, mode=RunMode.ONCE)
        result = build_driver(ctx, make_store(), MockWorkerRunner(), messages).run()

        assert result.outcome is LoopOutcome.ALL_COMPLETE
        assert result.exit_code == 100

    def test_one_item_exits_0(self, run_context, make_store, messages):
        ctx = dataclasses.replace(run_context, mode=RunMode.ONCE)
        store = make_store(make_task("a"), make_task("b"))
        worker = MockWorkerRunner()
        result = build_driver(ctx, store, worker, messages).run()

        assert result.outcome is LoopOutcome.MORE_WORK
        assert result.exit_code == 0
        assert worker.call_count == 1
        assert store.show("a").status == STATUS_CLOSED
        assert store.show("b").status == "open"

    def test_loop_mode_all_complete_exits_0(self, run_context, make_store, messages):
        result = build_driver(run_context, make_store(), MockWorkerRunner(), messages).run()
        assert result.exit_code == 0


class TestLoopHooks:
    """Tests for hook ordering and failure policies."""

    def test_hook_order_and_variables(self, run_context, make_store, messages, tmp_path: Path):
        hooks, marker = recording_hooks(tmp_path)
        store = make_store(make_task("a"))
        build_driver(run_context, store, MockWorkerRunner(), messages, hooks=hooks).run()

        assert marker.read_text().splitlines() == [
            f"pre-loop:{FEATURE}",
            "pre-step:1:a",
            "post-step:1:0",
            "pre-step:2:",
            "post-step:2:100",
            f"post-loop:{FEATURE}",
        ]

    def test_post_step_and_post_loop_run_after_failure(self, run_context, make_store, messages, tmp_path: Path):
        hooks, marker = recording_hooks(tmp_path)
        store = make_store(make_task("a"))
        build_driver(run_context, store, MockWorkerRunner(["nope"]), messages, hooks=hooks).run()

        lines = marker.read_text().splitlines()
        assert "post-step:1:1" in lines
        assert lines[-1] == f"post-loop:{FEATURE}"

    def test_blocking_hook_aborts_with_exit_code(self, run_context, make_store, messages, tmp_path: Path):
        hooks, marker = recording_hooks(tmp_path, pre_step="exit 5")
        store = make_store(make_task("a"))
        worker = MockWorkerRunner()

        with pytest.raises(HookFailed) as exc_info:
            build_driver(run_context, store, worker, messages, hooks=hooks).run()

        assert exc_info.value.exit_code == 5
        assert exc_info.value.trigger is HookTrigger.PRE_STEP
        assert worker.call_count == 0
        assert "post-loop" not in marker.read_text()

    def test_warn_hook_continues(self, run_context, make_store, messages, tmp_path: Path):
        hooks, marker = recording_hooks(tmp_path, policy=HookPolicy.WARN, post_step="exit 2")
        store = make_store(make_task("a"))
        result = build_driver(run_context, store, MockWorkerRunner(), messages, hooks=hooks).run()

        assert result.outcome is LoopOutcome.ALL_COMPLETE
        assert store.show("a").status == STATUS_CLOSED


class TestRunLogging:
    """Tests for the run audit log."""

    def test_run_log_written(self, run_context, make_store, messages):
        store = make_store(make_task("a"))
        run_logger = LoopLogger(run_context.logs_dir, FEATURE)
        result = build_driver(run_context, store, MockWorkerRunner(), messages, run_logger=run_logger).run()
        path = run_logger.finalize(result.outcome.value, result.exit_code)

        data = json.loads(path.read_text())
        assert data["session"]["feature"] == FEATURE
        assert data["session"]["exit_code"] == 0
        assert [s["outcome"] for s in data["steps"]] == ["completed", "all_complete"]
        assert data["steps"][0]["issue_id"] == "a"
        assert data["stats"]["completed"] == 1
