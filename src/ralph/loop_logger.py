"""Audit logging for work loop runs.

Each run writes one JSON file under the ralph logs directory with session
info, one record per step and summary statistics.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console

logger = logging.getLogger(__name__)


@dataclass
class StepLog:
    """Log entry for one step."""

    number: int
    start_time: str
    issue_id: str = ""
    outcome: str = ""
    exit_code: Optional[int] = None
    end_time: Optional[str] = None
    log_path: Optional[str] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "issue_id": self.issue_id,
            "outcome": self.outcome,
            "exit_code": self.exit_code,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "log_path": self.log_path,
            "message": self.message,
        }


@dataclass
class RunStats:
    """Statistics for one run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    steps: int = 0
    completed: int = 0
    failed: int = 0
    clarifications: int = 0
    hook_failures: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "steps": self.steps,
            "completed": self.completed,
            "failed": self.failed,
            "clarifications": self.clarifications,
            "hook_failures": self.hook_failures,
        }


class LoopLogger:
    """Records the steps of one run and writes them as JSON."""

    def __init__(self, log_dir: Path, feature: str, mode: str = "loop"):
        """Initialize the loop logger.

        Args:
            log_dir: Directory for log files (``<ralph_dir>/logs``).
            feature: Feature label the run works on.
            mode: Run mode name.
        """
        self.log_dir = log_dir
        self.feature = feature
        self.stats = RunStats()
        self.steps: list[StepLog] = []
        self.errors: list[dict] = []

        timestamp = self.stats.start_time.strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"run-{timestamp}.json"
        self.session = {
            "id": timestamp,
            "feature": feature,
            "mode": mode,
            "start_time": self.stats.start_time.isoformat(),
        }

    def log_step_start(self, number: int) -> None:
        self.stats.steps = number
        self.steps.append(StepLog(number=number, start_time=datetime.now().isoformat()))
        logger.debug(f"Step {number} started")

    def log_step_end(
        self,
        outcome: str,
        exit_code: int,
        issue_id: str = "",
        log_path: Optional[Path] = None,
        message: str = "",
    ) -> None:
        """Record the result of the current step."""
        if outcome == "completed":
            self.stats.completed += 1
        elif outcome == "needs_clarification":
            self.stats.clarifications += 1
        elif outcome == "failed":
            self.stats.failed += 1

        if not self.steps:
            return
        step = self.steps[-1]
        step.end_time = datetime.now().isoformat()
        step.outcome = outcome
        step.exit_code = exit_code
        step.issue_id = issue_id
        step.log_path = str(log_path) if log_path else None
        step.message = message

    def log_hook_failure(self, trigger: str, exit_code: int) -> None:
        self.stats.hook_failures += 1
        self.log_error(f"Hook '{trigger}' failed", {"exit_code": exit_code})

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        """Log an error."""
        self.errors.append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })
        logger.debug(f"Run error: {error}")

    def to_dict(self) -> dict:
        return {
            "session": self.session,
            "steps": [step.to_dict() for step in self.steps],
            "errors": self.errors,
            "stats": self.stats.to_dict(),
        }

    def finalize(self, outcome: str, exit_code: int) -> Optional[Path]:
        """Finalize the log and write it to file.

        Returns:
            Path of the written log, or None if it could not be written.
        """
        self.stats.end_time = datetime.now()
        self.session["end_time"] = self.stats.end_time.isoformat()
        self.session["outcome"] = outcome
        self.session["exit_code"] = exit_code

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to write run log: {e}")
            return None
        logger.debug(f"Run log written to: {self.log_file}")
        return self.log_file

    def print_summary(self, console: Console) -> None:
        """Print a summary of the run."""
        stats = self.stats
        console.print()
        console.rule("[bold]Run summary[/bold]")
        console.print(f"Feature: {self.feature}")
        console.print(f"Duration: {stats.duration_seconds:.1f}s")
        console.print(f"Steps: {stats.steps}")
        console.print(f"Completed: {stats.completed}")
        if stats.clarifications:
            console.print(f"Awaiting input: {stats.clarifications}")
        if stats.failed:
            console.print(f"Failed: {stats.failed}")
        if stats.hook_failures:
            console.print(f"Hook failures: {stats.hook_failures}")
        console.print(f"Log file: {self.log_file}")
