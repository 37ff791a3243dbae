"""Worker subprocess execution.

Each work item runs in a fresh worker process (Claude Code CLI by default)
that receives the rendered instruction document as its only argument. The
worker's stream-json output is written line by line to a per-item log file
and passed through a display filter while the process runs. The call blocks
until the worker exits.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .stream import StreamFilter, final_result, parse_record

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = [
    "claude",
    "--dangerously-skip-permissions",
    "--print",
    "--output-format",
    "stream-json",
    "--verbose",
]


@dataclass
class WorkerResult:
    """Result of one worker run."""

    exit_code: int
    log_path: Path
    result_text: str = ""
    timed_out: bool = False
    error: Optional[str] = None


class WorkerRunner:
    """Runs the worker CLI for one instruction document."""

    def __init__(
        self,
        command: Optional[list[str]] = None,
        timeout: Optional[float] = None,
        stream_filter: Optional[StreamFilter] = None,
        display: Optional[Callable[[str], None]] = None,
        cwd: Optional[Path] = None,
    ):
        """Initialize the worker runner.

        Args:
            command: Worker argv; the instruction document is appended.
            timeout: Seconds before the worker is killed. None waits forever.
            stream_filter: Formats stream records for the live display.
            display: Receives each display line. Defaults to a rich console.
            cwd: Working directory for the worker.
        """
        self.command = list(command or DEFAULT_WORKER_COMMAND)
        self.timeout = timeout
        self.stream_filter = stream_filter or StreamFilter()
        self.cwd = cwd
        if display is None:
            console = Console()
            display = lambda line: console.print(line, markup=False, highlight=False)
        self.display = display

    def run(self, prompt: str, log_path: Path) -> WorkerResult:
        """Run the worker with fresh context.

        Args:
            prompt: The rendered instruction document.
            log_path: File receiving the raw stream (appended to).

        Returns:
            WorkerResult with the final ``result`` text from the log.
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [*self.command, prompt]
        logger.debug(f"Running worker {self.command[0]} with output to {log_path}")

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            logger.error(f"Failed to start worker {self.command[0]}: {e}")
            return WorkerResult(exit_code=127, log_path=log_path, error=f"Failed to start worker: {e}")

        timed_out = threading.Event()
        timer = None
        if self.timeout:

            def _kill() -> None:
                timed_out.set()
                proc.kill()

            timer = threading.Timer(self.timeout, _kill)
            timer.daemon = True
            timer.start()

        try:
            with open(log_path, "a", encoding="utf-8") as log:
                for line in proc.stdout or []:
                    log.write(line)
                    log.flush()
                    self._show(line)
            exit_code = proc.wait()
        except BaseException:
            proc.kill()
            proc.wait()
            raise
        finally:
            if timer is not None:
                timer.cancel()
            if proc.stdout:
                proc.stdout.close()

        if timed_out.is_set():
            logger.error(f"Worker timed out after {self.timeout} seconds")
            return WorkerResult(
                exit_code=exit_code,
                log_path=log_path,
                result_text=final_result(log_path),
                timed_out=True,
                error=f"Worker timed out after {self.timeout} seconds",
            )

        if exit_code != 0:
            logger.warning(f"Worker exited with code {exit_code}")
        return WorkerResult(
            exit_code=exit_code,
            log_path=log_path,
            result_text=final_result(log_path),
        )

    def _show(self, line: str) -> None:
        record = parse_record(line)
        if record is None:
            return
        for text in self.stream_filter.format(record):
            self.display(text)


class MockWorkerRunner(WorkerRunner):
    """Worker runner for testing that writes canned stream output.

    ``results`` are consumed one per run; the last entry repeats.
    """

    def __init__(self, results: Optional[list[str]] = None, *args, **kwargs):
        kwargs.setdefault("display", lambda line: None)
        super().__init__(*args, **kwargs)
        self.results = list(results or ["RALPH_COMPLETE"])
        self.prompts: list[str] = []
        self.call_count = 0

    def run(self, prompt: str, log_path: Path) -> WorkerResult:
        self.prompts.append(prompt)
        index = min(self.call_count, len(self.results) - 1)
        text = self.results[index]
        self.call_count += 1

        log_path.parent.mkdir(parents=True, exist_ok=True)
        records = [
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Working..."}]}},
            {"type": "result", "result": text, "cost_usd": 0, "usage": {}, "duration_ms": 0},
        ]
        with open(log_path, "a", encoding="utf-8") as log:
            for record in records:
                log.write(json.dumps(record) + "\n")
        return WorkerResult(exit_code=0, log_path=log_path, result_text=final_result(log_path))
