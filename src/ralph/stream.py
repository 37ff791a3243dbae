"""Worker stream-json output: parsing, final result lookup, live display.

The worker writes one JSON object per line. Records of type ``result``
carry the final free-text outcome; ``assistant`` and ``user`` records carry
message content shown live while the worker runs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass
class LogRecord:
    """One line of worker output."""

    type: str
    data: dict = field(default_factory=dict)

    @property
    def result_text(self) -> str:
        value = self.data.get("result")
        return value if isinstance(value, str) else ""


def parse_record(line: str) -> Optional[LogRecord]:
    """Parse a stream line; non-JSON or untyped lines return None."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "type" not in data:
        return None
    return LogRecord(type=str(data["type"]), data=data)


def iter_records(lines: Iterable[str]) -> Iterable[LogRecord]:
    for line in lines:
        record = parse_record(line)
        if record is not None:
            yield record


def final_result(log_path: Path) -> str:
    """Return the text of the last ``result`` record in a log, or ""."""
    if not log_path.exists():
        logger.warning(f"Worker log not found: {log_path}")
        return ""
    result = ""
    with open(log_path, encoding="utf-8", errors="replace") as f:
        for record in iter_records(f):
            if record.type == "result":
                result = record.result_text
    return result


def truncate(text: str, limit: int) -> str:
    if limit and len(text) > limit:
        return text[:limit] + "..."
    return text


@dataclass
class OutputPrefixes:
    response: str = "[response] "
    tool_result: str = "[result] "
    tool_error: str = "[ERROR] "
    thinking_start: str = "<thinking>\n"
    thinking_end: str = "\n</thinking>"
    stats_header: str = "\n--- Stats ---\n"
    stats_line: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> OutputPrefixes:
        defaults = cls()
        return cls(
            response=data.get("response", defaults.response),
            tool_result=data.get("tool-result", defaults.tool_result),
            tool_error=data.get("tool-error", defaults.tool_error),
            thinking_start=data.get("thinking-start", defaults.thinking_start),
            thinking_end=data.get("thinking-end", defaults.thinking_end),
            stats_header=data.get("stats-header", defaults.stats_header),
            stats_line=data.get("stats-line", defaults.stats_line),
        )


@dataclass
class OutputConfig:
    """What the live display shows from the worker stream."""

    responses: bool = True
    tool_names: bool = True
    tool_inputs: bool = True
    tool_results: bool = True
    thinking: bool = True
    stats: bool = True
    max_tool_input: int = 200
    max_tool_result: int = 500
    prefixes: OutputPrefixes = field(default_factory=OutputPrefixes)

    @classmethod
    def from_dict(cls, data: dict) -> OutputConfig:
        """Create OutputConfig from the ``output`` config section.

        Explicit ``false`` values are honored; only missing keys fall back
        to the defaults.
        """

        def flag(key: str) -> bool:
            value = data.get(key)
            return True if value is None else bool(value)

        return cls(
            responses=flag("responses"),
            tool_names=flag("tool-names"),
            tool_inputs=flag("tool-inputs"),
            tool_results=flag("tool-results"),
            thinking=flag("thinking"),
            stats=flag("stats"),
            max_tool_input=int(data.get("max-tool-input", 200)),
            max_tool_result=int(data.get("max-tool-result", 500)),
            prefixes=OutputPrefixes.from_dict(data.get("prefixes") or {}),
        )


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


class StreamFilter:
    """Turns worker records into display lines according to OutputConfig."""

    def __init__(self, config: Optional[OutputConfig] = None):
        self.config = config or OutputConfig()

    def format(self, record: LogRecord) -> list[str]:
        if record.type == "assistant":
            return self._assistant(record.data)
        if record.type == "user" and self.config.tool_results:
            return self._tool_results(record.data)
        if record.type == "result" and self.config.stats:
            return [self._stats(record.data)]
        return []

    def _content(self, data: dict) -> list:
        message = data.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, list) else []

    def _assistant(self, data: dict) -> list[str]:
        cfg = self.config
        p = cfg.prefixes
        lines = []
        for part in self._content(data):
            kind = part.get("type")
            if kind == "text" and cfg.responses:
                lines.append(p.response + (part.get("text") or ""))
            elif kind == "thinking" and cfg.thinking:
                lines.append(p.thinking_start + (part.get("thinking") or "") + p.thinking_end)
            elif kind == "tool_use" and (cfg.tool_names or cfg.tool_inputs):
                name = part.get("name", "")
                if cfg.tool_inputs:
                    tool_input = truncate(_stringify(part.get("input") or {}), cfg.max_tool_input)
                    lines.append(f"[{name}] {tool_input}")
                else:
                    lines.append(f"[{name}]")
        return lines

    def _tool_results(self, data: dict) -> list[str]:
        p = self.config.prefixes
        lines = []
        for part in self._content(data):
            if part.get("type") != "tool_result":
                continue
            if part.get("is_error") is True:
                body = _stringify(part.get("content") or "unknown error")
                lines.append(p.tool_error + truncate(body, self.config.max_tool_result))
            else:
                body = _stringify(part.get("content") or "")
                lines.append(p.tool_result + truncate(body, self.config.max_tool_result))
        return lines

    def _stats(self, data: dict) -> str:
        p = self.config.prefixes
        usage = data.get("usage") or {}
        duration = (data.get("duration_ms") or 0) / 1000
        return (
            f"{p.stats_header}"
            f"{p.stats_line}Cost: ${data.get('cost_usd') or 0}\n"
            f"{p.stats_line}Input tokens: {usage.get('input_tokens') or 0}\n"
            f"{p.stats_line}Output tokens: {usage.get('output_tokens') or 0}\n"
            f"{p.stats_line}Duration: {duration}s"
        )
