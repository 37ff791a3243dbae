"""Completion signals reported by the worker.

The worker ends its final message with one of the tokens below. The text is
parsed once into a WorkerSignal; callers switch on ``signal.kind``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

COMPLETE_TOKEN = "RALPH_COMPLETE"
CLARIFY_TOKEN = "RALPH_CLARIFY"
BLOCKED_TOKEN = "RALPH_BLOCKED"

_CLARIFY_PATTERN = re.compile(re.escape(CLARIFY_TOKEN) + r":\s*(.*)")
_BLOCKED_PATTERN = re.compile(re.escape(BLOCKED_TOKEN) + r":?\s*(.*)")


class SignalKind(str, Enum):
    COMPLETE = "complete"
    CLARIFY = "clarify"
    BLOCKED = "blocked"
    NONE = "none"


@dataclass(frozen=True)
class WorkerSignal:
    """Parsed outcome of a worker run."""

    kind: SignalKind
    question: str = ""
    reason: str = ""

    @classmethod
    def complete(cls) -> WorkerSignal:
        return cls(SignalKind.COMPLETE)

    @classmethod
    def clarify(cls, question: str) -> WorkerSignal:
        return cls(SignalKind.CLARIFY, question=question)

    @classmethod
    def blocked(cls, reason: str) -> WorkerSignal:
        return cls(SignalKind.BLOCKED, reason=reason)

    @classmethod
    def none(cls) -> WorkerSignal:
        return cls(SignalKind.NONE)


def _first_line_payload(pattern: re.Pattern, text: str) -> str:
    for line in text.splitlines():
        match = pattern.search(line)
        if match:
            return match.group(1).strip()
    return ""


def parse_signal(text: str) -> WorkerSignal:
    """Classify a worker's final result text.

    Precedence: RALPH_COMPLETE, then RALPH_CLARIFY, then RALPH_BLOCKED.
    The clarification question is the text after ``RALPH_CLARIFY:`` on the
    first line carrying it.
    """
    if not text:
        return WorkerSignal.none()
    if COMPLETE_TOKEN in text:
        return WorkerSignal.complete()
    if CLARIFY_TOKEN in text:
        return WorkerSignal.clarify(_first_line_payload(_CLARIFY_PATTERN, text))
    if BLOCKED_TOKEN in text:
        return WorkerSignal.blocked(_first_line_payload(_BLOCKED_PATTERN, text))
    return WorkerSignal.none()
