"""Deterministic classification of how one agent run ended."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agentfleet.context import COMPLETION_MARKER, MORE_WORK_MARKER

DEFAULT_TOKEN_LIMIT_MARKERS: tuple[str, ...] = (
    "rate limit",
    "token limit",
    "overloaded",
    "529",
    "capacity",
    "too many requests",
    "context window",
    "prompt is too long",
)
DEFAULT_TAIL_CHARS = 3000
DEFAULT_SCAN_LINES = 50


class Outcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CONTINUE = "continue"
    TOKEN_LIMIT = "token_limit"


@dataclass(slots=True)
class OutcomeClassification:
    """Normalized run classification."""

    outcome: Outcome
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "outcome": self.outcome.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def detect_token_limit(
    output: str,
    *,
    markers: tuple[str, ...] = DEFAULT_TOKEN_LIMIT_MARKERS,
    tail_chars: int = DEFAULT_TAIL_CHARS,
) -> str | None:
    """Return the first limit marker found in the tail of ``output``."""
    tail = output[-tail_chars:] if tail_chars > 0 else output
    return _first_match(tail.lower(), tuple(marker.lower() for marker in markers))


def completion_signal(output: str, *, scan_lines: int = DEFAULT_SCAN_LINES) -> bool | None:
    """True for a completion marker, False for a more-work marker, None when neither shows."""
    lines = output.splitlines()[-scan_lines:] if scan_lines > 0 else output.splitlines()
    for line in reversed(lines):
        stripped = line.strip().strip("*`").strip()
        if stripped.startswith(MORE_WORK_MARKER):
            return False
        if stripped.startswith(COMPLETION_MARKER):
            return True
    return None


def classify_outcome(
    *,
    backend: str,
    exit_code: int | None,
    output: str,
    result_success: bool | None = None,
    iterative: bool = False,
    markers: tuple[str, ...] = DEFAULT_TOKEN_LIMIT_MARKERS,
    tail_chars: int = DEFAULT_TAIL_CHARS,
    scan_lines: int = DEFAULT_SCAN_LINES,
) -> OutcomeClassification:
    clean_exit = exit_code == 0 and result_success is not False

    if not (clean_exit and result_success is True):
        pattern = detect_token_limit(output, markers=markers, tail_chars=tail_chars)
        if pattern is not None:
            return OutcomeClassification(
                outcome=Outcome.TOKEN_LIMIT,
                reason_code=f"{backend}_token_limit",
                matched_rule="token_limit_marker",
                matched_pattern=pattern,
            )

    if not clean_exit:
        return OutcomeClassification(
            outcome=Outcome.FAILED,
            reason_code=f"{backend}_process_exit",
            matched_rule="nonzero_exit" if exit_code != 0 else "error_result",
        )

    if not iterative:
        return OutcomeClassification(
            outcome=Outcome.COMPLETED,
            reason_code=f"{backend}_completed",
            matched_rule="clean_exit",
        )

    if completion_signal(output, scan_lines=scan_lines):
        return OutcomeClassification(
            outcome=Outcome.COMPLETED,
            reason_code=f"{backend}_completed",
            matched_rule="completion_marker",
            matched_pattern=COMPLETION_MARKER,
        )
    return OutcomeClassification(
        outcome=Outcome.CONTINUE,
        reason_code=f"{backend}_continue",
        matched_rule="no_completion_marker",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
