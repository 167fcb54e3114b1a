from __future__ import annotations

import itertools
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from agentfleet.events import TaskStatusChanged

if TYPE_CHECKING:
    from agentfleet.process import ProcessHandle

logger = logging.getLogger(__name__)

MAX_TASK_NUMBER = 9999
SUMMARY_CHARS = 60

_sequence = itertools.count(1)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_task_id() -> str:
    return uuid.uuid4().hex[:16]


class InvalidTransitionError(RuntimeError):
    """Raised when a status change violates the task state machine."""


class TaskStatus(str, Enum):
    INIT_QUEUED = "init_queued"
    QUEUED = "queued"
    PLANNING = "planning"
    RUNNING = "running"
    PAUSED = "paused"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.FAILED})
LIVE_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.PLANNING, TaskStatus.PAUSED})

# Terminal statuses are reachable from every non-terminal status and are left out here.
_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.INIT_QUEUED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.PLANNING, TaskStatus.QUEUED}
    ),
    TaskStatus.QUEUED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.PLANNING, TaskStatus.INIT_QUEUED}
    ),
    TaskStatus.PLANNING: frozenset({TaskStatus.RUNNING, TaskStatus.QUEUED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.PAUSED, TaskStatus.QUEUED, TaskStatus.VERIFYING}),
    TaskStatus.PAUSED: frozenset({TaskStatus.RUNNING}),
    TaskStatus.VERIFYING: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    if current.is_terminal:
        return False
    if target.is_terminal:
        return True
    return target in _TRANSITIONS[current]


class TaskPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: str | int | TaskPriority) -> TaskPriority:
        if isinstance(value, TaskPriority):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[value.strip().upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown task priority: {value}") from exc


class QueueReason(str, Enum):
    NONE = "none"
    DEPENDENCY = "dependency"
    LOCK = "lock"


@dataclass(slots=True, frozen=True)
class TaskFlags:
    ignore_file_locks: bool = False
    extended_planning: bool = False
    no_git_write: bool = False
    plan_only: bool = False
    plan_before_queue: bool = False
    skip_permissions: bool = True
    autonomous: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "ignore_file_locks": self.ignore_file_locks,
            "extended_planning": self.extended_planning,
            "no_git_write": self.no_git_write,
            "plan_only": self.plan_only,
            "plan_before_queue": self.plan_before_queue,
            "skip_permissions": self.skip_permissions,
            "autonomous": self.autonomous,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskFlags:
        known = set(cls.__dataclass_fields__)
        return cls(**{key: bool(value) for key, value in data.items() if key in known})


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def add(self, usage: dict[str, Any]) -> None:
        self.input_tokens += int(usage.get("input_tokens") or 0)
        self.output_tokens += int(usage.get("output_tokens") or 0)
        self.cache_read_tokens += int(usage.get("cache_read_input_tokens") or 0)
        self.cache_creation_tokens += int(usage.get("cache_creation_input_tokens") or 0)

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
        }


class TaskNumberAllocator:
    """Hands out display numbers 1..MAX_TASK_NUMBER, wrapping back to 1."""

    def __init__(self, start: int = 1, ceiling: int = MAX_TASK_NUMBER) -> None:
        self.ceiling = ceiling
        self._next = start if 1 <= start <= ceiling else 1

    def next(self) -> int:
        number = self._next
        self._next = 1 if number >= self.ceiling else number + 1
        return number


@dataclass(slots=True)
class Task:
    project_path: str
    description: str
    number: int = 0
    id: str = field(default_factory=new_task_id)
    flags: TaskFlags = field(default_factory=TaskFlags)
    backend: str = "claude"
    model: str = ""
    parent_id: str | None = None
    is_recovery: bool = False
    priority: TaskPriority = TaskPriority.NORMAL
    max_iterations: int = 1
    sequence: int = field(default_factory=lambda: next(_sequence))

    status: TaskStatus = TaskStatus.INIT_QUEUED
    created_at: str = field(default_factory=_utcnow_iso)
    started_at: str | None = None
    ended_at: str | None = None
    started_monotonic: float | None = None
    current_iteration: int = 0
    consecutive_failures: int = 0
    token_limit_retries: int = 0
    output: str = ""
    iteration_offset: int = 0
    dependency_ids: list[str] = field(default_factory=list)
    queue_reason: QueueReason = QueueReason.NONE
    queued_reason_text: str = ""
    blocked_by_task_id: str | None = None
    blocked_by_task_number: int | None = None
    blocked_by_path: str | None = None
    locked_files: set[str] = field(default_factory=set)
    modified_files: set[str] = field(default_factory=set)
    written_paths: set[str] = field(default_factory=set)
    failure_reason: str | None = None
    conversation_id: str | None = None
    stored_plan: str = ""
    dependency_context: str = ""
    ready_during_planning: bool = False
    last_result_text: str = ""
    completion_summary: str = ""
    verification_passed: bool | None = None
    commit_hash: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    cancel_requested: bool = False
    process: ProcessHandle | None = field(default=None, repr=False, compare=False)
    observer: Callable[[TaskStatusChanged], None] | None = field(
        default=None, repr=False, compare=False
    )

    @property
    def summary(self) -> str:
        first_line = self.description.strip().splitlines()[0] if self.description.strip() else ""
        if len(first_line) <= SUMMARY_CHARS:
            return first_line
        return first_line[: SUMMARY_CHARS - 3].rstrip() + "..."

    @property
    def has_live_process(self) -> bool:
        return self.process is not None and self.process.is_running

    @property
    def is_iterative(self) -> bool:
        return self.flags.autonomous or self.max_iterations > 1

    @property
    def iteration_output(self) -> str:
        return self.output[self.iteration_offset :]

    def transition(self, status: TaskStatus, *, reason: str | None = None) -> TaskStatus:
        previous = self.status
        if status == previous:
            return previous
        if not can_transition(previous, status):
            raise InvalidTransitionError(
                f"Task {self.id} cannot move from {previous.value} to {status.value}."
            )
        self.status = status
        if status.is_live and self.started_at is None:
            self.started_at = _utcnow_iso()
            self.started_monotonic = time.monotonic()
        if status.is_terminal:
            self.ended_at = _utcnow_iso()
            if status == TaskStatus.FAILED and reason and not self.failure_reason:
                self.failure_reason = reason
        if previous == TaskStatus.QUEUED and status != TaskStatus.QUEUED:
            self.clear_queue_state()
        if self.observer is not None:
            self.observer(
                TaskStatusChanged(
                    task_id=self.id,
                    old_status=previous,
                    new_status=status,
                    reason=reason,
                )
            )
        return previous

    def try_transition(self, status: TaskStatus, *, reason: str | None = None) -> bool:
        try:
            self.transition(status, reason=reason)
        except InvalidTransitionError as exc:
            logger.error("Rejected status change: %s", exc)
            return False
        return True

    def mark_waiting_on_dependency(self, blocking_id: str, blocking_number: int | None) -> None:
        self.queue_reason = QueueReason.DEPENDENCY
        self.blocked_by_task_id = blocking_id
        self.blocked_by_task_number = blocking_number
        self.blocked_by_path = None
        label = f"#{blocking_number}" if blocking_number is not None else blocking_id
        self.queued_reason_text = f"Waiting on {label}"

    def mark_waiting_on_lock(self, path: str, owner_id: str, owner_number: int | None) -> None:
        self.queue_reason = QueueReason.LOCK
        self.blocked_by_task_id = owner_id
        self.blocked_by_task_number = owner_number
        self.blocked_by_path = path
        label = f"#{owner_number}" if owner_number is not None else owner_id
        self.queued_reason_text = f"File locked: {path} by {label}"

    def clear_queue_state(self) -> None:
        self.queue_reason = QueueReason.NONE
        self.queued_reason_text = ""
        self.blocked_by_task_id = None
        self.blocked_by_task_number = None
        self.blocked_by_path = None

    def append_output(self, text: str) -> None:
        self.output += text

    def begin_iteration(self) -> None:
        self.iteration_offset = len(self.output)

    def trim_output(self, max_chars: int) -> None:
        if len(self.output) <= max_chars:
            return
        dropped = len(self.output) - max_chars
        self.output = self.output[dropped:]
        self.iteration_offset = max(0, self.iteration_offset - dropped)

    def runtime_seconds(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return time.monotonic() - self.started_monotonic

    def header(self) -> dict[str, Any]:
        return {
            "task_id": self.id,
            "number": self.number,
            "summary": self.summary,
            "status": self.status.value,
            "iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "queued_reason": self.queued_reason_text,
            "tokens": self.usage.total,
        }

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "description": self.description,
            "summary": self.summary,
            "project_path": self.project_path,
            "status": self.status.value,
            "priority": self.priority.name.lower(),
            "backend": self.backend,
            "model": self.model,
            "parent_id": self.parent_id,
            "is_recovery": self.is_recovery,
            "flags": self.flags.to_dict(),
            "max_iterations": self.max_iterations,
            "current_iteration": self.current_iteration,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "failure_reason": self.failure_reason,
            "conversation_id": self.conversation_id,
            "completion_summary": self.completion_summary,
            "verification_passed": self.verification_passed,
            "commit_hash": self.commit_hash,
            "modified_files": sorted(self.modified_files),
            "written_paths": sorted(self.written_paths),
            "usage": self.usage.to_dict(),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> Task:
        """Rebuild a historical task; anything not terminal comes back as cancelled."""
        try:
            status = TaskStatus(str(data.get("status", "")))
        except ValueError:
            status = TaskStatus.COMPLETED
        if not status.is_terminal:
            status = TaskStatus.CANCELLED
        usage = TokenUsage(**{k: int(v) for k, v in (data.get("usage") or {}).items()})
        return cls(
            id=str(data.get("id") or new_task_id()),
            number=int(data.get("number") or 0),
            project_path=str(data.get("project_path", "")),
            description=str(data.get("description", "")),
            flags=TaskFlags.from_dict(data.get("flags") or {}),
            backend=str(data.get("backend") or "claude"),
            model=str(data.get("model") or ""),
            parent_id=data.get("parent_id"),
            is_recovery=bool(data.get("is_recovery")),
            priority=TaskPriority.parse(data.get("priority") or "normal"),
            max_iterations=int(data.get("max_iterations") or 1),
            status=status,
            created_at=str(data.get("created_at") or _utcnow_iso()),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            current_iteration=int(data.get("current_iteration") or 0),
            failure_reason=data.get("failure_reason"),
            conversation_id=data.get("conversation_id"),
            completion_summary=str(data.get("completion_summary") or ""),
            verification_passed=data.get("verification_passed"),
            commit_hash=data.get("commit_hash"),
            modified_files=set(data.get("modified_files") or []),
            written_paths=set(data.get("written_paths") or []),
            usage=usage,
        )
