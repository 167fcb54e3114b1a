from __future__ import annotations

import itertools
import logging
import os
import re
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from agentfleet.events import EventBus, LockConflict, QueuedTaskResumed
from agentfleet.tasks import QueueReason, Task, TaskStatus

logger = logging.getLogger(__name__)

FILE_MODIFY_TOOLS = frozenset({"write", "edit", "multiedit", "notebookedit"})
_PATH_KEYS = ("file_path", "notebook_path", "path")
_PARTIAL_PATH_RE = re.compile(r'"(?:file_path|notebook_path|path)"\s*:\s*"([^"]+)"')

TaskLookup = Callable[[str], "Task | None"]
TaskHook = Callable[[Task], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def is_file_modify_tool(tool_name: str | None) -> bool:
    return bool(tool_name) and tool_name.strip().lower() in FILE_MODIFY_TOOLS


def extract_file_path(tool_input: Any) -> str | None:
    if not isinstance(tool_input, dict):
        return None
    for key in _PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_path_from_partial(partial_json: str) -> str | None:
    match = _PARTIAL_PATH_RE.search(partial_json)
    if match is None:
        return None
    return match.group(1).replace("\\\\", "\\")


def absolute_path(path: str, project_path: str | None = None) -> str:
    """Absolute, forward-slash form of ``path``; case is preserved."""
    candidate = os.path.expanduser(path.strip().replace("\\", "/"))
    if not os.path.isabs(candidate) and project_path:
        candidate = os.path.join(project_path.replace("\\", "/"), candidate)
    resolved = os.path.normpath(os.path.abspath(candidate)).replace("\\", "/")
    if len(resolved) > 1:
        resolved = resolved.rstrip("/")
    return resolved


def normalize_path(path: str, project_path: str | None = None) -> str:
    """Lock key: the absolute path, lower-cased."""
    return absolute_path(path, project_path).lower()


class AcquireOutcome(str, Enum):
    GRANTED = "granted"
    CONFLICT = "conflict"
    RESERVED = "reserved"


@dataclass(slots=True, frozen=True)
class AcquireResult:
    outcome: AcquireOutcome
    path: str
    owner_task_id: str | None = None
    ignored: bool = False
    reserved_by: str | None = None

    @property
    def granted(self) -> bool:
        return self.outcome == AcquireOutcome.GRANTED


@dataclass(slots=True)
class FileLock:
    path: str
    task_id: str
    action: str
    acquired_at: str = field(default_factory=_utcnow_iso)
    is_ignored: bool = False


@dataclass(slots=True)
class QueuedTaskInfo:
    """One parking episode: every path the task was refused and who held it.

    ``resume_status`` is the status the task had when it was parked; a task
    parked during its planning run goes back to ``PLANNING``.
    """

    task_id: str
    path: str
    blocking_task_id: str
    action: str
    resume_status: TaskStatus = TaskStatus.RUNNING
    paths: set[str] = field(default_factory=set)
    blocking_task_ids: set[str] = field(default_factory=set)
    sequence: int = 0
    queued_at: str = field(default_factory=_utcnow_iso)


class FileLockTable:
    """Ownership of normalized file paths and the FIFO queue of tasks parked behind them.

    Every compound operation runs under one re-entrant lock so a check and the
    matching set happen atomically. Tasks are looked up by id through
    ``lookup``; the table never keeps task objects of its own.

    A parked task resumes once none of its blockers is live any more and all
    the paths it was refused are free.
    """

    def __init__(
        self,
        lookup: TaskLookup,
        *,
        events: EventBus | None = None,
        suspend: TaskHook | None = None,
        resume: TaskHook | None = None,
        can_resume: Callable[[Task], bool] | None = None,
    ) -> None:
        self._lookup = lookup
        self.events = events
        self.suspend = suspend
        self.resume = resume
        self.can_resume = can_resume
        self._guard = threading.RLock()
        self._locks: dict[str, FileLock] = {}
        self._ignored: dict[tuple[str, str], FileLock] = {}
        self._queued: dict[str, QueuedTaskInfo] = {}
        self._queue_sequence = itertools.count(1)
        self._exclusive: tuple[str, frozenset[str] | None] | None = None

    def _emit(self, event: LockConflict | QueuedTaskResumed) -> None:
        if self.events is not None:
            self.events.emit(event)

    def acquire(
        self,
        path: str,
        task_id: str,
        action: str,
        *,
        project_path: str | None = None,
    ) -> AcquireResult:
        task = self._lookup(task_id)
        if task is None:
            logger.error("Lock acquisition for unknown task %s ignored", task_id)
            return AcquireResult(AcquireOutcome.CONFLICT, path=path)
        base = project_path or task.project_path
        normalized = normalize_path(path, base)

        with self._guard:
            reserved_by = self._reserved_by(normalized)
            if reserved_by is not None:
                logger.info(
                    "Rejecting lock on %s for task %s: %s in progress",
                    normalized,
                    task_id,
                    reserved_by,
                )
                return AcquireResult(
                    AcquireOutcome.RESERVED, path=normalized, reserved_by=reserved_by
                )

            existing = self._locks.get(normalized)
            if task.flags.ignore_file_locks:
                self._ignored[(normalized, task_id)] = FileLock(
                    path=normalized, task_id=task_id, action=action, is_ignored=True
                )
                task.modified_files.add(normalized)
                task.written_paths.add(absolute_path(path, base))
                owner_id = existing.task_id if existing and existing.task_id != task_id else None
                if owner_id is not None:
                    logger.info(
                        "Task %s ignores lock on %s held by %s", task_id, normalized, owner_id
                    )
                    self._emit(
                        LockConflict(
                            task_id=task_id, path=normalized, owner_task_id=owner_id, ignored=True
                        )
                    )
                return AcquireResult(
                    AcquireOutcome.GRANTED, path=normalized, owner_task_id=owner_id, ignored=True
                )

            if existing is None or existing.task_id == task_id:
                if existing is None:
                    self._locks[normalized] = FileLock(
                        path=normalized, task_id=task_id, action=action
                    )
                else:
                    existing.action = action
                    existing.acquired_at = _utcnow_iso()
                task.locked_files.add(normalized)
                task.modified_files.add(normalized)
                task.written_paths.add(absolute_path(path, base))
                return AcquireResult(AcquireOutcome.GRANTED, path=normalized, owner_task_id=task_id)

            info = self._queued.get(task_id)
            if info is not None and task.status == TaskStatus.QUEUED:
                # Output still buffered from before the suspend can name more files.
                info.paths.add(normalized)
                info.blocking_task_ids.add(existing.task_id)
                logger.info(
                    "Parked task %s also waits on %s held by %s",
                    task_id,
                    normalized,
                    existing.task_id,
                )
                return AcquireResult(
                    AcquireOutcome.CONFLICT, path=normalized, owner_task_id=existing.task_id
                )

            if task.status not in (TaskStatus.RUNNING, TaskStatus.PLANNING):
                logger.info(
                    "Task %s hit lock on %s while %s; not parking",
                    task_id,
                    normalized,
                    task.status.value,
                )
                return AcquireResult(
                    AcquireOutcome.CONFLICT, path=normalized, owner_task_id=existing.task_id
                )

            self._park(task, normalized, existing.task_id, action)

        if self.suspend is not None:
            self.suspend(task)
        self._emit(LockConflict(task_id=task_id, path=normalized, owner_task_id=existing.task_id))
        # The parked task gave up its own locks; someone may be waiting on them.
        self.check_queued_tasks()
        return AcquireResult(
            AcquireOutcome.CONFLICT, path=normalized, owner_task_id=existing.task_id
        )

    def _park(self, task: Task, path: str, owner_id: str, action: str) -> None:
        self._release_owned(task.id)
        self._queued[task.id] = QueuedTaskInfo(
            task_id=task.id,
            path=path,
            blocking_task_id=owner_id,
            action=action,
            resume_status=task.status,
            paths={path},
            blocking_task_ids={owner_id},
            sequence=next(self._queue_sequence),
        )
        owner = self._lookup(owner_id)
        task.mark_waiting_on_lock(path, owner_id, owner.number if owner else None)
        task.try_transition(TaskStatus.QUEUED, reason=task.queued_reason_text)
        logger.info("Task %s queued: %s", task.id, task.queued_reason_text)

    def _reserved_by(self, path: str) -> str | None:
        if self._exclusive is None:
            return None
        operation_name, scope = self._exclusive
        if scope is None or path in scope:
            return operation_name
        return None

    def _release_owned(self, task_id: str) -> list[str]:
        released = [path for path, lock in self._locks.items() if lock.task_id == task_id]
        for path in released:
            del self._locks[path]
        for key in [key for key in self._ignored if key[1] == task_id]:
            del self._ignored[key]
        task = self._lookup(task_id)
        if task is not None:
            task.locked_files.clear()
        return released

    def release(self, path: str, task_id: str, *, project_path: str | None = None) -> bool:
        task = self._lookup(task_id)
        normalized = normalize_path(path, project_path or (task.project_path if task else None))
        with self._guard:
            self._ignored.pop((normalized, task_id), None)
            lock = self._locks.get(normalized)
            if lock is None or lock.task_id != task_id:
                return False
            del self._locks[normalized]
            if task is not None:
                task.locked_files.discard(normalized)
            return True

    def release_all_for_task(self, task_id: str) -> list[str]:
        with self._guard:
            return self._release_owned(task_id)

    def _blocker_live(self, blocker_id: str) -> bool:
        blocker = self._lookup(blocker_id)
        return blocker is not None and blocker.status.is_live

    def _held_by_other(self, path: str, task_id: str) -> bool:
        holder = self._locks.get(path)
        return holder is not None and holder.task_id != task_id

    def check_queued_tasks(self, can_resume: Callable[[Task], bool] | None = None) -> list[str]:
        """Resume parked tasks whose blockers are gone and whose paths are free, oldest first."""
        gate = can_resume or self.can_resume
        resumed: list[tuple[Task, str]] = []
        with self._guard:
            for info in sorted(self._queued.values(), key=lambda item: item.sequence):
                task = self._lookup(info.task_id)
                if (
                    task is None
                    or task.status != TaskStatus.QUEUED
                    or task.queue_reason != QueueReason.LOCK
                ):
                    del self._queued[info.task_id]
                    continue
                if any(self._blocker_live(blocker) for blocker in info.blocking_task_ids):
                    continue
                if any(self._held_by_other(path, task.id) for path in info.paths):
                    continue
                if gate is not None and not gate(task):
                    break
                for path in sorted(info.paths):
                    self._locks[path] = FileLock(path=path, task_id=task.id, action=info.action)
                    task.locked_files.add(path)
                del self._queued[info.task_id]
                task.transition(info.resume_status, reason="lock released")
                resumed.append((task, info.path))

        for task, path in resumed:
            logger.info("Task %s resumed after lock on %s freed", task.id, path)
            if self.resume is not None:
                self.resume(task)
            self._emit(QueuedTaskResumed(task_id=task.id, path=path))
        return [task.id for task, _ in resumed]

    def force_start(self, task_id: str) -> bool:
        with self._guard:
            info = self._queued.pop(task_id, None)
            task = self._lookup(task_id)
            if task is None or task.status != TaskStatus.QUEUED:
                return False
            if info is None and task.queue_reason != QueueReason.LOCK:
                return False
            target = info.resume_status if info is not None else TaskStatus.RUNNING
            task.transition(target, reason="force start")
        logger.info("Task %s force-started past its lock conflict", task_id)
        if self.resume is not None:
            self.resume(task)
        return True

    async def run_while_no_locks_held(
        self,
        action: Callable[[], Awaitable[Any]],
        operation_name: str,
        *,
        paths: Iterable[str] | None = None,
    ) -> tuple[bool, str | None]:
        """Run ``action`` only when nothing is locked, refusing acquisitions until it returns.

        With ``paths`` only those files must be free and only they are
        reserved; other tasks keep locking everything else.
        """
        scope = None if paths is None else frozenset(normalize_path(path) for path in paths)
        with self._guard:
            if self._exclusive is not None:
                return False, f"Cannot {operation_name} while {self._exclusive[0]} is running"
            held = sorted(path for path in self._locks if scope is None or path in scope)
            if held:
                listed = ", ".join(held)
                return False, f"Cannot {operation_name} while file locks are active: {listed}"
            self._exclusive = (operation_name, scope)
        try:
            await action()
        except Exception as exc:
            logger.warning("%s failed: %s", operation_name, exc)
            return False, f"{operation_name} failed: {exc}"
        finally:
            with self._guard:
                self._exclusive = None
        return True, None

    def remove_queued(self, task_id: str) -> QueuedTaskInfo | None:
        with self._guard:
            return self._queued.pop(task_id, None)

    def queued_info(self, task_id: str) -> QueuedTaskInfo | None:
        with self._guard:
            return self._queued.get(task_id)

    def queued_tasks(self) -> list[QueuedTaskInfo]:
        with self._guard:
            return sorted(self._queued.values(), key=lambda item: item.sequence)

    def owner_of(self, path: str, project_path: str | None = None) -> str | None:
        with self._guard:
            lock = self._locks.get(normalize_path(path, project_path))
            return lock.task_id if lock else None

    def locked_files(self, task_id: str) -> list[FileLock]:
        with self._guard:
            held = [lock for lock in self._locks.values() if lock.task_id == task_id]
            held.extend(lock for key, lock in self._ignored.items() if key[1] == task_id)
            return [
                FileLock(
                    path=lock.path,
                    task_id=lock.task_id,
                    action=lock.action,
                    acquired_at=lock.acquired_at,
                    is_ignored=lock.is_ignored,
                )
                for lock in held
            ]

    def active_locks(self) -> dict[str, str]:
        with self._guard:
            return {path: lock.task_id for path, lock in self._locks.items()}
