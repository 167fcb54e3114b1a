from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from agentfleet.admission import AdmissionController
from agentfleet.backends.base import AgentBackend
from agentfleet.commits import TaskCommitter, commit_precondition_error
from agentfleet.context import build_dependency_context, build_recovery_prompt
from agentfleet.dependencies import DependencyGraph
from agentfleet.events import EventBus, TaskFinalized, TaskReady, TaskStatusChanged
from agentfleet.history import StateStoreError, TaskHistory
from agentfleet.locks import FileLockTable
from agentfleet.process import ProcessLauncher, spawn_agent_process
from agentfleet.scheduling import DelayedTaskQueue
from agentfleet.supervisor import ExecutionSupervisor, RetryPolicy, Verifier
from agentfleet.tasks import (
    QueueReason,
    Task,
    TaskFlags,
    TaskNumberAllocator,
    TaskPriority,
    TaskStatus,
)

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "fleet:snapshot"


class OperationError(str, Enum):
    TASK_NOT_FOUND = "task_not_found"
    TASK_TERMINAL = "task_terminal"
    INVALID_STATE = "invalid_state"
    NOT_QUEUED = "not_queued"
    COMMIT_FAILED = "commit_failed"


@dataclass(slots=True, frozen=True)
class OperationResult:
    ok: bool
    error: OperationError | None = None
    message: str = ""
    task_id: str | None = None

    @classmethod
    def success(cls, task_id: str | None = None, message: str = "") -> OperationResult:
        return cls(ok=True, task_id=task_id, message=message)

    @classmethod
    def failure(
        cls, error: OperationError, message: str, task_id: str | None = None
    ) -> OperationResult:
        return cls(ok=False, error=error, message=message, task_id=task_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "task_id": self.task_id,
        }


@dataclass(slots=True)
class TaskRequest:
    """Everything a caller supplies when submitting work."""

    project_path: str
    description: str
    depends_on: list[str] = field(default_factory=list)
    priority: TaskPriority = TaskPriority.NORMAL
    flags: TaskFlags = field(default_factory=TaskFlags)
    backend: str = "claude"
    model: str = ""
    max_iterations: int = 1
    parent_id: str | None = None
    recovery: bool = False


class FleetOrchestrator:
    """Caller-facing facade over the task arena.

    Tasks live in one dict keyed by id; the lock table, the dependency graph
    and the admission controller only ever look tasks up through it. Every
    method must be called from the event loop thread.
    """

    def __init__(
        self,
        *,
        backends: Mapping[str, AgentBackend],
        policy: RetryPolicy | None = None,
        max_concurrent: int = 3,
        history: TaskHistory | None = None,
        events: EventBus | None = None,
        launcher: ProcessLauncher = spawn_agent_process,
        system_prompt: str = "",
        verifier: Verifier | None = None,
        auto_recover: bool = False,
    ) -> None:
        self.events = events or EventBus()
        self.scheduler = DelayedTaskQueue()
        self.history = history
        self.numbers = TaskNumberAllocator()
        self._tasks: dict[str, Task] = {}
        self._finalized: set[str] = set()
        self.auto_recover = auto_recover
        # Tasks taken off the lock queue by force_start, waiting for a slot.
        self._parked: dict[str, TaskStatus] = {}
        self._changed = asyncio.Event()
        self._writer: ThreadPoolExecutor | None = None
        self._writes: set[asyncio.Future[None]] = set()

        self.locks = FileLockTable(self._tasks.get, events=self.events)
        self.graph = DependencyGraph(self._tasks.get, events=self.events, on_ready=self._on_ready)
        self.supervisor = ExecutionSupervisor(
            locks=self.locks,
            events=self.events,
            scheduler=self.scheduler,
            backends=backends,
            policy=policy,
            launcher=launcher,
            system_prompt=system_prompt,
            verifier=verifier,
            on_finished=self._finalize,
            on_planning_finished=self._planning_finished,
        )
        self.admission = AdmissionController(
            lambda: list(self._tasks.values()), self._start, max_concurrent=max_concurrent
        )
        self.locks.suspend = self.supervisor.suspend_for_lock
        self.locks.resume = self.supervisor.resume_after_lock
        self.locks.can_resume = lambda task: self.admission.has_slot()
        self.committer = TaskCommitter(self.locks)

    # -- arena ---------------------------------------------------------------

    def _observe(self, event: TaskStatusChanged) -> None:
        self._changed.set()
        self.events.emit(event)

    def _add(self, task: Task) -> None:
        task.observer = self._observe
        self._tasks[task.id] = task

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def tasks(self) -> list[Task]:
        return sorted(self._tasks.values(), key=lambda task: task.sequence)

    def _lookup(self, task_id: str) -> Task | OperationResult:
        task = self._tasks.get(task_id)
        if task is None:
            return OperationResult.failure(
                OperationError.TASK_NOT_FOUND, f"Unknown task: {task_id}", task_id
            )
        if task.status.is_terminal:
            return OperationResult.failure(
                OperationError.TASK_TERMINAL,
                f"Task #{task.number} already {task.status.value}.",
                task_id,
            )
        return task

    def restore_history(self) -> list[Task]:
        """Load finished tasks from history so new work can depend on them."""
        if self.history is None:
            return []
        restored = [task for task in self.history.load() if task.id not in self._tasks]
        for task in restored:
            self._add(task)
            self._finalized.add(task.id)
            self.graph.on_task_completed(task.id)
        if restored:
            highest = max(task.number for task in restored)
            self.numbers = TaskNumberAllocator(start=highest + 1)
            logger.info("Restored %d task(s) from history", len(restored))
        return restored

    # -- submission ----------------------------------------------------------

    def submit(self, request: TaskRequest) -> OperationResult:
        if request.backend not in self.supervisor.backends:
            return OperationResult.failure(
                OperationError.INVALID_STATE, f"Unknown backend: {request.backend}"
            )
        if request.max_iterations < 1:
            return OperationResult.failure(
                OperationError.INVALID_STATE, "max_iterations must be at least 1."
            )
        task = Task(
            project_path=request.project_path,
            description=request.description,
            number=self.numbers.next(),
            flags=request.flags,
            backend=request.backend,
            model=request.model,
            parent_id=request.parent_id,
            is_recovery=request.recovery,
            priority=request.priority,
            max_iterations=request.max_iterations,
        )
        self._add(task)
        logger.info("Submitted task #%d (%s): %s", task.number, task.id, task.summary)

        depends_on = list(dict.fromkeys(request.depends_on))
        ready = self.graph.add_task(task.id, depends_on)
        if ready:
            finished = [self._tasks[item] for item in depends_on if item in self._tasks]
            task.dependency_context = build_dependency_context(finished)
            self.admission.admit(task)
        else:
            self._wait_on_dependencies(task)
        self._changed.set()
        return OperationResult.success(task.id, f"Task #{task.number} submitted.")

    def _wait_on_dependencies(self, task: Task) -> None:
        blocking_id = sorted(self.graph.pending_prerequisites(task.id))[0]
        blocking = self._tasks.get(blocking_id)
        task.mark_waiting_on_dependency(blocking_id, blocking.number if blocking else None)
        if task.flags.plan_before_queue and task.status == TaskStatus.INIT_QUEUED:
            if self.admission.has_slot():
                self.supervisor.start(task, planning=True)
                return
        task.transition(TaskStatus.QUEUED, reason=task.queued_reason_text)

    def add_dependency(self, task_id: str, prerequisite_id: str) -> OperationResult:
        found = self._lookup(task_id)
        if isinstance(found, OperationResult):
            return found
        task = found
        if task.status not in (TaskStatus.INIT_QUEUED, TaskStatus.QUEUED):
            return OperationResult.failure(
                OperationError.INVALID_STATE,
                f"Task #{task.number} already started; dependencies are fixed.",
                task_id,
            )
        if task.queue_reason == QueueReason.LOCK:
            return OperationResult.failure(
                OperationError.INVALID_STATE,
                f"Task #{task.number} is parked on a file lock.",
                task_id,
            )
        if self.graph.detect_cycle(task_id, [prerequisite_id]):
            return OperationResult.failure(
                OperationError.INVALID_STATE,
                "Dependency would create a cycle.",
                task_id,
            )
        if not self.graph.add_task(task_id, [prerequisite_id]):
            if task.status == TaskStatus.INIT_QUEUED:
                self._wait_on_dependencies(task)
            else:
                blocking = self._tasks.get(prerequisite_id)
                if task.blocked_by_task_id is None:
                    task.mark_waiting_on_dependency(
                        prerequisite_id, blocking.number if blocking else None
                    )
        return OperationResult.success(task_id)

    def _start(self, task: Task) -> None:
        """Admission callback: bring an InitQueued or Queued task live."""
        if task.id in self._parked:
            # Pulled off the lock queue while it still had a session; pick it back up
            # in the status it was parked from.
            status = self._parked.pop(task.id)
            task.transition(status, reason="slot available")
            self.supervisor.resume_after_lock(task)
            return
        self.supervisor.start(task)

    def _parked_while_planning(self, task: Task) -> bool:
        if self._parked.get(task.id) == TaskStatus.PLANNING:
            return True
        info = self.locks.queued_info(task.id)
        return info is not None and info.resume_status == TaskStatus.PLANNING

    def _on_ready(self, event: TaskReady) -> None:
        task = self._tasks.get(event.task_id)
        if task is None or task.status.is_terminal:
            return
        task.dependency_context = event.context
        if task.status == TaskStatus.PLANNING or self._parked_while_planning(task):
            # The planning run hands over to the worker once it ends.
            task.ready_during_planning = True
            return
        if task.status == TaskStatus.QUEUED and task.queue_reason == QueueReason.DEPENDENCY:
            task.clear_queue_state()
            self.admission.admit(task)

    def _planning_finished(self, task: Task) -> None:
        # Whatever the planner locked is not held across the wait for prerequisites.
        self.locks.release_all_for_task(task.id)
        if self.graph.has_pending(task.id) and not task.ready_during_planning:
            blocking_id = sorted(self.graph.pending_prerequisites(task.id))[0]
            blocking = self._tasks.get(blocking_id)
            task.mark_waiting_on_dependency(blocking_id, blocking.number if blocking else None)
            task.transition(TaskStatus.QUEUED, reason=task.queued_reason_text)
            logger.info("Task %s planned; %s", task.id, task.queued_reason_text)
            self.locks.check_queued_tasks()
            self.admission.drain()
            return
        task.ready_during_planning = False
        task.clear_queue_state()
        self.supervisor.start(task)

    # -- caller operations ---------------------------------------------------

    def pause(self, task_id: str) -> OperationResult:
        found = self._lookup(task_id)
        if isinstance(found, OperationResult):
            return found
        if not self.supervisor.pause(found):
            return OperationResult.failure(
                OperationError.INVALID_STATE,
                f"Task #{found.number} is {found.status.value}, not running.",
                task_id,
            )
        return OperationResult.success(task_id)

    def resume(self, task_id: str) -> OperationResult:
        found = self._lookup(task_id)
        if isinstance(found, OperationResult):
            return found
        if not self.supervisor.resume(found):
            return OperationResult.failure(
                OperationError.INVALID_STATE,
                f"Task #{found.number} is {found.status.value}, not paused.",
                task_id,
            )
        return OperationResult.success(task_id)

    def cancel(self, task_id: str) -> OperationResult:
        found = self._lookup(task_id)
        if isinstance(found, OperationResult):
            return found
        self.supervisor.cancel(found)
        return OperationResult.success(task_id, f"Task #{found.number} cancelled.")

    def force_start(self, task_id: str) -> OperationResult:
        found = self._lookup(task_id)
        if isinstance(found, OperationResult):
            return found
        task = found
        if task.status == TaskStatus.QUEUED and task.queue_reason == QueueReason.LOCK:
            if self.admission.has_slot():
                self.locks.force_start(task_id)
                return OperationResult.success(task_id, "Started past its file lock.")
            info = self.locks.remove_queued(task_id)
            self._parked[task_id] = info.resume_status if info is not None else TaskStatus.RUNNING
            task.transition(TaskStatus.INIT_QUEUED, reason="force start waits for a slot")
            return OperationResult.success(task_id, "Waiting for a concurrency slot.")
        if self.graph.has_pending(task_id):
            self.graph.mark_resolved(task_id)
            if task.status == TaskStatus.INIT_QUEUED:
                return OperationResult.success(task_id, "Waiting for a concurrency slot.")
            return OperationResult.success(task_id)
        return OperationResult.failure(
            OperationError.NOT_QUEUED,
            f"Task #{task.number} is not waiting on a dependency or a file lock.",
            task_id,
        )

    def set_max_concurrent(self, value: int) -> OperationResult:
        try:
            started = self.admission.set_max_concurrent(value)
        except ValueError as exc:
            return OperationResult.failure(OperationError.INVALID_STATE, str(exc))
        # A raised limit can also let lock-parked tasks continue.
        started.extend(self.locks.check_queued_tasks())
        return OperationResult.success(message=f"Started {len(started)} task(s).")

    def counts(self) -> dict[str, int]:
        return self.admission.counts()

    def remove_task(self, task_id: str) -> OperationResult:
        task = self._tasks.get(task_id)
        if task is None:
            return OperationResult.failure(
                OperationError.TASK_NOT_FOUND, f"Unknown task: {task_id}", task_id
            )
        if not task.status.is_terminal:
            return OperationResult.failure(
                OperationError.INVALID_STATE,
                f"Task #{task.number} is still {task.status.value}.",
                task_id,
            )
        del self._tasks[task_id]
        self._finalized.discard(task_id)
        self.graph.remove_task(task_id)
        return OperationResult.success(task_id)

    # -- follow-up work ------------------------------------------------------

    def spawn_subtask(
        self, parent_id: str, description: str, *, recovery: bool = False
    ) -> OperationResult:
        """Submit a child of ``parent_id`` in the same project with the parent's settings."""
        parent = self._tasks.get(parent_id)
        if parent is None:
            return OperationResult.failure(
                OperationError.TASK_NOT_FOUND, f"Unknown task: {parent_id}", parent_id
            )
        request = TaskRequest(
            project_path=parent.project_path,
            description=description,
            priority=parent.priority,
            flags=replace(parent.flags, plan_before_queue=False),
            backend=parent.backend,
            model=parent.model,
            parent_id=parent.id,
            recovery=recovery,
        )
        return self.submit(request)

    def _spawn_recovery(self, failed: Task) -> None:
        result = self.spawn_subtask(failed.id, build_recovery_prompt(failed), recovery=True)
        if not result.ok:
            logger.warning("No recovery task for %s: %s", failed.id, result.message)
            return
        child = self._tasks[result.task_id]
        failed.append_output(f"[recovery] task #{child.number} spawned to fix this failure\n")
        logger.info("Spawned recovery task #%d for failed task #%d", child.number, failed.number)

    async def commit_task(self, task_id: str) -> OperationResult:
        """Commit the files ``task_id`` wrote to its project's git repository."""
        task = self._tasks.get(task_id)
        if task is None:
            return OperationResult.failure(
                OperationError.TASK_NOT_FOUND, f"Unknown task: {task_id}", task_id
            )
        refusal = commit_precondition_error(task)
        if refusal is not None:
            return OperationResult.failure(OperationError.INVALID_STATE, refusal, task_id)
        result = await self.committer.commit(task)
        if not result.ok:
            return OperationResult.failure(OperationError.COMMIT_FAILED, result.message, task_id)
        if self.history is not None:
            self._persist(self.history.store_entry, self.history.entry_for(task))
        return OperationResult.success(task_id, result.message)

    # -- finalization --------------------------------------------------------

    def _finalize(self, task: Task) -> None:
        """Runs once per task after it reaches a terminal status."""
        if task.id in self._finalized:
            return
        self._finalized.add(task.id)
        self._parked.pop(task.id, None)
        released = self.locks.release_all_for_task(task.id)
        self.locks.remove_queued(task.id)
        self.scheduler.cancel_prefix(f"{task.id}:")
        logger.info(
            "Task #%d finished as %s (released %d lock(s))",
            task.number,
            task.status.value,
            len(released),
        )
        self.events.emit(
            TaskFinalized(
                task_id=task.id, status=task.status, failure_reason=task.failure_reason
            )
        )
        self.locks.check_queued_tasks()
        self.graph.on_task_completed(task.id)
        if task.status == TaskStatus.FAILED and self.auto_recover and not task.is_recovery:
            self._spawn_recovery(task)
        if self.history is not None:
            self._persist(self.history.store_entry, self.history.entry_for(task))
        self.admission.drain()
        self._changed.set()

    # -- persistence ---------------------------------------------------------

    def _persist(self, write: Callable[[Any], None], payload: Any) -> None:
        """Hand ``payload`` to ``write`` on the writer thread, in submission order.

        The payload is built from live task objects before this is called; the
        thread only touches disk. Without a running loop the write happens inline.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_now(write, payload)
            return
        if self._writer is None:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agentfleet-state")
        future = loop.run_in_executor(self._writer, self._write_now, write, payload)
        self._writes.add(future)
        future.add_done_callback(self._writes.discard)

    @staticmethod
    def _write_now(write: Callable[[Any], None], payload: Any) -> None:
        try:
            write(payload)
        except StateStoreError as exc:
            logger.error("Could not persist task state: %s", exc)

    async def flush_history(self) -> None:
        """Wait for every pending history and snapshot write."""
        while self._writes:
            await asyncio.gather(*list(self._writes))

    # -- lifecycle -----------------------------------------------------------

    def snapshot(self) -> None:
        if self.history is None:
            return
        payload = self.history.snapshot_payload(self.tasks())
        payload["locks"] = self.locks.active_locks()
        payload["lock_queue"] = [info.task_id for info in self.locks.queued_tasks()]
        self._persist(self.history.write_snapshot, payload)

    def enable_snapshots(self, interval_seconds: float) -> None:
        if self.history is None or interval_seconds <= 0:
            return
        self.scheduler.every(SNAPSHOT_KEY, interval_seconds, self.snapshot)

    def is_idle(self) -> bool:
        return all(task.status.is_terminal for task in self._tasks.values())

    async def run_until_complete(self, timeout: float | None = None) -> list[Task]:
        """Wait until every known task is terminal and return them in submission order."""

        async def _wait() -> None:
            while not self.is_idle():
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout)
        await self.supervisor.wait_idle()
        await self.flush_history()
        return self.tasks()

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            if not task.status.is_terminal:
                self.supervisor.cancel(task)
        self.scheduler.cancel_all()
        await self.supervisor.wait_idle()
        await self.scheduler.drain()
        self.snapshot()
        await self.flush_history()
        if self._writer is not None:
            self._writer.shutdown(wait=True)
            self._writer = None
