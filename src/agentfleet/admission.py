from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from agentfleet.tasks import Task, TaskStatus

logger = logging.getLogger(__name__)


class AdmissionController:
    """Caps how many tasks occupy a live session slot at once.

    ``start`` must move the task into a live status before it returns; the
    controller relies on that to count slots while draining.
    """

    def __init__(
        self,
        tasks: Callable[[], Iterable[Task]],
        start: Callable[[Task], None],
        *,
        max_concurrent: int = 3,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1.")
        self._tasks = tasks
        self._start = start
        self._max_concurrent = max_concurrent

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def set_max_concurrent(self, value: int) -> list[str]:
        if value < 1:
            raise ValueError("max_concurrent must be at least 1.")
        previous = self._max_concurrent
        self._max_concurrent = value
        logger.info("Concurrency limit changed from %d to %d", previous, value)
        return self.drain()

    def count_live(self) -> int:
        return sum(1 for task in self._tasks() if task.status.is_live)

    def has_slot(self) -> bool:
        return self.count_live() < self._max_concurrent

    def admit(self, task: Task) -> bool:
        """Start ``task`` now if a slot is free, otherwise park it as InitQueued."""
        if self.has_slot():
            self._start(task)
            return True
        if task.status != TaskStatus.INIT_QUEUED:
            task.try_transition(TaskStatus.INIT_QUEUED, reason="concurrency limit")
        logger.info(
            "Task %s waits for a slot (%d/%d live)",
            task.id,
            self.count_live(),
            self._max_concurrent,
        )
        return False

    def waiting(self) -> list[Task]:
        candidates = [task for task in self._tasks() if task.status == TaskStatus.INIT_QUEUED]
        candidates.sort(key=lambda task: (-int(task.priority), task.sequence))
        return candidates

    def drain(self) -> list[str]:
        started: list[str] = []
        for task in self.waiting():
            if not self.has_slot():
                break
            self._start(task)
            if not task.status.is_live and not task.status.is_terminal:
                logger.error("Task %s did not become live when started; drain stopped", task.id)
                break
            started.append(task.id)
        return started

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks():
            counts[task.status.value] += 1
        counts["live"] = sum(counts[status.value] for status in TaskStatus if status.is_live)
        counts["max_concurrent"] = self._max_concurrent
        return counts
