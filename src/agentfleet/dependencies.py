from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from agentfleet.context import build_dependency_context
from agentfleet.events import EventBus, TaskReady
from agentfleet.tasks import Task

logger = logging.getLogger(__name__)

TaskLookup = Callable[[str], "Task | None"]
ReadyCallback = Callable[[TaskReady], None]


@dataclass(slots=True)
class DependencyNode:
    task_id: str
    unresolved: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    finished_prerequisites: list[str] = field(default_factory=list)
    registered: bool = False
    resolved: bool = False
    notified: bool = False


class DependencyGraph:
    """Edges from each waiting task to the prerequisites it still needs.

    ``on_task_completed`` is the only way a prerequisite resolves. A task
    whose prerequisite set empties gets exactly one ``TaskReady``.
    """

    def __init__(
        self,
        lookup: TaskLookup,
        *,
        events: EventBus | None = None,
        on_ready: ReadyCallback | None = None,
    ) -> None:
        self._lookup = lookup
        self.events = events
        self.on_ready = on_ready
        self._nodes: dict[str, DependencyNode] = {}

    def _node(self, task_id: str) -> DependencyNode:
        node = self._nodes.get(task_id)
        if node is None:
            node = DependencyNode(task_id=task_id)
            self._nodes[task_id] = node
        return node

    def add_task(self, task_id: str, prerequisite_ids: Iterable[str] = ()) -> bool:
        """Register ``task_id``; returns True when nothing is left to wait for."""
        node = self._node(task_id)
        node.registered = True
        for prerequisite_id in prerequisite_ids:
            if prerequisite_id == task_id or prerequisite_id in node.unresolved:
                continue
            prerequisite = self._node(prerequisite_id)
            if prerequisite.resolved:
                node.finished_prerequisites.append(prerequisite_id)
                continue
            node.unresolved.add(prerequisite_id)
            prerequisite.dependents.add(task_id)
        if node.unresolved:
            node.notified = False
        self._sync_task(node)
        return not node.unresolved

    def detect_cycle(self, task_id: str, prerequisite_ids: Iterable[str]) -> bool:
        """True when ``task_id`` is already upstream of any of ``prerequisite_ids``."""
        targets = set(prerequisite_ids)
        if task_id in targets:
            return True
        visited: set[str] = set()
        pending = deque([task_id])
        while pending:
            current = pending.popleft()
            if current in visited:
                continue
            visited.add(current)
            node = self._nodes.get(current)
            if node is None:
                continue
            for dependent in node.dependents:
                if dependent in targets:
                    return True
                pending.append(dependent)
        return False

    def on_task_completed(self, task_id: str) -> list[str]:
        node = self._node(task_id)
        if node.resolved:
            logger.debug("Task %s already resolved in dependency graph", task_id)
            return []
        node.resolved = True

        ready: list[DependencyNode] = []
        for dependent_id in sorted(node.dependents):
            dependent = self._node(dependent_id)
            dependent.unresolved.discard(task_id)
            dependent.finished_prerequisites.append(task_id)
            self._sync_task(dependent)
            if (
                not dependent.unresolved
                and dependent.registered
                and not dependent.resolved
                and not dependent.notified
            ):
                ready.append(dependent)
        node.dependents.clear()

        ready.sort(key=self._ready_order)
        for dependent in ready:
            self._notify(dependent, forced=False)
        return [dependent.task_id for dependent in ready]

    def mark_resolved(self, task_id: str) -> bool:
        """Drop every pending prerequisite of ``task_id`` and announce it ready."""
        node = self._nodes.get(task_id)
        if node is None or node.resolved:
            return False
        for prerequisite_id in node.unresolved:
            prerequisite = self._nodes.get(prerequisite_id)
            if prerequisite is not None:
                prerequisite.dependents.discard(task_id)
        node.unresolved.clear()
        self._sync_task(node)
        self._notify(node, forced=True)
        return True

    def remove_task(self, task_id: str) -> None:
        node = self._nodes.pop(task_id, None)
        if node is None:
            return
        for prerequisite_id in node.unresolved:
            prerequisite = self._nodes.get(prerequisite_id)
            if prerequisite is not None:
                prerequisite.dependents.discard(task_id)
        for dependent_id in node.dependents:
            dependent = self._nodes.get(dependent_id)
            if dependent is not None:
                dependent.unresolved.discard(task_id)
                self._sync_task(dependent)

    def pending_prerequisites(self, task_id: str) -> set[str]:
        node = self._nodes.get(task_id)
        return set(node.unresolved) if node else set()

    def has_pending(self, task_id: str) -> bool:
        node = self._nodes.get(task_id)
        return bool(node and node.unresolved)

    def _ready_order(self, node: DependencyNode) -> tuple[int, int]:
        task = self._lookup(node.task_id)
        if task is None:
            return (0, 0)
        return (-int(task.priority), task.sequence)

    def _sync_task(self, node: DependencyNode) -> None:
        task = self._lookup(node.task_id)
        if task is not None:
            task.dependency_ids = sorted(node.unresolved)

    def _notify(self, node: DependencyNode, *, forced: bool) -> None:
        node.notified = True
        prerequisites = [
            task
            for task in (self._lookup(task_id) for task_id in node.finished_prerequisites)
            if task is not None
        ]
        event = TaskReady(
            task_id=node.task_id,
            context=build_dependency_context(prerequisites),
            forced=forced,
        )
        logger.info("Task %s dependency-ready (forced=%s)", node.task_id, forced)
        if self.on_ready is not None:
            self.on_ready(event)
        if self.events is not None:
            self.events.emit(event)
