from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from agentfleet.tasks import TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TaskStatusChanged:
    name: ClassVar[str] = "task_status_changed"
    task_id: str
    old_status: TaskStatus
    new_status: TaskStatus
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class TaskReady:
    """A task's prerequisites are all resolved."""

    name: ClassVar[str] = "task_ready"
    task_id: str
    context: str = ""
    forced: bool = False


@dataclass(slots=True, frozen=True)
class LockConflict:
    name: ClassVar[str] = "lock_conflict"
    task_id: str
    path: str
    owner_task_id: str
    ignored: bool = False


@dataclass(slots=True, frozen=True)
class QueuedTaskResumed:
    name: ClassVar[str] = "queued_task_resumed"
    task_id: str
    path: str


@dataclass(slots=True, frozen=True)
class TaskOutput:
    name: ClassVar[str] = "task_output"
    task_id: str
    text: str


@dataclass(slots=True, frozen=True)
class TabHeaderChanged:
    name: ClassVar[str] = "tab_header_changed"
    task_id: str
    header: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class RetryScheduled:
    name: ClassVar[str] = "retry_scheduled"
    task_id: str
    attempt: int
    delay_seconds: float
    reduction_factor: float


@dataclass(slots=True, frozen=True)
class TaskFinalized:
    name: ClassVar[str] = "task_finalized"
    task_id: str
    status: TaskStatus
    failure_reason: str | None = None


CoreEvent = (
    TaskStatusChanged
    | TaskReady
    | LockConflict
    | QueuedTaskResumed
    | TaskOutput
    | TabHeaderChanged
    | RetryScheduled
    | TaskFinalized
)
EventHandler = Callable[[Any], None]


def event_payload(event: CoreEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {"event": event.name}
    for item in fields(event):
        value = getattr(event, item.name)
        payload[item.name] = value.value if isinstance(value, Enum) else value
    return payload


class EventBus:
    """Fan-out of core events to subscribers.

    Typed subscribers receive the event objects; ``event_hook`` receives the
    flat dict form used for recording and JSON output.
    """

    def __init__(self, event_hook: Callable[[dict[str, Any]], None] | None = None) -> None:
        self.event_hook = event_hook
        self._handlers: list[tuple[tuple[type, ...], EventHandler]] = []

    def subscribe(self, handler: EventHandler, *event_types: type) -> Callable[[], None]:
        entry = (tuple(event_types), handler)
        self._handlers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return _unsubscribe

    def emit(self, event: CoreEvent) -> None:
        for event_types, handler in list(self._handlers):
            if event_types and not isinstance(event, event_types):
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.name)
        if self.event_hook is not None:
            self.event_hook(event_payload(event))
