from agentfleet.dependencies import DependencyGraph
from agentfleet.events import TaskReady
from agentfleet.tasks import Task, TaskPriority, TaskStatus


class GraphHarness:
    def __init__(self) -> None:
        self.tasks: dict[str, Task] = {}
        self.ready: list[TaskReady] = []
        self.graph = DependencyGraph(self.tasks.get, on_ready=self.ready.append)

    def add(self, number: int, *prereqs: Task, priority: TaskPriority = TaskPriority.NORMAL):
        task = Task(
            project_path="/repo",
            description=f"task {number}",
            number=number,
            priority=priority,
        )
        self.tasks[task.id] = task
        ready = self.graph.add_task(task.id, [item.id for item in prereqs])
        return task, ready


def test_task_without_prerequisites_is_ready() -> None:
    harness = GraphHarness()
    _, ready = harness.add(1)

    assert ready is True
    assert harness.ready == []


def test_ready_fires_once_after_last_prerequisite() -> None:
    harness = GraphHarness()
    first, _ = harness.add(1)
    second, _ = harness.add(2)
    dependent, ready = harness.add(3, first, second)

    assert ready is False
    assert dependent.dependency_ids == sorted([first.id, second.id])

    assert harness.graph.on_task_completed(first.id) == []
    assert harness.graph.pending_prerequisites(dependent.id) == {second.id}

    first.transition(TaskStatus.RUNNING)
    first.transition(TaskStatus.FAILED, reason="boom")
    second.completion_summary = "added the parser"
    assert harness.graph.on_task_completed(second.id) == [dependent.id]
    assert harness.graph.on_task_completed(second.id) == []

    assert len(harness.ready) == 1
    event = harness.ready[0]
    assert event.task_id == dependent.id
    assert event.forced is False
    assert "# Dependency context" in event.context
    assert "added the parser" in event.context
    assert "Status: failed" in event.context


def test_already_completed_prerequisite_does_not_block() -> None:
    harness = GraphHarness()
    first, _ = harness.add(1)
    harness.graph.on_task_completed(first.id)

    _, ready = harness.add(2, first)

    assert ready is True


def test_ready_dependents_are_ordered_by_priority_then_submission() -> None:
    harness = GraphHarness()
    root, _ = harness.add(1)
    low, _ = harness.add(2, root, priority=TaskPriority.LOW)
    normal, _ = harness.add(3, root)
    high, _ = harness.add(4, root, priority=TaskPriority.HIGH)

    assert harness.graph.on_task_completed(root.id) == [high.id, normal.id, low.id]


def test_mark_resolved_forces_ready() -> None:
    harness = GraphHarness()
    root, _ = harness.add(1)
    dependent, _ = harness.add(2, root)

    assert harness.graph.mark_resolved(dependent.id) is True

    assert harness.ready[-1].forced is True
    assert harness.graph.has_pending(dependent.id) is False
    assert harness.graph.on_task_completed(root.id) == []


def test_cycle_detection() -> None:
    harness = GraphHarness()
    first, _ = harness.add(1)
    second, _ = harness.add(2, first)
    third, _ = harness.add(3, second)

    assert harness.graph.detect_cycle(first.id, [third.id]) is True
    assert harness.graph.detect_cycle(first.id, [first.id]) is True
    assert harness.graph.detect_cycle(third.id, [first.id]) is False


def test_new_prerequisite_rearms_notification() -> None:
    harness = GraphHarness()
    first, _ = harness.add(1)
    second, _ = harness.add(2)
    dependent, _ = harness.add(3, first)
    harness.graph.on_task_completed(first.id)

    assert harness.graph.add_task(dependent.id, [second.id]) is False
    assert harness.graph.on_task_completed(second.id) == [dependent.id]
    assert len(harness.ready) == 2


def test_never_submitted_prerequisite_keeps_task_waiting() -> None:
    harness = GraphHarness()
    dependent = Task(project_path="/repo", description="waits", number=1)
    harness.tasks[dependent.id] = dependent

    assert harness.graph.add_task(dependent.id, ["missing"]) is False
    assert harness.graph.has_pending(dependent.id)
    assert harness.graph.pending_prerequisites(dependent.id) == {"missing"}
