import pytest

from agentfleet.admission import AdmissionController
from agentfleet.tasks import Task, TaskPriority, TaskStatus


def _controller(max_concurrent: int = 2):
    tasks: list[Task] = []
    started: list[str] = []

    def _start(task: Task) -> None:
        started.append(task.id)
        task.transition(TaskStatus.RUNNING)

    controller = AdmissionController(lambda: tasks, _start, max_concurrent=max_concurrent)
    return controller, tasks, started


def _task(tasks: list[Task], number: int, priority: TaskPriority = TaskPriority.NORMAL) -> Task:
    task = Task(
        project_path="/repo", description=f"task {number}", number=number, priority=priority
    )
    tasks.append(task)
    return task


def test_admit_respects_the_limit() -> None:
    controller, tasks, started = _controller(max_concurrent=1)
    first = _task(tasks, 1)
    second = _task(tasks, 2)

    assert controller.admit(first) is True
    assert controller.admit(second) is False

    assert started == [first.id]
    assert second.status == TaskStatus.INIT_QUEUED
    assert controller.count_live() == 1


def test_drain_starts_by_priority_then_submission_order() -> None:
    controller, tasks, started = _controller(max_concurrent=1)
    running = _task(tasks, 1)
    controller.admit(running)
    low = _task(tasks, 2, TaskPriority.LOW)
    normal = _task(tasks, 3)
    high = _task(tasks, 4, TaskPriority.HIGH)
    for task in (low, normal, high):
        controller.admit(task)

    running.transition(TaskStatus.COMPLETED)
    assert controller.drain() == [high.id]

    high.transition(TaskStatus.CANCELLED)
    assert controller.drain() == [normal.id]
    assert low.status == TaskStatus.INIT_QUEUED


def test_raising_the_limit_drains_waiting_tasks() -> None:
    controller, tasks, _ = _controller(max_concurrent=1)
    for number in range(1, 4):
        controller.admit(_task(tasks, number))

    started = controller.set_max_concurrent(3)

    assert len(started) == 2
    assert controller.count_live() == 3
    counts = controller.counts()
    assert counts["running"] == 3
    assert counts["live"] == 3
    assert counts["max_concurrent"] == 3


def test_lowering_the_limit_never_preempts() -> None:
    controller, tasks, _ = _controller(max_concurrent=2)
    for number in range(1, 3):
        controller.admit(_task(tasks, number))

    assert controller.set_max_concurrent(1) == []
    assert controller.count_live() == 2
    assert controller.has_slot() is False


def test_paused_tasks_hold_their_slot() -> None:
    controller, tasks, _ = _controller(max_concurrent=1)
    paused = _task(tasks, 1)
    controller.admit(paused)
    paused.transition(TaskStatus.PAUSED)

    assert controller.admit(_task(tasks, 2)) is False


def test_invalid_limit_is_rejected() -> None:
    with pytest.raises(ValueError):
        _controller(max_concurrent=0)
    controller, _, _ = _controller()
    with pytest.raises(ValueError):
        controller.set_max_concurrent(0)
