import asyncio

from agentfleet.events import EventBus, LockConflict, QueuedTaskResumed
from agentfleet.locks import (
    AcquireOutcome,
    FileLockTable,
    extract_path_from_partial,
    is_file_modify_tool,
    normalize_path,
)
from agentfleet.tasks import QueueReason, Task, TaskFlags, TaskStatus


class LockHarness:
    def __init__(self) -> None:
        self.tasks: dict[str, Task] = {}
        self.events: list[object] = []
        self.suspended: list[str] = []
        self.resumed: list[str] = []
        bus = EventBus()
        bus.subscribe(self.events.append)
        self.table = FileLockTable(
            self.tasks.get,
            events=bus,
            suspend=lambda task: self.suspended.append(task.id),
            resume=lambda task: self.resumed.append(task.id),
        )

    def running(self, number: int, **kwargs) -> Task:
        task = Task(project_path="/repo", description=f"task {number}", number=number, **kwargs)
        task.transition(TaskStatus.RUNNING)
        self.tasks[task.id] = task
        return task


def test_normalize_path_is_case_and_separator_insensitive() -> None:
    assert normalize_path("src\\Main.py", "/Repo") == "/repo/src/main.py"
    assert normalize_path("/Repo/src/../src/main.py/") == "/repo/src/main.py"


def test_modify_tool_names_and_partial_paths() -> None:
    assert is_file_modify_tool("Write")
    assert is_file_modify_tool("MultiEdit")
    assert not is_file_modify_tool("Read")
    assert not is_file_modify_tool(None)
    assert extract_path_from_partial('{"file_path": "/repo/a.py", "cont') == "/repo/a.py"
    assert extract_path_from_partial('{"content": "x') is None


def test_acquire_is_reentrant_for_the_owner() -> None:
    harness = LockHarness()
    owner = harness.running(1)

    first = harness.table.acquire("a.py", owner.id, "Write")
    second = harness.table.acquire("A.py", owner.id, "Edit")

    assert first.granted and second.granted
    assert harness.table.owner_of("/repo/a.py") == owner.id
    assert owner.locked_files == {"/repo/a.py"}
    assert owner.modified_files == {"/repo/a.py"}


def test_conflict_parks_requester_and_releases_its_locks() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    requester = harness.running(2)
    harness.table.acquire("a.py", owner.id, "Write")
    harness.table.acquire("b.py", requester.id, "Write")

    result = harness.table.acquire("a.py", requester.id, "Edit")

    assert result.outcome == AcquireOutcome.CONFLICT
    assert result.owner_task_id == owner.id
    assert requester.status == TaskStatus.QUEUED
    assert requester.queue_reason == QueueReason.LOCK
    assert requester.queued_reason_text == "File locked: /repo/a.py by #1"
    assert harness.table.owner_of("/repo/b.py") is None
    assert requester.locked_files == set()
    assert harness.suspended == [requester.id]
    conflicts = [event for event in harness.events if isinstance(event, LockConflict)]
    assert conflicts == [
        LockConflict(task_id=requester.id, path="/repo/a.py", owner_task_id=owner.id)
    ]
    assert harness.table.queued_info(requester.id).blocking_task_id == owner.id


def test_release_resumes_queued_tasks_in_fifo_order() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    first = harness.running(2)
    second = harness.running(3)
    harness.table.acquire("a.py", owner.id, "Write")
    harness.table.acquire("a.py", first.id, "Write")
    harness.table.acquire("a.py", second.id, "Write")

    owner.transition(TaskStatus.COMPLETED)
    harness.table.release_all_for_task(owner.id)
    resumed = harness.table.check_queued_tasks()

    assert resumed == [first.id]
    assert first.status == TaskStatus.RUNNING
    assert harness.table.owner_of("/repo/a.py") == first.id
    assert second.status == TaskStatus.QUEUED
    assert harness.resumed == [first.id]
    assert any(
        isinstance(event, QueuedTaskResumed) and event.task_id == first.id
        for event in harness.events
    )

    first.transition(TaskStatus.COMPLETED)
    harness.table.release_all_for_task(first.id)
    assert harness.table.check_queued_tasks() == [second.id]


def test_resume_gate_holds_tasks_back() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    waiter = harness.running(2)
    harness.table.acquire("a.py", owner.id, "Write")
    harness.table.acquire("a.py", waiter.id, "Write")
    owner.transition(TaskStatus.COMPLETED)
    harness.table.release_all_for_task(owner.id)

    assert harness.table.check_queued_tasks(can_resume=lambda task: False) == []
    assert waiter.status == TaskStatus.QUEUED

    harness.table.can_resume = lambda task: True
    assert harness.table.check_queued_tasks() == [waiter.id]


def test_ignore_locks_task_is_granted_and_observed() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    bypass = harness.running(2, flags=TaskFlags(ignore_file_locks=True))
    harness.table.acquire("a.py", owner.id, "Write")

    result = harness.table.acquire("a.py", bypass.id, "Edit")

    assert result.granted and result.ignored
    assert bypass.status == TaskStatus.RUNNING
    assert harness.table.owner_of("/repo/a.py") == owner.id
    assert LockConflict(
        task_id=bypass.id, path="/repo/a.py", owner_task_id=owner.id, ignored=True
    ) in harness.events
    assert any(lock.is_ignored for lock in harness.table.locked_files(bypass.id))


def test_conflict_outside_running_does_not_park() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    waiting = Task(project_path="/repo", description="later", number=2)
    harness.tasks[waiting.id] = waiting
    harness.table.acquire("a.py", owner.id, "Write")

    result = harness.table.acquire("a.py", waiting.id, "Write")

    assert not result.granted
    assert waiting.status == TaskStatus.INIT_QUEUED
    assert harness.table.queued_tasks() == []


def test_force_start_skips_the_queue() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    waiter = harness.running(2)
    harness.table.acquire("a.py", owner.id, "Write")
    harness.table.acquire("a.py", waiter.id, "Write")

    assert harness.table.force_start(waiter.id) is True
    assert waiter.status == TaskStatus.RUNNING
    assert harness.table.queued_info(waiter.id) is None
    assert harness.resumed == [waiter.id]
    assert harness.table.force_start(waiter.id) is False


def test_release_is_idempotent() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    harness.table.acquire("a.py", owner.id, "Write")

    assert harness.table.release("a.py", owner.id) is True
    assert harness.table.release("a.py", owner.id) is False
    assert harness.table.release_all_for_task(owner.id) == []
    assert harness.table.active_locks() == {}


def test_parked_task_waits_while_its_blocker_is_live() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    waiter = harness.running(2)
    harness.table.acquire("a.py", owner.id, "Write")
    harness.table.acquire("a.py", waiter.id, "Write")

    # The owner let go of the file but is still working.
    harness.table.release("a.py", owner.id)
    assert harness.table.check_queued_tasks() == []
    assert waiter.status == TaskStatus.QUEUED

    owner.transition(TaskStatus.COMPLETED)
    assert harness.table.check_queued_tasks() == [waiter.id]
    assert waiter.status == TaskStatus.RUNNING


def test_parked_task_resumes_only_when_every_blocker_is_done() -> None:
    harness = LockHarness()
    first_owner = harness.running(1)
    second_owner = harness.running(2)
    waiter = harness.running(3)
    harness.table.acquire("a.py", first_owner.id, "Write")
    harness.table.acquire("b.py", second_owner.id, "Write")
    harness.table.acquire("a.py", waiter.id, "Write")

    # Output buffered before the suspend names a second locked file.
    late = harness.table.acquire("b.py", waiter.id, "Edit")
    info = harness.table.queued_info(waiter.id)

    assert late.outcome == AcquireOutcome.CONFLICT
    assert info.blocking_task_ids == {first_owner.id, second_owner.id}
    assert info.paths == {"/repo/a.py", "/repo/b.py"}

    first_owner.transition(TaskStatus.COMPLETED)
    harness.table.release_all_for_task(first_owner.id)
    assert harness.table.check_queued_tasks() == []

    second_owner.transition(TaskStatus.FAILED)
    harness.table.release_all_for_task(second_owner.id)
    assert harness.table.check_queued_tasks() == [waiter.id]
    assert harness.table.owner_of("/repo/a.py") == waiter.id
    assert harness.table.owner_of("/repo/b.py") == waiter.id


def test_task_parked_while_planning_resumes_into_planning() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    planner = Task(project_path="/repo", description="plan first", number=2)
    planner.transition(TaskStatus.PLANNING)
    harness.tasks[planner.id] = planner
    harness.table.acquire("a.py", owner.id, "Write")

    harness.table.acquire("a.py", planner.id, "Write")
    assert planner.status == TaskStatus.QUEUED
    assert harness.table.queued_info(planner.id).resume_status == TaskStatus.PLANNING

    owner.transition(TaskStatus.COMPLETED)
    harness.table.release_all_for_task(owner.id)
    assert harness.table.check_queued_tasks() == [planner.id]
    assert planner.status == TaskStatus.PLANNING


def test_force_start_keeps_planning_status() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    planner = Task(project_path="/repo", description="plan first", number=2)
    planner.transition(TaskStatus.PLANNING)
    harness.tasks[planner.id] = planner
    harness.table.acquire("a.py", owner.id, "Write")
    harness.table.acquire("a.py", planner.id, "Write")

    assert harness.table.force_start(planner.id) is True
    assert planner.status == TaskStatus.PLANNING


def test_run_while_no_locks_held_refuses_when_scope_is_locked() -> None:
    harness = LockHarness()
    owner = harness.running(1)
    harness.table.acquire("a.py", owner.id, "Write")
    calls: list[str] = []

    async def _action() -> None:
        calls.append("ran")

    ok, error = asyncio.run(
        harness.table.run_while_no_locks_held(_action, "commit", paths=["/repo/a.py"])
    )
    assert ok is False
    assert error == "Cannot commit while file locks are active: /repo/a.py"
    assert calls == []

    ok, error = asyncio.run(
        harness.table.run_while_no_locks_held(_action, "commit", paths=["/repo/other.py"])
    )
    assert (ok, error) == (True, None)
    assert calls == ["ran"]


def test_run_while_no_locks_held_reserves_its_paths() -> None:
    harness = LockHarness()
    writer = harness.running(1)
    seen: dict[str, object] = {}

    async def _action() -> None:
        seen["inside"] = harness.table.acquire("a.py", writer.id, "Write")
        seen["outside"] = harness.table.acquire("b.py", writer.id, "Write")

    ok, _ = asyncio.run(
        harness.table.run_while_no_locks_held(_action, "commit", paths=["/repo/a.py"])
    )

    assert ok is True
    assert seen["inside"].outcome == AcquireOutcome.RESERVED
    assert seen["inside"].reserved_by == "commit"
    assert writer.status == TaskStatus.RUNNING
    assert seen["outside"].granted
    assert harness.table.acquire("a.py", writer.id, "Write").granted


def test_run_while_no_locks_held_reports_failures_and_unblocks() -> None:
    harness = LockHarness()
    writer = harness.running(1)

    async def _boom() -> None:
        raise RuntimeError("boom")

    async def _nested() -> tuple[bool, str | None]:
        async def _inner() -> None:
            seen.append(await harness.table.run_while_no_locks_held(_boom, "stash"))

        seen: list[tuple[bool, str | None]] = []
        result = await harness.table.run_while_no_locks_held(_inner, "commit")
        assert seen == [(False, "Cannot stash while commit is running")]
        return result

    assert asyncio.run(harness.table.run_while_no_locks_held(_boom, "commit")) == (
        False,
        "commit failed: boom",
    )
    assert asyncio.run(_nested()) == (True, None)
    assert harness.table.acquire("a.py", writer.id, "Write").granted
