from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from agentfleet.backends.base import AgentBackend, BackendExecutionError, LaunchRequest
from agentfleet.classifier import (
    DEFAULT_TOKEN_LIMIT_MARKERS,
    Outcome,
    OutcomeClassification,
    classify_outcome,
)
from agentfleet.context import (
    build_continuation_prompt,
    build_planning_prompt,
    build_task_prompt,
    build_token_retry_prompt,
)
from agentfleet.events import EventBus, RetryScheduled, TabHeaderChanged, TaskOutput
from agentfleet.locks import AcquireOutcome, FileLockTable
from agentfleet.process import ProcessHandle, ProcessLauncher, spawn_agent_process
from agentfleet.scheduling import DelayedTaskQueue
from agentfleet.stream import StreamEvent, StreamEventKind, StreamParser
from agentfleet.tasks import Task, TaskStatus

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 2000
PLAN_LIMIT = 8000

Verifier = Callable[[Task], Awaitable[bool]]
TaskCallback = Callable[[Task], None]


@dataclass(slots=True)
class RetryPolicy:
    reduction_factors: tuple[float, ...] = (0.8, 0.6, 0.4, 0.3)
    retry_delay_seconds: float = 60.0
    max_consecutive_failures: int = 3
    token_limit_markers: tuple[str, ...] = DEFAULT_TOKEN_LIMIT_MARKERS
    tail_chars: int = 3000
    cooldown_seconds: float = 5.0
    iteration_timeout_seconds: float = 1800.0
    max_runtime_seconds: float = 12 * 3600.0
    output_cap_chars: int = 100_000
    scan_lines: int = 50

    def __post_init__(self) -> None:
        factors = tuple(float(factor) for factor in self.reduction_factors)
        if any(not 0.0 < factor <= 1.0 for factor in factors):
            raise ValueError("Reduction factors must be in (0, 1].")
        if any(later >= earlier for earlier, later in zip(factors, factors[1:])):
            raise ValueError("Reduction factors must be strictly decreasing.")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be at least 1.")
        self.reduction_factors = factors

    @property
    def max_token_retries(self) -> int:
        return len(self.reduction_factors)


class NextStep(str, Enum):
    FINISH = "finish"
    CONTINUE = "continue"
    RETRY = "retry"
    SKIP = "skip"


@dataclass(slots=True)
class IterationDecision:
    step: NextStep
    status: TaskStatus | None = None
    reason: str | None = None
    reduction_factor: float | None = None
    consecutive_failures: int = 0
    token_limit_retries: int = 0
    trim_output: bool = False


def decide_next_step(
    task: Task,
    classification: OutcomeClassification,
    policy: RetryPolicy,
) -> IterationDecision:
    """Pure policy: what happens after one run of ``task`` ended as ``classification``."""
    failures = task.consecutive_failures
    retries = task.token_limit_retries
    if task.status.is_terminal or task.cancel_requested:
        return IterationDecision(NextStep.SKIP, consecutive_failures=failures)

    if task.is_iterative and task.runtime_seconds() >= policy.max_runtime_seconds:
        return IterationDecision(
            NextStep.FINISH,
            status=TaskStatus.COMPLETED,
            reason="max_runtime",
            consecutive_failures=failures,
        )

    if classification.outcome == Outcome.TOKEN_LIMIT:
        if retries >= policy.max_token_retries:
            return IterationDecision(
                NextStep.FINISH,
                status=TaskStatus.FAILED,
                reason=(
                    f"token_limit_exhausted: {retries} retries "
                    f"(matched '{classification.matched_pattern}')"
                ),
                consecutive_failures=failures,
                token_limit_retries=retries,
            )
        return IterationDecision(
            NextStep.RETRY,
            reduction_factor=policy.reduction_factors[retries],
            consecutive_failures=failures,
            token_limit_retries=retries + 1,
        )

    if classification.outcome == Outcome.FAILED:
        failures += 1
        if not task.is_iterative:
            return IterationDecision(
                NextStep.FINISH,
                status=TaskStatus.FAILED,
                reason=f"process_exit: {classification.matched_rule}",
                consecutive_failures=failures,
            )
        if failures >= policy.max_consecutive_failures:
            return IterationDecision(
                NextStep.FINISH,
                status=TaskStatus.FAILED,
                reason=f"crash_loop: {failures} consecutive abnormal iterations",
                consecutive_failures=failures,
            )
    else:
        failures = 0

    if classification.outcome == Outcome.COMPLETED:
        return IterationDecision(
            NextStep.FINISH, status=TaskStatus.COMPLETED, consecutive_failures=failures
        )

    if task.current_iteration >= task.max_iterations:
        if classification.outcome == Outcome.FAILED:
            return IterationDecision(
                NextStep.FINISH,
                status=TaskStatus.FAILED,
                reason=f"max_iterations: last iteration ended with {classification.matched_rule}",
                consecutive_failures=failures,
            )
        return IterationDecision(
            NextStep.FINISH,
            status=TaskStatus.COMPLETED,
            reason="max_iterations",
            consecutive_failures=failures,
        )

    return IterationDecision(
        NextStep.CONTINUE,
        consecutive_failures=failures,
        trim_output=len(task.output) > policy.output_cap_chars,
    )


class ExecutionSupervisor:
    """Owns the agent subprocess of every task it starts.

    All methods run on the event loop thread. Each subprocess gets one reader
    coroutine; stream events are applied to the task as they arrive.
    """

    def __init__(
        self,
        *,
        locks: FileLockTable,
        events: EventBus,
        scheduler: DelayedTaskQueue,
        backends: Mapping[str, AgentBackend],
        policy: RetryPolicy | None = None,
        launcher: ProcessLauncher = spawn_agent_process,
        system_prompt: str = "",
        verifier: Verifier | None = None,
        on_finished: TaskCallback | None = None,
        on_planning_finished: TaskCallback | None = None,
    ) -> None:
        self.locks = locks
        self.events = events
        self.scheduler = scheduler
        self.backends = dict(backends)
        self.policy = policy or RetryPolicy()
        self.launcher = launcher
        self.system_prompt = system_prompt
        self.verifier = verifier
        self.on_finished = on_finished
        self.on_planning_finished = on_planning_finished
        self._base_prompts: dict[str, str] = {}
        self._results: dict[str, bool | None] = {}
        self._timed_out: set[str] = set()
        self._jobs: dict[str, asyncio.Task[None]] = {}

    def _backend(self, task: Task) -> AgentBackend:
        try:
            return self.backends[task.backend]
        except KeyError as exc:
            raise BackendExecutionError(
                f"No backend configured for '{task.backend}'",
                backend=task.backend,
                retriable=False,
            ) from exc

    def _output(self, task: Task, text: str) -> None:
        if not text:
            return
        task.append_output(text)
        self.events.emit(TaskOutput(task_id=task.id, text=text))

    def _header(self, task: Task) -> None:
        self.events.emit(TabHeaderChanged(task_id=task.id, header=task.header()))

    def _key(self, task: Task, name: str) -> str:
        return f"{task.id}:{name}"

    def start(self, task: Task, *, planning: bool = False) -> bool:
        """Make ``task`` live and spawn its first run in the background."""
        target = TaskStatus.PLANNING if planning else TaskStatus.RUNNING
        if task.has_live_process:
            logger.error("Task %s already has a live process; start ignored", task.id)
            return False
        if not task.try_transition(target, reason="started"):
            return False
        if planning:
            prompt = build_planning_prompt(task, system_prompt=self.system_prompt)
        else:
            prompt = build_task_prompt(task, system_prompt=self.system_prompt)
            self._base_prompts[task.id] = prompt
            if task.is_iterative and task.current_iteration == 0:
                task.current_iteration = 1
        task.begin_iteration()
        self._header(task)
        self._spawn_in_background(task, prompt, planning=planning, resume=False)
        return True

    def _spawn_in_background(
        self, task: Task, prompt: str, *, planning: bool, resume: bool
    ) -> None:
        job = asyncio.ensure_future(self._run(task, prompt, planning=planning, resume=resume))
        self._jobs[task.id] = job
        job.add_done_callback(lambda done, task_id=task.id: self._job_done(task_id, done))

    def _job_done(self, task_id: str, job: asyncio.Task[None]) -> None:
        if self._jobs.get(task_id) is job:
            del self._jobs[task_id]

    async def _run(self, task: Task, prompt: str, *, planning: bool, resume: bool) -> None:
        try:
            backend = self._backend(task)
            request = LaunchRequest(
                prompt=prompt,
                working_directory=task.project_path or None,
                model=task.model,
                skip_permissions=task.flags.skip_permissions,
                planning=planning or task.flags.plan_only,
                resume_session_id=task.conversation_id if resume else None,
            )
            command = backend.build_command(request)
            process = await self.launcher(
                command, request.working_directory, backend.environment(request)
            )
        except (BackendExecutionError, OSError) as exc:
            self._launch_failed(task, exc)
            return

        if task.status.is_terminal or task.cancel_requested:
            process.kill_tree()
            await process.wait()
            return

        task.process = process
        if task.is_iterative and not planning:
            self.scheduler.schedule(
                self._key(task, "timeout"),
                self.policy.iteration_timeout_seconds,
                lambda: self._on_timeout(task, process),
            )
        try:
            exit_code = await self._consume(task, process, backend.create_parser())
        except Exception as exc:
            logger.exception("Reader for task %s failed", task.id)
            process.kill_tree()
            if task.process is process:
                task.process = None
            self._finish(task, TaskStatus.FAILED, f"supervisor_error: {exc}")
            return
        self._on_exit(task, process, exit_code)

    def _launch_failed(self, task: Task, exc: Exception) -> None:
        logger.error("Task %s failed to launch: %s", task.id, exc)
        self._output(task, f"[launch failed] {exc}\n")
        self._finish(task, TaskStatus.FAILED, f"launch_failed: {exc}")

    async def _consume(self, task: Task, process: ProcessHandle, parser: StreamParser) -> int:
        async def _drain_stderr() -> None:
            async for raw_line in process.error_lines():
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._output(task, f"[stderr] {line}\n")

        stderr_job = asyncio.ensure_future(_drain_stderr())
        async for raw_line in process.lines():
            for event in parser.feed(raw_line.decode("utf-8", errors="replace")):
                self.handle_stream_event(task, event)
        for event in parser.flush():
            self.handle_stream_event(task, event)
        exit_code = await process.wait()
        await stderr_job
        return exit_code

    def handle_stream_event(self, task: Task, event: StreamEvent) -> None:
        kind = event.kind
        if kind == StreamEventKind.TEXT:
            text = event.text if event.partial or event.text.endswith("\n") else event.text + "\n"
            self._output(task, text)
        elif kind == StreamEventKind.THINKING:
            if not event.partial:
                self._output(task, "[thinking]\n")
        elif kind == StreamEventKind.TOOL:
            self._output(task, f"[{event.tool_name}] {event.path or ''}".rstrip() + "\n")
            if event.modifies_files and event.path and not task.status.is_terminal:
                result = self.locks.acquire(event.path, task.id, event.tool_name or "tool")
                if result.outcome == AcquireOutcome.RESERVED:
                    self._output(task, f"[lock] {result.path} reserved by {result.reserved_by}\n")
                elif not result.granted:
                    self._output(task, f"[lock] waiting for {result.path}\n")
                    self._header(task)
        elif kind == StreamEventKind.SESSION:
            task.conversation_id = event.session_id
        elif kind == StreamEventKind.USAGE:
            task.usage.add(event.usage)
            self._header(task)
        elif kind == StreamEventKind.TURN_COMPLETE:
            self._header(task)
        elif kind == StreamEventKind.RESULT:
            task.last_result_text = event.text
            self._results[task.id] = event.success
            if event.usage:
                task.usage.add(event.usage)
            if event.success is False and event.text:
                self._output(task, f"[result] {event.text}\n")
            self._header(task)
        elif kind == StreamEventKind.ERROR:
            self._output(task, f"[error] {event.text}\n")
        elif kind == StreamEventKind.RAW:
            self._output(task, event.text + "\n")

    def _on_timeout(self, task: Task, process: ProcessHandle) -> None:
        if task.process is not process or not process.is_running:
            return
        logger.warning("Task %s iteration %d timed out", task.id, task.current_iteration)
        self._timed_out.add(task.id)
        self._output(task, "[timeout] iteration exceeded its time limit\n")
        process.kill_tree()

    def _on_exit(self, task: Task, process: ProcessHandle, exit_code: int) -> None:
        if task.process is process:
            task.process = None
        self.scheduler.cancel(self._key(task, "timeout"))
        result_success = self._results.pop(task.id, None)
        timed_out = task.id in self._timed_out
        self._timed_out.discard(task.id)

        if task.status.is_terminal or task.cancel_requested:
            return
        if task.status == TaskStatus.QUEUED:
            logger.info("Task %s exited while queued; it restarts when unblocked", task.id)
            return
        if task.status == TaskStatus.PAUSED:
            task.try_transition(TaskStatus.RUNNING, reason="process exited while paused")
        if task.status == TaskStatus.PLANNING:
            self._planning_done(task, exit_code)
            return

        if timed_out:
            classification = OutcomeClassification(
                outcome=Outcome.FAILED,
                reason_code=f"{task.backend}_iteration_timeout",
                matched_rule="iteration_timeout",
            )
        else:
            classification = classify_outcome(
                backend=task.backend,
                exit_code=exit_code,
                output=task.iteration_output,
                result_success=result_success,
                iterative=task.is_iterative,
                markers=self.policy.token_limit_markers,
                tail_chars=self.policy.tail_chars,
                scan_lines=self.policy.scan_lines,
            )
        logger.info(
            "Task %s run ended (exit %s): %s", task.id, exit_code, classification.matched_rule
        )
        self.apply_decision(task, decide_next_step(task, classification, self.policy))

    def apply_decision(self, task: Task, decision: IterationDecision) -> None:
        if decision.step == NextStep.SKIP:
            return
        task.consecutive_failures = decision.consecutive_failures
        task.token_limit_retries = decision.token_limit_retries

        if decision.step == NextStep.FINISH:
            if decision.status == TaskStatus.FAILED:
                logger.warning("Task %s failed: %s", task.id, decision.reason)
                self._finish(task, TaskStatus.FAILED, decision.reason)
            elif task.is_iterative:
                self._finish(task, TaskStatus.COMPLETED, decision.reason)
            else:
                self._spawn_verification(task)
            return

        if decision.step == NextStep.RETRY:
            factor = decision.reduction_factor or self.policy.reduction_factors[-1]
            attempt = decision.token_limit_retries
            delay = self.policy.retry_delay_seconds
            logger.warning(
                "Task %s hit a token limit; retry %d/%d at %.0f%% context in %.0fs",
                task.id,
                attempt,
                self.policy.max_token_retries,
                factor * 100,
                delay,
            )
            self._output(
                task, f"[retry] token limit, retry {attempt} at {int(factor * 100)}% context\n"
            )
            self.events.emit(
                RetryScheduled(
                    task_id=task.id, attempt=attempt, delay_seconds=delay, reduction_factor=factor
                )
            )
            self.scheduler.schedule(
                self._key(task, "retry"), delay, lambda: self._retry(task, attempt, factor)
            )
            return

        if decision.trim_output:
            task.trim_output(self.policy.output_cap_chars)
        task.current_iteration += 1
        self._header(task)
        self.scheduler.schedule(
            self._key(task, "iteration"),
            self.policy.cooldown_seconds,
            lambda: self._next_turn(task),
        )

    def _retry(self, task: Task, attempt: int, factor: float) -> None:
        if task.status != TaskStatus.RUNNING or task.cancel_requested:
            return
        base = self._base_prompts.get(task.id) or build_task_prompt(
            task, system_prompt=self.system_prompt
        )
        prompt = build_token_retry_prompt(
            base, attempt=attempt, max_attempts=self.policy.max_token_retries, factor=factor
        )
        task.begin_iteration()
        self._spawn_in_background(task, prompt, planning=False, resume=bool(task.conversation_id))

    def _next_turn(self, task: Task) -> None:
        if task.status != TaskStatus.RUNNING or task.cancel_requested:
            return
        prompt = build_continuation_prompt(task.current_iteration, task.max_iterations)
        if not task.conversation_id:
            base = self._base_prompts.get(task.id) or build_task_prompt(
                task, system_prompt=self.system_prompt
            )
            prompt = f"{base}\n{prompt}"
        task.begin_iteration()
        self._header(task)
        self._spawn_in_background(task, prompt, planning=False, resume=bool(task.conversation_id))

    def _planning_done(self, task: Task, exit_code: int) -> None:
        plan = task.last_result_text.strip() or task.iteration_output.strip()
        if exit_code != 0:
            logger.warning("Planning run for task %s exited with %s", task.id, exit_code)
        task.stored_plan = plan[-PLAN_LIMIT:]
        self._output(task, "[planning finished]\n")
        if self.on_planning_finished is not None:
            self.on_planning_finished(task)

    def _spawn_verification(self, task: Task) -> None:
        if not task.try_transition(TaskStatus.VERIFYING, reason="run finished"):
            return
        job = asyncio.ensure_future(self._verify(task))
        self._jobs[task.id] = job
        job.add_done_callback(lambda done, task_id=task.id: self._job_done(task_id, done))

    async def _verify(self, task: Task) -> None:
        summary = task.last_result_text.strip() or task.output.strip()[-SUMMARY_LIMIT:]
        task.completion_summary = summary[:SUMMARY_LIMIT]
        passed: bool | None = None
        if self.verifier is not None:
            try:
                passed = await self.verifier(task)
            except Exception as exc:
                logger.exception("Verifier failed for task %s", task.id)
                self._output(task, f"[verify] verifier error: {exc}\n")
                passed = False
        task.verification_passed = passed
        if task.status == TaskStatus.VERIFYING:
            self._finish(task, TaskStatus.COMPLETED, None)

    def _finish(self, task: Task, status: TaskStatus, reason: str | None) -> None:
        if task.status.is_terminal:
            return
        self.scheduler.cancel_prefix(f"{task.id}:")
        if not task.completion_summary and task.last_result_text:
            task.completion_summary = task.last_result_text.strip()[:SUMMARY_LIMIT]
        if status == TaskStatus.FAILED and reason:
            self._output(task, f"[failed] {reason}\n")
        if not task.try_transition(status, reason=reason):
            return
        self._base_prompts.pop(task.id, None)
        self._header(task)
        if self.on_finished is not None:
            self.on_finished(task)

    def resume_session(self, task: Task, note: str) -> None:
        """Run a follow-up turn for a live-status task whose process is gone.

        A task back in ``PLANNING`` gets another restricted planning run.
        """
        planning = task.status == TaskStatus.PLANNING
        prompt = note
        if not task.conversation_id:
            if planning:
                base = build_planning_prompt(task, system_prompt=self.system_prompt)
            else:
                base = self._base_prompts.get(task.id) or build_task_prompt(
                    task, system_prompt=self.system_prompt
                )
            prompt = f"{base}\n{note}"
        task.begin_iteration()
        self._spawn_in_background(
            task, prompt, planning=planning, resume=bool(task.conversation_id)
        )

    def suspend_for_lock(self, task: Task) -> None:
        self.scheduler.cancel(self._key(task, "timeout"))
        if task.process is not None and task.process.is_running:
            task.process.suspend()
        self._header(task)

    def resume_after_lock(self, task: Task) -> None:
        if task.process is not None and task.process.is_running:
            task.process.resume()
            if task.is_iterative and task.status == TaskStatus.RUNNING:
                process = task.process
                self.scheduler.schedule(
                    self._key(task, "timeout"),
                    self.policy.iteration_timeout_seconds,
                    lambda: self._on_timeout(task, process),
                )
        else:
            self.resume_session(
                task, "The file you were waiting for is free now. Continue where you left off."
            )
        self._header(task)

    def pause(self, task: Task) -> bool:
        if task.status == TaskStatus.PAUSED:
            return True
        process = task.process
        if task.status != TaskStatus.RUNNING or process is None or not process.is_running:
            return False
        process.suspend()
        self.scheduler.cancel(self._key(task, "timeout"))
        task.try_transition(TaskStatus.PAUSED, reason="paused by operator")
        self._header(task)
        return True

    def resume(self, task: Task) -> bool:
        if task.status == TaskStatus.RUNNING:
            return True
        if task.status != TaskStatus.PAUSED:
            return False
        task.try_transition(TaskStatus.RUNNING, reason="resumed by operator")
        if task.process is not None and task.process.is_running:
            task.process.resume()
            if task.is_iterative:
                process = task.process
                self.scheduler.schedule(
                    self._key(task, "timeout"),
                    self.policy.iteration_timeout_seconds,
                    lambda: self._on_timeout(task, process),
                )
        else:
            self.resume_session(task, "Continue the task where you left off.")
        self._header(task)
        return True

    def cancel(self, task: Task) -> bool:
        """Kill the process tree and mark the task cancelled; no-op when already finished."""
        if task.status.is_terminal:
            return False
        task.cancel_requested = True
        self.scheduler.cancel_prefix(f"{task.id}:")
        process = task.process
        task.process = None
        if process is not None:
            process.kill_tree()
        self.locks.release_all_for_task(task.id)
        self._output(task, "[cancelled]\n")
        self._finish(task, TaskStatus.CANCELLED, "cancelled by operator")
        return True

    async def wait_idle(self) -> None:
        while self._jobs:
            await asyncio.gather(*list(self._jobs.values()), return_exceptions=True)
