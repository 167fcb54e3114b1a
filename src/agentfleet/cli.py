from __future__ import annotations

import asyncio
import json
import logging
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from agentfleet.backends import AgentBackend, BackendExecutionError, create_backend
from agentfleet.commits import commit_precondition_error
from agentfleet.config import FleetConfig, load_config, save_config
from agentfleet.events import EventBus
from agentfleet.history import StateStore, StateStoreError, TaskHistory
from agentfleet.orchestrator import FleetOrchestrator, TaskRequest
from agentfleet.process import spawn_agent_process
from agentfleet.tasks import Task, TaskFlags, TaskPriority

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: FleetConfig
    history: TaskHistory


@dataclass(slots=True)
class JobEntry:
    name: str
    request: TaskRequest
    depends_on: list[str]


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(config: FleetConfig, repo_root: Path) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.logging.file:
        log_path = Path(config.logging.file)
        if not log_path.is_absolute():
            log_path = repo_root / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config, repo_root)
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = repo_root / state_dir
    try:
        store = StateStore(state_dir)
    except OSError as exc:
        raise click.ClickException(f"Cannot open state directory {state_dir}: {exc}") from exc
    history = TaskHistory(
        store,
        retention_hours=config.state.history_retention_hours,
        limit=config.state.history_limit,
    )
    return Runtime(repo_root=repo_root, config_path=config_path, config=config, history=history)


def _build_backends(config: FleetConfig) -> dict[str, AgentBackend]:
    return {
        "claude": create_backend("claude", config.backend.claude_binary),
        "codex": create_backend("codex", config.backend.codex_binary),
    }


def _echo_event(payload: dict[str, Any]) -> None:
    if payload.get("event") == "task_status_changed":
        reason = f" ({payload['reason']})" if payload.get("reason") else ""
        change = f"{payload['old_status']} -> {payload['new_status']}"
        click.echo(f"[{payload['task_id'][:8]}] {change}{reason}", err=True)
    elif payload.get("event") == "retry_scheduled":
        click.echo(
            f"[{payload['task_id'][:8]}] token limit retry {payload['attempt']} "
            f"at {int(payload['reduction_factor'] * 100)}% in {payload['delay_seconds']:.0f}s",
            err=True,
        )


def _build_orchestrator(
    runtime: Runtime, *, max_concurrent: int | None, verbose: bool
) -> FleetOrchestrator:
    try:
        policy = runtime.config.retry_policy()
    except ValueError as exc:
        raise click.ClickException(f"Invalid [retry] settings: {exc}") from exc
    limit = max_concurrent or runtime.config.scheduler.max_concurrent
    if limit < 1:
        raise click.ClickException("max_concurrent must be at least 1.")
    return FleetOrchestrator(
        backends=_build_backends(runtime.config),
        policy=policy,
        max_concurrent=limit,
        history=runtime.history,
        events=EventBus(event_hook=_echo_event if verbose else None),
        launcher=spawn_agent_process,
        auto_recover=runtime.config.scheduler.auto_recover,
    )


def _task_summary(task: Task, name: str | None = None) -> dict[str, Any]:
    payload = {
        "number": task.number,
        "id": task.id,
        "status": task.status.value,
        "summary": task.summary,
        "failure_reason": task.failure_reason,
        "iterations": task.current_iteration,
        "modified_files": sorted(task.modified_files),
        "commit_hash": task.commit_hash,
        "usage": task.usage.to_dict(),
    }
    if name is not None:
        payload = {"name": name, **payload}
    return payload


def _flags_from(data: dict[str, Any], *, skip_permissions: bool) -> TaskFlags:
    raw = dict(data.get("flags") or {})
    raw.setdefault("skip_permissions", skip_permissions)
    return TaskFlags.from_dict(raw)


def _load_jobs(path: Path, runtime: Runtime) -> list[JobEntry]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise click.ClickException(f"Cannot read jobs file {path}: {exc}") from exc
    raw_tasks = data.get("task", [])
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise click.ClickException(f"No [[task]] entries in {path}.")

    config = runtime.config
    jobs: list[JobEntry] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_tasks, start=1):
        if not isinstance(item, dict) or not str(item.get("prompt", "")).strip():
            raise click.ClickException(f"Task entry {index} needs a prompt.")
        name = str(item.get("name") or f"task-{index}")
        if name in seen:
            raise click.ClickException(f"Duplicate task name: {name}")
        depends_on = [str(value) for value in item.get("depends_on", [])]
        unknown = [value for value in depends_on if value not in seen]
        if unknown:
            raise click.ClickException(
                f"Task '{name}' depends on unknown or later task(s): {', '.join(unknown)}"
            )
        seen.add(name)
        project = Path(str(item.get("project", "."))).expanduser()
        if not project.is_absolute():
            project = (path.parent / project).resolve()
        flags = _flags_from(item, skip_permissions=config.backend.skip_permissions)
        default_iterations = config.iteration.default_max_iterations if flags.autonomous else 1
        try:
            priority = TaskPriority.parse(item.get("priority", "normal"))
        except ValueError as exc:
            raise click.ClickException(f"Task '{name}': {exc}") from exc
        request = TaskRequest(
            project_path=str(project),
            description=str(item["prompt"]),
            priority=priority,
            flags=flags,
            backend=str(item.get("backend") or config.backend.default),
            model=str(item.get("model") or config.backend.model),
            max_iterations=int(item.get("max_iterations") or default_iterations),
        )
        jobs.append(JobEntry(name=name, request=request, depends_on=depends_on))
    return jobs


async def _commit_finished(orchestrator: FleetOrchestrator, task_ids: list[str]) -> None:
    for task_id in task_ids:
        task = orchestrator.get_task(task_id)
        if task is None or commit_precondition_error(task) is not None:
            continue
        result = await orchestrator.commit_task(task_id)
        if not result.ok:
            logger.warning("Task #%d not committed: %s", task.number, result.message)


async def _execute_jobs(
    runtime: Runtime, jobs: list[JobEntry], *, max_concurrent: int | None, verbose: bool
) -> list[dict[str, Any]]:
    orchestrator = _build_orchestrator(runtime, max_concurrent=max_concurrent, verbose=verbose)
    orchestrator.restore_history()
    orchestrator.enable_snapshots(runtime.config.scheduler.snapshot_interval_seconds)
    ids: dict[str, str] = {}
    try:
        for job in jobs:
            job.request.depends_on = [ids[name] for name in job.depends_on]
            result = orchestrator.submit(job.request)
            if not result.ok or result.task_id is None:
                raise click.ClickException(f"Could not submit '{job.name}': {result.message}")
            ids[job.name] = result.task_id
        await orchestrator.run_until_complete()
        if runtime.config.scheduler.auto_commit:
            submitted = set(ids.values())
            await _commit_finished(
                orchestrator,
                [
                    task.id
                    for task in orchestrator.tasks()
                    if task.id in submitted or task.parent_id in submitted
                ],
            )
    finally:
        await orchestrator.shutdown()
    names = {task_id: name for name, task_id in ids.items()}
    for task in orchestrator.tasks():
        # Recovery tasks are reported under the job they were spawned for.
        if task.parent_id in names and task.id not in names:
            names[task.id] = f"{names[task.parent_id]}:recovery"
    return [
        _task_summary(task, names[task.id])
        for task in orchestrator.tasks()
        if task.id in names
    ]


def _run_jobs(
    runtime: Runtime, jobs: list[JobEntry], *, max_concurrent: int | None, verbose: bool
) -> list[dict[str, Any]]:
    try:
        return asyncio.run(
            _execute_jobs(runtime, jobs, max_concurrent=max_concurrent, verbose=verbose)
        )
    except (BackendExecutionError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
def cli() -> None:
    """AgentFleet CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default="agentfleet.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.default = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_dir = repo_root / config.state.directory
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized AgentFleet in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.default}")
    click.echo(f"State directory: {state_dir}")


@cli.command("run")
@click.argument("jobs_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--max-concurrent", type=click.IntRange(min=1), default=None)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="agentfleet.toml", show_default=True)
def run_command(
    jobs_file: Path, max_concurrent: int | None, verbose: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    jobs = _load_jobs(jobs_file.resolve(), runtime)
    payload = _run_jobs(runtime, jobs, max_concurrent=max_concurrent, verbose=verbose)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if any(item["status"] != "completed" for item in payload):
        sys.exit(1)


@cli.command("submit")
@click.argument("prompt")
@click.option("--project", default=".", show_default=True)
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--model", default=None)
@click.option("--priority", default="normal", show_default=True)
@click.option("--iterations", type=click.IntRange(min=1), default=None)
@click.option("--autonomous", is_flag=True, default=False)
@click.option("--plan-only", is_flag=True, default=False)
@click.option("--ignore-locks", is_flag=True, default=False)
@click.option("--no-git-write", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="agentfleet.toml", show_default=True)
def submit_command(
    prompt: str,
    project: str,
    backend: str | None,
    model: str | None,
    priority: str,
    iterations: int | None,
    autonomous: bool,
    plan_only: bool,
    ignore_locks: bool,
    no_git_write: bool,
    verbose: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    config = runtime.config
    try:
        parsed_priority = TaskPriority.parse(priority)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    flags = TaskFlags(
        ignore_file_locks=ignore_locks,
        no_git_write=no_git_write,
        plan_only=plan_only,
        skip_permissions=config.backend.skip_permissions,
        autonomous=autonomous,
    )
    default_iterations = config.iteration.default_max_iterations if autonomous else 1
    request = TaskRequest(
        project_path=str((repo_root / project).resolve()),
        description=prompt,
        priority=parsed_priority,
        flags=flags,
        backend=backend or config.backend.default,
        model=model if model is not None else config.backend.model,
        max_iterations=iterations or default_iterations,
    )
    job = JobEntry(name="task", request=request, depends_on=[])
    payload = _run_jobs(runtime, [job], max_concurrent=None, verbose=verbose)
    click.echo(json.dumps(payload[0], ensure_ascii=False, indent=2))
    if payload[0]["status"] != "completed":
        sys.exit(1)


@cli.command("history")
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
@click.option("--config", "config_value", default="agentfleet.toml", show_default=True)
def history_command(limit: int, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    entries = runtime.history.entries()[-limit:]
    if not entries:
        click.echo("No finished tasks recorded.")
        return
    payload = [
        {
            "number": entry.get("number"),
            "id": entry.get("id"),
            "status": entry.get("status"),
            "summary": (str(entry.get("description", "")).strip().splitlines() or [""])[0],
            "failure_reason": entry.get("failure_reason"),
            "ended_at": entry.get("ended_at"),
        }
        for entry in entries
    ]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("status")
@click.option("--config", "config_value", default="agentfleet.toml", show_default=True)
def status_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    snapshot = runtime.history.latest_snapshot()
    tasks = snapshot.get("tasks", []) if isinstance(snapshot.get("tasks"), list) else []
    counts: dict[str, int] = {}
    for item in tasks:
        status = str(item.get("status", "unknown"))
        counts[status] = counts.get(status, 0) + 1
    payload = {
        "taken_at": snapshot.get("taken_at"),
        "max_concurrent": runtime.config.scheduler.max_concurrent,
        "counts": counts,
        "locks": snapshot.get("locks") or {},
        "lock_queue": snapshot.get("lock_queue") or [],
        "tasks": [
            {
                "number": item.get("number"),
                "id": item.get("id"),
                "status": item.get("status"),
                "queued_reason": item.get("queued_reason") or None,
            }
            for item in tasks
        ],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("limit")
@click.argument("max_concurrent", type=click.IntRange(min=1))
@click.option("--config", "config_value", default="agentfleet.toml", show_default=True)
def limit_command(max_concurrent: int, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.scheduler.max_concurrent = max_concurrent
    save_config(config_path, config)
    click.echo(f"Max concurrent sessions set to {max_concurrent}")
