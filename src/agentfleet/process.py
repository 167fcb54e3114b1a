from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol

import psutil

from agentfleet.backends.base import BackendProcessError

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


class ProcessHandle(Protocol):
    pid: int | None

    @property
    def is_running(self) -> bool: ...

    def lines(self) -> AsyncIterator[bytes]: ...

    def error_lines(self) -> AsyncIterator[bytes]: ...

    def suspend(self) -> bool: ...

    def resume(self) -> bool: ...

    def kill_tree(self) -> None: ...

    async def wait(self) -> int: ...


ProcessLauncher = Callable[[list[str], str | None, dict[str, str] | None], Awaitable[ProcessHandle]]


def process_tree(pid: int) -> list[psutil.Process]:
    """The process and all its descendants, parent first."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []
    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    return [parent, *children]


def suspend_tree(pid: int) -> bool:
    suspended = False
    for proc in process_tree(pid):
        try:
            proc.suspend()
            suspended = True
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            logger.debug("Could not suspend pid %s: %s", proc.pid, exc)
    return suspended


def resume_tree(pid: int) -> bool:
    resumed = False
    for proc in process_tree(pid):
        try:
            proc.resume()
            resumed = True
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            logger.debug("Could not resume pid %s: %s", proc.pid, exc)
    return resumed


def kill_tree(pid: int) -> int:
    """Kill descendants first, then the root; returns how many were signalled."""
    tree = process_tree(pid)
    killed = 0
    for proc in reversed(tree):
        try:
            proc.kill()
            killed += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            logger.debug("Could not kill pid %s: %s", proc.pid, exc)
    return killed


def kill_process_group(pgid: int) -> bool:
    """SIGKILL the whole process group ``pgid``, including members whose parent is gone."""
    if os.name != "posix":
        return False
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError) as exc:
        logger.debug("Could not kill process group %s: %s", pgid, exc)
        return False
    return True


class AgentProcess:
    """A spawned agent CLI with stdout/stderr pipes."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: list[str],
        *,
        own_group: bool = False,
    ) -> None:
        self._process = process
        self.own_group = own_group
        self.command = command
        self.pid: int | None = process.pid
        self.suspended = False

    @property
    def is_running(self) -> bool:
        return self._process.returncode is None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def lines(self) -> AsyncIterator[bytes]:
        if self._process.stdout is None:
            return
        async for raw_line in self._process.stdout:
            yield raw_line

    async def error_lines(self) -> AsyncIterator[bytes]:
        if self._process.stderr is None:
            return
        async for raw_line in self._process.stderr:
            yield raw_line

    def suspend(self) -> bool:
        if not self.is_running or self.pid is None:
            return False
        self.suspended = suspend_tree(self.pid)
        return self.suspended

    def resume(self) -> bool:
        if not self.is_running or self.pid is None:
            return False
        resumed = resume_tree(self.pid)
        self.suspended = False
        return resumed

    def kill_tree(self) -> None:
        if self.pid is None:
            return
        if self.is_running:
            if self.suspended:
                self.resume()
            kill_tree(self.pid)
        if self.own_group:
            # Descendants orphaned by an exited root are no longer its children
            # but stay in the session's process group.
            kill_process_group(self.pid)

    async def wait(self) -> int:
        return await self._process.wait()


async def spawn_agent_process(
    command: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> AgentProcess:
    run_env = os.environ.copy()
    if env:
        run_env.update(env)
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=run_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
            start_new_session=os.name == "posix",
        )
    except FileNotFoundError as exc:
        raise BackendProcessError(
            f"Agent binary not found: {command[0]}",
            backend=command[0],
            retriable=False,
        ) from exc
    except OSError as exc:
        raise BackendProcessError(
            f"Could not start {command[0]}: {exc}",
            backend=command[0],
            retriable=False,
        ) from exc
    logger.debug("Spawned pid %s: %s", process.pid, command[0])
    return AgentProcess(process, command, own_group=os.name == "posix")
