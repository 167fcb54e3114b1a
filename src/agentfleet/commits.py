from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from agentfleet.locks import FileLockTable
from agentfleet.tasks import Task, TaskStatus

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    """Raised when a git command exits non-zero."""


@dataclass(slots=True, frozen=True)
class CommitResult:
    ok: bool
    message: str = ""
    commit_hash: str | None = None


def scoped_paths(task: Task) -> list[str]:
    """Files the task wrote, relative to its project; paths outside the project are skipped."""
    root = os.path.normpath(task.project_path).replace("\\", "/")
    relative: list[str] = []
    for path in sorted(task.written_paths):
        candidate = os.path.relpath(path, root).replace("\\", "/")
        if candidate == ".." or candidate.startswith("../") or os.path.isabs(candidate):
            logger.warning("Not committing %s: outside project %s", path, root)
            continue
        relative.append(candidate)
    return relative


def commit_precondition_error(task: Task) -> str | None:
    if task.status != TaskStatus.COMPLETED:
        return f"Task #{task.number} is {task.status.value}, not completed."
    if task.commit_hash:
        return f"Task #{task.number} is already committed as {task.commit_hash[:12]}."
    if task.flags.no_git_write:
        return f"Task #{task.number} ran with git writes disabled."
    if not scoped_paths(task):
        return f"Task #{task.number} modified no files inside its project."
    return None


class TaskCommitter:
    """Commits the files one finished task wrote, and nothing else.

    Commits run one at a time. While a commit runs, the files it covers are
    reserved in the lock table, so no running task can start writing them and
    a file still locked by a live task blocks the commit.
    """

    def __init__(self, locks: FileLockTable, *, git_binary: str = "git") -> None:
        self.locks = locks
        self.git_binary = git_binary
        self._serial = asyncio.Lock()

    async def _run_git(self, cwd: str, args: list[str], input_text: str | None = None) -> str:
        process = await asyncio.create_subprocess_exec(
            self.git_binary,
            "--no-pager",
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate(
            input_text.encode("utf-8") if input_text is not None else None
        )
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() or stdout.decode(
                "utf-8", errors="replace"
            ).strip()
            raise GitCommandError(detail or f"git {args[0]} exited with {process.returncode}")
        return stdout.decode("utf-8", errors="replace")

    async def commit(self, task: Task) -> CommitResult:
        refusal = commit_precondition_error(task)
        if refusal is not None:
            return CommitResult(ok=False, message=refusal)
        paths = scoped_paths(task)
        message = f"Task #{task.number}: {task.summary or task.description.strip()}"

        async def _commit() -> None:
            await self._run_git(task.project_path, ["add", "--", *paths])
            # The pathspec keeps files staged by anyone else out of this commit.
            await self._run_git(
                task.project_path, ["commit", "-F", "-", "--", *paths], input_text=message
            )
            head = await self._run_git(task.project_path, ["rev-parse", "HEAD"])
            task.commit_hash = head.strip()

        async with self._serial:
            ok, error = await self.locks.run_while_no_locks_held(
                _commit, f"commit task #{task.number}", paths=task.modified_files
            )
        if not ok:
            logger.warning("Commit for task %s refused or failed: %s", task.id, error)
            return CommitResult(ok=False, message=error or "commit failed")
        logger.info(
            "Committed task #%d as %s (%d file(s))", task.number, task.commit_hash, len(paths)
        )
        return CommitResult(
            ok=True,
            message=f"Committed {len(paths)} file(s) as {task.commit_hash[:12]}.",
            commit_hash=task.commit_hash,
        )
