import asyncio
import shutil
import sys

import psutil
import pytest

from agentfleet.backends.base import BackendProcessError
from agentfleet.process import kill_tree, process_tree, spawn_agent_process

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX signals")


def test_spawn_reads_stdout_lines() -> None:
    async def _run():
        process = await spawn_agent_process(
            [sys.executable, "-c", "print('one'); print('two')"]
        )
        lines = [line async for line in process.lines()]
        return lines, await process.wait()

    lines, exit_code = asyncio.run(_run())

    assert [line.strip() for line in lines] == [b"one", b"two"]
    assert exit_code == 0


def test_spawn_passes_environment_and_cwd(tmp_path) -> None:
    async def _run():
        process = await spawn_agent_process(
            [
                sys.executable,
                "-c",
                "import os; print(os.environ['FLEET_MARK']); print(os.getcwd())",
            ],
            cwd=str(tmp_path),
            env={"FLEET_MARK": "marked"},
        )
        lines = [line async for line in process.lines()]
        await process.wait()
        return [line.decode().strip() for line in lines]

    mark, cwd = asyncio.run(_run())

    assert mark == "marked"
    assert cwd == str(tmp_path.resolve())


def test_missing_binary_raises_process_error() -> None:
    with pytest.raises(BackendProcessError) as exc_info:
        asyncio.run(spawn_agent_process(["definitely-not-an-agent-binary-xyz"]))

    assert exc_info.value.retriable is False
    assert "not found" in str(exc_info.value)


@posix_only
def test_suspend_resume_and_kill_tree() -> None:
    sleep = shutil.which("sleep")
    if sleep is None:
        pytest.skip("sleep binary not available")

    async def _run():
        process = await spawn_agent_process([sleep, "30"])
        assert process.is_running

        assert process.suspend() is True
        assert process.suspended is True
        assert process.resume() is True
        assert process.suspended is False

        process.kill_tree()
        exit_code = await asyncio.wait_for(process.wait(), timeout=5)
        return process, exit_code

    process, exit_code = asyncio.run(_run())

    assert exit_code != 0
    assert process.is_running is False
    assert process.suspend() is False


def test_process_tree_of_missing_pid_is_empty() -> None:
    assert process_tree(2**22 + 12345) == []
    assert kill_tree(2**22 + 12345) == 0


def _alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


@posix_only
def test_kill_tree_reaches_orphans_after_root_exits() -> None:
    shell = shutil.which("sh")
    if shell is None:
        pytest.skip("sh not available")

    async def _run():
        process = await spawn_agent_process([shell, "-c", "sleep 30 & echo $!"])
        orphan_pid = None
        async for line in process.lines():
            orphan_pid = int(line.strip())
            break
        for _ in range(100):
            if not process.is_running:
                break
            await asyncio.sleep(0.05)
        assert process.is_running is False
        assert orphan_pid is not None and _alive(orphan_pid)

        process.kill_tree()
        for _ in range(100):
            if not _alive(orphan_pid):
                return True
            await asyncio.sleep(0.05)
        return False

    assert asyncio.run(_run()) is True
