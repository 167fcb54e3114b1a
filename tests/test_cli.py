import json
from pathlib import Path

from click.testing import CliRunner
from fakes import FakeProcess, ScriptedLauncher, claude_result, claude_tool

from agentfleet.cli import cli
from agentfleet.config import load_config

JOBS = """
[[task]]
name = "schema"
prompt = "Add the orders schema"

[[task]]
name = "api"
prompt = "Expose orders over the API"
depends_on = ["schema"]
priority = "high"
flags = { no_git_write = true }
"""


def _launcher(exit_code: int = 0) -> ScriptedLauncher:
    def _script(command: list[str]) -> FakeProcess:
        if exit_code:
            return FakeProcess(["fatal: something broke"], exit_code=exit_code)
        return FakeProcess([claude_tool("Write", "orders.py"), claude_result("Wrote orders.py")])

    return ScriptedLauncher(_script)


def test_init_and_limit_write_config(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--backend", "codex"])
    assert init_result.exit_code == 0
    assert "Backend: codex" in init_result.output
    assert (tmp_path / ".agentfleet").is_dir()

    limit_result = runner.invoke(cli, ["limit", "5"])
    assert limit_result.exit_code == 0
    assert "Max concurrent sessions set to 5" in limit_result.output

    config = load_config(tmp_path / "agentfleet.toml")
    assert config.backend.default == "codex"
    assert config.scheduler.max_concurrent == 5

    rejected = runner.invoke(cli, ["limit", "0"])
    assert rejected.exit_code != 0


def test_run_jobs_then_history_and_status(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    launcher = _launcher()
    monkeypatch.setattr("agentfleet.cli.spawn_agent_process", launcher)
    (tmp_path / "jobs.toml").write_text(JOBS, encoding="utf-8")
    runner = CliRunner()

    run_result = runner.invoke(cli, ["run", "jobs.toml", "--max-concurrent", "1"])
    assert run_result.exit_code == 0, run_result.output
    payload = json.loads(run_result.stdout)

    assert [item["name"] for item in payload] == ["schema", "api"]
    assert [item["status"] for item in payload] == ["completed", "completed"]
    assert payload[0]["modified_files"] == [str((tmp_path / "orders.py").resolve()).lower()]
    api_prompt = launcher.prompts()[1]
    assert "# Dependency context" in api_prompt
    assert "Wrote orders.py" in api_prompt
    assert "# NO GIT WRITES" in api_prompt

    history_result = runner.invoke(cli, ["history", "--limit", "1"])
    assert history_result.exit_code == 0
    history = json.loads(history_result.stdout)
    assert [entry["summary"] for entry in history] == ["Expose orders over the API"]

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.stdout)
    assert status["counts"] == {"completed": 2}
    assert status["locks"] == {}
    assert status["lock_queue"] == []
    assert status["max_concurrent"] == 3


def test_submit_reports_failure_exit_code(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("agentfleet.cli.spawn_agent_process", _launcher(exit_code=2))
    runner = CliRunner()

    result = runner.invoke(cli, ["submit", "Fix the flaky test", "--no-git-write"])

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["status"] == "failed"
    assert payload["failure_reason"] == "process_exit: nonzero_exit"


def test_run_rejects_forward_dependencies(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "jobs.toml").write_text(
        '[[task]]\nname = "a"\nprompt = "x"\ndepends_on = ["b"]\n\n'
        '[[task]]\nname = "b"\nprompt = "y"\n',
        encoding="utf-8",
    )

    result = CliRunner().invoke(cli, ["run", "jobs.toml"])

    assert result.exit_code != 0
    assert "unknown or later" in result.output


def test_history_when_empty(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["history"])

    assert result.exit_code == 0
    assert "No finished tasks recorded." in result.output


def test_run_reports_recovery_tasks_when_enabled(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    launcher = _launcher(exit_code=1)
    monkeypatch.setattr("agentfleet.cli.spawn_agent_process", launcher)
    (tmp_path / "agentfleet.toml").write_text("[scheduler]\nauto_recover = true\n", "utf-8")
    (tmp_path / "jobs.toml").write_text(
        '[[task]]\nname = "schema"\nprompt = "Add the orders schema"\n', encoding="utf-8"
    )

    result = CliRunner().invoke(cli, ["run", "jobs.toml"])

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert [item["name"] for item in payload] == ["schema", "schema:recovery"]
    assert [item["status"] for item in payload] == ["failed", "failed"]
    assert payload[1]["commit_hash"] is None
    assert "fatal: something broke" in launcher.prompts()[1]
