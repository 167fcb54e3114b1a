import pytest

from agentfleet.backends import (
    BackendExecutionError,
    ClaudeCodeBackend,
    CodexBackend,
    LaunchRequest,
    create_backend,
)
from agentfleet.stream import ClaudeStreamParser, CodexStreamParser


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude")
    command = backend.build_command(
        LaunchRequest(prompt="implement feature", model="sonnet", resume_session_id="sess-1")
    )

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert command[command.index("--output-format") + 1] == "stream-json"
    assert "--verbose" in command
    assert "--dangerously-skip-permissions" in command
    assert command[command.index("--resume") + 1] == "sess-1"
    assert command[command.index("--model") + 1] == "sonnet"
    assert backend.environment(LaunchRequest(prompt="x")) == {"NO_COLOR": "1"}
    assert isinstance(backend.create_parser(), ClaudeStreamParser)


def test_claude_planning_run_uses_plan_mode() -> None:
    command = ClaudeCodeBackend().build_command(LaunchRequest(prompt="plan", planning=True))

    assert command[command.index("--permission-mode") + 1] == "plan"
    assert "--dangerously-skip-permissions" not in command
    assert "--resume" not in command
    assert "--model" not in command


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex")
    command = backend.build_command(
        LaunchRequest(prompt="implement feature", model="gpt-5-codex", resume_session_id="t-1")
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--output-format" not in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert command[command.index("resume") + 1] == "t-1"
    assert command[-1] == "implement feature"
    assert isinstance(backend.create_parser(), CodexStreamParser)


def test_codex_sandbox_modes() -> None:
    backend = CodexBackend()

    planning = backend.build_command(LaunchRequest(prompt="p", planning=True))
    guarded = backend.build_command(LaunchRequest(prompt="p", skip_permissions=False))

    assert planning[planning.index("--sandbox") + 1] == "read-only"
    assert "--full-auto" in guarded
    assert "--dangerously-bypass-approvals-and-sandbox" not in guarded


def test_create_backend_by_name() -> None:
    assert create_backend("claude").binary == "claude"
    assert create_backend("codex", "/opt/bin/codex").binary == "/opt/bin/codex"

    with pytest.raises(BackendExecutionError) as exc_info:
        create_backend("gemini")
    assert exc_info.value.retriable is False
    assert exc_info.value.backend == "gemini"
