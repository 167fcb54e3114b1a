from __future__ import annotations

from agentfleet.backends.base import AgentBackend, LaunchRequest
from agentfleet.stream import ClaudeStreamParser


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude") -> None:
        super().__init__(binary)

    def build_command(self, request: LaunchRequest) -> list[str]:
        command = [self.binary, "-p", request.prompt, "--output-format", "stream-json", "--verbose"]
        if request.planning:
            command.extend(["--permission-mode", "plan"])
        elif request.skip_permissions:
            command.append("--dangerously-skip-permissions")
        if request.resume_session_id:
            command.extend(["--resume", request.resume_session_id])
        if request.model.strip():
            command.extend(["--model", request.model.strip()])
        return command

    def create_parser(self) -> ClaudeStreamParser:
        return ClaudeStreamParser()

    def environment(self, request: LaunchRequest) -> dict[str, str]:
        _ = request
        return {"NO_COLOR": "1"}
