from __future__ import annotations

from agentfleet.backends.base import AgentBackend, LaunchRequest
from agentfleet.stream import CodexStreamParser


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex") -> None:
        super().__init__(binary)

    def build_command(self, request: LaunchRequest) -> list[str]:
        command = [self.binary, "exec", "--json", "--skip-git-repo-check"]
        if request.planning:
            command.extend(["--sandbox", "read-only"])
        elif request.skip_permissions:
            command.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            command.append("--full-auto")
        if request.model.strip():
            command.extend(["-m", request.model.strip()])
        if request.resume_session_id:
            command.extend(["resume", request.resume_session_id])
        command.append(request.prompt)
        return command

    def create_parser(self) -> CodexStreamParser:
        return CodexStreamParser()
