from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentfleet.stream import StreamParser


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class LaunchRequest:
    prompt: str
    working_directory: str | None = None
    model: str = ""
    skip_permissions: bool = True
    planning: bool = False
    resume_session_id: str | None = None


class AgentBackend(ABC):
    name: str = "agent"

    def __init__(self, binary: str) -> None:
        self.binary = binary

    @abstractmethod
    def build_command(self, request: LaunchRequest) -> list[str]:
        """Command line for one non-interactive run of the agent CLI."""

    @abstractmethod
    def create_parser(self) -> StreamParser:
        """Fresh stateful parser for this backend's event stream."""

    def environment(self, request: LaunchRequest) -> dict[str, str]:
        _ = request
        return {}
