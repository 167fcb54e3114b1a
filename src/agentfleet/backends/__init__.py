from agentfleet.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    LaunchRequest,
)
from agentfleet.backends.claude import ClaudeCodeBackend
from agentfleet.backends.codex import CodexBackend

BACKENDS: dict[str, type[AgentBackend]] = {
    "claude": ClaudeCodeBackend,
    "codex": CodexBackend,
}


def create_backend(name: str, binary: str | None = None) -> AgentBackend:
    try:
        backend_cls = BACKENDS[name]
    except KeyError as exc:
        raise BackendExecutionError(
            f"Unknown backend: {name}", backend=name, retriable=False
        ) from exc
    return backend_cls(binary) if binary else backend_cls()


__all__ = [
    "BACKENDS",
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "LaunchRequest",
    "create_backend",
]
