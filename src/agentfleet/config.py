from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from agentfleet.classifier import DEFAULT_TOKEN_LIMIT_MARKERS
from agentfleet.supervisor import RetryPolicy

BackendName = Literal["claude", "codex"]


@dataclass(slots=True)
class SchedulerConfig:
    max_concurrent: int = 3
    snapshot_interval_seconds: float = 30.0
    auto_recover: bool = False
    auto_commit: bool = False


@dataclass(slots=True)
class RetryConfig:
    token_limit_reduction_factors: list[float] = field(default_factory=lambda: [0.8, 0.6, 0.4, 0.3])
    token_limit_retry_delay_seconds: float = 60.0
    max_consecutive_failures: int = 3
    output_tail_chars: int = 3000
    token_limit_markers: list[str] = field(
        default_factory=lambda: list(DEFAULT_TOKEN_LIMIT_MARKERS)
    )


@dataclass(slots=True)
class IterationConfig:
    default_max_iterations: int = 50
    cooldown_seconds: float = 5.0
    iteration_timeout_seconds: float = 1800.0
    max_runtime_hours: float = 12.0
    output_cap_chars: int = 100_000
    completion_scan_lines: int = 50


@dataclass(slots=True)
class BackendConfig:
    default: BackendName = "claude"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    model: str = ""
    skip_permissions: bool = True


@dataclass(slots=True)
class StateConfig:
    directory: str = ".agentfleet"
    history_retention_hours: float = 168.0
    history_limit: int = 500


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass(slots=True)
class FleetConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    iteration: IterationConfig = field(default_factory=IterationConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> FleetConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FleetConfig:
        return cls(
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            retry=RetryConfig(**data.get("retry", {})),
            iteration=IterationConfig(**data.get("iteration", {})),
            backend=BackendConfig(**data.get("backend", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "scheduler": {
                "max_concurrent": self.scheduler.max_concurrent,
                "snapshot_interval_seconds": self.scheduler.snapshot_interval_seconds,
                "auto_recover": self.scheduler.auto_recover,
                "auto_commit": self.scheduler.auto_commit,
            },
            "retry": {
                "token_limit_reduction_factors": list(self.retry.token_limit_reduction_factors),
                "token_limit_retry_delay_seconds": self.retry.token_limit_retry_delay_seconds,
                "max_consecutive_failures": self.retry.max_consecutive_failures,
                "output_tail_chars": self.retry.output_tail_chars,
                "token_limit_markers": list(self.retry.token_limit_markers),
            },
            "iteration": {
                "default_max_iterations": self.iteration.default_max_iterations,
                "cooldown_seconds": self.iteration.cooldown_seconds,
                "iteration_timeout_seconds": self.iteration.iteration_timeout_seconds,
                "max_runtime_hours": self.iteration.max_runtime_hours,
                "output_cap_chars": self.iteration.output_cap_chars,
                "completion_scan_lines": self.iteration.completion_scan_lines,
            },
            "backend": {
                "default": self.backend.default,
                "claude_binary": self.backend.claude_binary,
                "codex_binary": self.backend.codex_binary,
                "model": self.backend.model,
                "skip_permissions": self.backend.skip_permissions,
            },
            "state": {
                "directory": self.state.directory,
                "history_retention_hours": self.state.history_retention_hours,
                "history_limit": self.state.history_limit,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            reduction_factors=tuple(self.retry.token_limit_reduction_factors),
            retry_delay_seconds=max(0.0, float(self.retry.token_limit_retry_delay_seconds)),
            max_consecutive_failures=max(1, int(self.retry.max_consecutive_failures)),
            token_limit_markers=tuple(self.retry.token_limit_markers),
            tail_chars=max(1, int(self.retry.output_tail_chars)),
            cooldown_seconds=max(0.0, float(self.iteration.cooldown_seconds)),
            iteration_timeout_seconds=max(1.0, float(self.iteration.iteration_timeout_seconds)),
            max_runtime_seconds=max(0.0, float(self.iteration.max_runtime_hours)) * 3600.0,
            output_cap_chars=max(1, int(self.iteration.output_cap_chars)),
            scan_lines=max(1, int(self.iteration.completion_scan_lines)),
        )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FleetConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["scheduler", "retry", "iteration", "backend", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FleetConfig:
    if not path.exists():
        return FleetConfig.default()
    return FleetConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FleetConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
