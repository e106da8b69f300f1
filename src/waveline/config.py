from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

PartialWavePolicy = Literal["block", "allow"]
WorkspaceBackendName = Literal["git", "local"]
WorkerKind = Literal["scripted", "agent"]

CONFIG_FILENAME = "waveline.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "python -m pytest -q"
    source_dirs: list[str] = field(default_factory=lambda: ["src", "lib", "app", "."])
    specs_dir: str = "specs"


@dataclass(slots=True)
class ExecutionConfig:
    max_concurrent_workers: int = 4
    max_subtask_attempts: int = 3
    partial_wave_policy: PartialWavePolicy = "block"
    command_timeout_seconds: float = 600.0


@dataclass(slots=True)
class ReviewConfig:
    per_wave: bool = True
    poll_interval_seconds: float = 120.0
    max_poll_duration_seconds: float = 1800.0


@dataclass(slots=True)
class StoreConfig:
    state_dir: str = ".waveline/state"
    snapshot_count: int = 5
    session_ttl_seconds: float = 3600.0


@dataclass(slots=True)
class WorkspaceConfig:
    backend: WorkspaceBackendName = "git"
    base_branch: str = "main"
    protected_branches: list[str] = field(default_factory=lambda: ["main", "master"])
    branch_prefix: str = "feature"


@dataclass(slots=True)
class BackendConfig:
    binary: str = "claude"
    model: str = ""
    allowed_tools: list[str] = field(default_factory=lambda: ["Read", "Write", "Edit"])
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class WorkerConfig:
    kind: WorkerKind = "scripted"


@dataclass(slots=True)
class WavelineConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)

    @classmethod
    def default(cls) -> WavelineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WavelineConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            review=ReviewConfig(**data.get("review", {})),
            store=StoreConfig(**data.get("store", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            backend=BackendConfig(**data.get("backend", {})),
            worker=WorkerConfig(**data.get("worker", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "source_dirs": list(self.project.source_dirs),
                "specs_dir": self.project.specs_dir,
            },
            "execution": {
                "max_concurrent_workers": self.execution.max_concurrent_workers,
                "max_subtask_attempts": self.execution.max_subtask_attempts,
                "partial_wave_policy": self.execution.partial_wave_policy,
                "command_timeout_seconds": self.execution.command_timeout_seconds,
            },
            "review": {
                "per_wave": self.review.per_wave,
                "poll_interval_seconds": self.review.poll_interval_seconds,
                "max_poll_duration_seconds": self.review.max_poll_duration_seconds,
            },
            "store": {
                "state_dir": self.store.state_dir,
                "snapshot_count": self.store.snapshot_count,
                "session_ttl_seconds": self.store.session_ttl_seconds,
            },
            "workspace": {
                "backend": self.workspace.backend,
                "base_branch": self.workspace.base_branch,
                "protected_branches": list(self.workspace.protected_branches),
                "branch_prefix": self.workspace.branch_prefix,
            },
            "backend": {
                "binary": self.backend.binary,
                "model": self.backend.model,
                "allowed_tools": list(self.backend.allowed_tools),
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "worker": {
                "kind": self.worker.kind,
            },
        }

    def state_path(self, repo_root: Path) -> Path:
        state_dir = Path(self.store.state_dir)
        if not state_dir.is_absolute():
            state_dir = repo_root / state_dir
        return state_dir


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WavelineConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "execution", "review", "store", "workspace", "backend", "worker"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WavelineConfig:
    if not path.exists():
        return WavelineConfig.default()
    return WavelineConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: WavelineConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
