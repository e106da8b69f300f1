from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from waveline.backends import ClaudeCodeBackend, ResilientBackend, RetryPolicy
from waveline.config import WavelineConfig
from waveline.workers.agent import AgentWorker
from waveline.workers.base import SuiteRun, TddWorker, Worker, WorkerContext
from waveline.workers.scripted import ScriptedWorker


def build_worker(
    config: WavelineConfig,
    repo_root: Path,
    event_hook: Callable[[dict[str, Any]], None] | None = None,
) -> Worker:
    if config.worker.kind == "agent":
        settings = config.backend
        backend = ResilientBackend(
            [
                (
                    "claude",
                    ClaudeCodeBackend(
                        settings.binary,
                        working_directory=repo_root,
                        model=settings.model,
                        allowed_tools=settings.allowed_tools,
                    ),
                )
            ],
            RetryPolicy(
                max_retries=settings.max_retries,
                backoff_seconds=settings.retry_backoff_seconds,
                timeout_seconds=settings.timeout_seconds,
            ),
            event_hook=event_hook,
        )
        return AgentWorker(backend)
    return ScriptedWorker()


__all__ = [
    "AgentWorker",
    "ScriptedWorker",
    "SuiteRun",
    "TddWorker",
    "Worker",
    "WorkerContext",
    "build_worker",
]
