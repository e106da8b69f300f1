from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

from waveline.errors import WavelineError


class BackendExecutionError(WavelineError):
    """Raised when an agent backend process fails."""

    default_remediation = "check the agent backend binary and its credentials"

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend call exceeds its timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the backend process cannot be started or read."""


class AgentBackend(ABC):
    def with_event_hook(self, hook: Callable[[dict[str, Any]], None]) -> AgentBackend:
        """Return a backend whose runtime events also reach ``hook``; plain backends emit none."""
        _ = hook
        return self

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run the agent and stream textual chunks."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context):
            chunks.append(chunk)
        return "".join(chunks).strip()
