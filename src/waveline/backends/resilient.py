from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from waveline.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


class ResilientBackend(AgentBackend):
    """Wraps an ordered list of backends with timeout, retry and failover."""

    def __init__(
        self,
        backends: Sequence[tuple[str, AgentBackend]],
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if not backends:
            raise ValueError("ResilientBackend needs at least one backend.")
        self.backends = list(backends)
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def with_event_hook(self, hook: BackendEventHook) -> ResilientBackend:
        """Share backends and policy with a copy that also reports to ``hook``."""
        parent = self.event_hook

        def _both(event: dict[str, Any]) -> None:
            if parent:
                parent(event)
            hook(event)

        return ResilientBackend(self.backends, self.retry_policy, event_hook=_both)

    @property
    def primary_name(self) -> str:
        return self.backends[0][0]

    def _emit(self, event: str, backend_name: str, attempt: int, **fields: Any) -> None:
        payload = {"event": event, "backend": backend_name, "attempt": attempt, **fields}
        logger.debug("backend event: %s", payload)
        if self.event_hook:
            self.event_hook(payload)

    async def _collect_chunks(
        self,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def _execute_attempts(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        errors: list[str] = []
        for backend_name, backend in self.backends:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit("backend_retry", backend_name, attempt, delay_seconds=delay)
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._collect_chunks(
                        backend,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        context=context,
                    )
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc.message}")
                    self._emit(
                        "backend_attempt_failed",
                        backend_name,
                        attempt,
                        error=exc.message,
                        retriable=exc.retriable,
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit("backend_fallback_success", backend_name, attempt)
                return chunks

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(f"All backend attempts failed. {summary}", retriable=False)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        chunks = await self._execute_attempts(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            context=context,
        )
        for chunk in chunks:
            yield chunk
