from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

from waveline.backends.base import AgentBackend, BackendExecutionError, BackendProcessError


class StreamDecoder:
    """Turns ``stream-json`` lines into text, rejoining events split across lines.

    Lines that are not JSON at all are passed through as text.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, line: str) -> str:
        if not line:
            return ""
        candidate = self._pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if candidate.count("{") > candidate.count("}"):
                self._pending = candidate
                return ""
            self._pending = ""
            return line
        self._pending = ""
        return event_text(event) if isinstance(event, dict) else ""

    def flush(self) -> str:
        pending, self._pending = self._pending, ""
        return pending


def event_text(event: dict[str, Any]) -> str:
    if event.get("type") == "result":
        # the final result repeats the assistant text already streamed
        return ""
    message = event.get("message")
    content = message.get("content") if isinstance(message, dict) else event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    return delta if isinstance(delta, str) else ""


class ClaudeCodeBackend(AgentBackend):
    """Runs ``claude -p`` inside the worker's output tree.

    The worker's role goes in through ``--append-system-prompt`` and the agent
    may only use ``allowed_tools``, so it edits files but never commits.
    """

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str = "",
        allowed_tools: Sequence[str] = (),
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model
        self.allowed_tools = list(allowed_tools)

    def build_command(self, user_prompt: str, system_prompt: str = "") -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command += ["--append-system-prompt", system_prompt]
        if self.model:
            command += ["--model", self.model]
        if self.allowed_tools:
            command += ["--allowedTools", ",".join(self.allowed_tools)]
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        if context:
            rendered = json.dumps(context, ensure_ascii=False, indent=2)
            user_prompt = f"{user_prompt}\n\nTask context:\n{rendered}"
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(user_prompt, system_prompt),
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"agent binary not found: {self.binary}", backend=self.name, retriable=False
            ) from exc
        if process.stdout is None or process.stderr is None:
            raise BackendProcessError(
                "agent process has no output pipes", backend=self.name, retriable=False
            )

        stderr_task = asyncio.ensure_future(process.stderr.read())
        decoder = StreamDecoder()
        try:
            async for raw_line in process.stdout:
                text = decoder.feed(raw_line.decode("utf-8", errors="replace").strip())
                if text:
                    yield text
            leftover = decoder.flush()
            if leftover:
                yield leftover
            return_code = await process.wait()
        except asyncio.CancelledError:
            process.kill()
            stderr_task.cancel()
            raise

        stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.binary} exited with {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
            )
