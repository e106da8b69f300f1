from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from waveline.backends import AgentBackend
from waveline.models import Task
from waveline.verification import SKIPPED_DIRS
from waveline.workers.base import Changes, TddWorker, WorkerContext

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You are a test-driven engineer working inside an existing repository.
Change only what the current step asks for and keep the change minimal.
Edit files directly in the working directory; do not commit.
""".strip()


def _tree_contents(root: Path) -> dict[str, bytes]:
    contents: dict[str, bytes] = {}
    for path in root.rglob("*"):
        if not path.is_file():
            continue
        relative = path.relative_to(root)
        if any(part in SKIPPED_DIRS for part in relative.parts):
            continue
        try:
            contents[relative.as_posix()] = path.read_bytes()
        except OSError:
            continue
    return contents


class AgentWorker(TddWorker):
    """Lets an agent backend write each step; the gates and commits stay the same."""

    name = "agent"

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend

    def _step_context(self, task: Task, subtask: Task, context: WorkerContext) -> dict[str, Any]:
        return {
            "spec_id": context.spec_id,
            "task": {"id": task.id, "description": task.description},
            "subtask": {"id": subtask.id, "description": subtask.description},
            "produces": task.produces_hint.to_dict(),
            "available_artifacts": context.verified.to_list(),
            "test_command": context.config.project.test_command,
        }

    async def _run_step(
        self,
        instruction: str,
        task: Task,
        subtask: Task,
        context: WorkerContext,
        extra: dict[str, Any] | None = None,
    ) -> Changes:
        root = context.descriptor.root
        before = _tree_contents(root)
        step_context = self._step_context(task, subtask, context)
        if extra:
            step_context.update(extra)
        backend = self.backend.with_event_hook(context.events.append)
        response = await backend.complete(SYSTEM_PROMPT, instruction, step_context)
        logger.debug("Agent response for %s: %s", subtask.id, response[:200])
        after = _tree_contents(root)
        changed = sorted(path for path, data in after.items() if before.get(path) != data)
        if context.journal is not None:
            for path in changed:
                context.journal.remember_content(path, before.get(path))
            for path in before.keys() - after.keys():
                context.journal.remember_content(path, before[path])
        return {path: after[path].decode("utf-8", errors="replace") for path in changed}

    async def write_test(self, task: Task, subtask: Task, context: WorkerContext) -> Changes:
        return await self._run_step(
            "Write one failing test for this step. Do not write any implementation code.",
            task,
            subtask,
            context,
        )

    async def write_code(
        self,
        task: Task,
        subtask: Task,
        context: WorkerContext,
        attempt: int,
        failure_output: str,
    ) -> Changes | None:
        changes = await self._run_step(
            "Write the minimal code that makes the failing test pass without breaking other tests.",
            task,
            subtask,
            context,
            {"attempt": attempt, "failing_output": failure_output[-4000:]},
        )
        return changes or None

    async def refactor(self, task: Task, subtask: Task, context: WorkerContext) -> Changes:
        return await self._run_step(
            "Tidy the code you just wrote if it needs it. Leave behaviour unchanged; "
            "if nothing needs cleaning up, change nothing.",
            task,
            subtask,
            context,
        )
