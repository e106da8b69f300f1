from __future__ import annotations

from waveline.models import Task
from waveline.workers.base import Changes, TddWorker, WorkerContext, changes_from


class ScriptedWorker(TddWorker):
    """Batch executor whose file contents come from each subtask's ``step`` mapping.

    Recognised keys: ``test_files`` (RED), ``code_attempts`` (one mapping per
    GREEN attempt, tried in order) or ``code_files`` (a single attempt),
    ``refactor_files`` and ``expect_failure``.
    """

    name = "scripted"

    async def write_test(self, task: Task, subtask: Task, context: WorkerContext) -> Changes:
        return changes_from(subtask.step.get("test_files"))

    async def write_code(
        self,
        task: Task,
        subtask: Task,
        context: WorkerContext,
        attempt: int,
        failure_output: str,
    ) -> Changes | None:
        attempts = subtask.step.get("code_attempts")
        if not isinstance(attempts, list):
            single = subtask.step.get("code_files")
            attempts = [single] if single else []
        if attempt > len(attempts):
            return None
        return changes_from(attempts[attempt - 1])

    async def refactor(self, task: Task, subtask: Task, context: WorkerContext) -> Changes:
        return changes_from(subtask.step.get("refactor_files"))

    def expected_failure(self, subtask: Task) -> str | None:
        expected = subtask.step.get("expect_failure")
        return str(expected) if expected else None
