from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from waveline.config import WavelineConfig
from waveline.models import (
    ArtifactClaim,
    ArtifactKind,
    ProducesHint,
    Task,
    TaskStatus,
    VerifiedArtifactSet,
    WorkerResult,
    WorkerStatus,
)
from waveline.verification import PYTHON_SUFFIXES, SCRIPT_SUFFIXES, ArtifactVerifier
from waveline.workspace import Workspace, WorkspaceDescriptor

logger = logging.getLogger(__name__)

Changes = dict[str, str]


@dataclass(slots=True)
class TreeJournal:
    """Content each path had before a cycle touched it; None means it did not exist."""

    root: Path
    prior: dict[str, bytes | None] = field(default_factory=dict)

    def remember(self, relative: str) -> None:
        if relative in self.prior:
            return
        target = self.root / relative
        self.prior[relative] = target.read_bytes() if target.is_file() else None

    def remember_content(self, relative: str, content: bytes | None) -> None:
        self.prior.setdefault(relative, content)

    def absorb(self, other: TreeJournal) -> None:
        for relative, content in other.prior.items():
            self.prior.setdefault(relative, content)

    def restore(self) -> list[str]:
        restored = sorted(self.prior)
        for relative in restored:
            content = self.prior[relative]
            target = self.root / relative
            if content is None:
                target.unlink(missing_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
        self.prior.clear()
        return restored


@dataclass(slots=True)
class WorkerContext:
    """Everything one worker may use for one task; workers never touch the store."""

    spec_id: str
    workspace: Workspace
    descriptor: WorkspaceDescriptor
    verifier: ArtifactVerifier
    verified: VerifiedArtifactSet
    config: WavelineConfig
    subtasks: list[Task] = field(default_factory=list)
    tree_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    journal: TreeJournal | None = None
    events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def completed_subtasks(self) -> set[str]:
        return {task.id for task in self.subtasks if task.status == TaskStatus.COMPLETED}


@dataclass(slots=True)
class SuiteRun:
    passed: bool
    output: str
    exit_code: int | None


@dataclass(slots=True)
class CycleOutcome:
    ok: bool
    commit: str | None = None
    files: list[str] = field(default_factory=list)
    reason: str | None = None


class Worker(ABC):
    name = "worker"

    @abstractmethod
    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        """Run one task and report what it produced."""


class TddWorker(Worker):
    """Template for the test-first worker contract.

    Subclasses decide what gets written at each step; the order of the steps,
    the test runs that gate them, and the one-commit-per-subtask rule live
    here and are the same for every strategy.
    """

    name = "tdd"

    @abstractmethod
    async def write_test(self, task: Task, subtask: Task, context: WorkerContext) -> Changes:
        """Return the failing test files for ``subtask``."""

    @abstractmethod
    async def write_code(
        self,
        task: Task,
        subtask: Task,
        context: WorkerContext,
        attempt: int,
        failure_output: str,
    ) -> Changes | None:
        """Return code changes for one GREEN attempt, or None when out of ideas."""

    async def refactor(self, task: Task, subtask: Task, context: WorkerContext) -> Changes:
        return {}

    def expected_failure(self, subtask: Task) -> str | None:
        return None

    async def run_tests(self, context: WorkerContext) -> SuiteRun:
        command = context.config.project.test_command
        timeout = context.config.execution.command_timeout_seconds
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(context.descriptor.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return SuiteRun(
                passed=False,
                output=f"test command timed out after {timeout:.0f}s",
                exit_code=None,
            )
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return SuiteRun(passed=process.returncode == 0, output=output, exit_code=process.returncode)

    def missing_predecessor(self, task: Task, context: WorkerContext) -> str | None:
        """Return the first inherited artifact that is absent or no longer verifiable."""
        required: list[str] = list(task.requires)
        for subtask in context.subtasks:
            required.extend(item for item in subtask.requires if item not in required)
        for identifier in required:
            claim = context.verified.find(identifier)
            if claim is None or not context.verifier.verify_claim(claim):
                return identifier
        return None

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        if context.descriptor.protected:
            return WorkerResult(
                task_id=task.id,
                status=WorkerStatus.BLOCKED,
                blocker=f"workspace branch {context.descriptor.branch} is the protected trunk",
            )
        missing = self.missing_predecessor(task, context)
        if missing is not None:
            logger.info("Task %s blocked on missing artifact %s", task.id, missing)
            return WorkerResult(
                task_id=task.id,
                status=WorkerStatus.BLOCKED,
                blocker=f"missing predecessor artifact: {missing}",
            )

        steps = context.subtasks or [task]
        done = context.completed_subtasks
        commits: list[str] = []
        touched: list[str] = []
        statuses: dict[str, TaskStatus] = {}

        for subtask in steps:
            if subtask is not task and subtask.id in done:
                statuses[subtask.id] = TaskStatus.COMPLETED
                continue
            async with context.tree_lock:
                outcome = await self._cycle(task, subtask, context)
            if outcome.commit:
                commits.append(outcome.commit)
            if not outcome.ok:
                if subtask is not task:
                    statuses[subtask.id] = TaskStatus.FAILED
                logger.warning("Task %s failed at %s: %s", task.id, subtask.id, outcome.reason)
                return WorkerResult(
                    task_id=task.id,
                    status=WorkerStatus.FAIL,
                    commits=commits,
                    blocker=outcome.reason,
                    failed_subtask=subtask.id,
                    subtask_statuses=statuses,
                )
            touched.extend(path for path in outcome.files if path not in touched)
            if subtask is not task:
                statuses[subtask.id] = TaskStatus.COMPLETED

        return WorkerResult(
            task_id=task.id,
            status=WorkerStatus.PASS,
            claims=self.assemble_claims(task, touched, context),
            commits=commits,
            subtask_statuses=statuses,
        )

    async def _cycle(self, task: Task, subtask: Task, context: WorkerContext) -> CycleOutcome:
        """Run RED/GREEN/REFACTOR for one subtask; a failed cycle leaves the tree as it was."""
        journal = TreeJournal(context.descriptor.root)
        context.journal = journal
        try:
            outcome = await self._red_green_refactor(task, subtask, context, journal)
        except BaseException:
            journal.restore()
            raise
        finally:
            context.journal = None
        if not outcome.ok:
            restored = journal.restore()
            logger.info("Rolled back %d path(s) after %s failed", len(restored), subtask.id)
        return outcome

    @staticmethod
    def _write(context: WorkerContext, changes: Changes, journal: TreeJournal) -> None:
        for path in changes:
            journal.remember(path)
        context.workspace.write_changes(changes)

    async def _red_green_refactor(
        self, task: Task, subtask: Task, context: WorkerContext, journal: TreeJournal
    ) -> CycleOutcome:
        content: Changes = {}

        # RED
        test_changes = await self.write_test(task, subtask, context)
        if not test_changes:
            return CycleOutcome(ok=False, reason=f"no failing test was written for {subtask.id}")
        self._write(context, test_changes, journal)
        content.update(test_changes)
        red = await self.run_tests(context)
        if red.passed:
            return CycleOutcome(
                ok=False, reason=f"test for {subtask.id} passed before any code was written"
            )
        expected = self.expected_failure(subtask)
        if expected and expected not in red.output:
            return CycleOutcome(
                ok=False,
                reason=f"test for {subtask.id} failed without the expected {expected!r}",
            )

        # GREEN
        failure_output = red.output
        green = False
        max_attempts = max(1, context.config.execution.max_subtask_attempts)
        for attempt in range(1, max_attempts + 1):
            code_changes = await self.write_code(task, subtask, context, attempt, failure_output)
            if code_changes is None:
                break
            self._write(context, code_changes, journal)
            content.update(code_changes)
            run = await self.run_tests(context)
            if run.passed:
                green = True
                break
            failure_output = run.output
            logger.debug("Subtask %s attempt %d still red", subtask.id, attempt)
        if not green:
            return CycleOutcome(
                ok=False,
                reason=f"subtask {subtask.id} did not reach green after {max_attempts} attempts",
            )

        # REFACTOR
        refactor_journal = TreeJournal(context.descriptor.root)
        context.journal = refactor_journal
        try:
            refactor_changes = await self.refactor(task, subtask, context)
        except BaseException:
            refactor_journal.restore()
            raise
        finally:
            context.journal = journal
        if refactor_changes:
            self._write(context, refactor_changes, refactor_journal)
            run = await self.run_tests(context)
            if run.passed:
                content.update(refactor_changes)
                journal.absorb(refactor_journal)
            else:
                logger.warning("Refactor of %s broke the suite; keeping green code", subtask.id)
                refactor_journal.restore()
        else:
            # undo deletions an agent made without reporting any change
            refactor_journal.restore()

        title = subtask.description.splitlines()[0] if subtask.description else subtask.id
        commit = context.workspace.commit(
            context.descriptor.branch, content, f"{subtask.id}: {title}".strip()
        )
        return CycleOutcome(ok=True, commit=commit, files=sorted(content))

    def assemble_claims(
        self, task: Task, touched: list[str], context: WorkerContext
    ) -> list[ArtifactClaim]:
        claims: list[ArtifactClaim] = []
        seen: set[tuple[str, str, str | None]] = set()

        def _add(claim: ArtifactClaim) -> None:
            if claim.key not in seen:
                seen.add(claim.key)
                claims.append(claim)

        hint: ProducesHint = task.produces_hint
        for path in [*touched, *hint.files]:
            _add(ArtifactClaim(ArtifactKind.FILE, path, task.id))
        for export in hint.exports:
            path, name = ProducesHint.split_export(export)
            _add(ArtifactClaim(ArtifactKind.EXPORTED_SYMBOL, name, task.id, path=path))

        for path in touched:
            if Path(path).suffix not in PYTHON_SUFFIXES | SCRIPT_SUFFIXES:
                continue
            if Path(path).name.startswith("test") or "tests" in Path(path).parts:
                continue
            exports = context.verifier.module_exports(context.descriptor.root / path)
            if exports is None:
                continue
            for name in sorted(exports.exported):
                if name in exports.functions:
                    kind = ArtifactKind.FUNCTION
                else:
                    kind = ArtifactKind.EXPORTED_SYMBOL
                _add(ArtifactClaim(kind, name, task.id, path=path))
        return claims


def changes_from(mapping: object) -> Changes:
    if not isinstance(mapping, Mapping):
        return {}
    return {str(path): str(text) for path, text in mapping.items()}
