from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from waveline.config import WavelineConfig
from waveline.errors import InvalidTransition, PlanningError, UnverifiedArtifact, WorkerFailure
from waveline.graph import TaskGraph
from waveline.models import (
    ArtifactClaim,
    Task,
    TaskStatus,
    VerifiedArtifactSet,
    WaveOutcome,
    WorkerResult,
    WorkerStatus,
    task_status_for,
)
from waveline.planner import wave_of
from waveline.state import TaskStore, Transaction, add_verified, append_event, put_task
from waveline.verification import ArtifactVerifier
from waveline.workers import Worker, WorkerContext
from waveline.workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WaveReport:
    wave_id: int
    outcome: WaveOutcome
    results: list[WorkerResult] = field(default_factory=list)
    verified: list[ArtifactClaim] = field(default_factory=list)
    warnings: list[UnverifiedArtifact] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def count(self, status: WorkerStatus) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def failed_tasks(self) -> list[str]:
        return [r.task_id for r in self.results if r.status != WorkerStatus.PASS]

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave_id": self.wave_id,
            "outcome": str(self.outcome),
            "results": [result.to_dict() for result in self.results],
            "verified": [claim.to_dict() for claim in self.verified],
            "warnings": [warning.to_dict() for warning in self.warnings],
            "skipped": list(self.skipped),
        }


def wave_outcome(results: list[WorkerResult]) -> WaveOutcome:
    if all(result.status == WorkerStatus.PASS for result in results):
        return WaveOutcome.COMPLETE
    if all(result.status == WorkerStatus.BLOCKED for result in results):
        return WaveOutcome.BLOCKED
    return WaveOutcome.PARTIAL


class WaveCoordinator:
    """Runs one wave behind a barrier and commits its results as one transaction."""

    def __init__(
        self,
        store: TaskStore,
        worker: Worker,
        verifier: ArtifactVerifier,
        config: WavelineConfig,
    ) -> None:
        self.store = store
        self.worker = worker
        self.verifier = verifier
        self.config = config

    def _check_earlier_waves(self, graph: TaskGraph, spec_id: str, wave_id: int) -> None:
        for wave in self.store.load_waves(spec_id):
            if wave.wave_id >= wave_id:
                continue
            for task_id in wave.task_ids:
                if task_id in graph and graph.status_of(task_id) == TaskStatus.IN_PROGRESS:
                    raise InvalidTransition(
                        f"wave {wave_id} cannot start while task {task_id} of wave "
                        f"{wave.wave_id} is still in progress",
                        task_id=task_id,
                        wave=wave.wave_id,
                        remediation=f"run advance --retry to reset wave {wave.wave_id}",
                    )

    @staticmethod
    def _family(graph: TaskGraph, task_id: str) -> list[Task]:
        return [graph.get(task_id), *graph.children(task_id)]

    async def run_wave(
        self,
        spec_id: str,
        wave_id: int,
        *,
        workspace: Workspace,
        branch: str,
    ) -> WaveReport:
        waves = self.store.load_waves(spec_id)
        wave = wave_of(waves, wave_id)
        if wave is None:
            raise PlanningError(f"spec {spec_id} has no wave {wave_id}", wave=wave_id)
        graph, _state = self.store.load(spec_id)
        self._check_earlier_waves(graph, spec_id, wave_id)

        runnable = [
            task_id
            for task_id in wave.task_ids
            if graph.status_of(task_id) != TaskStatus.COMPLETED
        ]
        skipped = [task_id for task_id in wave.task_ids if task_id not in runnable]
        if not runnable:
            logger.info("Wave %d of %s has nothing left to run", wave_id, spec_id)
            return WaveReport(wave_id=wave_id, outcome=WaveOutcome.COMPLETE, skipped=skipped)

        started: Transaction = []
        for task_id in runnable:
            graph.update_status(task_id, TaskStatus.IN_PROGRESS)
            started.extend(put_task(item) for item in self._family(graph, task_id))
        started.append(append_event("wave_started", wave=wave_id, tasks=runnable))
        self.store.apply(spec_id, started)

        document = self.store.load_document(spec_id)
        inherited = VerifiedArtifactSet.from_list(document.get("verified"))
        descriptor = workspace.descriptor(branch)
        tree_lock = asyncio.Lock()
        limit = self.config.execution.max_concurrent_workers if wave.can_parallelize else 1
        semaphore = asyncio.Semaphore(max(1, limit))
        if not wave.can_parallelize:
            logger.info("Wave %d has overlapping targets; running its tasks one by one", wave_id)

        contexts: dict[str, WorkerContext] = {}

        async def _run(task_id: str) -> WorkerResult:
            task = graph.get(task_id)
            context = contexts[task_id] = WorkerContext(
                spec_id=spec_id,
                workspace=workspace,
                descriptor=descriptor,
                verifier=self.verifier,
                verified=VerifiedArtifactSet(inherited),
                config=self.config,
                subtasks=graph.children(task_id),
                tree_lock=tree_lock,
            )
            async with semaphore:
                try:
                    return await self.worker.execute(task, context)
                except Exception as exc:
                    failure = WorkerFailure(
                        f"worker raised {type(exc).__name__}: {exc}", task_id=task_id, wave=wave_id
                    )
                    logger.exception("Worker crashed on task %s", task_id)
                    return WorkerResult(
                        task_id=task_id, status=WorkerStatus.FAIL, blocker=str(failure)
                    )

        # barrier: every worker returns before anything is verified or written
        results = list(await asyncio.gather(*(_run(task_id) for task_id in runnable)))

        claims = [claim for result in results for claim in result.claims]
        verification = self.verifier.verify(claims)
        newly_verified = VerifiedArtifactSet(inherited).merge(verification.verified)
        outcome = wave_outcome(results)
        passed = sum(1 for result in results if result.status == WorkerStatus.PASS)
        blocked = sum(1 for result in results if result.status == WorkerStatus.BLOCKED)

        def _build(data: dict[str, Any]) -> Transaction:
            fresh = TaskGraph.from_dict(data.get("tasks", []))
            updates: Transaction = []
            for result in results:
                self._apply_result(fresh, result)
                updates.extend(put_task(item) for item in self._family(fresh, result.task_id))
                for event in contexts[result.task_id].events:
                    details = {
                        key: value
                        for key, value in event.items()
                        if key not in ("event", "task_id")
                    }
                    name = str(event.get("event", "worker_event"))
                    updates.append(append_event(name, task_id=result.task_id, **details))
            updates.append(add_verified([claim.to_dict() for claim in newly_verified]))
            for warning in verification.warnings:
                updates.append(
                    append_event(
                        "unverified_claim", task_id=warning.task_id, message=warning.message
                    )
                )
            updates.append(
                append_event(
                    "wave_finished",
                    wave=wave_id,
                    outcome=str(outcome),
                    passed=passed,
                    failed=len(results) - passed - blocked,
                    blocked=blocked,
                )
            )
            return updates

        self.store.update(spec_id, _build)
        logger.info("Wave %d of %s finished: %s", wave_id, spec_id, outcome)
        return WaveReport(
            wave_id=wave_id,
            outcome=outcome,
            results=results,
            verified=newly_verified,
            warnings=verification.warnings,
            skipped=skipped,
        )

    @staticmethod
    def _apply_result(graph: TaskGraph, result: WorkerResult) -> None:
        task = graph.get(result.task_id)
        task.commits.extend(commit for commit in result.commits if commit not in task.commits)
        status = task_status_for(result)
        if not task.is_parent:
            graph.update_status(task.id, status, reason=result.blocker)
            return
        if status == TaskStatus.BLOCKED:
            graph.update_status(task.id, TaskStatus.BLOCKED, reason=result.blocker)
            return
        for child in graph.children(task.id):
            child_status = result.subtask_statuses.get(child.id)
            if child_status is None and status == TaskStatus.COMPLETED:
                child_status = TaskStatus.COMPLETED
            if child_status is None:
                if child.status != TaskStatus.COMPLETED:
                    # never reached in this attempt
                    graph.update_status(child.id, TaskStatus.PENDING)
                continue
            reason = result.blocker if child.id == result.failed_subtask else None
            graph.update_status(child.id, TaskStatus(child_status), reason=reason)
        if status == TaskStatus.FAILED and graph.status_of(task.id) != TaskStatus.FAILED:
            # a custom worker reported failure without naming a subtask
            graph.update_status(task.id, TaskStatus.FAILED, reason=result.blocker)
        else:
            task.failure_reason = result.blocker
