from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from waveline.config import WavelineConfig
from waveline.coordinator import WaveCoordinator, WaveReport
from waveline.errors import (
    BlockedDependency,
    ConcurrentWriteConflict,
    InvalidTransition,
    MergeConflict,
    ReviewTimeout,
    SpecNotFound,
    StateCorruption,
    WavelineError,
    WorkerFailure,
)
from waveline.feedback import (
    RoadmapDraft,
    TaskDraft,
    classify_all,
    draft_from_future,
    drafts_to_tasks,
    roadmap_items,
    sorted_future,
)
from waveline.graph import TaskGraph
from waveline.models import (
    ExecutionState,
    Phase,
    TaskStatus,
    Wave,
    WaveOutcome,
    aggregate_status,
    utcnow_iso,
)
from waveline.planner import plan_waves, wave_of
from waveline.review import ReviewPoller, ReviewSource
from waveline.state import (
    TaskStore,
    Transaction,
    Update,
    append_event,
    append_state,
    put_task,
    put_tasks,
    reset_verified,
    set_state,
    set_waves,
)
from waveline.workspace import Workspace

logger = logging.getLogger(__name__)

# errors about the store itself never move the spec to FAILED
_STORE_ERRORS = (ConcurrentWriteConflict, StateCorruption, SpecNotFound)
_REVIEW_PHASES = frozenset({Phase.AWAITING_REVIEW, Phase.REVIEW_PROCESSING, Phase.READY_TO_MERGE})


class Signal(StrEnum):
    INITIALIZED = "initialized"
    UPDATED = "updated"
    TIMEOUT = "timeout"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    STATUS = "status"


@dataclass(slots=True)
class LifecycleResult:
    spec_id: str
    phase: Phase
    current_wave: int
    signal: Signal
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        """0 when finished or nothing to wait for, 1 on failure, 2 while waiting."""
        if self.phase == Phase.FAILED or self.signal in {Signal.FAILED, Signal.PARTIAL}:
            return 1
        if self.phase == Phase.COMPLETED:
            return 0
        if self.signal in {Signal.INITIALIZED, Signal.UPDATED}:
            return 0
        return 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "phase": str(self.phase),
            "current_wave": self.current_wave,
            "signal": str(self.signal),
            "message": self.message,
            "exit_code": self.exit_code,
            **self.details,
        }


def _fresh_review_status(review_id: str) -> dict[str, Any]:
    return {
        "review_id": review_id,
        "poll_count": 0,
        "last_check": None,
        "decision": "PENDING",
        "blocking_count": 0,
        "future_items_count": 0,
        "processed": False,
        "feedback_tasks": [],
    }


class SpecLifecycle:
    """Drives one spec through execute, review and merge.

    Every transition is persisted before the next phase starts, so a crashed
    or interrupted ``advance`` picks up exactly where the last one stopped.
    """

    def __init__(
        self,
        store: TaskStore,
        coordinator: WaveCoordinator,
        workspace: Workspace,
        reviews: ReviewSource,
        config: WavelineConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.workspace = workspace
        self.reviews = reviews
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.wall_clock = wall_clock

    # -- helpers ---------------------------------------------------------

    def _transition(
        self,
        spec_id: str,
        state: ExecutionState,
        target: Phase,
        reason: str,
        *extra: Update,
        **fields: Any,
    ) -> None:
        entry = {
            "from": str(state.phase),
            "to": str(target),
            "wave": fields.get("current_wave", state.current_wave),
            "reason": reason,
            "at": utcnow_iso(),
        }
        updates: Transaction = [set_state("phase", str(target))]
        updates.extend(set_state(key, value) for key, value in fields.items())
        updates.append(append_state("history", entry))
        updates.extend(extra)
        updates.append(append_event("phase_changed", **{k: entry[k] for k in entry if k != "at"}))
        self.store.apply(spec_id, updates)
        logger.info("Spec %s: %s -> %s (%s)", spec_id, state.phase, target, reason)

    def _result(
        self, spec_id: str, signal: Signal, message: str = "", **details: Any
    ) -> LifecycleResult:
        _graph, state = self.store.load(spec_id)
        return LifecycleResult(
            spec_id=spec_id,
            phase=state.phase,
            current_wave=state.current_wave,
            signal=signal,
            message=message,
            details=details,
        )

    def _fail_with(
        self,
        spec_id: str,
        error: WavelineError,
        signal: Signal = Signal.FAILED,
    ) -> LifecycleResult:
        _graph, state = self.store.load(spec_id)
        if error.phase is None:
            error.phase = str(state.phase)
        if error.wave is None:
            error.wave = state.current_wave
        record = {**error.to_dict(), "at": utcnow_iso()}
        self._transition(
            spec_id,
            state,
            Phase.FAILED,
            error.message,
            append_event("spec_failed", **{k: v for k, v in record.items() if k != "at"}),
            last_error=record,
        )
        logger.error("Spec %s failed: %s", spec_id, error)
        return self._result(spec_id, signal, str(error), error=record)

    @staticmethod
    def _next_wave(waves: list[Wave], graph: TaskGraph, after: int) -> int | None:
        for wave in sorted(waves, key=lambda item: item.wave_id):
            if wave.wave_id <= after:
                continue
            if any(
                graph.status_of(task_id) != TaskStatus.COMPLETED
                for task_id in wave.task_ids
                if task_id in graph
            ):
                return wave.wave_id
        return None

    def _ensure_branch(self, spec_id: str, state: ExecutionState, wave_id: int) -> str:
        name = state.wave_branch
        if not name:
            if self.config.review.per_wave:
                name = self.workspace.branch_name(spec_id, wave_id)
            else:
                name = self.workspace.spec_branch_name(spec_id)
        branch = self.workspace.create_isolated_branch(self.config.workspace.base_branch, name)
        if branch != state.wave_branch:
            self.store.apply(spec_id, [set_state("wave_branch", branch)])
            state.wave_branch = branch
        return branch

    @staticmethod
    def _execution_status(graph: TaskGraph, report: WaveReport) -> dict[str, Any]:
        task_ids = [result.task_id for result in report.results] + list(report.skipped)
        statuses = [graph.status_of(task_id) for task_id in task_ids if task_id in graph]
        blockers = [result.blocker for result in report.results if result.blocker]
        return {
            "wave": report.wave_id,
            "outcome": str(report.outcome),
            "tasks_total": len(statuses),
            "tasks_completed": statuses.count(TaskStatus.COMPLETED),
            "tasks_failed": statuses.count(TaskStatus.FAILED),
            "tasks_blocked": statuses.count(TaskStatus.BLOCKED),
            "unverified_claims": len(report.warnings),
            "last_error": blockers[0] if blockers else None,
            "updated_at": utcnow_iso(),
        }

    # -- commands --------------------------------------------------------

    def init(self, spec_id: str, graph: TaskGraph, *, overwrite: bool = False) -> LifecycleResult:
        waves = plan_waves(graph)
        state = ExecutionState(
            current_wave=waves[0].wave_id if waves else 1,
            total_waves=len(waves),
        )
        state.history.append(
            {
                "from": None,
                "to": str(Phase.INIT),
                "wave": state.current_wave,
                "reason": "initialized",
                "at": utcnow_iso(),
            }
        )
        self.store.create(spec_id, graph, state, overwrite=overwrite)
        self.store.apply(
            spec_id,
            [
                set_waves(waves),
                append_event("spec_initialized", tasks=len(graph.top_level()), waves=len(waves)),
            ],
        )
        logger.info("Initialized %s with %d waves", spec_id, len(waves))
        return self._result(
            spec_id,
            Signal.INITIALIZED,
            f"planned {len(waves)} waves for {len(graph.top_level())} tasks",
            waves=[wave.to_dict() for wave in waves],
        )

    async def advance(
        self,
        spec_id: str,
        resume_phase: Phase | str | None = None,
        *,
        takeover: bool = False,
    ) -> LifecycleResult:
        """Run phases until the spec completes, fails or has to wait for a review."""
        ttl = self.config.store.session_ttl_seconds
        session = self.store.acquire_session(spec_id, ttl, takeover=takeover)
        session_id = session["session_id"]
        try:
            if resume_phase is not None:
                self._resume_into(spec_id, Phase(resume_phase))
            return await self._drive(spec_id, session_id)
        finally:
            self.store.release_session(spec_id, session_id)

    async def _drive(self, spec_id: str, session_id: str) -> LifecycleResult:
        handlers: dict[Phase, Callable[..., Awaitable[LifecycleResult | None]]] = {
            Phase.INIT: self._start,
            Phase.EXECUTE: self._execute,
            Phase.AWAITING_REVIEW: self._await_review,
            Phase.REVIEW_PROCESSING: self._process_review,
            Phase.READY_TO_MERGE: self._merge,
        }
        ttl = self.config.store.session_ttl_seconds
        while True:
            self.store.renew_session(spec_id, session_id, ttl)
            graph, state = self.store.load(spec_id)
            if state.phase == Phase.COMPLETED:
                return self._result(spec_id, Signal.COMPLETED, "all waves merged")
            if state.phase == Phase.FAILED:
                message = (state.last_error or {}).get("message") or "spec failed"
                return self._result(
                    spec_id,
                    Signal.FAILED,
                    f"{message} - run reset to retry or recover to start over",
                    error=state.last_error,
                )
            try:
                result = await handlers[state.phase](spec_id, graph, state)
            except _STORE_ERRORS:
                raise
            except WavelineError as exc:
                return self._fail_with(spec_id, exc)
            if result is not None:
                return result

    async def _start(
        self, spec_id: str, graph: TaskGraph, state: ExecutionState
    ) -> LifecycleResult | None:
        waves = self.store.load_waves(spec_id)
        updates: Transaction = []
        if not waves:
            waves = plan_waves(graph)
            updates = [set_waves(waves), put_tasks(graph)]
        first = self._next_wave(waves, graph, after=0)
        if first is None:
            self._transition(
                spec_id, state, Phase.COMPLETED, "nothing to execute", *updates,
                total_waves=len(waves),
            )
            return None
        self._transition(
            spec_id, state, Phase.EXECUTE, "start", *updates,
            current_wave=first, total_waves=len(waves),
        )
        return None

    async def _execute(
        self, spec_id: str, graph: TaskGraph, state: ExecutionState
    ) -> LifecycleResult | None:
        wave_id = state.current_wave
        branch = self._ensure_branch(spec_id, state, wave_id)
        report = await self.coordinator.run_wave(
            spec_id, wave_id, workspace=self.workspace, branch=branch
        )
        graph, state = self.store.load(spec_id)
        status = self._execution_status(graph, report)
        self.store.apply(spec_id, [set_state("execution_status", status)])

        if report.outcome == WaveOutcome.BLOCKED:
            reasons = "; ".join(r.blocker for r in report.results if r.blocker)
            raise BlockedDependency(
                f"every task in wave {wave_id} is blocked: {reasons}",
                wave=wave_id,
                phase=str(Phase.EXECUTE),
                remediation=f"make the missing artifacts available, then run advance --retry "
                f"to rerun wave {wave_id}",
            )
        if report.outcome == WaveOutcome.PARTIAL:
            failed = ", ".join(report.failed_tasks)
            if self.config.execution.partial_wave_policy != "allow":
                error = WorkerFailure(
                    f"wave {wave_id} finished partially; failed tasks: {failed}",
                    wave=wave_id,
                    phase=str(Phase.EXECUTE),
                    remediation=f"fix the failing tasks and run advance --retry to rerun "
                    f"wave {wave_id}",
                )
                return self._fail_with(spec_id, error, Signal.PARTIAL)
            logger.warning("Wave %d of %s is partial (%s); continuing", wave_id, spec_id, failed)
            self.store.apply(
                spec_id,
                [append_event("partial_wave_allowed", wave=wave_id, failed=report.failed_tasks)],
            )

        next_wave = self._next_wave(self.store.load_waves(spec_id), graph, after=wave_id)
        if not self.config.review.per_wave and next_wave is not None:
            self._transition(
                spec_id, state, Phase.EXECUTE, f"wave {wave_id} {report.outcome}",
                current_wave=next_wave,
            )
            return None
        review_id = self.workspace.open_review(branch, self.config.workspace.base_branch)
        self._transition(
            spec_id,
            state,
            Phase.AWAITING_REVIEW,
            f"wave {wave_id} ready for review",
            review_id=review_id,
            review_status=_fresh_review_status(review_id),
        )
        return None

    async def _await_review(
        self, spec_id: str, graph: TaskGraph, state: ExecutionState
    ) -> LifecycleResult | None:
        review_id = state.review_id
        if not review_id:
            raise InvalidTransition(
                "no review is open for the current wave",
                remediation="run advance --resume-phase EXECUTE",
            )
        max_duration = self.config.review.max_poll_duration_seconds
        started = self.wall_clock()
        self.store.apply(
            spec_id,
            [
                set_state("poll_started_at", started),
                set_state("poll_deadline", started + max_duration),
                append_event("review_polling", review_id=review_id),
            ],
        )
        poller = ReviewPoller(
            self.reviews,
            interval=self.config.review.poll_interval_seconds,
            max_duration=max_duration,
            clock=self.clock,
            sleep=self.sleep,
        )
        outcome = poller.poll(review_id)
        review_status = dict(state.review_status) or _fresh_review_status(review_id)
        review_status.update(
            review_id=review_id,
            poll_count=int(review_status.get("poll_count", 0)) + outcome.polls,
            last_check=utcnow_iso(),
            decision=str(outcome.decision),
        )
        if outcome.timed_out:
            timeout = ReviewTimeout(
                f"no decision on review {review_id} after {outcome.elapsed:.0f}s",
                wave=state.current_wave,
                phase=str(Phase.AWAITING_REVIEW),
            )
            self.store.apply(
                spec_id,
                [
                    set_state("review_status", review_status),
                    append_event(
                        "review_timeout",
                        review_id=review_id,
                        polls=outcome.polls,
                        elapsed=outcome.elapsed,
                    ),
                ],
            )
            return self._result(
                spec_id,
                Signal.TIMEOUT,
                str(timeout),
                review_id=review_id,
                polls=outcome.polls,
                elapsed=outcome.elapsed,
            )
        self._transition(
            spec_id,
            state,
            Phase.REVIEW_PROCESSING,
            f"review {outcome.decision.lower()}",
            review_status=review_status,
            poll_started_at=None,
            poll_deadline=None,
        )
        return None

    def _absorb_feedback(
        self,
        spec_id: str,
        graph: TaskGraph,
        state: ExecutionState,
        review_status: dict[str, Any],
    ) -> dict[str, Any]:
        review_id = state.review_id
        drafts = classify_all(self.reviews.fetch_feedback(review_id))
        blocking = [draft for draft in drafts if isinstance(draft, TaskDraft)]
        roadmap = [draft for draft in drafts if isinstance(draft, RoadmapDraft)]
        created = drafts_to_tasks(blocking, graph)
        existing = self.store.load_waves(spec_id)
        waves = plan_waves(graph, existing) if created else existing
        future = roadmap_items(roadmap, state.future_tasks, review_id)
        review_status.update(
            processed=True,
            feedback_tasks=[task.id for task in created],
            blocking_count=len(created),
            future_items_count=len(future),
        )
        updates: Transaction = [put_task(task) for task in created]
        updates.extend(
            [
                set_waves(waves),
                set_state("total_waves", len(waves)),
                set_state("future_tasks", [*state.future_tasks, *future]),
                set_state("review_status", review_status),
                append_event(
                    "feedback_processed",
                    review_id=review_id,
                    decision=review_status.get("decision"),
                    blocking=len(created),
                    future=len(future),
                ),
            ]
        )
        self.store.apply(spec_id, updates)
        if drafts and not created:
            logger.info("Review %s has no blocking feedback for %s", review_id, spec_id)
        return review_status

    async def _process_review(
        self, spec_id: str, graph: TaskGraph, state: ExecutionState
    ) -> LifecycleResult | None:
        review_status = dict(state.review_status)
        if not review_status.get("processed"):
            review_status = self._absorb_feedback(spec_id, graph, state, review_status)
            graph, state = self.store.load(spec_id)

        feedback_ids = set(review_status.get("feedback_tasks", []))
        pending = [
            wave.wave_id
            for wave in sorted(self.store.load_waves(spec_id), key=lambda item: item.wave_id)
            if feedback_ids.intersection(wave.task_ids)
            and any(graph.status_of(task_id) != TaskStatus.COMPLETED for task_id in wave.task_ids)
        ]
        if pending:
            branch = self._ensure_branch(spec_id, state, state.current_wave)
            for wave_id in pending:
                report = await self.coordinator.run_wave(
                    spec_id, wave_id, workspace=self.workspace, branch=branch
                )
                allowed = (
                    report.outcome == WaveOutcome.PARTIAL
                    and self.config.execution.partial_wave_policy == "allow"
                )
                if report.outcome != WaveOutcome.COMPLETE and not allowed:
                    raise WorkerFailure(
                        f"review feedback wave {wave_id} finished {report.outcome}; "
                        f"failed tasks: {', '.join(report.failed_tasks)}",
                        wave=wave_id,
                        phase=str(Phase.REVIEW_PROCESSING),
                        remediation="fix the feedback tasks and run advance --retry",
                    )
            _graph, state = self.store.load(spec_id)
        self._transition(spec_id, state, Phase.READY_TO_MERGE, "feedback resolved")
        return None

    async def _merge(
        self, spec_id: str, graph: TaskGraph, state: ExecutionState
    ) -> LifecycleResult | None:
        review_id = state.review_id
        if not review_id:
            raise InvalidTransition(
                "no review to merge",
                remediation="run advance --resume-phase AWAITING_REVIEW",
            )
        result = self.workspace.merge(review_id)
        if not result.ok:
            raise MergeConflict(
                f"merging review {review_id} failed: {result.conflict}",
                wave=state.current_wave,
                phase=str(Phase.READY_TO_MERGE),
            )
        entry = {
            "wave": state.current_wave,
            "review_id": review_id,
            "status": "merged",
            "merged_at": utcnow_iso(),
            "commit": result.commit,
        }
        cleared = {
            "review_id": None,
            "wave_branch": None,
            "review_status": {},
            "poll_started_at": None,
            "poll_deadline": None,
        }
        history = append_state("wave_history", entry)
        next_wave = self._next_wave(self.store.load_waves(spec_id), graph, state.current_wave)
        if next_wave is None:
            self._transition(
                spec_id, state, Phase.COMPLETED, f"review {review_id} merged", history, **cleared
            )
        else:
            self._transition(
                spec_id, state, Phase.EXECUTE, f"review {review_id} merged", history,
                current_wave=next_wave, **cleared,
            )
        return None

    def _resume_into(self, spec_id: str, phase: Phase) -> None:
        graph, state = self.store.load(spec_id)
        if state.is_terminal:
            raise InvalidTransition(
                f"spec {spec_id} is {state.phase}; cannot resume into {phase}",
                phase=str(state.phase),
                remediation="run reset or recover first",
            )
        if phase == state.phase:
            return
        if phase in {Phase.INIT, Phase.COMPLETED, Phase.FAILED}:
            raise InvalidTransition(
                f"cannot resume into {phase}",
                phase=str(state.phase),
                remediation="resume into EXECUTE or a review phase",
            )
        fields: dict[str, Any] = {}
        if phase in _REVIEW_PHASES:
            wave = wave_of(self.store.load_waves(spec_id), state.current_wave)
            if wave is None or any(
                graph.status_of(task_id) != TaskStatus.COMPLETED for task_id in wave.task_ids
            ):
                raise InvalidTransition(
                    f"wave {state.current_wave} still has unfinished tasks; "
                    f"cannot skip to {phase}",
                    wave=state.current_wave,
                    phase=str(state.phase),
                    remediation="run advance without --resume-phase",
                )
            if not state.review_id:
                if phase != Phase.AWAITING_REVIEW:
                    raise InvalidTransition(
                        "no review is open yet",
                        wave=state.current_wave,
                        phase=str(state.phase),
                        remediation="resume into AWAITING_REVIEW instead",
                    )
                branch = self._ensure_branch(spec_id, state, state.current_wave)
                review_id = self.workspace.open_review(branch, self.config.workspace.base_branch)
                fields["review_id"] = review_id
                fields["review_status"] = _fresh_review_status(review_id)
        _graph, state = self.store.load(spec_id)
        self._transition(spec_id, state, phase, "resume", **fields)

    def reset(self, spec_id: str) -> LifecycleResult:
        """Put the current wave back to pending so ``advance`` retries it."""
        graph, state = self.store.load(spec_id)
        if state.phase == Phase.COMPLETED:
            raise InvalidTransition(
                f"spec {spec_id} is already completed",
                phase=str(state.phase),
                remediation="promote a future task or recover to start over",
            )
        wave = wave_of(self.store.load_waves(spec_id), state.current_wave)
        candidates = list(wave.task_ids) if wave else []
        candidates.extend(state.review_status.get("feedback_tasks", []))
        candidates.extend(
            task.id
            for task in graph.top_level()
            if graph.status_of(task.id) == TaskStatus.IN_PROGRESS
        )
        reset_ids: list[str] = []
        for task_id in dict.fromkeys(candidates):
            if task_id in graph and graph.status_of(task_id) != TaskStatus.COMPLETED:
                graph.update_status(task_id, TaskStatus.PENDING)
                reset_ids.append(task_id)

        target = state.phase
        if state.phase == Phase.FAILED:
            try:
                target = Phase((state.last_error or {}).get("phase") or Phase.EXECUTE)
            except ValueError:
                target = Phase.EXECUTE
            if target in {Phase.COMPLETED, Phase.FAILED}:
                target = Phase.EXECUTE

        updates: Transaction = []
        for task_id in reset_ids:
            family = [graph.get(task_id), *graph.children(task_id)]
            updates.extend(put_task(item) for item in family)
        updates.extend(
            [
                set_state("last_error", None),
                set_state("session", None),
                append_event("wave_reset", wave=state.current_wave, tasks=reset_ids),
            ]
        )
        self._transition(spec_id, state, target, "reset", *updates)
        return self._result(
            spec_id,
            Signal.UPDATED,
            f"wave {state.current_wave} reset; {len(reset_ids)} tasks back to pending",
            reset_tasks=reset_ids,
        )

    def recover(self, spec_id: str, graph: TaskGraph | None = None) -> LifecycleResult:
        """Throw away progress and go back to INIT with pristine task definitions.

        ``graph`` replaces the stored definitions; it is required when the
        stored state cannot be read at all.
        """
        try:
            current, state = self.store.load(spec_id)
        except StateCorruption:
            if graph is None:
                raise
            logger.warning("State of %s is unreadable; rebuilding from definitions", spec_id)
            self.store.create(spec_id, graph.pristine(), ExecutionState(), overwrite=True)
            current, state = self.store.load(spec_id)
        fresh = (graph or current).pristine()
        new_state = ExecutionState()
        new_state.history.append(
            {
                "from": str(state.phase),
                "to": str(Phase.INIT),
                "wave": 1,
                "reason": "recover",
                "at": utcnow_iso(),
            }
        )
        updates: Transaction = [put_tasks(fresh), set_waves([]), reset_verified()]
        updates.extend(set_state(key, value) for key, value in new_state.to_dict().items())
        updates.append(append_event("spec_recovered", previous_phase=str(state.phase)))
        self.store.apply(spec_id, updates)
        logger.info("Recovered %s from %s back to INIT", spec_id, state.phase)
        return self._result(
            spec_id, Signal.UPDATED, f"spec {spec_id} is back at INIT with {len(fresh)} tasks"
        )

    def fail(self, spec_id: str, reason: str) -> LifecycleResult:
        _graph, state = self.store.load(spec_id)
        if state.phase == Phase.COMPLETED:
            raise InvalidTransition(
                f"spec {spec_id} is already completed", phase=str(state.phase)
            )
        error = WavelineError(
            reason,
            phase=str(state.phase),
            wave=state.current_wave,
            remediation="run reset to retry or recover to start over",
        )
        return self._fail_with(spec_id, error)

    def promote(self, spec_id: str, future_id: str) -> LifecycleResult:
        """Turn a captured future item into a task in a new wave."""
        graph, state = self.store.load(spec_id)
        item = next((i for i in state.future_tasks if i.get("id") == future_id), None)
        if item is None:
            raise WavelineError(
                f"spec {spec_id} has no future task {future_id}",
                remediation="run status to list the captured future tasks",
            )
        created = drafts_to_tasks([draft_from_future(item)], graph)
        waves = plan_waves(graph, self.store.load_waves(spec_id))
        remaining = [i for i in state.future_tasks if i.get("id") != future_id]
        task = created[0]
        updates: Transaction = [
            put_task(task),
            set_waves(waves),
            set_state("total_waves", len(waves)),
            set_state("future_tasks", remaining),
            append_event("future_task_promoted", future_id=future_id, task_id=task.id),
        ]
        if state.phase == Phase.COMPLETED:
            self._transition(
                spec_id, state, Phase.EXECUTE, f"promoted {future_id}", *updates,
                current_wave=task.wave,
            )
        else:
            self.store.apply(spec_id, updates)
        return self._result(
            spec_id,
            Signal.UPDATED,
            f"promoted {future_id} to task {task.id} in wave {task.wave}",
            task_id=task.id,
            wave=task.wave,
        )

    def status(self, spec_id: str) -> LifecycleResult:
        graph, state = self.store.load(spec_id)
        waves = self.store.load_waves(spec_id)
        waves_view = [
            {
                **wave.to_dict(),
                "status": str(
                    aggregate_status(graph.status_of(t) for t in wave.task_ids if t in graph)
                ),
            }
            for wave in waves
        ]
        tasks_view = [
            {
                "id": task.id,
                "status": str(graph.status_of(task.id)),
                "wave": task.wave,
                "attempts": task.attempts,
                "failure_reason": task.failure_reason,
                "subtasks": [
                    {"id": child.id, "status": str(child.status)}
                    for child in graph.children(task.id)
                ],
            }
            for task in graph.top_level()
        ]
        if state.phase == Phase.COMPLETED:
            signal = Signal.COMPLETED
        elif state.phase == Phase.FAILED:
            signal = Signal.FAILED
        else:
            signal = Signal.STATUS
        return LifecycleResult(
            spec_id=spec_id,
            phase=state.phase,
            current_wave=state.current_wave,
            signal=signal,
            message=f"phase {state.phase}, wave {state.current_wave}/{state.total_waves}",
            details={
                "total_waves": state.total_waves,
                "summary": graph.summary(),
                "waves": waves_view,
                "tasks": tasks_view,
                "review_id": state.review_id,
                "review_status": state.review_status,
                "execution_status": state.execution_status,
                "last_error": state.last_error,
                "future_tasks": sorted_future(state.future_tasks),
                "wave_history": state.wave_history,
                "session": state.session,
                "history": state.history[-10:],
                "events": self.store.events(spec_id)[-10:],
            },
        )

    def overview(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for spec_id in self.store.list_specs():
            try:
                graph, state = self.store.load(spec_id)
            except StateCorruption as exc:
                rows.append({"spec_id": spec_id, "phase": None, "error": str(exc)})
                continue
            rows.append(
                {
                    "spec_id": spec_id,
                    "phase": str(state.phase),
                    "current_wave": state.current_wave,
                    "total_waves": state.total_waves,
                    "overall_percent": graph.summary()["overall_percent"],
                }
            )
        return rows
