import asyncio
from pathlib import Path

import pytest

from waveline.config import WavelineConfig
from waveline.coordinator import WaveCoordinator, wave_outcome
from waveline.errors import InvalidTransition, PlanningError
from waveline.graph import TaskGraph
from waveline.models import (
    ArtifactClaim,
    ArtifactKind,
    ExecutionState,
    ProducesHint,
    Task,
    TaskStatus,
    VerifiedArtifactSet,
    WaveOutcome,
    WorkerResult,
    WorkerStatus,
)
from waveline.planner import plan_waves
from waveline.state import TaskStore, set_task, set_waves
from waveline.verification import ArtifactVerifier
from waveline.workers import ScriptedWorker, Worker, WorkerContext
from waveline.workspace import LocalWorkspace

TEST_COMMAND = 'for f in checks/*.sh; do sh "$f" || exit 1; done'
BRANCH = "feature/demo-wave-1"


class CountingWorker(Worker):
    """Writes ``<id>.txt`` and claims it; tracks how many tasks run at once."""

    def __init__(self, statuses: dict[str, WorkerStatus] | None = None) -> None:
        self.statuses = statuses or {}
        self.active = 0
        self.peak = 0
        self.seen: list[str] = []

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        self.seen.append(task.id)
        status = self.statuses.get(task.id, WorkerStatus.PASS)
        if status == WorkerStatus.PASS:
            (context.descriptor.root / f"{task.id}.txt").write_text("done\n", encoding="utf-8")
        return WorkerResult(
            task_id=task.id,
            status=status,
            claims=[ArtifactClaim(ArtifactKind.FILE, f"{task.id}.txt", task.id)],
            blocker=None if status == WorkerStatus.PASS else f"{task.id} {status}",
        )


class ClaimingWorker(CountingWorker):
    """Claims a file it never writes."""

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        return WorkerResult(
            task_id=task.id,
            status=WorkerStatus.PASS,
            claims=[ArtifactClaim(ArtifactKind.FILE, "ghost.txt", task.id)],
        )


class CrashingWorker(CountingWorker):
    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        if task.id == "2":
            raise RuntimeError("agent exploded")
        return await super().execute(task, context)


class EventfulWorker(CountingWorker):
    """Buffers a runtime event per task and notes the store revision it saw mid-wave."""

    def __init__(self) -> None:
        super().__init__()
        self.store: TaskStore | None = None
        self.revisions: list[int] = []

    async def execute(self, task: Task, context: WorkerContext) -> WorkerResult:
        context.events.append({"event": "backend_retry", "backend": "claude", "attempt": 1})
        result = await super().execute(task, context)
        assert self.store is not None
        self.revisions.append(self.store.revision("demo"))
        return result


def _setup(
    root: Path, tasks: list[Task], worker: Worker, *, max_workers: int = 2
) -> tuple[WaveCoordinator, TaskStore, LocalWorkspace]:
    config = WavelineConfig.default()
    config.execution.max_concurrent_workers = max_workers
    config.project.test_command = TEST_COMMAND
    store = TaskStore(root / ".waveline" / "state")
    graph = TaskGraph(tasks)
    waves = plan_waves(graph)
    store.create("demo", graph, ExecutionState())
    store.apply("demo", [set_waves(waves)])
    workspace = LocalWorkspace(root, ledger_path=root / ".waveline" / "workspace.json")
    workspace.create_isolated_branch("main", BRANCH)
    coordinator = WaveCoordinator(store, worker, ArtifactVerifier(root), config)
    return coordinator, store, workspace


def _run(coordinator: WaveCoordinator, workspace: LocalWorkspace, wave_id: int = 1):
    return asyncio.run(coordinator.run_wave("demo", wave_id, workspace=workspace, branch=BRANCH))


def test_wave_runs_concurrently_up_to_the_limit(tmp_path: Path) -> None:
    worker = CountingWorker()
    tasks = [Task(id=str(n), produces_hint=ProducesHint(files=[f"{n}.txt"])) for n in range(1, 5)]
    coordinator, store, workspace = _setup(tmp_path, tasks, worker, max_workers=2)

    report = _run(coordinator, workspace)

    graph, _state = store.load("demo")
    document = store.load_document("demo")
    events = [event["event"] for event in store.events("demo")]
    assert report.outcome == WaveOutcome.COMPLETE
    assert worker.peak == 2
    assert sorted(worker.seen) == ["1", "2", "3", "4"]
    assert all(graph.status_of(task_id) == TaskStatus.COMPLETED for task_id in graph.ids())
    assert all(graph.get(task_id).attempts == 1 for task_id in graph.ids())
    assert len(VerifiedArtifactSet.from_list(document["verified"])) == 4
    assert events[-2:] == ["wave_started", "wave_finished"]


def test_overlapping_targets_run_one_at_a_time(tmp_path: Path) -> None:
    worker = CountingWorker()
    tasks = [Task(id=str(n), produces_hint=ProducesHint(files=["shared.py"])) for n in range(1, 4)]
    coordinator, _store, workspace = _setup(tmp_path, tasks, worker, max_workers=4)

    report = _run(coordinator, workspace)

    assert report.outcome == WaveOutcome.COMPLETE
    assert worker.peak == 1


def test_partial_wave_records_each_task(tmp_path: Path) -> None:
    worker = CountingWorker({"2": WorkerStatus.FAIL})
    coordinator, store, workspace = _setup(tmp_path, [Task(id="1"), Task(id="2")], worker)

    report = _run(coordinator, workspace)

    graph, _state = store.load("demo")
    assert report.outcome == WaveOutcome.PARTIAL
    assert report.failed_tasks == ["2"]
    assert graph.status_of("1") == TaskStatus.COMPLETED
    assert graph.status_of("2") == TaskStatus.FAILED
    assert graph.get("2").failure_reason == "2 fail"


def test_failing_task_leaves_its_siblings_able_to_pass(tmp_path: Path) -> None:
    bad = Task(
        id="1",
        produces_hint=ProducesHint(files=["a.txt"]),
        step={
            "test_files": {"checks/a.sh": "grep -q hello a.txt\n"},
            "code_attempts": [{"a.txt": "nope\n"}, {"a.txt": "still nope\n"}],
        },
    )
    good = Task(
        id="2",
        produces_hint=ProducesHint(files=["b.txt"]),
        step={
            "test_files": {"checks/b.sh": "grep -q hello b.txt\n"},
            "code_files": {"b.txt": "hello\n"},
        },
    )
    coordinator, store, workspace = _setup(tmp_path, [bad, good], ScriptedWorker())

    report = _run(coordinator, workspace)

    graph, _state = store.load("demo")
    verified = VerifiedArtifactSet.from_list(store.load_document("demo")["verified"])
    assert report.outcome == WaveOutcome.PARTIAL
    assert report.failed_tasks == ["1"]
    assert graph.status_of("1") == TaskStatus.FAILED
    assert graph.status_of("2") == TaskStatus.COMPLETED
    assert "b.txt" in verified
    assert not (tmp_path / "checks" / "a.sh").exists()
    assert not (tmp_path / "a.txt").exists()


def test_worker_events_are_written_with_the_wave_results(tmp_path: Path) -> None:
    worker = EventfulWorker()
    coordinator, store, workspace = _setup(tmp_path, [Task(id="1"), Task(id="2")], worker)
    worker.store = store
    before = store.revision("demo")

    _run(coordinator, workspace)

    events = store.events("demo")
    # only wave_started was written while the workers ran
    assert worker.revisions == [before + 1, before + 1]
    assert store.revision("demo") == before + 2
    assert [event["event"] for event in events[-4:]] == [
        "wave_started",
        "backend_retry",
        "backend_retry",
        "wave_finished",
    ]
    assert [event["task_id"] for event in events[-3:-1]] == ["1", "2"]
    assert events[-2]["backend"] == "claude"


def test_all_blocked_wave_is_blocked(tmp_path: Path) -> None:
    worker = CountingWorker({"1": WorkerStatus.BLOCKED, "2": WorkerStatus.BLOCKED})
    coordinator, store, workspace = _setup(tmp_path, [Task(id="1"), Task(id="2")], worker)

    report = _run(coordinator, workspace)

    assert report.outcome == WaveOutcome.BLOCKED
    assert store.load("demo")[0].status_of("1") == TaskStatus.BLOCKED


def test_wave_outcome_aggregation() -> None:
    passed = WorkerResult(task_id="a", status=WorkerStatus.PASS)
    failed = WorkerResult(task_id="b", status=WorkerStatus.FAIL)
    blocked = WorkerResult(task_id="c", status=WorkerStatus.BLOCKED)

    assert wave_outcome([passed]) == WaveOutcome.COMPLETE
    assert wave_outcome([blocked, blocked]) == WaveOutcome.BLOCKED
    assert wave_outcome([passed, failed]) == WaveOutcome.PARTIAL
    assert wave_outcome([failed, blocked]) == WaveOutcome.PARTIAL


def test_unverified_claim_is_dropped_with_warning(tmp_path: Path) -> None:
    coordinator, store, workspace = _setup(tmp_path, [Task(id="1")], ClaimingWorker())

    report = _run(coordinator, workspace)

    document = store.load_document("demo")
    assert report.outcome == WaveOutcome.COMPLETE
    assert report.verified == []
    assert len(report.warnings) == 1
    assert document["verified"] == []
    assert any(event["event"] == "unverified_claim" for event in document["events"])


def test_crashing_worker_fails_only_its_task(tmp_path: Path) -> None:
    worker = CrashingWorker()
    coordinator, store, workspace = _setup(tmp_path, [Task(id="1"), Task(id="2")], worker)

    report = _run(coordinator, workspace)

    graph, _state = store.load("demo")
    assert report.outcome == WaveOutcome.PARTIAL
    assert graph.status_of("1") == TaskStatus.COMPLETED
    assert graph.status_of("2") == TaskStatus.FAILED
    assert "agent exploded" in (graph.get("2").failure_reason or "")


def test_completed_tasks_are_not_rerun(tmp_path: Path) -> None:
    worker = CountingWorker()
    coordinator, _store, workspace = _setup(tmp_path, [Task(id="1")], worker)

    _run(coordinator, workspace)
    again = _run(coordinator, workspace)

    assert worker.seen == ["1"]
    assert again.outcome == WaveOutcome.COMPLETE
    assert again.skipped == ["1"]


def test_wave_waits_for_earlier_waves(tmp_path: Path) -> None:
    tasks = [Task(id="1"), Task(id="2", depends_on={"1"})]
    coordinator, store, workspace = _setup(tmp_path, tasks, CountingWorker())
    store.apply("demo", [set_task("1", "status", "in_progress")])

    with pytest.raises(InvalidTransition):
        _run(coordinator, workspace, wave_id=2)
    with pytest.raises(PlanningError):
        _run(coordinator, workspace, wave_id=9)


def test_unproduced_predecessor_artifact_blocks_the_next_wave(tmp_path: Path) -> None:
    # T1 declares a.txt but only ever writes x.txt
    t1 = Task(
        id="T1",
        produces_hint=ProducesHint(files=["a.txt"]),
        step={
            "test_files": {"checks/x.sh": "grep -q done x.txt\n"},
            "code_files": {"x.txt": "done\n"},
        },
    )
    t2 = Task(
        id="T2",
        depends_on={"T1"},
        requires=["a.txt"],
        step={
            "test_files": {"checks/y.sh": "grep -q done y.txt\n"},
            "code_files": {"y.txt": "done\n"},
        },
    )
    coordinator, store, workspace = _setup(tmp_path, [t1, t2], ScriptedWorker())

    first = _run(coordinator, workspace, wave_id=1)
    second = _run(coordinator, workspace, wave_id=2)

    graph, _state = store.load("demo")
    verified = VerifiedArtifactSet.from_list(store.load_document("demo")["verified"])
    assert first.outcome == WaveOutcome.COMPLETE
    assert "a.txt" not in verified
    assert "x.txt" in verified
    assert second.outcome == WaveOutcome.BLOCKED
    assert graph.status_of("T2") == TaskStatus.BLOCKED
    assert graph.get("T2").failure_reason == "missing predecessor artifact: a.txt"


def test_parent_result_updates_children() -> None:
    graph = TaskGraph(
        [
            Task(id="P", subtasks=["P.1", "P.2", "P.3"]),
            Task(id="P.1", parent="P"),
            Task(id="P.2", parent="P"),
            Task(id="P.3", parent="P"),
        ]
    )
    graph.update_status("P", TaskStatus.IN_PROGRESS)
    failed = WorkerResult(
        task_id="P",
        status=WorkerStatus.FAIL,
        commits=["c1"],
        blocker="P.2 stayed red",
        failed_subtask="P.2",
        subtask_statuses={"P.1": TaskStatus.COMPLETED, "P.2": TaskStatus.FAILED},
    )

    WaveCoordinator._apply_result(graph, failed)

    assert graph.get("P.1").status == TaskStatus.COMPLETED
    assert graph.get("P.2").status == TaskStatus.FAILED
    assert graph.get("P.2").failure_reason == "P.2 stayed red"
    assert graph.get("P.3").status == TaskStatus.PENDING
    assert graph.status_of("P") == TaskStatus.FAILED
    assert graph.get("P").commits == ["c1"]

    WaveCoordinator._apply_result(graph, WorkerResult(task_id="P", status=WorkerStatus.PASS))
    assert graph.status_of("P") == TaskStatus.COMPLETED
