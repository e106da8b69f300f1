from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


def aggregate_status(children: Iterable[TaskStatus]) -> TaskStatus:
    """Derive a parent task's status from its subtasks.

    A parent is completed only when every child is completed; one failed child
    fails the parent, and a blocked child blocks it when nothing failed.
    """
    statuses = [TaskStatus(item) for item in children]
    if not statuses:
        return TaskStatus.PENDING
    if all(status == TaskStatus.COMPLETED for status in statuses):
        return TaskStatus.COMPLETED
    if TaskStatus.FAILED in statuses:
        return TaskStatus.FAILED
    if TaskStatus.BLOCKED in statuses:
        return TaskStatus.BLOCKED
    if any(status in {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED} for status in statuses):
        return TaskStatus.IN_PROGRESS
    return TaskStatus.PENDING


class Phase(StrEnum):
    INIT = "INIT"
    EXECUTE = "EXECUTE"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    REVIEW_PROCESSING = "REVIEW_PROCESSING"
    READY_TO_MERGE = "READY_TO_MERGE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})


class ArtifactKind(StrEnum):
    FILE = "file"
    EXPORTED_SYMBOL = "exported_symbol"
    FUNCTION = "function"


class WorkerStatus(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    BLOCKED = "blocked"
    PARTIAL = "partial"


class WaveOutcome(StrEnum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    BLOCKED = "blocked"


@dataclass(slots=True)
class ProducesHint:
    files: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)

    @staticmethod
    def split_export(export: str) -> tuple[str | None, str]:
        """Split a ``path:symbol`` hint; bare names have no path."""
        path, sep, name = export.rpartition(":")
        if sep and path:
            return path, name
        return None, export

    def to_dict(self) -> dict[str, Any]:
        return {"files": list(self.files), "exports": list(self.exports)}

    @classmethod
    def from_dict(cls, data: Any) -> ProducesHint:
        if isinstance(data, list):
            return cls(files=[str(item) for item in data])
        if not isinstance(data, dict):
            return cls()
        return cls(
            files=[str(item) for item in data.get("files", [])],
            exports=[str(item) for item in data.get("exports", [])],
        )


@dataclass(slots=True)
class Task:
    id: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    depends_on: set[str] = field(default_factory=set)
    produces_hint: ProducesHint = field(default_factory=ProducesHint)
    wave: int | None = None
    subtasks: list[str] = field(default_factory=list)
    parent: str | None = None
    requires: list[str] = field(default_factory=list)
    step: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    failure_reason: str | None = None
    commits: list[str] = field(default_factory=list)

    @property
    def is_parent(self) -> bool:
        return bool(self.subtasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": str(self.status),
            "depends_on": sorted(self.depends_on),
            "produces_hint": self.produces_hint.to_dict(),
            "wave": self.wave,
            "subtasks": list(self.subtasks),
            "parent": self.parent,
            "requires": list(self.requires),
            "step": dict(self.step),
            "attempts": self.attempts,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failure_reason": self.failure_reason,
            "commits": list(self.commits),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            status=TaskStatus(data.get("status", TaskStatus.PENDING)),
            depends_on={str(item) for item in data.get("depends_on", [])},
            produces_hint=ProducesHint.from_dict(data.get("produces_hint")),
            wave=data.get("wave"),
            subtasks=[str(item) for item in data.get("subtasks", [])],
            parent=data.get("parent"),
            requires=[str(item) for item in data.get("requires", [])],
            step=dict(data.get("step") or {}),
            attempts=int(data.get("attempts", 0)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            failure_reason=data.get("failure_reason"),
            commits=[str(item) for item in data.get("commits", [])],
        )


@dataclass(slots=True)
class Wave:
    wave_id: int
    task_ids: list[str]
    can_parallelize: bool = True
    isolation_score: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave_id": self.wave_id,
            "task_ids": list(self.task_ids),
            "can_parallelize": self.can_parallelize,
            "isolation_score": self.isolation_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Wave:
        return cls(
            wave_id=int(data["wave_id"]),
            task_ids=[str(item) for item in data.get("task_ids", [])],
            can_parallelize=bool(data.get("can_parallelize", True)),
            isolation_score=float(data.get("isolation_score", 1.0)),
        )


@dataclass(slots=True, frozen=True)
class ArtifactClaim:
    kind: ArtifactKind
    identifier: str
    source_task_id: str
    path: str | None = None

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (str(self.kind), self.identifier, self.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "identifier": self.identifier,
            "source_task_id": self.source_task_id,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactClaim:
        return cls(
            kind=ArtifactKind(data["kind"]),
            identifier=str(data["identifier"]),
            source_task_id=str(data.get("source_task_id", "")),
            path=data.get("path"),
        )


class VerifiedArtifactSet:
    """Claims confirmed against the output tree; append-only within a run."""

    __slots__ = ("_claims", "_keys")

    def __init__(self, claims: Iterable[ArtifactClaim] = ()) -> None:
        self._claims: list[ArtifactClaim] = []
        self._keys: set[tuple[str, str, str | None]] = set()
        for claim in claims:
            self.add(claim)

    def add(self, claim: ArtifactClaim) -> bool:
        if claim.key in self._keys:
            return False
        self._keys.add(claim.key)
        self._claims.append(claim)
        return True

    def merge(self, claims: Iterable[ArtifactClaim]) -> list[ArtifactClaim]:
        return [claim for claim in claims if self.add(claim)]

    def find(self, identifier: str) -> ArtifactClaim | None:
        for claim in self._claims:
            if claim.identifier == identifier:
                return claim
            if claim.path and f"{claim.path}:{claim.identifier}" == identifier:
                return claim
        return None

    def __contains__(self, item: object) -> bool:
        if isinstance(item, ArtifactClaim):
            return item.key in self._keys
        if isinstance(item, str):
            return self.find(item) is not None
        return False

    def __iter__(self) -> Iterator[ArtifactClaim]:
        return iter(list(self._claims))

    def __len__(self) -> int:
        return len(self._claims)

    def to_list(self) -> list[dict[str, Any]]:
        return [claim.to_dict() for claim in self._claims]

    @classmethod
    def from_list(cls, payload: Any) -> VerifiedArtifactSet:
        if not isinstance(payload, list):
            return cls()
        return cls(ArtifactClaim.from_dict(item) for item in payload if isinstance(item, dict))


@dataclass(slots=True)
class WorkerResult:
    task_id: str
    status: WorkerStatus
    claims: list[ArtifactClaim] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    blocker: str | None = None
    failed_subtask: str | None = None
    subtask_statuses: dict[str, TaskStatus] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": str(self.status),
            "claims": [claim.to_dict() for claim in self.claims],
            "commits": list(self.commits),
            "blocker": self.blocker,
            "failed_subtask": self.failed_subtask,
            "subtask_statuses": {key: str(value) for key, value in self.subtask_statuses.items()},
        }


def task_status_for(result: WorkerResult) -> TaskStatus:
    if result.status == WorkerStatus.PASS:
        return TaskStatus.COMPLETED
    if result.status == WorkerStatus.BLOCKED:
        return TaskStatus.BLOCKED
    return TaskStatus.FAILED


@dataclass(slots=True)
class ExecutionState:
    phase: Phase = Phase.INIT
    current_wave: int = 1
    total_waves: int = 0
    poll_started_at: float | None = None
    poll_deadline: float | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    wave_branch: str | None = None
    review_id: str | None = None
    review_status: dict[str, Any] = field(default_factory=dict)
    execution_status: dict[str, Any] = field(default_factory=dict)
    last_error: dict[str, Any] | None = None
    future_tasks: list[dict[str, Any]] = field(default_factory=list)
    wave_history: list[dict[str, Any]] = field(default_factory=list)
    session: dict[str, Any] | None = None
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": str(self.phase),
            "current_wave": self.current_wave,
            "total_waves": self.total_waves,
            "poll_started_at": self.poll_started_at,
            "poll_deadline": self.poll_deadline,
            "history": list(self.history),
            "wave_branch": self.wave_branch,
            "review_id": self.review_id,
            "review_status": dict(self.review_status),
            "execution_status": dict(self.execution_status),
            "last_error": self.last_error,
            "future_tasks": list(self.future_tasks),
            "wave_history": list(self.wave_history),
            "session": self.session,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionState:
        return cls(
            phase=Phase(data.get("phase", Phase.INIT)),
            current_wave=int(data.get("current_wave", 1)),
            total_waves=int(data.get("total_waves", 0)),
            poll_started_at=data.get("poll_started_at"),
            poll_deadline=data.get("poll_deadline"),
            history=list(data.get("history", [])),
            wave_branch=data.get("wave_branch"),
            review_id=data.get("review_id"),
            review_status=dict(data.get("review_status") or {}),
            execution_status=dict(data.get("execution_status") or {}),
            last_error=data.get("last_error"),
            future_tasks=list(data.get("future_tasks", [])),
            wave_history=list(data.get("wave_history", [])),
            session=data.get("session"),
            created_at=str(data.get("created_at") or utcnow_iso()),
        )
