from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from typing import Any

from waveline.errors import MissingDependency
from waveline.models import ProducesHint, Task, TaskStatus, aggregate_status, utcnow_iso

_NATURAL_SPLIT = re.compile(r"(\d+)")


def natural_key(task_id: str) -> tuple[Any, ...]:
    """Sort key that orders ``2`` before ``10`` and ``1.2`` before ``1.10``."""
    return tuple(int(part) if part.isdigit() else part for part in _NATURAL_SPLIT.split(task_id))


class TaskGraph:
    """Flat arena of tasks keyed by id; edges are stored as id sets."""

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            self.add_task(task)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def add_task(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise ValueError(f"Duplicate task id: {task.id}")
        self._tasks[task.id] = task
        return task

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown task id: {task_id}") from None

    def ids(self) -> list[str]:
        return sorted(self._tasks, key=natural_key)

    def top_level(self) -> list[Task]:
        return [self._tasks[task_id] for task_id in self.ids() if not self._tasks[task_id].parent]

    def children(self, task_id: str) -> list[Task]:
        return [self._tasks[child_id] for child_id in self.get(task_id).subtasks]

    def dependents(self, task_id: str) -> set[str]:
        return {task.id for task in self._tasks.values() if task_id in task.depends_on}

    def validate(self) -> None:
        for task in self._tasks.values():
            for dep_id in task.depends_on:
                if dep_id not in self._tasks:
                    raise MissingDependency(
                        f"task {task.id} depends on unknown task {dep_id}",
                        task_id=task.id,
                    )
                if self._tasks[dep_id].parent:
                    raise MissingDependency(
                        f"task {task.id} depends on subtask {dep_id}; depend on its parent",
                        task_id=task.id,
                    )
            for child_id in task.subtasks:
                child = self._tasks.get(child_id)
                if child is None or child.parent != task.id:
                    raise MissingDependency(
                        f"task {task.id} lists subtask {child_id} that does not point back",
                        task_id=task.id,
                    )

    def find_cycle(self) -> list[str] | None:
        """Return one dependency cycle as a closed id path, or None."""
        white, grey, black = 0, 1, 2
        colour = {task_id: white for task_id in self._tasks}
        stack: list[str] = []

        def _visit(task_id: str) -> list[str] | None:
            colour[task_id] = grey
            stack.append(task_id)
            for dep_id in sorted(self._tasks[task_id].depends_on, key=natural_key):
                if dep_id not in colour:
                    continue
                if colour[dep_id] == grey:
                    start = stack.index(dep_id)
                    return [*stack[start:], dep_id]
                if colour[dep_id] == white:
                    found = _visit(dep_id)
                    if found:
                        return found
            stack.pop()
            colour[task_id] = black
            return None

        for task_id in self.ids():
            if colour[task_id] == white:
                found = _visit(task_id)
                if found:
                    return found
        return None

    def status_of(self, task_id: str) -> TaskStatus:
        task = self.get(task_id)
        if task.is_parent:
            return aggregate_status(self.status_of(child_id) for child_id in task.subtasks)
        return task.status

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        reason: str | None = None,
    ) -> Task:
        task = self.get(task_id)
        if task.is_parent and status == TaskStatus.COMPLETED:
            raise ValueError(
                f"Task {task_id} has subtasks; it completes only when every subtask completes."
            )
        self._set_status(task, TaskStatus(status), reason)
        if task.is_parent:
            # a parent status fans out to the subtasks that have not completed yet
            for child in self.children(task_id):
                if child.status != TaskStatus.COMPLETED:
                    self._set_status(child, TaskStatus(status), reason)
        self._refresh_parent(task)
        return task

    def _set_status(self, task: Task, status: TaskStatus, reason: str | None) -> None:
        task.status = status
        if status == TaskStatus.IN_PROGRESS:
            task.started_at = task.started_at or utcnow_iso()
            task.attempts += 1
        if status == TaskStatus.COMPLETED:
            task.completed_at = utcnow_iso()
            task.failure_reason = None
        if status == TaskStatus.PENDING:
            task.completed_at = None
            task.failure_reason = None
        if reason:
            task.failure_reason = reason

    def _refresh_parent(self, task: Task) -> None:
        owner = task if task.is_parent else None
        if owner is None and task.parent:
            owner = self._tasks.get(task.parent)
        if owner is None:
            return
        owner.status = self.status_of(owner.id)
        if owner.status == TaskStatus.COMPLETED:
            owner.completed_at = owner.completed_at or utcnow_iso()

    def summary(self) -> dict[str, int]:
        counts = {str(status): 0 for status in TaskStatus}
        top = self.top_level()
        for task in top:
            counts[str(self.status_of(task.id))] += 1
        total = len(top)
        completed = counts[str(TaskStatus.COMPLETED)]
        return {
            "total": total,
            **counts,
            "overall_percent": int(completed * 100 / total) if total else 0,
        }

    def pristine(self) -> TaskGraph:
        """Copy of the definitions only: no status, wave, attempts or commits."""
        return TaskGraph(
            Task(
                id=task.id,
                description=task.description,
                depends_on=set(task.depends_on),
                produces_hint=ProducesHint.from_dict(task.produces_hint.to_dict()),
                subtasks=list(task.subtasks),
                parent=task.parent,
                requires=list(task.requires),
                step=dict(task.step),
            )
            for task in self
        )

    def to_dict(self) -> list[dict[str, Any]]:
        return [self._tasks[task_id].to_dict() for task_id in self.ids()]

    @classmethod
    def from_dict(cls, payload: Any) -> TaskGraph:
        if not isinstance(payload, list):
            return cls()
        return cls(Task.from_dict(item) for item in payload if isinstance(item, dict))

    @classmethod
    def from_definition(cls, payload: dict[str, Any]) -> TaskGraph:
        """Build a graph from a ``tasks.json`` spec definition.

        Subtasks are nested under their parent and flattened into the arena;
        a subtask without an id gets ``<parent>.<n>``.
        """
        graph = cls()
        entries = payload.get("tasks", []) if isinstance(payload, dict) else []
        for raw in entries:
            if not isinstance(raw, dict) or "id" not in raw:
                raise ValueError("Every task definition needs an 'id'.")
            parent_id = str(raw["id"])
            child_ids: list[str] = []
            for index, raw_child in enumerate(raw.get("subtasks", []), start=1):
                if isinstance(raw_child, dict):
                    child_payload = dict(raw_child)
                else:
                    child_payload = {"description": str(raw_child)}
                child_id = str(child_payload.get("id") or f"{parent_id}.{index}")
                child_ids.append(child_id)
                graph.add_task(
                    Task(
                        id=child_id,
                        description=str(child_payload.get("description", "")),
                        parent=parent_id,
                        requires=[str(item) for item in child_payload.get("requires", [])],
                        step=dict(child_payload.get("step") or {}),
                    )
                )
            graph.add_task(
                Task(
                    id=parent_id,
                    description=str(raw.get("description", "")),
                    depends_on={str(item) for item in raw.get("depends_on", [])},
                    produces_hint=ProducesHint.from_dict(raw.get("produces", {})),
                    subtasks=child_ids,
                    requires=[str(item) for item in raw.get("requires", [])],
                    step=dict(raw.get("step") or {}),
                )
            )
        return graph
