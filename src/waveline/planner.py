from __future__ import annotations

import logging
from collections.abc import Sequence
from itertools import combinations
from pathlib import PurePosixPath

from waveline.errors import CyclicDependency, PlanningError
from waveline.graph import TaskGraph, natural_key
from waveline.models import Task, Wave

logger = logging.getLogger(__name__)


def _normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return str(PurePosixPath(normalized))


def _hint_files(task: Task) -> set[str]:
    return {_normalize_path(item) for item in task.produces_hint.files if item.strip()}


def isolation(tasks: Sequence[Task]) -> tuple[float, bool]:
    """Score file-overlap isolation for one wave.

    The score is the share of task pairs whose declared target files are
    disjoint; any overlapping pair forces sequential execution.
    """
    pairs = list(combinations(tasks, 2))
    if not pairs:
        return 1.0, True
    disjoint = 0
    for left, right in pairs:
        overlap = _hint_files(left) & _hint_files(right)
        if overlap:
            logger.debug(
                "Tasks %s and %s both target %s", left.id, right.id, ", ".join(sorted(overlap))
            )
        else:
            disjoint += 1
    score = round(disjoint / len(pairs), 4)
    return score, disjoint == len(pairs)


def plan_waves(graph: TaskGraph, existing: Sequence[Wave] = ()) -> list[Wave]:
    """Partition the graph's top-level tasks into dependency-ordered waves.

    Waves already in ``existing`` are returned unchanged; tasks that are not
    yet in any wave are peeled into new waves numbered after the last one.
    The result depends only on the task set, never on insertion order.
    """
    graph.validate()
    cycle = graph.find_cycle()
    if cycle:
        raise CyclicDependency(cycle)

    waves = [Wave.from_dict(wave.to_dict()) for wave in existing]
    placed: dict[str, int] = {}
    for wave in waves:
        for task_id in wave.task_ids:
            if task_id not in graph:
                raise PlanningError(
                    f"planned wave {wave.wave_id} references unknown task {task_id}",
                    wave=wave.wave_id,
                    remediation="run recover to re-plan the spec from scratch",
                )
            placed[task_id] = wave.wave_id

    remaining = {task.id: task for task in graph.top_level() if task.id not in placed}
    next_id = max((wave.wave_id for wave in waves), default=0) + 1

    while remaining:
        ready = [
            task
            for task in remaining.values()
            if all(dep_id in placed for dep_id in task.depends_on)
        ]
        if not ready:
            # find_cycle already ruled this out; guard against inconsistent input
            raise CyclicDependency(sorted(remaining, key=natural_key))
        ready.sort(key=lambda task: natural_key(task.id))
        score, can_parallelize = isolation(ready)
        wave = Wave(
            wave_id=next_id,
            task_ids=[task.id for task in ready],
            can_parallelize=can_parallelize,
            isolation_score=score,
        )
        waves.append(wave)
        for task in ready:
            placed[task.id] = next_id
            del remaining[task.id]
        next_id += 1

    for task in graph:
        owner = task.parent or task.id
        if owner in placed:
            task.wave = placed[owner]

    logger.debug("Planned %d waves for %d tasks", len(waves), len(placed))
    return waves


def wave_of(waves: Sequence[Wave], wave_id: int) -> Wave | None:
    for wave in waves:
        if wave.wave_id == wave_id:
            return wave
    return None
