import random

import pytest

from waveline.errors import CyclicDependency, PlanningError
from waveline.graph import TaskGraph
from waveline.models import ProducesHint, Task, Wave
from waveline.planner import isolation, plan_waves, wave_of


def _tasks() -> list[Task]:
    return [
        Task(id="T1", produces_hint=ProducesHint(files=["src/a.py"])),
        Task(id="T2", produces_hint=ProducesHint(files=["src/b.py"])),
        Task(id="T3", depends_on={"T1", "T2"}),
    ]


def test_independent_tasks_share_the_first_wave() -> None:
    graph = TaskGraph(_tasks())

    waves = plan_waves(graph)

    assert [(wave.wave_id, wave.task_ids) for wave in waves] == [
        (1, ["T1", "T2"]),
        (2, ["T3"]),
    ]
    assert waves[0].can_parallelize is True
    assert graph.get("T3").wave == 2


def test_plan_is_independent_of_insertion_order() -> None:
    expected = plan_waves(TaskGraph(_tasks()))
    for seed in range(5):
        shuffled = _tasks()
        random.Random(seed).shuffle(shuffled)
        assert plan_waves(TaskGraph(shuffled)) == expected


def test_every_dependency_lands_in_an_earlier_wave() -> None:
    # each number depends on its proper divisors above one
    tasks = [
        Task(id=str(n), depends_on={str(d) for d in range(2, n) if n % d == 0})
        for n in range(1, 13)
    ]
    graph = TaskGraph(tasks)

    waves = plan_waves(graph)
    placed = {task_id: wave.wave_id for wave in waves for task_id in wave.task_ids}

    for task in graph:
        for dep_id in task.depends_on:
            assert placed[dep_id] < placed[task.id]
    assert sum(len(wave.task_ids) for wave in waves) == len(tasks)


def test_cycle_is_rejected() -> None:
    graph = TaskGraph([Task(id="a", depends_on={"b"}), Task(id="b", depends_on={"a"})])

    with pytest.raises(CyclicDependency) as excinfo:
        plan_waves(graph)

    assert "a" in str(excinfo.value)


def test_overlapping_targets_force_sequential_wave() -> None:
    graph = TaskGraph(
        [
            Task(id="1", produces_hint=ProducesHint(files=["./src/shared.py"])),
            Task(id="2", produces_hint=ProducesHint(files=["src/shared.py"])),
            Task(id="3", produces_hint=ProducesHint(files=["src/other.py"])),
        ]
    )

    waves = plan_waves(graph)

    assert waves[0].can_parallelize is False
    assert waves[0].isolation_score == pytest.approx(2 / 3, abs=1e-4)


def test_isolation_of_single_task_wave() -> None:
    assert isolation([Task(id="solo")]) == (1.0, True)


def test_replanning_only_appends_waves() -> None:
    graph = TaskGraph(_tasks())
    existing = plan_waves(graph)
    graph.add_task(Task(id="fb-1"))
    graph.add_task(Task(id="T0"))

    waves = plan_waves(graph, existing)

    assert waves[:2] == existing
    assert [(wave.wave_id, wave.task_ids) for wave in waves[2:]] == [(3, ["T0", "fb-1"])]
    assert graph.get("fb-1").wave == 3
    assert wave_of(waves, 3) is waves[2]
    assert wave_of(waves, 9) is None


def test_existing_wave_with_unknown_task_is_rejected() -> None:
    graph = TaskGraph(_tasks())

    with pytest.raises(PlanningError):
        plan_waves(graph, [Wave(wave_id=1, task_ids=["gone"])])
