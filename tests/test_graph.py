import pytest

from waveline.errors import MissingDependency
from waveline.graph import TaskGraph, natural_key
from waveline.models import ProducesHint, Task, TaskStatus, aggregate_status


def _definition() -> dict:
    return {
        "tasks": [
            {
                "id": "1",
                "description": "parser",
                "produces": {"files": ["src/parser.py"], "exports": ["src/parser.py:parse"]},
                "subtasks": [
                    {"description": "tokenize"},
                    {"id": "1.b", "description": "parse", "requires": ["src/lexer.py"]},
                ],
            },
            {"id": "2", "description": "cli", "depends_on": ["1"]},
        ]
    }


def test_from_definition_flattens_subtasks() -> None:
    graph = TaskGraph.from_definition(_definition())

    assert graph.ids() == ["1", "1.1", "1.b", "2"]
    assert [task.id for task in graph.top_level()] == ["1", "2"]
    assert graph.get("1").subtasks == ["1.1", "1.b"]
    assert graph.get("1.b").parent == "1"
    assert graph.get("1.b").requires == ["src/lexer.py"]
    assert graph.get("1").produces_hint.exports == ["src/parser.py:parse"]
    assert graph.dependents("1") == {"2"}


def test_definition_without_id_is_rejected() -> None:
    with pytest.raises(ValueError):
        TaskGraph.from_definition({"tasks": [{"description": "anonymous"}]})


def test_natural_ordering() -> None:
    assert sorted(["10", "2", "1.10", "1.2"], key=natural_key) == ["1.2", "1.10", "2", "10"]


def test_validate_rejects_unknown_and_subtask_dependencies() -> None:
    graph = TaskGraph([Task(id="1", depends_on={"9"})])
    with pytest.raises(MissingDependency):
        graph.validate()

    graph = TaskGraph.from_definition(_definition())
    graph.get("2").depends_on = {"1.1"}
    with pytest.raises(MissingDependency, match="depend on its parent"):
        graph.validate()


def test_find_cycle_returns_closed_path() -> None:
    graph = TaskGraph(
        [
            Task(id="a", depends_on={"c"}),
            Task(id="b", depends_on={"a"}),
            Task(id="c", depends_on={"b"}),
        ]
    )

    cycle = graph.find_cycle()

    assert cycle is not None
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_aggregate_status_rules() -> None:
    assert aggregate_status([]) == TaskStatus.PENDING
    assert aggregate_status([TaskStatus.COMPLETED] * 2) == TaskStatus.COMPLETED
    assert aggregate_status([TaskStatus.COMPLETED, TaskStatus.FAILED]) == TaskStatus.FAILED
    assert aggregate_status([TaskStatus.BLOCKED, TaskStatus.PENDING]) == TaskStatus.BLOCKED
    assert aggregate_status([TaskStatus.COMPLETED, TaskStatus.PENDING]) == TaskStatus.IN_PROGRESS


def test_parent_cannot_be_completed_directly() -> None:
    graph = TaskGraph.from_definition(_definition())

    with pytest.raises(ValueError, match="completes only when every subtask completes"):
        graph.update_status("1", TaskStatus.COMPLETED)

    graph.update_status("1.1", TaskStatus.COMPLETED)
    graph.update_status("1.b", TaskStatus.FAILED, reason="red")
    assert graph.status_of("1") == TaskStatus.FAILED
    assert graph.get("1").status == TaskStatus.FAILED

    graph.update_status("1.b", TaskStatus.COMPLETED)
    assert graph.status_of("1") == TaskStatus.COMPLETED
    assert graph.get("1").completed_at is not None


def test_parent_status_fans_out_to_unfinished_children() -> None:
    graph = TaskGraph.from_definition(_definition())
    graph.update_status("1.1", TaskStatus.COMPLETED)

    graph.update_status("1", TaskStatus.IN_PROGRESS)

    assert graph.get("1.1").status == TaskStatus.COMPLETED
    assert graph.get("1.b").status == TaskStatus.IN_PROGRESS
    assert graph.get("1.b").attempts == 1


def test_summary_counts_top_level_tasks() -> None:
    graph = TaskGraph.from_definition(_definition())
    graph.update_status("1.1", TaskStatus.COMPLETED)
    graph.update_status("1.b", TaskStatus.COMPLETED)

    summary = graph.summary()

    assert summary["total"] == 2
    assert summary["completed"] == 1
    assert summary["pending"] == 1
    assert summary["overall_percent"] == 50


def test_serialization_and_pristine_copy() -> None:
    graph = TaskGraph.from_definition(_definition())
    graph.update_status("2", TaskStatus.FAILED, reason="boom")
    graph.get("2").commits.append("abc")
    graph.get("2").wave = 2

    restored = TaskGraph.from_dict(graph.to_dict())
    pristine = restored.pristine()

    assert restored.get("2").failure_reason == "boom"
    assert restored.get("1").produces_hint == ProducesHint(
        files=["src/parser.py"], exports=["src/parser.py:parse"]
    )
    assert pristine.get("2").status == TaskStatus.PENDING
    assert pristine.get("2").commits == []
    assert pristine.get("2").wave is None
    assert pristine.get("2").depends_on == {"1"}
