from waveline.feedback import (
    Feedback,
    RoadmapDraft,
    TaskDraft,
    categorize,
    classify,
    classify_all,
    draft_from_future,
    drafts_to_tasks,
    roadmap_items,
    sorted_future,
)
from waveline.graph import TaskGraph
from waveline.models import Task


def test_section_headers_win_over_keywords() -> None:
    # "cache" alone would be a blocking perf keyword
    assert categorize("## Future Improvements\n- add a cache") == ("future", 6, "section")
    assert categorize("### Security Issues\nlooks fine otherwise") == ("security", 1, "section")
    assert categorize("the query builder allows injection") == ("security", 1, "keyword")
    assert categorize("Could use an alternative approach") == ("suggestion", 5, "keyword")
    assert categorize("hmm") == ("other", 5, "keyword")


def test_blocking_and_roadmap_drafts() -> None:
    blocking = classify(Feedback(body="**Must Fix**: parser crashes", path="src/parser.py"))
    deferred = classify("Backlog: support YAML input")

    assert isinstance(blocking, TaskDraft)
    assert blocking.category == "security"
    assert blocking.title == "Must Fix: parser crashes"
    assert blocking.path == "src/parser.py"
    assert isinstance(deferred, RoadmapDraft)
    assert deferred.category == "future"


def test_classify_all_orders_by_priority() -> None:
    drafts = classify_all(["Nitpicks: spacing", "Critical Issues: leaks tokens", "LGTM"])

    assert [draft.category for draft in drafts] == ["security", "suggestion", "praise"]


def test_blocking_drafts_become_numbered_feedback_tasks() -> None:
    graph = TaskGraph([Task(id="T1"), Task(id="fb-1")])
    drafts = [
        classify(Feedback(body="Must Fix: validate ids", path="src/ids.py")),
        classify("this is broken on empty input"),
    ]

    created = drafts_to_tasks(drafts, graph)

    assert [task.id for task in created] == ["fb-2", "fb-3"]
    assert created[0].produces_hint.files == ["src/ids.py"]
    assert created[1].description.startswith("[bug]")
    assert "fb-3" in graph


def test_roadmap_items_skip_praise_and_continue_numbering() -> None:
    drafts = [classify("Tech Debt: split the module"), classify("Nice work, well done")]

    items = roadmap_items(drafts, [{"id": "future-3"}], review_id="feature-demo-wave-1")

    assert [item["id"] for item in items] == ["future-4"]
    assert items[0]["review_id"] == "feature-demo-wave-1"
    assert items[0]["title"] == "Tech Debt: split the module"


def test_future_item_round_trips_into_a_draft() -> None:
    item = classify(Feedback(body="Deferred: add metrics", path="src/m.py")).to_future("future-1")

    draft = draft_from_future(item)

    assert isinstance(draft, TaskDraft)
    assert draft.source == "promoted"
    assert draft.path == "src/m.py"
    assert draft.body == "Deferred: add metrics"


def test_sorted_future_uses_priority_then_natural_id() -> None:
    items = [
        {"id": "future-10", "priority": 6},
        {"id": "future-2", "priority": 6},
        {"id": "future-1", "priority": 5},
    ]

    assert [item["id"] for item in sorted_future(items)] == ["future-1", "future-2", "future-10"]
