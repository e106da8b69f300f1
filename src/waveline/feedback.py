from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from waveline.graph import TaskGraph, natural_key
from waveline.models import ProducesHint, Task, utcnow_iso

# section headers written by review bots win over plain keywords
SECTION_PATTERNS: list[tuple[re.Pattern[str], str, int]] = [
    (
        re.compile(
            r"Critical Issues|Must Fix|Blocking|Blockers|Critical Bugs|Security Issues"
            r"|\*\*CRITICAL\*\*|🔴\s*Critical",
            re.IGNORECASE,
        ),
        "security",
        1,
    ),
    (
        re.compile(
            r"Should Fix Before Merge|Recommended.*Fix|Fix Before Merge|Important Issues"
            r"|High Priority|\*\*HIGH\*\*|🟠\s*High",
            re.IGNORECASE,
        ),
        "high",
        2,
    ),
    (
        re.compile(
            r"Can Be Addressed in Future|Future Waves|Address Later|Future Considerations"
            r"|Backlog|Tech Debt|Out of Scope|Future Improvements|Potential Enhancements"
            r"|Beyond Scope|For Future|Consider for v2|Post-MVP|Phase 2|Nice-to-Have"
            r"|Deferred|Low Priority Items",
            re.IGNORECASE,
        ),
        "future",
        6,
    ),
    (
        re.compile(
            r"Nice to Have|Optional|Consider for Future|Low Priority|Minor Issues"
            r"|Minor Suggestions|Nitpicks|Style Suggestions|\*\*LOW\*\*|🟡\s*Low|⚪\s*Info",
            re.IGNORECASE,
        ),
        "suggestion",
        5,
    ),
    (re.compile(r"Medium Priority|\*\*MEDIUM\*\*|🟡\s*Medium", re.IGNORECASE), "missing", 3),
    (
        re.compile(r"APPROVE|LGTM|Looks Good|Ship It|Ready to Merge|✅|👍", re.IGNORECASE),
        "praise",
        7,
    ),
    (
        re.compile(r"Code Quality|Testing|Documentation|Test Coverage", re.IGNORECASE),
        "style",
        4,
    ),
]

KEYWORD_PATTERNS: list[tuple[re.Pattern[str], str, int]] = [
    (
        re.compile(r"security|vulnerability|unsafe|injection|XSS|SQL|CSRF|auth", re.IGNORECASE),
        "security",
        1,
    ),
    (
        re.compile(r"bug|broken|doesn.t work|error|crash|exception|fail", re.IGNORECASE),
        "bug",
        2,
    ),
    (
        re.compile(r"incorrect|wrong|should be|logic error|off.by.one", re.IGNORECASE),
        "logic",
        2,
    ),
    (re.compile(r"missing|add|implement|include|need|require", re.IGNORECASE), "missing", 3),
    (re.compile(r"performance|slow|optimize|cache|memory|leak", re.IGNORECASE), "perf", 3),
    (re.compile(r"naming|format|style|convention|lint|indent", re.IGNORECASE), "style", 4),
    (re.compile(r"comment|document|explain|unclear|confusing", re.IGNORECASE), "docs", 4),
    (re.compile(r"\?$", re.MULTILINE), "question", 5),
    (re.compile(r"consider|might|could|optional|alternative", re.IGNORECASE), "suggestion", 5),
    (re.compile(r"great|nice|good|excellent|well done|lgtm", re.IGNORECASE), "praise", 6),
]

BLOCKING_CATEGORIES = frozenset(
    {"security", "high", "bug", "logic", "missing", "perf", "style", "docs"}
)
DROPPED_CATEGORIES = frozenset({"praise"})


@dataclass(slots=True)
class Feedback:
    body: str
    path: str | None = None
    author: str | None = None
    feedback_id: str | None = None
    step: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Feedback:
        if isinstance(data, str):
            return cls(body=data)
        if not isinstance(data, dict):
            raise ValueError(f"Unsupported feedback item: {data!r}")
        return cls(
            body=str(data.get("body", "")),
            path=data.get("path"),
            author=data.get("author"),
            feedback_id=str(data["id"]) if data.get("id") is not None else None,
            step=dict(data.get("step") or {}),
        )


@dataclass(slots=True)
class _Draft:
    title: str
    body: str
    category: str
    priority: int
    source: str
    path: str | None = None
    step: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDraft(_Draft):
    """Feedback that must be addressed before the wave can merge."""


@dataclass(slots=True)
class RoadmapDraft(_Draft):
    """Feedback captured for later; never blocks the merge."""

    def to_future(self, future_id: str, review_id: str | None = None) -> dict[str, Any]:
        return {
            "id": future_id,
            "title": self.title,
            "description": self.body,
            "category": self.category,
            "priority": self.priority,
            "source": self.source,
            "path": self.path,
            "step": dict(self.step),
            "review_id": review_id,
            "captured_at": utcnow_iso(),
        }


def _title(body: str) -> str:
    for line in body.splitlines():
        cleaned = re.sub(r"^[#>*\-\s]+|[*_`]+", "", line).strip()
        if cleaned:
            return cleaned if len(cleaned) <= 80 else cleaned[:77].rstrip() + "..."
    return "Review feedback"


def categorize(body: str) -> tuple[str, int, str]:
    """Return ``(category, priority, source)`` for one feedback body."""
    for pattern, category, priority in SECTION_PATTERNS:
        if pattern.search(body):
            return category, priority, "section"
    for pattern, category, priority in KEYWORD_PATTERNS:
        if pattern.search(body):
            return category, priority, "keyword"
    return "other", 5, "keyword"


def classify(feedback: Feedback | str) -> TaskDraft | RoadmapDraft:
    item = feedback if isinstance(feedback, Feedback) else Feedback(body=feedback)
    category, priority, source = categorize(item.body)
    draft_type = TaskDraft if category in BLOCKING_CATEGORIES else RoadmapDraft
    return draft_type(
        title=_title(item.body),
        body=item.body.strip(),
        category=category,
        priority=priority,
        source=source,
        path=item.path,
        step=dict(item.step),
    )


def classify_all(items: Iterable[Feedback | str]) -> list[TaskDraft | RoadmapDraft]:
    """Classify and order by priority, most urgent first."""
    drafts = [classify(item) for item in items]
    return sorted(drafts, key=lambda draft: draft.priority)


def _next_number(existing: Iterable[str], prefix: str) -> int:
    numbers = [
        int(item[len(prefix) :])
        for item in existing
        if item.startswith(prefix) and item[len(prefix) :].isdigit()
    ]
    return max(numbers, default=0) + 1


def drafts_to_tasks(drafts: Sequence[TaskDraft], graph: TaskGraph) -> list[Task]:
    """Add one top-level task ``fb-<n>`` per draft to ``graph`` and return them."""
    number = _next_number(graph.ids(), "fb-")
    created: list[Task] = []
    for draft in drafts:
        task = Task(
            id=f"fb-{number}",
            description=f"[{draft.category}] {draft.title}\n\n{draft.body}".strip(),
            produces_hint=ProducesHint(files=[draft.path] if draft.path else []),
            step=dict(draft.step),
        )
        graph.add_task(task)
        created.append(task)
        number += 1
    return created


def roadmap_items(
    drafts: Sequence[RoadmapDraft],
    existing: Sequence[dict[str, Any]],
    review_id: str | None = None,
) -> list[dict[str, Any]]:
    number = _next_number((str(item.get("id", "")) for item in existing), "future-")
    items: list[dict[str, Any]] = []
    for draft in drafts:
        if draft.category in DROPPED_CATEGORIES:
            continue
        items.append(draft.to_future(f"future-{number}", review_id))
        number += 1
    return items


def draft_from_future(item: dict[str, Any]) -> TaskDraft:
    return TaskDraft(
        title=str(item.get("title", "")),
        body=str(item.get("description") or item.get("title", "")),
        category=str(item.get("category", "other")),
        priority=int(item.get("priority", 5)),
        source="promoted",
        path=item.get("path"),
        step=dict(item.get("step") or {}),
    )


def sorted_future(items: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(
        items,
        key=lambda item: (int(item.get("priority", 5)), natural_key(str(item.get("id", "")))),
    )
