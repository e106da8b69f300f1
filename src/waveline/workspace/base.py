from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}-")


def normalize_spec_name(spec_id: str) -> str:
    """Drop a leading ``YYYY-MM-DD-`` so ``2025-01-29-auth`` becomes ``auth``."""
    return _DATE_PREFIX.sub("", spec_id.strip())


@dataclass(slots=True)
class WorkspaceDescriptor:
    branch: str
    root: Path
    protected: bool


@dataclass(slots=True)
class MergeResult:
    ok: bool
    review_id: str
    commit: str | None = None
    conflict: str | None = None


class Workspace(ABC):
    """Isolated-branch, commit, review and merge capabilities used by the core."""

    def __init__(
        self,
        root: Path,
        *,
        ledger_path: Path,
        base_branch: str = "main",
        protected_branches: Iterable[str] = ("main", "master"),
        branch_prefix: str = "feature",
    ) -> None:
        self.root = root.resolve()
        self.ledger_path = ledger_path
        self.base_branch = base_branch
        self.protected_branches = set(protected_branches) | {base_branch}
        self.branch_prefix = branch_prefix.strip("/")

    def branch_name(self, spec_id: str, wave: int) -> str:
        return f"{self.branch_prefix}/{normalize_spec_name(spec_id)}-wave-{wave}"

    def spec_branch_name(self, spec_id: str) -> str:
        return f"{self.branch_prefix}/{normalize_spec_name(spec_id)}"

    def is_protected(self, branch: str) -> bool:
        return branch in self.protected_branches

    def descriptor(self, branch: str) -> WorkspaceDescriptor:
        return WorkspaceDescriptor(
            branch=branch, root=self.root, protected=self.is_protected(branch)
        )

    def write_changes(self, changes: Mapping[str, str]) -> list[str]:
        written: list[str] = []
        for relative, content in changes.items():
            target = (self.root / relative).resolve()
            if target != self.root and self.root not in target.parents:
                raise ValueError(f"Refusing to write outside the workspace: {relative}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            written.append(relative)
        return written

    def _load_ledger(self) -> dict[str, Any]:
        if not self.ledger_path.exists():
            return {"reviews": {}}
        try:
            payload = json.loads(self.ledger_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {"reviews": {}}
        if not isinstance(payload, dict):
            return {"reviews": {}}
        if not isinstance(payload.get("reviews"), dict):
            payload["reviews"] = {}
        return payload

    def _save_ledger(self, ledger: dict[str, Any]) -> None:
        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)
        self.ledger_path.write_text(
            json.dumps(ledger, ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
        )

    def _record_review(self, branch_id: str, target: str) -> str:
        ledger = self._load_ledger()
        reviews = ledger["reviews"]
        slug = branch_id.replace("/", "-")
        for review_id, entry in reviews.items():
            if entry.get("branch") == branch_id and entry.get("status") == "open":
                return review_id
        review_id = slug
        suffix = 2
        while review_id in reviews:
            review_id = f"{slug}-{suffix}"
            suffix += 1
        reviews[review_id] = {"branch": branch_id, "target": target, "status": "open"}
        self._save_ledger(ledger)
        return review_id

    def review_entry(self, review_id: str) -> dict[str, Any]:
        entry = self._load_ledger()["reviews"].get(review_id)
        if not isinstance(entry, dict):
            raise KeyError(f"Unknown review: {review_id}")
        return entry

    def _mark_merged(self, review_id: str, commit: str | None) -> None:
        ledger = self._load_ledger()
        entry = ledger["reviews"].get(review_id)
        if isinstance(entry, dict):
            entry["status"] = "merged"
            entry["merge_commit"] = commit
            self._save_ledger(ledger)

    @abstractmethod
    def current_branch(self) -> str:
        """Return the branch the output tree is on."""

    @abstractmethod
    def create_isolated_branch(self, base: str, name: str | None = None) -> str:
        """Create (or reset) an isolated branch from ``base`` and switch to it."""

    @abstractmethod
    def commit(self, branch_id: str, changes: Mapping[str, str] | None, message: str) -> str:
        """Write ``changes`` (relative path -> content) and record one commit."""

    @abstractmethod
    def open_review(self, branch_id: str, target: str) -> str:
        """Open a review of ``branch_id`` against ``target`` and return its id."""

    @abstractmethod
    def merge(self, review_id: str) -> MergeResult:
        """Merge a reviewed branch; conflicts are reported, never raised."""
