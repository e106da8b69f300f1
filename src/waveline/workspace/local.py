from __future__ import annotations

import hashlib
from collections.abc import Mapping

from waveline.models import utcnow_iso
from waveline.workspace.base import MergeResult, Workspace


class LocalWorkspace(Workspace):
    """Plain-directory workspace for output trees that are not git repositories.

    Branches are names in the ledger and commits are content hashes; merging
    always succeeds because every branch shares the same directory.
    """

    def current_branch(self) -> str:
        return str(self._load_ledger().get("current") or self.base_branch)

    def create_isolated_branch(self, base: str, name: str | None = None) -> str:
        branch = name or f"{self.branch_prefix}/{base}-isolated"
        ledger = self._load_ledger()
        branches = ledger.setdefault("branches", {})
        branches.setdefault(branch, {"base": base, "commits": []})
        ledger["current"] = branch
        self._save_ledger(ledger)
        return branch

    def commit(self, branch_id: str, changes: Mapping[str, str] | None, message: str) -> str:
        written = self.write_changes(changes or {})
        ledger = self._load_ledger()
        branch = ledger.setdefault("branches", {}).setdefault(
            branch_id, {"base": self.base_branch, "commits": []}
        )
        parent = branch["commits"][-1]["id"] if branch["commits"] else ""
        digest = hashlib.sha1(usedforsecurity=False)
        digest.update(f"{parent}\0{branch_id}\0{message}".encode())
        for relative in sorted(written):
            digest.update(f"\0{relative}\0{changes[relative]}".encode())
        commit_id = digest.hexdigest()
        branch["commits"].append(
            {"id": commit_id, "message": message, "files": sorted(written), "at": utcnow_iso()}
        )
        self._save_ledger(ledger)
        return commit_id

    def open_review(self, branch_id: str, target: str) -> str:
        return self._record_review(branch_id, target)

    def merge(self, review_id: str) -> MergeResult:
        entry = self.review_entry(review_id)
        ledger = self._load_ledger()
        commits = ledger.get("branches", {}).get(entry["branch"], {}).get("commits", [])
        commit = commits[-1]["id"] if commits else None
        self._mark_merged(review_id, commit)
        ledger = self._load_ledger()
        ledger["current"] = entry["target"]
        self._save_ledger(ledger)
        return MergeResult(ok=True, review_id=review_id, commit=commit)
