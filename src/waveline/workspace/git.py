from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping

from waveline.errors import WorkspaceError
from waveline.workspace.base import MergeResult, Workspace

logger = logging.getLogger(__name__)


class GitWorkspace(Workspace):
    def is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(
                f"git {args[0]} failed: {proc.stderr.strip() or proc.stdout.strip()}",
                remediation="check the repository state with git status",
            )
        return proc

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def _exclude_state_dir(self) -> None:
        state_dir = self.ledger_path.parent.resolve()
        if self.root not in state_dir.parents:
            return
        pattern = f"/{state_dir.relative_to(self.root).parts[0]}/"
        git_dir = self._run_git(["rev-parse", "--git-dir"]).stdout.strip()
        exclude = (self.root / git_dir / "info" / "exclude").resolve()
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if pattern not in existing.splitlines():
            exclude.parent.mkdir(parents=True, exist_ok=True)
            suffix = "" if not existing or existing.endswith("\n") else "\n"
            exclude.write_text(f"{existing}{suffix}{pattern}\n", encoding="utf-8")

    def create_isolated_branch(self, base: str, name: str | None = None) -> str:
        branch = name or f"{self.branch_prefix}/{base}-isolated"
        if self.is_protected(branch):
            raise WorkspaceError(f"refusing to reset protected branch {branch}")
        self._exclude_state_dir()
        exists = self._run_git(["rev-parse", "--verify", "--quiet", branch], check=False)
        if exists.returncode == 0 and self.current_branch() != branch:
            # resuming a wave keeps the commits already on its branch
            self._run_git(["checkout", branch])
        elif exists.returncode != 0:
            self._run_git(["checkout", "-B", branch, base])
        logger.info("Working on branch %s (base %s)", branch, base)
        return branch

    def commit(self, branch_id: str, changes: Mapping[str, str] | None, message: str) -> str:
        if self.current_branch() != branch_id:
            raise WorkspaceError(
                f"output tree is on {self.current_branch()}, not {branch_id}",
                remediation=f"check out {branch_id} before committing",
            )
        if changes:
            paths = self.write_changes(changes)
            self._run_git(["add", "--", *paths])
        else:
            self._run_git(["add", "-A"])
        self._run_git(["commit", "--allow-empty", "--no-verify", "-m", message])
        return self.head()

    def open_review(self, branch_id: str, target: str) -> str:
        review_id = self._record_review(branch_id, target)
        logger.info("Opened review %s for %s -> %s", review_id, branch_id, target)
        return review_id

    def merge(self, review_id: str) -> MergeResult:
        entry = self.review_entry(review_id)
        if entry.get("status") == "merged":
            return MergeResult(ok=True, review_id=review_id, commit=entry.get("merge_commit"))
        branch = str(entry["branch"])
        target = str(entry["target"])
        self._run_git(["checkout", target])
        proc = self._run_git(
            ["merge", "--no-ff", branch, "-m", f"Merge {branch} into {target}"],
            check=False,
        )
        if proc.returncode != 0:
            self._run_git(["merge", "--abort"], check=False)
            self._run_git(["checkout", branch], check=False)
            conflict = proc.stdout.strip() or proc.stderr.strip()
            logger.warning("Merge of %s into %s failed: %s", branch, target, conflict)
            return MergeResult(ok=False, review_id=review_id, conflict=conflict)
        commit = self.head()
        self._mark_merged(review_id, commit)
        return MergeResult(ok=True, review_id=review_id, commit=commit)
