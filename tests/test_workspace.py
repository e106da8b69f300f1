import subprocess
from pathlib import Path

import pytest

from waveline.config import WavelineConfig
from waveline.errors import WorkspaceError
from waveline.workspace import (
    GitWorkspace,
    LocalWorkspace,
    build_workspace,
    normalize_spec_name,
)


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(
        ["git", "init", "-b", "main"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _git(repo_path: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=repo_path, check=True, text=True, capture_output=True
    )
    return proc.stdout.strip()


def _git_workspace(repo_path: Path) -> GitWorkspace:
    return GitWorkspace(repo_path, ledger_path=repo_path / ".waveline" / "state" / "workspace.json")


def test_spec_names_drop_the_date_prefix(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path, ledger_path=tmp_path / "ledger.json")

    assert normalize_spec_name("2025-01-29-auth") == "auth"
    assert normalize_spec_name("auth-2025") == "auth-2025"
    assert workspace.branch_name("2025-01-29-auth", 3) == "feature/auth-wave-3"
    assert workspace.spec_branch_name("2025-01-29-auth") == "feature/auth"


def test_git_branch_commit_review_and_merge(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = _git_workspace(tmp_path)

    branch = workspace.create_isolated_branch("main", "feature/demo-wave-1")
    commit = workspace.commit(branch, {"src/a.py": "A = 1\n"}, "T1: add a")
    review_id = workspace.open_review(branch, "main")
    result = workspace.merge(review_id)

    assert review_id == "feature-demo-wave-1"
    assert commit in _git(tmp_path, "log", "--format=%H", "main").splitlines()
    assert result.ok is True
    assert workspace.current_branch() == "main"
    assert (tmp_path / "src" / "a.py").read_text(encoding="utf-8") == "A = 1\n"
    # the state directory never ends up in a commit
    assert ".waveline" not in _git(tmp_path, "status", "--porcelain")


def test_resuming_a_branch_keeps_its_commits(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = _git_workspace(tmp_path)
    branch = workspace.create_isolated_branch("main", "feature/demo-wave-1")
    commit = workspace.commit(branch, {"a.txt": "a\n"}, "first")
    _git(tmp_path, "checkout", "main")

    workspace.create_isolated_branch("main", "feature/demo-wave-1")

    assert workspace.current_branch() == branch
    assert workspace.head() == commit


def test_merge_conflict_is_reported(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = _git_workspace(tmp_path)
    branch = workspace.create_isolated_branch("main", "feature/demo-wave-1")
    workspace.commit(branch, {"README.md": "from the wave\n"}, "wave edit")
    review_id = workspace.open_review(branch, "main")
    _git(tmp_path, "checkout", "main")
    (tmp_path / "README.md").write_text("from main\n", encoding="utf-8")
    _git(tmp_path, "commit", "-am", "main edit")

    result = workspace.merge(review_id)

    assert result.ok is False
    assert result.conflict
    assert workspace.review_entry(review_id)["status"] == "open"
    assert workspace.current_branch() == branch


def test_protected_branch_is_never_reset(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = _git_workspace(tmp_path)

    with pytest.raises(WorkspaceError):
        workspace.create_isolated_branch("main", "main")
    assert workspace.descriptor("main").protected is True
    assert workspace.descriptor("feature/x").protected is False


def test_commit_on_the_wrong_branch_is_refused(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    workspace = _git_workspace(tmp_path)

    with pytest.raises(WorkspaceError):
        workspace.commit("feature/demo-wave-1", {"a.txt": "a\n"}, "nope")


def test_local_workspace_ledger(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path, ledger_path=tmp_path / ".waveline" / "workspace.json")
    branch = workspace.create_isolated_branch("main", "feature/demo-wave-1")

    first = workspace.commit(branch, {"a.txt": "a\n"}, "first")
    second = workspace.commit(branch, {"a.txt": "b\n"}, "second")
    review_id = workspace.open_review(branch, "main")
    again = workspace.open_review(branch, "main")
    result = workspace.merge(review_id)

    assert first != second
    assert again == review_id
    assert result.ok is True
    assert result.commit == second
    assert workspace.current_branch() == "main"
    assert workspace.review_entry(review_id)["status"] == "merged"
    with pytest.raises(ValueError):
        workspace.write_changes({"../outside.txt": "x"})


def test_build_workspace_falls_back_outside_git(tmp_path: Path) -> None:
    config = WavelineConfig.default()

    plain = build_workspace(config, tmp_path)
    _init_git_repo(tmp_path)
    git = build_workspace(config, tmp_path)

    assert isinstance(plain, LocalWorkspace)
    assert isinstance(git, GitWorkspace)
