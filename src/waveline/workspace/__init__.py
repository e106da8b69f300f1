from __future__ import annotations

from pathlib import Path

from waveline.config import WavelineConfig
from waveline.workspace.base import (
    MergeResult,
    Workspace,
    WorkspaceDescriptor,
    normalize_spec_name,
)
from waveline.workspace.git import GitWorkspace
from waveline.workspace.local import LocalWorkspace


def build_workspace(config: WavelineConfig, repo_root: Path) -> Workspace:
    settings = config.workspace
    kwargs = {
        "ledger_path": config.state_path(repo_root) / "workspace.json",
        "base_branch": settings.base_branch,
        "protected_branches": settings.protected_branches,
        "branch_prefix": settings.branch_prefix,
    }
    if settings.backend == "git":
        workspace = GitWorkspace(repo_root, **kwargs)
        if workspace.is_git_repo():
            return workspace
    return LocalWorkspace(repo_root, **kwargs)


__all__ = [
    "GitWorkspace",
    "LocalWorkspace",
    "MergeResult",
    "Workspace",
    "WorkspaceDescriptor",
    "build_workspace",
    "normalize_spec_name",
]
