from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from waveline.config import CONFIG_FILENAME, WavelineConfig, load_config, save_config
from waveline.coordinator import WaveCoordinator
from waveline.errors import WavelineError
from waveline.graph import TaskGraph
from waveline.lifecycle import LifecycleResult, SpecLifecycle
from waveline.models import Phase
from waveline.review import FileReviewSource, ReviewDecision
from waveline.state import TaskStore
from waveline.verification import ArtifactVerifier
from waveline.workers import build_worker
from waveline.workspace import Workspace, build_workspace

logger = logging.getLogger(__name__)

_DECISIONS = {
    "approve": ReviewDecision.APPROVED,
    "changes": ReviewDecision.CHANGES_REQUESTED,
}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: WavelineConfig
    store: TaskStore
    workspace: Workspace
    reviews: FileReviewSource
    lifecycle: SpecLifecycle


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    state_dir = config.state_path(repo_root)
    store = TaskStore(state_dir, snapshot_count=config.store.snapshot_count)
    workspace = build_workspace(config, repo_root)
    worker = build_worker(config, repo_root)
    verifier = ArtifactVerifier(repo_root, config.project.source_dirs)
    coordinator = WaveCoordinator(store, worker, verifier, config)
    reviews = FileReviewSource(state_dir / "reviews")
    lifecycle = SpecLifecycle(store, coordinator, workspace, reviews, config)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        workspace=workspace,
        reviews=reviews,
        lifecycle=lifecycle,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _tasks_path(runtime: Runtime, spec_id: str, tasks_value: str | None) -> Path:
    if tasks_value:
        path = Path(tasks_value)
        return path if path.is_absolute() else runtime.repo_root / path
    return runtime.repo_root / runtime.config.project.specs_dir / spec_id / "tasks.json"


def _read_definition(path: Path) -> TaskGraph:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise click.ClickException(f"Cannot read task definitions {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Task definitions {path} are not valid JSON: {exc}") from exc
    try:
        return TaskGraph.from_definition(payload)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _reload_definition(
    runtime: Runtime, spec_id: str, tasks_value: str | None = None
) -> TaskGraph | None:
    """Definitions for a recovery: an explicit file, else tasks.json when it exists."""
    tasks_path = _tasks_path(runtime, spec_id, tasks_value)
    if tasks_value or tasks_path.exists():
        return _read_definition(tasks_path)
    return None


def _emit(result: LifecycleResult) -> None:
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    click.get_current_context().exit(result.exit_code)


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """Wave-based task orchestration with review gates."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.argument("spec_id")
@click.option("--tasks", "tasks_value", default=None, help="Path to the tasks.json definition.")
@click.option("--force", is_flag=True, default=False, help="Replace existing state.")
@config_option
def init_command(spec_id: str, tasks_value: str | None, force: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    if not runtime.config_path.exists():
        save_config(runtime.config_path, runtime.config)
    graph = _read_definition(_tasks_path(runtime, spec_id, tasks_value))
    try:
        result = runtime.lifecycle.init(spec_id, graph, overwrite=force)
    except WavelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result)


@cli.command("status")
@click.argument("spec_id")
@config_option
def status_command(spec_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.lifecycle.status(spec_id)
    except WavelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result)


@cli.command("advance")
@click.argument("spec_id")
@click.option(
    "--resume-phase",
    type=click.Choice([str(phase) for phase in Phase], case_sensitive=False),
    default=None,
)
@click.option("--retry", is_flag=True, default=False, help="Reset the failed wave first.")
@click.option("--recover", is_flag=True, default=False, help="Start over from INIT first.")
@click.option("--takeover", is_flag=True, default=False, help="Replace a live session.")
@config_option
def advance_command(
    spec_id: str,
    resume_phase: str | None,
    retry: bool,
    recover: bool,
    takeover: bool,
    config_value: str,
) -> None:
    if retry and recover:
        raise click.ClickException("Use either --retry or --recover, not both.")
    runtime = _runtime(config_value)
    graph = _reload_definition(runtime, spec_id) if recover else None
    try:
        if retry:
            runtime.lifecycle.reset(spec_id)
        if recover:
            runtime.lifecycle.recover(spec_id, graph)
        phase = Phase(resume_phase.upper()) if resume_phase else None
        result = asyncio.run(runtime.lifecycle.advance(spec_id, phase, takeover=takeover))
    except WavelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result)


@cli.command("reset")
@click.argument("spec_id")
@config_option
def reset_command(spec_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.lifecycle.reset(spec_id)
    except WavelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result)


@cli.command("recover")
@click.argument("spec_id")
@click.option("--tasks", "tasks_value", default=None, help="Reload definitions from this file.")
@config_option
def recover_command(spec_id: str, tasks_value: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    graph = _reload_definition(runtime, spec_id, tasks_value)
    try:
        result = runtime.lifecycle.recover(spec_id, graph)
    except WavelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result)


@cli.command("fail")
@click.argument("spec_id")
@click.argument("reason")
@config_option
def fail_command(spec_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.lifecycle.fail(spec_id, reason)
    except WavelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result)


@cli.command("promote")
@click.argument("spec_id")
@click.argument("future_id")
@config_option
def promote_command(spec_id: str, future_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.lifecycle.promote(spec_id, future_id)
    except WavelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(result)


@cli.command("list")
@config_option
def list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    rows = runtime.lifecycle.overview()
    if not rows:
        click.echo("No specs found.")
        return
    for row in rows:
        if row.get("error"):
            click.echo(f"{row['spec_id']:<30} unreadable: {row['error']}")
            continue
        click.echo(
            f"{row['spec_id']:<30} {row['phase']:<18} "
            f"wave {row['current_wave']}/{row['total_waves']} {row['overall_percent']}%"
        )


@cli.command("review")
@click.argument("review_id")
@click.argument("decision", type=click.Choice(sorted(_DECISIONS)))
@click.option("--comment", "comments", multiple=True, help="Feedback body; repeatable.")
@click.option("--path", "path_value", default=None, help="File the comments refer to.")
@config_option
def review_command(
    review_id: str,
    decision: str,
    comments: tuple[str, ...],
    path_value: str | None,
    config_value: str,
) -> None:
    """Record a review decision for ``advance`` to pick up."""
    runtime = _runtime(config_value)
    feedback = [{"body": body, "path": path_value} for body in comments]
    path = runtime.reviews.record(review_id, _DECISIONS[decision], feedback)
    click.echo(f"Recorded {_DECISIONS[decision]} for {review_id} ({len(feedback)} comments)")
    logger.debug("Review decision written to %s", path)
