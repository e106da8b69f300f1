import tomllib
from pathlib import Path

from waveline import __version__
from waveline.config import WavelineConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "waveline.toml"
    config = WavelineConfig.default()
    config.project.name = "waveline-test"
    config.project.test_command = "sh run-tests.sh"
    config.project.source_dirs = ["lib"]
    config.execution.max_concurrent_workers = 2
    config.execution.partial_wave_policy = "allow"
    config.review.per_wave = False
    config.review.poll_interval_seconds = 2.5
    config.store.snapshot_count = 3
    config.workspace.backend = "local"
    config.workspace.protected_branches = ["main", "release"]
    config.backend.max_retries = 3
    config.backend.model = "sonnet"
    config.backend.allowed_tools = ["Read"]
    config.worker.kind = "agent"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "waveline-test"
    assert loaded.project.test_command == "sh run-tests.sh"
    assert loaded.project.source_dirs == ["lib"]
    assert loaded.execution.max_concurrent_workers == 2
    assert loaded.execution.max_subtask_attempts == 3
    assert loaded.execution.partial_wave_policy == "allow"
    assert loaded.review.per_wave is False
    assert loaded.review.poll_interval_seconds == 2.5
    assert loaded.store.snapshot_count == 3
    assert loaded.workspace.backend == "local"
    assert loaded.workspace.protected_branches == ["main", "release"]
    assert loaded.backend.max_retries == 3
    assert loaded.backend.model == "sonnet"
    assert loaded.backend.allowed_tools == ["Read"]
    assert loaded.worker.kind == "agent"


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.store.state_dir == ".waveline/state"
    assert loaded.workspace.base_branch == "main"
    assert loaded.state_path(tmp_path) == tmp_path / ".waveline" / "state"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(WavelineConfig.default())
    parsed = tomllib.loads(rendered)

    for section in ("project", "execution", "review", "store", "workspace", "backend", "worker"):
        assert f"[{section}]" in rendered
        assert section in parsed
    assert parsed["review"]["max_poll_duration_seconds"] == 1800.0
    assert parsed["execution"]["partial_wave_policy"] == "block"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
