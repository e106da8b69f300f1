import json
import os
import shutil
from pathlib import Path

import pytest

from waveline.errors import ConcurrentWriteConflict, StateCorruption, TransactionRejected
from waveline.graph import TaskGraph
from waveline.models import ExecutionState, Phase, Task
from waveline.state import TaskStore, append_event, set_state, set_task


def _store(tmp_path: Path, **kwargs) -> TaskStore:
    store = TaskStore(tmp_path / "state", **kwargs)
    graph = TaskGraph([Task(id="1", description="first"), Task(id="2", depends_on={"1"})])
    store.create("demo", graph, ExecutionState())
    return store


def test_create_and_apply_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.revision("demo")

    revision = store.apply(
        "demo",
        [set_task("1", "status", "completed"), set_state("phase", "EXECUTE")],
    )
    graph, state = store.load("demo")

    assert revision == first + 1
    assert graph.get("1").status == "completed"
    assert state.phase == Phase.EXECUTE
    assert store.list_specs() == ["demo"]


def test_rejected_transaction_leaves_state_untouched(tmp_path: Path) -> None:
    store = _store(tmp_path)
    before = store.load_document("demo")
    revision = store.revision("demo")

    with pytest.raises(TransactionRejected):
        store.apply("demo", [set_state("phase", "EXECUTE"), set_task("missing", "status", "x")])

    assert store.revision("demo") == revision
    assert store.load_document("demo") == before


def test_failed_replace_keeps_previous_state(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = _store(tmp_path)
    before = store.state_file("demo").read_text(encoding="utf-8")

    def _boom(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _boom)
    with pytest.raises(OSError, match="disk full"):
        store.apply("demo", [set_state("phase", "EXECUTE")])
    monkeypatch.undo()

    assert store.state_file("demo").read_text(encoding="utf-8") == before
    leftovers = [p.name for p in store.spec_dir("demo").iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []
    assert store.load("demo")[1].phase == Phase.INIT


def test_torn_state_file_is_restored_from_snapshot(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.apply("demo", [set_state("phase", "EXECUTE"), set_state("current_wave", 2)])
    store.state_file("demo").write_text('{"schema_version": 1, "revis', encoding="utf-8")

    graph, state = store.load("demo")

    assert state.phase == Phase.EXECUTE
    assert state.current_wave == 2
    assert sorted(graph.ids()) == ["1", "2"]
    assert store.events("demo")[-1]["event"] == "store_recovered"
    # the repaired file is valid again
    json.loads(store.state_file("demo").read_text(encoding="utf-8"))


def test_checksum_mismatch_counts_as_corruption(tmp_path: Path) -> None:
    store = _store(tmp_path)
    path = store.state_file("demo")
    envelope = json.loads(path.read_text(encoding="utf-8"))
    envelope["data"]["state"]["phase"] = "COMPLETED"
    path.write_text(json.dumps(envelope), encoding="utf-8")

    _graph, state = store.load("demo")

    assert state.phase == Phase.INIT


def test_corruption_without_snapshots_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)
    shutil.rmtree(store.snapshot_dir("demo"))
    store.state_file("demo").write_text("not json", encoding="utf-8")

    with pytest.raises(StateCorruption):
        store.load("demo")


def test_snapshots_rotate(tmp_path: Path) -> None:
    store = _store(tmp_path, snapshot_count=2)
    for wave in range(2, 6):
        store.apply("demo", [set_state("current_wave", wave)])

    names = sorted(path.name for path in store.snapshot_dir("demo").iterdir())

    assert len(names) == 2
    assert f"state.{store.revision('demo')}.json" in names


def test_newest_snapshot_mirrors_the_live_file(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.apply("demo", [set_state("phase", "EXECUTE")])
    store.apply("demo", [set_state("current_wave", 3)])

    live = store.state_file("demo").read_text(encoding="utf-8")
    newest = store.snapshot_dir("demo") / f"state.{store.revision('demo')}.json"

    assert newest.read_text(encoding="utf-8") == live
    # losing the live file costs no committed revision
    store.state_file("demo").unlink()
    _graph, state = store.load("demo")
    assert state.current_wave == 3
    assert state.phase == Phase.EXECUTE


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    seen = store.revision("demo")
    store.apply("demo", [append_event("other_writer")])

    with pytest.raises(ConcurrentWriteConflict):
        store.apply("demo", [set_state("phase", "EXECUTE")], expected_revision=seen)


def test_update_rebuilds_against_fresh_state(tmp_path: Path) -> None:
    store = _store(tmp_path)
    calls: list[int] = []

    def _build(data: dict) -> list:
        calls.append(data["state"]["current_wave"])
        if len(calls) == 1:
            # another writer lands between read and apply
            store.apply("demo", [set_state("current_wave", 7)])
        return [set_state("current_wave", data["state"]["current_wave"] + 1)]

    store.update("demo", _build)

    assert calls == [1, 7]
    assert store.load("demo")[1].current_wave == 8


def test_create_refuses_to_overwrite(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ConcurrentWriteConflict):
        store.create("demo", TaskGraph(), ExecutionState())
    store.create("demo", TaskGraph(), ExecutionState(), overwrite=True)

    assert len(store.load("demo")[0]) == 0


def test_session_lease_conflict_takeover_and_expiry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.acquire_session("demo", 60, now=1000.0)

    with pytest.raises(ConcurrentWriteConflict):
        store.acquire_session("demo", 60, now=1010.0)

    second = store.acquire_session("demo", 60, now=1010.0, takeover=True)
    with pytest.raises(ConcurrentWriteConflict):
        store.renew_session("demo", first["session_id"], 60)

    third = store.acquire_session("demo", 60, now=2000.0)
    events = [event["event"] for event in store.events("demo")]
    assert "session_takeover" in events
    assert "session_expired" in events
    assert third["session_id"] != second["session_id"]

    store.renew_session("demo", third["session_id"], 60, now=2030.0)
    assert store.load("demo")[1].session["expires_at"] == 2090.0

    store.release_session("demo", third["session_id"])
    assert store.load("demo")[1].session is None
