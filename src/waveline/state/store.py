from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from waveline.errors import (
    ConcurrentWriteConflict,
    SpecNotFound,
    StateCorruption,
    TransactionRejected,
)
from waveline.graph import TaskGraph
from waveline.models import ExecutionState, Task, Wave, utcnow_iso

logger = logging.getLogger(__name__)

MAX_EVENTS = 200
_SNAPSHOT_PATTERN = re.compile(r"^state\.(\d+)\.json$")


@dataclass(slots=True, frozen=True)
class Update:
    """One field update inside a transaction."""

    op: str
    target: str | None = None
    field: str | None = None
    value: Any = None


Transaction = list[Update]


def set_task(task_id: str, field_name: str, value: Any) -> Update:
    return Update("set_task", task_id, field_name, value)


def put_task(task: Task) -> Update:
    return Update("put_task", task.id, None, task.to_dict())


def put_tasks(graph: TaskGraph) -> Update:
    return Update("put_tasks", None, None, graph.to_dict())


def set_state(field_name: str, value: Any) -> Update:
    return Update("set_state", None, field_name, value)


def append_state(field_name: str, value: Any) -> Update:
    return Update("append_state", None, field_name, value)


def set_waves(waves: list[Wave]) -> Update:
    return Update("set_waves", None, None, [wave.to_dict() for wave in waves])


def add_verified(claims: list[dict[str, Any]]) -> Update:
    return Update("add_verified", None, None, claims)


def append_event(event: str, **details: Any) -> Update:
    return Update("append_event", None, None, {"event": event, "at": utcnow_iso(), **details})


def reset_verified() -> Update:
    return Update("reset_verified")


_STATE_FIELDS = frozenset(ExecutionState().to_dict())
_TASK_FIELDS = frozenset(Task(id="_").to_dict()) - {"id"}


def empty_document(spec_id: str) -> dict[str, Any]:
    return {
        "spec_id": spec_id,
        "tasks": [],
        "waves": [],
        "state": ExecutionState().to_dict(),
        "verified": [],
        "events": [],
    }


def apply_updates(document: dict[str, Any], updates: Transaction) -> dict[str, Any]:
    """Return a new document with every update applied, or raise without side effects."""
    result = copy.deepcopy(document)
    tasks = {item["id"]: item for item in result.get("tasks", [])}
    order = [item["id"] for item in result.get("tasks", [])]
    state = result.setdefault("state", ExecutionState().to_dict())

    for update in updates:
        if update.op == "set_task":
            if update.target not in tasks:
                raise TransactionRejected(
                    f"unknown task {update.target} in transaction", task_id=update.target
                )
            if update.field not in _TASK_FIELDS:
                raise TransactionRejected(f"unknown task field {update.field}")
            tasks[update.target][update.field] = copy.deepcopy(update.value)
        elif update.op == "put_task":
            if update.target not in tasks:
                order.append(update.target)
            tasks[update.target] = copy.deepcopy(update.value)
        elif update.op == "put_tasks":
            tasks = {item["id"]: copy.deepcopy(item) for item in update.value}
            order = [item["id"] for item in update.value]
        elif update.op == "set_state":
            if update.field not in _STATE_FIELDS:
                raise TransactionRejected(f"unknown state field {update.field}")
            state[update.field] = copy.deepcopy(update.value)
        elif update.op == "append_state":
            current = state.get(update.field)
            if not isinstance(current, list):
                raise TransactionRejected(f"state field {update.field} is not a list")
            current.append(copy.deepcopy(update.value))
        elif update.op == "set_waves":
            result["waves"] = copy.deepcopy(update.value)
        elif update.op == "add_verified":
            verified = result.setdefault("verified", [])
            seen = {(item["kind"], item["identifier"], item.get("path")) for item in verified}
            for claim in update.value:
                key = (claim["kind"], claim["identifier"], claim.get("path"))
                if key not in seen:
                    seen.add(key)
                    verified.append(copy.deepcopy(claim))
        elif update.op == "reset_verified":
            result["verified"] = []
        elif update.op == "append_event":
            events = result.setdefault("events", [])
            events.append(copy.deepcopy(update.value))
            result["events"] = events[-MAX_EVENTS:]
        else:
            raise TransactionRejected(f"unsupported update operation {update.op}")

    result["tasks"] = [tasks[task_id] for task_id in order]
    return result


class TaskStore:
    """Durable per-spec state files with atomic replace and rotating snapshots."""

    SCHEMA_VERSION = 1

    def __init__(
        self,
        state_dir: Path,
        *,
        snapshot_count: int = 5,
        lock_timeout_seconds: float = 3.0,
        stale_lock_seconds: float = 60.0,
    ) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.snapshot_count = max(1, int(snapshot_count))
        self.lock_timeout_seconds = lock_timeout_seconds
        self.stale_lock_seconds = stale_lock_seconds

    def spec_dir(self, spec_id: str) -> Path:
        safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", spec_id.strip())
        if not safe or safe in {".", ".."}:
            raise SpecNotFound(f"invalid spec id {spec_id!r}")
        return self.state_dir / "specs" / safe

    def state_file(self, spec_id: str) -> Path:
        return self.spec_dir(spec_id) / "state.json"

    def snapshot_dir(self, spec_id: str) -> Path:
        return self.spec_dir(spec_id) / "snapshots"

    def exists(self, spec_id: str) -> bool:
        return self.state_file(spec_id).exists()

    def list_specs(self) -> list[str]:
        root = self.state_dir / "specs"
        if not root.exists():
            return []
        return sorted(path.name for path in root.iterdir() if (path / "state.json").exists())

    @staticmethod
    def _checksum(data: Any) -> str:
        canonical = json.dumps(data, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @contextmanager
    def _lock(self, spec_id: str) -> Iterator[None]:
        spec_dir = self.spec_dir(spec_id)
        spec_dir.mkdir(parents=True, exist_ok=True)
        lock_file = spec_dir / ".lock"
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                try:
                    age = time.time() - lock_file.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self.stale_lock_seconds:
                    logger.warning("Breaking stale state lock for %s (%.0fs old)", spec_id, age)
                    lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise ConcurrentWriteConflict(
                        f"timed out waiting for the state lock of spec {spec_id}"
                    ) from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            lock_file.unlink(missing_ok=True)

    def _atomic_write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        try:
            dir_fd = os.open(path.parent, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    def _envelope(self, data: dict[str, Any], revision: int) -> dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "checksum": self._checksum(data),
            "data": data,
        }

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        """Validate an envelope read from disk; raise ValueError when unusable."""
        if not isinstance(raw_payload, dict):
            raise ValueError("state payload is not an object")
        if "data" in raw_payload and "revision" in raw_payload:
            data = raw_payload.get("data")
            checksum = raw_payload.get("checksum")
            if checksum is not None and checksum != self._checksum(data):
                raise ValueError("checksum mismatch")
            envelope = {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "checksum": checksum,
                "data": data,
            }
        else:
            # bare documents written before the envelope existed
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 1,
                "updated_at": utcnow_iso(),
                "checksum": None,
                "data": raw_payload,
            }
        data = envelope["data"]
        if not isinstance(data, dict):
            raise ValueError("state data is not an object")
        if not isinstance(data.get("tasks"), list) or not isinstance(data.get("state"), dict):
            raise ValueError("state data is missing tasks or state")
        return envelope

    def _read_envelope(self, path: Path) -> dict[str, Any]:
        raw = path.read_text(encoding="utf-8")
        return self._normalize_envelope(json.loads(raw))

    def _snapshots(self, spec_id: str) -> list[tuple[int, Path]]:
        snapshot_dir = self.snapshot_dir(spec_id)
        if not snapshot_dir.exists():
            return []
        found: list[tuple[int, Path]] = []
        for path in snapshot_dir.iterdir():
            match = _SNAPSHOT_PATTERN.match(path.name)
            if match:
                found.append((int(match.group(1)), path))
        return sorted(found, reverse=True)

    def _write_snapshot(self, spec_id: str, envelope: dict[str, Any], serialized: str) -> None:
        snapshot_dir = self.snapshot_dir(spec_id)
        self._atomic_write(snapshot_dir / f"state.{envelope['revision']}.json", serialized)
        for _revision, path in self._snapshots(spec_id)[self.snapshot_count :]:
            path.unlink(missing_ok=True)

    def _commit(self, spec_id: str, data: dict[str, Any], revision: int) -> dict[str, Any]:
        # the newest snapshot always mirrors the live file
        envelope = self._envelope(data, revision)
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        self._atomic_write(self.state_file(spec_id), serialized)
        self._write_snapshot(spec_id, envelope, serialized)
        return envelope

    def _restore(self, spec_id: str, reason: str) -> dict[str, Any]:
        for revision, path in self._snapshots(spec_id):
            try:
                envelope = self._read_envelope(path)
            except (OSError, ValueError) as exc:
                logger.warning("Snapshot %s is unusable: %s", path.name, exc)
                continue
            data = apply_updates(
                envelope["data"],
                [
                    append_event(
                        "store_recovered",
                        reason=reason,
                        snapshot_revision=revision,
                    )
                ],
            )
            restored = self._commit(spec_id, data, envelope["revision"] + 1)
            logger.warning(
                "Recovered state for spec %s from snapshot revision %d (%s)",
                spec_id,
                revision,
                reason,
            )
            return restored
        raise StateCorruption(f"state for spec {spec_id} is corrupt and no valid snapshot exists")

    def _load_envelope(self, spec_id: str, *, locked: bool = False) -> dict[str, Any]:
        path = self.state_file(spec_id)
        if path.exists():
            try:
                return self._read_envelope(path)
            except (OSError, ValueError) as exc:
                reason = f"{type(exc).__name__}: {exc}"
        elif self._snapshots(spec_id):
            reason = "state file missing"
        else:
            raise SpecNotFound(f"no execution state for spec {spec_id}")
        if locked:
            return self._restore(spec_id, reason)
        with self._lock(spec_id):
            # another writer may have repaired the file while we waited
            return self._load_envelope(spec_id, locked=True)

    def revision(self, spec_id: str) -> int:
        return int(self._load_envelope(spec_id)["revision"])

    def load_document(self, spec_id: str) -> dict[str, Any]:
        return self._load_envelope(spec_id)["data"]

    def load(self, spec_id: str) -> tuple[TaskGraph, ExecutionState]:
        data = self.load_document(spec_id)
        return TaskGraph.from_dict(data.get("tasks", [])), ExecutionState.from_dict(data["state"])

    def load_waves(self, spec_id: str) -> list[Wave]:
        data = self.load_document(spec_id)
        return [Wave.from_dict(item) for item in data.get("waves", []) if isinstance(item, dict)]

    def events(self, spec_id: str) -> list[dict[str, Any]]:
        events = self.load_document(spec_id).get("events", [])
        return events if isinstance(events, list) else []

    def create(
        self,
        spec_id: str,
        graph: TaskGraph,
        state: ExecutionState,
        *,
        overwrite: bool = False,
    ) -> int:
        with self._lock(spec_id):
            if self.exists(spec_id) and not overwrite:
                raise ConcurrentWriteConflict(
                    f"execution state for spec {spec_id} already exists",
                    remediation="use status to inspect it or recover to start over",
                )
            data = empty_document(spec_id)
            data["tasks"] = graph.to_dict()
            data["state"] = state.to_dict()
            revision = max((rev for rev, _path in self._snapshots(spec_id)), default=0) + 1
            self._commit(spec_id, data, revision)
            return revision

    def apply(
        self,
        spec_id: str,
        transaction: Transaction,
        expected_revision: int | None = None,
    ) -> int:
        """Apply every update in ``transaction`` atomically and return the new revision."""
        with self._lock(spec_id):
            current = self._load_envelope(spec_id, locked=True)
            current_revision = int(current["revision"])
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentWriteConflict(
                    f"concurrent state update detected for spec {spec_id} "
                    f"(expected revision {expected_revision}, found {current_revision})"
                )
            data = apply_updates(current["data"], transaction)
            self._commit(spec_id, data, current_revision + 1)
            return current_revision + 1

    def update(
        self,
        spec_id: str,
        build: Callable[[dict[str, Any]], Transaction],
        *,
        attempts: int = 4,
    ) -> int:
        """Build a transaction from fresh state and apply it, retrying on conflicts."""
        last_error: ConcurrentWriteConflict | None = None
        for _ in range(max(1, attempts)):
            envelope = self._load_envelope(spec_id)
            transaction = build(copy.deepcopy(envelope["data"]))
            try:
                return self.apply(spec_id, transaction, expected_revision=int(envelope["revision"]))
            except ConcurrentWriteConflict as exc:
                last_error = exc
                time.sleep(0.01)
        assert last_error is not None
        raise last_error

    def delete(self, spec_id: str) -> bool:
        spec_dir = self.spec_dir(spec_id)
        if not spec_dir.exists():
            return False
        shutil.rmtree(spec_dir)
        return True

    def acquire_session(
        self,
        spec_id: str,
        ttl_seconds: float,
        *,
        now: float | None = None,
        takeover: bool = False,
    ) -> dict[str, Any]:
        """Claim the single coordinating session for a spec.

        A live session held by someone else is a conflict unless ``takeover``
        is set; an expired one is replaced.
        """
        now_epoch = time.time() if now is None else now
        session = {
            "session_id": uuid4().hex,
            "started_at": utcnow_iso(),
            "expires_at": now_epoch + max(1.0, float(ttl_seconds)),
        }

        def _build(data: dict[str, Any]) -> Transaction:
            active = data.get("state", {}).get("session")
            updates: Transaction = []
            if isinstance(active, dict) and float(active.get("expires_at", 0)) > now_epoch:
                if not takeover:
                    raise ConcurrentWriteConflict(
                        f"spec {spec_id} is being driven by session {active.get('session_id')}",
                        remediation="wait for it to finish or let its session expire",
                    )
                updates.append(
                    append_event("session_takeover", previous=active.get("session_id"))
                )
            elif isinstance(active, dict):
                logger.info(
                    "Replacing expired session %s for %s", active.get("session_id"), spec_id
                )
                updates.append(append_event("session_expired", previous=active.get("session_id")))
            updates.append(set_state("session", session))
            return updates

        self.update(spec_id, _build)
        return session

    def renew_session(
        self,
        spec_id: str,
        session_id: str,
        ttl_seconds: float,
        *,
        now: float | None = None,
    ) -> None:
        now_epoch = time.time() if now is None else now

        def _build(data: dict[str, Any]) -> Transaction:
            active = data.get("state", {}).get("session")
            if not isinstance(active, dict) or active.get("session_id") != session_id:
                raise ConcurrentWriteConflict(
                    f"session {session_id} no longer drives spec {spec_id}",
                    remediation="another process took over; check status before continuing",
                )
            renewed = dict(active)
            renewed["expires_at"] = now_epoch + max(1.0, float(ttl_seconds))
            return [set_state("session", renewed)]

        self.update(spec_id, _build)

    def release_session(self, spec_id: str, session_id: str) -> None:
        def _build(data: dict[str, Any]) -> Transaction:
            active = data.get("state", {}).get("session")
            if isinstance(active, dict) and active.get("session_id") == session_id:
                return [set_state("session", None)]
            return []

        if self.exists(spec_id):
            self.update(spec_id, _build)
