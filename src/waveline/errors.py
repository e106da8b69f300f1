from __future__ import annotations

from typing import Any


class WavelineError(RuntimeError):
    """Base class for orchestration errors.

    Every error can name the task, wave and lifecycle phase it occurred in and
    carries a one-line remediation that the command surface shows verbatim.
    """

    default_remediation: str = ""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        wave: int | None = None,
        phase: str | None = None,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.wave = wave
        self.phase = phase
        self.remediation = remediation if remediation is not None else self.default_remediation

    def location(self) -> str:
        parts: list[str] = []
        if self.phase:
            parts.append(f"phase {self.phase}")
        if self.wave is not None:
            parts.append(f"wave {self.wave}")
        if self.task_id:
            parts.append(f"task {self.task_id}")
        return ", ".join(parts)

    def __str__(self) -> str:
        text = self.message
        location = self.location()
        if location:
            text = f"{text} ({location})"
        if self.remediation:
            text = f"{text} - {self.remediation}"
        return text

    def to_dict(self) -> dict[str, object]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "task_id": self.task_id,
            "wave": self.wave,
            "phase": self.phase,
            "remediation": self.remediation,
        }


class PlanningError(WavelineError):
    """Raised when a task set cannot be planned into waves."""


class CyclicDependency(PlanningError):
    default_remediation = "break the cycle in depends_on and re-run init"

    def __init__(self, cycle: list[str], **kwargs: Any) -> None:
        self.cycle = list(cycle)
        super().__init__("cyclic dependency: " + " -> ".join(self.cycle), **kwargs)


class MissingDependency(PlanningError):
    default_remediation = "declare the missing task or drop it from depends_on"


class BlockedDependency(WavelineError):
    default_remediation = "rerun the predecessor wave so the artifact is produced"


class UnverifiedArtifact(WavelineError):
    """Warning record for a claim that failed verification.

    Never raised to stop a wave; the coordinator collects these and drops the
    claim from the verified set.
    """

    default_remediation = "check the producing task's output tree"


class WorkerFailure(WavelineError):
    default_remediation = "inspect the task output and rerun the wave with --retry"


class ReviewTimeout(WavelineError):
    default_remediation = "check the review manually, then run advance again to keep polling"


class StateCorruption(WavelineError):
    default_remediation = "restore a snapshot by hand or run recover to start the spec over"


class ConcurrentWriteConflict(WavelineError):
    default_remediation = "reload the spec state and retry the operation"


class InvalidTransition(WavelineError):
    default_remediation = "run status to see the current phase"


class MergeConflict(WavelineError):
    default_remediation = "resolve the conflict on the wave branch, then advance with --retry"


class WorkspaceError(WavelineError):
    """Raised when a version-control operation fails."""


class SpecNotFound(WavelineError):
    default_remediation = "run init for this spec first"


class TransactionRejected(WavelineError):
    """Raised when a transaction cannot be applied as a whole; nothing is written."""
