from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from waveline.feedback import Feedback
from waveline.models import utcnow_iso

logger = logging.getLogger(__name__)


class ReviewDecision(StrEnum):
    APPROVED = "APPROVED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    PENDING = "PENDING"


class ReviewSource(ABC):
    @abstractmethod
    def poll_decision(self, review_id: str) -> ReviewDecision:
        """Return the current decision for ``review_id``."""

    @abstractmethod
    def fetch_feedback(self, review_id: str) -> list[Feedback]:
        """Return the feedback items attached to the decision."""


class FileReviewSource(ReviewSource):
    """Decisions recorded as ``<reviews_dir>/<review_id>.json`` by ``waveline review``."""

    def __init__(self, reviews_dir: Path) -> None:
        self.reviews_dir = reviews_dir

    def _path(self, review_id: str) -> Path:
        safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", review_id)
        return self.reviews_dir / f"{safe}.json"

    def _read(self, review_id: str) -> dict[str, Any]:
        path = self._path(review_id)
        if not path.exists():
            return {}
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable review decision %s", path)
            return {}
        return payload if isinstance(payload, dict) else {}

    def poll_decision(self, review_id: str) -> ReviewDecision:
        raw = str(self._read(review_id).get("decision", ReviewDecision.PENDING)).upper()
        try:
            return ReviewDecision(raw)
        except ValueError:
            logger.warning("Unknown review decision %r for %s", raw, review_id)
            return ReviewDecision.PENDING

    def fetch_feedback(self, review_id: str) -> list[Feedback]:
        items = self._read(review_id).get("feedback", [])
        if not isinstance(items, list):
            return []
        return [Feedback.from_dict(item) for item in items]

    def record(
        self,
        review_id: str,
        decision: ReviewDecision,
        feedback: list[dict[str, Any]] | None = None,
    ) -> Path:
        path = self._path(review_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        current = self._read(review_id)
        existing = current.get("feedback")
        items = list(existing) if isinstance(existing, list) else []
        items.extend(feedback or [])
        payload = {
            "review_id": review_id,
            "decision": str(decision),
            "feedback": items,
            "decided_at": utcnow_iso(),
        }
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        return path

    def clear(self, review_id: str) -> None:
        self._path(review_id).unlink(missing_ok=True)


@dataclass(slots=True)
class PollOutcome:
    decision: ReviewDecision
    polls: int
    elapsed: float
    timed_out: bool = False


class ReviewPoller:
    """Fixed-interval polling bounded by a maximum duration.

    The clock and sleep are injectable so the bound can be exercised without
    waiting; the default pair is ``time.monotonic``/``time.sleep``.
    """

    def __init__(
        self,
        source: ReviewSource,
        *,
        interval: float,
        max_duration: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        self.source = source
        self.interval = interval
        self.max_duration = max(0.0, max_duration)
        self.clock = clock
        self.sleep = sleep

    def poll(
        self,
        review_id: str,
        on_poll: Callable[[int, ReviewDecision], None] | None = None,
    ) -> PollOutcome:
        started = self.clock()
        polls = 0
        while True:
            decision = self.source.poll_decision(review_id)
            polls += 1
            if on_poll is not None:
                on_poll(polls, decision)
            elapsed = self.clock() - started
            if decision != ReviewDecision.PENDING:
                return PollOutcome(decision=decision, polls=polls, elapsed=elapsed)
            if elapsed >= self.max_duration:
                logger.info("Review %s still pending after %.1fs", review_id, elapsed)
                return PollOutcome(
                    decision=ReviewDecision.PENDING, polls=polls, elapsed=elapsed, timed_out=True
                )
            self.sleep(min(self.interval, self.max_duration - elapsed))
