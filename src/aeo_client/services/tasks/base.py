"""
Task model shared types.

A Task is one unit of remote, long-running work. A PollSession is the client-side
record of one attempt at watching a Task until it reaches a terminal state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

TaskId = Union[str, int]


class TaskKind(str, Enum):
    """The four features that submit remote work."""

    KEYWORD_RESEARCH = "keyword-research"
    CITATION_ANALYSIS = "citation-analysis"
    BACKLINK_ANALYSIS = "backlink-analysis"
    FAQ_GENERATION = "faq-generation"


class TaskStatus(str, Enum):
    """Enumeration of task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.QUEUED: 0,
    TaskStatus.PROCESSING: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
}


def coerce_status(raw: Any, aliases: Optional[Mapping[str, TaskStatus]] = None) -> Optional[TaskStatus]:
    """Map a raw status string onto TaskStatus. Returns None when unrecognized."""
    if isinstance(raw, TaskStatus):
        return raw
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    if aliases and value in aliases:
        return aliases[value]
    try:
        return TaskStatus(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Progress:
    """Either a percentage, or a (processed, total) pair, or both."""

    percentage: Optional[float] = None
    processed: Optional[int] = None
    total: Optional[int] = None

    @classmethod
    def parse(cls, raw: Any) -> Optional["Progress"]:
        """
        Interpret a progress figure from a status payload.

        Accepts a bare number (percentage) or a mapping with `percentage` and/or
        `processed`/`completed` + `total`. Returns None when nothing is
        interpretable; absence is never turned into zero.
        """
        if raw is None or isinstance(raw, bool):
            return None
        if isinstance(raw, (int, float)):
            return cls(percentage=float(raw))
        if not isinstance(raw, Mapping):
            return None

        percentage = raw.get("percentage")
        processed = raw.get("processed", raw.get("completed"))
        total = raw.get("total")
        progress = cls(
            percentage=float(percentage) if _is_number(percentage) else None,
            processed=int(processed) if _is_number(processed) else None,
            total=int(total) if _is_number(total) else None,
        )
        if progress.as_percentage() is None:
            return None
        return progress

    def as_percentage(self) -> Optional[float]:
        """0-100 figure, preferring the processed/total pair when it is usable."""
        if self.processed is not None and self.total:
            value = self.processed / self.total * 100
        elif self.percentage is not None:
            value = self.percentage
        else:
            return None
        return max(0.0, min(100.0, value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class Task:
    """One unit of remote work as seen by the client."""

    id: TaskId
    kind: TaskKind
    status: TaskStatus = TaskStatus.PENDING
    progress: Optional[Progress] = None
    result: Any = None
    error: Optional[str] = None
    sub_errors: list = field(default_factory=list)

    def advance(self, status: TaskStatus) -> bool:
        """
        Move forward to `status`. Returns True when the status changed.

        Backward moves and moves out of a terminal state are ignored (and logged):
        the lifecycle is pending|queued -> processing -> completed|failed.
        """
        if status == self.status:
            return False
        if self.status.is_terminal:
            logger.warning("Task %s is already %s; ignoring %s", self.id, self.status.value, status.value)
            return False
        if status.rank < self.status.rank:
            logger.warning("Task %s reported %s after %s; ignoring", self.id, status.value, self.status.value)
            return False
        self.status = status
        return True

    def complete(self, result: Any) -> None:
        self.advance(TaskStatus.COMPLETED)
        self.result = result
        self.error = None

    def fail(self, message: str, sub_errors: Optional[list] = None) -> None:
        self.advance(TaskStatus.FAILED)
        self.error = message
        self.sub_errors = list(sub_errors or [])
        self.result = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "progress": self.progress.as_percentage() if self.progress else None,
            "error": self.error,
            "sub_errors": self.sub_errors,
        }


@dataclass
class PollSession:
    """Client-side process tracking one Task until it is terminal."""

    task_id: TaskId
    started_at: float = field(default_factory=time.monotonic)
    attempts: int = 0
    rate_limited_rounds: int = 0
    last_status: Optional[TaskStatus] = None
    last_percentage: Optional[float] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()
