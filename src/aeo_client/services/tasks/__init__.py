"""
Task package entrypoint.

Exports the task lifecycle types used across the orchestration layer.
"""

from .base import PollSession, Progress, Task, TaskId, TaskKind, TaskStatus, coerce_status

__all__ = [
    "PollSession",
    "Progress",
    "Task",
    "TaskId",
    "TaskKind",
    "TaskStatus",
    "coerce_status",
]
