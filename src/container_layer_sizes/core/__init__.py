"""Analysis tasks and their bookkeeping."""

from .progress import (
    ProgressChannel,
    ProgressEntry,
    ProgressEvent,
    ProgressEventKind,
    ProgressTracker,
)
from .task import Task, TaskState, describe_state
from .queue import TaskQueue, TaskWorkerPool

__all__ = [
    "ProgressChannel",
    "ProgressEntry",
    "ProgressEvent",
    "ProgressEventKind",
    "ProgressTracker",
    "Task",
    "TaskQueue",
    "TaskState",
    "TaskWorkerPool",
    "describe_state",
]
