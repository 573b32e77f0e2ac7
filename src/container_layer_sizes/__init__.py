"""Container Layer Sizes - analyze how much every directory of an image layer weighs."""

__version__ = "0.1.0"

from .client import StorageClient
from .core import ProgressTracker, Task, TaskQueue, TaskState, TaskWorkerPool
from .exceptions import (
    AmbiguousResultError,
    CancellationError,
    DeadlineExceededError,
    DigestFormatError,
    LayerSizesError,
    ManifestDecodeError,
    MediaTypeMismatchError,
    NotFoundError,
    ReferenceParseError,
    StorageError,
    TaskStateError,
    TransportError,
)
from .models import (
    DirectoryNode,
    ImageEntry,
    ImageHistory,
    ImageHistoryEntry,
    ImageInspectInfo,
    Layer,
)
from .storage import HistoryStore

__all__ = [
    "AmbiguousResultError",
    "CancellationError",
    "DeadlineExceededError",
    "DigestFormatError",
    "DirectoryNode",
    "HistoryStore",
    "ImageEntry",
    "ImageHistory",
    "ImageHistoryEntry",
    "ImageInspectInfo",
    "Layer",
    "LayerSizesError",
    "ManifestDecodeError",
    "MediaTypeMismatchError",
    "NotFoundError",
    "ProgressTracker",
    "ReferenceParseError",
    "StorageClient",
    "StorageError",
    "Task",
    "TaskQueue",
    "TaskState",
    "TaskStateError",
    "TaskWorkerPool",
    "TransportError",
]
