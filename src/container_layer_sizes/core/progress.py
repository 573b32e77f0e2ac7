"""Download progress tracking."""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

UNKNOWN_SIZE = -1


class ProgressEventKind(str, enum.Enum):
    NEW = "new"
    READ = "read"
    DONE = "done"
    SKIPPED = "skipped"


@dataclass
class ProgressEvent:
    """Progress report of a single artifact emitted by a puller."""

    digest: str
    size: int
    offset: int = 0
    kind: ProgressEventKind = ProgressEventKind.READ

    @property
    def is_terminal(self) -> bool:
        return self.kind in (ProgressEventKind.DONE, ProgressEventKind.SKIPPED)


@dataclass
class ProgressEntry:
    total_size: int = UNKNOWN_SIZE
    downloaded: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total_size": self.total_size, "downloaded": self.downloaded}


_CLOSED = object()


class ProgressChannel:
    """Single producer, single consumer stream of progress events.

    Iterating the channel yields events in the order they were published and
    stops once the channel has been closed and drained.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            raise RuntimeError("Cannot publish on a closed progress channel")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Close the channel, closing it again is a no-op."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class ProgressTracker:
    """Per artifact download progress, keyed by the artifact digest."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.entries: Dict[str, ProgressEntry] = {}
        self.log = log or logger

    def expect(self, digests: Iterable[str]) -> None:
        """Register artifacts whose size is not known yet."""
        for digest in digests:
            self.entries.setdefault(digest, ProgressEntry())

    def apply(self, event: ProgressEvent) -> ProgressEntry:
        """Fold a progress event into the tracked state.

        Inconsistent reports are logged and applied anyway. A terminal event
        marks the artifact as completely downloaded, even if the last partial
        report was never received.
        """
        current = self.entries.get(event.digest)
        if current is None:
            self.log.warning(f"Received progress report for an unknown layer {event.digest}")
        else:
            if current.downloaded > event.offset and not event.is_terminal:
                self.log.warning(
                    f"Downloaded size of {event.digest} went down from "
                    f"{current.downloaded} to {event.offset}"
                )
            if current.total_size != UNKNOWN_SIZE and current.total_size != event.size:
                self.log.warning(
                    f"Total size of {event.digest} changed from "
                    f"{current.total_size} to {event.size}"
                )

        downloaded = event.size if event.is_terminal else event.offset
        entry = ProgressEntry(total_size=event.size, downloaded=downloaded)
        self.entries[event.digest] = entry
        return entry

    async def consume(self, channel: ProgressChannel) -> None:
        """Apply events from ``channel`` until the producer closes it."""
        async for event in channel:
            self.apply(event)

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {digest: entry.to_dict() for digest, entry in self.entries.items()}
