"""Analysis task: pull, extract and analyze a single image."""

import asyncio
import enum
import logging
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Awaitable, Dict, Iterable, Optional, Tuple, TypeVar, Union

from ..exceptions import (
    CancellationError,
    DeadlineExceededError,
    TaskStateError,
)
from ..models import ImageHistoryEntry, ImageInspectInfo, Layer, LayerSet
from ..tar.extractor import Extractor, TarLayerExtractor, build_layer
from ..tar.manifest import (
    blob_path,
    check_media_types,
    inspect_image_config,
    layer_history,
    parse_manifest,
    read_image_config,
)
from ..tar.models import Manifest
from ..transport.base import Copier, Puller
from ..utils.digest import calculate_digest, split_digest
from ..utils.reference import ImageReference, parse_image_reference
from .progress import ProgressChannel, ProgressTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TASK_TIMEOUT = 5 * 60


class TaskState(enum.IntEnum):
    NEW = 0
    PULLING = 1
    EXTRACTING = 2
    ANALYZING = 3
    FINISHED = 4
    ERROR = 5


STATE_DESCRIPTIONS = {
    TaskState.NEW: "Task is new",
    TaskState.PULLING: "Pulling image",
    TaskState.EXTRACTING: "Extracting image",
    TaskState.ANALYZING: "Analyzing image",
    TaskState.FINISHED: "Task is finished",
    TaskState.ERROR: "Task failed",
}


def describe_state(state: Union[TaskState, int]) -> str:
    """Human readable description of a task state.

    Raises:
        TaskStateError: If ``state`` is not a valid task state
    """
    try:
        return STATE_DESCRIPTIONS[TaskState(state)]
    except ValueError as e:
        raise TaskStateError(f"Invalid task state {state!r}") from e


class Task:
    """Pulls an image, copies it into a scratch OCI layout and computes the
    directory sizes of every layer.

    States advance strictly NEW -> PULLING -> EXTRACTING -> ANALYZING ->
    FINISHED; any failure moves the task to ERROR. Cancellation and the
    deadline abandon the task instead: its state stays where it stopped and
    ``abandoned`` is set.
    """

    def __init__(
        self,
        image: str,
        remote: ImageReference,
        local: ImageReference,
        scratch_dir: Union[str, Path],
        puller: Puller,
        copier: Copier,
        extractor: Optional[Extractor] = None,
        timeout: float = DEFAULT_TASK_TIMEOUT,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.image = image
        self.remote = remote
        self.local = local
        self.scratch_dir = Path(scratch_dir)
        self.timeout = timeout
        self.log = log or logger

        self.state = TaskState.NEW
        self.progress = ProgressTracker(self.log)
        self.layers: LayerSet = {}
        self.error: Optional[BaseException] = None
        self.image_info: Optional[ImageInspectInfo] = None
        self.manifest_digest = ""
        self.abandoned = False

        self._puller = puller
        self._copier = copier
        self._extractor = extractor or TarLayerExtractor()
        self._deadline = time.monotonic() + timeout
        self._cancelled = False
        self._inflight: Optional[asyncio.Future] = None
        # set once the executor thread of the current layer returns
        self._worker_done: Optional[asyncio.Event] = None

    @classmethod
    def create(
        cls,
        image: str,
        storage_dir: Union[str, Path],
        puller: Puller,
        copier: Copier,
        extractor: Optional[Extractor] = None,
        timeout: float = DEFAULT_TASK_TIMEOUT,
        scratch_root: Optional[Union[str, Path]] = None,
        log: Optional[logging.Logger] = None,
    ) -> "Task":
        """Create a new task for ``image``.

        Args:
            image: Image reference, e.g. "nginx:alpine" or "oci:/images/app:1.0"
            storage_dir: OCI layout directory images are pulled into
            puller: Moves remote images into ``storage_dir``
            copier: Copies images into the scratch directory of the task
            extractor: Reads layer archives, defaults to TarLayerExtractor
            timeout: Seconds from now until the task is abandoned
            scratch_root: Parent directory of the scratch directory

        Raises:
            ReferenceParseError: If ``image`` is not a valid image reference
        """
        remote = parse_image_reference(image)
        local = remote.local_reference(storage_dir)
        scratch_dir = tempfile.mkdtemp(
            prefix="layer-sizes-", dir=str(scratch_root) if scratch_root else None
        )
        return cls(
            image,
            remote,
            local,
            scratch_dir,
            puller,
            copier,
            extractor=extractor,
            timeout=timeout,
            log=log,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _set_error(self, error: BaseException) -> None:
        self.log.error(
            f"Error occurred when processing the task for {self.image} "
            f"in state {self.state.name}: {error}"
        )
        self.error = error
        self.state = TaskState.ERROR

    def _abandon(self, reason: BaseException) -> None:
        self.log.error(
            f"Task for {self.image} abandoned in state {self.state.name}: {reason}"
        )
        self.abandoned = True

    async def process(self) -> None:
        """Run the task to completion.

        Failures are recorded on the task, they are never raised.

        Raises:
            TaskStateError: If the task has already been processed
        """
        if self.state != TaskState.NEW:
            raise TaskStateError(
                f"Task for {self.image} has already been processed "
                f"(state: {describe_state(self.state)})"
            )

        try:
            self.state = TaskState.PULLING
            await self._pull()

            self.state = TaskState.EXTRACTING
            manifest, config = await self._extract()

            self.state = TaskState.ANALYZING
            layers = await self._analyze(manifest, config)
        except CancellationError as e:
            self._abandon(e)
            return
        except Exception as e:
            if self._cancelled:
                self._abandon(e)
            else:
                self._set_error(e)
            return

        self.layers = layers
        self.state = TaskState.FINISHED

    async def _run_blocking(self, awaitable: Awaitable[T]) -> T:
        """Await blocking work, bounded by the deadline and by cancellation."""
        inflight = asyncio.ensure_future(awaitable)
        remaining = self._deadline - time.monotonic()
        if self._cancelled or remaining <= 0:
            inflight.cancel()
            if self._cancelled:
                raise CancellationError(f"Task for {self.image} has been cancelled")
            raise DeadlineExceededError(
                f"Task for {self.image} exceeded its deadline of {self.timeout}s"
            )

        self._inflight = inflight
        try:
            return await asyncio.wait_for(inflight, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError(
                f"Task for {self.image} exceeded its deadline of {self.timeout}s"
            ) from e
        except asyncio.CancelledError:
            if self._cancelled:
                raise CancellationError(
                    f"Task for {self.image} has been cancelled"
                ) from None
            raise
        finally:
            self._inflight = None

    async def _pull(self) -> None:
        if self.remote.transport == self.local.transport:
            self.log.debug(
                f"Not pulling {self.remote} into local storage, "
                "as it is already present locally"
            )
            return

        self.image_info = await self._run_blocking(self._puller.inspect(self.remote))
        self.progress.expect(self.image_info.layers)

        channel = ProgressChannel()
        drain = asyncio.ensure_future(self.progress.consume(channel))
        try:
            await self._run_blocking(self._puller.pull(self.remote, self.local, channel))
        finally:
            # the pull coroutine is over, nothing can publish anymore
            channel.close()
            await drain

    async def _extract(self) -> Tuple[Manifest, Dict[str, Any]]:
        raw_manifest = await self._run_blocking(
            self._copier.copy(self.local, self.scratch_dir)
        )
        manifest = parse_manifest(raw_manifest)
        check_media_types(manifest)
        self.manifest_digest = calculate_digest(raw_manifest)

        config = read_image_config(self.scratch_dir, manifest)
        self.image_info = inspect_image_config(config, manifest, tag=self.remote.tag)
        return manifest, config

    async def _analyze(self, manifest: Manifest, config: Dict[str, Any]) -> LayerSet:
        loop = asyncio.get_running_loop()
        layers: LayerSet = {}
        for descriptor in manifest.layers:
            _, hex_digest = split_digest(descriptor.digest)
            path = blob_path(self.scratch_dir, descriptor.digest)
            done = asyncio.Event()
            self._worker_done = done
            layers[hex_digest] = await self._run_blocking(
                loop.run_in_executor(None, self._build_layer, loop, done, path)
            )

        created_by = layer_history(config, manifest, self.log)
        for hex_digest, command in created_by.items():
            layer = layers.get(hex_digest)
            if layer is None:
                self.log.warning(f"History entry of {hex_digest} has no extracted layer")
                continue
            layer.created_by = command
        for hex_digest in layers.keys() - created_by.keys():
            self.log.warning(f"Layer {hex_digest} has no history entry")

        return layers

    def _build_layer(
        self, loop: asyncio.AbstractEventLoop, done: asyncio.Event, path: Path
    ) -> Layer:
        # runs in an executor thread
        try:
            return build_layer(path, self._extractor, cancelled=lambda: self._cancelled)
        finally:
            loop.call_soon_threadsafe(done.set)

    def cancel(self) -> None:
        """Cancel the task, in-flight blocking work is aborted."""
        self._cancelled = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    async def cleanup(self) -> None:
        """Cancel the task and remove its scratch directory.

        Raises:
            OSError: If the scratch directory cannot be removed
        """
        inflight = self._inflight
        self.cancel()
        if inflight is not None:
            await asyncio.wait([inflight])
        # a cancelled executor future does not stop its thread
        if self._worker_done is not None:
            await self._worker_done.wait()

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _remove_tree, self.scratch_dir)

    def snapshot(self) -> Dict[str, Any]:
        """JSON serializable status of the task."""
        error = ""
        if self.error is not None:
            error = str(self.error) or type(self.error).__name__
        return {
            "image": self.image,
            "state": int(self.state),
            "state_description": describe_state(self.state),
            "progress": self.progress.to_dict(),
            "image_info": self.image_info.to_dict() if self.image_info else None,
            "manifest_digest": self.manifest_digest,
            "abandoned": self.abandoned,
            "error": error,
        }

    def history_entry(self, tags: Optional[Iterable[str]] = None) -> ImageHistoryEntry:
        """Build an image history entry from the result of a finished task.

        Raises:
            TaskStateError: If the task is not finished
        """
        if self.state != TaskState.FINISHED:
            raise TaskStateError(
                f"Task for {self.image} is not finished (state: {describe_state(self.state)})"
            )
        return ImageHistoryEntry(
            tags=list(tags) if tags is not None else [self.remote.tag],
            contents=self.layers,
            inspect_info=self.image_info.to_dict() if self.image_info else {},
        )


def _remove_tree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
