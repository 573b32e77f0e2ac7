"""Registry of analysis tasks and the workers processing them."""

import asyncio
import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from ..exceptions import NotFoundError
from ..tar.extractor import Extractor
from ..transport.base import Copier, Puller
from .task import DEFAULT_TASK_TIMEOUT, Task

logger = logging.getLogger(__name__)


class TaskQueue:
    """Keeps the tasks of the analyzer service keyed by their id."""

    def __init__(
        self,
        puller: Puller,
        copier: Copier,
        storage_dir: Union[str, Path],
        extractor: Optional[Extractor] = None,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        scratch_root: Optional[Union[str, Path]] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.puller = puller
        self.copier = copier
        self.storage_dir = Path(storage_dir)
        self.extractor = extractor
        self.task_timeout = task_timeout
        self.scratch_root = scratch_root
        self.log = log or logger
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    def add_task(self, image: str) -> Tuple[str, Task]:
        """Create and register a task for ``image``.

        Returns:
            (task id, task) tuple

        Raises:
            ReferenceParseError: If ``image`` is not a valid image reference
            OSError: If the scratch directory cannot be created
        """
        task = Task.create(
            image,
            self.storage_dir,
            self.puller,
            self.copier,
            extractor=self.extractor,
            timeout=self.task_timeout,
            scratch_root=self.scratch_root,
            log=self.log,
        )
        task_id = str(uuid.uuid4())
        with self._lock:
            self._tasks[task_id] = task
        self.log.info(f"Added task {task_id} for {image}")
        return task_id, task

    def get_task(self, task_id: str) -> Task:
        """Look up a task.

        Raises:
            NotFoundError: If there is no task with ``task_id``
        """
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Non existing task id {task_id}")
        return task

    async def remove_task(self, task_id: str) -> None:
        """Unregister a task, cancel it and remove its scratch directory.

        Raises:
            NotFoundError: If there is no task with ``task_id``
            OSError: If the scratch directory cannot be removed
        """
        with self._lock:
            task = self._tasks.pop(task_id, None)
        if task is None:
            raise NotFoundError(f"Non existing task id {task_id}")
        self.log.info(f"Removing task {task_id} for {task.image}")
        await task.cleanup()

    async def cleanup_queue(self) -> List[Exception]:
        """Remove every task.

        Returns:
            Errors of the tasks whose cleanup failed
        """
        with self._lock:
            tasks = list(self._tasks.items())
            self._tasks.clear()

        errors: List[Exception] = []
        for task_id, task in tasks:
            try:
                await task.cleanup()
            except OSError as e:
                self.log.error(f"Failed to clean up task {task_id}: {e}")
                errors.append(e)
        return errors


class TaskWorkerPool:
    """A fixed number of asyncio workers processing submitted tasks."""

    def __init__(self, workers: int = 1, log: Optional[logging.Logger] = None) -> None:
        if workers < 1:
            raise ValueError(f"At least one worker is required, got {workers}")
        self.workers = workers
        self.log = log or logger
        self._jobs: Optional[asyncio.Queue] = None
        self._runners: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._runners)

    def start(self) -> None:
        """Start the workers on the running event loop."""
        if self._runners:
            return
        self._jobs = asyncio.Queue()
        self._runners = [
            asyncio.create_task(self._work(n), name=f"task-worker-{n}")
            for n in range(self.workers)
        ]

    async def submit(self, task: Task) -> None:
        if self._jobs is None:
            raise RuntimeError("Worker pool has not been started")
        await self._jobs.put(task)

    async def join(self) -> None:
        """Wait until every submitted task has been processed."""
        if self._jobs is not None:
            await self._jobs.join()

    async def _work(self, n: int) -> None:
        assert self._jobs is not None
        while True:
            task = await self._jobs.get()
            try:
                self.log.debug(f"Worker {n} processing task for {task.image}")
                await task.process()
            except Exception as e:
                self.log.error(f"Worker {n} failed to process task for {task.image}: {e}")
            finally:
                self._jobs.task_done()

    async def stop(self) -> None:
        """Cancel the workers and wait for them to exit."""
        runners, self._runners = self._runners, []
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)
        self._jobs = None
