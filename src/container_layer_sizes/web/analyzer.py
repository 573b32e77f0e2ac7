"""Analyzer HTTP service."""

import logging
from typing import Optional

from aiohttp import web

from ..config import AnalyzerConfig
from ..core.queue import TaskQueue, TaskWorkerPool
from ..core.task import Task, TaskState, describe_state
from ..exceptions import NotFoundError, ReferenceParseError
from ..models import layers_to_dict
from ..transport.layout import OciLayoutCopier
from ..transport.registry import RegistryPuller

logger = logging.getLogger(__name__)

QUEUE_KEY = web.AppKey("task_queue", TaskQueue)
POOL_KEY = web.AppKey("worker_pool", TaskWorkerPool)
PULLER_KEY = web.AppKey("registry_puller", RegistryPuller)
LOGGER_KEY = web.AppKey("logger", logging.Logger)


def _task_id(request: web.Request) -> str:
    task_id = request.query.get("id", "")
    if not task_id:
        raise web.HTTPBadRequest(text="No task id provided")
    return task_id


def _lookup_task(request: web.Request, task_id: str) -> Task:
    try:
        return request.app[QUEUE_KEY].get_task(task_id)
    except NotFoundError as e:
        raise web.HTTPBadRequest(text=str(e)) from e


async def create_task(request: web.Request) -> web.Response:
    log = request.app[LOGGER_KEY]
    form = await request.post()
    image = form.get("image")
    if not isinstance(image, str) or not image:
        raise web.HTTPBadRequest(text="No image provided")

    try:
        task_id, task = request.app[QUEUE_KEY].add_task(image)
    except ReferenceParseError as e:
        log.error(f"Error creating task for {image}: {e}")
        raise web.HTTPBadRequest(text=f"Error creating task: {e}") from e
    except OSError as e:
        log.error(f"Cannot create a scratch directory for {image}: {e}")
        raise web.HTTPInternalServerError(text=f"Error creating task: {e}") from e

    await request.app[POOL_KEY].submit(task)
    return web.Response(text=task_id)


async def get_task(request: web.Request) -> web.Response:
    task = _lookup_task(request, _task_id(request))
    return web.json_response(task.snapshot())


async def delete_task(request: web.Request) -> web.Response:
    log = request.app[LOGGER_KEY]
    task_id = _task_id(request)
    try:
        await request.app[QUEUE_KEY].remove_task(task_id)
    except NotFoundError as e:
        raise web.HTTPBadRequest(text=str(e)) from e
    except OSError as e:
        log.error(f"Error removing task {task_id}: {e}")
        raise web.HTTPInternalServerError(text=f"Error removing task: {e}") from e
    return web.Response(text="")


async def get_data(request: web.Request) -> web.StreamResponse:
    """Respond with the layer sizes of a finished task, then drop the task."""
    log = request.app[LOGGER_KEY]
    task_id = _task_id(request)
    try:
        task = request.app[QUEUE_KEY].get_task(task_id)
    except NotFoundError as e:
        raise web.HTTPInternalServerError(
            text=f"Got an error fetching the task: {e}"
        ) from e

    if task.state != TaskState.FINISHED:
        raise web.HTTPInternalServerError(
            text=(
                f"Invalid task state, expected {describe_state(TaskState.FINISHED)!r}, "
                f"got {describe_state(task.state)!r}"
            )
        )

    resp = web.json_response(layers_to_dict(task.layers))
    await resp.prepare(request)
    await resp.write_eof()

    try:
        await request.app[QUEUE_KEY].remove_task(task_id)
    except (NotFoundError, OSError) as e:
        log.error(f"Error removing task {task_id} after sending its data: {e}")
    return resp


async def _start_workers(app: web.Application) -> None:
    app[POOL_KEY].start()


async def _shutdown(app: web.Application) -> None:
    log = app[LOGGER_KEY]
    await app[POOL_KEY].stop()
    for error in await app[QUEUE_KEY].cleanup_queue():
        log.error(f"Error cleaning up the task queue: {error}")
    if PULLER_KEY in app:
        await app[PULLER_KEY].close()


def create_app(
    config: Optional[AnalyzerConfig] = None,
    queue: Optional[TaskQueue] = None,
    log: Optional[logging.Logger] = None,
) -> web.Application:
    """Create the analyzer application.

    Args:
        config: Service configuration, read from the environment if omitted
        queue: Task queue to serve, built from ``config`` if omitted
        log: Logger of the service
    """
    config = config or AnalyzerConfig.from_env()
    log = log or logger

    app = web.Application()
    app[LOGGER_KEY] = log
    if queue is None:
        puller = RegistryPuller(
            timeout=config.registry_timeout,
            insecure_registries=config.insecure_registries,
            platform=config.platform,
            log=log,
        )
        app[PULLER_KEY] = puller
        queue = TaskQueue(
            puller,
            OciLayoutCopier(log=log),
            config.storage_dir,
            task_timeout=config.task_timeout,
            scratch_root=config.scratch_dir,
            log=log,
        )
    app[QUEUE_KEY] = queue
    app[POOL_KEY] = TaskWorkerPool(config.workers, log=log)

    app.router.add_post("/task", create_task)
    app.router.add_get("/task", get_task)
    app.router.add_delete("/task", delete_task)
    app.router.add_get("/data", get_data)

    app.on_startup.append(_start_workers)
    app.on_cleanup.append(_shutdown)
    return app
