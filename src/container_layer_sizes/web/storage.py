"""Storage HTTP service."""

import asyncio
import functools
import json
import logging
from typing import Any, Callable, Optional, TypeVar

from aiohttp import web

from ..exceptions import AmbiguousResultError, NotFoundError, StorageError
from ..models import ImageHistory
from ..storage.history import HistoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_KEY = web.AppKey("history_store", HistoryStore)
LOGGER_KEY = web.AppKey("logger", logging.Logger)


async def _run(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking store call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args))


async def get_history(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    log = request.app[LOGGER_KEY]
    name = request.query.get("name", "")
    raw_id = request.query.get("id", "")

    if name and raw_id:
        raise web.HTTPBadRequest(text="Either the parameter id or name must be present")

    try:
        if raw_id:
            try:
                image_id = int(raw_id)
            except ValueError as e:
                raise web.HTTPBadRequest(text=f"Invalid image id {raw_id!r}") from e
            history = await _run(store.read_by_id, image_id)
            return web.json_response(history.to_dict())

        if name:
            histories = await _run(store.read, name)
            if not histories:
                raise web.HTTPNotFound(text=f"No image history found for {name}")
            return web.json_response([history.to_dict() for history in histories])

        entries = await _run(store.read_all)
        return web.json_response([entry.to_dict() for entry in entries])
    except NotFoundError as e:
        raise web.HTTPNotFound(text=str(e)) from e
    except StorageError as e:
        log.error(f"Failed to read image history: {e}")
        raise web.HTTPInternalServerError(text=str(e)) from e


async def _read_history(request: web.Request) -> ImageHistory:
    try:
        return ImageHistory.from_dict(json.loads(await request.text()))
    except (ValueError, TypeError, AttributeError) as e:
        raise web.HTTPBadRequest(text=f"Invalid image history: {e}") from e


async def create_history(request: web.Request) -> web.Response:
    history = await _read_history(request)
    try:
        created = await _run(request.app[STORE_KEY].create, history)
    except StorageError as e:
        request.app[LOGGER_KEY].error(f"Failed to create image history: {e}")
        raise web.HTTPInternalServerError(text=str(e)) from e
    return web.json_response(created.to_dict())


async def update_history(request: web.Request) -> web.Response:
    history = await _read_history(request)
    if history.id is None:
        raise web.HTTPBadRequest(text="Image history id is required for updates")
    try:
        updated = await _run(request.app[STORE_KEY].update, history)
    except StorageError as e:
        request.app[LOGGER_KEY].error(f"Failed to update image history: {e}")
        raise web.HTTPInternalServerError(text=str(e)) from e
    return web.json_response(updated.to_dict())


async def delete_history(request: web.Request) -> web.Response:
    name = request.query.get("name", "")
    if not name:
        raise web.HTTPBadRequest(text="The parameter name must be present")
    try:
        await _run(request.app[STORE_KEY].delete_by_name, name)
    except NotFoundError as e:
        raise web.HTTPNotFound(text=str(e)) from e
    except AmbiguousResultError as e:
        raise web.HTTPConflict(text=str(e)) from e
    except StorageError as e:
        request.app[LOGGER_KEY].error(f"Failed to delete image history {name}: {e}")
        raise web.HTTPInternalServerError(text=str(e)) from e
    return web.Response(text="")


def create_app(
    store: HistoryStore, log: Optional[logging.Logger] = None, close_store: bool = True
) -> web.Application:
    """Create the storage application serving ``store``.

    Args:
        store: History store the requests operate on
        log: Logger of the service
        close_store: Close the store when the application shuts down
    """
    app = web.Application()
    app[STORE_KEY] = store
    app[LOGGER_KEY] = log or logger

    app.router.add_get("/", get_history)
    app.router.add_put("/", create_history)
    app.router.add_post("/", update_history)
    app.router.add_delete("/", delete_history)

    if close_store:

        async def _close_store(app: web.Application) -> None:
            app[STORE_KEY].close()

        app.on_cleanup.append(_close_store)
    return app
