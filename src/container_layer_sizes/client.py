"""Async client of the storage service."""

import logging
from typing import List, Optional

import aiohttp

from .exceptions import NotFoundError, StorageError
from .models import ImageEntry, ImageHistory, ImageHistoryEntry

logger = logging.getLogger(__name__)


def merge_tags(existing: List[str], new: List[str]) -> List[str]:
    """Union of two tag lists keeping the order of first appearance."""
    merged = list(existing)
    for tag in new:
        if tag not in merged:
            merged.append(tag)
    return merged


class StorageClient:
    """Talks to the storage service over HTTP."""

    def __init__(
        self,
        url: str = "http://localhost:4040",
        timeout: int = 30,
        connector: Optional[aiohttp.BaseConnector] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the client.

        Args:
            url: Base URL of the storage service
            timeout: Request timeout in seconds
            connector: aiohttp connector for connection pooling
        """
        self.url = url.rstrip("/") + "/"
        self.timeout = timeout
        self.connector = connector
        self.log = log or logger
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "StorageClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self.session

    async def _request(self, method: str, **kwargs):
        session = self._ensure_session()
        try:
            async with session.request(method, self.url, **kwargs) as resp:
                if resp.status == 404:
                    raise NotFoundError(await resp.text())
                if resp.status >= 400:
                    raise StorageError(
                        f"Storage service responded {resp.status}: {await resp.text()}"
                    )
                return await resp.json()
        except aiohttp.ClientError as e:
            raise StorageError(f"Failed to reach storage service at {self.url}: {e}") from e

    async def fetch_all_images(self) -> List[ImageEntry]:
        """List every image known to the storage service."""
        data = await self._request("GET")
        return [ImageEntry(id=item["id"], name=item["name"]) for item in data]

    async def fetch_history(
        self, name: Optional[str] = None, id: Optional[int] = None
    ) -> List[ImageHistory]:
        """Fetch image histories by name or by id.

        Raises:
            ValueError: If not exactly one of ``name`` and ``id`` is given
            NotFoundError: If no history matches
            StorageError: If the request fails
        """
        if (name is None) == (id is None):
            raise ValueError("Exactly one of name and id must be given")
        if id is not None:
            data = await self._request("GET", params={"id": str(id)})
            return [ImageHistory.from_dict(data)]
        data = await self._request("GET", params={"name": name})
        return [ImageHistory.from_dict(item) for item in data]

    async def save_history(
        self, name: str, digest: str, entry: ImageHistoryEntry
    ) -> ImageHistory:
        """Add an analyzed image version to the history called ``name``.

        If the history already has ``digest`` its tags are merged with the
        tags of ``entry``, otherwise the entry is added. The history is
        created when it does not exist yet.
        """
        try:
            histories = await self.fetch_history(name=name)
        except NotFoundError:
            histories = []

        if histories:
            history = histories[0]
            if len(histories) > 1:
                self.log.warning(
                    f"Found {len(histories)} histories named {name}, using id {history.id}"
                )
        else:
            history = ImageHistory(name=name)

        existing = history.history.get(digest)
        if existing is not None:
            entry = ImageHistoryEntry(
                tags=merge_tags(existing.tags, entry.tags),
                contents=entry.contents,
                inspect_info=entry.inspect_info,
                id=existing.id,
            )
        history.history[digest] = entry

        method = "POST" if history.id is not None else "PUT"
        data = await self._request(method, json=history.to_dict())
        return ImageHistory.from_dict(data)
