"""Interfaces of the image transport collaborators."""

from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Union

from ..models import ImageInspectInfo
from ..utils.reference import ImageReference

if TYPE_CHECKING:
    from ..core.progress import ProgressChannel


class Puller(Protocol):
    """Moves an image from a remote location into the local content store."""

    async def inspect(self, remote: ImageReference) -> ImageInspectInfo:
        """Return the metadata of the remote image, including its layers."""
        ...

    async def pull(
        self,
        remote: ImageReference,
        local: ImageReference,
        progress: "ProgressChannel",
    ) -> None:
        """Copy ``remote`` to ``local``, publishing progress events.

        The puller closes ``progress`` once it stops publishing.
        """
        ...


class Copier(Protocol):
    """Materializes an image as an OCI layout directory."""

    async def copy(
        self, source: ImageReference, destination_dir: Union[str, Path]
    ) -> bytes:
        """Copy ``source`` into ``destination_dir`` and return its manifest."""
        ...
