"""OCI image layout directories used as content store and extraction target."""

import asyncio
import json
import logging
import uuid
import weakref
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from ..exceptions import ManifestDecodeError, TransportError
from ..tar.manifest import DOCKER_TO_OCI_MEDIA_TYPES, OCI_MANIFEST_MEDIA_TYPE, blob_path
from ..tar.models import Descriptor
from ..utils.digest import calculate_digest
from ..utils.reference import ImageReference

logger = logging.getLogger(__name__)

LAYOUT_VERSION = "1.0.0"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"
COPY_CHUNK_SIZE = 1024 * 1024

# one lock per layout root, shared by every OciLayout opened on it
_index_locks: "weakref.WeakValueDictionary[Path, asyncio.Lock]" = weakref.WeakValueDictionary()


def _index_lock(root: Path) -> asyncio.Lock:
    key = root.resolve()
    lock = _index_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _index_locks[key] = lock
    return lock


class OciLayout:
    """An OCI image layout directory.

    Blobs live in ``blobs/<algorithm>/<hex>``, tagged manifests are listed in
    ``index.json`` with their reference name annotation. Updates of
    ``index.json`` are serialized per layout root and replace the file
    atomically, so concurrent tasks can share one layout.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)
        self._index_lock = _index_lock(self.root)

    @property
    def index_path(self) -> Path:
        return self.root / "index.json"

    def blob_path(self, digest: str) -> Path:
        return blob_path(self.root, digest)

    async def init(self) -> None:
        """Create the layout skeleton if it does not exist yet."""
        await aiofiles.os.makedirs(self.root / "blobs", exist_ok=True)

        async with self._index_lock:
            layout_file = self.root / "oci-layout"
            if not await aiofiles.os.path.exists(layout_file):
                await self._write_json(layout_file, {"imageLayoutVersion": LAYOUT_VERSION})
            if not await aiofiles.os.path.exists(self.index_path):
                await self._write_json(
                    self.index_path,
                    {
                        "schemaVersion": 2,
                        "mediaType": "application/vnd.oci.image.index.v1+json",
                        "manifests": [],
                    },
                )

    async def has_blob(self, digest: str) -> bool:
        return await aiofiles.os.path.exists(self.blob_path(digest))

    async def read_blob(self, digest: str) -> bytes:
        async with aiofiles.open(self.blob_path(digest), "rb") as f:
            return await f.read()

    async def write_blob(self, digest: str, data: bytes) -> None:
        path = self.blob_path(digest)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        await self._write_atomic(path, data)

    def partial_blob_path(self, digest: str) -> Path:
        """Temporary path a blob is written to before it is complete."""
        return self._partial_path(self.blob_path(digest))

    async def copy_blob_from(self, source: "OciLayout", digest: str) -> None:
        """Copy a blob from another layout, skipping blobs already present."""
        if await self.has_blob(digest):
            return

        path = self.blob_path(digest)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        partial = self.partial_blob_path(digest)
        async with aiofiles.open(source.blob_path(digest), "rb") as src:
            async with aiofiles.open(partial, "wb") as dst:
                while True:
                    chunk = await src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    await dst.write(chunk)
        await aiofiles.os.replace(partial, path)

    async def read_index(self) -> Dict[str, Any]:
        """Load index.json.

        Raises:
            TransportError: If the index is unreadable or not a JSON object
        """
        try:
            async with aiofiles.open(self.index_path, "rb") as f:
                index = json.loads(await f.read())
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TransportError(f"Cannot read the index of {self.root}: {e}") from e
        if not isinstance(index, dict):
            raise TransportError(f"The index of {self.root} is not a JSON object")
        return index

    async def resolve(self, ref_name: str) -> Descriptor:
        """Find the manifest descriptor tagged with ``ref_name``.

        Raises:
            TransportError: If the layout has no such reference
        """
        index = await self.read_index()

        for manifest in index.get("manifests", []):
            annotations = manifest.get("annotations") or {}
            if annotations.get(REF_NAME_ANNOTATION) == ref_name:
                return Descriptor(
                    media_type=manifest.get("mediaType", OCI_MANIFEST_MEDIA_TYPE),
                    digest=manifest["digest"],
                    size=manifest.get("size", 0),
                )
        raise TransportError(f"No image {ref_name!r} in the layout {self.root}")

    async def read_manifest(self, ref_name: str) -> Tuple[Descriptor, bytes]:
        descriptor = await self.resolve(ref_name)
        try:
            return descriptor, await self.read_blob(descriptor.digest)
        except OSError as e:
            raise TransportError(
                f"Cannot read manifest {descriptor.digest} of {ref_name!r}: {e}"
            ) from e

    async def tag_manifest(self, descriptor: Descriptor, ref_name: str) -> None:
        """Point ``ref_name`` at the manifest ``descriptor`` in index.json."""
        async with self._index_lock:
            index = await self.read_index()
            manifests = [
                m
                for m in index.get("manifests", [])
                if (m.get("annotations") or {}).get(REF_NAME_ANNOTATION) != ref_name
            ]
            manifests.append(
                {
                    "mediaType": descriptor.media_type,
                    "digest": descriptor.digest,
                    "size": descriptor.size,
                    "annotations": {REF_NAME_ANNOTATION: ref_name},
                }
            )
            index["manifests"] = manifests
            await self._write_json(self.index_path, index)

    def _partial_path(self, path: Path) -> Path:
        return path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.partial")

    async def _write_atomic(self, path: Path, data: bytes) -> None:
        partial = self._partial_path(path)
        async with aiofiles.open(partial, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(partial, path)

    async def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        await self._write_atomic(path, json.dumps(data).encode("utf-8"))


def convert_to_oci(manifest: Dict[str, Any]) -> bool:
    """Rewrite Docker v2 media types of a manifest to their OCI equivalents.

    Returns:
        True if any media type was rewritten
    """
    changed = False
    descriptors = [manifest, manifest.get("config") or {}] + list(manifest.get("layers") or [])
    for descriptor in descriptors:
        media_type = descriptor.get("mediaType")
        if media_type in DOCKER_TO_OCI_MEDIA_TYPES:
            descriptor["mediaType"] = DOCKER_TO_OCI_MEDIA_TYPES[media_type]
            changed = True
    return changed


class OciLayoutCopier:
    """Copies images between OCI layout directories."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logger

    async def copy(
        self, source: ImageReference, destination_dir: Union[str, Path]
    ) -> bytes:
        """Copy the image ``source`` into the layout at ``destination_dir``.

        Docker v2 media types are converted to OCI media types on the way.

        Returns:
            The manifest as written to the destination

        Raises:
            TransportError: If the source image cannot be read or copied
            ManifestDecodeError: If the source manifest is not a JSON object
        """
        self.log.info(f"Copying image {source} into {destination_dir}")
        src = OciLayout(source.name)
        dst = OciLayout(destination_dir)

        descriptor, manifest_bytes = await src.read_manifest(source.tag)
        try:
            manifest = json.loads(manifest_bytes)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestDecodeError(f"Invalid manifest of {source}: {e}") from e
        if not isinstance(manifest, dict):
            raise ManifestDecodeError(f"Manifest of {source} is not a JSON object")

        try:
            await dst.init()
            blobs = [manifest.get("config") or {}] + list(manifest.get("layers") or [])
            for blob in blobs:
                await dst.copy_blob_from(src, blob["digest"])

            if convert_to_oci(manifest):
                manifest_bytes = json.dumps(manifest).encode("utf-8")
            digest = calculate_digest(manifest_bytes)
            await dst.write_blob(digest, manifest_bytes)
            await dst.tag_manifest(
                Descriptor(
                    media_type=OCI_MANIFEST_MEDIA_TYPE,
                    digest=digest,
                    size=len(manifest_bytes),
                ),
                source.tag,
            )
        except (OSError, KeyError, TypeError, AttributeError) as e:
            raise TransportError(f"Failed to copy {source}: {e}") from e

        return manifest_bytes
