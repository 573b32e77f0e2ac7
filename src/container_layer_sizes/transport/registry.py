"""Docker Registry API v2 async puller."""

import asyncio
import hashlib
import json
import logging
from typing import Dict, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os
import aiohttp

from ..core.progress import ProgressChannel, ProgressEvent, ProgressEventKind
from ..exceptions import ManifestDecodeError, TransportError
from ..models import ImageInspectInfo
from ..tar.manifest import (
    DOCKER_MANIFEST_MEDIA_TYPE,
    OCI_MANIFEST_MEDIA_TYPE,
    inspect_image_config,
    parse_manifest,
)
from ..tar.models import Descriptor, Manifest
from ..utils.digest import calculate_digest, split_digest, verify_digest
from ..utils.reference import DEFAULT_REGISTRY, ImageReference
from .layout import OciLayout

logger = logging.getLogger(__name__)

OCI_INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.list.v2+json"

MANIFEST_ACCEPT = ", ".join(
    [
        OCI_MANIFEST_MEDIA_TYPE,
        DOCKER_MANIFEST_MEDIA_TYPE,
        OCI_INDEX_MEDIA_TYPE,
        DOCKER_MANIFEST_LIST_MEDIA_TYPE,
    ]
)

DOCKER_HUB_URL = "https://registry-1.docker.io"
DEFAULT_INSECURE_REGISTRIES = ("localhost", "127.0.0.1")


class RegistryPuller:
    """Pulls images from unauthenticated registry:2 compatible registries."""

    def __init__(
        self,
        timeout: int = 300,
        connector: Optional[aiohttp.TCPConnector] = None,
        insecure_registries: Sequence[str] = DEFAULT_INSECURE_REGISTRIES,
        platform: str = "linux/amd64",
        chunk_size: int = 1024 * 1024,
        progress_interval: float = 1.0,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the puller.

        Args:
            timeout: Request timeout in seconds
            connector: aiohttp connector for connection pooling
            insecure_registries: Registry hosts that are contacted via http
            platform: os/architecture picked from multi platform images
            chunk_size: Size of the chunks blobs are downloaded in
            progress_interval: Minimum seconds between two progress reports
                of the same blob
        """
        self.timeout = timeout
        self.connector = connector
        self.insecure_registries = tuple(insecure_registries)
        self.platform = platform
        self.chunk_size = chunk_size
        self.progress_interval = progress_interval
        self.log = log or logger
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "RegistryPuller":
        """Enter async context manager."""
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self.session

    def registry_url(self, registry: str) -> str:
        """Base URL of the registry API for a registry host."""
        if registry == DEFAULT_REGISTRY:
            return DOCKER_HUB_URL
        host = registry.split(":", 1)[0]
        scheme = "http" if host in self.insecure_registries else "https"
        return f"{scheme}://{registry}"

    def _url(self, remote: ImageReference, kind: str, reference: str) -> str:
        return f"{self.registry_url(remote.registry)}/v2/{remote.name}/{kind}/{reference}"

    async def _get_manifest_by_reference(
        self, remote: ImageReference, reference: str
    ) -> Tuple[bytes, str]:
        session = self._ensure_session()
        url = self._url(remote, "manifests", reference)
        try:
            async with session.get(url, headers={"Accept": MANIFEST_ACCEPT}) as resp:
                resp.raise_for_status()
                media_type = resp.headers.get("Content-Type", "").split(";")[0]
                return await resp.read(), media_type
        except aiohttp.ClientError as e:
            raise TransportError(f"Failed to get manifest of {remote}: {e}") from e

    def _select_platform(self, index: Dict, remote: ImageReference) -> str:
        os_name, _, architecture = self.platform.partition("/")
        for manifest in index.get("manifests", []):
            platform = manifest.get("platform") or {}
            if platform.get("os") == os_name and platform.get("architecture") == architecture:
                return manifest["digest"]
        raise TransportError(f"Image {remote} has no manifest for platform {self.platform}")

    async def get_manifest(self, remote: ImageReference) -> Tuple[bytes, str]:
        """Retrieve the image manifest of ``remote``.

        Multi platform images are resolved to the manifest of ``platform``.

        Returns:
            (manifest bytes, media type) tuple

        Raises:
            TransportError: If retrieval fails
        """
        data, media_type = await self._get_manifest_by_reference(remote, remote.tag)
        if media_type in (OCI_INDEX_MEDIA_TYPE, DOCKER_MANIFEST_LIST_MEDIA_TYPE):
            try:
                index = json.loads(data)
            except json.JSONDecodeError as e:
                raise ManifestDecodeError(f"Invalid image index of {remote}: {e}") from e
            digest = self._select_platform(index, remote)
            data, media_type = await self._get_manifest_by_reference(remote, digest)
        return data, media_type

    async def get_blob(self, remote: ImageReference, digest: str) -> bytes:
        """Download a small blob into memory and verify its digest."""
        session = self._ensure_session()
        try:
            async with session.get(self._url(remote, "blobs", digest)) as resp:
                resp.raise_for_status()
                data = await resp.read()
        except aiohttp.ClientError as e:
            raise TransportError(f"Failed to get blob {digest}: {e}") from e

        if not verify_digest(data, digest):
            raise TransportError(f"Digest mismatch of blob {digest}")
        return data

    async def _get_config(self, remote: ImageReference, manifest: Manifest) -> Dict:
        config = await self.get_blob(remote, manifest.config.digest)
        try:
            return json.loads(config)
        except json.JSONDecodeError as e:
            raise ManifestDecodeError(f"Invalid config of {remote}: {e}") from e

    async def inspect(self, remote: ImageReference) -> ImageInspectInfo:
        """Inspect the remote image without downloading its layers."""
        self.log.info(f"Inspecting image {remote}")
        data, _ = await self.get_manifest(remote)
        manifest = parse_manifest(data)
        config = await self._get_config(remote, manifest)
        return inspect_image_config(config, manifest, tag=remote.tag)

    async def pull(
        self,
        remote: ImageReference,
        local: ImageReference,
        progress: ProgressChannel,
    ) -> None:
        """Pull ``remote`` into the local OCI layout ``local``.

        Blobs already present locally are skipped. Progress of every layer is
        published on ``progress``, which is closed when the pull ends.

        Raises:
            TransportError: If the image cannot be downloaded
        """
        self.log.info(f"Pulling image {remote} into {local}")
        try:
            store = OciLayout(local.name)
            await store.init()

            data, media_type = await self.get_manifest(remote)
            manifest = parse_manifest(data)

            await self._fetch_blob(remote, store, manifest.config, None)
            for layer in manifest.layers:
                await self._fetch_blob(remote, store, layer, progress)

            digest = calculate_digest(data)
            await store.write_blob(digest, data)
            await store.tag_manifest(
                Descriptor(
                    media_type=media_type or OCI_MANIFEST_MEDIA_TYPE,
                    digest=digest,
                    size=len(data),
                ),
                local.tag,
            )
        except OSError as e:
            raise TransportError(f"Failed to store {remote} in {local}: {e}") from e
        finally:
            progress.close()

    async def _fetch_blob(
        self,
        remote: ImageReference,
        store: OciLayout,
        descriptor: Descriptor,
        progress: Optional[ProgressChannel],
    ) -> None:
        def publish(kind: ProgressEventKind, offset: int) -> None:
            if progress is not None:
                progress.publish(
                    ProgressEvent(
                        digest=descriptor.digest,
                        size=descriptor.size,
                        offset=offset,
                        kind=kind,
                    )
                )

        if await store.has_blob(descriptor.digest):
            self.log.debug(f"Blob {descriptor.digest} is already present, skipping it")
            publish(ProgressEventKind.SKIPPED, descriptor.size)
            return

        algorithm, _ = split_digest(descriptor.digest)
        hasher = hashlib.new(algorithm)
        path = store.blob_path(descriptor.digest)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        partial = store.partial_blob_path(descriptor.digest)

        session = self._ensure_session()
        loop = asyncio.get_running_loop()
        last_report = loop.time()
        offset = 0
        completed = False
        publish(ProgressEventKind.NEW, 0)
        try:
            async with session.get(self._url(remote, "blobs", descriptor.digest)) as resp:
                resp.raise_for_status()
                async with aiofiles.open(partial, "wb") as f:
                    async for chunk in resp.content.iter_chunked(self.chunk_size):
                        await f.write(chunk)
                        hasher.update(chunk)
                        offset += len(chunk)
                        if loop.time() - last_report >= self.progress_interval:
                            publish(ProgressEventKind.READ, offset)
                            last_report = loop.time()

            if f"{algorithm}:{hasher.hexdigest()}" != descriptor.digest:
                raise TransportError(f"Digest mismatch of blob {descriptor.digest}")

            await aiofiles.os.replace(partial, path)
            completed = True
        except aiohttp.ClientError as e:
            raise TransportError(f"Failed to download blob {descriptor.digest}: {e}") from e
        finally:
            if not completed and await aiofiles.os.path.exists(partial):
                await aiofiles.os.remove(partial)

        publish(ProgressEventKind.DONE, offset)
