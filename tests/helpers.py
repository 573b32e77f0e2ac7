"""Test helpers building layer archives, OCI layouts and fake pullers."""

import asyncio
import io
import json
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from container_layer_sizes.core.progress import (
    ProgressChannel,
    ProgressEvent,
    ProgressEventKind,
)
from container_layer_sizes.exceptions import TransportError
from container_layer_sizes.models import ImageInspectInfo
from container_layer_sizes.tar.manifest import (
    OCI_CONFIG_MEDIA_TYPE,
    OCI_LAYER_MEDIA_TYPE,
    OCI_MANIFEST_MEDIA_TYPE,
)
from container_layer_sizes.transport.layout import REF_NAME_ANNOTATION
from container_layer_sizes.utils.digest import calculate_digest
from container_layer_sizes.utils.reference import ImageReference


def make_layer(files: Dict[str, bytes], dirs: Iterable[str] = ()) -> bytes:
    """Build a gzipped layer tarball with ``files`` and empty ``dirs``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            tar.addfile(info)
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def write_blob(layout_dir: Path, data: bytes) -> str:
    digest = calculate_digest(data)
    algorithm, hex_digest = digest.split(":", 1)
    path = Path(layout_dir) / "blobs" / algorithm / hex_digest
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return digest


def make_config(history: Optional[List[dict]] = None, **extra) -> dict:
    config = {
        "created": "2021-06-01T12:00:00Z",
        "architecture": "amd64",
        "os": "linux",
        "docker_version": "20.10.7",
        "config": {"Env": ["PATH=/usr/bin"], "Labels": {"maintainer": "tests"}},
        "history": history or [],
    }
    config.update(extra)
    return config


def make_oci_layout(
    layout_dir: Path,
    ref_name: str,
    layers: Sequence[bytes],
    history: Optional[List[dict]] = None,
    config_media_type: str = OCI_CONFIG_MEDIA_TYPE,
    layer_media_type: str = OCI_LAYER_MEDIA_TYPE,
    manifest_media_type: str = OCI_MANIFEST_MEDIA_TYPE,
) -> Tuple[bytes, List[str]]:
    """Write an image into an OCI layout directory and tag it ``ref_name``.

    Returns:
        (manifest bytes, layer digests) tuple
    """
    layout_dir = Path(layout_dir)
    layout_dir.mkdir(parents=True, exist_ok=True)
    (layout_dir / "oci-layout").write_text(json.dumps({"imageLayoutVersion": "1.0.0"}))

    config_bytes = json.dumps(make_config(history)).encode()
    config_digest = write_blob(layout_dir, config_bytes)
    layer_digests = [write_blob(layout_dir, layer) for layer in layers]

    manifest = {
        "schemaVersion": 2,
        "mediaType": manifest_media_type,
        "config": {
            "mediaType": config_media_type,
            "digest": config_digest,
            "size": len(config_bytes),
        },
        "layers": [
            {"mediaType": layer_media_type, "digest": digest, "size": len(layer)}
            for digest, layer in zip(layer_digests, layers)
        ],
    }
    manifest_bytes = json.dumps(manifest).encode()
    manifest_digest = write_blob(layout_dir, manifest_bytes)

    index_path = layout_dir / "index.json"
    index = (
        json.loads(index_path.read_text())
        if index_path.exists()
        else {"schemaVersion": 2, "manifests": []}
    )
    index["manifests"].append(
        {
            "mediaType": manifest_media_type,
            "digest": manifest_digest,
            "size": len(manifest_bytes),
            "annotations": {REF_NAME_ANNOTATION: ref_name},
        }
    )
    index_path.write_text(json.dumps(index))
    return manifest_bytes, layer_digests


# layer contents used by most task tests
SAMPLE_LAYERS = [
    make_layer({"usr/bin/cat": b"x" * 64, "usr/lib/os-release": b"y" * 5}, dirs=["usr/"]),
    make_layer({"etc/hosts": b"127.0.0.1 localhost\n"}),
]

SAMPLE_HISTORY = [
    {"created_by": "/bin/sh -c #(nop) ADD file:rootfs in /"},
    {"created_by": "/bin/sh -c #(nop) ENV FOO=bar", "empty_layer": True},
    {"created_by": "/bin/sh -c echo localhost > /etc/hosts"},
]


class FakePuller:
    """Puller writing a synthetic image into the local layout.

    Args:
        layers: Layer tarballs of the image
        block: Never finish the pull, to exercise cancellation
        fail: Raise TransportError instead of pulling
    """

    def __init__(
        self,
        layers: Sequence[bytes] = SAMPLE_LAYERS,
        history: Optional[List[dict]] = None,
        layer_media_type: str = OCI_LAYER_MEDIA_TYPE,
        block: bool = False,
        fail: bool = False,
    ) -> None:
        self.layers = list(layers)
        self.history = SAMPLE_HISTORY if history is None else history
        self.layer_media_type = layer_media_type
        self.block = block
        self.fail = fail
        self.pulled: List[ImageReference] = []
        self.pull_started = asyncio.Event()

    @property
    def layer_digests(self) -> List[str]:
        return [calculate_digest(layer) for layer in self.layers]

    async def inspect(self, remote: ImageReference) -> ImageInspectInfo:
        return ImageInspectInfo(tag=remote.tag, layers=self.layer_digests)

    async def pull(
        self, remote: ImageReference, local: ImageReference, progress: ProgressChannel
    ) -> None:
        self.pull_started.set()
        try:
            if self.fail:
                raise TransportError(f"Failed to pull {remote}")
            for digest, layer in zip(self.layer_digests, self.layers):
                progress.publish(ProgressEvent(digest, len(layer), 0, ProgressEventKind.NEW))
                progress.publish(
                    ProgressEvent(digest, len(layer), len(layer) // 2, ProgressEventKind.READ)
                )
            if self.block:
                await asyncio.Event().wait()
            make_oci_layout(
                Path(local.name),
                local.tag,
                self.layers,
                history=self.history,
                layer_media_type=self.layer_media_type,
            )
            for digest, layer in zip(self.layer_digests, self.layers):
                progress.publish(
                    ProgressEvent(digest, len(layer), len(layer), ProgressEventKind.DONE)
                )
            self.pulled.append(remote)
        finally:
            progress.close()
