"""OCI manifest and image config parsing."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..exceptions import ManifestDecodeError, MediaTypeMismatchError
from ..models import ImageInspectInfo
from ..utils.digest import split_digest
from .models import Descriptor, Manifest

logger = logging.getLogger(__name__)

OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
OCI_CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"
OCI_LAYER_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar+gzip"

DOCKER_MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_CONFIG_MEDIA_TYPE = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER_MEDIA_TYPE = "application/vnd.docker.image.rootfs.diff.tar.gzip"

# media types rewritten when an image is stored in an OCI layout
DOCKER_TO_OCI_MEDIA_TYPES = {
    DOCKER_MANIFEST_MEDIA_TYPE: OCI_MANIFEST_MEDIA_TYPE,
    DOCKER_CONFIG_MEDIA_TYPE: OCI_CONFIG_MEDIA_TYPE,
    DOCKER_LAYER_MEDIA_TYPE: OCI_LAYER_MEDIA_TYPE,
}


def _parse_descriptor(data: Any, what: str) -> Descriptor:
    if not isinstance(data, dict):
        raise ManifestDecodeError(f"Invalid {what} descriptor: {data!r}")
    digest = data.get("digest")
    if not isinstance(digest, str):
        raise ManifestDecodeError(f"The {what} descriptor has no digest")
    return Descriptor(
        media_type=data.get("mediaType", ""),
        digest=digest,
        size=int(data.get("size", 0)),
    )


def parse_manifest(data: Union[bytes, str]) -> Manifest:
    """Parse an image manifest.

    Args:
        data: Raw manifest JSON

    Returns:
        Manifest

    Raises:
        ManifestDecodeError: If the manifest is not valid JSON or lacks the
            config and layer descriptors
    """
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestDecodeError(f"Invalid manifest JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ManifestDecodeError("Manifest must be a JSON object")

    layers = raw.get("layers")
    if not isinstance(layers, list):
        raise ManifestDecodeError("Manifest has no layers list")

    try:
        return Manifest(
            schema_version=int(raw.get("schemaVersion", 0)),
            media_type=raw.get("mediaType", ""),
            config=_parse_descriptor(raw.get("config"), "config"),
            layers=[_parse_descriptor(layer, "layer") for layer in layers],
        )
    except (TypeError, ValueError) as e:
        raise ManifestDecodeError(f"Invalid manifest: {e}") from e


def check_media_types(manifest: Manifest) -> None:
    """Ensure the manifest references an OCI config and gzipped OCI layers.

    Raises:
        MediaTypeMismatchError: On the first blob with another media type
    """
    if manifest.config.media_type != OCI_CONFIG_MEDIA_TYPE:
        raise MediaTypeMismatchError(
            f"Invalid media type of the config: {manifest.config.media_type}"
        )
    for layer in manifest.layers:
        if layer.media_type != OCI_LAYER_MEDIA_TYPE:
            raise MediaTypeMismatchError(
                f"Invalid media type of layer {layer.digest}: {layer.media_type}"
            )


def blob_path(layout_dir: Union[str, Path], digest: str) -> Path:
    """Path of a blob inside an OCI layout directory."""
    algorithm, hex_digest = split_digest(digest)
    return Path(layout_dir) / "blobs" / algorithm / hex_digest


def read_image_config(layout_dir: Union[str, Path], manifest: Manifest) -> Dict[str, Any]:
    """Read the image config referenced by ``manifest`` from a layout.

    Raises:
        ManifestDecodeError: If the config cannot be read or decoded
    """
    path = blob_path(layout_dir, manifest.config.digest)
    try:
        config = json.loads(path.read_bytes())
    except OSError as e:
        raise ManifestDecodeError(f"Cannot read config {path}: {e}") from e
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestDecodeError(f"Invalid config JSON in {path}: {e}") from e

    if not isinstance(config, dict):
        raise ManifestDecodeError(f"Config {path} must be a JSON object")
    return config


def inspect_image_config(
    config: Dict[str, Any], manifest: Manifest, tag: str = ""
) -> ImageInspectInfo:
    """Build the inspect information of an image from its config."""
    runtime_config = config.get("config") or {}

    return ImageInspectInfo(
        tag=tag,
        created=config.get("created", "") or "",
        docker_version=config.get("docker_version", "") or "",
        labels=runtime_config.get("Labels") or {},
        architecture=config.get("architecture", "") or "",
        variant=config.get("variant", "") or "",
        os=config.get("os", "") or "",
        layers=[layer.digest for layer in manifest.layers],
        env=runtime_config.get("Env") or [],
    )


def layer_history(
    config: Dict[str, Any],
    manifest: Manifest,
    log: Optional[logging.Logger] = None,
) -> Dict[str, str]:
    """Map the hex digest of every layer to the command that created it.

    History entries flagged as ``empty_layer`` did not produce a layer; the
    remaining entries belong to the manifest layers in order.
    """
    log = log or logger
    history = [
        entry
        for entry in config.get("history") or []
        if isinstance(entry, dict) and not entry.get("empty_layer", False)
    ]

    if len(history) != len(manifest.layers):
        log.warning(
            f"Image history has {len(history)} entries that created a layer, "
            f"but the manifest lists {len(manifest.layers)} layers"
        )

    created_by = {}
    for entry, layer in zip(history, manifest.layers):
        _, hex_digest = split_digest(layer.digest)
        created_by[hex_digest] = entry.get("created_by", "")
    return created_by
