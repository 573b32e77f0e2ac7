"""Data models for OCI manifests and layer archives."""

from dataclasses import dataclass
from typing import List


@dataclass
class ArchiveEntry:
    """A single entry of a layer archive."""

    path: str  # Path within the layer archive
    size: int
    is_dir: bool = False


@dataclass
class Descriptor:
    """OCI content descriptor of a blob."""

    media_type: str
    digest: str
    size: int


@dataclass
class Manifest:
    """Image manifest listing the config and layer blobs."""

    schema_version: int
    media_type: str
    config: Descriptor
    layers: List[Descriptor]
