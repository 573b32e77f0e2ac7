"""OCI manifest and layer archive handling."""

from .extractor import Extractor, TarLayerExtractor, build_layer
from .manifest import (
    OCI_CONFIG_MEDIA_TYPE,
    OCI_LAYER_MEDIA_TYPE,
    check_media_types,
    parse_manifest,
)
from .models import ArchiveEntry, Descriptor, Manifest

__all__ = [
    "ArchiveEntry",
    "Descriptor",
    "Extractor",
    "Manifest",
    "OCI_CONFIG_MEDIA_TYPE",
    "OCI_LAYER_MEDIA_TYPE",
    "TarLayerExtractor",
    "build_layer",
    "check_media_types",
    "parse_manifest",
]
