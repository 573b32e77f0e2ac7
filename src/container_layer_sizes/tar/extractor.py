"""Layer archive walking."""

import tarfile
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol, Union

from ..exceptions import CancellationError, TransportError
from ..models import Layer
from .models import ArchiveEntry


class Extractor(Protocol):
    """Yields the entries of a layer archive."""

    def entries(self, blob_path: Union[str, Path]) -> Iterator[ArchiveEntry]:
        ...


class TarLayerExtractor:
    """Reader for (optionally gzip, bzip2 or xz compressed) layer tarballs."""

    def entries(self, blob_path: Union[str, Path]) -> Iterator[ArchiveEntry]:
        """Iterate over the entries of the layer archive at ``blob_path``.

        The archive is read as a stream, member contents are never extracted.

        Raises:
            TransportError: If the archive cannot be opened or read
        """
        try:
            with tarfile.open(str(blob_path), "r|*") as tar:
                for member in tar:
                    yield ArchiveEntry(
                        path=member.name, size=member.size, is_dir=member.isdir()
                    )
        except (tarfile.TarError, OSError, EOFError) as e:
            raise TransportError(f"Failed to read layer archive {blob_path}: {e}") from e


def build_layer(
    blob_path: Union[str, Path],
    extractor: Optional[Extractor] = None,
    cancelled: Optional[Callable[[], bool]] = None,
) -> Layer:
    """Fold every file of a layer archive into a fresh layer size tree.

    Directory entries are skipped, they do not occupy space of their own.

    Args:
        blob_path: Path of the layer archive
        extractor: Archive reader, a TarLayerExtractor by default
        cancelled: Checked before each entry, the walk stops once it is true

    Raises:
        CancellationError: If ``cancelled`` turned true during the walk
    """
    extractor = extractor or TarLayerExtractor()
    layer = Layer()
    for entry in extractor.entries(blob_path):
        if cancelled is not None and cancelled():
            raise CancellationError(f"Reading layer archive {blob_path} was cancelled")
        if entry.is_dir:
            continue
        layer.insert(entry.path, entry.size)
    return layer
