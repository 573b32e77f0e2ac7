"""Image transport: pulling from registries and copying OCI layouts."""

from .base import Copier, Puller
from .layout import OciLayout, OciLayoutCopier
from .registry import RegistryPuller

__all__ = ["Copier", "OciLayout", "OciLayoutCopier", "Puller", "RegistryPuller"]
