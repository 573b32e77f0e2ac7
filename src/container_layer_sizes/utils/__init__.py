"""Utility functions for container layer size analysis."""

from .digest import calculate_digest, split_digest, validate_digest
from .reference import ImageReference, parse_image_reference

__all__ = [
    "calculate_digest",
    "split_digest",
    "validate_digest",
    "ImageReference",
    "parse_image_reference",
]
