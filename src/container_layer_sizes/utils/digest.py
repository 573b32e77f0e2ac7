"""Digest calculation and validation utilities."""

import hashlib
import re
from typing import Tuple, Union

from ..exceptions import DigestFormatError

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

SUPPORTED_ALGORITHMS = ("sha256", "sha512")


def calculate_digest(data: Union[bytes, bytearray], algorithm: str = "sha256") -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in hashlib.algorithms_available:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, _ = digest.split(":", 1)
    return algorithm in SUPPORTED_ALGORITHMS


def split_digest(digest: str) -> Tuple[str, str]:
    """Split a digest into its algorithm and hex parts.

    Args:
        digest: Digest string, e.g. "sha256:abc123..."

    Returns:
        (algorithm, hex) tuple

    Raises:
        DigestFormatError: If the digest is not of the form algorithm:hex
    """
    if not validate_digest(digest):
        raise DigestFormatError(f"Invalid digest: {digest!r}")

    algorithm, hex_digest = digest.split(":", 1)
    return algorithm, hex_digest


def verify_digest(data: Union[bytes, bytearray], expected_digest: str) -> bool:
    """Verify data matches expected digest.

    Raises:
        DigestFormatError: If digest format is invalid
    """
    algorithm, _ = split_digest(expected_digest)
    return calculate_digest(data, algorithm) == expected_digest
