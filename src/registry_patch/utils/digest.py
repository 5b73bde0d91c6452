"""Digest calculation and validation utilities."""

import hashlib
import re
from typing import Union

from ..exceptions import DigestMismatchError

# algorithm:encoded, per the OCI descriptor digest grammar
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")

SUPPORTED_ALGORITHMS = {"sha256": 64, "sha512": 128}


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

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if the digest uses a supported algorithm and a well-formed hex part
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, encoded = digest.split(":", 1)
    expected_length = SUPPORTED_ALGORITHMS.get(algorithm)
    if expected_length is None:
        return False
    return len(encoded) == expected_length and all(
        c in "0123456789abcdef" for c in encoded
    )


def verify_digest(data: Union[bytes, bytearray], expected_digest: str) -> None:
    """Verify data matches expected digest.

    Args:
        data: Data to verify
        expected_digest: Expected digest string

    Raises:
        ValueError: If digest format is invalid
        DigestMismatchError: If data does not hash to the expected digest
    """
    if not validate_digest(expected_digest):
        raise ValueError(f"Invalid digest format: {expected_digest}")

    algorithm, _ = expected_digest.split(":", 1)
    actual_digest = calculate_digest(data, algorithm)
    if actual_digest != expected_digest:
        raise DigestMismatchError(expected_digest, actual_digest)


def referrers_tag(digest: str) -> str:
    """Return the referrers tag schema name for a digest (``sha256-<hex>``)."""
    return digest.replace(":", "-", 1)


def is_referrers_tag(tag: str) -> bool:
    """Check whether a tag follows the referrers tag schema."""
    algorithm, sep, encoded = tag.partition("-")
    if not sep:
        return False
    return validate_digest(f"{algorithm}:{encoded}")
