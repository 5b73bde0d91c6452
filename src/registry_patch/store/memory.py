"""In-memory content-addressable store used for staging artifact graphs."""

import logging
from typing import Iterator

from ..core.types import ContentDescriptor
from ..exceptions import BlobNotFoundError, DigestMismatchError
from ..utils.digest import verify_digest

logger = logging.getLogger(__name__)


class MemoryStore:
    """Digest-keyed blob store with idempotent writes.

    A store is scoped to one replication run and shared by the concurrent
    fetchers of that run. Writes never await between the existence check and
    the insert, so under asyncio each digest is stored at most once.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._descriptors: dict[str, ContentDescriptor] = {}

    def put(self, descriptor: ContentDescriptor, payload: bytes) -> bool:
        """Store payload under its descriptor digest.

        Args:
            descriptor: Descriptor claiming the payload's digest and size
            payload: Raw bytes

        Returns:
            True if the payload was written, False if the digest was already present

        Raises:
            DigestMismatchError: If payload does not hash to ``descriptor.digest``
                or its length differs from ``descriptor.size``
        """
        verify_digest(payload, descriptor.digest)
        if descriptor.size and descriptor.size != len(payload):
            raise DigestMismatchError(
                descriptor.digest, f"size {len(payload)} != {descriptor.size}"
            )

        if descriptor.digest in self._blobs:
            return False

        self._blobs[descriptor.digest] = bytes(payload)
        self._descriptors[descriptor.digest] = descriptor
        logger.debug("Stored %s (%d bytes)", descriptor.digest, len(payload))
        return True

    def exists(self, digest: str) -> bool:
        return digest in self._blobs

    def get(self, digest: str) -> bytes:
        """Return the payload stored under digest.

        Raises:
            BlobNotFoundError: If the digest was never stored
        """
        try:
            return self._blobs[digest]
        except KeyError:
            raise BlobNotFoundError(f"Content not found in store: {digest}") from None

    def descriptor(self, digest: str) -> ContentDescriptor:
        """Return the descriptor the digest was stored with."""
        try:
            return self._descriptors[digest]
        except KeyError:
            raise BlobNotFoundError(f"Content not found in store: {digest}") from None

    def digests(self) -> Iterator[str]:
        return iter(list(self._blobs))

    def __contains__(self, digest: object) -> bool:
        return digest in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)
