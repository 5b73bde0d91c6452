"""Test helpers: artifact builders and an in-memory fake registry."""

import asyncio
import json
import os
import time
import uuid
from collections import Counter
from typing import Optional

from registry_patch.core.types import (
    OCI_INDEX,
    OCI_MANIFEST,
    ContentDescriptor,
)
from registry_patch.exceptions import (
    AuthenticationError,
    BlobNotFoundError,
    ManifestNotFoundError,
    NotFoundError,
    TransientRegistryError,
)
from registry_patch.utils.digest import calculate_digest

LAYER_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar+gzip"
CONFIG_MEDIA_TYPE = "application/vnd.oci.image.config.v1+json"
SIGNATURE_ARTIFACT_TYPE = "application/vnd.dev.cosign.artifact.sig.v1+json"


def generate_test_id() -> str:
    """Generate unique test identifier."""
    timestamp = int(time.time() * 1000) % 10000  # Last 4 digits of ms timestamp
    uuid_part = str(uuid.uuid4())[:8]
    worker_id = os.getenv("PYTEST_XDIST_WORKER", "main")
    return f"{worker_id}-{timestamp}-{uuid_part}"


def make_blob(
    data: bytes, media_type: str = LAYER_MEDIA_TYPE
) -> tuple[ContentDescriptor, bytes]:
    """Build a blob descriptor for data."""
    return ContentDescriptor(media_type, calculate_digest(data), len(data)), data


def make_manifest(
    layers: list[ContentDescriptor],
    config: Optional[ContentDescriptor] = None,
    subject: Optional[ContentDescriptor] = None,
    artifact_type: Optional[str] = None,
    annotations: Optional[dict] = None,
) -> tuple[ContentDescriptor, bytes]:
    """Build an OCI image manifest referencing the given descriptors."""
    manifest: dict = {
        "schemaVersion": 2,
        "mediaType": OCI_MANIFEST,
        "layers": [layer.to_dict() for layer in layers],
    }
    if config is not None:
        manifest["config"] = config.to_dict()
    if subject is not None:
        manifest["subject"] = subject.to_dict()
    if artifact_type is not None:
        manifest["artifactType"] = artifact_type
    if annotations:
        manifest["annotations"] = annotations
    payload = json.dumps(manifest, sort_keys=True).encode("utf-8")
    descriptor = ContentDescriptor(
        OCI_MANIFEST, calculate_digest(payload), len(payload), artifact_type=artifact_type
    )
    return descriptor, payload


def make_index(manifests: list[ContentDescriptor]) -> tuple[ContentDescriptor, bytes]:
    """Build an OCI image index over the given manifests."""
    index = {
        "schemaVersion": 2,
        "mediaType": OCI_INDEX,
        "manifests": [m.to_dict() for m in manifests],
    }
    payload = json.dumps(index, sort_keys=True).encode("utf-8")
    return ContentDescriptor(OCI_INDEX, calculate_digest(payload), len(payload)), payload


class FakeRegistry:
    """In-memory stand-in for RegistryClient.

    Content is shared across repositories; referrers are recorded when a
    manifest with a subject is added.
    """

    def __init__(self) -> None:
        self.content: dict[str, tuple[ContentDescriptor, bytes]] = {}
        self.tags: dict[str, dict[str, str]] = {}
        self.referrer_index: dict[str, list[ContentDescriptor]] = {}
        self.fetch_counts: Counter = Counter()
        self.referrer_calls: Counter = Counter()
        self.pushed: list[tuple[str, str, Optional[str]]] = []
        self.metadata: dict[tuple[str, str, str], dict] = {}
        self.failing: set[str] = set()
        self.corrupt: set[str] = set()
        self.fail_resolve: set[tuple[str, str]] = set()
        self.auth_failure = False
        self.fetch_delay = 0.0
        self.fetches_in_flight = 0
        self.max_fetches_in_flight = 0

    def add(
        self,
        repository: str,
        item: tuple[ContentDescriptor, bytes],
        subject: Optional[ContentDescriptor] = None,
    ) -> ContentDescriptor:
        descriptor, payload = item
        self.tags.setdefault(repository, {})
        self.content[descriptor.digest] = (descriptor, payload)
        if subject is not None:
            self.referrer_index.setdefault(subject.digest, []).append(descriptor)
        return descriptor

    def tag(self, repository: str, tag: str, descriptor: ContentDescriptor) -> None:
        self.tags.setdefault(repository, {})[tag] = descriptor.digest

    def _check_auth(self) -> None:
        if self.auth_failure:
            raise AuthenticationError("401 Unauthorized")

    async def list_repositories(self) -> list[str]:
        self._check_auth()
        return sorted(self.tags)

    async def list_tags(self, repository: str) -> list[str]:
        self._check_auth()
        if repository not in self.tags:
            raise NotFoundError(f"repository {repository} not found")
        return list(self.tags[repository])

    async def resolve(self, repository: str, reference: str) -> ContentDescriptor:
        self._check_auth()
        if (repository, reference) in self.fail_resolve:
            raise TransientRegistryError("503 Service Unavailable", status=503)
        digest = self.tags.get(repository, {}).get(reference, reference)
        if digest not in self.content:
            raise ManifestNotFoundError(f"{repository}:{reference} not found")
        return self.content[digest][0]

    async def fetch(self, repository: str, descriptor: ContentDescriptor) -> bytes:
        self._check_auth()
        self.fetch_counts[descriptor.digest] += 1
        self.fetches_in_flight += 1
        self.max_fetches_in_flight = max(
            self.max_fetches_in_flight, self.fetches_in_flight
        )
        try:
            await asyncio.sleep(self.fetch_delay)
        finally:
            self.fetches_in_flight -= 1
        if descriptor.digest in self.failing:
            raise TransientRegistryError("connection reset")
        if descriptor.digest not in self.content:
            raise BlobNotFoundError(f"{descriptor.digest} not found")
        payload = self.content[descriptor.digest][1]
        if descriptor.digest in self.corrupt:
            return payload + b"tampered"
        return payload

    async def referrers(
        self, repository: str, descriptor: ContentDescriptor
    ) -> list[ContentDescriptor]:
        self._check_auth()
        self.referrer_calls[descriptor.digest] += 1
        return list(self.referrer_index.get(descriptor.digest, []))

    async def push(self, repository, store, descriptor, reference=None) -> str:
        self._check_auth()
        payload = store.get(descriptor.digest)
        self.content[descriptor.digest] = (descriptor, payload)
        self.pushed.append((repository, descriptor.digest, reference))
        if reference:
            self.tag(repository, reference, descriptor)
        return descriptor.digest

    async def update_metadata(self, repository, reference, name, value) -> None:
        self._check_auth()
        self.metadata[(repository, reference, name)] = value


def build_signed_image(
    registry: FakeRegistry, repository: str, tag: str, seed: str = ""
) -> dict[str, ContentDescriptor]:
    """Add an image with two layers and one signature referrer.

    Returns:
        Descriptors keyed by role: root, l1, l2, s1
    """
    l1 = registry.add(repository, make_blob(f"layer-one{seed}".encode()))
    l2 = registry.add(repository, make_blob(f"layer-two{seed}".encode()))
    root = registry.add(repository, make_manifest([l1, l2]))
    registry.tag(repository, tag, root)
    s1 = registry.add(
        repository,
        make_manifest([], subject=root, artifact_type=SIGNATURE_ARTIFACT_TYPE),
        subject=root,
    )
    return {"root": root, "l1": l1, "l2": l2, "s1": s1}
