"""Core data types for registry access and artifact replication."""

import json
import os
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import ConfigurationError

# Manifest media types
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_ARTIFACT_MANIFEST = "application/vnd.oci.artifact.manifest.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

MANIFEST_MEDIA_TYPES = frozenset(
    {
        OCI_MANIFEST,
        OCI_INDEX,
        OCI_ARTIFACT_MANIFEST,
        DOCKER_MANIFEST,
        DOCKER_MANIFEST_LIST,
    }
)

# Types that may be the subject of referrers
REFERRABLE_MEDIA_TYPES = frozenset(
    {OCI_MANIFEST, OCI_INDEX, OCI_ARTIFACT_MANIFEST, DOCKER_MANIFEST}
)

# Accept header used for manifest requests
MANIFEST_ACCEPT = ", ".join(sorted(MANIFEST_MEDIA_TYPES))


@dataclass
class RegistryConfig:
    """Registry connection configuration."""

    url: str
    timeout: int = 30
    username: str | None = None
    password: str | None = None
    max_retries: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    page_size: int = 100

    def __post_init__(self) -> None:
        self.url = self.url.rstrip("/")

    @classmethod
    def from_env(cls, url: str | None = None) -> "RegistryConfig":
        """Build a configuration from ``REGISTRY_*`` environment variables."""
        registry_url = url or os.getenv("REGISTRY_URL")
        if not registry_url:
            raise ConfigurationError("REGISTRY_URL is not set and no url was given")
        return cls(
            url=registry_url,
            timeout=int(os.getenv("REGISTRY_TIMEOUT", "30")),
            username=os.getenv("REGISTRY_USERNAME"),
            password=os.getenv("REGISTRY_PASSWORD"),
        )


@dataclass(frozen=True)
class ContentDescriptor:
    """Content-addressed pointer to a blob or manifest.

    Two descriptors with the same digest refer to identical bytes.
    """

    media_type: str
    digest: str
    size: int
    artifact_type: str | None = None
    annotations: tuple[tuple[str, str], ...] = ()

    @property
    def is_manifest(self) -> bool:
        return self.media_type in MANIFEST_MEDIA_TYPES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentDescriptor":
        """Parse an OCI descriptor JSON object.

        Raises:
            ValueError: If data is not an object, lacks a digest, or carries
                a malformed size or annotations
        """
        if not isinstance(data, dict):
            raise ValueError(f"Descriptor must be a JSON object, got {data!r}")
        digest = data.get("digest")
        if not isinstance(digest, str) or not digest:
            raise ValueError(f"Descriptor has no digest: {data!r}")
        try:
            size = int(data.get("size", 0))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Descriptor {digest} has an invalid size") from e
        annotations = data.get("annotations") or {}
        if not isinstance(annotations, dict):
            raise ValueError(f"Descriptor {digest} has invalid annotations")
        return cls(
            media_type=data.get("mediaType", ""),
            digest=digest,
            size=size,
            artifact_type=data.get("artifactType"),
            annotations=tuple(sorted(annotations.items())),
        )

    def to_dict(self) -> dict[str, Any]:
        """Render as an OCI descriptor JSON object."""
        result: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.artifact_type:
            result["artifactType"] = self.artifact_type
        if self.annotations:
            result["annotations"] = dict(self.annotations)
        return result


@dataclass
class ContentNode:
    """A fetched artifact unit with its outgoing references."""

    descriptor: ContentDescriptor
    payload: bytes
    children: list[ContentDescriptor] = field(default_factory=list)
    subject: ContentDescriptor | None = None

    @classmethod
    def from_payload(
        cls, descriptor: ContentDescriptor, payload: bytes
    ) -> "ContentNode":
        """Build a node, deriving children and subject for manifest types."""
        if not descriptor.is_manifest:
            return cls(descriptor=descriptor, payload=payload)

        children, subject = parse_manifest_references(payload)
        return cls(
            descriptor=descriptor, payload=payload, children=children, subject=subject
        )


def parse_manifest_references(
    payload: bytes,
) -> tuple[list[ContentDescriptor], ContentDescriptor | None]:
    """Extract direct references and the subject from a manifest payload.

    Image manifests reference ``config`` and ``layers``, indexes reference
    ``manifests`` and artifact manifests reference ``blobs``.

    Raises:
        ValueError: If the payload is not a JSON object or holds a malformed
            descriptor
    """
    try:
        manifest = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid manifest JSON: {e}") from e
    if not isinstance(manifest, dict):
        raise ValueError("Manifest must be a JSON object")

    children = []
    if isinstance(manifest.get("config"), dict):
        children.append(ContentDescriptor.from_dict(manifest["config"]))
    for key in ("layers", "manifests", "blobs"):
        entries = manifest.get(key) or []
        if not isinstance(entries, list):
            raise ValueError(f"Manifest field {key!r} must be a list")
        for entry in entries:
            children.append(ContentDescriptor.from_dict(entry))

    subject = None
    if isinstance(manifest.get("subject"), dict):
        subject = ContentDescriptor.from_dict(manifest["subject"])

    return children, subject


@dataclass
class ReplicationResult:
    """Outcome of copying one artifact graph.

    ``copied`` and ``skipped`` are disjoint; together they hold every digest
    reachable from ``root``. ``skipped`` digests were already present in the
    destination store.
    """

    root: ContentDescriptor
    copied: set[str] = field(default_factory=set)
    skipped: set[str] = field(default_factory=set)
    descriptors: dict[str, ContentDescriptor] = field(default_factory=dict)

    @property
    def reachable(self) -> set[str]:
        return self.copied | self.skipped
