"""Registry Patch Client - replicate, filter and patch OCI artifacts in a registry."""

__version__ = "0.1.0"

from .core.registry_client import RegistryClient
from .core.types import (
    ContentDescriptor,
    ContentNode,
    RegistryConfig,
    ReplicationResult,
)
from .exceptions import (
    AuthenticationError,
    BlobNotFoundError,
    BlobUploadError,
    ConfigurationError,
    DigestMismatchError,
    FilterConfigError,
    FilterError,
    FilterTimeoutError,
    ManifestError,
    ManifestNotFoundError,
    NotFoundError,
    PatchFailedError,
    RegistryConnectionError,
    RegistryError,
    ReplicationError,
    TransientRegistryError,
)
from .filters.tag_filter import (
    FilterOutcome,
    FilterStatus,
    TagFilter,
    collect_tag_filters,
    evaluate,
    parse_filter,
)
from .orchestrator import (
    ItemOutcome,
    OutcomeStatus,
    PatchOrchestrator,
    PatchResult,
    PatchTool,
    RunReport,
    RunState,
)
from .registry import list_repositories, list_tags, replicate, run
from .replication.copy import extended_copy
from .store.layout import write_oci_layout
from .store.memory import MemoryStore

__all__ = [
    # Functional API
    "run",
    "replicate",
    "list_repositories",
    "list_tags",
    # Building blocks
    "RegistryClient",
    "RegistryConfig",
    "MemoryStore",
    "write_oci_layout",
    "extended_copy",
    "PatchOrchestrator",
    "PatchTool",
    "PatchResult",
    "RunReport",
    "RunState",
    "ItemOutcome",
    "OutcomeStatus",
    "TagFilter",
    "FilterOutcome",
    "FilterStatus",
    "collect_tag_filters",
    "evaluate",
    "parse_filter",
    "ContentDescriptor",
    "ContentNode",
    "ReplicationResult",
    # Exceptions
    "RegistryError",
    "RegistryConnectionError",
    "AuthenticationError",
    "TransientRegistryError",
    "NotFoundError",
    "ManifestNotFoundError",
    "BlobNotFoundError",
    "DigestMismatchError",
    "BlobUploadError",
    "ManifestError",
    "ReplicationError",
    "FilterError",
    "FilterConfigError",
    "FilterTimeoutError",
    "PatchFailedError",
    "ConfigurationError",
]
