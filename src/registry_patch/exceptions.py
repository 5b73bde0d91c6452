"""Custom exceptions for the registry patch client."""


class RegistryError(Exception):
    """Base exception for all registry-related errors."""

    pass


class RegistryConnectionError(RegistryError):
    """Raised when unable to connect to the registry."""

    pass


class ConfigurationError(RegistryError):
    """Raised when the run is configured incorrectly."""

    pass


class AuthenticationError(RegistryError):
    """Raised when the registry rejects the supplied credentials.

    Credentials are a precondition of the whole run, so this error is never
    retried and never contained at item level.
    """

    pass


class TransientRegistryError(RegistryError):
    """Raised for rate limiting, 5xx responses and dropped connections."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(RegistryError):
    """Raised when a repository, manifest or blob does not exist."""

    pass


class ManifestNotFoundError(NotFoundError):
    """Raised when a manifest reference cannot be resolved."""

    pass


class BlobNotFoundError(NotFoundError):
    """Raised when a blob is missing from the registry or a content store."""

    pass


class DigestMismatchError(RegistryError):
    """Raised when content does not hash to its claimed digest."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Digest mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class BlobUploadError(RegistryError):
    """Raised when blob upload fails."""

    pass


class ManifestError(RegistryError):
    """Raised when manifest operations fail."""

    pass


class ReplicationError(RegistryError):
    """Raised when an artifact graph cannot be copied completely.

    Attributes:
        digest: Digest of the node that failed (root reference if unresolved)
        copied_count: Number of nodes written before the failure
    """

    def __init__(self, message: str, digest: str, copied_count: int) -> None:
        super().__init__(
            f"{message} (failed at {digest}, {copied_count} node(s) already copied)"
        )
        self.digest = digest
        self.copied_count = copied_count


class FilterError(RegistryError):
    """Base exception for tag filter problems."""

    pass


class FilterConfigError(FilterError, ConfigurationError):
    """Raised when a filter expression cannot be parsed or compiled."""

    pass


class FilterTimeoutError(FilterError):
    """Raised when a filter evaluation exceeds its time budget."""

    def __init__(self, pattern: str, value: str, elapsed: float) -> None:
        super().__init__(
            f"Evaluation of filter {pattern!r} against {value!r} "
            f"timed out after {elapsed:.2f}s"
        )
        self.pattern = pattern
        self.value = value
        self.elapsed = elapsed


class PatchFailedError(RegistryError):
    """Raised when the patch tool fails on a staged artifact."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Patch failed: {reason}")
        self.reason = reason
