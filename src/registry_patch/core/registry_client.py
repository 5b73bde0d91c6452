"""OCI distribution API async client implementation."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urljoin

import aiohttp

from ..exceptions import (
    AuthenticationError,
    BlobNotFoundError,
    BlobUploadError,
    ManifestError,
    ManifestNotFoundError,
    NotFoundError,
    RegistryConnectionError,
    RegistryError,
    TransientRegistryError,
)
from ..store.memory import MemoryStore
from ..utils.digest import calculate_digest, referrers_tag, validate_digest
from .retry import create_retry_policy, is_retryable_status
from .types import (
    MANIFEST_ACCEPT,
    OCI_INDEX,
    ContentDescriptor,
    RegistryConfig,
)

logger = logging.getLogger(__name__)


@dataclass
class RegistryResponse:
    """Buffered response of a single registry request."""

    status: int
    headers: Mapping[str, str]
    body: bytes
    next_url: Optional[str] = None

    def json(self) -> Any:
        return json.loads(self.body) if self.body else {}


class RegistryClient:
    """OCI distribution API async client with retries and basic authentication."""

    # Annotation endpoint used to record patch provenance on a manifest
    metadata_path = "/acr/v1/{repository}/_manifests/{reference}/_metadata/{name}"

    def __init__(
        self,
        config: Union[RegistryConfig, str],
        connector: Optional[aiohttp.TCPConnector] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            config: Registry configuration or registry URL (e.g., http://localhost:5000)
            connector: aiohttp connector for connection pooling
        """
        if isinstance(config, str):
            config = RegistryConfig(url=config)
        self.config = config
        self.registry_url = config.url
        self.connector = connector
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            auth = None
            if self.config.username:
                auth = aiohttp.BasicAuth(self.config.username, self.config.password or "")
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                auth=auth,
            )
        return self.session

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return urljoin(self.registry_url + "/", path.lstrip("/"))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        not_found: type[NotFoundError] = NotFoundError,
        **kwargs: Any,
    ) -> RegistryResponse:
        """Send a request, retrying transient failures.

        Raises:
            AuthenticationError: On 401/403
            NotFoundError: On 404 (as the ``not_found`` subclass)
            TransientRegistryError: When retries are exhausted
            RegistryError: On any other error status
        """
        session = self._ensure_session()
        url = self._url(path)
        policy = create_retry_policy(
            self.config.max_retries, self.config.backoff_base, self.config.backoff_max
        )

        async for attempt in policy:
            with attempt:
                try:
                    async with session.request(method, url, **kwargs) as resp:
                        body = await resp.read()
                        self._raise_for_status(resp.status, method, url, body, not_found)
                        next_link = resp.links.get("next", {}).get("url")
                        return RegistryResponse(
                            status=resp.status,
                            headers=resp.headers.copy(),
                            body=body,
                            next_url=self._url(str(next_link)) if next_link else None,
                        )
                except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                    raise TransientRegistryError(
                        f"{method} {url} failed: {e or type(e).__name__}"
                    ) from e
                except aiohttp.ClientError as e:
                    raise RegistryError(f"{method} {url} failed: {e}") from e

        raise RegistryError(f"{method} {url} made no attempt")  # pragma: no cover

    @staticmethod
    def _raise_for_status(
        status: int,
        method: str,
        url: str,
        body: bytes,
        not_found: type[NotFoundError],
    ) -> None:
        if status < 400:
            return

        detail = body[:200].decode("utf-8", errors="replace")
        message = f"{method} {url} returned {status}: {detail}"
        if status in (401, 403):
            raise AuthenticationError(message)
        if status == 404:
            raise not_found(message)
        if is_retryable_status(status):
            raise TransientRegistryError(message, status=status)
        raise RegistryError(message)

    async def check_registry_v2(self) -> bool:
        """Check if the registry supports v2 API.

        Returns:
            True if v2 API is supported
        """
        try:
            await self._request("GET", "/v2/")
            return True
        except AuthenticationError:
            raise
        except RegistryError:
            return False

    async def resolve(self, repository: str, reference: str) -> ContentDescriptor:
        """Resolve a tag or digest to the descriptor of its manifest.

        Args:
            repository: Repository name
            reference: Tag or digest reference

        Returns:
            Manifest descriptor

        Raises:
            ManifestNotFoundError: If the reference does not exist
        """
        path = f"/v2/{repository}/manifests/{reference}"
        headers = {"Accept": MANIFEST_ACCEPT}

        resp = await self._request(
            "HEAD", path, headers=headers, not_found=ManifestNotFoundError
        )
        digest = resp.headers.get("Docker-Content-Digest", "")
        media_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        size = int(resp.headers.get("Content-Length", 0) or 0)

        if not validate_digest(digest) or not media_type or not size:
            # Some registries omit headers on HEAD; fall back to the body
            resp = await self._request(
                "GET", path, headers=headers, not_found=ManifestNotFoundError
            )
            media_type = (
                resp.headers.get("Content-Type", "").split(";")[0].strip()
                or resp.json().get("mediaType", "")
            )
            size = len(resp.body)
            if validate_digest(reference):
                digest = reference
            else:
                digest = calculate_digest(resp.body)

        return ContentDescriptor(media_type=media_type, digest=digest, size=size)

    async def fetch(self, repository: str, descriptor: ContentDescriptor) -> bytes:
        """Fetch the raw bytes of a manifest or blob.

        Manifest media types are read from the manifests endpoint, everything
        else from the blobs endpoint. Integrity is verified by the caller.

        Raises:
            NotFoundError: If the content does not exist
        """
        if descriptor.is_manifest:
            resp = await self._request(
                "GET",
                f"/v2/{repository}/manifests/{descriptor.digest}",
                headers={"Accept": descriptor.media_type or MANIFEST_ACCEPT},
                not_found=ManifestNotFoundError,
            )
        else:
            resp = await self._request(
                "GET",
                f"/v2/{repository}/blobs/{descriptor.digest}",
                not_found=BlobNotFoundError,
            )
        return resp.body

    async def referrers(
        self,
        repository: str,
        descriptor: ContentDescriptor,
        artifact_type: Optional[str] = None,
    ) -> List[ContentDescriptor]:
        """List artifacts whose subject is the given manifest.

        Uses the referrers API and falls back to the referrers tag schema
        (``sha256-<hex>``) for registries that do not implement it.

        Returns:
            Referrer descriptors, empty when none exist
        """
        params = {"artifactType": artifact_type} if artifact_type else None
        entries: List[Dict[str, Any]] = []

        try:
            next_path: Optional[str] = f"/v2/{repository}/referrers/{descriptor.digest}"
            while next_path:
                resp = await self._request(
                    "GET", next_path, headers={"Accept": OCI_INDEX}, params=params
                )
                entries.extend(resp.json().get("manifests") or [])
                next_path = resp.next_url
                params = None
        except NotFoundError:
            try:
                resp = await self._request(
                    "GET",
                    f"/v2/{repository}/manifests/{referrers_tag(descriptor.digest)}",
                    headers={"Accept": OCI_INDEX},
                )
            except NotFoundError:
                return []
            entries = resp.json().get("manifests") or []

        try:
            result = [ContentDescriptor.from_dict(entry) for entry in entries]
        except ValueError as e:
            raise ManifestError(
                f"Malformed referrers index for {descriptor.digest}: {e}"
            ) from e
        if artifact_type:
            result = [d for d in result if d.artifact_type == artifact_type]
        return result

    async def blob_exists(self, repository: str, digest: str) -> bool:
        """Check if a blob exists in the registry."""
        try:
            await self._request("HEAD", f"/v2/{repository}/blobs/{digest}")
            return True
        except NotFoundError:
            return False

    async def upload_blob(self, repository: str, data: bytes, digest: str) -> str:
        """Upload a blob to the registry in a single request.

        Args:
            repository: Repository name
            data: Blob data
            digest: Expected blob digest

        Returns:
            Blob digest

        Raises:
            BlobUploadError: If upload fails
        """
        if not validate_digest(digest):
            raise ValueError(f"Invalid digest format: {digest}")

        try:
            resp = await self._request("POST", f"/v2/{repository}/blobs/uploads/")
            upload_url = resp.headers.get("Location", "")
            if not upload_url:
                raise BlobUploadError("Registry did not return an upload location")

            separator = "&" if "?" in upload_url else "?"
            await self._request(
                "PUT",
                f"{self._url(upload_url)}{separator}digest={digest}",
                data=data,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(len(data)),
                },
            )
            return digest

        except (AuthenticationError, BlobUploadError):
            raise
        except RegistryError as e:
            raise BlobUploadError(f"Failed to upload blob {digest}: {e}") from e

    async def upload_manifest(
        self,
        repository: str,
        reference: str,
        manifest: Union[bytes, Dict],
        media_type: str,
    ) -> str:
        """Upload a manifest to the registry.

        Args:
            repository: Repository name
            reference: Tag or digest reference
            manifest: Raw manifest bytes (pushed verbatim) or a manifest dictionary
            media_type: Manifest media type

        Returns:
            Manifest digest

        Raises:
            ManifestError: If upload fails
        """
        if isinstance(manifest, dict):
            manifest = json.dumps(manifest).encode("utf-8")

        try:
            resp = await self._request(
                "PUT",
                f"/v2/{repository}/manifests/{reference}",
                data=manifest,
                headers={
                    "Content-Type": media_type,
                    "Content-Length": str(len(manifest)),
                },
            )
            return resp.headers.get("Docker-Content-Digest") or calculate_digest(
                manifest
            )

        except AuthenticationError:
            raise
        except RegistryError as e:
            raise ManifestError(f"Failed to upload manifest: {e}") from e

    async def push(
        self,
        repository: str,
        store: MemoryStore,
        descriptor: ContentDescriptor,
        reference: Optional[str] = None,
    ) -> str:
        """Push one staged node from a content store.

        Blobs already present in the repository are not uploaded again.
        Manifests are pushed by ``reference`` when given, else by digest.

        Returns:
            Digest of the pushed content
        """
        payload = store.get(descriptor.digest)
        if descriptor.is_manifest:
            return await self.upload_manifest(
                repository,
                reference or descriptor.digest,
                payload,
                descriptor.media_type,
            )

        if await self.blob_exists(repository, descriptor.digest):
            logger.debug("Blob %s already in %s", descriptor.digest, repository)
            return descriptor.digest
        return await self.upload_blob(repository, payload, descriptor.digest)

    async def get_manifest(
        self,
        repository: str,
        reference: str,
        accept: str = MANIFEST_ACCEPT,
    ) -> Dict:
        """Retrieve a manifest from the registry.

        Args:
            repository: Repository name
            reference: Tag or digest reference
            accept: Accepted media types

        Returns:
            Manifest dictionary

        Raises:
            ManifestNotFoundError: If the manifest does not exist
        """
        resp = await self._request(
            "GET",
            f"/v2/{repository}/manifests/{reference}",
            headers={"Accept": accept},
            not_found=ManifestNotFoundError,
        )
        return resp.json()

    async def delete_manifest(self, repository: str, digest: str) -> None:
        """Delete a manifest from the registry.

        Raises:
            ManifestError: If deletion fails
        """
        try:
            await self._request(
                "DELETE",
                f"/v2/{repository}/manifests/{digest}",
                not_found=ManifestNotFoundError,
            )
        except (AuthenticationError, NotFoundError):
            raise
        except RegistryError as e:
            raise ManifestError(f"Failed to delete manifest: {e}") from e

    async def _paginate(self, path: str, key: str) -> List[str]:
        items: List[str] = []
        next_path: Optional[str] = path
        params: Optional[Dict[str, str]] = {"n": str(self.config.page_size)}

        while next_path:
            resp = await self._request("GET", next_path, params=params)
            items.extend(resp.json().get(key) or [])
            next_path = resp.next_url
            params = None

        return items

    async def list_repositories(self) -> List[str]:
        """List all repositories in the registry, following pagination links.

        Raises:
            RegistryError: If listing fails
        """
        return await self._paginate("/v2/_catalog", "repositories")

    async def list_tags(self, repository: str) -> List[str]:
        """List tags for a repository, following pagination links.

        Raises:
            NotFoundError: If the repository does not exist
        """
        return await self._paginate(f"/v2/{repository}/tags/list", "tags")

    async def update_metadata(
        self,
        repository: str,
        reference: str,
        name: str,
        value: Dict[str, Any],
    ) -> None:
        """Attach a named metadata document to a manifest.

        Raises:
            ManifestError: If the registry rejects the update
        """
        path = self.metadata_path.format(
            repository=repository, reference=reference, name=name
        )
        try:
            await self._request(
                "PUT",
                path,
                json=value,
                not_found=ManifestNotFoundError,
            )
        except (AuthenticationError, NotFoundError):
            raise
        except RegistryError as e:
            raise ManifestError(f"Failed to update metadata {name!r}: {e}") from e

    async def get_metadata(
        self, repository: str, reference: str, name: str
    ) -> Dict[str, Any]:
        """Read a named metadata document attached to a manifest.

        Raises:
            ManifestNotFoundError: If the manifest or the document does not exist
        """
        path = self.metadata_path.format(
            repository=repository, reference=reference, name=name
        )
        resp = await self._request("GET", path, not_found=ManifestNotFoundError)
        return resp.json()


async def ensure_connectivity(client: RegistryClient) -> None:
    """Fail fast when the registry does not speak the v2 API.

    Raises:
        RegistryConnectionError: If the registry is unreachable or not v2
    """
    if not await client.check_registry_v2():
        raise RegistryConnectionError(
            f"Registry at {client.registry_url} does not support v2 API"
        )
