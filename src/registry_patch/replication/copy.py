"""Extended copy of an artifact graph into a content store.

The walk follows manifest children (config, layers, index entries) and
referrer edges (signatures, SBOMs and other artifacts whose subject is a
visited manifest). Each digest is fetched at most once per run.
"""

import asyncio
import logging
from typing import Awaitable, Iterable, List, Optional, TypeVar

from ..core.registry_client import RegistryClient
from ..core.types import (
    REFERRABLE_MEDIA_TYPES,
    ContentDescriptor,
    ContentNode,
    ReplicationResult,
)
from ..exceptions import AuthenticationError, RegistryError, ReplicationError
from ..store.memory import MemoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONCURRENCY = 5


async def _gather_or_cancel(aws: Iterable[Awaitable[T]]) -> List[T]:
    """Gather awaitables, cancelling the rest as soon as one fails."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class GraphCopier:
    """Breadth-first walker that copies one artifact graph."""

    def __init__(
        self,
        client: RegistryClient,
        repository: str,
        store: MemoryStore,
        concurrency: int = DEFAULT_CONCURRENCY,
        semaphore: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self.client = client
        self.repository = repository
        self.store = store
        self._semaphore = semaphore or asyncio.Semaphore(max(1, concurrency))
        self._visited: set[str] = set()
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    async def copy(self, root: ContentDescriptor, result: ReplicationResult) -> None:
        frontier: List[ContentDescriptor] = [root]

        while frontier:
            claimed = []
            for descriptor in frontier:
                if descriptor.digest in self._visited:
                    continue
                self._visited.add(descriptor.digest)
                claimed.append(descriptor)

            nodes = await _gather_or_cancel(
                self._visit(descriptor, result) for descriptor in claimed
            )

            referrer_lists = await _gather_or_cancel(
                self._referrers(node.descriptor, result)
                for node in nodes
                if node.descriptor.media_type in REFERRABLE_MEDIA_TYPES
            )

            frontier = []
            for node in nodes:
                frontier.extend(node.children)
                if node.subject is not None:
                    frontier.append(node.subject)
            for referrers in referrer_lists:
                frontier.extend(referrers)

    async def _visit(
        self, descriptor: ContentDescriptor, result: ReplicationResult
    ) -> ContentNode:
        digest = descriptor.digest
        async with self._semaphore:
            self._in_flight.add(digest)
            try:
                if self.store.exists(digest):
                    payload = self.store.get(digest)
                    result.skipped.add(digest)
                    logger.debug("Skipping %s, already staged", digest)
                else:
                    payload = await self._fetch(descriptor, result)
                    if self._put(descriptor, payload, result):
                        result.copied.add(digest)
                        logger.debug("Copied %s (%s)", digest, descriptor.media_type)
                    else:
                        result.skipped.add(digest)
            finally:
                self._in_flight.discard(digest)

        result.descriptors[digest] = descriptor
        try:
            return ContentNode.from_payload(descriptor, payload)
        except ValueError as e:
            raise ReplicationError(
                f"Malformed manifest in {self.repository}", digest, len(result.copied)
            ) from e

    async def _fetch(
        self, descriptor: ContentDescriptor, result: ReplicationResult
    ) -> bytes:
        try:
            return await self.client.fetch(self.repository, descriptor)
        except AuthenticationError:
            raise
        except RegistryError as e:
            raise ReplicationError(
                f"Failed to fetch from {self.repository}",
                descriptor.digest,
                len(result.copied),
            ) from e

    def _put(
        self, descriptor: ContentDescriptor, payload: bytes, result: ReplicationResult
    ) -> bool:
        try:
            return self.store.put(descriptor, payload)
        except (RegistryError, ValueError) as e:
            raise ReplicationError(
                f"Integrity check failed in {self.repository}",
                descriptor.digest,
                len(result.copied),
            ) from e

    async def _referrers(
        self, descriptor: ContentDescriptor, result: ReplicationResult
    ) -> List[ContentDescriptor]:
        async with self._semaphore:
            try:
                referrers = await self.client.referrers(self.repository, descriptor)
            except AuthenticationError:
                raise
            except (RegistryError, ValueError) as e:
                raise ReplicationError(
                    f"Failed to list referrers in {self.repository}",
                    descriptor.digest,
                    len(result.copied),
                ) from e

        if referrers:
            logger.debug(
                "Found %d referrer(s) for %s", len(referrers), descriptor.digest
            )
        return [r for r in referrers if r.digest not in self._visited]


async def extended_copy(
    client: RegistryClient,
    repository: str,
    reference: str,
    store: MemoryStore,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    semaphore: Optional[asyncio.Semaphore] = None,
    timeout: Optional[float] = None,
) -> ReplicationResult:
    """Copy the graph rooted at a tag or digest, including referrers.

    Args:
        client: Source registry client
        repository: Source repository name
        reference: Tag or digest of the root manifest
        store: Destination store, scoped to this run
        concurrency: Maximum concurrent fetches within the walk
        semaphore: Fetch limit shared with other walks; overrides ``concurrency``
        timeout: Overall operation timeout in seconds, None for no limit

    Returns:
        ReplicationResult whose ``copied`` and ``skipped`` sets partition
        every digest reachable from the root

    Raises:
        ReplicationError: If any node cannot be fetched, fails verification,
            or the timeout elapses. Nodes already written are not removed.
        AuthenticationError: If the registry rejects the credentials
    """
    copier = GraphCopier(client, repository, store, concurrency, semaphore)
    result: Optional[ReplicationResult] = None

    async def _run() -> ReplicationResult:
        nonlocal result
        try:
            root = await client.resolve(repository, reference)
        except AuthenticationError:
            raise
        except RegistryError as e:
            raise ReplicationError(
                f"Failed to resolve {repository}:{reference}", reference, 0
            ) from e

        result = ReplicationResult(root=root)
        await copier.copy(root, result)
        return result

    try:
        if timeout is None:
            completed = await _run()
        else:
            completed = await asyncio.wait_for(_run(), timeout)
    except asyncio.TimeoutError as e:
        pending = sorted(copier.in_flight)
        raise ReplicationError(
            f"Replication of {repository}:{reference} timed out after {timeout}s",
            ", ".join(pending) or reference,
            len(result.copied) if result else 0,
        ) from e

    logger.info(
        "Replicated %s:%s (%s): %d copied, %d skipped",
        repository,
        reference,
        completed.root.digest,
        len(completed.copied),
        len(completed.skipped),
    )
    return completed
