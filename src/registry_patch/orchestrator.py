"""Patch orchestration: list, filter, replicate, patch, push back, annotate."""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Optional, Protocol

from .core.registry_client import RegistryClient
from .core.types import ContentDescriptor, ReplicationResult
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    FilterTimeoutError,
    PatchFailedError,
    RegistryError,
)
from .filters.tag_filter import TagFilter, evaluate
from .replication.copy import DEFAULT_CONCURRENCY, extended_copy
from .store.memory import MemoryStore
from .utils.digest import is_referrers_tag

logger = logging.getLogger(__name__)

DEFAULT_METADATA_NAME = "patchinfo"


class RunState(enum.Enum):
    START = "start"
    LISTING_REPOSITORIES = "listing_repositories"
    FILTERING_TAGS = "filtering_tags"
    REPLICATING = "replicating"
    PATCHING = "patching"
    PUSHING_BACK = "pushing_back"
    UPDATING_METADATA = "updating_metadata"
    DONE = "done"
    FINISHED = "finished"


class OutcomeStatus(enum.Enum):
    PATCHED = "patched"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class PatchResult:
    """Nodes produced by a patch tool.

    ``nodes`` must all be present in the store handed to the tool; they are
    pushed in order, followed by ``manifest`` under ``tag`` (the source tag
    when None).
    """

    manifest: ContentDescriptor
    nodes: list[ContentDescriptor] = field(default_factory=list)
    tag: Optional[str] = None


class PatchTool(Protocol):
    """External patcher invoked on a staged artifact graph.

    Returns None when the artifact needs no patching.
    """

    async def patch(
        self, result: ReplicationResult, store: MemoryStore
    ) -> Optional[PatchResult]: ...


@dataclass
class ItemOutcome:
    """Outcome for one (repository, tag) pair."""

    repository: str
    tag: str
    status: OutcomeStatus
    reason: Optional[str] = None
    error: Optional[Exception] = None
    state: RunState = RunState.DONE
    digest: Optional[str] = None

    def __str__(self) -> str:
        detail = f": {self.reason}" if self.reason else ""
        return f"{self.repository}:{self.tag} {self.status.value}{detail}"


@dataclass
class RunReport:
    """Every attempted item with its outcome."""

    outcomes: list[ItemOutcome] = field(default_factory=list)
    state: RunState = RunState.START

    @property
    def patched(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.PATCHED]

    @property
    def skipped(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.SKIPPED]

    @property
    def failures(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    @property
    def completed_with_errors(self) -> bool:
        return bool(self.failures)

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and len(self.failures) == len(self.outcomes)

    @property
    def exit_code(self) -> int:
        """0 when clean, 1 when some items failed, 2 when every item failed."""
        if self.all_failed:
            return 2
        return 1 if self.completed_with_errors else 0

    def summary(self) -> str:
        return (
            f"{len(self.patched)} patched, {len(self.skipped)} skipped, "
            f"{len(self.failures)} failed"
        )


class PatchOrchestrator:
    """Drives one patch run over a registry.

    Per-tag failures are recorded and the run moves on; only authentication
    and configuration errors abort it. ``concurrency_limit`` bounds both the
    tags in flight and the registry fetches shared by all of them.
    """

    def __init__(
        self,
        client: RegistryClient,
        patch_tool: Optional[PatchTool] = None,
        *,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        operation_timeout: Optional[float] = None,
        metadata_name: Optional[str] = DEFAULT_METADATA_NAME,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if concurrency_limit < 1:
            raise ConfigurationError(
                f"concurrency_limit must be at least 1, got {concurrency_limit}"
            )
        self.client = client
        self.patch_tool = patch_tool
        self.concurrency_limit = concurrency_limit
        self.operation_timeout = operation_timeout
        self.metadata_name = metadata_name
        self.clock = clock
        self._semaphore = asyncio.Semaphore(concurrency_limit)
        self._fetch_semaphore = asyncio.Semaphore(concurrency_limit)
        self.state = RunState.START

    def _transition(self, state: RunState, subject: str = "run") -> None:
        logger.debug("%s -> %s", subject, state.value)
        if subject == "run":
            self.state = state

    async def run(
        self,
        repository_filters: Mapping[str, TagFilter],
        filter_timeouts: Iterable[FilterTimeoutError] = (),
    ) -> RunReport:
        """Patch every tag selected by the repository filters.

        Args:
            repository_filters: Mapping of repository name to its tag filter
            filter_timeouts: Repository expressions that timed out while the
                filters were collected; each is reported as a failed item

        Returns:
            RunReport covering every attempted (repository, tag) pair

        Raises:
            AuthenticationError: If the registry rejects the credentials
            ConfigurationError: If the run is misconfigured
        """
        report = RunReport()
        for error in filter_timeouts:
            report.outcomes.append(
                self._failed(error.value, "*", error, RunState.FILTERING_TAGS)
            )

        self._transition(RunState.LISTING_REPOSITORIES)
        repositories = set(await self.client.list_repositories())
        logger.info("Found %d repositories", len(repositories))

        selected = []
        for repository in sorted(repository_filters):
            if repository in repositories:
                selected.append(repository)
            else:
                logger.warning("No repository named %r in registry, ignoring", repository)

        results = await asyncio.gather(
            *(
                self._process_repository(repository, repository_filters[repository])
                for repository in selected
            ),
            return_exceptions=True,
        )
        for repository, result in zip(selected, results):
            if isinstance(result, (AuthenticationError, ConfigurationError)):
                raise result
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error("Repository %s failed: %s", repository, result)
                report.outcomes.append(
                    ItemOutcome(
                        repository=repository,
                        tag="*",
                        status=OutcomeStatus.FAILED,
                        reason=str(result),
                        error=result,
                        state=RunState.FILTERING_TAGS,
                    )
                )
            else:
                report.outcomes.extend(result)

        self._transition(RunState.FINISHED)
        report.state = RunState.FINISHED
        log = logger.warning if report.completed_with_errors else logger.info
        log("Patch run finished: %s", report.summary())
        return report

    async def _process_repository(
        self, repository: str, tag_filter: TagFilter
    ) -> list[ItemOutcome]:
        self._transition(RunState.FILTERING_TAGS, repository)
        tags = await self.client.list_tags(repository)
        outcomes = await asyncio.gather(
            *(self._process_tag(repository, tag, tag_filter) for tag in tags),
            return_exceptions=True,
        )

        collected = []
        for tag, outcome in zip(tags, outcomes):
            if isinstance(outcome, (AuthenticationError, ConfigurationError)):
                raise outcome
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                collected.append(self._failed(repository, tag, outcome, RunState.DONE))
            elif outcome is not None:
                collected.append(outcome)
        return collected

    def _failed(
        self, repository: str, tag: str, error: Exception, state: RunState
    ) -> ItemOutcome:
        logger.warning("%s:%s failed while %s: %s", repository, tag, state.value, error)
        return ItemOutcome(
            repository=repository,
            tag=tag,
            status=OutcomeStatus.FAILED,
            reason=str(error),
            error=error,
            state=state,
        )

    async def _process_tag(
        self, repository: str, tag: str, tag_filter: TagFilter
    ) -> Optional[ItemOutcome]:
        subject = f"{repository}:{tag}"

        if is_referrers_tag(tag):
            return ItemOutcome(
                repository, tag, OutcomeStatus.SKIPPED, reason="referrer tag"
            )

        async with self._semaphore:
            state = RunState.FILTERING_TAGS
            outcome = await evaluate(tag_filter, tag)
            if outcome.timed_out:
                error = FilterTimeoutError(tag_filter.regex.pattern, tag, outcome.elapsed)
                return self._failed(repository, tag, error, state)
            if not outcome.matched:
                return None

            try:
                state = RunState.REPLICATING
                self._transition(state, subject)
                store = MemoryStore()
                replication = await extended_copy(
                    self.client,
                    repository,
                    tag,
                    store,
                    semaphore=self._fetch_semaphore,
                    timeout=self.operation_timeout,
                )

                state = RunState.PATCHING
                self._transition(state, subject)
                patched = await self._patch(replication, store)
                if patched is None:
                    return ItemOutcome(
                        repository,
                        tag,
                        OutcomeStatus.SKIPPED,
                        reason="no patch needed",
                        digest=replication.root.digest,
                    )

                state = RunState.PUSHING_BACK
                self._transition(state, subject)
                target_tag = patched.tag or tag
                digest = await self._push_back(repository, target_tag, patched, store)

                if self.metadata_name:
                    state = RunState.UPDATING_METADATA
                    self._transition(state, subject)
                    await self.client.update_metadata(
                        repository,
                        target_tag,
                        self.metadata_name,
                        {
                            "patchedAt": self.clock().isoformat(),
                            "sourceDigest": replication.root.digest,
                            "patchedDigest": digest,
                        },
                    )
            except (AuthenticationError, ConfigurationError):
                raise
            except RegistryError as e:
                return self._failed(repository, tag, e, state)

        self._transition(RunState.DONE, subject)
        logger.info("Patched %s -> %s", subject, digest)
        return ItemOutcome(
            repository, tag, OutcomeStatus.PATCHED, digest=digest, reason=target_tag
        )

    async def _patch(
        self, replication: ReplicationResult, store: MemoryStore
    ) -> Optional[PatchResult]:
        if self.patch_tool is None:
            return None
        try:
            return await self.patch_tool.patch(replication, store)
        except PatchFailedError:
            raise
        except Exception as e:
            raise PatchFailedError(str(e) or type(e).__name__) from e

    async def _push_back(
        self,
        repository: str,
        tag: str,
        patched: PatchResult,
        store: MemoryStore,
    ) -> str:
        for descriptor in patched.nodes:
            if descriptor.digest == patched.manifest.digest:
                continue
            await self.client.push(repository, store, descriptor)
        return await self.client.push(repository, store, patched.manifest, reference=tag)
