"""Bounded-time evaluation of repository and tag filters.

Operator supplied expressions may backtrack catastrophically, and Python's
``re`` engine cannot be interrupted from the outside. Every evaluation
therefore runs in its own child process which is killed once the deadline
passes. The event loop watches the result pipe directly, so a stuck
evaluation holds no thread and never delays any other.
"""

import asyncio
import enum
import logging
import multiprocessing
import re
import time
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from ..exceptions import FilterConfigError, FilterError, FilterTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0

# Time allowed for a killed evaluation process to exit
_JOIN_GRACE_SECONDS = 5.0

# Children fork from a clean server process, never from a threaded parent.
# The server preloads this module so each child starts without imports.
_CONTEXT = multiprocessing.get_context("forkserver")
_CONTEXT.set_forkserver_preload([__name__])


class FilterStatus(enum.Enum):
    MATCHED = "matched"
    NOT_MATCHED = "not_matched"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class FilterOutcome:
    """Result of one filter evaluation."""

    status: FilterStatus
    elapsed: float

    @property
    def matched(self) -> bool:
        return self.status is FilterStatus.MATCHED

    @property
    def timed_out(self) -> bool:
        return self.status is FilterStatus.TIMED_OUT


@dataclass(frozen=True)
class TagFilter:
    """Tag expression governing one repository."""

    repository_pattern: str
    regex: re.Pattern
    timeout_budget: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def create(
        cls,
        repository_pattern: str,
        tag_pattern: str,
        timeout_budget: Optional[float] = None,
    ) -> "TagFilter":
        """Compile a tag expression into a filter.

        Raises:
            FilterConfigError: If the expression does not compile or the budget
                is not positive
        """
        if timeout_budget is None:
            timeout_budget = DEFAULT_TIMEOUT_SECONDS
        if timeout_budget <= 0:
            raise FilterConfigError(f"Filter timeout must be positive: {timeout_budget}")
        return cls(
            repository_pattern=repository_pattern,
            regex=_compile(tag_pattern),
            timeout_budget=float(timeout_budget),
        )


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise FilterConfigError(f"Invalid filter expression {pattern!r}: {e}") from e


def parse_filter(expression: str, timeout_budget: Optional[float] = None) -> TagFilter:
    """Parse a ``<repository>:<tag regex>`` filter expression.

    The expression is split on the first colon, so tag expressions may contain
    colons themselves.

    Examples:
        >>> parse_filter("app:^v[0-9]+$").regex.pattern
        '^v[0-9]+$'

    Raises:
        FilterConfigError: If either part is missing or does not compile
    """
    repository, sep, tag_pattern = expression.partition(":")
    if not sep or not repository or not tag_pattern:
        raise FilterConfigError(
            f"Filter {expression!r} must have the form <repository>:<tag regex>"
        )
    _compile(repository)
    return TagFilter.create(repository, tag_pattern, timeout_budget)


def _match_worker(pattern: str, flags: int, value: str, conn) -> None:
    """Child process entry point: report whether the pattern matches."""
    try:
        conn.send(re.compile(pattern, flags).search(value) is not None)
    finally:
        conn.close()


async def _wait_readable(fd: int, timeout: float) -> bool:
    """Wait on the event loop until fd becomes readable or timeout elapses."""
    loop = asyncio.get_running_loop()
    ready = loop.create_future()

    def _on_readable() -> None:
        if not ready.done():
            ready.set_result(None)

    loop.add_reader(fd, _on_readable)
    try:
        await asyncio.wait_for(ready, timeout)
        return True
    except asyncio.TimeoutError:
        return False
    finally:
        loop.remove_reader(fd)


async def _terminate(process) -> None:
    if process.is_alive():
        process.kill()
    if not await _wait_readable(process.sentinel, _JOIN_GRACE_SECONDS):
        logger.warning("Filter process %s did not exit after kill", process.pid)
        return
    process.join(0)


async def evaluate_pattern(
    regex: re.Pattern, value: str, timeout_budget: float
) -> FilterOutcome:
    """Search a compiled pattern in value within a wall-clock budget.

    The budget starts once the child process is running.

    Returns:
        FilterOutcome, TIMED_OUT if the budget elapsed first

    Raises:
        FilterError: If the evaluation process died without a result
    """
    receiver, sender = _CONTEXT.Pipe(duplex=False)
    process = _CONTEXT.Process(
        target=_match_worker,
        args=(regex.pattern, regex.flags, value, sender),
        daemon=True,
    )

    try:
        process.start()
    except BaseException:
        receiver.close()
        raise
    finally:
        sender.close()
    start = time.monotonic()

    try:
        ready = await _wait_readable(receiver.fileno(), timeout_budget)
        elapsed = time.monotonic() - start
        if not ready:
            return FilterOutcome(FilterStatus.TIMED_OUT, elapsed)
        try:
            matched = receiver.recv()
        except EOFError as e:
            raise FilterError(
                f"Evaluation of {regex.pattern!r} against {value!r} exited "
                f"without a result"
            ) from e
        status = FilterStatus.MATCHED if matched else FilterStatus.NOT_MATCHED
        return FilterOutcome(status, elapsed)
    finally:
        receiver.close()
        await _terminate(process)


async def evaluate(tag_filter: TagFilter, tag: str) -> FilterOutcome:
    """Evaluate a tag filter against one tag name."""
    outcome = await evaluate_pattern(tag_filter.regex, tag, tag_filter.timeout_budget)
    if outcome.timed_out:
        logger.warning(
            "Filter %r for %s timed out on tag %r after %.2fs",
            tag_filter.regex.pattern,
            tag_filter.repository_pattern,
            tag,
            outcome.elapsed,
        )
    return outcome


async def evaluate_many(
    tag_filter: TagFilter, tags: Iterable[str], concurrency: int = 5
) -> dict[str, FilterOutcome]:
    """Evaluate a filter against many tags concurrently.

    Returns:
        Mapping of tag name to outcome
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    tag_list = list(tags)

    async def _bounded(tag: str) -> FilterOutcome:
        async with semaphore:
            return await evaluate(tag_filter, tag)

    outcomes = await asyncio.gather(*(_bounded(tag) for tag in tag_list))
    return dict(zip(tag_list, outcomes))


async def collect_tag_filters(
    expressions: Iterable[str],
    repositories: Iterable[str],
    timeout_budget: Optional[float] = None,
    timeouts: Optional[list[FilterTimeoutError]] = None,
) -> Mapping[str, TagFilter]:
    """Resolve filter expressions against the repositories of a registry.

    The repository part of each expression is itself a regular expression,
    anchored at both ends and evaluated under the same time budget. Tag
    expressions targeting the same repository are combined into one
    alternation.

    Args:
        expressions: ``<repository regex>:<tag regex>`` strings
        repositories: Repository names present in the registry
        timeout_budget: Budget per evaluation in seconds
        timeouts: When given, repository evaluations that time out are
            appended here and skipped instead of raised

    Returns:
        Mapping of repository name to its combined TagFilter

    Raises:
        FilterConfigError: If an expression is malformed
        FilterTimeoutError: If a repository expression times out and no
            ``timeouts`` list was given
    """
    parsed = [parse_filter(expression, timeout_budget) for expression in expressions]
    repository_names = list(repositories)
    tag_patterns: dict[str, list[str]] = {}

    for tag_filter in parsed:
        repo_regex = _compile(f"^(?:{tag_filter.repository_pattern})$")
        for repository in repository_names:
            outcome = await evaluate_pattern(
                repo_regex, repository, tag_filter.timeout_budget
            )
            if outcome.timed_out:
                error = FilterTimeoutError(
                    tag_filter.repository_pattern, repository, outcome.elapsed
                )
                if timeouts is None:
                    raise error
                logger.warning("%s", error)
                timeouts.append(error)
                continue
            if outcome.matched:
                patterns = tag_patterns.setdefault(repository, [])
                if tag_filter.regex.pattern not in patterns:
                    patterns.append(tag_filter.regex.pattern)

    budget = parsed[0].timeout_budget if parsed else timeout_budget
    filters = {}
    for repository, patterns in tag_patterns.items():
        if len(patterns) == 1:
            combined = patterns[0]
        else:
            combined = "|".join(f"(?:{p})" for p in patterns)
        filters[repository] = TagFilter.create(repository, combined, budget)
    return filters
