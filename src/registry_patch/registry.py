"""Async functional registry operations."""

import logging
from typing import Iterable, Mapping, Optional, Union

from .core.registry_client import RegistryClient, ensure_connectivity
from .core.types import RegistryConfig, ReplicationResult
from .exceptions import FilterTimeoutError
from .filters.tag_filter import DEFAULT_TIMEOUT_SECONDS, TagFilter, collect_tag_filters
from .orchestrator import DEFAULT_METADATA_NAME, PatchOrchestrator, PatchTool, RunReport
from .replication.copy import DEFAULT_CONCURRENCY, extended_copy
from .store.memory import MemoryStore

logger = logging.getLogger(__name__)

Registry = Union[str, RegistryConfig, RegistryClient]


def _client_for(registry: Registry) -> tuple[RegistryClient, bool]:
    """Return a client and whether the caller owns (and must close) it."""
    if isinstance(registry, RegistryClient):
        return registry, False
    return RegistryClient(registry), True


async def list_repositories(registry: Registry) -> list[str]:
    """레지스트리의 모든 저장소 목록을 조회합니다.

    Args:
        registry: 레지스트리 URL, RegistryConfig 또는 열린 RegistryClient

    Returns:
        list[str]: 저장소 이름 목록 (예: ["nginx", "myapp", "test/image"])

    Raises:
        RegistryError: 요청 실패 시

    Examples:
        repos = await list_repositories("http://localhost:15000")
    """
    client, owned = _client_for(registry)
    try:
        return await client.list_repositories()
    finally:
        if owned:
            await client.close()


async def list_tags(registry: Registry, repository: str) -> list[str]:
    """특정 저장소의 모든 태그 목록을 조회합니다.

    Args:
        registry: 레지스트리 URL, RegistryConfig 또는 열린 RegistryClient
        repository: 저장소 이름 (예: "nginx", "mycompany/myapp")

    Returns:
        list[str]: 태그 이름 목록 (예: ["latest", "v1.0.0"])

    Raises:
        RegistryError: 요청 실패 시
    """
    client, owned = _client_for(registry)
    try:
        return await client.list_tags(repository)
    finally:
        if owned:
            await client.close()


async def replicate(
    registry: Registry,
    repository: str,
    reference: str,
    store: Optional[MemoryStore] = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    timeout: Optional[float] = None,
) -> tuple[ReplicationResult, MemoryStore]:
    """이미지와 서명, SBOM 등 연결된 아티팩트 전체를 메모리 저장소로 복사합니다.

    Args:
        registry: 레지스트리 URL, RegistryConfig 또는 열린 RegistryClient
        repository: 저장소 이름 (예: "nginx")
        reference: 태그 또는 digest (예: "v1", "sha256:abc123...")
        store: 대상 저장소 (생략 시 새로 생성)
        concurrency: 동시 다운로드 수 (기본값: 5)
        timeout: 전체 복사 타임아웃 (초, 기본값: 제한 없음)

    Returns:
        tuple[ReplicationResult, MemoryStore]: 복사 결과와 저장소

    Raises:
        ReplicationError: 노드 다운로드 또는 digest 검증 실패 시
        AuthenticationError: 인증 실패 시

    Examples:
        result, store = await replicate("http://localhost:15000", "nginx", "latest")
        print(f"복사된 노드: {len(result.copied)}")
    """
    store = store if store is not None else MemoryStore()
    client, owned = _client_for(registry)
    try:
        result = await extended_copy(
            client, repository, reference, store, concurrency=concurrency, timeout=timeout
        )
        return result, store
    finally:
        if owned:
            await client.close()


async def run(
    registry: Registry,
    repository_filters: Union[Mapping[str, TagFilter], Iterable[str]],
    concurrency_limit: int = DEFAULT_CONCURRENCY,
    per_filter_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    patch_tool: Optional[PatchTool] = None,
    operation_timeout: Optional[float] = None,
    metadata_name: Optional[str] = DEFAULT_METADATA_NAME,
) -> RunReport:
    """필터에 맞는 모든 태그를 복사하고 패치한 뒤 레지스트리에 다시 푸시합니다.

    저장소별, 태그별 실패는 보고서에 기록되며 실행은 계속됩니다.
    인증 실패와 설정 오류만 전체 실행을 중단합니다.
    저장소 정규식 평가가 시간 초과되면 해당 저장소는 태그 "*"의
    실패 항목으로 기록됩니다.

    Args:
        registry: 레지스트리 URL, RegistryConfig 또는 열린 RegistryClient
        repository_filters: 저장소 이름 → TagFilter 매핑 또는
            "<저장소 정규식>:<태그 정규식>" 문자열 목록
        concurrency_limit: 동시 처리 수 (기본값: 5)
        per_filter_timeout: 필터 평가 한 건당 제한 시간 (초, 기본값: 60초)
        patch_tool: 패치 도구 (생략 시 모든 태그가 "no patch needed"로 건너뜀)
        operation_timeout: 태그당 복사 타임아웃 (초, 기본값: 제한 없음)
        metadata_name: 패치 후 기록할 메타데이터 이름 (None이면 기록하지 않음)

    Returns:
        RunReport: (저장소, 태그)별 결과 목록

    Raises:
        RegistryConnectionError: 레지스트리가 v2 API를 지원하지 않는 경우
        AuthenticationError: 인증 실패 시
        ConfigurationError: 필터 표현식이 잘못된 경우

    Examples:
        report = await run(
            "http://localhost:15000",
            ["app:^v[0-9]+$"],
            patch_tool=MyPatcher(),
        )
        print(report.summary())
    """
    client, owned = _client_for(registry)
    try:
        await ensure_connectivity(client)

        timeouts: list[FilterTimeoutError] = []
        if isinstance(repository_filters, Mapping):
            filters = dict(repository_filters)
        else:
            repositories = await client.list_repositories()
            filters = dict(
                await collect_tag_filters(
                    repository_filters,
                    repositories,
                    per_filter_timeout,
                    timeouts=timeouts,
                )
            )
            for repository, tag_filter in filters.items():
                logger.info(
                    "Repository %s uses tag filter %r",
                    repository,
                    tag_filter.regex.pattern,
                )

        orchestrator = PatchOrchestrator(
            client,
            patch_tool,
            concurrency_limit=concurrency_limit,
            operation_timeout=operation_timeout,
            metadata_name=metadata_name,
        )
        return await orchestrator.run(filters, filter_timeouts=timeouts)
    finally:
        if owned:
            await client.close()
