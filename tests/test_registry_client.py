"""Tests for the aiohttp registry client against a local fake registry."""

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from registry_patch import (
    AuthenticationError,
    FilterTimeoutError,
    ManifestError,
    ManifestNotFoundError,
    MemoryStore,
    RegistryClient,
    RegistryConfig,
    ReplicationError,
    TransientRegistryError,
    extended_copy,
    run,
)
from registry_patch.core.types import OCI_MANIFEST
from tests.fake_server import RegistryState, create_registry_app, enable_tag_schema_fallback
from tests.helpers import SIGNATURE_ARTIFACT_TYPE, make_blob, make_manifest


@pytest_asyncio.fixture
async def registry_server():
    """Start a fake registry and yield its state and base URL."""
    state = RegistryState()
    server = TestServer(create_registry_app(state))
    await server.start_server()
    try:
        yield state, str(server.make_url("/")).rstrip("/")
    finally:
        await server.close()


@pytest_asyncio.fixture
async def client(registry_server):
    """Client with fast retries bound to the fake registry."""
    _, url = registry_server
    config = RegistryConfig(url=url, timeout=10, max_retries=3, backoff_base=0.01)
    async with RegistryClient(config) as registry_client:
        yield registry_client


def publish_signed_image(state: RegistryState, repository="app", tag="v1"):
    """Publish an image with two layers and a signature referrer."""
    l1 = make_blob(b"layer one")
    l2 = make_blob(b"layer two")
    root = make_manifest([l1[0], l2[0]])
    sig = make_manifest([], subject=root[0], artifact_type=SIGNATURE_ARTIFACT_TYPE)
    state.add_blob(repository, *l1)
    state.add_blob(repository, *l2)
    state.add_manifest(repository, *root, tag=tag)
    state.add_manifest(repository, *sig, subject=root[0])
    return {"root": root[0], "l1": l1[0], "l2": l2[0], "s1": sig[0]}


@pytest.mark.asyncio
async def test_check_registry_v2(client):
    """Test the v2 ping endpoint."""
    assert await client.check_registry_v2() is True


@pytest.mark.asyncio
async def test_list_repositories_follows_pagination(registry_server):
    """Test repository listing walks every catalog page."""
    state, url = registry_server
    for name in ["alpha", "beta", "delta", "gamma", "omega"]:
        state.tags[name] = {}

    async with RegistryClient(RegistryConfig(url=url, page_size=2)) as client:
        repositories = await client.list_repositories()

    assert repositories == ["alpha", "beta", "delta", "gamma", "omega"]
    assert state.requests[("GET", "/v2/_catalog")] == 3


@pytest.mark.asyncio
async def test_list_tags(registry_server, client):
    """Test tag listing."""
    state, _ = registry_server
    publish_signed_image(state)

    assert await client.list_tags("app") == ["v1"]


@pytest.mark.asyncio
async def test_resolve_and_fetch(registry_server, client):
    """Test resolving a tag and fetching manifest and blob content."""
    state, _ = registry_server
    image = publish_signed_image(state)

    root = await client.resolve("app", "v1")
    assert root.digest == image["root"].digest
    assert root.media_type == OCI_MANIFEST
    assert root.size == image["root"].size

    manifest = await client.fetch("app", root)
    assert manifest == state.manifests["app"][root.digest][1]
    assert await client.fetch("app", image["l1"]) == b"layer one"


@pytest.mark.asyncio
async def test_resolve_missing_tag(registry_server, client):
    """Test resolving an unknown tag."""
    state, _ = registry_server
    publish_signed_image(state)

    with pytest.raises(ManifestNotFoundError):
        await client.resolve("app", "missing")


@pytest.mark.asyncio
async def test_get_and_delete_manifest(registry_server, client):
    """Test a manifest is read as JSON and deleted by digest."""
    state, _ = registry_server
    image = publish_signed_image(state)

    manifest = await client.get_manifest("app", "v1")
    assert [layer["digest"] for layer in manifest["layers"]] == [
        image["l1"].digest,
        image["l2"].digest,
    ]

    await client.delete_manifest("app", image["root"].digest)

    with pytest.raises(ManifestNotFoundError):
        await client.get_manifest("app", "v1")
    with pytest.raises(ManifestNotFoundError):
        await client.delete_manifest("app", image["root"].digest)


@pytest.mark.asyncio
async def test_referrers_api(registry_server, client):
    """Test referrers are listed through the referrers API."""
    state, _ = registry_server
    image = publish_signed_image(state)

    referrers = await client.referrers("app", image["root"])

    assert [r.digest for r in referrers] == [image["s1"].digest]
    assert referrers[0].artifact_type == SIGNATURE_ARTIFACT_TYPE
    assert await client.referrers("app", image["s1"]) == []


@pytest.mark.asyncio
async def test_referrers_tag_schema_fallback(registry_server, client):
    """Test referrers are read from the tag schema when the API is missing."""
    state, _ = registry_server
    image = publish_signed_image(state)
    enable_tag_schema_fallback(state, "app")

    referrers = await client.referrers("app", image["root"])

    assert [r.digest for r in referrers] == [image["s1"].digest]
    assert await client.referrers("app", image["s1"]) == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried(registry_server, client):
    """Test 503 responses are retried until they succeed."""
    state, _ = registry_server
    publish_signed_image(state)
    state.fail("GET", "/v2/app/tags/list", times=2)

    assert await client.list_tags("app") == ["v1"]
    assert state.requests[("GET", "/v2/app/tags/list")] == 3


@pytest.mark.asyncio
async def test_transient_errors_exhaust_retries(registry_server, client):
    """Test the last transient error propagates after the attempt budget."""
    state, _ = registry_server
    publish_signed_image(state)
    state.fail("GET", "/v2/app/tags/list", times=10)

    with pytest.raises(TransientRegistryError) as exc_info:
        await client.list_tags("app")

    assert exc_info.value.status == 503
    assert state.requests[("GET", "/v2/app/tags/list")] == 3


@pytest.mark.asyncio
async def test_authentication(registry_server):
    """Test credentials are sent and rejections are not retried."""
    state, url = registry_server
    publish_signed_image(state)
    state.credentials = ("patcher", "s3cret")

    async with RegistryClient(
        RegistryConfig(url=url, username="patcher", password="s3cret")
    ) as client:
        assert await client.list_tags("app") == ["v1"]

    async with RegistryClient(
        RegistryConfig(url=url, username="patcher", password="wrong")
    ) as client:
        with pytest.raises(AuthenticationError):
            await client.list_repositories()

    assert state.requests[("GET", "/v2/_catalog")] == 1


@pytest.mark.asyncio
async def test_push_from_store(registry_server, client):
    """Test staged blobs and manifests are pushed and tagged."""
    state, _ = registry_server
    store = MemoryStore()
    layer = make_blob(b"patched layer")
    manifest = make_manifest([layer[0]])
    store.put(*layer)
    store.put(*manifest)

    assert await client.push("app", store, layer[0]) == layer[0].digest
    assert await client.push("app", store, manifest[0], reference="v2") == manifest[0].digest

    assert state.blobs["app"][layer[0].digest] == b"patched layer"
    assert state.tags["app"]["v2"] == manifest[0].digest

    # Existing blobs are not uploaded again
    await client.push("app", store, layer[0])
    assert state.requests[("POST", "/v2/app/blobs/uploads/")] == 1


@pytest.mark.asyncio
async def test_update_metadata(registry_server, client):
    """Test metadata documents are written to and read from the annotation endpoint."""
    state, _ = registry_server

    await client.update_metadata("app", "v1", "patchinfo", {"patchedAt": "now"})

    assert state.metadata[("app", "v1", "patchinfo")] == {"patchedAt": "now"}
    assert await client.get_metadata("app", "v1", "patchinfo") == {"patchedAt": "now"}
    with pytest.raises(ManifestNotFoundError):
        await client.get_metadata("app", "v2", "patchinfo")


@pytest.mark.asyncio
async def test_extended_copy_over_http(registry_server, client):
    """Test a signed image is replicated through the HTTP client."""
    state, _ = registry_server
    image = publish_signed_image(state)
    store = MemoryStore()

    result = await extended_copy(client, "app", "v1", store)

    assert result.copied == {d.digest for d in image.values()}
    assert result.skipped == set()


@pytest.mark.asyncio
async def test_run_with_filter_expressions(registry_server):
    """Test the functional entry point end to end without a patch tool."""
    state, url = registry_server
    publish_signed_image(state, tag="v1")
    publish_signed_image(state, tag="latest")

    report = await run(url, ["app:^v[0-9]+$"], per_filter_timeout=10)

    assert [(o.tag, o.reason) for o in report.outcomes] == [("v1", "no patch needed")]
    assert report.exit_code == 0


@pytest.mark.asyncio
async def test_malformed_referrers_index(registry_server, client):
    """Test a referrers index with a broken entry fails the copy with the subject digest."""
    state, _ = registry_server
    image = publish_signed_image(state)
    state.referrers[image["root"].digest].append({"mediaType": OCI_MANIFEST, "size": 3})

    with pytest.raises(ManifestError):
        await client.referrers("app", image["root"])

    with pytest.raises(ReplicationError) as exc_info:
        await extended_copy(client, "app", "v1", MemoryStore())
    assert exc_info.value.digest == image["root"].digest
    assert isinstance(exc_info.value.__cause__, ManifestError)


@pytest.mark.asyncio
async def test_run_reports_repository_filter_timeouts(registry_server):
    """Test a repository expression that times out is reported and the run completes."""
    state, url = registry_server
    publish_signed_image(state, tag="v1")
    stuck_name = "a" * 40 + "!"
    state.tags[stuck_name] = {}

    report = await run(url, ["app:v1", "(a+)+b:.*"], per_filter_timeout=0.5)

    assert [(o.repository, o.tag, o.status.value) for o in report.outcomes] == [
        (stuck_name, "*", "failed"),
        ("app", "v1", "skipped"),
    ]
    assert isinstance(report.failures[0].error, FilterTimeoutError)
    assert report.exit_code == 1
