"""Example patch run against a local registry."""

import asyncio
import logging
import sys

from registry_patch import (
    MemoryStore,
    RegistryConfig,
    RegistryError,
    list_repositories,
    list_tags,
    replicate,
    run,
    write_oci_layout,
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def inspect():
    """Show repositories, tags and the graph behind the first tag."""
    config = RegistryConfig.from_env()

    try:
        repos = await list_repositories(config)
        logger.info(f"Found {len(repos)} repositories: {repos}")

        for repo in repos[:3]:  # Show first 3 repos
            tags = await list_tags(config, repo)
            logger.info(f"Repository {repo}: {tags}")

        if repos:
            tags = await list_tags(config, repos[0])
            if tags:
                result, store = await replicate(config, repos[0], tags[0])
                logger.info(
                    f"{repos[0]}:{tags[0]} -> {result.root.digest} "
                    f"({len(result.copied)} nodes)"
                )
                await write_oci_layout(store, result.root, "./layout", tag=tags[0])
                logger.info("Exported OCI layout to ./layout")

    except RegistryError as e:
        logger.error(f"Registry error: {e}")


class ReportOnlyPatcher:
    """Patch tool that only reports what it would patch."""

    async def patch(self, result, store: MemoryStore):
        logger.info(
            f"Would patch {result.root.digest} ({len(result.copied)} nodes staged)"
        )
        return None


async def patch(filters):
    """Run the patch orchestrator over the given filter expressions."""
    config = RegistryConfig.from_env()

    try:
        report = await run(config, filters, patch_tool=ReportOnlyPatcher())
    except RegistryError as e:
        logger.error(f"Registry error: {e}")
        return 2

    for outcome in report.failures:
        logger.error(f"{outcome.repository}:{outcome.tag} failed: {outcome.reason}")
    logger.info(report.summary())
    return report.exit_code


if __name__ == "__main__":
    print("=== Inspect Registry ===")
    asyncio.run(inspect())

    print("\n=== Patch Run ===")
    sys.exit(asyncio.run(patch(sys.argv[1:] or [".*:.*"])))
