"""Export of a staged artifact graph as an OCI image layout directory."""

import json
from pathlib import Path

import aiofiles
import aiofiles.os

from ..core.types import ContentDescriptor
from .memory import MemoryStore

OCI_LAYOUT_VERSION = "1.0.0"


async def write_oci_layout(
    store: MemoryStore,
    root: ContentDescriptor,
    directory: str | Path,
    tag: str | None = None,
) -> Path:
    """Write every blob in the store to an OCI image layout.

    File-based patch tools consume this layout directly.

    Args:
        store: Store holding the staged graph
        root: Root manifest descriptor recorded in ``index.json``
        directory: Target directory (created if missing)
        tag: Optional tag stored as ``org.opencontainers.image.ref.name``

    Returns:
        Path of the layout directory

    Raises:
        BlobNotFoundError: If the root is not in the store
    """
    layout_dir = Path(directory)
    store.get(root.digest)

    for digest in store.digests():
        algorithm, encoded = digest.split(":", 1)
        blob_dir = layout_dir / "blobs" / algorithm
        await aiofiles.os.makedirs(blob_dir, exist_ok=True)
        async with aiofiles.open(blob_dir / encoded, "wb") as f:
            await f.write(store.get(digest))

    manifest_entry = root.to_dict()
    if tag:
        annotations = manifest_entry.setdefault("annotations", {})
        annotations["org.opencontainers.image.ref.name"] = tag

    index = {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.index.v1+json",
        "manifests": [manifest_entry],
    }

    async with aiofiles.open(layout_dir / "oci-layout", "w") as f:
        await f.write(json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}))
    async with aiofiles.open(layout_dir / "index.json", "w") as f:
        await f.write(json.dumps(index, indent=2))

    return layout_dir
