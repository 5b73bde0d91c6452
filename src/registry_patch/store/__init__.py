"""Content stores for staged artifact graphs."""

from .layout import write_oci_layout
from .memory import MemoryStore

__all__ = ["MemoryStore", "write_oci_layout"]
