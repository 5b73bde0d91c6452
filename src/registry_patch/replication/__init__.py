"""Artifact graph replication."""

from .copy import GraphCopier, extended_copy

__all__ = ["GraphCopier", "extended_copy"]
