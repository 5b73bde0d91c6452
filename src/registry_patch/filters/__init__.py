"""Repository and tag filters."""

from .tag_filter import (
    DEFAULT_TIMEOUT_SECONDS,
    FilterOutcome,
    FilterStatus,
    TagFilter,
    collect_tag_filters,
    evaluate,
    evaluate_many,
    evaluate_pattern,
    parse_filter,
)

__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "FilterOutcome",
    "FilterStatus",
    "TagFilter",
    "collect_tag_filters",
    "evaluate",
    "evaluate_many",
    "evaluate_pattern",
    "parse_filter",
]
