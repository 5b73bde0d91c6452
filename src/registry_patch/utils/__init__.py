"""Utility functions for the registry patch client."""

from .digest import (
    calculate_digest,
    is_referrers_tag,
    referrers_tag,
    validate_digest,
    verify_digest,
)

__all__ = [
    "calculate_digest",
    "is_referrers_tag",
    "referrers_tag",
    "validate_digest",
    "verify_digest",
]
