"""Utility modules for the Bulk Analysis Engine."""

from .config import Settings, get_settings
from .domain import normalize_domain, normalize_domains, parse_keywords
from .ids import to_uuid, to_optional_uuid

__all__ = [
    "Settings",
    "get_settings",
    # Domain identity
    "normalize_domain",
    "normalize_domains",
    "parse_keywords",
    "to_uuid",
    "to_optional_uuid",
]
