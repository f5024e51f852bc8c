"""Fetch-target safety checks."""

from webextract.security.url_validator import UrlValidator, is_blocked_address

__all__ = ["UrlValidator", "is_blocked_address"]
