"""Ingestors: pluggable fetch backends and the wrappers composed around them."""

from webextract.ingestors.base import Ingestor
from webextract.ingestors.governor import RateLimitedIngestor, TokenBucket
from webextract.ingestors.http_ingestor import HttpIngestor
from webextract.ingestors.mock_ingestor import MockIngestor
from webextract.ingestors.validated import ValidatedIngestor

__all__ = [
    "Ingestor",
    "HttpIngestor",
    "MockIngestor",
    "RateLimitedIngestor",
    "TokenBucket",
    "ValidatedIngestor",
]
