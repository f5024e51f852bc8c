"""
Domain-agnostic web content extraction engine.

Ingest web pages, index them for hybrid recall and answer natural-language
extraction queries with evidence-grounded, conflict-aware results.
"""

from webextract.config import Settings, get_settings
from webextract.index.engine import Index
from webextract.ingestors import (
    HttpIngestor,
    Ingestor,
    MockIngestor,
    RateLimitedIngestor,
    ValidatedIngestor,
)
from webextract.models import (
    CachedPage,
    Conflict,
    ConflictingClaim,
    DiscoverOptions,
    Extraction,
    ExtractionStatus,
    ExtractionStrategy,
    GapQuery,
    GapReason,
    GroundingGrade,
    IngestConfig,
    IngestResult,
    PageRef,
    QueryFilter,
    RawPage,
    Source,
    SourceRole,
    Summary,
)
from webextract.reasoning import MockReasoner, OpenAIReasoner, Reasoner
from webextract.security import UrlValidator
from webextract.stores import InMemoryStore, PageStore, PostgresPageStore

__version__ = "0.1.0"

__all__ = [
    "CachedPage",
    "Conflict",
    "ConflictingClaim",
    "DiscoverOptions",
    "Extraction",
    "ExtractionStatus",
    "ExtractionStrategy",
    "GapQuery",
    "GapReason",
    "GroundingGrade",
    "HttpIngestor",
    "Index",
    "IngestConfig",
    "IngestResult",
    "Ingestor",
    "InMemoryStore",
    "MockIngestor",
    "MockReasoner",
    "OpenAIReasoner",
    "PageRef",
    "PageStore",
    "PostgresPageStore",
    "QueryFilter",
    "RateLimitedIngestor",
    "RawPage",
    "Reasoner",
    "Settings",
    "Source",
    "SourceRole",
    "Summary",
    "UrlValidator",
    "ValidatedIngestor",
    "get_settings",
]
