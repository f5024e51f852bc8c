"""Page store capabilities and backends."""

from webextract.stores.base import (
    EmbeddingStore,
    KeywordSearch,
    PageCache,
    PageStore,
    SummaryCache,
)
from webextract.stores.memory_store import InMemoryStore
from webextract.stores.postgres_store import PostgresPageStore

__all__ = [
    "EmbeddingStore",
    "InMemoryStore",
    "KeywordSearch",
    "PageCache",
    "PageStore",
    "PostgresPageStore",
    "SummaryCache",
]
