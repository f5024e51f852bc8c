"""
Postgres page store backed by asyncpg.

Keyword search uses Postgres full-text search over page content. Embeddings
are stored as float arrays and ranked with numpy, which keeps the schema free
of extensions.
"""

import json
import re
from typing import Any, List, Optional, Sequence, Tuple

from webextract.models import (
    CachedPage,
    PageRef,
    ProcessedPage,
    QueryFilter,
    RecallSignals,
    Summary,
)
from webextract.stores.base import PageStore, query_terms, rank_by_similarity
from webextract.stores.connection_manager import DatabaseConnectionManager
from webextract.utils.errors import StoreNotInitializedError
from webextract.utils.logging import get_logger, log_performance

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pages (
    url TEXT PRIMARY KEY,
    site_url TEXT NOT NULL,
    content TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    fetched_at TIMESTAMPTZ NOT NULL,
    title TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    search_vector TSVECTOR GENERATED ALWAYS AS (
        to_tsvector('simple', coalesce(title, '') || ' ' || content)
    ) STORED
);
CREATE INDEX IF NOT EXISTS pages_site_url_idx ON pages (site_url);
CREATE INDEX IF NOT EXISTS pages_search_idx ON pages USING GIN (search_vector);

CREATE TABLE IF NOT EXISTS summaries (
    url TEXT NOT NULL REFERENCES pages (url) ON DELETE CASCADE,
    content_hash TEXT NOT NULL,
    site_url TEXT NOT NULL,
    text TEXT NOT NULL,
    signals JSONB NOT NULL DEFAULT '{}'::jsonb,
    language TEXT,
    prompt_hash TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (url, content_hash)
);
CREATE INDEX IF NOT EXISTS summaries_site_url_idx ON summaries (site_url);

CREATE TABLE IF NOT EXISTS embeddings (
    url TEXT PRIMARY KEY REFERENCES pages (url) ON DELETE CASCADE,
    embedding DOUBLE PRECISION[] NOT NULL
);
"""

UPSERT_PAGE_SQL = """
INSERT INTO pages (url, site_url, content, content_hash, fetched_at, title, metadata)
VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
ON CONFLICT (url) DO UPDATE SET
    site_url = EXCLUDED.site_url,
    content = EXCLUDED.content,
    content_hash = EXCLUDED.content_hash,
    fetched_at = EXCLUDED.fetched_at,
    title = EXCLUDED.title,
    metadata = EXCLUDED.metadata
"""

UPSERT_SUMMARY_SQL = """
INSERT INTO summaries (url, content_hash, site_url, text, signals, language, prompt_hash, created_at)
VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8)
ON CONFLICT (url, content_hash) DO UPDATE SET
    text = EXCLUDED.text,
    signals = EXCLUDED.signals,
    language = EXCLUDED.language,
    prompt_hash = EXCLUDED.prompt_hash,
    created_at = EXCLUDED.created_at
"""

UPSERT_EMBEDDING_SQL = """
INSERT INTO embeddings (url, embedding) VALUES ($1, $2)
ON CONFLICT (url) DO UPDATE SET embedding = EXCLUDED.embedding
"""

_TSQUERY_UNSAFE = re.compile(r"[^\w]+", re.UNICODE)


def build_filter_clause(
    query_filter: Optional[QueryFilter],
    start_index: int = 1,
    alias: str = "p",
) -> Tuple[str, List[Any]]:
    """
    Translate a QueryFilter into a SQL condition over the pages table.

    Args:
        query_filter: Filter to translate
        start_index: Number of the first positional parameter to use
        alias: Alias of the pages table in the surrounding query

    Returns:
        (condition, args). The condition is ``TRUE`` when nothing is filtered.
    """
    if query_filter is None:
        return "TRUE", []

    conditions, args = [], []
    index = start_index

    if query_filter.include_sites:
        conditions.append(f"{alias}.site_url LIKE ANY(${index}::text[])")
        args.append([f"%{s}%" for s in query_filter.include_sites])
        index += 1
    if query_filter.exclude_sites:
        conditions.append(f"NOT ({alias}.site_url LIKE ANY(${index}::text[]))")
        args.append([f"%{s}%" for s in query_filter.exclude_sites])
        index += 1
    if query_filter.min_date:
        conditions.append(f"{alias}.fetched_at >= ${index}")
        args.append(query_filter.min_date)
        index += 1
    if query_filter.max_date:
        conditions.append(f"{alias}.fetched_at <= ${index}")
        args.append(query_filter.max_date)
        index += 1

    return (" AND ".join(conditions) or "TRUE"), args


def build_tsquery(query: str) -> Optional[str]:
    """OR-combine the query's content terms into a tsquery string."""
    terms = []
    for term in query_terms(query):
        cleaned = _TSQUERY_UNSAFE.sub(" ", term).split()
        terms.extend(cleaned)
    terms = list(dict.fromkeys(t for t in terms if len(t) > 1))
    if not terms:
        return None
    return " | ".join(terms)


def _json_field(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def row_to_page(row) -> CachedPage:
    return CachedPage(
        url=row["url"],
        site_url=row["site_url"],
        content=row["content"],
        fetched_at=row["fetched_at"],
        title=row["title"],
        metadata=_json_field(row["metadata"]),
    )


def row_to_summary(row) -> Summary:
    embedding = row["embedding"] if "embedding" in row.keys() else None
    return Summary(
        url=row["url"],
        site_url=row["site_url"],
        text=row["text"],
        signals=RecallSignals(**_json_field(row["signals"])),
        language=row["language"],
        prompt_hash=row["prompt_hash"],
        content_hash=row["content_hash"],
        created_at=row["created_at"],
        embedding=list(embedding) if embedding is not None else None,
    )


class PostgresPageStore(PageStore):
    """
    Page store on Postgres.

    ``store_processed`` writes a whole batch inside one transaction; asyncpg
    rolls the transaction back if the writing task is cancelled.
    """

    def __init__(self, manager: Optional[DatabaseConnectionManager] = None) -> None:
        """
        Initialize the store.

        Args:
            manager: Connection manager (defaults to one built from settings)
        """
        self.manager = manager or DatabaseConnectionManager()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Create the pool and schema.

        Raises:
            StoreConnectionError: If the database is unreachable
        """
        await self.manager.initialize()
        async with self.manager.get_connection() as conn:
            await conn.execute(SCHEMA_SQL)
        self._initialized = True
        logger.info("Postgres page store initialized")

    async def close(self) -> None:
        await self.manager.close()
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise StoreNotInitializedError("PostgresPageStore.initialize() has not been called")

    # =========================================================================
    # PageCache
    # =========================================================================

    async def get_page(self, url: str) -> Optional[CachedPage]:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            row = await conn.fetchrow("SELECT * FROM pages WHERE url = $1", url)
        return row_to_page(row) if row else None

    async def get_pages(self, urls: Sequence[str]) -> List[CachedPage]:
        self._ensure_initialized()
        if not urls:
            return []
        async with self.manager.get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM pages WHERE url = ANY($1::text[])", list(urls))
        by_url = {row["url"]: row_to_page(row) for row in rows}
        return [by_url[url] for url in dict.fromkeys(urls) if url in by_url]

    async def get_pages_for_site(self, site_url: str) -> List[CachedPage]:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM pages WHERE site_url = $1 ORDER BY url", site_url)
        return [row_to_page(row) for row in rows]

    async def store_page(self, page: CachedPage) -> bool:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            status = await conn.execute(
                UPSERT_PAGE_SQL + " WHERE pages.content_hash <> EXCLUDED.content_hash",
                *self._page_args(page),
            )
        return not status.endswith(" 0")

    async def delete_page(self, url: str) -> bool:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            status = await conn.execute("DELETE FROM pages WHERE url = $1", url)
        return not status.endswith(" 0")

    async def count_pages(self) -> int:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            return await conn.fetchval("SELECT count(*) FROM pages")

    # =========================================================================
    # SummaryCache
    # =========================================================================

    async def get_summary(self, url: str, content_hash: str) -> Optional[Summary]:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM summaries WHERE url = $1 AND content_hash = $2",
                url,
                content_hash,
            )
        return row_to_summary(row) if row else None

    async def store_summary(self, summary: Summary) -> None:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            await conn.execute(UPSERT_SUMMARY_SQL, *self._summary_args(summary))

    async def get_summaries_for_site(self, site_url: str) -> List[Summary]:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM summaries WHERE site_url = $1", site_url)
        return [row_to_summary(row) for row in rows]

    async def get_summaries(self, query_filter: Optional[QueryFilter] = None) -> List[Summary]:
        self._ensure_initialized()
        condition, args = build_filter_clause(query_filter)
        sql = f"""
            SELECT s.*, e.embedding
            FROM summaries s
            JOIN pages p ON p.url = s.url AND p.content_hash = s.content_hash
            LEFT JOIN embeddings e ON e.url = s.url
            WHERE {condition}
            ORDER BY s.url
        """
        async with self.manager.get_connection() as conn:
            rows = await conn.fetch(sql, *args)
        return [row_to_summary(row) for row in rows]

    async def invalidate_stale_summaries(self, current_prompt_hash: str) -> int:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            status = await conn.execute(
                "DELETE FROM summaries WHERE prompt_hash <> $1", current_prompt_hash
            )
        removed = int(status.split()[-1])
        if removed:
            logger.info(f"Invalidated {removed} stale summaries")
        return removed

    # =========================================================================
    # EmbeddingStore
    # =========================================================================

    async def store_embedding(self, url: str, embedding: List[float]) -> None:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            await conn.execute(UPSERT_EMBEDDING_SQL, url, list(embedding))

    async def get_embedding(self, url: str) -> Optional[List[float]]:
        self._ensure_initialized()
        async with self.manager.get_connection() as conn:
            value = await conn.fetchval("SELECT embedding FROM embeddings WHERE url = $1", url)
        return list(value) if value is not None else None

    async def search_similar(
        self,
        embedding: List[float],
        limit: int,
        query_filter: Optional[QueryFilter] = None,
    ) -> List[PageRef]:
        self._ensure_initialized()
        condition, args = build_filter_clause(query_filter)
        sql = f"""
            SELECT e.url, e.embedding, p.title, p.site_url
            FROM embeddings e
            JOIN pages p ON p.url = e.url
            WHERE {condition}
        """
        async with self.manager.get_connection() as conn:
            rows = await conn.fetch(sql, *args)

        meta = {row["url"]: row for row in rows}
        ranked = rank_by_similarity(embedding, ((row["url"], row["embedding"]) for row in rows), limit)
        return [
            PageRef(url=url, title=meta[url]["title"], site_url=meta[url]["site_url"], score=score)
            for url, score in ranked
        ]

    # =========================================================================
    # KeywordSearch
    # =========================================================================

    async def keyword_search(
        self,
        query: str,
        limit: int,
        query_filter: Optional[QueryFilter] = None,
    ) -> List[PageRef]:
        self._ensure_initialized()
        tsquery = build_tsquery(query)
        if tsquery is None:
            return []

        condition, args = build_filter_clause(query_filter, start_index=3)
        sql = f"""
            SELECT p.url, p.title, p.site_url,
                   ts_rank(p.search_vector, to_tsquery('simple', $1)) AS score
            FROM pages p
            WHERE p.search_vector @@ to_tsquery('simple', $1) AND {condition}
            ORDER BY score DESC, p.url
            LIMIT $2
        """
        async with self.manager.get_connection() as conn:
            rows = await conn.fetch(sql, tsquery, limit, *args)
        return [
            PageRef(url=row["url"], title=row["title"], site_url=row["site_url"], score=float(row["score"]))
            for row in rows
        ]

    # =========================================================================
    # Atomic write
    # =========================================================================

    @log_performance
    async def store_processed(self, items: Sequence[ProcessedPage]) -> None:
        self._ensure_initialized()
        if not items:
            return

        async with self.manager.get_connection() as conn:
            async with conn.transaction():
                for item in items:
                    await conn.execute(UPSERT_PAGE_SQL, *self._page_args(item.page))
                    await conn.execute(
                        "DELETE FROM summaries WHERE url = $1 AND content_hash <> $2",
                        item.page.url,
                        item.page.content_hash,
                    )
                    await conn.execute(UPSERT_SUMMARY_SQL, *self._summary_args(item.summary))
                    await conn.execute(UPSERT_EMBEDDING_SQL, item.page.url, list(item.embedding))

        logger.debug(f"Stored {len(items)} processed pages")

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _page_args(page: CachedPage) -> tuple:
        return (
            page.url,
            page.site_url,
            page.content,
            page.content_hash,
            page.fetched_at,
            page.title,
            json.dumps(page.metadata),
        )

    @staticmethod
    def _summary_args(summary: Summary) -> tuple:
        return (
            summary.url,
            summary.content_hash,
            summary.site_url,
            summary.text,
            summary.signals.model_dump_json(),
            summary.language,
            summary.prompt_hash,
            summary.created_at,
        )
