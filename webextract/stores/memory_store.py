"""
In-memory page store.

Writes never await, so under asyncio each write is atomic with respect to
other tasks and to cancellation.
"""

from typing import Dict, List, Optional, Sequence

from webextract.models import CachedPage, PageRef, ProcessedPage, QueryFilter, Summary, filter_allows
from webextract.stores.base import PageStore, keyword_match_score, query_terms, rank_by_similarity
from webextract.utils.logging import get_logger

logger = get_logger(__name__)


class InMemoryStore(PageStore):
    """Dict-backed implementation of every store capability."""

    def __init__(self) -> None:
        self._pages: Dict[str, CachedPage] = {}
        self._summaries: Dict[str, Summary] = {}
        self._embeddings: Dict[str, List[float]] = {}

    # =========================================================================
    # PageCache
    # =========================================================================

    async def get_page(self, url: str) -> Optional[CachedPage]:
        return self._pages.get(url)

    async def get_pages(self, urls: Sequence[str]) -> List[CachedPage]:
        return [self._pages[url] for url in dict.fromkeys(urls) if url in self._pages]

    async def get_pages_for_site(self, site_url: str) -> List[CachedPage]:
        return [p for p in self._pages.values() if p.site_url == site_url]

    async def store_page(self, page: CachedPage) -> bool:
        existing = self._pages.get(page.url)
        if existing is not None and existing.content_hash == page.content_hash:
            return False
        self._pages[page.url] = page
        return True

    async def delete_page(self, url: str) -> bool:
        self._summaries.pop(url, None)
        self._embeddings.pop(url, None)
        return self._pages.pop(url, None) is not None

    async def count_pages(self) -> int:
        return len(self._pages)

    # =========================================================================
    # SummaryCache
    # =========================================================================

    async def get_summary(self, url: str, content_hash: str) -> Optional[Summary]:
        summary = self._summaries.get(url)
        if summary is None or summary.content_hash != content_hash:
            return None
        return summary

    async def store_summary(self, summary: Summary) -> None:
        self._summaries[summary.url] = summary

    async def get_summaries_for_site(self, site_url: str) -> List[Summary]:
        return [s for s in self._summaries.values() if s.site_url == site_url]

    async def get_summaries(self, query_filter: Optional[QueryFilter] = None) -> List[Summary]:
        results = []
        for url, summary in self._summaries.items():
            page = self._pages.get(url)
            if page is None or summary.content_hash != page.content_hash:
                continue
            if not filter_allows(query_filter, page):
                continue
            results.append(summary.model_copy(update={"embedding": self._embeddings.get(url)}))
        return results

    async def invalidate_stale_summaries(self, current_prompt_hash: str) -> int:
        stale = [url for url, s in self._summaries.items() if s.is_prompt_stale(current_prompt_hash)]
        for url in stale:
            del self._summaries[url]
        if stale:
            logger.info(f"Invalidated {len(stale)} stale summaries")
        return len(stale)

    # =========================================================================
    # EmbeddingStore
    # =========================================================================

    async def store_embedding(self, url: str, embedding: List[float]) -> None:
        self._embeddings[url] = list(embedding)

    async def get_embedding(self, url: str) -> Optional[List[float]]:
        return self._embeddings.get(url)

    async def search_similar(
        self,
        embedding: List[float],
        limit: int,
        query_filter: Optional[QueryFilter] = None,
    ) -> List[PageRef]:
        candidates = (
            (url, vector)
            for url, vector in self._embeddings.items()
            if url in self._pages and filter_allows(query_filter, self._pages[url])
        )
        return [
            self._pages[url].to_ref(score)
            for url, score in rank_by_similarity(embedding, candidates, limit)
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
        terms = query_terms(query)
        if not terms:
            return []

        hits = []
        for page in self._pages.values():
            if not filter_allows(query_filter, page):
                continue
            score = keyword_match_score(terms, f"{page.title or ''}\n{page.content}")
            if score > 0:
                hits.append(page.to_ref(score))

        hits.sort(key=lambda ref: ref.score, reverse=True)
        return hits[:limit]

    # =========================================================================
    # Atomic write
    # =========================================================================

    async def store_processed(self, items: Sequence[ProcessedPage]) -> None:
        # No awaits below: the batch lands in one step.
        for item in items:
            self._pages[item.page.url] = item.page
            self._summaries[item.page.url] = item.summary.model_copy(update={"embedding": None})
            self._embeddings[item.page.url] = list(item.embedding)

    def snapshot(self) -> Dict[str, Dict]:
        """Copy of the raw state, for tests comparing before and after."""
        return {
            "pages": {k: v.model_dump() for k, v in self._pages.items()},
            "summaries": {k: v.model_dump() for k, v in self._summaries.items()},
            "embeddings": {k: list(v) for k, v in self._embeddings.items()},
        }
