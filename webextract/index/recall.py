"""
Hybrid recall over the page store.

Semantic search over summary embeddings and keyword search over raw page
content are fused with weighted reciprocal rank fusion. Recall errs on the
side of returning too much: every keyword match is kept even when fusion
ranks it below the cut-off. The summary ceiling applied before partitioning
is the one hard bound.
"""

from typing import List, Optional, Tuple

from webextract.models import PageRef, QueryFilter, Summary
from webextract.reasoning.base import Reasoner
from webextract.stores.base import (
    RRF_K,
    PageStore,
    keyword_match_score,
    query_terms,
    rank_by_similarity,
    reciprocal_rank_fusion,
)
from webextract.utils.logging import get_logger

logger = get_logger(__name__)

MAX_KEYWORD_WEIGHT = 0.8


def has_specific_terms(query: str) -> bool:
    """
    Whether a query names something a keyword index finds better.

    True for quoted phrases, numbers, capitalized words after the first, and
    hyphenated or snake_case tokens.
    """
    words = query.split()
    if '"' in query:
        return True
    if any(ch.isdigit() for w in words for ch in w):
        return True
    if any(w[:1].isupper() for w in words[1:]):
        return True
    return any("-" in w or "_" in w for w in words)


def calculate_weights(
    query: str,
    semantic_weight: float = 0.6,
    specific_term_boost: float = 1.5,
) -> Tuple[float, float]:
    """
    Semantic and keyword weights for a query.

    Returns:
        (semantic_weight, keyword_weight), summing to 1
    """
    keyword_weight = 1.0 - semantic_weight
    if has_specific_terms(query):
        keyword_weight = min(keyword_weight * specific_term_boost, MAX_KEYWORD_WEIGHT)
        return 1.0 - keyword_weight, keyword_weight
    return semantic_weight, keyword_weight


def summary_keyword_score(query: str, summary: Summary) -> float:
    """Keyword score of a summary, counting its text and its signals."""
    terms = query_terms(query)
    return (keyword_match_score(terms, summary.text) + keyword_match_score(terms, summary.embedding_text())) / 2


class HybridRecall:
    """Fused semantic and keyword search over a page store."""

    def __init__(
        self,
        store: PageStore,
        reasoner: Reasoner,
        semantic_weight: float = 0.6,
        specific_term_boost: float = 1.5,
        k: float = RRF_K,
    ) -> None:
        self.store = store
        self.reasoner = reasoner
        self.semantic_weight = semantic_weight
        self.specific_term_boost = specific_term_boost
        self.k = k

    async def search(
        self,
        query: str,
        limit: int,
        query_filter: Optional[QueryFilter] = None,
        semantic_weight: Optional[float] = None,
    ) -> List[PageRef]:
        """
        Hybrid search.

        Args:
            query: Search query
            limit: Number of fused results to keep
            query_filter: Optional site/date restriction
            semantic_weight: Override the configured semantic weight. Used
                as given, without the specific-term boost.

        Returns:
            The top ``limit`` fused results followed by any other page that
            matched a query term
        """
        if semantic_weight is None:
            sem_w, kw_w = calculate_weights(query, self.semantic_weight, self.specific_term_boost)
        else:
            sem_w, kw_w = semantic_weight, 1.0 - semantic_weight

        query_embedding = await self.reasoner.embed_one(query)
        semantic = await self.store.search_similar(query_embedding, limit * 2, query_filter)

        # Every keyword hit must survive, so the keyword side is not truncated
        # below the size of the pool.
        keyword_limit = max(limit * 2, await self.store.count_pages())
        keyword = await self.store.keyword_search(query, keyword_limit, query_filter)

        fused = reciprocal_rank_fusion([(semantic, sem_w), (keyword, kw_w)], self.k)
        results = fused[:limit]
        kept = {ref.url for ref in results}
        keyword_urls = {ref.url for ref in keyword}
        results.extend(ref for ref in fused[limit:] if ref.url in keyword_urls and ref.url not in kept)

        logger.debug(
            f"Hybrid recall: {len(semantic)} semantic, {len(keyword)} keyword, {len(results)} kept",
            extra={"semantic_weight": sem_w, "keyword_weight": kw_w},
        )
        return results

    async def ranked_summaries(
        self,
        query: str,
        max_summaries: int,
        query_filter: Optional[QueryFilter] = None,
        summaries: Optional[List[Summary]] = None,
    ) -> List[Summary]:
        """
        Summaries to hand to the partitioner.

        Under the ceiling every summary passes. Above it, embedding
        similarity and keyword matches are fused and only the top
        ``max_summaries`` are kept, so keyword hits compete for slots inside
        the ceiling instead of being added on top of it.
        """
        if summaries is None:
            summaries = await self.store.get_summaries(query_filter)
        if len(summaries) <= max_summaries:
            return summaries

        sem_w, kw_w = calculate_weights(query, self.semantic_weight, self.specific_term_boost)
        query_embedding = await self.reasoner.embed_one(query)
        by_url = {s.url: s for s in summaries}
        semantic = [
            PageRef(url=url, site_url=by_url[url].site_url, score=score)
            for url, score in rank_by_similarity(
                query_embedding,
                ((s.url, s.embedding) for s in summaries if s.embedding is not None),
                len(summaries),
            )
        ]

        keyword_hits = await self.store.keyword_search(query, len(summaries), query_filter)
        keyword = [ref for ref in keyword_hits if ref.url in by_url]
        seen = {ref.url for ref in keyword}
        scored = [(summary_keyword_score(query, s), s) for s in summaries if s.url not in seen]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        keyword.extend(PageRef(url=s.url, site_url=s.site_url, score=score) for score, s in scored if score > 0)

        fused = reciprocal_rank_fusion([(semantic, sem_w), (keyword, kw_w)], self.k)
        selected = [ref.url for ref in fused[:max_summaries]]

        logger.info(
            f"Ranked recall kept {len(selected)} of {len(summaries)} summaries",
            extra={"ceiling": max_summaries, "keyword_matches": len(keyword)},
        )
        return [by_url[url] for url in selected]
