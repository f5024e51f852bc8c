"""
Abstract capability interfaces for page storage.

Storage is split into narrow capabilities so a deployment can back each one
differently (for instance a keyword index for summaries and a vector
database for embeddings):

- ``PageCache``: canonical pages keyed by url, listed by site
- ``SummaryCache``: summaries keyed by (url, content hash), listed by site
- ``EmbeddingStore``: summary embeddings keyed by url, similarity search
- ``KeywordSearch``: keyword search over raw page content

``PageStore`` bundles all four and adds ``store_processed``, the only
operation allowed to write a page together with its derived artifacts.
"""

import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from webextract.models import CachedPage, PageRef, ProcessedPage, QueryFilter, Summary
from webextract.utils.logging import get_logger

logger = get_logger(__name__)

# Standard reciprocal rank fusion constant.
RRF_K = 60.0

STOPWORDS = frozenset(
    """
    a an and are as at be but by can do does for from has have how i in is it
    its me my of on or our that the their them there these they this to was
    we what when where which who whom why will with you your find list show
    all any get tell about if so up us he
    """.split()
)

_TOKEN_RE = re.compile(r"[\w@.+-]+", re.UNICODE)


def query_terms(query: str) -> List[str]:
    """
    Lowercased content terms of a query.

    Drops stopwords and single characters, keeps short alphanumeric terms
    such as "ai" or "5k", keeps order and removes duplicates.
    """
    seen = []
    for raw in _TOKEN_RE.findall(query.lower()):
        term = raw.strip(".-+")
        if term in STOPWORDS or term in seen:
            continue
        if len(term) > 2 or (len(term) == 2 and term.isalnum()):
            seen.append(term)
    return seen


def _term_occurs(term: str, lowered: str) -> bool:
    # Short terms must match a whole word so "ai" does not hit "said".
    if len(term) <= 2:
        return re.search(rf"\b{re.escape(term)}\b", lowered) is not None
    return term in lowered


def keyword_match_score(terms: Sequence[str], text: str) -> float:
    """Fraction of ``terms`` that occur in ``text`` (case-insensitive)."""
    if not terms:
        return 0.0
    lowered = text.lower()
    return sum(1 for t in terms if _term_occurs(t, lowered)) / len(terms)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity, 0.0 for empty, mismatched or zero vectors."""
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def rank_by_similarity(
    query_embedding: Sequence[float],
    candidates: Iterable[Tuple[str, Sequence[float]]],
    limit: int,
) -> List[Tuple[str, float]]:
    """
    Rank (key, vector) pairs by cosine similarity to the query.

    Returns:
        Up to ``limit`` (key, score) pairs, best first
    """
    keys, vectors = [], []
    for key, vector in candidates:
        if vector is not None and len(vector) == len(query_embedding):
            keys.append(key)
            vectors.append(vector)
    if not keys:
        return []

    matrix = np.asarray(vectors, dtype=np.float64)
    query = np.asarray(query_embedding, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    norms[norms == 0] = np.inf
    scores = matrix @ query / norms

    order = np.argsort(-scores, kind="stable")[:limit]
    return [(keys[i], float(scores[i])) for i in order]


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Tuple[Sequence[PageRef], float]],
    k: float = RRF_K,
) -> List[PageRef]:
    """
    Fuse ranked result lists with weighted reciprocal rank fusion.

    Each hit contributes ``weight / (k + rank + 1)``; contributions for the
    same url add up.

    Args:
        ranked_lists: (results, weight) pairs, each results list best first
        k: RRF constant

    Returns:
        Fused results, best first, with ``score`` set to the fused score
    """
    fused: Dict[str, PageRef] = {}
    scores: Dict[str, float] = {}
    for results, weight in ranked_lists:
        for rank, ref in enumerate(results):
            contribution = weight / (k + rank + 1)
            if ref.url not in fused:
                fused[ref.url] = ref
                scores[ref.url] = 0.0
            scores[ref.url] += contribution

    ordered = sorted(fused, key=lambda url: scores[url], reverse=True)
    return [fused[url].model_copy(update={"score": scores[url]}) for url in ordered]


# =============================================================================
# Capabilities
# =============================================================================


class PageCache(ABC):
    """Canonical pages keyed by url with a secondary index by site."""

    @abstractmethod
    async def get_page(self, url: str) -> Optional[CachedPage]:
        """Return the page or None if absent."""
        pass

    @abstractmethod
    async def get_pages(self, urls: Sequence[str]) -> List[CachedPage]:
        """Return the pages that exist, in the order requested."""
        pass

    @abstractmethod
    async def get_pages_for_site(self, site_url: str) -> List[CachedPage]:
        pass

    @abstractmethod
    async def store_page(self, page: CachedPage) -> bool:
        """
        Insert or replace a page.

        Returns:
            True if anything changed. Storing content with an unchanged hash
            is a no-op.
        """
        pass

    @abstractmethod
    async def delete_page(self, url: str) -> bool:
        """Remove a page and its derived artifacts."""
        pass

    @abstractmethod
    async def count_pages(self) -> int:
        pass


class SummaryCache(ABC):
    """Summaries keyed by (url, content hash) with a secondary index by site."""

    @abstractmethod
    async def get_summary(self, url: str, content_hash: str) -> Optional[Summary]:
        """Return the summary for exactly this content, or None."""
        pass

    @abstractmethod
    async def store_summary(self, summary: Summary) -> None:
        pass

    @abstractmethod
    async def get_summaries_for_site(self, site_url: str) -> List[Summary]:
        pass

    @abstractmethod
    async def get_summaries(self, query_filter: Optional[QueryFilter] = None) -> List[Summary]:
        """
        Summaries matching the current content of every page passing the filter.

        Embeddings, where stored, are attached to ``Summary.embedding``.
        """
        pass

    @abstractmethod
    async def invalidate_stale_summaries(self, current_prompt_hash: str) -> int:
        """
        Delete summaries produced by other summarization instructions.

        Returns:
            Number of summaries removed
        """
        pass


class EmbeddingStore(ABC):
    """Summary embeddings keyed by page url."""

    @abstractmethod
    async def store_embedding(self, url: str, embedding: List[float]) -> None:
        pass

    @abstractmethod
    async def get_embedding(self, url: str) -> Optional[List[float]]:
        pass

    @abstractmethod
    async def search_similar(
        self,
        embedding: List[float],
        limit: int,
        query_filter: Optional[QueryFilter] = None,
    ) -> List[PageRef]:
        """Pages ranked by cosine similarity, best first."""
        pass


class KeywordSearch(ABC):
    """Keyword search over raw page content."""

    @abstractmethod
    async def keyword_search(
        self,
        query: str,
        limit: int,
        query_filter: Optional[QueryFilter] = None,
    ) -> List[PageRef]:
        """
        Pages containing at least one content term of ``query``.

        Ranked by the fraction of terms matched, best first.
        """
        pass


class PageStore(PageCache, SummaryCache, EmbeddingStore, KeywordSearch):
    """
    Full page store.

    Callers hold urls only; all mutation goes through this interface.
    """

    async def initialize(self) -> None:
        """Prepare the backend. Default is a no-op."""
        return None

    async def close(self) -> None:
        """Release backend resources. Default is a no-op."""
        return None

    @abstractmethod
    async def store_processed(self, items: Sequence[ProcessedPage]) -> None:
        """
        Persist pages with their summaries and embeddings atomically.

        Either every item is written or none is, including when the calling
        task is cancelled mid-write.

        Raises:
            StoreError: If the write fails. Nothing is persisted.
        """
        pass
