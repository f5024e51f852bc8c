"""
Ingestion pipeline: fetched pages to cached pages, summaries and embeddings.

Processing happens in three stages (cache check, summarize, embed) and
everything produced is handed to the store in one ``store_processed`` call at
the end. Cancelling the pipeline anywhere before that call leaves the store
untouched.
"""

import asyncio
from typing import List, Optional, Sequence, Tuple

from webextract.index.summarizer import Summarizer
from webextract.models import CachedPage, IngestConfig, IngestResult, ProcessedPage, RawPage, Summary
from webextract.reasoning.base import Reasoner
from webextract.stores.base import PageStore
from webextract.utils.errors import ReasoningError
from webextract.utils.logging import get_logger, log_performance

logger = get_logger(__name__)


class IngestPipeline:
    """Turn raw pages into persisted, recall-ready pages."""

    def __init__(
        self,
        store: PageStore,
        summarizer: Summarizer,
        reasoner: Reasoner,
        config: Optional[IngestConfig] = None,
    ) -> None:
        self.store = store
        self.summarizer = summarizer
        self.reasoner = reasoner
        self.config = config or IngestConfig()

    @log_performance
    async def process(self, raw_pages: Sequence[RawPage]) -> IngestResult:
        """
        Process fetched pages.

        Pages whose content and summary are already cached are skipped
        without any reasoning call. A summarization or embedding failure
        marks only the affected pages as failed.

        Returns:
            Counts and the urls now held in the store
        """
        result = IngestResult()
        unique = list({page.url: page for page in raw_pages}.values())

        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def check(raw: RawPage) -> Tuple[RawPage, Optional[CachedPage], bool]:
            async with semaphore:
                return await self._check_cached(raw)

        checked = await asyncio.gather(*(check(raw) for raw in unique))

        pending: List[CachedPage] = []
        for raw, page, cached in checked:
            if page is None:
                logger.debug(f"Skipping empty page {raw.url}")
                result.pages_skipped += 1
            elif cached:
                result.pages_skipped += 1
                result.page_urls.append(page.url)
            else:
                pending.append(page)

        if not pending:
            logger.info(f"All {len(unique)} pages already cached")
            return result

        summaries, failed = await self.summarizer.summarize(pending)
        result.pages_summarized = len(summaries)
        result.failed_urls.extend(failed)

        items, embed_failed = await self._embed(pending, summaries)
        result.failed_urls.extend(embed_failed)

        await self.store.store_processed(items)

        result.pages_processed = len(items)
        result.page_urls.extend(item.page.url for item in items)
        logger.info(
            f"Ingested {result.pages_processed} pages",
            extra={
                "skipped": result.pages_skipped,
                "failed": len(result.failed_urls),
            },
        )
        return result

    async def _check_cached(self, raw: RawPage) -> Tuple[RawPage, Optional[CachedPage], bool]:
        if not raw.has_content():
            return raw, None, False

        page = CachedPage.from_raw(raw)
        if not self.config.skip_cached or self.config.force_resummarize:
            return raw, page, False

        existing = await self.store.get_page(page.url)
        if existing is None or existing.content_hash != page.content_hash:
            return raw, page, False

        summary = await self.store.get_summary(page.url, page.content_hash)
        if summary is None or summary.is_prompt_stale(self.summarizer.prompt_hash):
            return raw, page, False

        embedding = await self.store.get_embedding(page.url)
        return raw, page, embedding is not None

    async def _embed(
        self,
        pages: Sequence[CachedPage],
        summaries: Sequence[Summary],
    ) -> Tuple[List[ProcessedPage], List[str]]:
        if not summaries:
            return [], []

        try:
            vectors = await self.reasoner.embed([s.embedding_text() for s in summaries])
        except ReasoningError as e:
            logger.warning(f"Embedding {len(summaries)} summaries failed: {e}")
            return [], [s.url for s in summaries]

        by_url = {page.url: page for page in pages}
        items = [
            ProcessedPage(page=by_url[summary.url], summary=summary, embedding=vector)
            for summary, vector in zip(summaries, vectors)
        ]
        return items, []
