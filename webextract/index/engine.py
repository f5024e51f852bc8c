"""
The Index: a flat, queryable pool of pages across every ingested site.

Sites are metadata used for filtering, not structural units, so
corroboration and conflicts across sites surface naturally during
partitioning.

Example:
    index = Index(InMemoryStore(), OpenAIReasoner(), HttpIngestor())
    await index.ingest("https://example.org")
    extractions = await index.extract("volunteer opportunities")
"""

import asyncio
import time
from typing import AsyncIterator, List, Optional, Sequence, Union

from webextract.config import Settings, get_settings
from webextract.index.extract import Extractor, not_found
from webextract.index.grounding import VerifyConfig
from webextract.index.ingest import IngestPipeline
from webextract.index.partition import Partitioner
from webextract.index.prompts import SYSTEM_PROMPT, format_expand_query_prompt
from webextract.index.recall import HybridRecall
from webextract.index.strategy import StrategyClassifier
from webextract.index.summarizer import Summarizer
from webextract.ingestors.base import Ingestor
from webextract.ingestors.governor import RateLimitedIngestor
from webextract.ingestors.http_ingestor import HttpIngestor
from webextract.ingestors.validated import ValidatedIngestor
from webextract.models import (
    CachedPage,
    DiscoverOptions,
    Extraction,
    ExtractionStrategy,
    GapQuery,
    GapType,
    IngestConfig,
    IngestResult,
    InvestigationPlan,
    InvestigationStep,
    PageRef,
    Partition,
    ProcessedPage,
    QueryFilter,
    StepResult,
    Summary,
)
from webextract.reasoning.base import Reasoner
from webextract.reasoning.openai_reasoner import OpenAIReasoner
from webextract.security.url_validator import UrlValidator
from webextract.stores.base import PageStore
from webextract.stores.connection_manager import DatabaseConnectionManager
from webextract.stores.memory_store import InMemoryStore
from webextract.stores.postgres_store import PostgresPageStore
from webextract.utils.cancellation import run_cancellable
from webextract.utils.errors import (
    ConfigurationError,
    ExtractionError,
    FetchError,
    PartitionError,
    ReasoningError,
    StoreError,
    ValidationError,
)
from webextract.utils.logging import LogContext, get_logger, log_performance

logger = get_logger(__name__)

SINGULAR_RECALL_LIMIT = 10
NARRATIVE_RECALL_LIMIT = 20
GAP_SEARCH_LIMIT = 10
STRUCTURAL_GAP_SEARCH_LIMIT = 15


class Index:
    """
    Extraction engine over a page store.

    Collaborators are injected: a page store, a reasoning capability and,
    for ingestion, an ingestor. The ingestor is wrapped in a
    ``ValidatedIngestor`` unless it already is one.
    """

    def __init__(
        self,
        store: PageStore,
        reasoner: Reasoner,
        ingestor: Optional[Ingestor] = None,
        settings: Optional[Settings] = None,
        validator: Optional[UrlValidator] = None,
        hints: Optional[List[str]] = None,
    ) -> None:
        """
        Initialize the index.

        Args:
            store: Page store holding pages, summaries and embeddings
            reasoner: Completion and embedding capability
            ingestor: Fetch backend, required only for ingestion
            settings: Engine settings (defaults to the global settings)
            validator: URL validator for the ingestor wrapper
            hints: Field names claim extraction should focus on
        """
        self.settings = settings or get_settings()
        self.store = store
        self.reasoner = reasoner

        if ingestor is not None and not isinstance(ingestor, ValidatedIngestor):
            ingestor = ValidatedIngestor(ingestor, validator or UrlValidator(self.settings.allow_hosts))
        self.ingestor = ingestor

        self.summarizer = Summarizer(
            reasoner,
            batch_chars=self.settings.summary_batch_chars,
            max_page_chars=self.settings.summary_max_page_chars,
        )
        self.recall = HybridRecall(
            store,
            reasoner,
            semantic_weight=self.settings.semantic_weight,
            specific_term_boost=self.settings.specific_term_boost,
        )
        self.classifier = StrategyClassifier(reasoner)
        self.partitioner = Partitioner(reasoner, self.settings.max_pages_per_partition)
        self.extractor = Extractor(
            reasoner,
            VerifyConfig(
                strict_mode=self.settings.strict_mode,
                verified_threshold=self.settings.verified_threshold,
            ),
            hints=hints,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Index":
        """
        Build an index with the default production collaborators.

        Uses the HTTP ingestor behind the rate governor, the OpenAI reasoner
        and the store selected by ``store_type``.
        """
        settings = settings or get_settings()
        if settings.store_type == "postgres":
            store: PageStore = PostgresPageStore(DatabaseConnectionManager(settings.database_url))
        else:
            store = InMemoryStore()

        ingestor = RateLimitedIngestor(
            HttpIngestor(
                user_agent=settings.user_agent,
                timeout=settings.fetch_timeout,
                respect_robots=settings.respect_robots,
            ),
            requests_per_second=settings.requests_per_second,
            burst=settings.burst,
        )
        return cls(store, OpenAIReasoner(), ingestor, settings=settings)

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        if self.ingestor is not None:
            await self.ingestor.close()
        await self.reasoner.close()
        await self.store.close()

    async def __aenter__(self) -> "Index":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _require_ingestor(self) -> Ingestor:
        if self.ingestor is None:
            raise ConfigurationError("Index was created without an ingestor")
        return self.ingestor

    def _pipeline(self, config: Optional[IngestConfig]) -> IngestPipeline:
        config = config or IngestConfig(concurrency=self.settings.ingest_concurrency)
        return IngestPipeline(self.store, self.summarizer, self.reasoner, config)

    # =========================================================================
    # Ingestion
    # =========================================================================

    @log_performance
    async def ingest(
        self,
        root: str,
        limit: int = 100,
        options: Optional[DiscoverOptions] = None,
        config: Optional[IngestConfig] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> IngestResult:
        """
        Discover pages from a root url and add them to the index.

        Args:
            root: Starting url
            limit: Maximum pages to discover
            options: Discovery options (``limit`` overrides ``options.limit``)
            config: Per-call ingestion behaviour
            cancel: Event that aborts the call when set

        Returns:
            Urls held for this site and processing counts

        Raises:
            ValidationError: If the root is rejected. Nothing is fetched.
            FetchError: If the root itself cannot be fetched
            OperationCancelledError: If ``cancel`` was set. Nothing is persisted.
        """
        ingestor = self._require_ingestor()
        options = (options or DiscoverOptions()).model_copy(update={"limit": limit})

        async def run() -> IngestResult:
            with LogContext(site=root):
                pages = await ingestor.discover(root, options)
                logger.info(f"Discovered {len(pages)} pages from {root}")
                return await self._pipeline(config).process(pages)

        return await run_cancellable(run(), cancel, "ingest")

    @log_performance
    async def ingest_urls(
        self,
        urls: Sequence[str],
        config: Optional[IngestConfig] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> IngestResult:
        """
        Fetch known urls and add them to the index.

        Urls that are rejected or cannot be fetched are reported in
        ``failed_urls``.
        """
        ingestor = self._require_ingestor()

        async def run() -> IngestResult:
            pages = await ingestor.fetch_specific(list(urls))
            result = await self._pipeline(config).process(pages)
            fetched = {page.url for page in pages}
            result.failed_urls.extend(url for url in urls if url not in fetched)
            return result

        return await run_cancellable(run(), cancel, "ingest_urls")

    async def refresh(self, site_url: str) -> int:
        """
        Re-derive missing or stale summaries for every cached page of a site.

        Returns:
            Number of pages re-summarized
        """
        pages = await self.store.get_pages_for_site(site_url)
        stale = []
        for page in pages:
            summary = await self.store.get_summary(page.url, page.content_hash)
            if summary is None or summary.is_prompt_stale(self.summarizer.prompt_hash):
                stale.append(page)
        return await self._resummarize(stale)

    async def _resummarize(self, pages: Sequence[CachedPage]) -> int:
        if not pages:
            return 0
        summaries, failed = await self.summarizer.summarize(pages)
        if failed:
            logger.warning(f"Could not re-summarize {len(failed)} pages")
        if not summaries:
            return 0

        vectors = await self.reasoner.embed([s.embedding_text() for s in summaries])
        by_url = {page.url: page for page in pages}
        await self.store.store_processed(
            [
                ProcessedPage(page=by_url[s.url], summary=s, embedding=v)
                for s, v in zip(summaries, vectors)
            ]
        )
        logger.info(f"Re-summarized {len(summaries)} stale pages")
        return len(summaries)

    async def _fresh_summaries(self, query_filter: Optional[QueryFilter]) -> List[Summary]:
        """Summaries for recall, re-deriving any made with old instructions."""
        summaries = await self.store.get_summaries(query_filter)
        prompt_hash = self.summarizer.prompt_hash
        stale = [s.url for s in summaries if s.is_prompt_stale(prompt_hash)]
        if not stale:
            return summaries

        logger.info(f"Refreshing {len(stale)} summaries made with old instructions")
        await self._resummarize(await self.store.get_pages(stale))
        return [
            s for s in await self.store.get_summaries(query_filter)
            if not s.is_prompt_stale(prompt_hash)
        ]

    async def _recall_search(
        self,
        query: str,
        limit: int,
        query_filter: Optional[QueryFilter],
        semantic_weight: Optional[float] = None,
    ) -> List[PageRef]:
        """Hybrid search over summaries brought up to date first."""
        await self._fresh_summaries(query_filter)
        return await self.recall.search(query, limit, query_filter, semantic_weight=semantic_weight)

    # =========================================================================
    # Primitives
    # =========================================================================

    async def search(
        self,
        query: str,
        limit: int = 10,
        query_filter: Optional[QueryFilter] = None,
    ) -> List[PageRef]:
        """
        PRIMITIVE: hybrid search.

        Returns the top ``limit`` results plus every other keyword match.
        """
        return await self._recall_search(query, limit, query_filter)

    async def read(self, urls: Sequence[str]) -> List[CachedPage]:
        """PRIMITIVE: full cached pages for the given urls, in order, absent ones omitted."""
        return await self.store.get_pages(list(urls))

    async def extract_from(
        self,
        query: str,
        pages: Sequence[Union[CachedPage, str]],
    ) -> List[Extraction]:
        """
        PRIMITIVE: extract from caller-chosen pages, skipping recall.

        Args:
            query: Extraction query
            pages: Cached pages, or urls to read from the store
        """
        urls = [p for p in pages if isinstance(p, str)]
        resolved = {page.url: page for page in await self.read(urls)} if urls else {}
        selected = [
            p if isinstance(p, CachedPage) else resolved[p]
            for p in pages
            if isinstance(p, CachedPage) or p in resolved
        ]
        return [await self.extractor.extract(query, selected)]

    async def search_for_gap(
        self,
        gap: Union[GapQuery, str],
        limit: int = GAP_SEARCH_LIMIT,
        query_filter: Optional[QueryFilter] = None,
    ) -> List[PageRef]:
        """
        PRIMITIVE: search for the information a gap names.

        The gap's phrase is used as-is. Entity-like gaps lean on keyword
        search.
        """
        query = (gap.query or gap.field) if isinstance(gap, GapQuery) else gap
        weight = GapType.classify(query).recommended_semantic_weight
        return await self._recall_search(query, limit, query_filter, semantic_weight=weight)

    async def expand_query(self, query: str) -> List[str]:
        """Related search terms for a query. Empty when the model call fails."""
        try:
            data = await self.reasoner.complete_json(format_expand_query_prompt(query), system=SYSTEM_PROMPT)
        except ReasoningError as e:
            logger.warning(f"Query expansion failed: {e}")
            return []
        terms = data.get("terms", []) if isinstance(data, dict) else data
        if not isinstance(terms, list):
            return []
        return [str(t).strip() for t in terms if str(t).strip()]

    async def classify(self, query: str) -> ExtractionStrategy:
        return await self.classifier.classify(query)

    # =========================================================================
    # Extraction
    # =========================================================================

    @log_performance
    async def extract(
        self,
        query: str,
        query_filter: Optional[QueryFilter] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[Extraction]:
        """
        Full pipeline: classify, recall, then extract by strategy.

        Never fails because nothing was found: an empty result carries the
        gaps instead.

        Raises:
            ExtractionError: If every partition of a collection query failed
            OperationCancelledError: If ``cancel`` was set
        """
        async def run() -> List[Extraction]:
            with LogContext(query=query):
                strategy = await self.classify(query)
                logger.info(f"Extracting '{query}' with {strategy.value} strategy")
                if strategy == ExtractionStrategy.COLLECTION:
                    return await self._extract_collection(query, query_filter)
                if strategy == ExtractionStrategy.SINGULAR:
                    return [await self._extract_singular(query, query_filter)]
                return [await self._extract_narrative(query, query_filter)]

        return await run_cancellable(run(), cancel, "extract")

    async def extract_stream(
        self,
        query: str,
        query_filter: Optional[QueryFilter] = None,
    ) -> AsyncIterator[Extraction]:
        """
        Yield collection extractions one partition at a time.

        Partitions that fail are logged and skipped.
        """
        partitions = await self._recall_and_partition(query, query_filter)
        if not partitions:
            yield not_found(query)
            return

        for partition in partitions:
            try:
                extraction = await self._extract_partition(query, partition)
            except PartitionError as e:
                logger.warning(e.message)
                continue
            yield extraction

    async def _recall_and_partition(
        self,
        query: str,
        query_filter: Optional[QueryFilter],
    ) -> List[Partition]:
        summaries = await self._fresh_summaries(query_filter)
        summaries = await self.recall.ranked_summaries(
            query,
            self.settings.max_summaries_for_partition,
            query_filter,
            summaries=summaries,
        )
        return await self.partitioner.partition(query, summaries)

    async def _extract_partition(self, query: str, partition: Partition) -> Extraction:
        try:
            pages = await self.store.get_pages(partition.urls)
            return await self.extractor.extract(query, pages)
        except (ReasoningError, StoreError) as e:
            raise PartitionError(partition.title, str(e)) from e

    async def _extract_collection(
        self,
        query: str,
        query_filter: Optional[QueryFilter],
    ) -> List[Extraction]:
        partitions = await self._recall_and_partition(query, query_filter)
        if not partitions:
            return [not_found(query)]

        results = await asyncio.gather(
            *(self._extract_partition(query, partition) for partition in partitions),
            return_exceptions=True,
        )
        extractions = []
        for result in results:
            if isinstance(result, PartitionError):
                logger.warning(result.message)
            elif isinstance(result, BaseException):
                raise result
            else:
                extractions.append(result)
        if not extractions:
            raise ExtractionError(
                f"All {len(partitions)} partitions failed", {"query": query}
            )

        logger.info(f"Collection extraction complete: {len(extractions)} of {len(partitions)} partitions")
        return extractions

    async def _recall_pages(
        self,
        query: str,
        limit: int,
        query_filter: Optional[QueryFilter],
    ) -> List[CachedPage]:
        refs = await self._recall_search(query, limit, query_filter)
        return await self.store.get_pages([ref.url for ref in refs])

    async def _extract_singular(self, query: str, query_filter: Optional[QueryFilter]) -> Extraction:
        pages = await self._recall_pages(query, SINGULAR_RECALL_LIMIT, query_filter)
        return await self.extractor.extract_single(query, pages)

    async def _extract_narrative(self, query: str, query_filter: Optional[QueryFilter]) -> Extraction:
        pages = await self._recall_pages(query, NARRATIVE_RECALL_LIMIT, query_filter)
        return await self.extractor.extract_narrative(query, pages)

    # =========================================================================
    # Investigation
    # =========================================================================

    def plan_investigation(self, extraction: Extraction) -> InvestigationPlan:
        """
        Suggest one search step per searchable gap.

        This only plans. Running steps, and deciding how many to run, is up
        to the caller.
        """
        steps = []
        for gap in extraction.gaps:
            if not gap.is_searchable():
                continue
            gap_type = GapType.classify(gap.query)
            steps.append(
                InvestigationStep(
                    field=gap.field,
                    original_query=gap.query,
                    action="hybrid_search",
                    query=gap.query,
                    semantic_weight=gap_type.recommended_semantic_weight,
                    limit=STRUCTURAL_GAP_SEARCH_LIMIT if gap_type == GapType.STRUCTURAL else GAP_SEARCH_LIMIT,
                    rationale=f"{gap_type.value} gap",
                )
            )
        return InvestigationPlan(steps=steps)

    async def execute_step(
        self,
        step: InvestigationStep,
        query_filter: Optional[QueryFilter] = None,
    ) -> StepResult:
        """
        Run one investigation step.

        Failures are reported in the result rather than raised.
        """
        start = time.monotonic()
        try:
            if step.action == "fetch_url":
                if not step.url:
                    raise ValidationError("fetch_url step has no url")
                result = await self.ingest_urls([step.url])
                found = [url for url in result.page_urls if url == step.url]
            else:
                refs = await self._recall_search(
                    step.query, step.limit, query_filter, semantic_weight=step.semantic_weight
                )
                found = [ref.url for ref in refs]
        except (ValidationError, FetchError, ReasoningError, StoreError, ConfigurationError) as e:
            logger.warning(f"Investigation step for '{step.field}' failed: {e}")
            return StepResult(
                step=step,
                duration_ms=int((time.monotonic() - start) * 1000),
                error=str(e),
            )

        return StepResult(
            step=step,
            pages_found=found,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def pages_for_step(self, result: StepResult) -> List[CachedPage]:
        return await self.read(result.pages_found)
