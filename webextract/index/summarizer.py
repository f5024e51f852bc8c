"""
Recall-optimized page summarization.

Pages are packed into batches bounded by a content-length budget, one
completion call per batch. Batches run in parallel.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

from webextract.index.prompts import SYSTEM_PROMPT, format_summarize_prompt, summarize_prompt_hash
from webextract.models import CachedPage, RecallSignals, Summary
from webextract.reasoning.base import Reasoner
from webextract.utils.errors import ReasoningError
from webextract.utils.logging import get_logger, log_performance

logger = get_logger(__name__)

SIGNAL_FIELDS = ("offers", "asks", "calls_to_action", "entities")


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def parse_signals(data: Any) -> RecallSignals:
    if not isinstance(data, dict):
        return RecallSignals()
    return RecallSignals(**{name: _string_list(data.get(name)) for name in SIGNAL_FIELDS})


class Summarizer:
    """Turn cached pages into summaries tagged with the instruction hash."""

    def __init__(
        self,
        reasoner: Reasoner,
        batch_chars: int = 24_000,
        max_page_chars: int = 8_000,
        max_parallel: int = 4,
    ) -> None:
        """
        Initialize the summarizer.

        Args:
            reasoner: Completion capability
            batch_chars: Content-length budget per batch
            max_page_chars: Page content is truncated to this length
            max_parallel: Batches in flight at once
        """
        self.reasoner = reasoner
        self.batch_chars = batch_chars
        self.max_page_chars = min(max_page_chars, batch_chars)
        self.max_parallel = max_parallel

    @property
    def prompt_hash(self) -> str:
        return summarize_prompt_hash()

    def plan_batches(self, pages: Sequence[CachedPage]) -> List[List[CachedPage]]:
        """
        Pack pages into batches whose truncated content fits the budget.

        A page never spans batches. Order is preserved.
        """
        batches: List[List[CachedPage]] = []
        current: List[CachedPage] = []
        used = 0
        for page in pages:
            size = min(len(page.content), self.max_page_chars)
            if current and used + size > self.batch_chars:
                batches.append(current)
                current, used = [], 0
            current.append(page)
            used += size
        if current:
            batches.append(current)
        return batches

    @log_performance
    async def summarize(self, pages: Sequence[CachedPage]) -> Tuple[List[Summary], List[str]]:
        """
        Summarize pages.

        A failed batch fails only its own pages.

        Returns:
            (summaries, urls of pages that could not be summarized)
        """
        if not pages:
            return [], []

        batches = self.plan_batches(pages)
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def run(batch: List[CachedPage]) -> Tuple[List[Summary], List[str]]:
            async with semaphore:
                try:
                    return await self.summarize_batch(batch)
                except ReasoningError as e:
                    logger.warning(f"Summary batch of {len(batch)} pages failed: {e}")
                    return [], [page.url for page in batch]

        results = await asyncio.gather(*(run(batch) for batch in batches))

        summaries: List[Summary] = []
        failed: List[str] = []
        for batch_summaries, batch_failed in results:
            summaries.extend(batch_summaries)
            failed.extend(batch_failed)

        logger.info(
            f"Summarized {len(summaries)} pages in {len(batches)} batches",
            extra={"failed": len(failed)},
        )
        return summaries, failed

    async def summarize_batch(self, batch: Sequence[CachedPage]) -> Tuple[List[Summary], List[str]]:
        """
        Summarize one batch with a single completion call.

        Raises:
            ReasoningError: If the call fails or returns unparseable output
        """
        prompt = format_summarize_prompt(
            [(page.url, page.content[: self.max_page_chars]) for page in batch]
        )
        data = await self.reasoner.complete_json(prompt, system=SYSTEM_PROMPT)
        entries = self._entries_by_url(data, batch)

        prompt_hash = self.prompt_hash
        summaries, missing = [], []
        for page in batch:
            entry = entries.get(page.url)
            if entry is None:
                missing.append(page.url)
                continue
            summaries.append(self._build_summary(page, entry, prompt_hash))

        if missing:
            logger.warning(f"Model returned no summary for {len(missing)} pages")
        return summaries, missing

    @staticmethod
    def _entries_by_url(data: Any, batch: Sequence[CachedPage]) -> Dict[str, dict]:
        if isinstance(data, dict) and "summaries" in data:
            items = data["summaries"]
        elif isinstance(data, list):
            items = data
        elif isinstance(data, dict) and "summary" in data:
            items = [data]
        else:
            items = []

        items = [item for item in items if isinstance(item, dict)]
        if len(batch) == 1 and len(items) == 1 and "url" not in items[0]:
            return {batch[0].url: items[0]}
        return {str(item.get("url", "")): item for item in items}

    @staticmethod
    def _build_summary(page: CachedPage, entry: dict, prompt_hash: str) -> Summary:
        text = str(entry.get("summary") or "").strip()
        if not text:
            text = " ".join(filter(None, [page.title, page.content[:300]])).strip()
        language: Optional[str] = entry.get("language") or None
        return Summary(
            url=page.url,
            site_url=page.site_url,
            text=text,
            signals=parse_signals(entry.get("signals")),
            language=str(language) if language else None,
            prompt_hash=prompt_hash,
            content_hash=page.content_hash,
        )
