"""
Evidence-grounded extraction calls, one per strategy.
"""

from typing import Callable, List, Optional, Sequence, Tuple

from webextract.index.grounding import (
    DraftExtraction,
    VerifyConfig,
    gap_phrase,
    parse_extraction,
    parse_narrative,
    parse_single,
    to_extraction,
)
from webextract.index.prompts import (
    SYSTEM_PROMPT,
    format_extract_narrative_prompt,
    format_extract_prompt,
    format_extract_single_prompt,
)
from webextract.models import CachedPage, Extraction, GapQuery
from webextract.reasoning.base import Reasoner
from webextract.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


def not_found(query: str) -> Extraction:
    """Empty result whose gap can be searched as-is."""
    phrase = gap_phrase(query)
    return Extraction.not_found([GapQuery.not_in_sources(phrase, phrase)])


class Extractor:
    """Prompt, parse and verify for each extraction strategy."""

    def __init__(
        self,
        reasoner: Reasoner,
        verify_config: Optional[VerifyConfig] = None,
        max_page_chars: int = 12_000,
        hints: Optional[List[str]] = None,
    ) -> None:
        """
        Initialize the extractor.

        Args:
            reasoner: Completion capability
            verify_config: Strict mode and verification threshold
            max_page_chars: Page content is truncated to this length in prompts
            hints: Field names the claim extraction prompt should focus on
        """
        self.reasoner = reasoner
        self.verify_config = verify_config or VerifyConfig()
        self.max_page_chars = max_page_chars
        self.hints = list(hints or [])

    def _page_pairs(self, pages: Sequence[CachedPage]) -> List[Tuple[str, str]]:
        return [(page.url, page.content[: self.max_page_chars]) for page in pages]

    async def _run(
        self,
        query: str,
        pages: Sequence[CachedPage],
        prompt: str,
        parse: Callable[[object], DraftExtraction],
    ) -> Extraction:
        if not pages:
            return not_found(query)

        with LogContext(query=query, pages=len(pages)):
            data = await self.reasoner.complete_json(prompt, system=SYSTEM_PROMPT)
            extraction = to_extraction(parse(data), pages, self.verify_config)
            logger.debug(
                f"Extraction graded {extraction.grounding.value}",
                extra={"sources": len(extraction.sources), "gaps": len(extraction.gaps)},
            )
        return extraction

    async def extract(self, query: str, pages: Sequence[CachedPage]) -> Extraction:
        """
        Claim-level extraction over a group of pages.

        Raises:
            ReasoningError: If the completion fails or cannot be parsed
        """
        prompt = format_extract_prompt(query, self._page_pairs(pages), self.hints)
        return await self._run(query, pages, prompt, parse_extraction)

    async def extract_single(self, query: str, pages: Sequence[CachedPage]) -> Extraction:
        """Single best answer, or empty content with a gap."""
        prompt = format_extract_single_prompt(query, self._page_pairs(pages))
        return await self._run(query, pages, prompt, lambda data: parse_single(data, query))

    async def extract_narrative(self, query: str, pages: Sequence[CachedPage]) -> Extraction:
        prompt = format_extract_narrative_prompt(query, self._page_pairs(pages))
        return await self._run(query, pages, prompt, parse_narrative)
