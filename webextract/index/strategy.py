"""
Query strategy classification.

Lexical heuristics decide most queries. The reasoning capability is only
asked when they are inconclusive, and Collection is the fallback when that
call fails.
"""

from dataclasses import dataclass
from typing import Optional

from webextract.index.prompts import SYSTEM_PROMPT, format_classify_query_prompt
from webextract.models import ExtractionStrategy
from webextract.reasoning.base import Reasoner
from webextract.utils.errors import ReasoningError
from webextract.utils.logging import get_logger

logger = get_logger(__name__)

COLLECTION_KEYWORDS = (
    "find all", "list of", "list all", "show all", "all the", "every",
    "opportunities", "services", "programs", "events", "jobs", "positions",
    "listings", "items", "products", "articles", "posts",
)

SINGULAR_KEYWORDS = (
    "what is the", "what's the", "where is the", "where's the", "when is the",
    "when's the", "who is the", "who's the", "phone", "email", "address",
    "contact", "location", "hours", "price", "cost", "date", "time", "deadline",
)

NARRATIVE_KEYWORDS = (
    "summarize", "describe", "explain", "tell me about", "what does",
    "who does", "how does", "overview", "about", "mission", "history",
    "background",
)

QUESTION_WORDS = ("what", "where", "when", "who", "how")


def classify_by_heuristics(query: str) -> Optional[ExtractionStrategy]:
    """
    Keyword vote. The category with a strictly higher count wins; ties and
    zero matches are inconclusive.
    """
    lower = query.lower()
    scores = {
        ExtractionStrategy.COLLECTION: sum(1 for k in COLLECTION_KEYWORDS if k in lower),
        ExtractionStrategy.SINGULAR: sum(1 for k in SINGULAR_KEYWORDS if k in lower),
        ExtractionStrategy.NARRATIVE: sum(1 for k in NARRATIVE_KEYWORDS if k in lower),
    }
    best = max(scores.values())
    if best == 0:
        return None
    winners = [strategy for strategy, score in scores.items() if score == best]
    return winners[0] if len(winners) == 1 else None


@dataclass
class QueryAnalysis:
    """Structural features of a query."""
    is_question: bool
    uses_plural: bool
    mentions_specific_field: bool
    word_count: int

    @classmethod
    def analyze(cls, query: str) -> "QueryAnalysis":
        lower = query.lower()
        words = query.split()
        return cls(
            is_question=query.rstrip().endswith("?") or lower.startswith(QUESTION_WORDS),
            uses_plural=any(
                w.endswith("ies") or (w.endswith("s") and not w.endswith("ss") and len(w) > 3)
                for w in words
            ),
            mentions_specific_field=any(k in lower for k in SINGULAR_KEYWORDS),
            word_count=len(words),
        )

    def suggested_strategy(self) -> Optional[ExtractionStrategy]:
        if self.mentions_specific_field and self.word_count <= 5:
            return ExtractionStrategy.SINGULAR
        if self.is_question and self.uses_plural:
            return ExtractionStrategy.COLLECTION
        if self.is_question and not self.uses_plural and not self.mentions_specific_field:
            return ExtractionStrategy.NARRATIVE
        return None


def classify_query(query: str) -> Optional[ExtractionStrategy]:
    """Heuristic classification: keyword vote, then structure."""
    strategy = classify_by_heuristics(query)
    if strategy is not None:
        return strategy
    return QueryAnalysis.analyze(query).suggested_strategy()


class StrategyClassifier:
    """Heuristics first, reasoning capability as fallback."""

    def __init__(self, reasoner: Reasoner) -> None:
        self.reasoner = reasoner

    async def classify(self, query: str) -> ExtractionStrategy:
        strategy = classify_query(query)
        if strategy is not None:
            logger.debug(f"Heuristic strategy for '{query}': {strategy.value}")
            return strategy

        try:
            data = await self.reasoner.complete_json(
                format_classify_query_prompt(query), system=SYSTEM_PROMPT
            )
        except ReasoningError as e:
            logger.warning(f"Strategy classification failed, defaulting to collection: {e}")
            return ExtractionStrategy.COLLECTION

        value = str(data.get("strategy", "")).strip().lower() if isinstance(data, dict) else ""
        try:
            strategy = ExtractionStrategy(value)
        except ValueError:
            logger.warning(f"Unknown strategy '{value}' from model, defaulting to collection")
            return ExtractionStrategy.COLLECTION

        logger.debug(f"Model strategy for '{query}': {strategy.value}")
        return strategy
