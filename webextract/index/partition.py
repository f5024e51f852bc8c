"""
Query-scoped partitioning of recalled pages.

Each partition is one distinct item for the query. Grouping pages here is
also how duplicate descriptions of the same item across pages and sites are
merged: there is no separate deduplication step.
"""

from typing import Any, List, Sequence

from webextract.index.prompts import SYSTEM_PROMPT, format_partition_prompt
from webextract.models import Partition, Summary
from webextract.reasoning.base import Reasoner
from webextract.utils.errors import ReasoningError
from webextract.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PARTITION_TITLE = "All Results"
MERGE_OVERLAP_THRESHOLD = 0.8


def parse_partition_response(data: Any) -> List[Partition]:
    """Accept either a bare array or ``{"partitions": [...]}``."""
    if isinstance(data, dict):
        data = data.get("partitions", [])
    if not isinstance(data, list):
        return []

    partitions = []
    for item in data:
        if not isinstance(item, dict) or not item.get("title"):
            continue
        urls = item.get("urls") or []
        partitions.append(
            Partition(
                title=str(item["title"]),
                urls=[str(u) for u in urls if isinstance(u, str)],
                rationale=str(item.get("rationale") or ""),
            )
        )
    return partitions


def validate_partitions(partitions: Sequence[Partition], summaries: Sequence[Summary]) -> List[Partition]:
    """Drop urls that were not recalled, then partitions left empty."""
    valid = {s.url for s in summaries}
    result = []
    for partition in partitions:
        urls = list(dict.fromkeys(u for u in partition.urls if u in valid))
        if urls:
            result.append(partition.model_copy(update={"urls": urls}))
    return result


def merge_similar_partitions(
    partitions: Sequence[Partition],
    threshold: float = MERGE_OVERLAP_THRESHOLD,
) -> List[Partition]:
    """
    Fold a partition into an earlier one when most of its urls already
    belong to it.
    """
    result: List[Partition] = []
    for partition in partitions:
        target = None
        for existing in result:
            overlap = sum(1 for url in partition.urls if url in existing.urls)
            if partition.urls and overlap / len(partition.urls) >= threshold:
                target = existing
                break
        if target is None:
            result.append(partition.model_copy(update={"urls": list(partition.urls)}))
        else:
            target.urls.extend(url for url in partition.urls if url not in target.urls)
    return result


def split_large_partition(partition: Partition, max_urls: int) -> List[Partition]:
    if len(partition.urls) <= max_urls:
        return [partition]
    return [
        Partition(
            title=f"{partition.title} (Part {n})",
            urls=partition.urls[i:i + max_urls],
            rationale=partition.rationale,
        )
        for n, i in enumerate(range(0, len(partition.urls), max_urls), start=1)
    ]


def default_partition(summaries: Sequence[Summary]) -> List[Partition]:
    if not summaries:
        return []
    return [Partition(title=DEFAULT_PARTITION_TITLE, urls=[s.url for s in summaries])]


class Partitioner:
    """Group recalled summaries into partitions with one reasoning call."""

    def __init__(self, reasoner: Reasoner, max_pages_per_partition: int = 10) -> None:
        self.reasoner = reasoner
        self.max_pages_per_partition = max_pages_per_partition

    async def partition(self, query: str, summaries: Sequence[Summary]) -> List[Partition]:
        """
        Partition summaries for a query.

        A failed or unusable model response falls back to a single partition
        holding every recalled page, so recalled content is never dropped.
        """
        if not summaries:
            return []

        prompt = format_partition_prompt(query, [(s.url, s.embedding_text()) for s in summaries])
        try:
            data = await self.reasoner.complete_json(prompt, system=SYSTEM_PROMPT)
            partitions = parse_partition_response(data)
        except ReasoningError as e:
            logger.warning(f"Partitioning failed, using a single partition: {e}")
            partitions = []

        partitions = merge_similar_partitions(validate_partitions(partitions, summaries))
        if not partitions:
            partitions = default_partition(summaries)

        result = []
        for partition in partitions:
            result.extend(split_large_partition(partition, self.max_pages_per_partition))

        logger.info(f"Partitioned {len(summaries)} pages into {len(result)} items for '{query}'")
        return result
