"""
Tests for query-scoped partitioning.
"""

import pytest

from tests.conftest import make_summary
from webextract.index.partition import (
    DEFAULT_PARTITION_TITLE,
    Partitioner,
    merge_similar_partitions,
    parse_partition_response,
    split_large_partition,
    validate_partitions,
)
from webextract.models import CachedPage, Partition
from webextract.reasoning.mock_reasoner import MockReasoner
from webextract.utils.errors import CompletionError

PARTITION_MARKER = "Given a query and page summaries"


def summaries(n):
    return [make_summary(CachedPage(url=f"https://a.org/{i}", content=f"Page {i}")) for i in range(n)]


def url(i):
    return f"https://a.org/{i}"


class TestPartitionHelpers:
    """Test parsing, validation, merging and splitting."""

    def test_parse_wrapped_and_bare(self):
        """Test both response shapes are accepted and malformed items skipped."""
        wrapped = {"partitions": [{"title": "A", "urls": [url(0)], "rationale": "r"}, {"urls": [url(1)]}]}
        bare = [{"title": "B", "urls": [url(1), 7]}]

        assert [p.title for p in parse_partition_response(wrapped)] == ["A"]
        assert parse_partition_response(bare)[0].urls == [url(1)]
        assert parse_partition_response("nonsense") == []

    def test_validate_drops_unknown_urls(self):
        """Test urls that were not recalled are removed, then empty partitions."""
        partitions = [
            Partition(title="A", urls=[url(0), "https://hallucinated.org/", url(0)]),
            Partition(title="B", urls=["https://hallucinated.org/"]),
        ]

        valid = validate_partitions(partitions, summaries(2))

        assert len(valid) == 1
        assert valid[0].urls == [url(0)]

    def test_merge_high_overlap(self):
        """Test a partition mostly contained in an earlier one is folded into it."""
        partitions = [
            Partition(title="Food Drive", urls=[url(i) for i in range(5)]),
            Partition(title="Spring Food Drive", urls=[url(i) for i in range(1, 5)] + [url(9)]),
            Partition(title="Gala", urls=[url(7), url(8)]),
        ]

        merged = merge_similar_partitions(partitions)

        assert [p.title for p in merged] == ["Food Drive", "Gala"]
        assert merged[0].urls == [url(i) for i in range(5)] + [url(9)]
        assert partitions[0].urls == [url(i) for i in range(5)]

    def test_split_large(self):
        """Test oversized partitions are split into numbered parts."""
        partition = Partition(title="Jobs", urls=[url(i) for i in range(23)])

        parts = split_large_partition(partition, 10)

        assert [p.title for p in parts] == ["Jobs (Part 1)", "Jobs (Part 2)", "Jobs (Part 3)"]
        assert [len(p.urls) for p in parts] == [10, 10, 3]
        assert split_large_partition(Partition(title="X", urls=[url(0)]), 10)[0].title == "X"


class TestPartitioner:
    """Test the partitioner end to end."""

    @pytest.mark.asyncio
    async def test_model_partitions(self):
        """Test model partitions are validated and returned."""
        reasoner = MockReasoner().on(PARTITION_MARKER, {
            "partitions": [
                {"title": "Food Drive", "urls": [url(0), url(1)]},
                {"title": "Gala", "urls": [url(2)]},
            ]
        })

        partitions = await Partitioner(reasoner).partition("events", summaries(3))

        assert [p.title for p in partitions] == ["Food Drive", "Gala"]

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_single_partition(self):
        """Test a failed model call keeps every recalled page."""
        reasoner = MockReasoner().on(PARTITION_MARKER, CompletionError("down"))

        partitions = await Partitioner(reasoner).partition("events", summaries(3))

        assert len(partitions) == 1
        assert partitions[0].title == DEFAULT_PARTITION_TITLE
        assert partitions[0].urls == [url(i) for i in range(3)]

    @pytest.mark.asyncio
    async def test_unparseable_response_falls_back(self):
        """Test non-JSON output also falls back."""
        reasoner = MockReasoner().on(PARTITION_MARKER, "I could not decide")

        partitions = await Partitioner(reasoner).partition("events", summaries(2))

        assert partitions[0].title == DEFAULT_PARTITION_TITLE

    @pytest.mark.asyncio
    async def test_fallback_is_split(self):
        """Test the fallback partition respects the size ceiling."""
        reasoner = MockReasoner().on(PARTITION_MARKER, {"partitions": []})

        partitions = await Partitioner(reasoner, max_pages_per_partition=4).partition("events", summaries(9))

        assert [len(p.urls) for p in partitions] == [4, 4, 1]
        assert partitions[0].title == f"{DEFAULT_PARTITION_TITLE} (Part 1)"

    @pytest.mark.asyncio
    async def test_no_summaries(self):
        """Test nothing recalled means no partitions and no call."""
        reasoner = MockReasoner()

        assert await Partitioner(reasoner).partition("events", []) == []
        assert reasoner.call_count == 0
