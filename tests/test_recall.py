"""
Tests for hybrid recall.
"""

import pytest

from tests.conftest import make_summary
from webextract.index.recall import (
    MAX_KEYWORD_WEIGHT,
    HybridRecall,
    calculate_weights,
    has_specific_terms,
    summary_keyword_score,
)
from webextract.models import CachedPage, ProcessedPage, QueryFilter, RecallSignals
from webextract.reasoning.mock_reasoner import MockReasoner, hashed_embedding


async def fill(store, pages):
    """Store pages with echo summaries and hashed embeddings."""
    items = []
    for url, content in pages:
        page = CachedPage(url=url, content=content)
        summary = make_summary(page, text=content)
        items.append(ProcessedPage(page=page, summary=summary, embedding=hashed_embedding(content)))
    await store.store_processed(items)


class TestWeights:
    """Test weight calculation."""

    @pytest.mark.parametrize(
        "query,specific",
        [
            ('"spring food drive"', True),
            ("room 221", True),
            ("volunteer at Helpers Network", True),
            ("sign-up form", True),
            ("volunteer opportunities", False),
            ("Volunteer opportunities", False),
        ],
    )
    def test_specific_terms(self, query, specific):
        """Test detection of quoted, numeric, capitalized and hyphenated terms."""
        assert has_specific_terms(query) is specific

    def test_default_weights(self):
        """Test plain queries use the configured split."""
        assert calculate_weights("volunteer opportunities") == (0.6, pytest.approx(0.4))

    def test_boost_capped(self):
        """Test the keyword boost never exceeds the cap."""
        semantic, keyword = calculate_weights("room 221", semantic_weight=0.2, specific_term_boost=3.0)

        assert keyword == MAX_KEYWORD_WEIGHT
        assert semantic == pytest.approx(0.2)

    def test_boost_applied(self):
        """Test specific terms boost the keyword weight."""
        semantic, keyword = calculate_weights("room 221")

        assert keyword == pytest.approx(0.6)
        assert semantic == pytest.approx(0.4)

    def test_summary_keyword_score_counts_signals(self):
        """Test signals contribute to the summary keyword score."""
        page = CachedPage(url="https://a.org/1", content="x")
        summary = make_summary(page, text="Community pantry")
        with_signal = summary.model_copy(update={"signals": RecallSignals(entities=["Zumba"])})

        assert summary_keyword_score("zumba", summary) == 0
        assert summary_keyword_score("zumba", with_signal) > 0


class TestHybridSearch:
    """Test fused search over the store."""

    @pytest.mark.asyncio
    async def test_keyword_hits_beyond_limit_are_kept(self, store):
        """Test every keyword match is returned even past the limit."""
        pages = [(f"https://a.org/k{i}", f"Zumba session {i} schedule") for i in range(8)]
        pages += [(f"https://a.org/o{i}", f"Library reading hour {i}") for i in range(8)]
        await fill(store, pages)
        recall = HybridRecall(store, MockReasoner())

        refs = await recall.search("zumba", limit=3)

        urls = [ref.url for ref in refs]
        assert all(f"https://a.org/k{i}" in urls for i in range(8))
        assert len(urls) == len(set(urls))

    @pytest.mark.asyncio
    async def test_limit_applies_to_fused_results(self, store):
        """Test without keyword matches only the top limit are returned."""
        await fill(store, [(f"https://a.org/{i}", f"Library reading hour {i}") for i in range(8)])
        recall = HybridRecall(store, MockReasoner())

        refs = await recall.search("gardening", limit=3)

        assert len(refs) == 3

    @pytest.mark.asyncio
    async def test_filter_applies_to_both_sides(self, store):
        """Test filtered-out pages never appear."""
        await fill(store, [("https://a.org/1", "Zumba class"), ("https://b.org/1", "Zumba class")])
        recall = HybridRecall(store, MockReasoner())

        refs = await recall.search("zumba", 10, QueryFilter.for_site("a.org"))

        assert [ref.url for ref in refs] == ["https://a.org/1"]

    @pytest.mark.asyncio
    async def test_ranked_by_fused_score(self, store):
        """Test a page matching both ways ranks first."""
        await fill(store, [
            ("https://a.org/1", "Spring food drive volunteers"),
            ("https://a.org/2", "Board meeting minutes"),
        ])
        recall = HybridRecall(store, MockReasoner())

        refs = await recall.search("food drive volunteers", 1)

        assert refs[0].url == "https://a.org/1"
        assert refs[0].score > 0


class TestRankedSummaries:
    """Test summary selection for partitioning."""

    @pytest.mark.asyncio
    async def test_under_ceiling_passes_everything(self, store):
        """Test every summary passes when under the ceiling."""
        await fill(store, [(f"https://a.org/{i}", f"Page {i}") for i in range(5)])
        reasoner = MockReasoner()
        recall = HybridRecall(store, reasoner)

        summaries = await recall.ranked_summaries("anything", 10)

        assert len(summaries) == 5
        assert reasoner.embed_calls == []

    @pytest.mark.asyncio
    async def test_over_ceiling_is_bounded(self, store):
        """Test no more than the ceiling is returned when every page matches a term."""
        await fill(store, [(f"https://a.org/{i}", f"Volunteer shift {i}") for i in range(200)])
        recall = HybridRecall(store, MockReasoner())

        summaries = await recall.ranked_summaries("volunteer shifts", 50)

        urls = [s.url for s in summaries]
        assert len(urls) == 50
        assert len(urls) == len(set(urls))

    @pytest.mark.asyncio
    async def test_over_ceiling_prefers_keyword_matches(self, store):
        """Test keyword-matching summaries win the slots inside the ceiling."""
        pages = [(f"https://a.org/n{i}", f"Library reading hour number {i}") for i in range(10)]
        pages += [(f"https://a.org/z{i}", f"Zumba {i}") for i in range(3)]
        await fill(store, pages)
        recall = HybridRecall(store, MockReasoner())

        summaries = await recall.ranked_summaries("zumba", 3)

        assert sorted(s.url for s in summaries) == [f"https://a.org/z{i}" for i in range(3)]
