"""
Tests for claim verification and the extraction boundary.
"""

import pytest

from webextract.index.grounding import (
    VerifyConfig,
    gap_phrase,
    parse_extraction,
    parse_narrative,
    parse_single,
    to_extraction,
)
from webextract.index import grounding
from webextract.models import CachedPage, GroundingGrade, SourceRole

A = "https://a.org/1"
B = "https://b.org/1"
C = "https://c.org/1"


@pytest.fixture
def pages():
    return [
        CachedPage(url=A, content="Open 9am to 5pm on weekdays.", title="Hours"),
        CachedPage(url=B, content="Open 10am to 6pm on weekdays.", title="Contact"),
        CachedPage(url=C, content="Free parking behind the building.", title="Visit"),
    ]


def claim(statement, urls, grounding_label="direct"):
    return {
        "statement": statement,
        "evidence": [{"quote": statement, "source_url": u} for u in urls],
        "grounding": grounding_label,
    }


class TestGapPhrase:
    """Test question to search phrase conversion."""

    @pytest.mark.parametrize(
        "query,phrase",
        [
            ("what is the phone number?", "phone number"),
            ("Where is the main office?", "main office"),
            ("find the contact email", "contact email"),
            ("the deadline", "deadline"),
            ("volunteer requirements", "volunteer requirements"),
        ],
    )
    def test_phrases(self, query, phrase):
        """Test leading question words are removed."""
        assert gap_phrase(query) == phrase


class TestParsing:
    """Test parsing of model responses into drafts."""

    def test_parse_extraction(self):
        """Test claims, evidence, sources and gaps are parsed."""
        draft = parse_extraction({
            "content": "Open 9am to 5pm.",
            "claims": [claim("Open 9am to 5pm.", [A], "DIRECT"), {"statement": ""}, "junk"],
            "sources": [{"url": A, "role": "primary"}, {"role": "supporting"}],
            "gaps": [{"field": "phone"}, {"query": "no field"}],
        })

        assert len(draft.claims) == 1
        assert draft.claims[0].grounding == grounding.ClaimGrounding.DIRECT
        assert draft.sources[0].role == SourceRole.PRIMARY
        assert len(draft.sources) == 1
        assert draft.gaps[0].query == "phone"

    def test_unknown_grounding_is_assumed(self):
        """Test unlabeled claims are treated as unsupported."""
        draft = parse_extraction({"claims": [{"statement": "x", "grounding": "probably"}]})

        assert draft.claims[0].grounding == grounding.ClaimGrounding.ASSUMED

    def test_parse_single_not_found(self):
        """Test a missing answer yields empty content and a searchable gap."""
        draft = parse_single({"found": False, "content": "I could not find it"}, "what is the phone number?")

        assert draft.content == ""
        assert draft.answer_missing
        assert draft.gaps[0].query == "phone number"

    def test_parse_single_uses_model_gap(self):
        """Test a gap supplied by the model is kept."""
        draft = parse_single({"found": False, "gap": {"field": "phone", "query": "office phone"}}, "phone?")

        assert draft.gaps[0].query == "office phone"

    def test_parse_single_without_source_is_inferred(self):
        """Test an answer with no quoted source is an inference."""
        draft = parse_single({"found": True, "content": "Probably weekdays."}, "hours?")

        assert draft.claims[0].grounding == grounding.ClaimGrounding.INFERRED

    def test_parse_narrative_orders_by_number(self):
        """Test narrative sources follow their citation numbers."""
        draft = parse_narrative({
            "content": "x",
            "sources": [{"number": 2, "url": B}, {"number": 1, "url": A}, {"url": C}],
        })

        assert [s.url for s in draft.sources] == [A, B, C]
        assert draft.sources[0].role == SourceRole.PRIMARY


class TestToExtraction:
    """Test verification against supplied pages."""

    def test_unknown_citations_dropped(self, pages):
        """Test evidence pointing outside the supplied pages is discarded."""
        draft = parse_extraction({
            "content": "Parking is free.",
            "claims": [claim("Parking is free.", [C, "https://invented.org/"])],
        })

        extraction = to_extraction(draft, pages)

        assert extraction.source_urls() == [C]
        assert extraction.grounding == GroundingGrade.SINGLE_SOURCE

    def test_strict_mode_strips_assumed_claims(self, pages):
        """Test assumed claims and their sentences are removed in strict mode."""
        draft = parse_extraction({
            "content": "Parking is free. The lot holds 200 cars.",
            "claims": [
                claim("Parking is free.", [C]),
                claim("The lot holds 200 cars.", [B], "assumed"),
            ],
        })

        extraction = to_extraction(draft, pages, VerifyConfig(strict_mode=True))

        assert extraction.content == "Parking is free."
        assert extraction.source_urls() == [C]
        assert not extraction.has_inference

    def test_strict_mode_drops_claims_without_evidence(self, pages):
        """Test claims left with no valid evidence are dropped."""
        draft = parse_extraction({
            "content": "Tours run daily.",
            "claims": [claim("Tours run daily.", ["https://invented.org/"])],
        })

        extraction = to_extraction(draft, pages)

        assert extraction.content == ""
        assert extraction.sources == []

    def test_lenient_mode_keeps_inferred(self, pages):
        """Test lenient mode keeps unsupported claims and marks inference."""
        draft = parse_extraction({
            "content": "The lot holds 200 cars.",
            "claims": [claim("The lot holds 200 cars.", [C], "assumed")],
        })

        extraction = to_extraction(draft, pages, VerifyConfig(strict_mode=False))

        assert extraction.content == "The lot holds 200 cars."
        assert extraction.grounding == GroundingGrade.INFERRED

    def test_sources_aggregated_from_claims(self, pages):
        """Test the most cited page becomes primary and repeat citations corroborate."""
        draft = parse_extraction({
            "content": "x",
            "claims": [
                claim("Parking is free.", [C, A]),
                claim("Weekday opening at 9am.", [C, A]),
                claim("Visitors are welcome.", [C, B]),
            ],
        })

        extraction = to_extraction(draft, pages)

        roles = {s.url: s.role for s in extraction.sources}
        assert roles[C] == SourceRole.PRIMARY
        assert roles[A] == SourceRole.CORROBORATING
        assert roles[B] == SourceRole.SUPPORTING
        assert extraction.grounding == GroundingGrade.VERIFIED
        assert extraction.sources[0].title == "Visit"

    def test_claim_urls_missing_from_model_sources_are_added(self, pages):
        """Test every cited page appears as a source."""
        draft = parse_extraction({
            "content": "x",
            "claims": [claim("Parking is free.", [C]), claim("Open weekdays.", [A])],
            "sources": [{"url": C, "role": "supporting"}],
        })

        extraction = to_extraction(draft, pages)

        assert extraction.source_urls() == [C, A]
        assert extraction.sources[0].role == SourceRole.PRIMARY

    def test_local_conflict_detection(self, pages):
        """Test differing statements on one topic from different pages conflict."""
        draft = parse_extraction({
            "content": "Opening hours differ.",
            "claims": [
                claim("Open on weekdays from 9am to 5pm.", [A]),
                claim("Open on weekdays from 10am to 6pm.", [B]),
            ],
        })

        extraction = to_extraction(draft, pages)

        assert extraction.grounding == GroundingGrade.CONFLICTED
        assert len(extraction.conflicts) == 1
        assert set(extraction.conflicts[0].source_urls) == {A, B}

    def test_model_conflict_not_duplicated(self, pages):
        """Test a reported conflict is not repeated by local detection."""
        draft = parse_extraction({
            "content": "Opening hours differ.",
            "claims": [
                claim("Open on weekdays from 9am to 5pm.", [A]),
                claim("Open on weekdays from 10am to 6pm.", [B]),
            ],
            "conflicts": [{
                "topic": "opening hours",
                "claims": [
                    {"statement": "Open on weekdays from 9am to 5pm.", "source_url": A},
                    {"statement": "Open on weekdays from 10am to 6pm.", "source_url": B},
                ],
            }],
        })

        extraction = to_extraction(draft, pages)

        assert [c.topic for c in extraction.conflicts] == ["opening hours"]

    def test_conflict_needs_two_known_sides(self, pages):
        """Test a conflict with only one side on a supplied page is discarded."""
        draft = parse_extraction({
            "content": "Open 9am.",
            "claims": [claim("Open 9am.", [A])],
            "conflicts": [{
                "topic": "hours",
                "claims": [
                    {"statement": "9am", "source_url": A},
                    {"statement": "8am", "source_url": "https://invented.org/"},
                ],
            }],
        })

        extraction = to_extraction(draft, pages)

        assert extraction.conflicts == []

    def test_missing_answer_is_inference(self, pages):
        """Test a not-found single answer is graded as inference with a gap."""
        extraction = to_extraction(parse_single({"found": False}, "what is the phone number?"), pages)

        assert extraction.content == ""
        assert extraction.grounding == GroundingGrade.INFERRED
        assert extraction.gaps[0].is_searchable()

    def test_verified_threshold(self, pages):
        """Test a higher threshold needs more sources for verified."""
        draft = parse_extraction({
            "content": "x",
            "claims": [claim("Parking is free.", [C, A])],
        })

        extraction = to_extraction(draft, pages, VerifyConfig(verified_threshold=3))

        assert extraction.grounding == GroundingGrade.SINGLE_SOURCE
