"""
Core data models for the web extraction engine.

This module defines the Pydantic models shared across ingestion, storage,
recall and extraction. Claim/evidence scaffolding used while verifying model
output is kept out of this module: it lives in ``webextract.index.grounding``
and never crosses the public boundary.
"""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def compute_content_hash(content: str) -> str:
    """SHA-256 hex digest of page content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def site_url_of(url: str) -> str:
    """Derive the site identifier (``scheme://host[:port]``) from a url."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return url
    return f"{parsed.scheme}://{parsed.netloc}"


# =============================================================================
# Enums
# =============================================================================


class SourceRole(str, Enum):
    """Role a source plays in an extraction."""

    PRIMARY = "primary"
    SUPPORTING = "supporting"
    CORROBORATING = "corroborating"


class GroundingGrade(str, Enum):
    """How well an extraction is backed by cited source text."""

    VERIFIED = "verified"
    SINGLE_SOURCE = "single_source"
    CONFLICTED = "conflicted"
    INFERRED = "inferred"


class ExtractionStatus(str, Enum):
    """Completeness of an extraction."""

    FOUND = "found"
    PARTIAL = "partial"
    MISSING = "missing"
    CONTRADICTORY = "contradictory"


class GapReason(str, Enum):
    """Why a requested field is missing."""

    NOT_IN_SOURCES = "not_in_sources"
    REDACTED = "redacted"
    NOT_APPLICABLE = "not_applicable"
    STALE = "stale"
    CONFLICTING = "conflicting"


class ExtractionStrategy(str, Enum):
    """Query intent, selects the extraction pipeline."""

    COLLECTION = "collection"
    SINGULAR = "singular"
    NARRATIVE = "narrative"


class GapType(str, Enum):
    """Kind of gap, decides how keyword-heavy a gap search should be."""

    ENTITY = "entity"
    SEMANTIC = "semantic"
    STRUCTURAL = "structural"

    @property
    def recommended_semantic_weight(self) -> float:
        return {
            GapType.ENTITY: 0.3,
            GapType.SEMANTIC: 0.7,
            GapType.STRUCTURAL: 0.5,
        }[self]

    @classmethod
    def classify(cls, query: str) -> "GapType":
        """Classify a gap search phrase."""
        lower = query.lower()
        entity_markers = ("email", "phone", "address", "name of", "contact", "@")
        if any(m in lower for m in entity_markers) or any(c.isdigit() for c in lower):
            return cls.ENTITY
        if any(m in lower for m in ("section", "page", "missing", "incomplete")):
            return cls.STRUCTURAL
        return cls.SEMANTIC


# =============================================================================
# Page Models
# =============================================================================


class RawPage(BaseModel):
    """Fetched but unprocessed content, produced by an ingestor."""

    url: str = Field(..., description="Final url of the fetched page")
    content: str = Field("", description="Extracted text content")
    title: Optional[str] = Field(None, description="Page title")
    content_type: Optional[str] = Field(None, description="Response content type")
    fetched_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, str] = Field(default_factory=dict, description="Pass-through metadata")

    @property
    def site_url(self) -> str:
        return site_url_of(self.url)

    def has_content(self) -> bool:
        """Whether the page carries any non-whitespace text."""
        return bool(self.content.strip())


class CachedPage(BaseModel):
    """
    Canonical persisted page.

    ``content_hash`` is always recomputed from ``content`` so that storing
    identical content twice yields an identical hash.
    """

    url: str
    site_url: str = ""
    content: str
    content_hash: str = ""
    fetched_at: datetime = Field(default_factory=utcnow)
    title: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def derive_fields(self) -> "CachedPage":
        """Derive site identifier and content hash."""
        if not self.site_url:
            self.site_url = site_url_of(self.url)
        self.content_hash = compute_content_hash(self.content)
        return self

    @classmethod
    def from_raw(cls, raw: RawPage) -> "CachedPage":
        """Build the canonical page from a fetched page."""
        metadata = dict(raw.metadata)
        if raw.content_type:
            metadata.setdefault("content_type", raw.content_type)
        return cls(
            url=raw.url,
            content=raw.content,
            fetched_at=raw.fetched_at,
            title=raw.title,
            metadata=metadata,
        )

    def to_ref(self, score: float = 1.0) -> "PageRef":
        return PageRef(url=self.url, title=self.title, site_url=self.site_url, score=score)


class PageRef(BaseModel):
    """Lightweight search hit."""

    url: str
    title: Optional[str] = None
    site_url: str = ""
    score: float = 0.0


# =============================================================================
# Summary Models
# =============================================================================


class RecallSignals(BaseModel):
    """Structured signals pulled out during summarization."""

    offers: List[str] = Field(default_factory=list)
    asks: List[str] = Field(default_factory=list)
    calls_to_action: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.offers or self.asks or self.calls_to_action or self.entities)


class Summary(BaseModel):
    """Recall-optimized summary of a cached page."""

    url: str
    site_url: str = ""
    text: str
    signals: RecallSignals = Field(default_factory=RecallSignals)
    language: Optional[str] = None
    prompt_hash: str = Field(..., description="Hash of the summarization instructions used")
    content_hash: str = Field(..., description="Content hash of the page summarized")
    created_at: datetime = Field(default_factory=utcnow)
    embedding: Optional[List[float]] = Field(None, exclude=True)

    @model_validator(mode="after")
    def derive_site(self) -> "Summary":
        if not self.site_url:
            self.site_url = site_url_of(self.url)
        return self

    def embedding_text(self) -> str:
        """Text fed to the embedding model: summary plus labelled signals."""
        parts = [self.text]
        if self.signals.calls_to_action:
            parts.append("CTAs: " + ", ".join(self.signals.calls_to_action))
        if self.signals.offers:
            parts.append("Offers: " + ", ".join(self.signals.offers))
        if self.signals.asks:
            parts.append("Asks: " + ", ".join(self.signals.asks))
        if self.signals.entities:
            parts.append("Entities: " + ", ".join(self.signals.entities))
        return "\n".join(parts)

    def is_prompt_stale(self, current_prompt_hash: str) -> bool:
        return self.prompt_hash != current_prompt_hash

    def is_content_stale(self, current_content_hash: str) -> bool:
        return self.content_hash != current_content_hash

    def is_stale(self, current_prompt_hash: str, current_content_hash: str) -> bool:
        return self.is_prompt_stale(current_prompt_hash) or self.is_content_stale(current_content_hash)


class ProcessedPage(BaseModel):
    """A page with its derived artifacts, persisted together or not at all."""

    page: CachedPage
    summary: Summary
    embedding: List[float]

    @model_validator(mode="after")
    def check_consistency(self) -> "ProcessedPage":
        if self.summary.url != self.page.url:
            raise ValueError("summary url does not match page url")
        if self.summary.content_hash != self.page.content_hash:
            raise ValueError("summary content hash does not match page content")
        return self


# =============================================================================
# Extraction Models
# =============================================================================


class Source(BaseModel):
    """A page that contributed to an extraction."""

    url: str
    title: Optional[str] = None
    fetched_at: datetime = Field(default_factory=utcnow)
    role: SourceRole = SourceRole.SUPPORTING
    metadata: Dict[str, str] = Field(default_factory=dict)


class GapQuery(BaseModel):
    """
    Information requested but not found.

    ``query`` is a complete search phrase that can be passed straight to
    ``Index.search_for_gap`` without reformulation.
    """

    field: str
    query: str = ""
    reason: GapReason = GapReason.NOT_IN_SOURCES

    @classmethod
    def not_in_sources(cls, field: str, query: str) -> "GapQuery":
        return cls(field=field, query=query, reason=GapReason.NOT_IN_SOURCES)

    @classmethod
    def not_applicable(cls, field: str) -> "GapQuery":
        return cls(field=field, query="", reason=GapReason.NOT_APPLICABLE)

    def is_searchable(self) -> bool:
        """Only gaps that more searching could fill."""
        return bool(self.query) and self.reason in (GapReason.NOT_IN_SOURCES, GapReason.STALE)


class ConflictingClaim(BaseModel):
    """One side of a conflict."""

    statement: str
    source_url: str


class Conflict(BaseModel):
    """Two or more sources disagreeing on a topic. Surfaced, never resolved."""

    topic: str
    claims: List[ConflictingClaim] = Field(default_factory=list)

    def with_claim(self, statement: str, source_url: str) -> "Conflict":
        self.claims.append(ConflictingClaim(statement=statement, source_url=source_url))
        return self

    @property
    def source_urls(self) -> List[str]:
        return [c.source_url for c in self.claims]


def calculate_grounding(
    sources: List[Source],
    conflicts: List[Conflict],
    has_inference: bool,
    verified_threshold: int = 2,
) -> GroundingGrade:
    """
    Grade an extraction.

    Priority: any conflict, then any inference, then corroboration count.
    """
    if conflicts:
        return GroundingGrade.CONFLICTED
    if has_inference:
        return GroundingGrade.INFERRED
    if len(sources) >= verified_threshold:
        return GroundingGrade.VERIFIED
    return GroundingGrade.SINGLE_SOURCE


class Extraction(BaseModel):
    """
    Public extraction result.

    ``grounding`` and ``status`` are computed from the other fields and can't
    be set directly.
    """

    content: str = ""
    sources: List[Source] = Field(default_factory=list)
    gaps: List[GapQuery] = Field(default_factory=list)
    conflicts: List[Conflict] = Field(default_factory=list)
    has_inference: bool = Field(False, exclude=True)
    verified_threshold: int = Field(2, exclude=True, ge=1)

    @computed_field  # type: ignore[misc]
    @property
    def grounding(self) -> GroundingGrade:
        return calculate_grounding(
            self.sources, self.conflicts, self.has_inference, self.verified_threshold
        )

    @computed_field  # type: ignore[misc]
    @property
    def status(self) -> ExtractionStatus:
        if self.conflicts:
            return ExtractionStatus.CONTRADICTORY
        if not self.content.strip() and self.gaps:
            return ExtractionStatus.MISSING
        if self.gaps:
            return ExtractionStatus.PARTIAL
        return ExtractionStatus.FOUND

    @classmethod
    def not_found(cls, gaps: List[GapQuery]) -> "Extraction":
        """Empty result carrying the gaps that explain it."""
        return cls(content="", gaps=gaps)

    def has_gaps(self) -> bool:
        return bool(self.gaps)

    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def needs_enrichment(self) -> bool:
        return self.status in (ExtractionStatus.MISSING, ExtractionStatus.PARTIAL)

    def is_well_grounded(self) -> bool:
        return self.grounding in (GroundingGrade.VERIFIED, GroundingGrade.SINGLE_SOURCE)

    def source_urls(self) -> List[str]:
        return [s.url for s in self.sources]

    def source_count_by_role(self, role: SourceRole) -> int:
        return sum(1 for s in self.sources if s.role == role)

    def merge(self, other: "Extraction") -> None:
        """
        Fold a supplementary extraction (usually from gap-filling) into this one.

        New sources are deduplicated by url and become corroborating when this
        extraction already has a primary or supporting source. Gaps named in a
        supplement source's ``resolved_field`` metadata are dropped.
        """
        resolved_fields = {
            s.metadata["resolved_field"].lower()
            for s in other.sources
            if "resolved_field" in s.metadata
        }
        existing_urls = {s.url for s in self.sources}
        has_anchor = any(
            s.role in (SourceRole.PRIMARY, SourceRole.SUPPORTING) for s in self.sources
        )

        if other.content:
            self.content = f"{self.content}\n\n---\n\n{other.content}" if self.content else other.content

        for source in other.sources:
            if source.url in existing_urls:
                continue
            if has_anchor:
                source = source.model_copy(update={"role": SourceRole.CORROBORATING})
            self.sources.append(source)
            existing_urls.add(source.url)

        if resolved_fields:
            self.gaps = [g for g in self.gaps if g.field.lower() not in resolved_fields]

        self.conflicts.extend(other.conflicts)
        self.has_inference = self.has_inference or other.has_inference

    @classmethod
    def combine(cls, extractions: Iterable["Extraction"]) -> "Extraction":
        """Merge many extractions into one, first one wins as the base."""
        combined: Optional[Extraction] = None
        for extraction in extractions:
            if combined is None:
                combined = extraction.model_copy(deep=True)
            else:
                combined.merge(extraction)
        return combined or cls()


class Partition(BaseModel):
    """Query-scoped group of pages describing one distinct item."""

    title: str
    urls: List[str] = Field(default_factory=list)
    rationale: str = ""


# =============================================================================
# Query / Config Models
# =============================================================================


class QueryFilter(BaseModel):
    """Restrict recall by site and freshness."""

    include_sites: List[str] = Field(default_factory=list)
    exclude_sites: List[str] = Field(default_factory=list)
    min_date: Optional[datetime] = None
    max_date: Optional[datetime] = None

    @classmethod
    def for_site(cls, site: str) -> "QueryFilter":
        return cls(include_sites=[site])

    @field_validator("min_date", "max_date")
    @classmethod
    def ensure_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive datetimes are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def matches_site(self, site_url: str) -> bool:
        """Substring match so ``example.org`` selects ``https://example.org``."""
        if self.include_sites and not any(s in site_url for s in self.include_sites):
            return False
        if any(s in site_url for s in self.exclude_sites):
            return False
        return True

    def matches_date(self, fetched_at: datetime) -> bool:
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        if self.min_date and fetched_at < self.min_date:
            return False
        if self.max_date and fetched_at > self.max_date:
            return False
        return True

    def matches_page(self, page: CachedPage) -> bool:
        return self.matches_site(page.site_url) and self.matches_date(page.fetched_at)


def filter_allows(query_filter: Optional[QueryFilter], page: CachedPage) -> bool:
    return query_filter is None or query_filter.matches_page(page)


class DiscoverOptions(BaseModel):
    """Options passed to ``Ingestor.discover``."""

    limit: int = Field(100, ge=1)
    max_depth: int = Field(2, ge=0)
    include_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)


class IngestConfig(BaseModel):
    """Per-call ingestion behaviour."""

    concurrency: int = Field(5, ge=1)
    skip_cached: bool = True
    force_resummarize: bool = False


class IngestResult(BaseModel):
    """Outcome of an ingest call."""

    page_urls: List[str] = Field(default_factory=list)
    pages_processed: int = 0
    pages_summarized: int = 0
    pages_skipped: int = 0
    failed_urls: List[str] = Field(default_factory=list)

    def is_success(self) -> bool:
        return not self.failed_urls


# =============================================================================
# Investigation Models
# =============================================================================


class InvestigationStep(BaseModel):
    """A suggested action for filling one gap. Callers decide whether to run it."""

    gap_id: str = Field(default_factory=lambda: str(uuid4()))
    field: str
    original_query: str
    action: Literal["hybrid_search", "fetch_url"] = "hybrid_search"
    query: str = ""
    url: Optional[str] = None
    semantic_weight: float = Field(0.6, ge=0.0, le=1.0)
    limit: int = Field(10, ge=1)
    rationale: Optional[str] = None


class InvestigationPlan(BaseModel):
    """Ordered investigation steps."""

    steps: List[InvestigationStep] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.steps)

    def is_empty(self) -> bool:
        return not self.steps

    def steps_for_gap(self, gap_id: str) -> List[InvestigationStep]:
        return [s for s in self.steps if s.gap_id == gap_id]


class StepResult(BaseModel):
    """What executing a step turned up."""

    step: InvestigationStep
    pages_found: List[str] = Field(default_factory=list)
    duration_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def found_content(self) -> bool:
        return bool(self.pages_found)

    def is_success(self) -> bool:
        return self.error is None
