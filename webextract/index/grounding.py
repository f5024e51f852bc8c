"""
Claim verification and grounding.

Model output is parsed into internal ``Claim``/``Evidence`` scaffolding that
forces every statement to carry citations. ``to_extraction`` is the single
point where that scaffolding is checked against the pages actually supplied
and converted into the public ``Extraction``; nothing else in this module is
exported from the package.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from webextract.models import (
    CachedPage,
    Conflict,
    ConflictingClaim,
    Extraction,
    GapQuery,
    Source,
    SourceRole,
)
from webextract.utils.logging import get_logger

logger = get_logger(__name__)

__all__ = ["VerifyConfig", "gap_phrase", "parse_extraction", "parse_narrative", "parse_single", "to_extraction"]


class ClaimGrounding(str, Enum):
    DIRECT = "direct"
    INFERRED = "inferred"
    ASSUMED = "assumed"

    @classmethod
    def parse(cls, value: Any) -> "ClaimGrounding":
        """Unknown or missing labels count as unsupported."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.ASSUMED


@dataclass
class Evidence:
    quote: str
    source_url: str


@dataclass
class Claim:
    statement: str
    evidence: List[Evidence] = field(default_factory=list)
    grounding: ClaimGrounding = ClaimGrounding.ASSUMED

    @property
    def source_urls(self) -> List[str]:
        return list(dict.fromkeys(e.source_url for e in self.evidence))


@dataclass
class CitedSource:
    url: str
    role: Optional[SourceRole] = None
    title: Optional[str] = None


@dataclass
class DraftExtraction:
    """Parsed model output before verification."""
    content: str = ""
    claims: List[Claim] = field(default_factory=list)
    sources: List[CitedSource] = field(default_factory=list)
    gaps: List[GapQuery] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    answer_missing: bool = False


@dataclass
class VerifyConfig:
    strict_mode: bool = True
    verified_threshold: int = 2


# =============================================================================
# Parsing
# =============================================================================


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _parse_role(value: Any) -> Optional[SourceRole]:
    try:
        return SourceRole(str(value).strip().lower())
    except ValueError:
        return None


def _parse_conflicts(data: Any) -> List[Conflict]:
    conflicts = []
    for item in _as_list(data):
        if not isinstance(item, dict):
            continue
        claims = [
            ConflictingClaim(statement=str(c["statement"]), source_url=str(c["source_url"]))
            for c in _as_list(item.get("claims"))
            if isinstance(c, dict) and c.get("statement") and c.get("source_url")
        ]
        conflicts.append(Conflict(topic=str(item.get("topic") or ""), claims=claims))
    return conflicts


def _parse_gap(item: Any) -> Optional[GapQuery]:
    if not isinstance(item, dict) or not item.get("field"):
        return None
    gap_field = str(item["field"]).strip()
    query = str(item.get("query") or "").strip() or gap_field
    return GapQuery.not_in_sources(gap_field, query)


def parse_extraction(data: Any) -> DraftExtraction:
    """Parse a claim-level extraction response."""
    if not isinstance(data, dict):
        return DraftExtraction()

    claims = []
    for item in _as_list(data.get("claims")):
        if not isinstance(item, dict) or not item.get("statement"):
            continue
        evidence = [
            Evidence(quote=str(e.get("quote") or ""), source_url=str(e["source_url"]))
            for e in _as_list(item.get("evidence"))
            if isinstance(e, dict) and e.get("source_url")
        ]
        claims.append(
            Claim(
                statement=str(item["statement"]).strip(),
                evidence=evidence,
                grounding=ClaimGrounding.parse(item.get("grounding")),
            )
        )

    sources = [
        CitedSource(url=str(s["url"]), role=_parse_role(s.get("role")), title=s.get("title"))
        for s in _as_list(data.get("sources"))
        if isinstance(s, dict) and s.get("url")
    ]
    gaps = [g for g in (_parse_gap(item) for item in _as_list(data.get("gaps"))) if g]

    return DraftExtraction(
        content=str(data.get("content") or "").strip(),
        claims=claims,
        sources=sources,
        gaps=gaps,
        conflicts=_parse_conflicts(data.get("conflicts")),
    )


def parse_single(data: Any, query: str) -> DraftExtraction:
    """
    Parse a single-answer response.

    A found answer becomes one direct claim backed by the quoted source. A
    missing answer yields empty content and a gap.
    """
    if not isinstance(data, dict):
        data = {}

    found = bool(data.get("found"))
    content = str(data.get("content") or "").strip()
    if not found or not content:
        gap = _parse_gap(data.get("gap")) or GapQuery.not_in_sources(gap_phrase(query), gap_phrase(query))
        return DraftExtraction(content="", gaps=[gap], answer_missing=True)

    draft = DraftExtraction(content=content, conflicts=_parse_conflicts(data.get("conflicts")))
    source = data.get("source")
    if isinstance(source, dict) and source.get("url"):
        url = str(source["url"])
        draft.claims.append(
            Claim(
                statement=content,
                evidence=[Evidence(quote=str(source.get("quote") or ""), source_url=url)],
                grounding=ClaimGrounding.DIRECT,
            )
        )
        draft.sources.append(CitedSource(url=url, role=SourceRole.PRIMARY))
    else:
        draft.claims.append(Claim(statement=content, grounding=ClaimGrounding.INFERRED))
    return draft


def parse_narrative(data: Any) -> DraftExtraction:
    """Parse a narrative response: sources in citation order, first is primary."""
    if not isinstance(data, dict):
        return DraftExtraction()

    items = [s for s in _as_list(data.get("sources")) if isinstance(s, dict) and s.get("url")]
    items.sort(key=lambda s: s.get("number") if isinstance(s.get("number"), int) else 1_000_000)
    sources = [
        CitedSource(
            url=str(s["url"]),
            role=SourceRole.PRIMARY if i == 0 else SourceRole.SUPPORTING,
            title=s.get("title"),
        )
        for i, s in enumerate(items)
    ]
    return DraftExtraction(
        content=str(data.get("content") or "").strip(),
        sources=sources,
        conflicts=_parse_conflicts(data.get("conflicts")),
    )


# =============================================================================
# Verification
# =============================================================================

_LEADING_PHRASES = (
    "what is the", "what's the", "what are the", "where is the", "where's the",
    "when is the", "when's the", "who is the", "who's the", "how do i find the",
    "find the", "what is", "what are", "where is", "when is", "who is", "find",
)


def gap_phrase(query: str) -> str:
    """
    Turn a question into a reusable search phrase.

    ``"what is the phone number?"`` becomes ``"phone number"``.
    """
    phrase = " ".join(query.strip().rstrip("?!. ").split())
    lower = phrase.lower()
    for lead in _LEADING_PHRASES:
        if lower.startswith(lead + " "):
            phrase = phrase[len(lead):].strip()
            break
    if phrase.lower().startswith("the "):
        phrase = phrase[4:]
    return phrase or query.strip()


def detect_conflicts(claims: Sequence[Claim]) -> List[Conflict]:
    """
    Flag disagreement between claims on the same topic.

    Claims are grouped by the first three words of their statement. A group
    is a conflict when it holds different statements cited from different
    pages.
    """
    groups: Dict[str, List[Claim]] = {}
    for claim in claims:
        if not claim.evidence:
            continue
        key = " ".join(claim.statement.lower().split()[:3])
        groups.setdefault(key, []).append(claim)

    conflicts = []
    for topic, group in groups.items():
        statements = {c.statement.strip().lower() for c in group}
        urls = {c.evidence[0].source_url for c in group}
        if len(group) < 2 or len(statements) < 2 or len(urls) < 2:
            continue
        conflicts.append(
            Conflict(
                topic=topic,
                claims=[
                    ConflictingClaim(statement=c.statement, source_url=c.evidence[0].source_url)
                    for c in group
                ],
            )
        )
    return conflicts


def aggregate_sources(claims: Sequence[Claim]) -> List[CitedSource]:
    """
    Derive sources from claim citations.

    The most cited url is primary. Others cited by at least two claims
    corroborate; the rest support.
    """
    counts: Counter = Counter()
    for claim in claims:
        for url in claim.source_urls:
            counts[url] += 1

    sources = []
    for i, (url, count) in enumerate(counts.most_common()):
        if i == 0:
            role = SourceRole.PRIMARY
        elif count >= 2:
            role = SourceRole.CORROBORATING
        else:
            role = SourceRole.SUPPORTING
        sources.append(CitedSource(url=url, role=role))
    return sources


def _normalize(text: str) -> str:
    return " ".join(re.sub(r"[^\w\s]", " ", text.lower()).split())


_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


def strip_statements(content: str, statements: Sequence[str]) -> str:
    """Remove every sentence of ``content`` that carries one of ``statements``."""
    targets = [_normalize(s) for s in statements if _normalize(s)]
    if not targets or not content:
        return content

    kept_lines = []
    for line in content.splitlines():
        sentences = _SENTENCE_SPLIT_RE.split(line)
        kept = []
        for sentence in sentences:
            norm = _normalize(sentence)
            if norm and any(t in norm or norm == t for t in targets):
                continue
            kept.append(sentence)
        new_line = " ".join(kept).rstrip()
        if new_line.strip(" -*#>") or not line.strip():
            kept_lines.append(new_line)
    return re.sub(r"\n{3,}", "\n\n", "\n".join(kept_lines)).strip()


def _conflict_is_valid(conflict: Conflict, known: set) -> Optional[Conflict]:
    claims = [c for c in conflict.claims if c.source_url in known]
    if len(claims) < 2:
        return None
    return Conflict(topic=conflict.topic or claims[0].statement, claims=claims)


def to_extraction(
    draft: DraftExtraction,
    pages: Sequence[CachedPage],
    config: Optional[VerifyConfig] = None,
) -> Extraction:
    """
    Verify a draft against the supplied pages and build the public result.

    - Citations of pages that were not supplied are discarded.
    - In strict mode, assumed claims and claims left without evidence are
      dropped, together with their sentences in the content and any source
      only they cited.
    - Sources are taken from the model when given, otherwise aggregated from
      claim citations, and enriched with page titles and fetch times.
    - Conflicts reported by the model are merged with locally detected ones.
    """
    config = config or VerifyConfig()
    by_url = {page.url: page for page in pages}
    known = set(by_url)

    surviving: List[Claim] = []
    dropped: List[Claim] = []
    for claim in draft.claims:
        evidence = [e for e in claim.evidence if e.source_url in known]
        checked = Claim(statement=claim.statement, evidence=evidence, grounding=claim.grounding)
        if config.strict_mode and (claim.grounding == ClaimGrounding.ASSUMED or not evidence):
            dropped.append(claim)
        else:
            surviving.append(checked)

    content = strip_statements(draft.content, [c.statement for c in dropped])
    if draft.claims and not surviving:
        content = ""

    surviving_urls = {url for c in surviving for url in c.source_urls}
    dropped_only = {
        e.source_url for c in dropped for e in c.evidence
    } - surviving_urls

    cited = draft.sources or aggregate_sources(surviving)
    sources: List[Source] = []
    seen = set()
    for cited_source in cited:
        if cited_source.url not in known or cited_source.url in seen or cited_source.url in dropped_only:
            continue
        seen.add(cited_source.url)
        page = by_url[cited_source.url]
        sources.append(
            Source(
                url=page.url,
                title=page.title or cited_source.title,
                fetched_at=page.fetched_at,
                role=cited_source.role or SourceRole.SUPPORTING,
                metadata=dict(page.metadata),
            )
        )
    for url in sorted(surviving_urls - seen):
        page = by_url[url]
        sources.append(
            Source(url=url, title=page.title, fetched_at=page.fetched_at, metadata=dict(page.metadata))
        )
    if sources and not any(s.role == SourceRole.PRIMARY for s in sources):
        sources[0] = sources[0].model_copy(update={"role": SourceRole.PRIMARY})

    # Model-reported conflicts come first; local detections that repeat one
    # of their claims are the same conflict under another topic.
    conflicts: List[Conflict] = []
    topics = set()
    reported = set()
    for conflict in list(draft.conflicts) + detect_conflicts(surviving):
        valid = _conflict_is_valid(conflict, known)
        if valid is None or valid.topic.lower() in topics:
            continue
        pairs = {(c.statement.strip().lower(), c.source_url) for c in valid.claims}
        if pairs & reported:
            continue
        topics.add(valid.topic.lower())
        reported |= pairs
        conflicts.append(valid)

    has_inference = draft.answer_missing or any(
        c.grounding != ClaimGrounding.DIRECT for c in surviving
    )

    if dropped:
        logger.info(f"Discarded {len(dropped)} unsupported claims")

    return Extraction(
        content=content,
        sources=sources,
        gaps=list(draft.gaps),
        conflicts=conflicts,
        has_inference=has_inference,
        verified_threshold=config.verified_threshold,
    )
