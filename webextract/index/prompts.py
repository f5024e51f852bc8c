"""
Prompt templates for the extraction pipeline.

Templates use ``str.format`` placeholders; literal JSON braces are doubled.
"""

import hashlib
import json
from typing import List, Optional, Sequence, Tuple

SYSTEM_PROMPT = (
    "You are a careful information extraction assistant. You only report what "
    "the provided web pages support and you always answer with JSON."
)

SUMMARIZE_PROMPT = """Summarize each webpage below for information retrieval.

For every page your summary must capture:
1. What the page offers (services, programs, opportunities)
2. What the page asks for (volunteers, donations, applications)
3. Calls to action (sign up, apply, contact, donate)
4. Key entities (organization names, locations, dates, contacts)

Output JSON:
{{
    "summaries": [
        {{
            "url": "the page url exactly as given",
            "summary": "2-3 sentence overview focusing on actionable content",
            "signals": {{
                "offers": ["things offered - services, programs, opportunities"],
                "asks": ["things requested - volunteers, donations, applications"],
                "calls_to_action": ["CTAs - sign up, apply, contact, donate"],
                "entities": ["key proper nouns - org names, locations, dates, contacts"]
            }},
            "language": "detected language code (en, es, etc.)"
        }}
    ]
}}

Return exactly one entry per page.

{pages}"""

EXPAND_QUERY_PROMPT = """Expand this search query with related terms to improve recall.

Query: {query}

Generate 5-10 related search terms that would help find relevant content.
Include:
- Synonyms
- Related concepts
- Common phrasings
- Industry jargon

Output JSON:
{{"terms": ["term1", "term2", "term3"]}}"""

CLASSIFY_QUERY_PROMPT = """Classify the intent of this search query.

Query: {query}

Categories:
- COLLECTION: "Find all X" - looking for a list of items (volunteer opportunities, services, events)
- SINGULAR: "Find specific info" - looking for one piece of information (phone number, email, address)
- NARRATIVE: "Summarize/describe" - looking for an overview or description

Output JSON:
{{
    "strategy": "COLLECTION" | "SINGULAR" | "NARRATIVE",
    "confidence": 0.0 to 1.0,
    "reasoning": "brief explanation"
}}"""

PARTITION_PROMPT = """Given a query and page summaries, identify distinct items to extract.

Query: {query}

For this query, determine:
1. What constitutes ONE distinct item?
2. Which pages contribute to each item?
3. Why are these pages grouped together?

Page Summaries:
{summaries}

Output JSON:
{{
    "partitions": [
        {{
            "title": "Brief item title",
            "urls": ["url1", "url2"],
            "rationale": "Why these pages are grouped"
        }}
    ]
}}

Rules:
- Each item should be distinct (no duplicates)
- Pages can appear in multiple items if they contain multiple distinct things
- If a page contains only one item, it gets its own partition
- Group pages that discuss the SAME specific thing"""

EXTRACT_PROMPT = """Extract information about: {query}

From these pages:
{pages}

Rules:
1. For EVERY claim, quote the source text that supports it
2. Note which page (URL) each quote comes from
3. Mark claims as:
   - DIRECT: Exact quote supports the claim
   - INFERRED: Reasonable inference from the source
   - ASSUMED: No direct evidence (WARNING: may be hallucination)
4. Explicitly note what information is MISSING (gaps)
5. If sources contradict each other, note the conflict

{hints_section}

Output JSON:
{{
    "content": "Extracted information as markdown",
    "claims": [
        {{
            "statement": "The claim being made",
            "evidence": [
                {{"quote": "Exact quote from source", "source_url": "https://..."}}
            ],
            "grounding": "DIRECT" | "INFERRED" | "ASSUMED"
        }}
    ],
    "sources": [
        {{"url": "https://...", "role": "PRIMARY" | "SUPPORTING" | "CORROBORATING"}}
    ],
    "gaps": [
        {{
            "field": "What's missing (e.g., 'contact email')",
            "query": "Search query to find it (e.g., 'the contact email for the volunteer coordinator')"
        }}
    ],
    "conflicts": [
        {{
            "topic": "What the conflict is about",
            "claims": [
                {{"statement": "Claim A", "source_url": "url1"}},
                {{"statement": "Claim B", "source_url": "url2"}}
            ]
        }}
    ]
}}"""

EXTRACT_SINGLE_PROMPT = """Find the answer to: {query}

From these pages:
{pages}

Rules:
1. Find the SINGLE best answer
2. Quote the source text that contains the answer
3. If multiple sources give different answers, note the conflict
4. If the answer is not found, say so clearly and suggest a search query that would find it

Output JSON:
{{
    "content": "The answer (empty if not present)",
    "found": true | false,
    "source": {{"url": "https://...", "quote": "Exact quote containing the answer"}},
    "gap": {{"field": "What's missing", "query": "Search query to find it"}},
    "conflicts": [
        {{
            "topic": "{query}",
            "claims": [
                {{"statement": "Answer A", "source_url": "url1"}},
                {{"statement": "Answer B", "source_url": "url2"}}
            ]
        }}
    ]
}}"""

EXTRACT_NARRATIVE_PROMPT = """Summarize information about: {query}

From these pages:
{pages}

Create a cohesive narrative that:
1. Synthesizes information from all relevant pages
2. Organizes information logically
3. Cites sources for key facts
4. Notes any contradictions between sources

Output JSON:
{{
    "content": "Narrative summary as markdown with inline citations [1], [2], etc.",
    "sources": [
        {{"number": 1, "url": "https://...", "title": "Page title"}}
    ],
    "key_points": ["Main point 1", "Main point 2"],
    "conflicts": []
}}"""


def summarize_prompt_hash() -> str:
    """Version identifier of the summarization instructions."""
    return hashlib.sha256(SUMMARIZE_PROMPT.encode("utf-8")).hexdigest()


def format_pages(pages: Sequence[Tuple[str, str]]) -> str:
    return "\n---\n".join(f"=== PAGE: {url} ===\n{content}\n" for url, content in pages)


def format_summarize_prompt(pages: Sequence[Tuple[str, str]]) -> str:
    return SUMMARIZE_PROMPT.format(pages=format_pages(pages))


def format_expand_query_prompt(query: str) -> str:
    return EXPAND_QUERY_PROMPT.format(query=query)


def format_classify_query_prompt(query: str) -> str:
    return CLASSIFY_QUERY_PROMPT.format(query=query)


def format_partition_prompt(query: str, summaries: Sequence[Tuple[str, str]]) -> str:
    summaries_text = "\n---\n".join(f"URL: {url}\nSummary: {text}\n" for url, text in summaries)
    return PARTITION_PROMPT.format(query=query, summaries=summaries_text)


def format_extract_prompt(
    query: str,
    pages: Sequence[Tuple[str, str]],
    hints: Optional[List[str]] = None,
) -> str:
    hints_section = f"Focus on extracting these fields: {', '.join(hints)}" if hints else ""
    return EXTRACT_PROMPT.format(query=query, pages=format_pages(pages), hints_section=hints_section)


def format_extract_single_prompt(query: str, pages: Sequence[Tuple[str, str]]) -> str:
    # The query is embedded in a JSON example, so it must not break the quoting.
    quoted = json.dumps(query)[1:-1]
    return EXTRACT_SINGLE_PROMPT.format(query=quoted, pages=format_pages(pages))


def format_extract_narrative_prompt(query: str, pages: Sequence[Tuple[str, str]]) -> str:
    return EXTRACT_NARRATIVE_PROMPT.format(query=query, pages=format_pages(pages))
