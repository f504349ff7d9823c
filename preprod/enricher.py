"""Enrichment and deduplication of staged content.

Turns a raw staged item into summary, context, optional extracted text and an
advisory duplicate list. Every external call here is best-effort: a failure
degrades to a placeholder or an empty result, never to an exception. This
module does not persist anything; ``services.stage_content`` stores the result.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from lxml import etree, html as lxml_html

from preprod.brain import STAGED_CONTENT_TYPE, BrainClient
from preprod.config import get_settings
from preprod.errors import LLMCallError, SearchError
from preprod.llm import LLMClient
from preprod.utils import content_to_text

log = logging.getLogger(__name__)

MAX_ENRICH_ITERATIONS = 3
SUMMARY_MAX_CHARS = 150
DEDUP_QUERY_CHARS = 1000
DEDUP_LIMIT = 5
DEDUP_THRESHOLD = 0.8
SKIP_ABOVE = 0.95
MERGE_ABOVE = 0.9
_MAX_TEXT = 15_000
_USER_AGENT = "PreprodBot/1.0"

SUMMARY_PLACEHOLDER = "Summary unavailable"
CONTEXT_PLACEHOLDER = "Context unavailable"

ENRICH_SYSTEM_PROMPT = """\
You review raw movie preproduction material (story notes, character sketches, \
visual references, production details) before it is used for department \
readiness evaluation.

Decide whether the content needs more context. If it is complete and well \
structured, return it unchanged and mark it complete. Otherwise return an \
enriched version with the missing details filled in.

Respond with ONLY valid JSON:
{
  "isComplete": <true|false>,
  "content": <original or enriched content>
}
"""

SUMMARY_SYSTEM_PROMPT = """\
Write a concise summary (about 100 characters) of the content for a movie \
preproduction project. Return ONLY the summary text, no explanations.
"""

CONTEXT_SYSTEM_PROMPT = """\
Explain how the content relates to the movie preproduction project in one \
paragraph of 2-3 sentences: its relevance and its relationships to the rest \
of the project. Return ONLY the paragraph.
"""

EXTRACT_INSTRUCTION = (
    "Extract all readable text from this file verbatim, then add a short "
    "description of anything visual that matters for film preproduction."
)


@dataclass
class ExtractionResult:
    text: str = ""
    confidence: float = 0.0


@dataclass
class DuplicateMatch:
    id: str
    similarity: float
    suggestion: str  # skip | merge | review


@dataclass
class ProcessedContent:
    summary: str
    context: str
    enriched_content: Any
    iteration_count: int
    extracted_text: str | None = None
    duplicates: list[DuplicateMatch] = field(default_factory=list)

    @property
    def duplicate_check_score(self) -> float | None:
        return self.duplicates[0].similarity if self.duplicates else None


# ---------------------------------------------------------------------------
# Media / document extraction
# ---------------------------------------------------------------------------


def _extract_html_text(raw_html: str) -> str:
    """Extract readable text from an HTML document using lxml."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    title = " ".join(tree.xpath("//title//text()")).strip()
    headings = " ".join(tree.xpath("//h1//text() | //h2//text() | //h3//text()")).strip()
    paragraphs = " ".join(tree.xpath("//p//text() | //li//text()")).strip()

    parts = []
    if title:
        parts.append(f"TITLE: {title}")
    if headings:
        parts.append(f"HEADINGS: {headings}")
    if paragraphs:
        parts.append(f"CONTENT: {paragraphs}")
    return "\n".join(parts)[:_MAX_TEXT]


async def _fetch_document(url: str) -> tuple[str, str]:
    """Return (content_type, body_text) for a document URL."""
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(get_settings().fetch_timeout_seconds),
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type.startswith("text/") or content_type in ("application/json", "application/xhtml+xml"):
            return content_type, resp.text
        return content_type, ""


async def extract_text(
    llm: LLMClient, image_url: str | None = None, document_url: str | None = None,
) -> ExtractionResult:
    """Extract text from an attached image or document. Never raises."""
    timeout = get_settings().llm_timeout_seconds
    try:
        if document_url:
            content_type, body = await _fetch_document(document_url)
            if content_type in ("text/html", "application/xhtml+xml"):
                text = _extract_html_text(body)
            elif body:
                text = body[:_MAX_TEXT]
            else:
                text = await asyncio.wait_for(llm.describe_media(document_url, EXTRACT_INSTRUCTION), timeout)
        elif image_url:
            text = await asyncio.wait_for(llm.describe_media(image_url, EXTRACT_INSTRUCTION), timeout)
        else:
            return ExtractionResult()
    except (httpx.HTTPError, httpx.InvalidURL, LLMCallError, asyncio.TimeoutError) as exc:
        log.warning("Text extraction failed for %s: %s", document_url or image_url, exc)
        return ExtractionResult()

    text = (text or "").strip()
    return ExtractionResult(text=text, confidence=1.0 if text else 0.0)


# ---------------------------------------------------------------------------
# Enrichment loop
# ---------------------------------------------------------------------------


async def enrich_content(
    llm: LLMClient, content: Any, max_iterations: int = MAX_ENRICH_ITERATIONS,
) -> tuple[Any, int]:
    """Ask the LLM to enhance *content* until it reports completeness.

    Bounded at *max_iterations* passes; the last pass is accepted as-is.
    Returns ``(enriched_content, iteration_count)``.
    """
    timeout = get_settings().llm_timeout_seconds
    current = content
    iterations = 0
    for _ in range(max_iterations):
        iterations += 1
        prompt = f"CONTENT:\n{content_to_text(current)}"
        try:
            response = await asyncio.wait_for(llm.call(ENRICH_SYSTEM_PROMPT, prompt), timeout)
        except LLMCallError as exc:
            if exc.raw_text:
                # Unstructured reply: keep its text and carry on
                current = exc.raw_text
                continue
            log.warning("Enrichment call failed on pass %d: %s", iterations, exc)
            break
        except asyncio.TimeoutError:
            log.warning("Enrichment call timed out on pass %d", iterations)
            break

        if "content" in response and response["content"] not in (None, ""):
            current = response["content"]
        if response.get("isComplete") is True:
            break
    return current, iterations


# ---------------------------------------------------------------------------
# Summary & context
# ---------------------------------------------------------------------------


async def generate_summary(llm: LLMClient, content: Any, project_context: str) -> str:
    try:
        summary = await asyncio.wait_for(
            llm.complete(
                SUMMARY_SYSTEM_PROMPT,
                f"PROJECT: {project_context}\nCONTENT:\n{content_to_text(content)}",
                max_tokens=60, temperature=0.3,
            ),
            get_settings().llm_timeout_seconds,
        )
    except (LLMCallError, asyncio.TimeoutError) as exc:
        log.warning("Summary generation failed: %s", exc)
        return SUMMARY_PLACEHOLDER
    summary = (summary or "").strip()
    return summary[:SUMMARY_MAX_CHARS] if summary else SUMMARY_PLACEHOLDER


async def generate_context(llm: LLMClient, content: Any, project_context: str) -> str:
    try:
        context = await asyncio.wait_for(
            llm.complete(
                CONTEXT_SYSTEM_PROMPT,
                f"PROJECT: {project_context}\nCONTENT:\n{content_to_text(content)}",
                max_tokens=300, temperature=0.4,
            ),
            get_settings().llm_timeout_seconds,
        )
    except (LLMCallError, asyncio.TimeoutError) as exc:
        log.warning("Context generation failed: %s", exc)
        return CONTEXT_PLACEHOLDER
    context = (context or "").strip()
    return context or CONTEXT_PLACEHOLDER


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------


def duplicate_band(similarity: float) -> str:
    """Map a similarity score to skip / merge / review."""
    if similarity > SKIP_ABOVE:
        return "skip"
    if similarity > MERGE_ABOVE:
        return "merge"
    return "review"


def build_dedup_query(summary: str, enriched_content: Any) -> str:
    return f"{summary}\n{content_to_text(enriched_content)[:DEDUP_QUERY_CHARS]}"


async def find_duplicates(
    brain: BrainClient,
    summary: str,
    enriched_content: Any,
    project_id: str,
    exclude_id: str | None = None,
) -> list[DuplicateMatch]:
    """Advisory near-duplicate lookup; an empty list on any search failure."""
    query = build_dedup_query(summary, enriched_content)
    try:
        hits = await asyncio.wait_for(
            brain.search_similar(
                query, project_id,
                types=[STAGED_CONTENT_TYPE], limit=DEDUP_LIMIT, threshold=DEDUP_THRESHOLD,
            ),
            get_settings().search_timeout_seconds,
        )
    except (SearchError, asyncio.TimeoutError) as exc:
        log.warning("Duplicate check failed for project %s: %s", project_id, exc)
        return []

    matches = [
        DuplicateMatch(id=h.id, similarity=h.similarity, suggestion=duplicate_band(h.similarity))
        for h in hits
        if h.similarity >= DEDUP_THRESHOLD and h.id != exclude_id
    ]
    matches.sort(key=lambda m: m.similarity, reverse=True)
    return matches[:DEDUP_LIMIT]


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


async def process_content(
    content: Any,
    project_id: str,
    llm: LLMClient,
    brain: BrainClient,
    *,
    image_url: str | None = None,
    document_url: str | None = None,
    existing_item_id: int | str | None = None,
    project_context: str | None = None,
) -> ProcessedContent:
    """Extract, enrich, summarize, contextualize and dedup one staged item."""
    project_context = project_context or get_settings().default_project_context

    extracted: str | None = None
    if image_url or document_url:
        extraction = await extract_text(llm, image_url=image_url, document_url=document_url)
        extracted = extraction.text

    source = content
    if extracted:
        source = {"content": content, "extractedText": extracted}

    enriched, iterations = await enrich_content(llm, source)

    summary, context = await asyncio.gather(
        generate_summary(llm, enriched, project_context),
        generate_context(llm, enriched, project_context),
    )

    duplicates = await find_duplicates(
        brain, summary, enriched, project_id,
        exclude_id=str(existing_item_id) if existing_item_id is not None else None,
    )
    log.info("Processed content for project %s: %d enrichment passes, %d duplicates",
             project_id, iterations, len(duplicates))

    return ProcessedContent(
        summary=summary,
        context=context,
        enriched_content=enriched,
        iteration_count=iterations,
        extracted_text=extracted,
        duplicates=duplicates,
    )
