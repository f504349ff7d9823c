"""Tests for the enrichment and dedup processor.

Covers: bounded enrichment loop, summary/context fallbacks, duplicate
banding and filtering, media/document extraction, and the full pipeline.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from preprod.brain import SearchHit
from preprod.enricher import (
    CONTEXT_PLACEHOLDER,
    MAX_ENRICH_ITERATIONS,
    SUMMARY_MAX_CHARS,
    SUMMARY_PLACEHOLDER,
    _extract_html_text,
    build_dedup_query,
    duplicate_band,
    enrich_content,
    extract_text,
    find_duplicates,
    generate_context,
    generate_summary,
    process_content,
)
from preprod.errors import LLMCallError, SearchError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def llm():
    client = MagicMock()
    client.call = AsyncMock(return_value={"isComplete": True, "content": "Enriched"})
    client.complete = AsyncMock(return_value="A short summary")
    client.describe_media = AsyncMock(return_value="Storyboard frame: hero on a rooftop")
    return client


@pytest.fixture()
def brain():
    client = MagicMock()
    client.search_similar = AsyncMock(return_value=[])
    return client


def _hit(id_: str, similarity: float) -> SearchHit:
    return SearchHit(id=id_, type="gather", content="...", similarity=similarity)


# ---------------------------------------------------------------------------
# Tests: enrichment loop
# ---------------------------------------------------------------------------


class TestEnrichContent:
    @pytest.mark.asyncio
    async def test_never_exceeds_iteration_cap(self, llm):
        llm.call.return_value = {"isComplete": False, "content": "still thin"}
        content, iterations = await enrich_content(llm, "raw")
        assert iterations == MAX_ENRICH_ITERATIONS == 3
        assert llm.call.await_count == 3
        assert content == "still thin"

    @pytest.mark.asyncio
    async def test_stops_when_complete(self, llm):
        content, iterations = await enrich_content(llm, "raw")
        assert iterations == 1
        assert content == "Enriched"

    @pytest.mark.asyncio
    async def test_each_pass_sees_previous_output(self, llm):
        llm.call.side_effect = [
            {"isComplete": False, "content": "pass one"},
            {"isComplete": True, "content": "pass two"},
        ]
        content, iterations = await enrich_content(llm, "raw")
        assert iterations == 2
        assert content == "pass two"
        assert "pass one" in llm.call.await_args_list[1].args[1]

    @pytest.mark.asyncio
    async def test_structured_content_is_serialized(self, llm):
        await enrich_content(llm, {"scene": 1, "title": "Opening"})
        assert '"title": "Opening"' in llm.call.await_args.args[1]

    @pytest.mark.asyncio
    async def test_unparseable_reply_keeps_raw_text(self, llm):
        llm.call.side_effect = [
            LLMCallError("invalid JSON", raw_text="plain prose reply"),
            {"isComplete": True, "content": None},
        ]
        content, iterations = await enrich_content(llm, "raw")
        assert content == "plain prose reply"
        assert iterations == 2

    @pytest.mark.asyncio
    async def test_call_failure_returns_original(self, llm):
        llm.call.side_effect = LLMCallError("API down", retryable=True)
        content, iterations = await enrich_content(llm, "raw")
        assert content == "raw"
        assert iterations == 1


# ---------------------------------------------------------------------------
# Tests: summary and context
# ---------------------------------------------------------------------------


class TestSummaryAndContext:
    @pytest.mark.asyncio
    async def test_summary_is_capped(self, llm):
        llm.complete.return_value = "x" * 400
        summary = await generate_summary(llm, "content", "Movie production project")
        assert len(summary) == SUMMARY_MAX_CHARS

    @pytest.mark.asyncio
    async def test_summary_placeholder_on_failure(self, llm):
        llm.complete.side_effect = LLMCallError("down")
        assert await generate_summary(llm, "content", "ctx") == SUMMARY_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_context_placeholder_on_empty_reply(self, llm):
        llm.complete.return_value = "   "
        assert await generate_context(llm, "content", "ctx") == CONTEXT_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_context_includes_project(self, llm):
        await generate_context(llm, "content", "Noir thriller")
        assert "Noir thriller" in llm.complete.await_args.args[1]


# ---------------------------------------------------------------------------
# Tests: duplicates
# ---------------------------------------------------------------------------


class TestDuplicates:
    @pytest.mark.parametrize("similarity,band", [(0.97, "skip"), (0.92, "merge"), (0.81, "review")])
    def test_bands(self, similarity, band):
        assert duplicate_band(similarity) == band

    def test_query_truncates_content(self):
        query = build_dedup_query("summary", "y" * 5000)
        assert query.startswith("summary\n")
        assert len(query) == len("summary\n") + 1000

    @pytest.mark.asyncio
    async def test_filters_and_sorts(self, brain):
        brain.search_similar.return_value = [
            _hit("a", 0.81), _hit("b", 0.97), _hit("c", 0.79), _hit("d", 0.92),
        ]
        matches = await find_duplicates(brain, "summary", "content", "p1")
        assert [(m.id, m.suggestion) for m in matches] == [("b", "skip"), ("d", "merge"), ("a", "review")]

        kwargs = brain.search_similar.await_args.kwargs
        assert kwargs["types"] == ["gather"]
        assert kwargs["limit"] == 5
        assert kwargs["threshold"] == 0.8

    @pytest.mark.asyncio
    async def test_excludes_the_item_itself(self, brain):
        brain.search_similar.return_value = [_hit("12", 0.99), _hit("13", 0.9)]
        matches = await find_duplicates(brain, "s", "c", "p1", exclude_id="12")
        assert [m.id for m in matches] == ["13"]

    @pytest.mark.asyncio
    async def test_search_failure_yields_empty_list(self, brain):
        brain.search_similar.side_effect = SearchError("search unavailable")
        assert await find_duplicates(brain, "s", "c", "p1") == []


# ---------------------------------------------------------------------------
# Tests: extraction
# ---------------------------------------------------------------------------


class TestExtraction:
    def test_html_text(self):
        html = (
            "<html><head><title>Shot list</title></head><body>"
            "<h1>Scene 4</h1><p>Wide shot of the harbour.</p><li>Drone pass</li>"
            "<script>ignored()</script></body></html>"
        )
        text = _extract_html_text(html)
        assert "TITLE: Shot list" in text
        assert "HEADINGS: Scene 4" in text
        assert "Wide shot of the harbour." in text
        assert "ignored" not in text

    @pytest.mark.asyncio
    async def test_image_goes_to_vision(self, llm):
        result = await extract_text(llm, image_url="https://cdn.test/frame.png")
        assert result.text == "Storyboard frame: hero on a rooftop"
        assert result.confidence == 1.0
        llm.describe_media.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_html_document_uses_lxml(self, llm):
        with patch("preprod.enricher._fetch_document",
                   AsyncMock(return_value=("text/html", "<p>Call sheet day 3</p>"))):
            result = await extract_text(llm, document_url="https://docs.test/sheet")
        assert "Call sheet day 3" in result.text
        llm.describe_media.assert_not_called()

    @pytest.mark.asyncio
    async def test_binary_document_goes_to_vision(self, llm):
        with patch("preprod.enricher._fetch_document", AsyncMock(return_value=("application/pdf", ""))):
            result = await extract_text(llm, document_url="https://docs.test/script.pdf")
        assert result.text == "Storyboard frame: hero on a rooftop"

    @pytest.mark.asyncio
    async def test_fetch_failure_degrades(self, llm):
        with patch("preprod.enricher._fetch_document",
                   AsyncMock(side_effect=httpx.ConnectError("refused"))):
            result = await extract_text(llm, document_url="https://docs.test/x")
        assert result.text == ""
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["http://[::1", "http://exa mple.com/doc", "ftp://x/doc.pdf"])
    async def test_malformed_document_url_degrades(self, llm, url):
        result = await extract_text(llm, document_url=url)
        assert result.text == ""
        assert result.confidence == 0.0
        llm.describe_media.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_url_does_not_break_pipeline(self, llm, brain):
        processed = await process_content("notes", "p1", llm, brain, document_url="http://[::1")
        assert processed.extracted_text == ""
        assert processed.enriched_content == "Enriched"


# ---------------------------------------------------------------------------
# Tests: full pipeline
# ---------------------------------------------------------------------------


class TestProcessContent:
    @pytest.mark.asyncio
    async def test_pipeline(self, llm, brain):
        brain.search_similar.return_value = [_hit("5", 0.93)]
        processed = await process_content("Opening scene notes", "p1", llm, brain)

        assert processed.enriched_content == "Enriched"
        assert processed.iteration_count == 1
        assert processed.summary == "A short summary"
        assert processed.context == "A short summary"
        assert processed.extracted_text is None
        assert processed.duplicate_check_score == 0.93
        assert processed.duplicates[0].suggestion == "merge"

    @pytest.mark.asyncio
    async def test_extracted_text_feeds_enrichment(self, llm, brain):
        processed = await process_content(
            "See attached frame", "p1", llm, brain, image_url="https://cdn.test/frame.png",
        )
        assert processed.extracted_text == "Storyboard frame: hero on a rooftop"
        prompt = llm.call.await_args_list[0].args[1]
        assert "extractedText" in prompt
        assert "hero on a rooftop" in prompt

    @pytest.mark.asyncio
    async def test_every_dependency_failing_still_produces_output(self, llm, brain):
        llm.call.side_effect = LLMCallError("down")
        llm.complete.side_effect = LLMCallError("down")
        brain.search_similar.side_effect = SearchError("down")

        processed = await process_content("raw notes", "p1", llm, brain)

        assert processed.enriched_content == "raw notes"
        assert processed.summary == SUMMARY_PLACEHOLDER
        assert processed.context == CONTEXT_PLACEHOLDER
        assert processed.duplicates == []
        assert processed.duplicate_check_score is None
