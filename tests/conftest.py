"""Shared fixtures: temporary database, fake oracle and mock HTTP transports."""

from __future__ import annotations

import json
import uuid

import httpx
import pytest

from citekeeper.db.database import Database
from citekeeper.discovery.oracle import OracleQuery, OracleResult, parse_candidates
from citekeeper.models.replacement import ReplacementSuggestion, SuggestionStatus
from citekeeper.prober import HealthProber

HTML = "<html><head><title>Official page</title></head><body>ok</body></html>"


# ============================================================================
# Fakes
# ============================================================================


class FakeOracle:
    """Returns a canned response and records every query it receives."""

    def __init__(self, candidates: list[dict] | None = None, raw: str | None = None) -> None:
        self.raw = raw if raw is not None else json.dumps(candidates or [])
        self.queries: list[OracleQuery] = []

    async def search(self, query: OracleQuery) -> OracleResult:
        self.queries.append(query)
        return parse_candidates(self.raw)


def status_transport(statuses: dict[str, int] | None = None) -> httpx.MockTransport:
    """Answer each URL with its mapped status code; anything else is 200."""
    statuses = statuses or {}

    def handler(request: httpx.Request) -> httpx.Response:
        code = statuses.get(str(request.url), 200)
        return httpx.Response(code, headers={"content-type": "text/html"}, text=HTML)

    return httpx.MockTransport(handler)


def candidate(url: str, source: str, relevance: int = 90, authority: float = 9) -> dict:
    return {
        "suggestedUrl": url,
        "sourceName": source,
        "relevanceScore": relevance,
        "authorityScore": authority,
        "reason": f"{source} covers the same facts",
    }


def suggestion(
    original_url: str,
    replacement_url: str,
    status: SuggestionStatus = SuggestionStatus.APPROVED,
    confidence: float = 9.0,
    article_id: str | None = None,
) -> ReplacementSuggestion:
    return ReplacementSuggestion(
        id=str(uuid.uuid4()),
        original_url=original_url,
        original_source="Old Source",
        replacement_url=replacement_url,
        replacement_source="New Source",
        reason="test",
        confidence_score=confidence,
        status=status,
        article_id=article_id,
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "citekeeper-test.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def prober(db) -> HealthProber:
    """Prober whose every URL answers 200 with an HTML page."""
    return HealthProber(
        db,
        deadline=2,
        max_retries=1,
        backoff=0,
        concurrency=4,
        transport=status_transport(),
    )


@pytest.fixture
def make_article(db):
    """Factory creating a published article with the given citations."""

    async def _make(
        content: str,
        citations: list[dict],
        slug: str | None = None,
        headline: str = "Property tax in Spain explained",
        language: str = "en",
        funnel_stage: str = "BOFU",
        status: str = "published",
    ):
        article_id = await db.create_article(
            slug=slug or f"article-{uuid.uuid4().hex[:8]}",
            headline=headline,
            content=content,
            citations=citations,
            language=language,
            funnel_stage=funnel_stage,
            status=status,
        )
        return await db.get_article(article_id)

    return _make
