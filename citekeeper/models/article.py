"""Article and article-revision data models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from citekeeper.models.citation import Citation


@dataclass
class Article:
    """A published piece of content whose body embeds citations.

    ``citations`` is the denormalized list kept beside the HTML ``content``;
    ``version`` guards concurrent writes.
    """

    id: str
    slug: str
    headline: str
    content: str
    citations: list[dict] = field(default_factory=list)
    language: str = "en"
    funnel_stage: str = "MOFU"
    status: str = "published"
    version: int = 1
    citation_health_score: float | None = None
    has_dead_citations: bool = False
    date_modified: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> Article:
        return cls(
            id=row["id"],
            slug=row["slug"],
            headline=row["headline"],
            content=row["content"],
            citations=json.loads(row["citations_json"] or "[]"),
            language=row["language"],
            funnel_stage=row["funnel_stage"],
            status=row["status"],
            version=row["version"],
            citation_health_score=row["citation_health_score"],
            has_dead_citations=bool(row["has_dead_citations"]),
            date_modified=row["date_modified"],
        )

    def parsed_citations(self) -> list[Citation]:
        return [Citation.from_dict(c) for c in self.citations if c.get("url")]

    def citation_urls(self) -> list[str]:
        return [c["url"] for c in self.citations if c.get("url")]

    def holds_url(self, url: str) -> bool:
        return url in self.citation_urls()


@dataclass
class ArticleRevision:
    """Pre-mutation snapshot of an article."""

    id: str
    article_id: str
    revision_type: str
    previous_content: str
    previous_citations: list[dict] = field(default_factory=list)
    reason: str = ""
    rollback_eligible: bool = True
    replacement_id: str | None = None
    rollback_expires_at: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> ArticleRevision:
        return cls(
            id=row["id"],
            article_id=row["article_id"],
            revision_type=row["revision_type"],
            previous_content=row["previous_content"],
            previous_citations=json.loads(row["previous_citations_json"] or "[]"),
            reason=row["reason"] or "",
            rollback_eligible=bool(row["rollback_eligible"]),
            replacement_id=row["replacement_id"],
            rollback_expires_at=row["rollback_expires_at"],
            created_at=row["created_at"],
        )
