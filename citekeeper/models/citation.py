"""Citation and citation-health data models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SourceType(Enum):
    GOVERNMENT = "government"
    NEWS = "news"
    LEGAL = "legal"
    ACADEMIC = "academic"
    ORGANIZATION = "organization"
    COMMERCIAL = "commercial"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    SLOW = "slow"
    REDIRECTED = "redirected"
    BROKEN = "broken"
    UNREACHABLE = "unreachable"
    REPLACED = "replaced"


# Statuses that make a citation a replacement candidate.
DEAD_STATUSES = frozenset({HealthStatus.BROKEN, HealthStatus.UNREACHABLE})

# Statuses under which a URL still serves its content.
LIVE_STATUSES = frozenset(
    {HealthStatus.HEALTHY, HealthStatus.SLOW, HealthStatus.REDIRECTED}
)


@dataclass
class Citation:
    """An external source cited by an article."""

    url: str
    source_name: str
    source_type: SourceType = SourceType.ORGANIZATION
    authority_score: int = 50
    year: int | None = None
    relevance_context: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Citation:
        """Build a citation from an entry of an article's denormalized list."""
        try:
            source_type = SourceType(data.get("sourceType") or "organization")
        except ValueError:
            source_type = SourceType.ORGANIZATION
        year = data.get("year")
        return cls(
            url=data["url"],
            source_name=data.get("source") or "Unknown",
            source_type=source_type,
            authority_score=int(data.get("authorityScore") or 50),
            year=int(year) if year else None,
            relevance_context=data.get("text") or "",
        )

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "source": self.source_name,
            "year": self.year,
            "sourceType": self.source_type.value,
            "authorityScore": self.authority_score,
            "text": self.relevance_context,
        }


@dataclass
class CitationHealthRecord:
    """Latest liveness verdict for a citation URL."""

    url: str
    status: HealthStatus
    last_checked_at: str | None = None
    http_status_code: int = 0
    response_time_ms: int = 0
    times_verified: int = 0
    times_failed: int = 0
    redirect_url: str | None = None
    page_title: str = ""
    content_hash: str = ""
    source_name: str | None = None
    language: str | None = None
    is_government_source: bool = False

    @classmethod
    def from_row(cls, row: dict) -> CitationHealthRecord:
        return cls(
            url=row["url"],
            status=HealthStatus(row["status"]),
            last_checked_at=row["last_checked_at"],
            http_status_code=row["http_status_code"] or 0,
            response_time_ms=row["response_time_ms"] or 0,
            times_verified=row["times_verified"] or 0,
            times_failed=row["times_failed"] or 0,
            redirect_url=row["redirect_url"],
            page_title=row["page_title"] or "",
            content_hash=row["content_hash"] or "",
            source_name=row["source_name"],
            language=row["language"],
            is_government_source=bool(row["is_government_source"]),
        )
