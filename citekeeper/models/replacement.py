"""Replacement suggestion, job and chunk data models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum


class SuggestionStatus(Enum):
    SUGGESTED = "suggested"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


class JobStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ReplacementSuggestion:
    """A proposed swap of one citation URL for another."""

    id: str
    original_url: str
    original_source: str
    replacement_url: str
    replacement_source: str
    reason: str
    confidence_score: float
    status: SuggestionStatus = SuggestionStatus.SUGGESTED
    article_id: str | None = None
    relevance_score: int = 0
    authority_score: float = 0.0
    suggested_by: str = "auto"
    applied_to_article_ids: list[str] = field(default_factory=list)
    replacement_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None
    applied_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> ReplacementSuggestion:
        return cls(
            id=row["id"],
            original_url=row["original_url"],
            original_source=row["original_source"],
            replacement_url=row["replacement_url"],
            replacement_source=row["replacement_source"],
            reason=row["reason"],
            confidence_score=row["confidence_score"],
            status=SuggestionStatus(row["status"]),
            article_id=row["article_id"],
            relevance_score=row["relevance_score"],
            authority_score=row["authority_score"],
            suggested_by=row["suggested_by"],
            applied_to_article_ids=json.loads(row["applied_to_json"] or "[]"),
            replacement_count=row["replacement_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            applied_at=row["applied_at"],
        )


@dataclass
class WorkItem:
    """One citation inside one article that needs a replacement."""

    article_id: str
    url: str
    source: str
    reason: str  # "disallowed", "broken" or "unreachable"

    def to_dict(self) -> dict:
        return {
            "article_id": self.article_id,
            "url": self.url,
            "source": self.source,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> WorkItem:
        return cls(
            article_id=data["article_id"],
            url=data["url"],
            source=data.get("source") or "Unknown",
            reason=data.get("reason") or "disallowed",
        )


@dataclass
class ReplacementJob:
    """A batch replacement run split into chunks."""

    id: str
    status: JobStatus
    total_chunks: int
    chunk_size: int
    completed_chunks: int = 0
    failed_chunks: int = 0
    progress_current: int = 0
    progress_total: int = 0
    auto_applied: int = 0
    manual_review: int = 0
    failed: int = 0
    skipped: int = 0
    error_message: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> ReplacementJob:
        return cls(
            id=row["id"],
            status=JobStatus(row["status"]),
            total_chunks=row["total_chunks"],
            chunk_size=row["chunk_size"],
            completed_chunks=row["completed_chunks"],
            failed_chunks=row["failed_chunks"],
            progress_current=row["progress_current"],
            progress_total=row["progress_total"],
            auto_applied=row["auto_applied"],
            manual_review=row["manual_review"],
            failed=row["failed"],
            skipped=row["skipped"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @property
    def finished_chunks(self) -> int:
        return self.completed_chunks + self.failed_chunks

    @property
    def percentage(self) -> int:
        if self.progress_total <= 0:
            return 100 if self.status is JobStatus.COMPLETED else 0
        return round(self.progress_current / self.progress_total * 100)


@dataclass
class ReplacementChunk:
    """A bounded partition of a job's work-items."""

    id: str
    parent_job_id: str
    chunk_number: int
    items: list[WorkItem]
    status: ChunkStatus = ChunkStatus.PENDING
    progress_current: int = 0
    progress_total: int = 0
    auto_applied: int = 0
    manual_review: int = 0
    failed: int = 0
    skipped: int = 0
    claim_token: str | None = None
    heartbeat_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> ReplacementChunk:
        return cls(
            id=row["id"],
            parent_job_id=row["parent_job_id"],
            chunk_number=row["chunk_number"],
            items=[WorkItem.from_dict(i) for i in json.loads(row["items_json"])],
            status=ChunkStatus(row["status"]),
            progress_current=row["progress_current"],
            progress_total=row["progress_total"],
            auto_applied=row["auto_applied"],
            manual_review=row["manual_review"],
            failed=row["failed"],
            skipped=row["skipped"],
            claim_token=row["claim_token"],
            heartbeat_at=row["heartbeat_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error_message=row["error_message"],
        )
