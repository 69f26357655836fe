"""SQLite database layer via aiosqlite."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import aiosqlite

from citekeeper.models.article import Article, ArticleRevision
from citekeeper.models.citation import CitationHealthRecord, HealthStatus
from citekeeper.models.replacement import (
    ChunkStatus,
    JobStatus,
    ReplacementChunk,
    ReplacementJob,
    ReplacementSuggestion,
    SuggestionStatus,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS articles (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    headline TEXT NOT NULL,
    language TEXT NOT NULL DEFAULT 'en',
    funnel_stage TEXT NOT NULL DEFAULT 'MOFU',
    status TEXT NOT NULL DEFAULT 'published',
    content TEXT NOT NULL DEFAULT '',
    citations_json TEXT NOT NULL DEFAULT '[]',
    version INTEGER NOT NULL DEFAULT 1,
    citation_health_score REAL,
    has_dead_citations INTEGER NOT NULL DEFAULT 0,
    last_citation_check_at TEXT,
    date_modified TEXT
);

CREATE TABLE IF NOT EXISTS citation_health (
    url TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    last_checked_at TEXT,
    http_status_code INTEGER NOT NULL DEFAULT 0,
    response_time_ms INTEGER NOT NULL DEFAULT 0,
    times_verified INTEGER NOT NULL DEFAULT 0,
    times_failed INTEGER NOT NULL DEFAULT 0,
    redirect_url TEXT,
    page_title TEXT,
    content_hash TEXT,
    source_name TEXT,
    language TEXT,
    is_government_source INTEGER NOT NULL DEFAULT 0,
    status_before_replaced TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS replacement_suggestions (
    id TEXT PRIMARY KEY,
    original_url TEXT NOT NULL,
    original_source TEXT NOT NULL,
    replacement_url TEXT NOT NULL,
    replacement_source TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    confidence_score REAL NOT NULL,
    status TEXT NOT NULL,
    article_id TEXT REFERENCES articles(id),
    relevance_score INTEGER NOT NULL DEFAULT 0,
    authority_score REAL NOT NULL DEFAULT 0,
    suggested_by TEXT NOT NULL DEFAULT 'auto',
    applied_to_json TEXT NOT NULL DEFAULT '[]',
    replacement_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    applied_at TEXT
);

CREATE TABLE IF NOT EXISTS article_revisions (
    id TEXT PRIMARY KEY,
    article_id TEXT NOT NULL REFERENCES articles(id),
    revision_type TEXT NOT NULL,
    previous_content TEXT NOT NULL,
    previous_citations_json TEXT NOT NULL DEFAULT '[]',
    reason TEXT,
    rollback_eligible INTEGER NOT NULL DEFAULT 1,
    replacement_id TEXT REFERENCES replacement_suggestions(id),
    rollback_expires_at TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS replacement_jobs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    total_chunks INTEGER NOT NULL,
    chunk_size INTEGER NOT NULL,
    completed_chunks INTEGER NOT NULL DEFAULT 0,
    failed_chunks INTEGER NOT NULL DEFAULT 0,
    progress_current INTEGER NOT NULL DEFAULT 0,
    progress_total INTEGER NOT NULL DEFAULT 0,
    auto_applied INTEGER NOT NULL DEFAULT 0,
    manual_review INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS replacement_chunks (
    id TEXT PRIMARY KEY,
    parent_job_id TEXT NOT NULL REFERENCES replacement_jobs(id),
    chunk_number INTEGER NOT NULL,
    items_json TEXT NOT NULL,
    status TEXT NOT NULL,
    progress_current INTEGER NOT NULL DEFAULT 0,
    progress_total INTEGER NOT NULL DEFAULT 0,
    auto_applied INTEGER NOT NULL DEFAULT 0,
    manual_review INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    claim_token TEXT,
    heartbeat_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    error_message TEXT,
    UNIQUE (parent_job_id, chunk_number)
);
"""


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Async SQLite database for articles, citation health and replacement work."""

    def __init__(self, path: str = "citekeeper.db") -> None:
        self.path = path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Database not connected; call connect() first")
        return self._db

    async def _fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = await self.db.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self.db.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # -- Articles --

    async def create_article(
        self,
        slug: str,
        headline: str,
        content: str,
        citations: list[dict] | None = None,
        language: str = "en",
        funnel_stage: str = "MOFU",
        status: str = "published",
    ) -> str:
        article_id = str(uuid.uuid4())
        await self.db.execute(
            "INSERT INTO articles (id, slug, headline, language, funnel_stage, status, "
            "content, citations_json, date_modified) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                article_id,
                slug,
                headline,
                language,
                funnel_stage,
                status,
                content,
                json.dumps(citations or []),
                utcnow(),
            ),
        )
        await self.db.commit()
        return article_id

    async def get_article(self, article_id: str) -> Article | None:
        row = await self._fetchone("SELECT * FROM articles WHERE id = ?", (article_id,))
        return Article.from_row(row) if row else None

    async def list_articles(
        self, status: str | None = "published", slugs: list[str] | None = None
    ) -> list[Article]:
        sql = "SELECT * FROM articles"
        clauses: list[str] = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if slugs:
            clauses.append(f"slug IN ({', '.join('?' for _ in slugs)})")
            params.extend(slugs)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY slug"
        rows = await self._fetchall(sql, tuple(params))
        return [Article.from_row(r) for r in rows]

    async def find_articles_citing(self, url: str) -> list[Article]:
        """Articles whose denormalized citation list holds ``url``."""
        rows = await self._fetchall(
            "SELECT * FROM articles WHERE citations_json LIKE ? ORDER BY slug",
            (f"%{url}%",),
        )
        articles = [Article.from_row(r) for r in rows]
        return [a for a in articles if a.holds_url(url)]

    async def update_article_content(
        self,
        article_id: str,
        content: str,
        citations: list[dict],
        expected_version: int,
    ) -> bool:
        """Write content if the article is still at ``expected_version``.

        Returns False when another writer got there first.
        """
        now = utcnow()
        cursor = await self.db.execute(
            "UPDATE articles SET content = ?, citations_json = ?, version = version + 1, "
            "date_modified = ? WHERE id = ? AND version = ?",
            (content, json.dumps(citations), now, article_id, expected_version),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def restore_article(
        self, article_id: str, content: str, citations: list[dict]
    ) -> None:
        await self.db.execute(
            "UPDATE articles SET content = ?, citations_json = ?, version = version + 1, "
            "date_modified = ? WHERE id = ?",
            (content, json.dumps(citations), utcnow(), article_id),
        )
        await self.db.commit()

    async def update_article_health(
        self, article_id: str, score: float, has_dead: bool
    ) -> None:
        await self.db.execute(
            "UPDATE articles SET citation_health_score = ?, has_dead_citations = ?, "
            "last_citation_check_at = ? WHERE id = ?",
            (score, int(has_dead), utcnow(), article_id),
        )
        await self.db.commit()

    # -- Citation health --

    async def record_health(self, record: CitationHealthRecord) -> None:
        """Insert or update the health record for one URL.

        ``times_verified`` always increments; ``times_failed`` increments for
        broken and unreachable verdicts.
        """
        failed = int(record.status in (HealthStatus.BROKEN, HealthStatus.UNREACHABLE))
        now = utcnow()
        await self.db.execute(
            """
            INSERT INTO citation_health (
                url, status, last_checked_at, http_status_code, response_time_ms,
                times_verified, times_failed, redirect_url, page_title, content_hash,
                source_name, language, is_government_source, updated_at
            ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(url) DO UPDATE SET
                status = excluded.status,
                last_checked_at = excluded.last_checked_at,
                http_status_code = excluded.http_status_code,
                response_time_ms = excluded.response_time_ms,
                times_verified = citation_health.times_verified + 1,
                times_failed = citation_health.times_failed + excluded.times_failed,
                redirect_url = excluded.redirect_url,
                page_title = excluded.page_title,
                content_hash = excluded.content_hash,
                source_name = COALESCE(excluded.source_name, citation_health.source_name),
                language = COALESCE(excluded.language, citation_health.language),
                is_government_source = excluded.is_government_source,
                status_before_replaced = NULL,
                updated_at = excluded.updated_at
            """,
            (
                record.url,
                record.status.value,
                now,
                record.http_status_code,
                record.response_time_ms,
                failed,
                record.redirect_url,
                record.page_title,
                record.content_hash,
                record.source_name,
                record.language,
                int(record.is_government_source),
                now,
            ),
        )
        await self.db.commit()

    async def get_health(self, url: str) -> CitationHealthRecord | None:
        row = await self._fetchone("SELECT * FROM citation_health WHERE url = ?", (url,))
        return CitationHealthRecord.from_row(row) if row else None

    async def list_health(
        self, statuses: list[HealthStatus] | None = None
    ) -> list[CitationHealthRecord]:
        if statuses:
            placeholders = ", ".join("?" for _ in statuses)
            rows = await self._fetchall(
                f"SELECT * FROM citation_health WHERE status IN ({placeholders}) ORDER BY url",
                tuple(s.value for s in statuses),
            )
        else:
            rows = await self._fetchall("SELECT * FROM citation_health ORDER BY url")
        return [CitationHealthRecord.from_row(r) for r in rows]

    async def mark_health_replaced(self, url: str) -> None:
        """Mark ``url`` replaced, remembering the verdict it had before."""
        await self.db.execute(
            "UPDATE citation_health SET status_before_replaced = CASE WHEN status = ? "
            "THEN status_before_replaced ELSE status END, status = ?, updated_at = ? "
            "WHERE url = ?",
            (HealthStatus.REPLACED.value, HealthStatus.REPLACED.value, utcnow(), url),
        )
        await self.db.commit()

    async def restore_health_status(self, url: str) -> bool:
        """Undo ``mark_health_replaced``. Returns False if there was nothing to undo."""
        cursor = await self.db.execute(
            "UPDATE citation_health SET status = status_before_replaced, "
            "status_before_replaced = NULL, updated_at = ? "
            "WHERE url = ? AND status = ? AND status_before_replaced IS NOT NULL",
            (utcnow(), url, HealthStatus.REPLACED.value),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def move_health_record(
        self, old_url: str, new_url: str, source_name: str | None
    ) -> None:
        """Drop the record for ``old_url`` and start a healthy one for ``new_url``."""
        now = utcnow()
        await self.db.execute("DELETE FROM citation_health WHERE url = ?", (old_url,))
        await self.db.execute(
            "INSERT OR IGNORE INTO citation_health (url, status, last_checked_at, "
            "source_name, updated_at) VALUES (?, ?, ?, ?, ?)",
            (new_url, HealthStatus.HEALTHY.value, now, source_name, now),
        )
        await self.db.commit()

    # -- Replacement suggestions --

    async def create_suggestion(self, suggestion: ReplacementSuggestion) -> str:
        now = utcnow()
        await self.db.execute(
            "INSERT INTO replacement_suggestions (id, original_url, original_source, "
            "replacement_url, replacement_source, reason, confidence_score, status, "
            "article_id, relevance_score, authority_score, suggested_by, created_at, "
            "updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                suggestion.id,
                suggestion.original_url,
                suggestion.original_source,
                suggestion.replacement_url,
                suggestion.replacement_source,
                suggestion.reason,
                suggestion.confidence_score,
                suggestion.status.value,
                suggestion.article_id,
                suggestion.relevance_score,
                suggestion.authority_score,
                suggestion.suggested_by,
                now,
                now,
            ),
        )
        await self.db.commit()
        return suggestion.id

    async def get_suggestion(self, suggestion_id: str) -> ReplacementSuggestion | None:
        row = await self._fetchone(
            "SELECT * FROM replacement_suggestions WHERE id = ?", (suggestion_id,)
        )
        return ReplacementSuggestion.from_row(row) if row else None

    async def list_suggestions(
        self,
        status: SuggestionStatus | None = None,
        original_url: str | None = None,
    ) -> list[ReplacementSuggestion]:
        clauses: list[str] = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if original_url is not None:
            clauses.append("original_url = ?")
            params.append(original_url)
        sql = "SELECT * FROM replacement_suggestions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, confidence_score DESC"
        rows = await self._fetchall(sql, tuple(params))
        return [ReplacementSuggestion.from_row(r) for r in rows]

    async def transition_suggestion(
        self,
        suggestion_id: str,
        from_status: SuggestionStatus,
        to_status: SuggestionStatus,
        reason: str | None = None,
    ) -> bool:
        """Compare-and-set a suggestion's status. Returns False if it moved."""
        cursor = await self.db.execute(
            "UPDATE replacement_suggestions SET status = ?, reason = COALESCE(?, reason), "
            "updated_at = ? WHERE id = ? AND status = ?",
            (to_status.value, reason, utcnow(), suggestion_id, from_status.value),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def mark_suggestion_applied(
        self, suggestion_id: str, article_ids: list[str], replacement_count: int
    ) -> bool:
        now = utcnow()
        cursor = await self.db.execute(
            "UPDATE replacement_suggestions SET status = ?, applied_to_json = ?, "
            "replacement_count = ?, applied_at = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (
                SuggestionStatus.APPLIED.value,
                json.dumps(article_ids),
                replacement_count,
                now,
                now,
                suggestion_id,
                SuggestionStatus.APPROVED.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def supersede_suggestions(self, original_url: str, keep_ids: list[str]) -> int:
        """Reject still-open suggestions for ``original_url`` not in ``keep_ids``."""
        placeholders = ", ".join("?" for _ in keep_ids) or "''"
        cursor = await self.db.execute(
            "UPDATE replacement_suggestions SET status = ?, "
            "reason = 'Superseded by a newer discovery cycle', updated_at = ? "
            f"WHERE original_url = ? AND status = ? AND id NOT IN ({placeholders})",
            (
                SuggestionStatus.REJECTED.value,
                utcnow(),
                original_url,
                SuggestionStatus.SUGGESTED.value,
                *keep_ids,
            ),
        )
        await self.db.commit()
        return cursor.rowcount

    # -- Revisions --

    async def create_revision(self, revision: ArticleRevision) -> str:
        await self.db.execute(
            "INSERT INTO article_revisions (id, article_id, revision_type, previous_content, "
            "previous_citations_json, reason, rollback_eligible, replacement_id, "
            "rollback_expires_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                revision.id,
                revision.article_id,
                revision.revision_type,
                revision.previous_content,
                json.dumps(revision.previous_citations),
                revision.reason,
                int(revision.rollback_eligible),
                revision.replacement_id,
                revision.rollback_expires_at,
                revision.created_at or utcnow(),
            ),
        )
        await self.db.commit()
        return revision.id

    async def get_revision(self, revision_id: str) -> ArticleRevision | None:
        row = await self._fetchone(
            "SELECT * FROM article_revisions WHERE id = ?", (revision_id,)
        )
        return ArticleRevision.from_row(row) if row else None

    async def list_revisions(
        self,
        article_id: str | None = None,
        replacement_id: str | None = None,
        eligible_only: bool = False,
    ) -> list[ArticleRevision]:
        clauses: list[str] = []
        params: list = []
        if article_id is not None:
            clauses.append("article_id = ?")
            params.append(article_id)
        if replacement_id is not None:
            clauses.append("replacement_id = ?")
            params.append(replacement_id)
        if eligible_only:
            clauses.append("rollback_eligible = 1")
        sql = "SELECT * FROM article_revisions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at"
        rows = await self._fetchall(sql, tuple(params))
        return [ArticleRevision.from_row(r) for r in rows]

    async def close_revision(self, revision_id: str) -> None:
        await self.db.execute(
            "UPDATE article_revisions SET rollback_eligible = 0 WHERE id = ?",
            (revision_id,),
        )
        await self.db.commit()

    # -- Jobs and chunks --

    async def create_job_with_chunks(
        self, job: ReplacementJob, chunks: list[ReplacementChunk]
    ) -> None:
        """Persist a job and all of its chunks in one transaction."""
        now = utcnow()
        try:
            await self.db.execute(
                "INSERT INTO replacement_jobs (id, status, total_chunks, chunk_size, "
                "progress_total, completed_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.status.value,
                    job.total_chunks,
                    job.chunk_size,
                    job.progress_total,
                    now if job.status is JobStatus.COMPLETED else None,
                    now,
                    now,
                ),
            )
            await self.db.executemany(
                "INSERT INTO replacement_chunks (id, parent_job_id, chunk_number, "
                "items_json, status, progress_total) VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (
                        c.id,
                        c.parent_job_id,
                        c.chunk_number,
                        json.dumps([i.to_dict() for i in c.items]),
                        c.status.value,
                        len(c.items),
                    )
                    for c in chunks
                ],
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def get_job(self, job_id: str) -> ReplacementJob | None:
        row = await self._fetchone("SELECT * FROM replacement_jobs WHERE id = ?", (job_id,))
        return ReplacementJob.from_row(row) if row else None

    async def list_jobs(self, status: JobStatus | None = None) -> list[ReplacementJob]:
        if status is not None:
            rows = await self._fetchall(
                "SELECT * FROM replacement_jobs WHERE status = ? ORDER BY created_at",
                (status.value,),
            )
        else:
            rows = await self._fetchall("SELECT * FROM replacement_jobs ORDER BY created_at")
        return [ReplacementJob.from_row(r) for r in rows]

    async def aggregate_job(self, job_id: str) -> ReplacementJob | None:
        """Recompute a job's counters from its chunk rows."""
        totals = await self._fetchone(
            """
            SELECT
                COALESCE(SUM(status = 'completed'), 0) AS completed_chunks,
                COALESCE(SUM(status = 'failed'), 0) AS failed_chunks,
                COALESCE(SUM(progress_current), 0) AS progress_current,
                COALESCE(SUM(auto_applied), 0) AS auto_applied,
                COALESCE(SUM(manual_review), 0) AS manual_review,
                COALESCE(SUM(failed), 0) AS failed,
                COALESCE(SUM(skipped), 0) AS skipped
            FROM replacement_chunks WHERE parent_job_id = ?
            """,
            (job_id,),
        )
        await self.db.execute(
            "UPDATE replacement_jobs SET completed_chunks = ?, failed_chunks = ?, "
            "progress_current = ?, auto_applied = ?, manual_review = ?, failed = ?, "
            "skipped = ?, updated_at = ? WHERE id = ?",
            (
                totals["completed_chunks"],
                totals["failed_chunks"],
                totals["progress_current"],
                totals["auto_applied"],
                totals["manual_review"],
                totals["failed"],
                totals["skipped"],
                utcnow(),
                job_id,
            ),
        )
        await self.db.commit()
        return await self.get_job(job_id)

    async def complete_job(self, job_id: str) -> None:
        now = utcnow()
        await self.db.execute(
            "UPDATE replacement_jobs SET status = ?, completed_at = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (JobStatus.COMPLETED.value, now, now, job_id, JobStatus.RUNNING.value),
        )
        await self.db.commit()

    async def get_chunk(self, chunk_id: str) -> ReplacementChunk | None:
        row = await self._fetchone(
            "SELECT * FROM replacement_chunks WHERE id = ?", (chunk_id,)
        )
        return ReplacementChunk.from_row(row) if row else None

    async def list_chunks(
        self, job_id: str, status: ChunkStatus | None = None
    ) -> list[ReplacementChunk]:
        if status is not None:
            rows = await self._fetchall(
                "SELECT * FROM replacement_chunks WHERE parent_job_id = ? AND status = ? "
                "ORDER BY chunk_number",
                (job_id, status.value),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM replacement_chunks WHERE parent_job_id = ? ORDER BY chunk_number",
                (job_id,),
            )
        return [ReplacementChunk.from_row(r) for r in rows]

    async def next_pending_chunk(self, job_id: str) -> ReplacementChunk | None:
        row = await self._fetchone(
            "SELECT * FROM replacement_chunks WHERE parent_job_id = ? AND status = ? "
            "ORDER BY chunk_number LIMIT 1",
            (job_id, ChunkStatus.PENDING.value),
        )
        return ReplacementChunk.from_row(row) if row else None

    async def claim_chunk(self, chunk_id: str, claim_token: str) -> bool:
        """Move a pending chunk to processing under ``claim_token``."""
        now = utcnow()
        cursor = await self.db.execute(
            "UPDATE replacement_chunks SET status = ?, claim_token = ?, started_at = ?, "
            "heartbeat_at = ? WHERE id = ? AND status = ?",
            (
                ChunkStatus.PROCESSING.value,
                claim_token,
                now,
                now,
                chunk_id,
                ChunkStatus.PENDING.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def update_chunk_progress(
        self,
        chunk_id: str,
        claim_token: str,
        progress_current: int,
        counters: dict[str, int],
        heartbeat: bool = False,
    ) -> bool:
        sql = (
            "UPDATE replacement_chunks SET progress_current = ?, auto_applied = ?, "
            "manual_review = ?, failed = ?, skipped = ?"
        )
        params: list = [
            progress_current,
            counters.get("auto_applied", 0),
            counters.get("manual_review", 0),
            counters.get("failed", 0),
            counters.get("skipped", 0),
        ]
        if heartbeat:
            sql += ", heartbeat_at = ?"
            params.append(utcnow())
        sql += " WHERE id = ? AND claim_token = ? AND status = ?"
        params.extend([chunk_id, claim_token, ChunkStatus.PROCESSING.value])
        cursor = await self.db.execute(sql, tuple(params))
        await self.db.commit()
        return cursor.rowcount == 1

    async def finish_chunk(
        self,
        chunk_id: str,
        claim_token: str,
        status: ChunkStatus,
        error_message: str | None = None,
    ) -> bool:
        now = utcnow()
        cursor = await self.db.execute(
            "UPDATE replacement_chunks SET status = ?, completed_at = ?, heartbeat_at = ?, "
            "error_message = ? WHERE id = ? AND claim_token = ? AND status = ?",
            (
                status.value,
                now,
                now,
                error_message,
                chunk_id,
                claim_token,
                ChunkStatus.PROCESSING.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def requeue_chunk(self, chunk_id: str, error_message: str) -> bool:
        """Return a processing chunk to pending and void its current claim."""
        cursor = await self.db.execute(
            "UPDATE replacement_chunks SET status = ?, claim_token = NULL, "
            "progress_current = 0, auto_applied = 0, manual_review = 0, failed = 0, "
            "skipped = 0, started_at = NULL, error_message = ? WHERE id = ? AND status = ?",
            (
                ChunkStatus.PENDING.value,
                error_message,
                chunk_id,
                ChunkStatus.PROCESSING.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount == 1
