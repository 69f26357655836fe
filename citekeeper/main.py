"""Citekeeper: FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from citekeeper.config import settings
from citekeeper.db.database import Database
from citekeeper.engine import Engine, build_engine
from citekeeper.errors import (
    ApplicationError,
    CitationEngineError,
    InvalidTransitionError,
    NotFoundError,
    RollbackNotAllowedError,
)
from citekeeper.models.citation import HealthStatus
from citekeeper.models.replacement import ReplacementSuggestion, SuggestionStatus

logger = logging.getLogger(__name__)

db = Database(settings.database_path)
engine: Engine | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await db.connect()
    engine = build_engine(db)
    await engine.coordinator.resume_running_jobs()
    yield
    await engine.queue.shutdown()
    await db.close()


app = FastAPI(
    title="Citekeeper",
    description="Citation lifecycle engine: health probing, replacement and inline attribution",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine() -> Engine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return engine


def _http_error(exc: CitationEngineError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, (InvalidTransitionError, RollbackNotAllowedError, ApplicationError)):
        return HTTPException(status_code=409, detail=exc.message)
    return HTTPException(status_code=400, detail=exc.message)


# --- Request / Response models ---


class HealthRecordResponse(BaseModel):
    url: str
    status: str
    last_checked_at: str | None
    http_status_code: int
    response_time_ms: int
    times_verified: int
    times_failed: int
    redirect_url: str | None
    page_title: str
    source_name: str | None
    language: str | None
    is_government_source: bool


class StartJobRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1)


class StartJobResponse(BaseModel):
    job_id: str


class SuggestionResponse(BaseModel):
    id: str
    original_url: str
    replacement_url: str
    replacement_source: str
    confidence_score: float
    status: str
    applied_to_article_ids: list[str]
    replacement_count: int

    @classmethod
    def from_suggestion(cls, suggestion: ReplacementSuggestion) -> SuggestionResponse:
        return cls(
            id=suggestion.id,
            original_url=suggestion.original_url,
            replacement_url=suggestion.replacement_url,
            replacement_source=suggestion.replacement_source,
            confidence_score=suggestion.confidence_score,
            status=suggestion.status.value,
            applied_to_article_ids=suggestion.applied_to_article_ids,
            replacement_count=suggestion.replacement_count,
        )


class RejectRequest(BaseModel):
    reason: str | None = None


class ApplyRequest(BaseModel):
    suggestion_ids: list[str] = Field(min_length=1)
    preview: bool = False


class ApplyOutcome(BaseModel):
    suggestion_id: str
    applied: bool
    replacement_count: int = 0
    article_ids: list[str] = []
    error: str | None = None


class BackfillRequest(BaseModel):
    slugs: list[str] | None = None
    dry_run: bool = False


class RedirectUpdateRequest(BaseModel):
    dry_run: bool = False


# --- Routes ---


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/citation-health/verify", status_code=202)
async def verify_citation_health():
    """Start a probe cycle over all published citations in the background."""
    asyncio.create_task(_run_verification(get_engine()))
    return {"status": "started"}


@app.post("/api/citation-health/update-redirects")
async def update_redirected_citations(req: RedirectUpdateRequest | None = None):
    """Rewrite citations whose URL now redirects to another approved host."""
    req = req or RedirectUpdateRequest()
    return await get_engine().patcher.update_redirected_citations(dry_run=req.dry_run)


@app.get("/api/citation-health", response_model=list[HealthRecordResponse])
async def list_citation_health(status: str | None = None):
    statuses = None
    if status is not None:
        try:
            statuses = [HealthStatus(status)]
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    records = await get_engine().db.list_health(statuses)
    return [
        HealthRecordResponse(
            url=r.url,
            status=r.status.value,
            last_checked_at=r.last_checked_at,
            http_status_code=r.http_status_code,
            response_time_ms=r.response_time_ms,
            times_verified=r.times_verified,
            times_failed=r.times_failed,
            redirect_url=r.redirect_url,
            page_title=r.page_title,
            source_name=r.source_name,
            language=r.language,
            is_government_source=r.is_government_source,
        )
        for r in records
    ]


@app.post("/api/replacement-jobs", response_model=StartJobResponse)
async def start_replacement_job(req: StartJobRequest | None = None):
    """Create a batch job and return its id before any chunk runs."""
    limit = req.limit if req else None
    try:
        job_id = await get_engine().coordinator.start_batch(limit=limit)
    except CitationEngineError as exc:
        logger.exception("Could not start replacement job")
        raise HTTPException(status_code=500, detail=exc.message) from exc
    return StartJobResponse(job_id=job_id)


@app.get("/api/replacement-jobs/{job_id}")
async def get_replacement_job(job_id: str):
    try:
        return await get_engine().coordinator.get_job_status(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@app.get("/api/replacement-jobs/{job_id}/stale-chunks")
async def get_stale_chunks(job_id: str):
    coordinator = get_engine().coordinator
    if await coordinator.db.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    chunks = await coordinator.stale_chunks(job_id)
    return [
        {
            "chunk_id": c.id,
            "chunk_number": c.chunk_number,
            "heartbeat_at": c.heartbeat_at,
            "progress_current": c.progress_current,
            "progress_total": c.progress_total,
        }
        for c in chunks
    ]


@app.post("/api/replacement-jobs/{job_id}/requeue-stale")
async def requeue_stale_chunks(job_id: str):
    try:
        requeued = await get_engine().coordinator.requeue_stale_chunks(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"requeued": requeued}


@app.get("/api/suggestions", response_model=list[SuggestionResponse])
async def list_suggestions(status: str | None = None, original_url: str | None = None):
    try:
        wanted = SuggestionStatus(status) if status is not None else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    suggestions = await get_engine().db.list_suggestions(wanted, original_url)
    return [SuggestionResponse.from_suggestion(s) for s in suggestions]


@app.post("/api/suggestions/{suggestion_id}/approve", response_model=SuggestionResponse)
async def approve_suggestion(suggestion_id: str):
    try:
        suggestion = await get_engine().gate.approve(suggestion_id)
    except CitationEngineError as exc:
        raise _http_error(exc) from exc
    return SuggestionResponse.from_suggestion(suggestion)


@app.post("/api/suggestions/{suggestion_id}/reject", response_model=SuggestionResponse)
async def reject_suggestion(suggestion_id: str, req: RejectRequest | None = None):
    try:
        suggestion = await get_engine().gate.reject(suggestion_id, req.reason if req else None)
    except CitationEngineError as exc:
        raise _http_error(exc) from exc
    return SuggestionResponse.from_suggestion(suggestion)


@app.post("/api/suggestions/apply", response_model=list[ApplyOutcome])
async def apply_suggestions(req: ApplyRequest):
    """Apply approved suggestions one by one; failures do not stop the rest."""
    patcher = get_engine().patcher
    outcomes = []
    for suggestion_id in req.suggestion_ids:
        try:
            result = await patcher.apply_replacement(suggestion_id, preview=req.preview)
        except CitationEngineError as exc:
            outcomes.append(
                ApplyOutcome(suggestion_id=suggestion_id, applied=False, error=exc.message)
            )
            continue
        outcomes.append(
            ApplyOutcome(
                suggestion_id=suggestion_id,
                applied=not result.preview,
                replacement_count=result.replacement_count,
                article_ids=result.article_ids,
            )
        )
    return outcomes


@app.post("/api/suggestions/{suggestion_id}/rollback")
async def rollback_suggestion(suggestion_id: str):
    try:
        restored = await get_engine().revisions.rollback_replacement(suggestion_id)
    except CitationEngineError as exc:
        raise _http_error(exc) from exc
    return {"suggestion_id": suggestion_id, "restored_article_ids": restored}


@app.post("/api/revisions/{revision_id}/rollback")
async def rollback_revision(revision_id: str):
    try:
        article = await get_engine().revisions.rollback_revision(revision_id)
    except CitationEngineError as exc:
        raise _http_error(exc) from exc
    return {"revision_id": revision_id, "article_id": article.id, "version": article.version}


@app.post("/api/articles/{article_id}/inline-citations")
async def inject_inline_citations(article_id: str):
    try:
        return await get_engine().patcher.inject_inline_citations(article_id)
    except CitationEngineError as exc:
        raise _http_error(exc) from exc


@app.post("/api/articles/inline-citations/backfill")
async def backfill_inline_citations(req: BackfillRequest | None = None):
    req = req or BackfillRequest()
    return await get_engine().patcher.backfill_inline_citations(
        slugs=req.slugs, dry_run=req.dry_run
    )


# --- Background ---


async def _run_verification(current: Engine) -> None:
    try:
        await current.prober.verify_published()
    except Exception:
        logger.exception("Citation health verification failed")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
