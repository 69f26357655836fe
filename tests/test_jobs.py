"""Tests for batch jobs: partitioning, chunk chaining, failure isolation and recovery."""

from __future__ import annotations

import uuid

import pytest

from citekeeper.engine import build_engine
from citekeeper.errors import NotFoundError
from citekeeper.jobs.coordinator import JobCoordinator, partition
from citekeeper.jobs.queue import ChunkQueue
from citekeeper.models.citation import CitationHealthRecord, HealthStatus
from citekeeper.models.replacement import ChunkStatus, JobStatus, SuggestionStatus, WorkItem

from conftest import FakeOracle, candidate

DEAD = "https://www.boe.es/old-law"
REPLACEMENT = "https://www.agenciatributaria.es/ibi"


def _content(url: str) -> str:
    return f'<h2>Taxes</h2><p>Owners pay IBI every year <a href="{url}">source</a>.</p>'


async def _seed_disallowed(make_article, count: int) -> None:
    for n in range(count):
        url = f"https://blog{n}.example.com/post"
        await make_article(_content(url), [{"url": url, "source": f"Blog {n}"}])


def test_partition():
    items = [WorkItem("a", f"u{n}", "s", "disallowed") for n in range(60)]
    assert [len(c) for c in partition(items, 25)] == [25, 25, 10]
    assert partition([], 25) == []


async def test_end_to_end_replacement_of_dead_citation(db, prober, make_article):
    article = await make_article(_content(DEAD), [{"url": DEAD, "source": "BOE"}])
    await db.record_health(CitationHealthRecord(url=DEAD, status=HealthStatus.BROKEN))
    oracle = FakeOracle([candidate(REPLACEMENT, "Agencia Tributaria", 90, 9)])
    engine = build_engine(db, oracle=oracle, prober=prober, threshold=8.0)

    job_id = await engine.coordinator.start_batch()
    await engine.queue.drain()

    status = await engine.coordinator.get_job_status(job_id)
    assert status["status"] == "completed"
    assert status["auto_applied"] == 1
    assert status["percentage"] == 100

    [applied] = await db.list_suggestions(SuggestionStatus.APPLIED)
    assert applied.confidence_score == 9.0
    assert applied.replacement_url == REPLACEMENT
    updated = await db.get_article(article.id)
    assert REPLACEMENT in updated.content
    assert DEAD not in updated.content
    assert (await db.get_health(DEAD)).status is HealthStatus.REPLACED


async def test_low_confidence_goes_to_manual_review(db, prober, make_article):
    url = "https://randomblog.com/ibi"
    article = await make_article(_content(url), [{"url": url, "source": "Blog"}])
    oracle = FakeOracle([candidate(REPLACEMENT, "Agencia Tributaria", 50, 5)])
    engine = build_engine(db, oracle=oracle, prober=prober, threshold=8.0)

    job_id = await engine.coordinator.start_batch()
    await engine.queue.drain()

    job = await db.get_job(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.manual_review == 1
    assert job.auto_applied == 0
    assert (await db.get_article(article.id)).content == article.content
    [pending] = await db.list_suggestions(SuggestionStatus.SUGGESTED)
    assert pending.original_url == url


async def test_sixty_items_run_as_three_chained_chunks(db, prober, make_article, monkeypatch):
    await _seed_disallowed(make_article, 60)
    engine = build_engine(
        db, oracle=FakeOracle(raw="not json"), prober=prober, chunk_size=25
    )

    finished_over_time = []
    aggregate = db.aggregate_job

    async def recording_aggregate(job_id):
        job = await aggregate(job_id)
        finished_over_time.append(job.finished_chunks)
        return job

    monkeypatch.setattr(db, "aggregate_job", recording_aggregate)

    job_id = await engine.coordinator.start_batch()
    await engine.queue.drain()

    chunks = await db.list_chunks(job_id)
    assert [len(c.items) for c in chunks] == [25, 25, 10]
    assert all(c.status is ChunkStatus.COMPLETED for c in chunks)

    job = await db.get_job(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.total_chunks == 3
    assert job.completed_chunks == 3
    assert job.progress_current == job.progress_total == 60
    assert job.failed == 60
    assert finished_over_time == sorted(finished_over_time)
    assert finished_over_time[-1] == 3


async def test_limit_caps_job_size(db, prober, make_article):
    await _seed_disallowed(make_article, 10)
    engine = build_engine(db, oracle=FakeOracle(raw="[]"), prober=prober, chunk_size=3)

    job_id = await engine.coordinator.start_batch(limit=4)
    await engine.queue.drain()

    job = await db.get_job(job_id)
    assert job.progress_total == 4
    assert job.total_chunks == 2
    assert job.status is JobStatus.COMPLETED


async def test_empty_batch_is_completed_immediately(db, prober):
    engine = build_engine(db, oracle=FakeOracle(), prober=prober)

    job_id = await engine.coordinator.start_batch()

    job = await db.get_job(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.total_chunks == 0
    assert engine.queue.pending == 0


async def test_escaping_exception_fails_only_its_chunk(db, prober, make_article, monkeypatch):
    await _seed_disallowed(make_article, 6)
    engine = build_engine(db, oracle=FakeOracle(raw="[]"), prober=prober, chunk_size=2)

    update = db.update_chunk_progress
    calls = []

    async def failing_first_write(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("disk full")
        return await update(*args, **kwargs)

    monkeypatch.setattr(db, "update_chunk_progress", failing_first_write)

    job_id = await engine.coordinator.start_batch()
    await engine.queue.drain()

    chunks = await db.list_chunks(job_id)
    assert [c.status for c in chunks] == [
        ChunkStatus.FAILED,
        ChunkStatus.COMPLETED,
        ChunkStatus.COMPLETED,
    ]
    assert "disk full" in chunks[0].error_message
    job = await db.get_job(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.failed_chunks == 1
    assert job.completed_chunks == 2


async def test_item_failure_does_not_stop_the_chunk(db, prober, make_article):
    await _seed_disallowed(make_article, 3)

    class FlakyOracle(FakeOracle):
        async def search(self, query):
            if query.original_url.startswith("https://blog1."):
                raise RuntimeError("oracle exploded")
            return await super().search(query)

    oracle = FlakyOracle([candidate(REPLACEMENT, "Agencia Tributaria", 90, 9)])
    engine = build_engine(db, oracle=oracle, prober=prober, threshold=8.0)

    job_id = await engine.coordinator.start_batch()
    await engine.queue.drain()

    job = await db.get_job(job_id)
    assert job.failed == 1
    assert job.auto_applied == 2
    assert job.status is JobStatus.COMPLETED


class TestRecovery:
    @pytest.fixture
    def recorded(self):
        return []

    @pytest.fixture
    def coordinator(self, db, recorded) -> JobCoordinator:
        async def record(job_id):
            recorded.append(job_id)

        return JobCoordinator(db, ChunkQueue(record), chunk_size=2, stale_after_seconds=60)

    async def _stale_chunk(self, db, job_id):
        chunk = await db.next_pending_chunk(job_id)
        token = str(uuid.uuid4())
        assert await db.claim_chunk(chunk.id, token)
        await db.db.execute(
            "UPDATE replacement_chunks SET heartbeat_at = ? WHERE id = ?",
            ("2000-01-01T00:00:00+00:00", chunk.id),
        )
        await db.db.commit()
        return chunk, token

    async def test_stale_chunks_are_listed_and_requeued(
        self, db, coordinator, recorded, make_article
    ):
        await _seed_disallowed(make_article, 4)
        job_id = await coordinator.start_batch()
        await coordinator.queue.drain()
        chunk, token = await self._stale_chunk(db, job_id)

        stale = await coordinator.stale_chunks(job_id)
        assert [c.id for c in stale] == [chunk.id]

        assert await coordinator.requeue_stale_chunks(job_id) == 1
        await coordinator.queue.drain()

        requeued = await db.get_chunk(chunk.id)
        assert requeued.status is ChunkStatus.PENDING
        assert requeued.claim_token is None
        assert recorded == [job_id, job_id]
        # the old invocation can no longer write
        assert not await db.update_chunk_progress(chunk.id, token, 1, {"failed": 1})
        assert not await db.finish_chunk(chunk.id, token, ChunkStatus.COMPLETED)

    async def test_fresh_heartbeat_is_not_stale(self, db, coordinator, make_article):
        await _seed_disallowed(make_article, 2)
        job_id = await coordinator.start_batch()
        chunk = await db.next_pending_chunk(job_id)
        await db.claim_chunk(chunk.id, "token")
        await db.update_chunk_progress(chunk.id, "token", 1, {}, heartbeat=True)

        assert await coordinator.stale_chunks(job_id) == []
        assert await coordinator.requeue_stale_chunks(job_id) == 0

    async def test_resume_running_jobs(self, db, coordinator, recorded, make_article):
        await _seed_disallowed(make_article, 2)
        job_id = await coordinator.start_batch()
        await coordinator.queue.drain()
        recorded.clear()

        assert await coordinator.resume_running_jobs() == 1
        await coordinator.queue.drain()
        assert recorded == [job_id]

    async def test_unknown_job(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.get_job_status("missing")
        with pytest.raises(NotFoundError):
            await coordinator.requeue_stale_chunks("missing")


@pytest.mark.parametrize("interval,expected", [(0, [True, True]), (3600, [False, False])])
async def test_heartbeat_follows_interval(db, prober, make_article, monkeypatch, interval, expected):
    await _seed_disallowed(make_article, 2)
    engine = build_engine(db, oracle=FakeOracle(raw="[]"), prober=prober)
    engine.worker.heartbeat_interval = interval

    beats = []
    update = db.update_chunk_progress

    async def recording_update(*args, heartbeat=False, **kwargs):
        beats.append(heartbeat)
        return await update(*args, heartbeat=heartbeat, **kwargs)

    monkeypatch.setattr(db, "update_chunk_progress", recording_update)

    await engine.coordinator.start_batch()
    await engine.queue.drain()

    assert beats == expected
