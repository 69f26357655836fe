"""Tests for applying replacements and injecting inline citations."""

from __future__ import annotations

import pytest

from citekeeper.errors import ApplicationError, NotFoundError
from citekeeper.gate import ConfidenceGate
from citekeeper.models.citation import CitationHealthRecord, HealthStatus
from citekeeper.models.replacement import SuggestionStatus
from citekeeper.patcher.patcher import ContentPatcher, remove_url, replace_url, unwrap_anchors
from citekeeper.revisions import RevisionStore

from conftest import suggestion

OLD = "https://www.boe.es/old-law"
NEW = "https://www.boe.es/new-law"


@pytest.fixture
def patcher(db) -> ContentPatcher:
    gate = ConfidenceGate(db, threshold=8.0)
    return ContentPatcher(db, RevisionStore(db, gate), gate)


class TestUrlHelpers:
    def test_replace_respects_url_boundaries(self):
        text = f"<a href=\"{OLD}\">a</a> {OLD}-2 {OLD}/sub {OLD}. {OLD}?q=1 {OLD}"
        replaced, count = replace_url(text, OLD, NEW)

        assert count == 3
        assert replaced == f"<a href=\"{NEW}\">a</a> {OLD}-2 {OLD}/sub {NEW}. {OLD}?q=1 {NEW}"

    def test_replace_handles_escaped_ampersands(self):
        old = "https://www.ine.es/x?a=1&b=2"
        text = '<a href="https://www.ine.es/x?a=1&amp;b=2">INE</a>'
        replaced, count = replace_url(text, old, "https://www.ine.es/y?c=1&d=2")
        assert count == 1
        assert replaced == '<a href="https://www.ine.es/y?c=1&amp;d=2">INE</a>'

    def test_unwrap_and_remove(self):
        text = f'<p>See <a class="c" href="{OLD}">the law</a> and {OLD}.</p>'
        unwrapped, count = unwrap_anchors(text, OLD)
        assert count == 1
        assert unwrapped == f"<p>See the law and {OLD}.</p>"
        assert remove_url(unwrapped, OLD) == "<p>See the law and .</p>"


class TestApplyReplacement:
    async def test_swaps_url_everywhere_and_records_revision(self, db, patcher, make_article):
        content = f'<p>Rules in <a href="{OLD}">BOE</a>.</p><p>Again {OLD}</p>'
        article = await make_article(content, [{"url": OLD, "source": "BOE", "year": 2019}])
        await db.record_health(CitationHealthRecord(url=OLD, status=HealthStatus.BROKEN))
        s = suggestion(OLD, NEW)
        await db.create_suggestion(s)

        result = await patcher.apply_replacement(s.id)

        assert result.replacement_count == 1
        assert result.article_ids == [article.id]
        updated = await db.get_article(article.id)
        assert OLD not in updated.content
        assert updated.content.count(NEW) == 2
        assert updated.citations == [{"url": NEW, "source": "New Source", "year": 2019}]
        assert updated.version == article.version + 1

        stored = await db.get_suggestion(s.id)
        assert stored.status is SuggestionStatus.APPLIED
        assert stored.applied_to_article_ids == [article.id]
        assert stored.replacement_count == 1
        assert stored.applied_at is not None
        assert (await db.get_health(OLD)).status is HealthStatus.REPLACED

        revisions = await db.list_revisions(article_id=article.id)
        assert len(revisions) == 1
        assert revisions[0].previous_content == content
        assert revisions[0].replacement_id == s.id
        assert revisions[0].rollback_eligible

    async def test_touches_every_article_citing_the_url(self, db, patcher, make_article):
        first = await make_article(f'<p><a href="{OLD}">x</a></p>', [{"url": OLD}])
        second = await make_article(f'<p><a href="{OLD}">y</a></p>', [{"url": OLD}])
        untouched = await make_article("<p>z</p>", [{"url": "https://www.ine.es"}])
        s = suggestion(OLD, NEW)
        await db.create_suggestion(s)

        result = await patcher.apply_replacement(s.id)

        assert sorted(result.article_ids) == sorted([first.id, second.id])
        assert (await db.get_article(untouched.id)).version == untouched.version

    async def test_replacement_already_cited_appears_once(self, db, patcher, make_article):
        content = (
            f'<p>Old rule <a href="{OLD}">old</a>.</p>'
            f'<p>New rule <a href="{NEW}">new</a>.</p>'
        )
        article = await make_article(content, [{"url": OLD}, {"url": NEW}])
        s = suggestion(OLD, NEW)
        await db.create_suggestion(s)

        await patcher.apply_replacement(s.id)

        updated = await db.get_article(article.id)
        assert updated.citation_urls() == [NEW]
        assert updated.content.count(NEW) == 1
        assert OLD not in updated.content
        assert "Old rule old." in updated.content

    async def test_requires_approved_suggestion(self, db, patcher, make_article):
        await make_article(f"<p>{OLD}</p>", [{"url": OLD}])
        s = suggestion(OLD, NEW, status=SuggestionStatus.SUGGESTED)
        await db.create_suggestion(s)

        with pytest.raises(ApplicationError):
            await patcher.apply_replacement(s.id)
        assert (await db.get_suggestion(s.id)).status is SuggestionStatus.SUGGESTED

    async def test_no_target_article(self, db, patcher):
        s = suggestion(OLD, NEW)
        await db.create_suggestion(s)

        with pytest.raises(ApplicationError):
            await patcher.apply_replacement(s.id)
        assert (await db.get_suggestion(s.id)).status is SuggestionStatus.APPROVED

    async def test_version_conflict_leaves_suggestion_approved(
        self, db, patcher, make_article, monkeypatch
    ):
        await make_article(f"<p>{OLD}</p>", [{"url": OLD}])
        s = suggestion(OLD, NEW)
        await db.create_suggestion(s)

        async def stale_write(*args, **kwargs):
            return False

        monkeypatch.setattr(db, "update_article_content", stale_write)

        with pytest.raises(ApplicationError):
            await patcher.apply_replacement(s.id)
        assert (await db.get_suggestion(s.id)).status is SuggestionStatus.APPROVED

    async def test_preview_writes_nothing(self, db, patcher, make_article):
        article = await make_article(f"<p>{OLD}</p>", [{"url": OLD}])
        s = suggestion(OLD, NEW)
        await db.create_suggestion(s)

        result = await patcher.apply_replacement(s.id, preview=True)

        assert result.replacement_count == 1
        assert (await db.get_article(article.id)).content == article.content
        assert (await db.get_suggestion(s.id)).status is SuggestionStatus.APPROVED
        assert await db.list_revisions(article_id=article.id) == []

    async def test_unknown_suggestion(self, patcher):
        with pytest.raises(NotFoundError):
            await patcher.apply_replacement("missing")


BODY = (
    "<h2>Rates</h2>"
    "<p>Mortgage interest rates in Spain have changed a lot over recent years.</p>"
)
CITATIONS = [
    {"url": "https://www.bde.es/rates", "source": "Banco de España", "year": 2023,
     "text": "mortgage interest rates"},
]


class TestInlineCitations:
    async def test_injects_once(self, db, patcher, make_article):
        article = await make_article(BODY, CITATIONS)

        first = await patcher.inject_inline_citations(article.id)
        after_first = await db.get_article(article.id)
        second = await patcher.inject_inline_citations(article.id)
        after_second = await db.get_article(article.id)

        assert first == {"article_id": article.id, "status": "injected", "placed": 1}
        assert second["status"] == "already_processed"
        assert after_second.content == after_first.content
        assert after_second.version == after_first.version
        assert 'class="inline-citation"' in after_first.content

        revisions = await db.list_revisions(article_id=article.id)
        assert [r.revision_type for r in revisions] == ["inline_citations"]
        assert revisions[0].previous_content == BODY

    async def test_unknown_article(self, patcher):
        with pytest.raises(NotFoundError):
            await patcher.inject_inline_citations("missing")

    async def test_backfill_counts(self, db, patcher, make_article):
        await make_article(BODY, CITATIONS, slug="fresh")
        await make_article(
            "<p>According to Banco de España (2023), rates rose sharply again.</p>",
            CITATIONS,
            slug="done",
        )
        await make_article("<p>Tiny.</p>", CITATIONS, slug="tiny")
        await make_article(BODY, CITATIONS, slug="draft", status="draft")

        summary = await patcher.backfill_inline_citations()

        assert summary["processed"] == 3
        assert summary["injected"] == 1
        assert summary["already_processed"] == 1
        assert summary["no_placement"] == 1
        assert summary["failed"] == 0

    async def test_backfill_dry_run_and_slug_filter(self, db, patcher, make_article):
        article = await make_article(BODY, CITATIONS, slug="fresh")
        await make_article(BODY, CITATIONS, slug="other")

        summary = await patcher.backfill_inline_citations(slugs=["fresh"], dry_run=True)

        assert summary["processed"] == 1
        assert summary["injected"] == 1
        assert (await db.get_article(article.id)).content == BODY


class TestPartialApply:
    async def test_conflict_on_second_article_reverts_the_first(
        self, db, patcher, make_article, monkeypatch
    ):
        first = await make_article(f'<p><a href="{OLD}">x</a></p>', [{"url": OLD}])
        second = await make_article(f'<p><a href="{OLD}">y</a></p>', [{"url": OLD}])
        await db.record_health(CitationHealthRecord(url=OLD, status=HealthStatus.BROKEN))
        s = suggestion(OLD, NEW)
        await db.create_suggestion(s)

        update = db.update_article_content
        calls = []

        async def conflict_on_second(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                return False
            return await update(*args, **kwargs)

        monkeypatch.setattr(db, "update_article_content", conflict_on_second)

        with pytest.raises(ApplicationError):
            await patcher.apply_replacement(s.id)

        for article in (first, second):
            assert (await db.get_article(article.id)).content == article.content
        assert (await db.get_suggestion(s.id)).status is SuggestionStatus.APPROVED
        assert (await db.get_health(OLD)).status is HealthStatus.BROKEN
        assert await db.list_revisions(replacement_id=s.id, eligible_only=True) == []

        monkeypatch.undo()
        result = await patcher.apply_replacement(s.id)

        stored = await db.get_suggestion(s.id)
        assert sorted(stored.applied_to_article_ids) == sorted([first.id, second.id])
        assert stored.replacement_count == 2
        assert sorted(result.article_ids) == sorted([first.id, second.id])


MOVED = "https://www.ine.es/old-stats"
TARGET = "https://www.ine.es/stats"


class TestRedirects:
    async def _redirect(self, db, target=TARGET):
        await db.record_health(
            CitationHealthRecord(
                url=MOVED,
                status=HealthStatus.REDIRECTED,
                redirect_url=target,
                source_name="INE",
            )
        )

    async def test_follows_redirect_in_published_articles(self, db, patcher, make_article):
        content = f'<p>Prices from <a href="{MOVED}">INE</a>.</p>'
        article = await make_article(content, [{"url": MOVED, "source": "INE", "year": 2022}])
        draft = await make_article(content, [{"url": MOVED}], status="draft")
        await self._redirect(db)

        summary = await patcher.update_redirected_citations()

        assert summary["redirects"] == 1
        assert summary["updated_citations"] == 1
        assert summary["updated_articles"] == 1
        updated = await db.get_article(article.id)
        assert updated.content == f'<p>Prices from <a href="{TARGET}">INE</a>.</p>'
        assert updated.citations == [{"url": TARGET, "source": "INE", "year": 2022}]
        assert (await db.get_article(draft.id)).content == content

        [revision] = await db.list_revisions(article_id=article.id)
        assert revision.revision_type == "redirect_update"
        assert revision.previous_content == content
        assert await db.get_health(MOVED) is None
        moved = await db.get_health(TARGET)
        assert moved.status is HealthStatus.HEALTHY
        assert moved.source_name == "INE"

    async def test_unapproved_target_is_left_alone(self, db, patcher, make_article):
        article = await make_article(f"<p>{MOVED}</p>", [{"url": MOVED}])
        await self._redirect(db, target="https://randomblog.com/stats")

        summary = await patcher.update_redirected_citations()

        assert summary["skipped"] == 1
        assert (await db.get_article(article.id)).content == article.content
        assert (await db.get_health(MOVED)).status is HealthStatus.REDIRECTED

    async def test_conflict_keeps_redirect_record(self, db, patcher, make_article, monkeypatch):
        await make_article(f"<p>{MOVED}</p>", [{"url": MOVED}])
        await self._redirect(db)

        async def stale_write(*args, **kwargs):
            return False

        monkeypatch.setattr(db, "update_article_content", stale_write)

        summary = await patcher.update_redirected_citations()

        assert summary["failed"] == 1
        assert summary["updated_citations"] == 0
        assert (await db.get_health(MOVED)).status is HealthStatus.REDIRECTED

    async def test_dry_run_writes_nothing(self, db, patcher, make_article):
        article = await make_article(f"<p>{MOVED}</p>", [{"url": MOVED}])
        await self._redirect(db)

        summary = await patcher.update_redirected_citations(dry_run=True)

        assert summary["updated_articles"] == 1
        assert (await db.get_article(article.id)).content == article.content
        assert (await db.get_health(MOVED)).status is HealthStatus.REDIRECTED
        assert await db.list_revisions(article_id=article.id) == []
