"""Content patcher: the only component that writes article content."""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field

from citekeeper.db.database import Database
from citekeeper.domains import is_approved_domain
from citekeeper.errors import ApplicationError, NotFoundError
from citekeeper.gate import ConfidenceGate
from citekeeper.models.article import Article, ArticleRevision
from citekeeper.models.citation import HealthStatus
from citekeeper.models.replacement import SuggestionStatus
from citekeeper.patcher.placement import has_inline_citations, place_citations
from citekeeper.revisions import RevisionStore

logger = logging.getLogger(__name__)

# A URL match must not continue into a longer URL.
URL_TAIL = r"(?![\w/%?#=&~+-]|\.\w)"


def _url_variants(url: str) -> list[str]:
    escaped = html.escape(url, quote=True)
    return [url] if escaped == url else [url, escaped]


def replace_url(content: str, old_url: str, new_url: str) -> tuple[str, int]:
    """Swap every occurrence of ``old_url``; returns the new text and the count."""
    total = 0
    for variant in _url_variants(old_url):
        target = new_url if variant == old_url else html.escape(new_url, quote=True)
        content, count = re.subn(re.escape(variant) + URL_TAIL, lambda _: target, content)
        total += count
    return content, total


def unwrap_anchors(content: str, url: str) -> tuple[str, int]:
    """Replace anchors pointing at ``url`` with their inner markup."""
    total = 0
    for variant in _url_variants(url):
        pattern = re.compile(
            r"<a\b[^>]*\bhref=([\"'])" + re.escape(variant) + r"\1[^>]*>(.*?)</a>",
            re.IGNORECASE | re.DOTALL,
        )
        content, count = pattern.subn(lambda m: m.group(2), content)
        total += count
    return content, total


def remove_url(content: str, url: str) -> str:
    for variant in _url_variants(url):
        content = re.sub(re.escape(variant) + URL_TAIL, "", content)
    return content


@dataclass
class ArticleChange:
    article_id: str
    slug: str
    replacements: int


@dataclass
class ApplyResult:
    suggestion_id: str
    changes: list[ArticleChange] = field(default_factory=list)
    preview: bool = False

    @property
    def replacement_count(self) -> int:
        return sum(c.replacements for c in self.changes)

    @property
    def article_ids(self) -> list[str]:
        return [c.article_id for c in self.changes]


def rewrite_article(
    article: Article, old: str, new: str, new_source: str | None = None
) -> tuple[str, list[dict], int]:
    """Compute the content and citation list after swapping one URL.

    When the article already cites the replacement, the old anchors are
    unwrapped and the old entries dropped so the replacement appears once.
    Entries keep their source name unless ``new_source`` is given.
    """
    matches = sum(1 for c in article.citations if c.get("url") == old)

    if article.holds_url(new):
        content, _ = unwrap_anchors(article.content, old)
        content = remove_url(content, old)
        citations = [c for c in article.citations if c.get("url") != old]
        return content, citations, matches

    content, _ = replace_url(article.content, old, new)
    citations = []
    for citation in article.citations:
        if citation.get("url") == old:
            citation = {**citation, "url": new}
            if new_source:
                citation["source"] = new_source
        citations.append(citation)
    return content, citations, matches


class ContentPatcher:
    """Applies approved replacements and injects inline attributions."""

    def __init__(
        self,
        db: Database,
        revisions: RevisionStore,
        gate: ConfidenceGate | None = None,
    ) -> None:
        self.db = db
        self.revisions = revisions
        self.gate = gate or revisions.gate

    async def apply_replacement(
        self, suggestion_id: str, preview: bool = False
    ) -> ApplyResult:
        suggestion = await self.db.get_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFoundError(f"Suggestion {suggestion_id} not found")
        if suggestion.status is not SuggestionStatus.APPROVED:
            raise ApplicationError(
                f"Suggestion {suggestion_id} is {suggestion.status.value}, not approved"
            )

        articles = await self.db.find_articles_citing(suggestion.original_url)
        if not articles:
            raise ApplicationError(
                f"No article cites {suggestion.original_url}; nothing to replace"
            )

        result = ApplyResult(suggestion_id=suggestion_id, preview=preview)
        written: list[tuple[Article, ArticleRevision]] = []
        for article in articles:
            content, citations, count = rewrite_article(
                article,
                suggestion.original_url,
                suggestion.replacement_url,
                suggestion.replacement_source,
            )
            if not preview:
                revision = await self.revisions.snapshot(
                    article,
                    "citation_replacement",
                    f"Replaced citation: {suggestion.original_url}",
                    replacement_id=suggestion.id,
                )
                if not await self.db.update_article_content(
                    article.id, content, citations, expected_version=article.version
                ):
                    await self.db.close_revision(revision.id)
                    await self._undo(written)
                    raise ApplicationError(
                        f"Article {article.slug} changed while applying {suggestion_id}"
                    )
                written.append((article, revision))
                logger.info(
                    "Updated article %s (%d citation(s) replaced)", article.slug, count
                )
            result.changes.append(ArticleChange(article.id, article.slug, count))

        if preview:
            return result

        applied_ids = await self._applied_article_ids(suggestion_id)
        if not await self.db.mark_suggestion_applied(
            suggestion_id, applied_ids, result.replacement_count
        ):
            await self._undo(written)
            raise ApplicationError(f"Suggestion {suggestion_id} left approved concurrently")
        await self.db.mark_health_replaced(suggestion.original_url)
        logger.info(
            "Applied suggestion %s: %d citation(s) in %d article(s)",
            suggestion_id,
            result.replacement_count,
            len(result.changes),
        )
        return result

    async def _undo(self, written: list[tuple[Article, ArticleRevision]]) -> None:
        """Put back articles rewritten earlier in a failed apply."""
        for article, revision in reversed(written):
            await self.db.restore_article(
                article.id, revision.previous_content, revision.previous_citations
            )
            await self.db.close_revision(revision.id)
            logger.warning("Reverted article %s after a failed apply", article.slug)

    async def _applied_article_ids(self, suggestion_id: str) -> list[str]:
        revisions = await self.db.list_revisions(
            replacement_id=suggestion_id, eligible_only=True
        )
        return list(
            dict.fromkeys(
                r.article_id for r in revisions if r.revision_type == "citation_replacement"
            )
        )

    async def update_redirected_citations(self, dry_run: bool = False) -> dict:
        """Point citations recorded as ``redirected`` at their redirect target.

        Targets outside the allow-list are left alone. The health record moves
        to the new URL only when every article citing the old one was updated.
        """
        summary = {
            "redirects": 0,
            "updated_citations": 0,
            "updated_articles": 0,
            "skipped": 0,
            "failed": 0,
            "dry_run": dry_run,
            "results": [],
        }
        for record in await self.db.list_health([HealthStatus.REDIRECTED]):
            old, new = record.url, record.redirect_url
            if not new or new == old:
                continue
            summary["redirects"] += 1
            if not is_approved_domain(new):
                logger.info("Redirect target %s is not approved; leaving %s", new, old)
                summary["skipped"] += 1
                continue

            articles = [
                a for a in await self.db.find_articles_citing(old) if a.status == "published"
            ]
            failures = 0
            for article in articles:
                content, citations, _ = rewrite_article(article, old, new)
                if not dry_run:
                    revision = await self.revisions.snapshot(
                        article, "redirect_update", f"Followed redirect: {old} -> {new}"
                    )
                    if not await self.db.update_article_content(
                        article.id, content, citations, expected_version=article.version
                    ):
                        await self.db.close_revision(revision.id)
                        logger.warning("Article %s changed; redirect not applied", article.slug)
                        failures += 1
                        continue
                summary["updated_articles"] += 1
                summary["results"].append(
                    {"article_id": article.id, "old_url": old, "new_url": new}
                )

            summary["failed"] += failures
            if failures:
                continue
            if not dry_run:
                await self.db.move_health_record(old, new, record.source_name)
            summary["updated_citations"] += 1

        logger.info(
            "Redirect update finished: %d redirect(s), %d article(s) updated, %d failed",
            summary["redirects"],
            summary["updated_articles"],
            summary["failed"],
        )
        return summary

    async def inject_inline_citations(self, article_id: str, dry_run: bool = False) -> dict:
        """Prepend attributions for the article's approved citations.

        Returns a summary with ``status`` one of ``already_processed``,
        ``no_placement`` or ``injected``.
        """
        article = await self.db.get_article(article_id)
        if article is None:
            raise NotFoundError(f"Article {article_id} not found")

        if has_inline_citations(article.content):
            return {"article_id": article_id, "status": "already_processed", "placed": 0}

        placement = place_citations(
            article.content, article.parsed_citations(), article.language
        )
        if not placement.changed:
            return {"article_id": article_id, "status": "no_placement", "placed": 0}

        if not dry_run:
            await self.revisions.snapshot(
                article, "inline_citations", "Injected inline citations"
            )
            written = await self.db.update_article_content(
                article.id, placement.content, article.citations, article.version
            )
            if not written:
                raise ApplicationError(f"Article {article.slug} changed during injection")
            logger.info(
                "Injected %d inline citation(s) into %s",
                len(placement.placements),
                article.slug,
            )
        return {
            "article_id": article_id,
            "status": "injected",
            "placed": len(placement.placements),
        }

    async def backfill_inline_citations(
        self, slugs: list[str] | None = None, dry_run: bool = False
    ) -> dict:
        articles = await self.db.list_articles(status="published", slugs=slugs)
        summary = {
            "processed": 0,
            "already_processed": 0,
            "injected": 0,
            "no_placement": 0,
            "failed": 0,
            "dry_run": dry_run,
        }
        for article in articles:
            summary["processed"] += 1
            try:
                outcome = await self.inject_inline_citations(article.id, dry_run=dry_run)
            except ApplicationError:
                logger.exception("Inline citation backfill failed for %s", article.slug)
                summary["failed"] += 1
                continue
            summary[outcome["status"]] += 1
        logger.info("Backfill finished: %s", summary)
        return summary
