"""Article revision snapshots and rollback."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from citekeeper.config import settings
from citekeeper.db.database import Database
from citekeeper.errors import NotFoundError, RollbackNotAllowedError
from citekeeper.gate import ConfidenceGate
from citekeeper.models.article import Article, ArticleRevision
from citekeeper.models.replacement import SuggestionStatus

logger = logging.getLogger(__name__)


class RevisionStore:
    """Snapshots articles before mutation and restores them on demand."""

    def __init__(
        self,
        db: Database,
        gate: ConfidenceGate | None = None,
        window_hours: float | None = None,
    ) -> None:
        self.db = db
        self.gate = gate or ConfidenceGate(db)
        self.window_hours = (
            window_hours if window_hours is not None else settings.rollback_window_hours
        )

    async def snapshot(
        self,
        article: Article,
        revision_type: str,
        reason: str,
        replacement_id: str | None = None,
    ) -> ArticleRevision:
        now = datetime.now(timezone.utc)
        revision = ArticleRevision(
            id=str(uuid.uuid4()),
            article_id=article.id,
            revision_type=revision_type,
            previous_content=article.content,
            previous_citations=list(article.citations),
            reason=reason,
            rollback_eligible=True,
            replacement_id=replacement_id,
            rollback_expires_at=(now + timedelta(hours=self.window_hours)).isoformat(),
            created_at=now.isoformat(),
        )
        await self.db.create_revision(revision)
        logger.debug("Snapshot %s of article %s (%s)", revision.id, article.slug, revision_type)
        return revision

    async def rollback_revision(self, revision_id: str) -> Article:
        """Restore the article captured by one revision."""
        revision = await self.db.get_revision(revision_id)
        if revision is None:
            raise NotFoundError(f"Revision {revision_id} not found")
        article = await self._restore(revision)

        if revision.replacement_id:
            suggestion = await self.db.get_suggestion(revision.replacement_id)
            if suggestion is not None and suggestion.status is SuggestionStatus.APPLIED:
                await self.gate.transition(suggestion.id, SuggestionStatus.ROLLED_BACK)
                await self._reopen_health(suggestion.original_url)
        return article

    async def rollback_replacement(self, suggestion_id: str) -> list[str]:
        """Restore every article touched by an applied replacement.

        Returns the ids of the restored articles.
        """
        suggestion = await self.db.get_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFoundError(f"Suggestion {suggestion_id} not found")
        if suggestion.status is not SuggestionStatus.APPLIED:
            raise RollbackNotAllowedError(
                f"Suggestion {suggestion_id} is {suggestion.status.value}, not applied"
            )

        revisions = await self.db.list_revisions(
            replacement_id=suggestion_id, eligible_only=True
        )
        if not revisions:
            raise RollbackNotAllowedError(
                f"No rollback-eligible revisions for suggestion {suggestion_id}"
            )
        for revision in revisions:
            self._check_window(revision)

        restored = []
        for revision in revisions:
            article = await self._restore(revision)
            restored.append(article.id)

        await self.gate.transition(suggestion_id, SuggestionStatus.ROLLED_BACK)
        await self._reopen_health(suggestion.original_url)
        logger.info(
            "Rolled back suggestion %s across %d article(s)", suggestion_id, len(restored)
        )
        return restored

    async def _reopen_health(self, url: str) -> None:
        if await self.db.restore_health_status(url):
            logger.info("Health record for %s reverted to its pre-replacement status", url)

    def _check_window(self, revision: ArticleRevision) -> None:
        if not revision.rollback_eligible:
            raise RollbackNotAllowedError(f"Revision {revision.id} cannot be rolled back")
        if revision.rollback_expires_at:
            expires = datetime.fromisoformat(revision.rollback_expires_at)
            if datetime.now(timezone.utc) > expires:
                raise RollbackNotAllowedError(
                    f"Rollback period for revision {revision.id} has expired "
                    f"({self.window_hours:g} hours limit)"
                )

    async def _restore(self, revision: ArticleRevision) -> Article:
        self._check_window(revision)
        article = await self.db.get_article(revision.article_id)
        if article is None:
            raise NotFoundError(f"Article {revision.article_id} not found")

        await self.db.create_revision(
            ArticleRevision(
                id=str(uuid.uuid4()),
                article_id=article.id,
                revision_type="rollback",
                previous_content=article.content,
                previous_citations=list(article.citations),
                reason=f"Rolled back revision {revision.id}",
                rollback_eligible=False,
            )
        )
        await self.db.restore_article(
            article.id, revision.previous_content, revision.previous_citations
        )
        await self.db.close_revision(revision.id)
        logger.info("Restored article %s from revision %s", article.slug, revision.id)
        return await self.db.get_article(article.id)
