"""Confidence gate: scoring and the suggestion state machine."""

from __future__ import annotations

import logging

from citekeeper.config import settings
from citekeeper.db.database import Database
from citekeeper.domains import is_approved_domain
from citekeeper.errors import InvalidTransitionError, NotFoundError, ValidationError
from citekeeper.models.article import Article
from citekeeper.models.replacement import ReplacementSuggestion, SuggestionStatus

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 9.99

ALLOWED_TRANSITIONS: dict[SuggestionStatus, frozenset[SuggestionStatus]] = {
    SuggestionStatus.SUGGESTED: frozenset(
        {SuggestionStatus.APPROVED, SuggestionStatus.REJECTED}
    ),
    SuggestionStatus.APPROVED: frozenset({SuggestionStatus.APPLIED}),
    SuggestionStatus.APPLIED: frozenset({SuggestionStatus.ROLLED_BACK}),
    SuggestionStatus.REJECTED: frozenset(),
    SuggestionStatus.ROLLED_BACK: frozenset(),
}


def compute_confidence(relevance: float, authority: float) -> float:
    """Blend relevance (0-100) and authority (0-10) into a 0-9.99 score."""
    score = (relevance / 10) * 0.4 + authority * 0.6
    return round(min(max(score, 0.0), MAX_CONFIDENCE), 2)


def validate_candidate(suggestion: ReplacementSuggestion, article: Article | None) -> None:
    """Raise ValidationError unless the replacement may enter ``article``."""
    if not is_approved_domain(suggestion.replacement_url):
        raise ValidationError(
            f"Replacement domain not on the allow-list: {suggestion.replacement_url}"
        )
    if suggestion.replacement_url == suggestion.original_url:
        raise ValidationError("Replacement is identical to the original URL")
    if article is not None and article.holds_url(suggestion.replacement_url):
        raise ValidationError(
            f"Article {article.slug} already cites {suggestion.replacement_url}"
        )


class ConfidenceGate:
    """Moves suggestions through suggested → approved → applied → rolled_back."""

    def __init__(self, db: Database, threshold: float | None = None) -> None:
        self.db = db
        self.threshold = threshold if threshold is not None else settings.auto_approve_threshold

    def qualifies(self, confidence: float) -> bool:
        return confidence >= self.threshold

    async def evaluate(
        self, suggestion: ReplacementSuggestion, article: Article | None
    ) -> SuggestionStatus:
        """Auto-approve, reject, or leave a fresh suggestion for review."""
        if suggestion.status is not SuggestionStatus.SUGGESTED:
            raise InvalidTransitionError(
                f"Only suggested entries can be evaluated (got {suggestion.status.value})"
            )
        try:
            validate_candidate(suggestion, article)
        except ValidationError as exc:
            await self.transition(suggestion.id, SuggestionStatus.REJECTED, exc.message)
            logger.info("Rejected suggestion %s: %s", suggestion.id, exc.message)
            return SuggestionStatus.REJECTED

        if not self.qualifies(suggestion.confidence_score):
            logger.info(
                "Suggestion %s left for manual review (confidence %.2f < %.2f)",
                suggestion.id,
                suggestion.confidence_score,
                self.threshold,
            )
            return SuggestionStatus.SUGGESTED

        await self.transition(suggestion.id, SuggestionStatus.APPROVED)
        logger.info(
            "Auto-approved suggestion %s (confidence %.2f)",
            suggestion.id,
            suggestion.confidence_score,
        )
        return SuggestionStatus.APPROVED

    async def approve(self, suggestion_id: str) -> ReplacementSuggestion:
        """Manual approval; re-validates against the allow-list and duplicates."""
        suggestion = await self._get(suggestion_id)
        article = (
            await self.db.get_article(suggestion.article_id) if suggestion.article_id else None
        )
        if suggestion.status is SuggestionStatus.SUGGESTED:
            validate_candidate(suggestion, article)
        await self.transition(suggestion_id, SuggestionStatus.APPROVED)
        return await self._get(suggestion_id)

    async def reject(self, suggestion_id: str, reason: str | None = None) -> ReplacementSuggestion:
        await self.transition(suggestion_id, SuggestionStatus.REJECTED, reason)
        return await self._get(suggestion_id)

    async def transition(
        self,
        suggestion_id: str,
        to_status: SuggestionStatus,
        reason: str | None = None,
    ) -> None:
        suggestion = await self._get(suggestion_id)
        if to_status not in ALLOWED_TRANSITIONS[suggestion.status]:
            raise InvalidTransitionError(
                f"Cannot move suggestion {suggestion_id} from "
                f"{suggestion.status.value} to {to_status.value}"
            )
        moved = await self.db.transition_suggestion(
            suggestion_id, suggestion.status, to_status, reason
        )
        if not moved:
            raise InvalidTransitionError(
                f"Suggestion {suggestion_id} changed status concurrently"
            )

    async def _get(self, suggestion_id: str) -> ReplacementSuggestion:
        suggestion = await self.db.get_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFoundError(f"Suggestion {suggestion_id} not found")
        return suggestion
