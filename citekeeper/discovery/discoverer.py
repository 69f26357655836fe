"""Replacement discoverer: finds, verifies and scores replacement sources."""

from __future__ import annotations

import asyncio
import logging
import uuid

from citekeeper.db.database import Database
from citekeeper.discovery.context import extract_citation_context, visible_text
from citekeeper.discovery.oracle import KnowledgeOracle, OracleCandidate, OracleQuery
from citekeeper.domains import is_approved_domain, select_category
from citekeeper.errors import DiscoveryError, ValidationError
from citekeeper.gate import compute_confidence
from citekeeper.models.article import Article
from citekeeper.models.replacement import ReplacementSuggestion, SuggestionStatus
from citekeeper.prober import HealthProber

logger = logging.getLogger(__name__)


class ReplacementDiscoverer:
    """Queries the oracle for one dead or disallowed citation.

    Persists every verified candidate as a ``suggested`` row, best first,
    and never touches article content.
    """

    def __init__(
        self,
        db: Database,
        oracle: KnowledgeOracle,
        prober: HealthProber,
        suggested_by: str = "auto",
    ) -> None:
        self.db = db
        self.oracle = oracle
        self.prober = prober
        self.suggested_by = suggested_by

    async def discover(
        self, article: Article, url: str, source: str, reason: str = "broken"
    ) -> list[ReplacementSuggestion]:
        selection = select_category(article.headline, article.funnel_stage, article.language)
        query = OracleQuery(
            original_url=url,
            headline=article.headline,
            context=extract_citation_context(article.content, url) or "",
            language=article.language,
            domains=selection.domains,
            preview=visible_text(article.content),
        )

        result = await self.oracle.search(query)
        if not result.ok:
            raise DiscoveryError(f"Oracle response failed validation: {result.parse_error}")

        candidates = [c for c in result.candidates if self._accept(c, url)]
        probes = await asyncio.gather(
            *[self.prober.probe(c.suggested_url) for c in candidates]
        )
        verified = [c for c, probe in zip(candidates, probes) if probe.is_live]
        logger.info(
            "Oracle returned %d candidates for %s, %d verified",
            len(result.candidates),
            url,
            len(verified),
        )
        if not verified:
            raise DiscoveryError(f"No verified replacement found for {url}")

        suggestions: dict[str, ReplacementSuggestion] = {}
        for candidate in verified:
            confidence = compute_confidence(
                candidate.relevance_score, candidate.authority_score
            )
            existing = suggestions.get(candidate.suggested_url)
            if existing is not None and existing.confidence_score >= confidence:
                continue
            suggestions[candidate.suggested_url] = ReplacementSuggestion(
                id=str(uuid.uuid4()),
                original_url=url,
                original_source=source,
                replacement_url=candidate.suggested_url,
                replacement_source=candidate.source_name,
                reason=candidate.reason or f"Replacement for {reason} citation",
                confidence_score=confidence,
                status=SuggestionStatus.SUGGESTED,
                article_id=article.id,
                relevance_score=candidate.relevance_score,
                authority_score=candidate.authority_score,
                suggested_by=self.suggested_by,
            )

        ranked = sorted(suggestions.values(), key=lambda s: s.confidence_score, reverse=True)
        await self.db.supersede_suggestions(url, [])
        for suggestion in ranked:
            await self.db.create_suggestion(suggestion)
        return ranked

    def _accept(self, candidate: OracleCandidate, original_url: str) -> bool:
        try:
            if candidate.suggested_url == original_url:
                raise ValidationError("Candidate repeats the original URL")
            if not is_approved_domain(candidate.suggested_url):
                raise ValidationError(
                    f"Candidate outside the allow-list: {candidate.suggested_url}"
                )
        except ValidationError as exc:
            logger.debug("Discarding candidate: %s", exc.message)
            return False
        return True
