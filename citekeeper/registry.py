"""Citation registry: enumerates citations across articles."""

from __future__ import annotations

from citekeeper.domains import is_approved_domain
from citekeeper.models.article import Article
from citekeeper.models.citation import DEAD_STATUSES, HealthStatus
from citekeeper.models.replacement import WorkItem


def distinct_citation_urls(articles: list[Article]) -> dict[str, tuple[str, str]]:
    """Map each distinct citation URL to (source name, language) of its first use."""
    urls: dict[str, tuple[str, str]] = {}
    for article in articles:
        for entry in article.citations:
            url = entry.get("url")
            if url and url not in urls:
                urls[url] = (entry.get("source") or "", article.language)
    return urls


def collect_work_items(
    articles: list[Article],
    health: dict[str, HealthStatus] | None = None,
    limit: int | None = None,
) -> list[WorkItem]:
    """Citations that need a replacement, in article order.

    A citation qualifies when its domain is not approved, or when its latest
    health verdict is broken or unreachable.
    """
    health = health or {}
    items: list[WorkItem] = []
    for article in articles:
        seen: set[str] = set()
        for entry in article.citations:
            url = entry.get("url")
            if not url or url in seen:
                continue
            seen.add(url)
            if not is_approved_domain(url):
                reason = "disallowed"
            elif health.get(url) in DEAD_STATUSES:
                reason = health[url].value
            else:
                continue
            items.append(
                WorkItem(
                    article_id=article.id,
                    url=url,
                    source=entry.get("source") or "Unknown",
                    reason=reason,
                )
            )
            if limit is not None and len(items) >= limit:
                return items
    return items
