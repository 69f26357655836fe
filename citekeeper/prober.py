"""Health prober: checks citation URLs for liveness."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass

import httpx

from citekeeper.config import settings
from citekeeper.db.database import Database
from citekeeper.domains import is_government_source, normalize_hostname
from citekeeper.errors import NetworkError
from citekeeper.models.citation import CitationHealthRecord, HealthStatus, LIVE_STATUSES
from citekeeper.registry import distinct_citation_urls

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; CitationHealthBot/1.0)"
TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)


@dataclass
class ProbeResult:
    """Outcome of probing one URL."""

    url: str
    status: HealthStatus
    http_status_code: int = 0
    response_time_ms: int = 0
    redirect_url: str | None = None
    page_title: str = ""
    content_hash: str = ""
    attempts: int = 1
    error: str | None = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


class HealthProber:
    """Probes URLs with a per-attempt deadline and bounded retries.

    Network errors, timeouts and 5xx responses are retried up to
    ``max_retries`` times with doubling backoff before the URL is recorded
    as unreachable. 4xx responses are final.
    """

    def __init__(
        self,
        db: Database | None = None,
        deadline: float | None = None,
        slow_threshold_ms: int | None = None,
        max_retries: int | None = None,
        backoff: float | None = None,
        concurrency: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.db = db
        self.deadline = deadline if deadline is not None else settings.probe_deadline_seconds
        self.slow_threshold_ms = (
            slow_threshold_ms
            if slow_threshold_ms is not None
            else settings.probe_slow_threshold_ms
        )
        self.max_retries = max_retries if max_retries is not None else settings.probe_max_retries
        self.backoff = backoff if backoff is not None else settings.probe_backoff_seconds
        self.concurrency = concurrency or settings.probe_concurrency
        self.transport = transport

    async def probe(self, url: str) -> ProbeResult:
        """Probe one URL and classify it. Never raises for network trouble."""
        last_error: NetworkError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                result = await self._attempt(url)
                result.attempts = attempt + 1
                return result
            except NetworkError as exc:
                last_error = exc
                logger.debug("Probe attempt %d for %s failed: %s", attempt + 1, url, exc)
            if attempt < self.max_retries:
                await asyncio.sleep(self.backoff * (2**attempt))

        logger.info("Giving up on %s after %d attempts", url, self.max_retries + 1)
        return ProbeResult(
            url=url,
            status=HealthStatus.UNREACHABLE,
            http_status_code=last_error.status_code if last_error else 0,
            response_time_ms=int(self.deadline * 1000),
            attempts=self.max_retries + 1,
            error=last_error.message if last_error else None,
        )

    async def _attempt(self, url: str) -> ProbeResult:
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(self._fetch(url), timeout=self.deadline)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"Probe exceeded {self.deadline}s deadline", exc) from exc
        elapsed_ms = int((time.monotonic() - started) * 1000)

        code = response.status_code
        if code >= 500:
            raise NetworkError(f"Server error {code}", status_code=code)
        if 400 <= code < 500:
            return ProbeResult(
                url=url,
                status=HealthStatus.BROKEN,
                http_status_code=code,
                response_time_ms=elapsed_ms,
            )

        final_url = str(response.url)
        if response.history and normalize_hostname(final_url) != normalize_hostname(url):
            status = HealthStatus.REDIRECTED
        elif 200 <= code < 300:
            slow = elapsed_ms >= self.slow_threshold_ms
            status = HealthStatus.SLOW if slow else HealthStatus.HEALTHY
        else:
            status = HealthStatus.BROKEN

        page_title, content_hash = "", ""
        if 200 <= code < 300 and "text/html" in response.headers.get("content-type", ""):
            text = response.text
            match = TITLE_RE.search(text)
            page_title = match.group(1).strip() if match else ""
            content_hash = hashlib.sha256(text[:5000].encode()).hexdigest()

        return ProbeResult(
            url=url,
            status=status,
            http_status_code=code,
            response_time_ms=elapsed_ms,
            redirect_url=final_url if status is HealthStatus.REDIRECTED else None,
            page_title=page_title,
            content_hash=content_hash,
        )

    async def _fetch(self, url: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=self.deadline,
                headers={"User-Agent": USER_AGENT},
                transport=self.transport,
            ) as client:
                return await client.get(url)
        except httpx.HTTPError as exc:
            raise NetworkError(f"{type(exc).__name__}: {exc}", exc) from exc

    # -- Probe cycles --

    async def check_urls(
        self, urls: dict[str, tuple[str, str]]
    ) -> list[ProbeResult]:
        """Probe many URLs in parallel and record each verdict.

        ``urls`` maps URL to (source name, language) for the health record.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(url: str) -> ProbeResult:
            async with semaphore:
                result = await self.probe(url)
            if self.db is not None:
                source_name, language = urls[url]
                await self.db.record_health(
                    CitationHealthRecord(
                        url=url,
                        status=result.status,
                        http_status_code=result.http_status_code,
                        response_time_ms=result.response_time_ms,
                        redirect_url=result.redirect_url,
                        page_title=result.page_title,
                        content_hash=result.content_hash,
                        source_name=source_name or None,
                        language=language or None,
                        is_government_source=is_government_source(url),
                    )
                )
            return result

        return await asyncio.gather(*[_one(u) for u in urls])

    async def verify_published(self) -> dict:
        """Probe every distinct citation URL across published articles."""
        if self.db is None:
            raise RuntimeError("verify_published() needs a database")

        articles = await self.db.list_articles(status="published")
        urls = distinct_citation_urls(articles)
        logger.info("Verifying %d unique citation URLs", len(urls))

        results = await self.check_urls(urls)
        by_url = {r.url: r for r in results}

        for article in articles:
            checked = [by_url[u] for u in article.citation_urls() if u in by_url]
            if not checked:
                continue
            live = sum(1 for r in checked if r.is_live)
            has_dead = any(
                r.status in (HealthStatus.BROKEN, HealthStatus.UNREACHABLE) for r in checked
            )
            await self.db.update_article_health(article.id, live / len(checked), has_dead)

        counts = Counter(r.status.value for r in results)
        summary = {"total_checked": len(results)}
        summary.update({status.value: counts.get(status.value, 0) for status in HealthStatus})
        logger.info("Verification complete: %s", summary)
        return summary
