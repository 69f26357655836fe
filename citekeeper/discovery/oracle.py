"""Knowledge-search oracle: Perplexity chat completions via httpx."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as SchemaError

from citekeeper.config import settings
from citekeeper.errors import DiscoveryError

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "de": "German",
    "nl": "Dutch",
    "fr": "French",
    "sv": "Swedish",
    "da": "Danish",
    "no": "Norwegian",
    "fi": "Finnish",
    "pl": "Polish",
    "hu": "Hungarian",
}

SYSTEM_PROMPT = """\
You are an expert research assistant finding authoritative replacement sources \
for citations in published articles. Return only a valid JSON array.\
"""

USER_PROMPT = """\
Find 3-5 HIGH-QUALITY alternative sources to replace this broken or disallowed link.

Original link: {original_url}
Article topic: "{headline}"
Context in article: {context}
Language required: {language_name}

Article preview:
{preview}

REQUIREMENTS:
- ALL sources MUST be in {language_name}
- Sources MUST come from these domains only: {domains}
- Sources must be currently accessible and HIGHLY RELEVANT to the context
- Prefer sources published within the last 3 years

Return ONLY a JSON array in this exact format:
[
  {{
    "suggestedUrl": "https://example.gob.es/...",
    "sourceName": "Official Source Name",
    "relevanceScore": 95,
    "authorityScore": 9,
    "reason": "Why this source is a good replacement"
  }}
]\
"""


class OracleCandidate(BaseModel):
    """One ranked candidate as returned by the oracle."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    suggested_url: str = Field(alias="suggestedUrl", min_length=1)
    source_name: str = Field(alias="sourceName", min_length=1)
    relevance_score: int = Field(alias="relevanceScore", ge=0, le=100)
    authority_score: float = Field(alias="authorityScore", ge=0, le=10)
    reason: str = ""

    @field_validator("suggested_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("suggestedUrl must be an http(s) URL")
        return value


_CANDIDATES = TypeAdapter(list[OracleCandidate])


@dataclass
class OracleQuery:
    original_url: str
    headline: str
    context: str
    language: str
    domains: list[str]
    preview: str = ""


@dataclass
class OracleResult:
    """Validated oracle output, or the reason validation failed."""

    candidates: list[OracleCandidate] = field(default_factory=list)
    parse_error: str | None = None
    raw_response: str = ""

    @property
    def ok(self) -> bool:
        return self.parse_error is None


@runtime_checkable
class KnowledgeOracle(Protocol):
    """Interface for anything that ranks replacement sources."""

    async def search(self, query: OracleQuery) -> OracleResult:
        """Return candidates restricted to ``query.domains``."""
        ...


def parse_candidates(raw_text: str) -> OracleResult:
    """Validate the oracle's text against the candidate schema."""
    text = raw_text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    try:
        candidates = _CANDIDATES.validate_json(text)
    except SchemaError as exc:
        return OracleResult(
            parse_error=f"{exc.error_count()} schema error(s): {exc.errors()[0]['msg']}",
            raw_response=raw_text,
        )
    return OracleResult(candidates=candidates, raw_response=raw_text)


class PerplexityOracle:
    """Oracle backed by Perplexity's search-grounded chat completions."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.perplexity_api_key
        self.model = model or settings.oracle_model
        self.url = url or settings.oracle_url
        self.timeout = timeout or settings.oracle_timeout
        self.transport = transport

    async def search(self, query: OracleQuery) -> OracleResult:
        if not self.api_key:
            raise DiscoveryError("Perplexity API key is not configured")

        language_name = LANGUAGE_NAMES.get(query.language, "English")
        user_content = USER_PROMPT.format(
            original_url=query.original_url,
            headline=query.headline,
            context=query.context or "General reference",
            language_name=language_name,
            preview=query.preview[:1000],
            domains=", ".join(query.domains),
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": SYSTEM_PROMPT},
                            {"role": "user", "content": user_content},
                        ],
                        "search_domain_filter": query.domains,
                        "temperature": 0.2,
                        "max_tokens": 2000,
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DiscoveryError(f"Oracle request failed: {exc}", exc) from exc

        try:
            raw_text = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            return OracleResult(parse_error=f"Malformed oracle envelope: {exc!r}")

        result = parse_candidates(raw_text)
        if not result.ok:
            logger.warning("Oracle response failed validation: %s", result.parse_error)
        return result
