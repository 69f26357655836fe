"""Inline citation placement inside article HTML.

Content is split into ``<p>`` paragraphs, each tagged with the level-2
section it falls in. Every citation goes to the eligible paragraph whose
text best overlaps the citation's keywords, with a bonus for sections that
hold no citation yet. The attribution is prepended to the paragraph's
existing markup; nothing else in the document changes.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from citekeeper.discovery.context import visible_text
from citekeeper.domains import is_approved_domain
from citekeeper.models.citation import Citation

logger = logging.getLogger(__name__)

INLINE_CLASS = "inline-citation"
MIN_PARAGRAPH_CHARS = 50
SECTION_BONUS = 10

PARAGRAPH_RE = re.compile(r"(<p\b[^>]*>)(.*?)(</p>)", re.IGNORECASE | re.DOTALL)
H2_RE = re.compile(r"<h2\b[^>]*>", re.IGNORECASE)
WORD_RE = re.compile(r"\w+", re.UNICODE)

LEAD_INS = {
    "en": "According to",
    "es": "Según",
    "de": "Laut",
    "nl": "Volgens",
    "fr": "Selon",
    "sv": "Enligt",
    "da": "Ifølge",
    "no": "Ifølge",
    "pl": "Według",
    "hu": "szerint",
}

# Languages whose lead-in word follows the source.
POSTPOSITIVE_LANGUAGES = frozenset({"hu"})

STOP_WORDS = frozenset(
    {
        "the", "and", "for", "about", "with", "this", "that", "from", "claims",
        "support", "evidence", "into", "their", "there", "which", "these",
        "those", "have", "been", "will", "when", "what", "your", "than",
    }
)

# Domain vocabulary recognized as whole phrases in citation context.
DOMAIN_LEXICON = frozenset(
    {
        "real estate", "property tax", "inheritance tax", "capital gains",
        "wealth tax", "income tax", "land registry", "golden visa",
        "digital nomad visa", "non-resident", "residency permit", "nie number",
        "notary", "mortgage", "interest rate", "interest rates", "deposit",
        "community fees", "cost of living", "rental yield", "rental income",
        "tourist license", "holiday rental", "new build", "resale",
        "energy certificate", "building permit", "healthcare", "public health",
        "international schools", "climate", "sunshine hours", "tourism",
        "visitors", "airport", "passenger", "population", "statistics",
        "inflation", "house prices", "property prices", "market", "euribor",
    }
)


def lead_in(link_html: str, year: int, language: str) -> str:
    """Localized attribution to prepend to a paragraph."""
    word = LEAD_INS.get(language, LEAD_INS["en"])
    if language in POSTPOSITIVE_LANGUAGES:
        return f"{link_html} ({year}) {word}, "
    return f"{word} {link_html} ({year}), "


def citation_link(citation: Citation) -> str:
    source = html.escape(citation.source_name)
    return (
        f'<a href="{html.escape(citation.url, quote=True)}" class="{INLINE_CLASS}" '
        f'target="_blank" rel="noopener nofollow" title="Source: {source}">{source}</a>'
    )


def _lead_in_pattern() -> re.Pattern:
    prepositive = "|".join(
        re.escape(w) for lang, w in LEAD_INS.items() if lang not in POSTPOSITIVE_LANGUAGES
    )
    postpositive = "|".join(
        re.escape(w) for lang, w in LEAD_INS.items() if lang in POSTPOSITIVE_LANGUAGES
    )
    return re.compile(
        rf"(?:\b(?:{prepositive}) [^()]{{1,120}}? \((?:19|20)\d{{2}}\),?)"
        rf"|(?:\((?:19|20)\d{{2}}\) (?:{postpositive})\b)"
    )


INLINE_PATTERN = _lead_in_pattern()
EXTERNAL_HREF = re.compile(r"\bhref=[\"']https?://", re.IGNORECASE)


def has_inline_citations(content: str) -> bool:
    """True when the content already carries an inline attribution."""
    if f'class="{INLINE_CLASS}"' in content:
        return True
    return bool(INLINE_PATTERN.search(visible_text(content)))


def extract_key_phrases(text: str) -> list[str]:
    """Single keywords plus two- and three-word phrases from ``text``."""
    words = [w.lower() for w in WORD_RE.findall(text or "")]
    keywords = [w for w in words if len(w) > 3 and w not in STOP_WORDS]
    phrases: list[str] = []
    for i in range(len(words) - 1):
        two = f"{words[i]} {words[i + 1]}"
        if len(two) > 8:
            phrases.append(two)
        if i < len(words) - 2:
            three = f"{two} {words[i + 2]}"
            if len(three) > 12:
                phrases.append(three)
    return list(dict.fromkeys(keywords + phrases))


def citation_keywords(citation: Citation) -> list[str]:
    text = f"{citation.relevance_context} {citation.source_name}".lower()
    lexicon = sorted(term for term in DOMAIN_LEXICON if re.search(rf"\b{re.escape(term)}\b", text))
    return list(dict.fromkeys(lexicon + extract_key_phrases(citation.relevance_context or citation.source_name)))


def keyword_score(keywords: list[str], paragraph_text: str) -> int:
    """Overlap score; longer phrases weigh more."""
    haystack = paragraph_text.lower()
    return sum(len(kw.split()) for kw in keywords if kw in haystack)


@dataclass
class Paragraph:
    index: int
    section: int
    open_tag: str
    inner: str
    close_tag: str
    text: str  # visible text before any injection

    def cites(self, citation: Citation) -> bool:
        if citation.url in self.inner or html.escape(citation.url, quote=True) in self.inner:
            return True
        return f'title="Source: {html.escape(citation.source_name)}"' in self.inner

    def has_citation(self) -> bool:
        if f'class="{INLINE_CLASS}"' in self.inner:
            return True
        return bool(EXTERNAL_HREF.search(self.inner))

    def render(self) -> str:
        return f"{self.open_tag}{self.inner}{self.close_tag}"


@dataclass
class Placement:
    citation_url: str
    paragraph_index: int
    section: int
    score: int
    forced: bool = False


@dataclass
class PlacementResult:
    content: str
    placements: list[Placement] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.placements)


def segment(content: str) -> list[str | Paragraph]:
    """Split content into interleaved raw strings and paragraphs."""
    h2_starts = [m.start() for m in H2_RE.finditer(content)]
    pieces: list[str | Paragraph] = []
    cursor = 0
    for index, match in enumerate(PARAGRAPH_RE.finditer(content)):
        pieces.append(content[cursor : match.start()])
        section = sum(1 for pos in h2_starts if pos < match.start())
        pieces.append(
            Paragraph(
                index=index,
                section=section,
                open_tag=match.group(1),
                inner=match.group(2),
                close_tag=match.group(3),
                text=visible_text(match.group(2)),
            )
        )
        cursor = match.end()
    pieces.append(content[cursor:])
    return pieces


def place_citations(
    content: str, citations: list[Citation], language: str = "en"
) -> PlacementResult:
    """Inject one attribution per citation where it fits best.

    Paragraphs shorter than ``MIN_PARAGRAPH_CHARS`` visible characters, or
    already citing the same source, are not eligible. When no paragraph
    scores above zero for the first citation, it is forced into the first
    eligible paragraph.
    """
    valid = [c for c in citations if c.url and c.source_name and is_approved_domain(c.url)]
    if not valid:
        return PlacementResult(content=content, skipped=[c.url for c in citations])

    pieces = segment(content)
    paragraphs = [p for p in pieces if isinstance(p, Paragraph)]
    sections_with_citations = {p.section for p in paragraphs if p.has_citation()}
    result = PlacementResult(content=content)
    current_year = datetime.now(timezone.utc).year

    for position, citation in enumerate(valid):
        keywords = citation_keywords(citation)
        eligible = [
            p for p in paragraphs if len(p.text) >= MIN_PARAGRAPH_CHARS and not p.cites(citation)
        ]

        best: Paragraph | None = None
        best_score = 0
        for paragraph in eligible:
            score = keyword_score(keywords, paragraph.text)
            if paragraph.section not in sections_with_citations:
                score += SECTION_BONUS
            if score > best_score:
                best, best_score = paragraph, score

        forced = False
        if best is None and position == 0 and eligible:
            best, forced = eligible[0], True

        if best is None:
            logger.debug("No suitable paragraph for %s", citation.source_name)
            result.skipped.append(citation.url)
            continue

        phrase = lead_in(citation_link(citation), citation.year or current_year, language)
        best.inner = phrase + best.inner
        sections_with_citations.add(best.section)
        result.placements.append(
            Placement(
                citation_url=citation.url,
                paragraph_index=best.index,
                section=best.section,
                score=best_score,
                forced=forced,
            )
        )

    if result.placements:
        result.content = "".join(
            p.render() if isinstance(p, Paragraph) else p for p in pieces
        )
    logger.info(
        "Placed %d of %d citations across %d sections",
        len(result.placements),
        len(valid),
        len({p.section for p in result.placements}),
    )
    return result
