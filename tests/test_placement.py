"""Tests for inline citation placement."""

from __future__ import annotations

from citekeeper.models.citation import Citation
from citekeeper.patcher.placement import (
    SECTION_BONUS,
    extract_key_phrases,
    has_inline_citations,
    lead_in,
    place_citations,
    segment,
)

NOTARY = Citation(
    url="https://www.notariado.org/fees",
    source_name="Consejo General del Notariado",
    year=2024,
    relevance_context="notary fees land registry",
)
BANK = Citation(
    url="https://www.bde.es/rates",
    source_name="Banco de España",
    year=2023,
    relevance_context="mortgage interest rates",
)
REGISTRY = Citation(
    url="https://www.registradores.org/charges",
    source_name="Registradores",
    year=2024,
    relevance_context="land registry charges",
)

ONE_SECTION = (
    "<h2>Buying costs</h2>"
    "<p>Notary fees and land registry charges are part of every purchase in Spain.</p>"
    "<p>Mortgage interest rates in Spain have changed a lot over recent years.</p>"
)


class TestPlacement:
    def test_section_bonus_goes_to_first_citation_only(self):
        result = place_citations(ONE_SECTION, [NOTARY, BANK, REGISTRY])

        placed = {p.citation_url: p for p in result.placements}
        assert placed[NOTARY.url].paragraph_index == 0
        assert placed[NOTARY.url].score == 8 + SECTION_BONUS
        assert placed[BANK.url].paragraph_index == 1
        assert placed[BANK.url].score == 10
        assert placed[REGISTRY.url].paragraph_index == 0
        assert placed[REGISTRY.url].score == 10
        assert not any(p.forced for p in result.placements)

    def test_lead_in_is_prepended_to_paragraph_markup(self):
        result = place_citations(ONE_SECTION, [BANK])

        assert (
            '<p>According to <a href="https://www.bde.es/rates" class="inline-citation" '
            'target="_blank" rel="noopener nofollow" title="Source: Banco de España">'
            "Banco de España</a> (2023), Mortgage interest rates" in result.content
        )
        assert result.content.startswith("<h2>Buying costs</h2><p>Notary fees")

    def test_untouched_text_is_preserved(self):
        result = place_citations(ONE_SECTION, [BANK])
        stripped = result.content.replace(
            result.content[result.content.index("According to") : result.content.index("Mortgage")],
            "",
        )
        assert stripped == ONE_SECTION

    def test_short_paragraphs_are_not_eligible(self):
        content = "<p>Too short to cite.</p>"
        result = place_citations(content, [NOTARY])
        assert not result.changed
        assert result.content == content

    def test_paragraph_citing_the_source_is_not_eligible(self):
        content = (
            "<p>Notary fees and land registry charges, see "
            f'<a href="{NOTARY.url}">the notaries</a> for current tables.</p>'
            "<p>Another paragraph long enough to host an attribution of its own.</p>"
        )
        result = place_citations(content, [NOTARY])
        assert result.placements[0].paragraph_index == 1

    def test_fallback_forces_first_citation(self):
        content = (
            "<p>Short.</p>"
            '<p>Seaside walks along the promenade are a local favourite <a href="https://a.es">x</a>.</p>'
            "<p>Sunsets over the bay draw crowds every single evening in summer.</p>"
        )
        unrelated = Citation(url="https://www.agenciatributaria.es/x", source_name="AEAT")
        also_unrelated = Citation(url="https://www.boe.es/x", source_name="BOE")

        result = place_citations(content, [unrelated, also_unrelated])

        assert len(result.placements) == 1
        assert result.placements[0].forced
        assert result.placements[0].paragraph_index == 1
        assert result.skipped == [also_unrelated.url]

    def test_disallowed_citations_are_skipped(self):
        blog = Citation(url="https://randomblog.com/x", source_name="Blog")
        result = place_citations(ONE_SECTION, [blog])
        assert not result.changed
        assert result.skipped == [blog.url]

    def test_sections_follow_h2_positions(self):
        content = (
            "<p>Intro</p><h2>One</h2><p>a</p><p>b</p><h2 id='two'>Two</h2><p>c</p>"
        )
        sections = [p.section for p in segment(content) if not isinstance(p, str)]
        assert sections == [0, 1, 1, 2]

    def test_internal_links_do_not_count_as_citations(self):
        body = "Notary fees and land registry charges are part of every purchase in Spain, see "
        internal = f'<h2>Costs</h2><p>{body}<a href="/blog/costs">our guide</a>.</p>'
        external = f'<h2>Costs</h2><p>{body}<a href="https://www.ine.es/x">INE</a>.</p>'

        assert place_citations(internal, [NOTARY]).placements[0].score == 8 + SECTION_BONUS
        assert place_citations(external, [NOTARY]).placements[0].score == 8

    def test_missing_year_uses_current_year(self):
        undated = Citation(
            url=BANK.url, source_name=BANK.source_name, relevance_context="mortgage"
        )
        result = place_citations(ONE_SECTION, [undated])
        assert "Banco de España</a> (20" in result.content


class TestLeadIns:
    def test_localized(self):
        assert lead_in("<a>X</a>", 2024, "es") == "Según <a>X</a> (2024), "
        assert lead_in("<a>X</a>", 2024, "de") == "Laut <a>X</a> (2024), "

    def test_hungarian_puts_source_first(self):
        assert lead_in("<a>X</a>", 2024, "hu") == "<a>X</a> (2024) szerint, "

    def test_unknown_language_uses_english(self):
        assert lead_in("<a>X</a>", 2024, "xx") == "According to <a>X</a> (2024), "

    def test_hungarian_placement(self):
        result = place_citations(ONE_SECTION, [BANK], language="hu")
        assert "Banco de España</a> (2023) szerint, Mortgage" in result.content


class TestIdempotencyMarker:
    def test_css_class(self):
        assert has_inline_citations('<p><a class="inline-citation" href="x">X</a></p>')

    def test_textual_pattern(self):
        assert has_inline_citations("<p>According to Banco de España (2023), rates rose.</p>")
        assert has_inline_citations("<p>A Banco de España (2023) szerint, a kamatok nőttek.</p>")

    def test_textual_pattern_without_comma(self):
        assert has_inline_citations("<p>According to INE (2023) the average price rose.</p>")
        assert not has_inline_citations("<p>Prices rose in 2023 according to most sources.</p>")

    def test_plain_content(self):
        assert not has_inline_citations(ONE_SECTION)

    def test_placed_content_is_detected(self):
        assert has_inline_citations(place_citations(ONE_SECTION, [BANK]).content)


def test_key_phrases():
    phrases = extract_key_phrases("Mortgage interest rates for the year")
    assert "mortgage" in phrases
    assert "interest rates" in phrases
    assert "mortgage interest rates" in phrases
    assert "the" not in phrases


def test_citation_entries_tolerate_missing_fields():
    citation = Citation.from_dict({"url": "https://www.ine.es/x", "sourceType": "blog"})

    assert citation.source_name == "Unknown"
    assert citation.authority_score == 50
    assert citation.to_dict() == {
        "url": "https://www.ine.es/x",
        "source": "Unknown",
        "year": None,
        "sourceType": "organization",
        "authorityScore": 50,
        "text": "",
    }
