"""Approved citation domains and topical category selection.

One base table per discovery category, with per-language overrides layered
on top. The allow-list is the union of every category table plus the
general-purpose approved domains below.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# The oracle accepts at most this many domains in a search filter.
MAX_DOMAINS_PER_QUERY = 20

CATEGORIES = ("government", "news", "realEstate", "tourism", "financial")

BASE_CATEGORY_DOMAINS: dict[str, list[str]] = {
    "government": [
        "boe.es",
        "agenciatributaria.es",
        "exteriores.gob.es",
        "juntadeandalucia.es",
        "gov.uk",
        "gov.ie",
        "dfa.ie",
        "registradores.org",
        "notariado.org",
        "catastro.gob.es",
        "ine.es",
        "cnmc.es",
        "e-justice.europa.eu",
        "europa.eu",
        "extranjeria.administracionespublicas.gob.es",
        "mjusticia.gob.es",
    ],
    "news": [
        "surinenglish.com",
        "euroweeklynews.com",
        "theolivepress.es",
        "essentialmagazine.com",
        "andaluciatoday.com",
        "thelocal.es",
        "expatica.com",
        "inspain.news",
        "eyeonspain.com",
        "thinkspain.com",
    ],
    "realEstate": [
        "kyero.com",
        "propertyguides.com",
        "aplaceinthesun.com",
        "spanishpropertyinsight.com",
        "costaluzlawyers.es",
        "abogadoespanol.com",
        "legalservicesinspain.com",
        "lexidy.com",
        "idealista.com",
        "fotocasa.es",
    ],
    "tourism": [
        "spain.info",
        "andalucia.org",
        "visitcostadelsol.com",
        "malagaturismo.com",
        "andalucia.com",
        "worldtravelguide.net",
        "museosdemalaga.com",
        "marbella.es",
        "fuengirola.es",
        "mijas.es",
        "estepona.es",
    ],
    "financial": [
        "bde.es",
        "ecb.europa.eu",
        "imf.org",
        "numbeo.com",
        "fred.stlouisfed.org",
        "ine.es",
        "catastro.gob.es",
    ],
}

# Languages only list the categories they narrow; anything missing falls
# back to the base table.
LANGUAGE_OVERRIDES: dict[str, dict[str, list[str]]] = {
    "es": {
        "government": [
            "boe.es",
            "agenciatributaria.es",
            "exteriores.gob.es",
            "juntadeandalucia.es",
            "registradores.org",
            "notariado.org",
            "catastro.gob.es",
            "ine.es",
            "cnmc.es",
            "e-justice.europa.eu",
            "marbella.es",
            "fuengirola.es",
            "mijas.es",
            "estepona.es",
        ],
        "financial": ["bde.es", "ecb.europa.eu", "numbeo.com", "ine.es"],
    },
    "hu": {
        "government": [
            "boe.es",
            "agenciatributaria.es",
            "exteriores.gob.es",
            "juntadeandalucia.es",
            "registradores.org",
            "notariado.org",
            "e-justice.europa.eu",
            "europa.eu",
        ],
        "news": [
            "surinenglish.com",
            "euroweeklynews.com",
            "theolivepress.es",
            "andaluciatoday.com",
        ],
        "realEstate": [
            "idealista.com",
            "kyero.com",
            "costaluzlawyers.es",
            "legalservicesinspain.com",
            "lexidy.com",
        ],
    },
}

# Approved for citation but never used to steer discovery.
GENERAL_APPROVED_DOMAINS = [
    "wikipedia.org",
    "aemet.es",
    "wmo.int",
    "weatherspark.com",
    "nhs.uk",
    "citizensinformation.ie",
    "uma.es",
    "britishcouncil.es",
    "aena.es",
    "renfe.com",
    "caa.co.uk",
    "schengenvisainfo.com",
    "internations.org",
]

GOVERNMENT_MARKERS = (".gov", ".gob.", ".edu", "europa.eu")


def normalize_hostname(url: str) -> str:
    """Return the lower-cased hostname of ``url`` without a ``www.`` prefix."""
    try:
        hostname = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return re.sub(r"^www\.", "", hostname.lower())


def _matches(hostname: str, domain: str) -> bool:
    domain = domain.lower()
    return hostname == domain or hostname.endswith(f".{domain}")


def domains_for(language: str, category: str) -> list[str]:
    """Resolve the allow-listed domains for one category in one language."""
    if category not in BASE_CATEGORY_DOMAINS:
        raise ValueError(f"Unknown domain category: {category}")
    overrides = LANGUAGE_OVERRIDES.get(language, {})
    domains = overrides.get(category) or BASE_CATEGORY_DOMAINS[category]
    return domains[:MAX_DOMAINS_PER_QUERY]


def all_approved_domains() -> set[str]:
    domains = set(GENERAL_APPROVED_DOMAINS)
    for listing in BASE_CATEGORY_DOMAINS.values():
        domains.update(listing)
    for per_language in LANGUAGE_OVERRIDES.values():
        for listing in per_language.values():
            domains.update(listing)
    return domains


_APPROVED = frozenset(d.lower() for d in all_approved_domains())


def is_approved_domain(url: str, allowed: list[str] | None = None) -> bool:
    """True when the URL's host is (a subdomain of) an approved domain.

    ``allowed`` narrows the check to a specific domain list.
    """
    hostname = normalize_hostname(url)
    if not hostname:
        return False
    candidates = allowed if allowed is not None else _APPROVED
    return any(_matches(hostname, d) for d in candidates)


def is_government_source(url: str) -> bool:
    hostname = normalize_hostname(url)
    return any(marker in f".{hostname}" for marker in GOVERNMENT_MARKERS)


# -- Category selection --


@dataclass
class CategorySelection:
    category: str
    domains: list[str]
    reasoning: str
    confidence: str  # "high", "medium" or "low"


_OVERRIDES = [
    (
        r"government|official|ministry|regulation|permit|visa|residency|immigration|citizenship",
        "government",
        "Official government topic detected",
    ),
    (
        r"property|real estate|home|villa|apartment|buying property|selling property",
        "realEstate",
        "Real estate topic detected",
    ),
    (
        r"mortgage|bank|loan|finance|currency|exchange|money transfer|payment",
        "financial",
        "Financial topic detected",
    ),
    (
        r"tourism|travel|destination|attraction|things to do|visit|explore|vacation",
        "tourism",
        "Tourism topic detected",
    ),
]

# (pattern, category, reasoning, confidence) per funnel stage; the final
# entry of each list is the stage default.
_FUNNEL_RULES: dict[str, list[tuple[str | None, str, str, str]]] = {
    "TOFU": [
        (
            r"lifestyle|living|beach|climate|culture|food|weather|area|location|guide|neighborhood|expat|community",
            "tourism",
            "Lifestyle/awareness content",
            "high",
        ),
        (
            r"market|trend|statistics|data|overview|introduction|explained|understanding|basics",
            "news",
            "Market overview content",
            "medium",
        ),
        (None, "tourism", "Default for awareness content", "low"),
    ],
    "MOFU": [
        (
            r"buying|process|steps|how to|guide|tips|considerations|checklist|timeline|stages",
            "realEstate",
            "How-to/process content",
            "high",
        ),
        (
            r"compare|comparison|\bvs\b|versus|difference|options|types|choosing|deciding",
            "news",
            "Comparative analysis",
            "medium",
        ),
        (
            r"cost|price|budget|afford|calculate|estimate|expenses",
            "financial",
            "Cost analysis",
            "high",
        ),
        (None, "realEstate", "Default for consideration content", "low"),
    ],
    "BOFU": [
        (
            r"tax|legal|law|visa|residency|permit|regulation|contract|documentation|paperwork",
            "government",
            "Legal/regulatory content",
            "high",
        ),
        (
            r"mortgage|finance|investment|return|roi|loan|interest|bank|financing",
            "financial",
            "Financial decision content",
            "high",
        ),
        (
            r"lawyer|notary|agent|service|professional|consultant|advisor|help",
            "realEstate",
            "Professional services content",
            "medium",
        ),
        (None, "government", "Default for decision stage", "low"),
    ],
}


def select_category(topic: str, funnel_stage: str, language: str) -> CategorySelection:
    """Pick the discovery category for a topic.

    Override keywords win outright; otherwise the funnel stage decides.
    Unknown funnel stages are treated as BOFU.
    """
    topic_lower = topic.lower()
    category, reasoning, confidence = None, "", "medium"

    for pattern, cat, why in _OVERRIDES:
        if re.search(pattern, topic_lower):
            category, reasoning, confidence = cat, f"Override: {why}", "high"
            break

    if category is None:
        stage = funnel_stage.upper() if funnel_stage else "BOFU"
        for pattern, cat, why, conf in _FUNNEL_RULES.get(stage, _FUNNEL_RULES["BOFU"]):
            if pattern is None or re.search(pattern, topic_lower):
                category, reasoning, confidence = cat, f"{stage}: {why}", conf
                break

    domains = domains_for(language, category)
    logger.info(
        "Category selection for %r (%s/%s): %s, %d domains, %s confidence",
        topic,
        funnel_stage,
        language,
        category,
        len(domains),
        confidence,
    )
    return CategorySelection(
        category=category, domains=domains, reasoning=reasoning, confidence=confidence
    )
