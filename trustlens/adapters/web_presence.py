"""
Web-presence adapter: reverse image search across search engines.

Raw matches are normalized before they become evidence: each source gets a
domain risk classification, duplicate URLs are dropped, sources are ordered
by risk and similarity and capped, and the suspicious-source count and
earliest occurrence are derived from what remains.
"""

from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel

from trustlens.adapters.base import EvidenceAdapter
from trustlens.models import AdapterName, AnalysisJob, RiskLevel, WebPresencePayload, WebSource

MAX_SOURCES = 20

# Marketplaces known for reselling copied product imagery.
FLAGGED_DOMAINS = (
    "alibaba.com",
    "aliexpress.com",
    "dhgate.com",
    "wish.com",
    "temu.com",
    "shein.com",
    "romwe.com",
    "zaful.com",
    "rosegal.com",
    "sammydress.com",
    "lightinthebox.com",
    "gearbest.com",
    "banggood.com",
)

# Anonymous image hosts and boards; matched against host and path.
RISKY_SITES = (
    "imgur.com",
    "photobucket.com",
    "imageshack.com",
    "tinypic.com",
    "flickr.com/photos/unknown",
    "reddit.com/r/",
    "4chan.org",
    "tumblr.com",
)

SUSPICIOUS_TERMS = ("fake", "replica", "counterfeit", "copy")

LEGITIMATE_MARKETPLACES = (
    "amazon.com",
    "ebay.com",
    "shopify.com",
    "etsy.com",
    "walmart.com",
    "target.com",
    "bestbuy.com",
    "costco.com",
    "macys.com",
    "nordstrom.com",
    "zappos.com",
)


def classify_domain(domain: str, url: str = "") -> RiskLevel:
    """Assign a risk level to a source domain."""
    domain = domain.lower()
    location = f"{domain}{urlparse(url).path.lower()}" if url else domain

    if any(flagged in domain for flagged in FLAGGED_DOMAINS):
        return RiskLevel.CRITICAL
    if any(risky in location for risky in RISKY_SITES):
        return RiskLevel.HIGH
    if any(term in domain for term in SUSPICIOUS_TERMS):
        return RiskLevel.HIGH
    if any(legit in domain for legit in LEGITIMATE_MARKETPLACES):
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


def normalize_sources(sources: List[WebSource]) -> List[WebSource]:
    """Classify, deduplicate by URL, sort by risk then similarity, and cap."""
    seen = set()
    normalized = []
    for source in sources:
        if source.url in seen:
            continue
        seen.add(source.url)

        domain = source.domain or (urlparse(source.url).hostname or "")
        first_seen = source.first_seen
        if first_seen is not None and first_seen.tzinfo is None:
            first_seen = first_seen.replace(tzinfo=timezone.utc)
        normalized.append(source.model_copy(update={
            "domain": domain,
            "risk_level": classify_domain(domain, source.url),
            "first_seen": first_seen,
        }))

    normalized.sort(key=lambda s: (-s.risk_level.severity, -s.similarity, s.url))
    return normalized[:MAX_SOURCES]


def earliest_occurrence(sources: List[WebSource]) -> Optional[datetime]:
    dates = [s.first_seen for s in sources if s.first_seen is not None]
    return min(dates) if dates else None


class WebPresenceAdapter(EvidenceAdapter):
    """Searches the web for other copies of the artifact."""

    name = AdapterName.WEB_PRESENCE
    payload_model = WebPresencePayload

    def postprocess(self, payload: BaseModel, job: AnalysisJob) -> BaseModel:
        sources = normalize_sources(payload.sources)
        suspicious = sum(
            1 for s in sources if s.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        )
        earliest = earliest_occurrence(sources)
        reported = payload.earliest_occurrence
        if reported is not None:
            if reported.tzinfo is None:
                reported = reported.replace(tzinfo=timezone.utc)
            earliest = reported if earliest is None else min(earliest, reported)

        return payload.model_copy(update={
            "sources": sources,
            "matches_found": max(payload.matches_found, len(sources)),
            "suspicious_sources": suspicious,
            "earliest_occurrence": earliest,
            "engines_used": sorted(set(payload.engines_used)),
        })
