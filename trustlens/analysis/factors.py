"""
TrustLens - Factor Scoring Module

Scores each of the four fusion factors from the authoritative evidence
records of a job:

- provenance: content-credential manifest and signature, falling back to
  EXIF consistency when no manifest is present
- manipulation: AI-manipulation classifier output, scaled by its confidence
- visual_duplication: perceptual-hash lookup and reverse image search
- identity: seller trust signals

Scores are 0-100 where higher means more trustworthy. Missing evidence gets
a neutral default. Every scorer also reports the risk factors and positive
indicators it found.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Mapping, Optional

from trustlens.models import (
    AdapterName,
    EvidenceRecord,
    FactorFamily,
    IdentityPayload,
    ManipulationPayload,
    MatchSource,
    PerceptualDuplicatePayload,
    ProvenancePayload,
    RiskLevel,
    WebPresencePayload,
)

NEUTRAL_SCORE = 50.0
VISUAL_DUPLICATION_DEFAULT = 60.0

TRUSTED_ISSUERS = (
    "adobe",
    "microsoft",
    "google",
    "truepic",
    "digimarc",
    "leica",
    "nikon",
    "canon",
    "sony",
)

TRUSTED_CAMERAS = (
    "canon",
    "nikon",
    "sony",
    "fujifilm",
    "olympus",
    "panasonic",
    "leica",
    "apple",
    "samsung",
    "google",
)

EDITING_SOFTWARE = (
    "photoshop",
    "gimp",
    "lightroom",
    "affinity",
    "pixelmator",
    "capture one",
    "luminar",
    "facetune",
)

EXACT_MATCH_DISTANCE = 2
NEAR_MATCH_DISTANCE = 8
STALE_OCCURRENCE_DAYS = 365


@dataclass
class FactorAssessment:
    """Score of one factor plus what was found while scoring it."""
    family: FactorFamily
    score: float
    available: bool = False
    confidence: Optional[float] = None
    risk_factors: List[str] = field(default_factory=list)
    positive_indicators: List[str] = field(default_factory=list)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _matches_any(value: Optional[str], names) -> bool:
    if not value:
        return False
    value = value.lower()
    return any(name in value for name in names)


def _success_payload(records: Mapping[AdapterName, EvidenceRecord], adapter: AdapterName):
    record = records.get(adapter)
    if record is None or not record.is_success:
        return None
    return record.typed_payload()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def score_provenance(records: Mapping[AdapterName, EvidenceRecord]) -> FactorAssessment:
    """Score content credentials, or EXIF metadata when no manifest exists."""
    payload: Optional[ProvenancePayload] = _success_payload(records, AdapterName.PROVENANCE)
    assessment = FactorAssessment(FactorFamily.PROVENANCE, NEUTRAL_SCORE)
    if payload is None:
        return assessment

    assessment.available = True
    assessment.confidence = 90.0 if payload.verified else 70.0

    if payload.manifest_present:
        if payload.verified and payload.signature_valid:
            trusted = _matches_any(payload.issuer, TRUSTED_ISSUERS)
            assessment.score = 98.0 if trusted else 95.0
            assessment.positive_indicators.append("Content credentials cryptographically verified")
            if trusted:
                assessment.positive_indicators.append(f"Signed by trusted issuer: {payload.issuer}")
        elif payload.signature_valid:
            assessment.score = 80.0
            assessment.positive_indicators.append("Valid provenance signature present")
        else:
            assessment.score = 30.0
            assessment.risk_factors.append("Provenance signature verification failed - potential tampering")
        return assessment

    if payload.exif_present:
        if payload.exif_consistent:
            score = 55.0
            assessment.positive_indicators.append("Consistent timestamps in metadata")
        else:
            score = 35.0
            assessment.risk_factors.append("Inconsistent timestamps in metadata")
    else:
        score = 45.0
        assessment.risk_factors.append("No provenance metadata present")

    if _matches_any(payload.software, EDITING_SOFTWARE):
        score -= 10.0
        assessment.risk_factors.append(f"Editing software detected: {payload.software}")
    if _matches_any(payload.camera_make, TRUSTED_CAMERAS):
        score += 5.0
        assessment.positive_indicators.append(f"Captured with recognized camera: {payload.camera_make}")

    assessment.score = clamp(score)
    return assessment


def score_manipulation(records: Mapping[AdapterName, EvidenceRecord]) -> FactorAssessment:
    """Convert a manipulation likelihood into an authenticity score.

    The distance from neutral is scaled by the classifier's confidence, so a
    low-confidence verdict stays close to 50.
    """
    payload: Optional[ManipulationPayload] = _success_payload(records, AdapterName.MANIPULATION)
    assessment = FactorAssessment(FactorFamily.MANIPULATION, NEUTRAL_SCORE)
    if payload is None:
        return assessment

    authenticity = 100.0 - payload.score
    score = 50.0 + (authenticity - 50.0) * (payload.confidence / 100.0)
    if payload.detected_faces > 2:
        score -= 5.0
    elif payload.detected_faces == 0:
        score += 10.0

    assessment.available = True
    assessment.confidence = payload.confidence
    assessment.score = clamp(score)

    if payload.score > 70:
        assessment.risk_factors.append(f"High manipulation probability detected ({payload.score:.0f}%)")
    elif payload.score < 30:
        assessment.positive_indicators.append("Low probability of manipulation")
    return assessment


def score_visual_duplication(
    records: Mapping[AdapterName, EvidenceRecord],
    submitted_at: datetime,
) -> FactorAssessment:
    """Score how likely the image is copied from elsewhere.

    Reverse-search findings lower the score per match and per risky source.
    A near-exact perceptual match against the merchant's own catalog is
    reassuring; the same match against an external image is near-conclusive.
    """
    web: Optional[WebPresencePayload] = _success_payload(records, AdapterName.WEB_PRESENCE)
    perceptual: Optional[PerceptualDuplicatePayload] = _success_payload(
        records, AdapterName.PERCEPTUAL_DUPLICATE
    )
    assessment = FactorAssessment(FactorFamily.VISUAL_DUPLICATION, VISUAL_DUPLICATION_DEFAULT)
    if web is None and perceptual is None:
        return assessment

    assessment.available = True
    score = 70.0

    if web is not None:
        score -= min(30.0, 3.0 * web.matches_found)
        score -= 15.0 * web.suspicious_sources
        for source in web.sources:
            if source.risk_level == RiskLevel.CRITICAL:
                score -= 20.0
            elif source.risk_level == RiskLevel.HIGH:
                score -= 10.0

        if web.earliest_occurrence is not None:
            age = _as_utc(submitted_at) - _as_utc(web.earliest_occurrence)
            if age > timedelta(days=STALE_OCCURRENCE_DAYS):
                score -= 15.0
                assessment.risk_factors.append("Image found online more than a year before submission")

        if web.suspicious_sources > 0:
            assessment.risk_factors.append(f"Found {web.suspicious_sources} matches on suspicious websites")
        if web.matches_found == 0:
            assessment.positive_indicators.append("No duplicate images found on the web")
        assessment.confidence = 80.0 if web.matches_found > 0 else 60.0

    if perceptual is not None:
        catalog = [
            m for m in perceptual.matches
            if m.source == MatchSource.CATALOG and m.hamming_distance <= EXACT_MATCH_DISTANCE
        ]
        external = [m for m in perceptual.matches if m.source == MatchSource.EXTERNAL]

        if catalog:
            score = max(score, 80.0)
            assessment.positive_indicators.append("Matches the merchant's own catalog image")
        elif external:
            closest = min(m.hamming_distance for m in external)
            if closest <= EXACT_MATCH_DISTANCE:
                score -= 60.0
                assessment.risk_factors.append("Near-identical copy of a known external image")
            elif closest <= NEAR_MATCH_DISTANCE:
                score -= 25.0
                assessment.risk_factors.append(f"Perceptually similar to a known external image (distance {closest})")

        if assessment.confidence is None:
            assessment.confidence = 80.0 if perceptual.matches else 60.0

    assessment.score = clamp(score)
    return assessment


def score_identity(records: Mapping[AdapterName, EvidenceRecord]) -> FactorAssessment:
    payload: Optional[IdentityPayload] = _success_payload(records, AdapterName.IDENTITY)
    assessment = FactorAssessment(FactorFamily.IDENTITY, NEUTRAL_SCORE)
    if payload is None:
        return assessment

    score = payload.trust_score * 100.0
    if payload.verified_seller:
        score += 10.0
        assessment.positive_indicators.append("Seller identity verified")
    if payload.prior_flags:
        score -= 10.0 * payload.prior_flags
        assessment.risk_factors.append(f"Seller has {payload.prior_flags} prior flag(s)")

    assessment.available = True
    assessment.confidence = payload.confidence if payload.confidence is not None else 70.0
    assessment.score = clamp(score)
    return assessment


def score_factors(
    records: Mapping[AdapterName, EvidenceRecord],
    submitted_at: datetime,
) -> List[FactorAssessment]:
    """Score all four factors in a fixed order."""
    return [
        score_provenance(records),
        score_manipulation(records),
        score_visual_duplication(records, submitted_at),
        score_identity(records),
    ]
