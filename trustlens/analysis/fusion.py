"""
TrustLens - Evidence Fusion Module

Combines the per-factor scores into one aggregated trust score:

1. Start from the configured base weights
2. Apply the ordered weight-adjustment rules
3. Normalize once so the applied weights sum to 1.0
4. Aggregate = sum(score * weight), rounded half up
5. Derive verdict, confidence, risk level and reasoning

Fusion is pure: the same evidence and submission time always give the same
scores, so a stored result can be recomputed for audit.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from trustlens.analysis.factors import FactorAssessment, clamp, score_factors
from trustlens.config import PipelineSettings
from trustlens.models import (
    AdapterName,
    EvidenceRecord,
    EvidenceStatus,
    FactorFamily,
    FusionResult,
    RiskLevel,
    Verdict,
    latest_by_adapter,
)

logger = logging.getLogger(__name__)

FACTOR_LABELS = {
    FactorFamily.PROVENANCE: "Provenance",
    FactorFamily.MANIPULATION: "Manipulation",
    FactorFamily.VISUAL_DUPLICATION: "Visual duplication",
    FactorFamily.IDENTITY: "Identity",
}

VERDICT_SENTENCES = {
    Verdict.GENUINE: "This content appears to be authentic based on multiple verification factors.",
    Verdict.SUSPICIOUS: "This content shows some concerning patterns that warrant further investigation.",
    Verdict.FAKE: "This content exhibits multiple indicators of manipulation or fabrication.",
}


@dataclass(frozen=True)
class WeightSignals:
    """Evidence facts the weight-adjustment rules look at."""
    provenance_verified: bool = False
    manipulation_confidence: Optional[float] = None
    web_matches: Optional[int] = None


Weights = Dict[FactorFamily, float]


def _boost_verified_provenance(w: Weights) -> None:
    w[FactorFamily.PROVENANCE] += 0.10
    w[FactorFamily.MANIPULATION] -= 0.05
    w[FactorFamily.IDENTITY] -= 0.05


def _boost_confident_manipulation(w: Weights) -> None:
    w[FactorFamily.MANIPULATION] += 0.05
    w[FactorFamily.IDENTITY] -= 0.05


def _halve_empty_web_presence(w: Weights) -> None:
    freed = w[FactorFamily.VISUAL_DUPLICATION] / 2.0
    w[FactorFamily.VISUAL_DUPLICATION] -= freed
    w[FactorFamily.PROVENANCE] += freed * 0.4
    w[FactorFamily.MANIPULATION] += freed * 0.4
    w[FactorFamily.IDENTITY] += freed * 0.2


# Applied in order; each rule sees the weights left by the previous one.
WEIGHT_RULES: Tuple[Tuple[str, Callable[[WeightSignals], bool], Callable[[Weights], None]], ...] = (
    ("provenance verified", lambda s: s.provenance_verified, _boost_verified_provenance),
    (
        "manipulation confidence above 80",
        lambda s: s.manipulation_confidence is not None and s.manipulation_confidence > 80,
        _boost_confident_manipulation,
    ),
    ("no web matches", lambda s: s.web_matches == 0, _halve_empty_web_presence),
)


def adjust_weights(base_weights: Mapping[FactorFamily, float], signals: WeightSignals) -> Weights:
    """Apply the weight rules, then normalize once.

    Args:
        base_weights: Configured weight per factor (sums to 1.0)
        signals: Facts the rules are conditioned on

    Returns:
        Applied weights, non-negative and summing to 1.0
    """
    weights: Weights = {family: float(base_weights.get(family, 0.0)) for family in FactorFamily}

    for description, applies, transfer in WEIGHT_RULES:
        if applies(signals):
            transfer(weights)
            logger.debug(f"Weight rule applied: {description}")

    weights = {family: max(0.0, value) for family, value in weights.items()}
    total = sum(weights.values())
    if total <= 0:
        return {family: 1.0 / len(weights) for family in weights}
    return {family: value / total for family, value in weights.items()}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class FusionEngine:
    """Fuses authoritative evidence records into a FusionResult."""

    def __init__(self, settings: Optional[PipelineSettings] = None):
        self.settings = settings or PipelineSettings()

    def fuse(
        self,
        records: Sequence[EvidenceRecord],
        job_id: str,
        submitted_at: datetime,
        escalated: Optional[bool] = None,
        suspicion: Optional[float] = None,
    ) -> FusionResult:
        """Fuse the evidence recorded for one job.

        When several records exist for an adapter the latest one is used.

        Args:
            records: All evidence records of the job
            job_id: Job identifier
            submitted_at: Job submission time, the reference for age checks
            escalated: Whether the expensive stage ran
            suspicion: Suspicion score from the escalation gate

        Returns:
            FusionResult
        """
        latest = latest_by_adapter(list(records))
        assessments = score_factors(latest, submitted_at)
        scores = {a.family: a.score for a in assessments}

        weights = adjust_weights(self.settings.weights.as_mapping(), self._weight_signals(latest))
        raw_score = sum(scores[family] * weights[family] for family in FactorFamily)
        aggregated = int(clamp(round_half_up(raw_score)))

        verdict = self.determine_verdict(aggregated)
        failed, skipped = self._incomplete(latest)
        partial = bool(failed)

        risk_factors = [text for a in assessments for text in a.risk_factors]
        positives = [text for a in assessments for text in a.positive_indicators]

        result = FusionResult(
            job_id=job_id,
            factor_scores={family: round(score, 4) for family, score in scores.items()},
            applied_weights=weights,
            aggregated_score=aggregated,
            verdict=verdict,
            confidence=self.calculate_confidence(assessments),
            risk_level=self.determine_risk_level(aggregated, latest),
            risk_factors=risk_factors,
            positive_indicators=positives,
            reasoning=self.generate_reasoning(verdict, scores, weights, partial),
            analysis_partial=partial,
            partial_reason=self._partial_reason(failed, skipped) if partial else None,
            evidence_ids=[latest[a].record_id for a in AdapterName if a in latest],
            escalated=escalated,
            suspicion_score=suspicion,
        )
        logger.info(
            f"Fused job {job_id}: score={aggregated} verdict={verdict.value} "
            f"confidence={result.confidence} partial={partial}"
        )
        return result

    def determine_verdict(self, score: int) -> Verdict:
        if score >= self.settings.verdict.genuine:
            return Verdict.GENUINE
        if score >= self.settings.verdict.suspicious:
            return Verdict.SUSPICIOUS
        return Verdict.FAKE

    @staticmethod
    def calculate_confidence(assessments: List[FactorAssessment]) -> int:
        """Confidence in the fused score, 20-100.

        Mean of the available factors' contributions, plus 5 per available
        factor (at most 20), minus 15 when the factor scores disagree widely.
        """
        contributions = [a.confidence for a in assessments if a.available and a.confidence is not None]
        base = sum(contributions) / len(contributions) if contributions else 50.0
        confidence = base + min(20.0, 5.0 * len(contributions))

        scores = [a.score for a in assessments]
        if max(scores) - min(scores) > 40:
            confidence -= 15.0

        return int(clamp(round_half_up(confidence), 20, 100))

    @staticmethod
    def determine_risk_level(score: int, latest: Mapping[AdapterName, EvidenceRecord]) -> RiskLevel:
        if score >= 80:
            level = RiskLevel.LOW
        elif score >= 60:
            level = RiskLevel.MEDIUM
        elif score >= 30:
            level = RiskLevel.HIGH
        else:
            level = RiskLevel.CRITICAL

        manipulation = _payload(latest, AdapterName.MANIPULATION)
        if manipulation is not None and manipulation.score > 80:
            return RiskLevel.CRITICAL

        web = _payload(latest, AdapterName.WEB_PRESENCE)
        if web is not None and web.suspicious_sources > 3:
            if level == RiskLevel.LOW:
                level = RiskLevel.MEDIUM
            elif level == RiskLevel.MEDIUM:
                level = RiskLevel.HIGH

        provenance = _payload(latest, AdapterName.PROVENANCE)
        if provenance is not None and provenance.manifest_present and not provenance.signature_valid:
            if level == RiskLevel.LOW:
                level = RiskLevel.MEDIUM

        return level

    @staticmethod
    def generate_reasoning(
        verdict: Verdict,
        scores: Mapping[FactorFamily, float],
        weights: Mapping[FactorFamily, float],
        partial: bool = False,
    ) -> str:
        ranked = sorted(FactorFamily, key=lambda f: scores[f] * weights[f], reverse=True)
        top = ", ".join(f"{FACTOR_LABELS[f]} ({scores[f]:.0f}%)" for f in ranked[:2])
        reasoning = f"{VERDICT_SENTENCES[verdict]} Primary analysis factors: {top}."
        if partial:
            reasoning += " Some checks did not complete; neutral scores were used in their place."
        return reasoning

    @staticmethod
    def _weight_signals(latest: Mapping[AdapterName, EvidenceRecord]) -> WeightSignals:
        provenance = _payload(latest, AdapterName.PROVENANCE)
        manipulation = _payload(latest, AdapterName.MANIPULATION)
        web = _payload(latest, AdapterName.WEB_PRESENCE)
        return WeightSignals(
            provenance_verified=bool(provenance and provenance.verified),
            manipulation_confidence=manipulation.confidence if manipulation else None,
            web_matches=web.matches_found if web else None,
        )

    @staticmethod
    def _incomplete(latest: Mapping[AdapterName, EvidenceRecord]):
        failed = [r for r in latest.values() if r.status == EvidenceStatus.FAILURE]
        skipped = [r for r in latest.values() if r.status == EvidenceStatus.SKIPPED]
        order = list(AdapterName)
        failed.sort(key=lambda r: order.index(r.adapter))
        skipped.sort(key=lambda r: order.index(r.adapter))
        return failed, skipped

    @staticmethod
    def _partial_reason(failed: List[EvidenceRecord], skipped: List[EvidenceRecord]) -> str:
        parts = ["failed: " + "; ".join(f"{r.adapter.value} ({r.reason})" for r in failed)]
        if skipped:
            parts.append("skipped: " + "; ".join(f"{r.adapter.value} ({r.reason})" for r in skipped))
        return " | ".join(parts)


def _payload(latest: Mapping[AdapterName, EvidenceRecord], adapter: AdapterName):
    record = latest.get(adapter)
    if record is None or not record.is_success:
        return None
    return record.typed_payload()


__all__ = [
    "FusionEngine",
    "WeightSignals",
    "WEIGHT_RULES",
    "adjust_weights",
    "round_half_up",
]
