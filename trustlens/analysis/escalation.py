"""
Escalation gate.

Decides from cheap-stage evidence whether the expensive adapters run. The
gate is a pure function: a fixed suspicion increment per triggered signal,
clamped to [0, 1], compared against the threshold.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from trustlens.analysis.heuristics import HeuristicSignals
from trustlens.models import (
    AdapterName,
    EvidenceRecord,
    PerceptualDuplicatePayload,
    ProvenancePayload,
)

DEFAULT_THRESHOLD = 0.4
NEAR_DUPLICATE_DISTANCE = 8

# (signal attribute, increment, description)
INCREMENTS = (
    ("watermark", 0.4, "watermark detected"),
    ("upscaled", 0.3, "low-resolution upscale"),
    ("near_duplicate", 0.4, "perceptual hash within distance 8 of a known external image"),
    ("missing_provenance", 0.2, "no provenance metadata"),
    ("aspect_ratio_outlier", 0.2, "unusual aspect ratio"),
    ("repeat_origin", 0.1, "repeated uploads from the same origin"),
)


@dataclass(frozen=True)
class EscalationInputs:
    """Cheap signals the gate looks at."""
    watermark: bool = False
    upscaled: bool = False
    closest_hash_distance: Optional[int] = None
    provenance_metadata_present: bool = False
    aspect_ratio_outlier: bool = False
    repeat_origin: bool = False

    @property
    def near_duplicate(self) -> bool:
        return self.closest_hash_distance is not None and self.closest_hash_distance <= NEAR_DUPLICATE_DISTANCE

    @property
    def missing_provenance(self) -> bool:
        return not self.provenance_metadata_present


@dataclass(frozen=True)
class EscalationDecision:
    suspicion: float
    escalate: bool
    forced: bool
    reasons: Tuple[str, ...]
    threshold: float


def evaluate_escalation(
    inputs: EscalationInputs,
    threshold: float = DEFAULT_THRESHOLD,
    force: bool = False,
) -> EscalationDecision:
    """Compute suspicion and decide whether to escalate.

    Args:
        inputs: Cheap-stage signals
        threshold: Escalate when suspicion >= threshold
        force: Escalate regardless of suspicion (re-analysis)

    Returns:
        EscalationDecision
    """
    suspicion = 0.0
    reasons = []
    for attr, increment, description in INCREMENTS:
        if getattr(inputs, attr):
            suspicion += increment
            reasons.append(description)

    # Rounded so that sums like 0.4 + 0.3 compare exactly against the threshold.
    suspicion = min(1.0, max(0.0, round(suspicion, 6)))

    return EscalationDecision(
        suspicion=suspicion,
        escalate=force or suspicion >= threshold,
        forced=force,
        reasons=tuple(reasons),
        threshold=threshold,
    )


def inputs_from_evidence(
    heuristics: HeuristicSignals,
    records: Mapping[AdapterName, EvidenceRecord],
) -> EscalationInputs:
    """Build gate inputs from the heuristics and the cheap-stage records.

    A provenance check that failed or was skipped counts as missing
    provenance metadata. Only external perceptual matches count towards
    the near-duplicate signal.
    """
    provenance_present = False
    provenance = records.get(AdapterName.PROVENANCE)
    if provenance is not None and provenance.is_success:
        payload: ProvenancePayload = provenance.typed_payload()
        provenance_present = payload.has_metadata

    closest = None
    perceptual = records.get(AdapterName.PERCEPTUAL_DUPLICATE)
    if perceptual is not None and perceptual.is_success:
        payload: PerceptualDuplicatePayload = perceptual.typed_payload()
        # Catalog matches are the merchant's own images, not duplicates.
        if payload.closest_external is not None:
            closest = payload.closest_external.hamming_distance

    return EscalationInputs(
        watermark=heuristics.watermark,
        upscaled=heuristics.upscaled,
        closest_hash_distance=closest,
        provenance_metadata_present=provenance_present,
        aspect_ratio_outlier=heuristics.aspect_ratio_outlier,
        repeat_origin=heuristics.repeat_origin,
    )
