"""Local heuristics, escalation gate, factor scoring and evidence fusion."""

from trustlens.analysis.escalation import (
    EscalationDecision,
    EscalationInputs,
    evaluate_escalation,
    inputs_from_evidence,
)
from trustlens.analysis.factors import FactorAssessment, score_factors
from trustlens.analysis.fusion import FusionEngine, WeightSignals, adjust_weights
from trustlens.analysis.heuristics import HeuristicSignals, LocalHeuristics

__all__ = [
    "EscalationDecision",
    "EscalationInputs",
    "evaluate_escalation",
    "inputs_from_evidence",
    "FactorAssessment",
    "score_factors",
    "FusionEngine",
    "WeightSignals",
    "adjust_weights",
    "HeuristicSignals",
    "LocalHeuristics",
]
