"""Manipulation adapter: AI-manipulation and deepfake classifiers."""

from trustlens.adapters.base import EvidenceAdapter
from trustlens.models import AdapterName, AnalysisJob, ManipulationPayload


class ManipulationAdapter(EvidenceAdapter):
    """Asks a classifier how likely the artifact is to be manipulated."""

    name = AdapterName.MANIPULATION
    payload_model = ManipulationPayload

    def request_context(self, job: AnalysisJob) -> dict:
        context = {}
        if job.signals.content_type:
            context["content_type"] = job.signals.content_type
        return context
