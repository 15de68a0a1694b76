"""Perceptual-duplicate adapter: pHash lookup against previously seen images."""

from pydantic import BaseModel

from trustlens.adapters.base import EvidenceAdapter
from trustlens.models import AdapterName, AnalysisJob, PerceptualDuplicatePayload


class PerceptualDuplicateAdapter(EvidenceAdapter):
    """Finds near-identical images by perceptual-hash Hamming distance."""

    name = AdapterName.PERCEPTUAL_DUPLICATE
    payload_model = PerceptualDuplicatePayload

    def request_context(self, job: AnalysisJob) -> dict:
        return {"organization_id": job.organization_id, "max_distance": 8}

    def postprocess(self, payload: BaseModel, job: AnalysisJob) -> BaseModel:
        # Closest matches first.
        ordered = sorted(payload.matches, key=lambda m: (m.hamming_distance, m.reference))
        return payload.model_copy(update={"matches": ordered})
