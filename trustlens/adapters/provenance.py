"""Provenance adapter: content credentials (signed manifests) and EXIF."""

from pydantic import BaseModel

from trustlens.adapters.base import EvidenceAdapter
from trustlens.models import AdapterName, AnalysisJob, ProvenancePayload
from trustlens.utils.exceptions import InvalidEvidenceShape


class ProvenanceAdapter(EvidenceAdapter):
    """Checks for a signed provenance manifest and camera metadata."""

    name = AdapterName.PROVENANCE
    payload_model = ProvenancePayload

    def postprocess(self, payload: BaseModel, job: AnalysisJob) -> BaseModel:
        if payload.verified and not (payload.manifest_present and payload.signature_valid):
            raise InvalidEvidenceShape(
                self.name.value, ["verified manifest reported without a valid signature"]
            )
        if payload.signature_valid and not payload.manifest_present:
            raise InvalidEvidenceShape(self.name.value, ["signature reported without a manifest"])
        return payload
