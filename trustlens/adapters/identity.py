"""Identity adapter: seller reputation and verification signals."""

from typing import Optional

from trustlens.adapters.base import EvidenceAdapter
from trustlens.models import AdapterName, AnalysisJob, IdentityPayload


class IdentityAdapter(EvidenceAdapter):
    """Looks up the trust profile of the seller who uploaded the artifact."""

    name = AdapterName.IDENTITY
    payload_model = IdentityPayload

    def skip_reason(self, job: AnalysisJob) -> Optional[str]:
        if not job.seller_id:
            return "no seller identity supplied"
        return None

    def request_context(self, job: AnalysisJob) -> dict:
        return {"seller_id": job.seller_id, "organization_id": job.organization_id}
