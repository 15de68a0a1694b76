"""
Evidence adapter base.

Every adapter turns one provider call into exactly one EvidenceRecord. The
call boundary is where errors stop: provider outages, timeouts and malformed
documents all become Failure records, so nothing an adapter does can abort a
job or reach the fusion engine as an exception.
"""

import logging
import time
from typing import Any, Callable, ClassVar, Dict, Optional, Protocol, Type

from pydantic import BaseModel, ValidationError

from trustlens.adapters.providers import ProviderClient
from trustlens.models import AdapterName, AnalysisJob, EvidenceRecord
from trustlens.utils.exceptions import AdapterUnavailable, InvalidEvidenceShape
from trustlens.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class EvidenceSource(Protocol):
    """Interface the pipeline coordinator depends on."""

    name: AdapterName

    def collect(self, job: AnalysisJob, deadline: float) -> EvidenceRecord:
        """Gather evidence for ``job`` before the monotonic ``deadline``."""
        ...


class EvidenceAdapter:
    """Base class for provider-backed evidence sources.

    Subclasses set ``name`` and ``payload_model`` and may override
    ``skip_reason``, ``request_context`` and ``postprocess``.

    Args:
        client: Provider client answering the check
        retry_policy: Retries for transient provider errors (default: one attempt)
        enabled: When False, every call yields a Skipped record
        clock: Monotonic clock used for deadlines and latency
        sleep: Sleep used between retries
    """

    name: ClassVar[AdapterName]
    payload_model: ClassVar[Type[BaseModel]]

    def __init__(
        self,
        client: ProviderClient,
        retry_policy: Optional[RetryPolicy] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=1)
        self.enabled = enabled
        self._clock = clock
        self._sleep = sleep

    @property
    def provider_label(self) -> str:
        return getattr(self.client, "label", "unknown")

    def skip_reason(self, job: AnalysisJob) -> Optional[str]:
        """Return a reason to skip this job, or None to run the check."""
        return None

    def request_context(self, job: AnalysisJob) -> Dict[str, Any]:
        """Extra fields sent to the provider with the artifact reference."""
        return {}

    def postprocess(self, payload: BaseModel, job: AnalysisJob) -> BaseModel:
        """Normalize a validated payload. Raise InvalidEvidenceShape to reject it."""
        return payload

    def collect(self, job: AnalysisJob, deadline: float) -> EvidenceRecord:
        """Run the check and return exactly one evidence record."""
        started = self._clock()

        def elapsed_ms() -> float:
            return max(0.0, (self._clock() - started) * 1000.0)

        if not self.enabled:
            return EvidenceRecord.skipped(
                job.job_id, self.name, "adapter disabled by configuration", provider=self.provider_label
            )

        reason = self.skip_reason(job)
        if reason:
            logger.debug(f"{self.name.value} skipped for job {job.job_id}: {reason}")
            return EvidenceRecord.skipped(job.job_id, self.name, reason, provider=self.provider_label)

        try:
            raw = self.retry_policy.call(
                self.client.check,
                job.artifact_ref,
                deadline,
                self.request_context(job),
                retry_on=(AdapterUnavailable,),
                deadline=deadline,
                clock=self._clock,
                sleep=self._sleep,
                description=f"{self.name.value} check for job {job.job_id}",
            )
            provider = str(raw.pop("provider", None) or self.provider_label)
            payload = self._validate(raw)
            payload = self.postprocess(payload, job)

        except AdapterUnavailable as e:
            logger.warning(f"{self.name.value} unavailable for job {job.job_id}: {e.reason}")
            return EvidenceRecord.failure(
                job.job_id, self.name, e.reason, latency_ms=elapsed_ms(), provider=self.provider_label
            )
        except InvalidEvidenceShape as e:
            logger.warning(f"Discarding malformed {self.name.value} evidence for job {job.job_id}: {e}")
            return EvidenceRecord.failure(
                job.job_id, self.name, f"malformed evidence: {e}", latency_ms=elapsed_ms(),
                provider=self.provider_label,
            )
        except Exception as e:
            logger.error(f"Unexpected error in {self.name.value} adapter for job {job.job_id}: {e}", exc_info=True)
            return EvidenceRecord.failure(
                job.job_id, self.name, f"unexpected error: {type(e).__name__}: {e}",
                latency_ms=elapsed_ms(), provider=self.provider_label,
            )

        return EvidenceRecord.success(
            job.job_id,
            self.name,
            payload.model_dump(mode="json"),
            latency_ms=elapsed_ms(),
            provider=provider,
        )

    def _validate(self, raw: Dict[str, Any]) -> BaseModel:
        try:
            return self.payload_model.model_validate(raw)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise InvalidEvidenceShape(self.name.value, errors) from e
