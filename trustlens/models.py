"""
Pydantic data models for the TrustLens evidence-fusion pipeline.

This module defines the structures that flow through the pipeline: analysis
jobs, evidence records and their typed payloads, fusion results, review
tickets, admin overrides and notification records.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Priority(str, Enum):
    """Queue priority tiers, highest first."""
    URGENT = "URGENT"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Lower rank is served first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class QueueName(str, Enum):
    """Queue classes, each with its own worker pool."""
    ANALYSIS = "analysis"
    WEBHOOK = "webhook"
    BILLING = "billing"


class JobState(str, Enum):
    """Lifecycle states of an analysis job."""
    QUEUED = "QUEUED"
    RUNNING_CHEAP = "RUNNING_CHEAP"
    RUNNING_EXPENSIVE = "RUNNING_EXPENSIVE"
    SKIPPED_EXPENSIVE = "SKIPPED_EXPENSIVE"
    FUSING = "FUSING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED, JobState.CANCELLED)

    def can_transition(self, target: "JobState") -> bool:
        """Check whether moving from this state to ``target`` is allowed."""
        return target in _JOB_TRANSITIONS[self]


# A re-claimed job restarts at RUNNING_CHEAP from any in-flight state.
_IN_FLIGHT_EXITS = {JobState.RUNNING_CHEAP, JobState.CANCELLED, JobState.FAILED, JobState.QUEUED}

_JOB_TRANSITIONS = {
    JobState.QUEUED: {JobState.RUNNING_CHEAP, JobState.CANCELLED, JobState.FAILED},
    JobState.RUNNING_CHEAP: _IN_FLIGHT_EXITS | {JobState.RUNNING_EXPENSIVE, JobState.SKIPPED_EXPENSIVE},
    JobState.RUNNING_EXPENSIVE: _IN_FLIGHT_EXITS | {JobState.FUSING},
    JobState.SKIPPED_EXPENSIVE: _IN_FLIGHT_EXITS | {JobState.FUSING},
    JobState.FUSING: {JobState.DONE, JobState.FAILED, JobState.RUNNING_CHEAP, JobState.QUEUED},
    JobState.DONE: set(),
    JobState.FAILED: set(),
    JobState.CANCELLED: set(),
}


class AdapterName(str, Enum):
    """The five evidence sources."""
    PROVENANCE = "provenance"
    PERCEPTUAL_DUPLICATE = "perceptual_duplicate"
    MANIPULATION = "manipulation"
    WEB_PRESENCE = "web_presence"
    IDENTITY = "identity"

    @property
    def is_expensive(self) -> bool:
        return self in EXPENSIVE_ADAPTERS


CHEAP_ADAPTERS = (AdapterName.PROVENANCE, AdapterName.PERCEPTUAL_DUPLICATE)
EXPENSIVE_ADAPTERS = (AdapterName.MANIPULATION, AdapterName.WEB_PRESENCE, AdapterName.IDENTITY)


class EvidenceStatus(str, Enum):
    """Outcome of a single adapter call."""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    SKIPPED = "SKIPPED"


class Verdict(str, Enum):
    """Trust verdict."""
    GENUINE = "GENUINE"
    SUSPICIOUS = "SUSPICIOUS"
    FAKE = "FAKE"


class RiskLevel(str, Enum):
    """Risk classification used for results and web sources."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def severity(self) -> int:
        return _RISK_SEVERITY[self]


_RISK_SEVERITY = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class FactorFamily(str, Enum):
    """Scoring factors fused into the aggregated score."""
    PROVENANCE = "provenance"
    MANIPULATION = "manipulation"
    VISUAL_DUPLICATION = "visual_duplication"
    IDENTITY = "identity"


class ReviewPriority(str, Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class ReviewState(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class MatchSource(str, Enum):
    """Where a perceptual-hash match was found."""
    CATALOG = "CATALOG"  # the merchant's own product catalog
    EXTERNAL = "EXTERNAL"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class ArtifactSignals(BaseModel):
    """Cheap signals captured at upload time, used by local heuristics."""
    width: Optional[int] = Field(default=None, ge=1, description="Pixel width")
    height: Optional[int] = Field(default=None, ge=1, description="Pixel height")
    watermark_detected: bool = Field(default=False, description="Watermark found by upload validation")
    upscale_factor: Optional[float] = Field(
        default=None, ge=0.0, description="Estimated resampling factor (1.0 = native resolution)"
    )
    origin: Optional[str] = Field(default=None, description="Uploader origin (IP address or client id)")
    content_type: Optional[str] = Field(default=None, description="MIME type of the artifact")


class AnalysisJob(BaseModel):
    """One request to analyze an uploaded artifact."""
    job_id: str = Field(default_factory=new_id)
    artifact_ref: str = Field(..., min_length=1, description="Storage reference of the artifact")
    organization_id: str = Field(..., min_length=1, description="Owning organization")
    priority: Priority = Field(default=Priority.NORMAL)
    submitted_at: datetime = Field(default_factory=utcnow)
    attempt_count: int = Field(default=0, ge=0)
    state: JobState = Field(default=JobState.QUEUED)
    seller_id: Optional[str] = Field(default=None, description="Seller whose identity is checked")
    signals: ArtifactSignals = Field(default_factory=ArtifactSignals)
    force_escalation: bool = Field(default=False, description="Always run the expensive stage")
    reanalysis_of: Optional[str] = Field(default=None, description="Job id this job re-analyzes")


# ---------------------------------------------------------------------------
# Evidence payloads
# ---------------------------------------------------------------------------

class ProvenancePayload(BaseModel):
    """Cryptographic provenance (content credentials) and EXIF findings."""
    manifest_present: bool = False
    signature_valid: bool = False
    verified: bool = Field(default=False, description="Manifest chain cryptographically verified")
    issuer: Optional[str] = None
    signed_at: Optional[datetime] = None
    exif_present: bool = False
    exif_consistent: bool = False
    camera_make: Optional[str] = None
    software: Optional[str] = None

    @property
    def has_metadata(self) -> bool:
        return self.manifest_present or self.exif_present


class PerceptualMatch(BaseModel):
    reference: str = Field(..., description="Identifier or URL of the matched image")
    hamming_distance: int = Field(..., ge=0, le=64)
    source: MatchSource = Field(default=MatchSource.EXTERNAL)


class PerceptualDuplicatePayload(BaseModel):
    """Perceptual-hash lookup against previously seen images."""
    phash: Optional[str] = None
    matches: List[PerceptualMatch] = Field(default_factory=list)

    @property
    def closest(self) -> Optional[PerceptualMatch]:
        if not self.matches:
            return None
        return min(self.matches, key=lambda m: m.hamming_distance)

    @property
    def closest_external(self) -> Optional[PerceptualMatch]:
        """Closest match that is not the merchant's own catalog image."""
        external = [m for m in self.matches if m.source == MatchSource.EXTERNAL]
        return min(external, key=lambda m: m.hamming_distance) if external else None


class ManipulationPayload(BaseModel):
    """AI-manipulation classifier output."""
    score: float = Field(..., ge=0.0, le=100.0, description="Likelihood of manipulation, 0-100")
    confidence: float = Field(..., ge=0.0, le=100.0)
    detected_faces: int = Field(default=0, ge=0)
    indicators: List[str] = Field(default_factory=list)
    model_version: Optional[str] = None


class WebSource(BaseModel):
    url: str
    domain: str = ""
    similarity: float = Field(default=0.0, ge=0.0, le=100.0)
    risk_level: RiskLevel = Field(default=RiskLevel.MEDIUM)
    first_seen: Optional[datetime] = None


class WebPresencePayload(BaseModel):
    """Reverse image search results."""
    matches_found: int = Field(default=0, ge=0)
    suspicious_sources: int = Field(default=0, ge=0)
    sources: List[WebSource] = Field(default_factory=list)
    engines_used: List[str] = Field(default_factory=list)
    earliest_occurrence: Optional[datetime] = None


class IdentityPayload(BaseModel):
    """Seller identity signals."""
    trust_score: float = Field(..., ge=0.0, le=1.0)
    verified_seller: bool = False
    account_age_days: Optional[int] = Field(default=None, ge=0)
    prior_flags: int = Field(default=0, ge=0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)


PAYLOAD_MODELS = {
    AdapterName.PROVENANCE: ProvenancePayload,
    AdapterName.PERCEPTUAL_DUPLICATE: PerceptualDuplicatePayload,
    AdapterName.MANIPULATION: ManipulationPayload,
    AdapterName.WEB_PRESENCE: WebPresencePayload,
    AdapterName.IDENTITY: IdentityPayload,
}


# ---------------------------------------------------------------------------
# Evidence records
# ---------------------------------------------------------------------------

class EvidenceRecord(BaseModel):
    """
    Outcome of one adapter call for one job.

    Records are immutable and appended; when an adapter has several records
    for a job, the latest one is authoritative.
    """
    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=new_id)
    job_id: str
    adapter: AdapterName
    status: EvidenceStatus
    payload: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    latency_ms: float = Field(default=0.0, ge=0.0)
    provider: str = Field(default="unknown")
    recorded_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_outcome(self) -> "EvidenceRecord":
        if self.status == EvidenceStatus.SUCCESS and self.payload is None:
            raise ValueError("successful evidence requires a payload")
        if self.status != EvidenceStatus.SUCCESS and not self.reason:
            raise ValueError(f"{self.status.value.lower()} evidence requires a reason")
        return self

    @classmethod
    def success(cls, job_id: str, adapter: AdapterName, payload: Dict[str, Any], **kwargs) -> "EvidenceRecord":
        return cls(job_id=job_id, adapter=adapter, status=EvidenceStatus.SUCCESS, payload=payload, **kwargs)

    @classmethod
    def failure(cls, job_id: str, adapter: AdapterName, reason: str, **kwargs) -> "EvidenceRecord":
        return cls(job_id=job_id, adapter=adapter, status=EvidenceStatus.FAILURE, reason=reason, **kwargs)

    @classmethod
    def skipped(cls, job_id: str, adapter: AdapterName, reason: str, **kwargs) -> "EvidenceRecord":
        return cls(job_id=job_id, adapter=adapter, status=EvidenceStatus.SKIPPED, reason=reason, **kwargs)

    @property
    def is_success(self) -> bool:
        return self.status == EvidenceStatus.SUCCESS

    def typed_payload(self) -> Optional[BaseModel]:
        """Parse the payload into the adapter's payload model."""
        if not self.is_success:
            return None
        return PAYLOAD_MODELS[self.adapter].model_validate(self.payload)


def latest_by_adapter(records: List[EvidenceRecord]) -> Dict[AdapterName, EvidenceRecord]:
    """Return the authoritative (latest) record per adapter.

    Input order breaks ties between records with equal timestamps.
    """
    latest: Dict[AdapterName, EvidenceRecord] = {}
    for record in records:
        current = latest.get(record.adapter)
        if current is None or record.recorded_at >= current.recorded_at:
            latest[record.adapter] = record
    return latest


# ---------------------------------------------------------------------------
# Fusion, review and overrides
# ---------------------------------------------------------------------------

class AdminOverride(BaseModel):
    """A manual verdict change. Never alters the fused values."""
    model_config = ConfigDict(frozen=True)

    override_id: str = Field(default_factory=new_id)
    fusion_result_id: str
    prior_verdict: Verdict
    new_verdict: Verdict
    actor_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)


class FusionResult(BaseModel):
    """Fused trust assessment for one job."""
    result_id: str = Field(default_factory=new_id)
    job_id: str
    factor_scores: Dict[FactorFamily, float]
    applied_weights: Dict[FactorFamily, float]
    aggregated_score: int = Field(..., ge=0, le=100)
    verdict: Verdict
    confidence: int = Field(..., ge=0, le=100)
    risk_level: RiskLevel
    risk_factors: List[str] = Field(default_factory=list)
    positive_indicators: List[str] = Field(default_factory=list)
    reasoning: str = ""
    analysis_partial: bool = False
    partial_reason: Optional[str] = None
    evidence_ids: List[str] = Field(default_factory=list)
    escalated: Optional[bool] = None
    suspicion_score: Optional[float] = None
    report_locator: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    override: Optional[AdminOverride] = None

    @field_validator("applied_weights")
    @classmethod
    def validate_weights(cls, v: Dict[FactorFamily, float]) -> Dict[FactorFamily, float]:
        """Applied weights must sum to 1.0."""
        total = sum(v.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"applied weights sum to {total}, expected 1.0")
        return v

    @property
    def effective_verdict(self) -> Verdict:
        """Verdict after any admin override."""
        if self.override is not None:
            return self.override.new_verdict
        return self.verdict


class ReviewTicket(BaseModel):
    ticket_id: str = Field(default_factory=new_id)
    fusion_result_id: str
    job_id: str
    priority: ReviewPriority
    sla_deadline: datetime
    state: ReviewState = ReviewState.OPEN
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


class JobOutcome(BaseModel):
    """What a worker reports after running a job through the pipeline."""
    job_id: str
    state: JobState
    escalated: bool = False
    suspicion_score: float = 0.0
    evidence: List[EvidenceRecord] = Field(default_factory=list)
    fusion_result: Optional[FusionResult] = None
    review_ticket: Optional[ReviewTicket] = None
    processing_ms: float = 0.0


# ---------------------------------------------------------------------------
# Notifications and usage
# ---------------------------------------------------------------------------

class NotificationEndpoint(BaseModel):
    endpoint_id: str = Field(default_factory=new_id)
    organization_id: str
    url: str
    secret: Optional[str] = None
    active: bool = True


class NotificationPayload(BaseModel):
    """Body of the outbound webhook."""
    event: str = "analysis.complete"
    job_id: str
    aggregated_score: int
    verdict: Verdict
    reference_url: str
    analysis_partial: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class WebhookDelivery(BaseModel):
    delivery_id: str = Field(default_factory=new_id)
    endpoint_id: str
    job_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    response_status: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None


class UsageEvent(BaseModel):
    event_id: str = Field(default_factory=new_id)
    organization_id: str
    job_id: str
    event_type: str = "analysis"
    escalated: bool = False
    processing_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
