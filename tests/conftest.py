"""Pytest configuration and shared fixtures for TrustLens tests."""

from datetime import datetime, timezone

import pytest

from trustlens.adapters import build_adapters
from trustlens.adapters.providers import RecordedProviderClient
from trustlens.config import FactorWeights, PipelineSettings
from trustlens.core.coordinator import PipelineCoordinator
from trustlens.core.store import RecordStore
from trustlens.models import (
    AdapterName,
    AnalysisJob,
    ArtifactSignals,
    EvidenceRecord,
    FactorFamily,
    FusionResult,
    RiskLevel,
    Verdict,
)
from trustlens.review.router import ReviewRouter
from trustlens.utils.audit import AuditLogger, reset_audit_logger

SUBMITTED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_audit_dir(tmp_path, monkeypatch):
    """Point the global audit logger at a per-test directory."""
    monkeypatch.setenv("TRUSTLENS_AUDIT_DIR", str(tmp_path / "audit"))
    reset_audit_logger()
    yield
    reset_audit_logger()


@pytest.fixture
def audit(tmp_path):
    logger = AuditLogger(tmp_path / "audit_trail")
    yield logger
    logger.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """In-memory record store."""
    record_store = RecordStore(":memory:")
    yield record_store
    record_store.close()


@pytest.fixture
def settings():
    """Default settings without backoff sleeps between adapter retries."""
    return PipelineSettings.from_dict({"retry": {"adapter_backoff_base": 0.0, "backoff_base": 0.0}})


@pytest.fixture
def submitted_at():
    return SUBMITTED_AT


@pytest.fixture
def make_job():
    """Factory for analysis jobs with sensible defaults."""

    def _make(**overrides) -> AnalysisJob:
        signals = overrides.pop("signals", None)
        if isinstance(signals, dict):
            signals = ArtifactSignals(**signals)
        fields = {
            "artifact_ref": "uploads/product-001.jpg",
            "organization_id": "org-acme",
            "submitted_at": SUBMITTED_AT,
            "signals": signals or ArtifactSignals(width=1200, height=1200),
        }
        fields.update(overrides)
        return AnalysisJob(**fields)

    return _make


@pytest.fixture
def make_record():
    """Factory for successful evidence records."""

    def _make(adapter: AdapterName, payload: dict, job_id: str = "job-1", **kwargs) -> EvidenceRecord:
        return EvidenceRecord.success(job_id, adapter, payload, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# Provider responses
# ---------------------------------------------------------------------------

@pytest.fixture
def genuine_responses():
    """Responses for an authentic product photo with content credentials."""
    return {
        AdapterName.PROVENANCE: {
            "manifest_present": True,
            "signature_valid": True,
            "verified": True,
            "issuer": "Adobe Content Authenticity",
            "exif_present": True,
            "exif_consistent": True,
            "camera_make": "Canon",
        },
        AdapterName.PERCEPTUAL_DUPLICATE: {"phash": "d1c4a0f0e0c0b0a0", "matches": []},
        AdapterName.MANIPULATION: {"score": 5.0, "confidence": 90.0, "detected_faces": 0},
        AdapterName.WEB_PRESENCE: {"matches_found": 0, "sources": [], "engines_used": ["bing", "google"]},
        AdapterName.IDENTITY: {"trust_score": 0.9, "verified_seller": True, "account_age_days": 900},
    }


@pytest.fixture
def fake_responses():
    """Responses for a stolen, manipulated image from an untrusted seller."""
    return {
        AdapterName.PROVENANCE: {"manifest_present": False, "exif_present": False},
        AdapterName.PERCEPTUAL_DUPLICATE: {
            "phash": "ffee00112233aabb",
            "matches": [{"reference": "https://cdn.example.net/original.jpg", "hamming_distance": 1}],
        },
        AdapterName.MANIPULATION: {"score": 85.0, "confidence": 90.0, "detected_faces": 1},
        AdapterName.WEB_PRESENCE: {
            "matches_found": 6,
            "sources": [
                {"url": "https://www.aliexpress.com/item/1.html", "similarity": 95.0},
                {"url": "https://www.dhgate.com/product/2.html", "similarity": 90.0},
                {"url": "https://imgur.com/gallery/x", "similarity": 80.0},
            ],
            "engines_used": ["google"],
        },
        AdapterName.IDENTITY: {"trust_score": 0.2, "verified_seller": False, "prior_flags": 2},
    }


@pytest.fixture
def make_clients():
    """Factory for recorded provider clients, one per adapter."""

    def _make(responses: dict, **per_adapter) -> dict:
        clients = {}
        for adapter in AdapterName:
            options = per_adapter.get(adapter.value, {})
            clients[adapter] = RecordedProviderClient(
                adapter.value,
                default=responses.get(adapter),
                label=f"{adapter.value}-recorded",
                **options,
            )
        return clients

    return _make


@pytest.fixture
def make_coordinator(store, settings):
    """Factory building a coordinator over recorded clients."""
    built = []

    def _make(clients: dict, pipeline_settings: PipelineSettings = None, router=None, audit=None):
        pipeline_settings = pipeline_settings or settings
        cheap, expensive = build_adapters(pipeline_settings, clients)
        coordinator = PipelineCoordinator(
            cheap,
            expensive,
            store,
            pipeline_settings,
            router=router or ReviewRouter(store, pipeline_settings.review_sla_hours),
            audit=audit,
        )
        built.append(coordinator)
        return coordinator

    yield _make

    for coordinator in built:
        coordinator.close()


@pytest.fixture
def make_result(store, make_job):
    """Factory for fusion results, stored together with their job by default."""

    def _make(
        verdict: Verdict = Verdict.SUSPICIOUS,
        score: int = 55,
        partial: bool = False,
        job: AnalysisJob = None,
        persist: bool = True,
    ) -> FusionResult:
        job = job or make_job()
        result = FusionResult(
            job_id=job.job_id,
            factor_scores={family: float(score) for family in FactorFamily},
            applied_weights=FactorWeights().as_mapping(),
            aggregated_score=score,
            verdict=verdict,
            confidence=70,
            risk_level=RiskLevel.MEDIUM,
            reasoning="Recorded for tests.",
            analysis_partial=partial,
            partial_reason="failed: identity (HTTP error 503)" if partial else None,
        )
        if persist:
            store.create_job(job)
            store.create_fusion_result(result)
        return result

    return _make
