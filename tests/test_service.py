"""Tests for the queue-driven analysis service."""

import json
from unittest.mock import Mock

import pytest

from trustlens.config import PipelineSettings
from trustlens.core.queue import EntryState
from trustlens.core.service import AnalysisService
from trustlens.core.storage import LocalArtifactStorage
from trustlens.models import (
    AdapterName,
    DeliveryStatus,
    JobState,
    NotificationEndpoint,
    Priority,
    QueueName,
    Verdict,
)
from trustlens.utils.exceptions import NotificationFailed, RecordNotFound, StorageError


@pytest.fixture
def service_settings():
    return PipelineSettings.from_dict({
        "retry": {"adapter_backoff_base": 0.0, "backoff_base": 0.0, "webhook_backoff_base": 0.0},
        "concurrency": {"analysis": 2, "webhook": 2, "billing": 1},
        "reference_base_url": "https://app.trustlens.test/analysis",
    })


@pytest.fixture
def sender():
    return Mock(return_value=200)


@pytest.fixture
def make_service(store, audit, tmp_path, service_settings, sender, make_clients):
    """Factory for services over recorded provider clients."""
    built = []

    def _make(responses: dict, **per_adapter) -> AnalysisService:
        clients = make_clients(responses, **per_adapter)
        service = AnalysisService(
            service_settings,
            store=store,
            storage=LocalArtifactStorage(tmp_path / "artifacts"),
            clients=clients,
            audit=audit,
            sender=sender,
        )
        service.clients = clients
        built.append(service)
        return service

    yield _make

    for service in built:
        service.close()


# =============================================================================
# Submission and processing
# =============================================================================

class TestProcessing:
    """Tests for running jobs through the queues."""

    def test_submit_persists_and_enqueues(self, make_service, make_job, store, audit):
        service = make_service({})
        job = make_job(priority=Priority.HIGH)

        job_id = service.submit(job)

        assert store.get_job(job_id).state == JobState.QUEUED
        assert service.queues[QueueName.ANALYSIS].pending_count() == 1
        entry = audit.get_audit_trail(job_id=job_id, action="JOB_ENQUEUED")[0]
        assert entry["details"] == {"queue": "analysis", "priority": "HIGH"}

    def test_process_pending_completes_job(self, make_service, make_job, store, genuine_responses):
        service = make_service(genuine_responses)
        job_id = service.submit(make_job(seller_id="seller-1"))

        # analysis job plus its usage event
        assert service.process_pending() == 2

        assert store.get_job(job_id).state == JobState.DONE
        result = store.get_fusion_result_for_job(job_id)
        assert result.verdict == Verdict.GENUINE
        assert result.job_id == job_id

    def test_report_persisted(self, make_service, make_job, store, genuine_responses):
        service = make_service(genuine_responses)
        job_id = service.submit(make_job())
        service.process_pending()

        result = store.get_fusion_result_for_job(job_id)

        assert result.report_locator == f"file://reports/{job_id}.json"
        report = json.loads(service.storage.fetch(result.report_locator))
        assert report["job_id"] == job_id
        assert len(report["evidence"]) == 5
        assert report["job"]["organization_id"] == "org-acme"

    def test_usage_recorded(self, make_service, make_job, store, fake_responses):
        service = make_service(fake_responses)
        job_id = service.submit(make_job(signals={"watermark_detected": True}))
        service.process_pending()

        events = store.usage_for_org("org-acme")

        assert len(events) == 1
        assert events[0].event_id == f"usage-{job_id}"
        assert events[0].escalated

    def test_webhook_delivered(self, make_service, make_job, store, sender, fake_responses):
        endpoint = store.add_endpoint(NotificationEndpoint(
            organization_id="org-acme", url="https://hooks.acme.test/trustlens", secret="s3cret",
        ))
        service = make_service(fake_responses)
        job_id = service.submit(make_job(seller_id="seller-9", signals={"watermark_detected": True}))

        assert service.process_pending() == 3

        delivery = store.deliveries_for_job(job_id)[0]
        assert delivery.endpoint_id == endpoint.endpoint_id
        assert delivery.status == DeliveryStatus.DELIVERED
        payload = json.loads(sender.call_args[0][1])
        assert payload["verdict"] == "FAKE"
        assert payload["reference_url"] == f"https://app.trustlens.test/analysis/{job_id}"

    def test_webhook_failure_does_not_fail_job(self, make_service, make_job, store, sender, genuine_responses):
        store.add_endpoint(NotificationEndpoint(organization_id="org-acme", url="https://hooks.acme.test/down"))
        sender.side_effect = NotificationFailed("https://hooks.acme.test/down", "connection error: refused")
        service = make_service(genuine_responses)
        job_id = service.submit(make_job())

        service.process_pending()

        assert store.get_job(job_id).state == JobState.DONE
        assert store.deliveries_for_job(job_id)[0].status == DeliveryStatus.FAILED
        assert sender.call_count == 3

    def test_priority_order(self, make_service, make_job, store, genuine_responses):
        service = make_service(genuine_responses)
        low = service.submit(make_job(priority=Priority.LOW))
        urgent = service.submit(make_job(priority=Priority.URGENT))

        service.pools[QueueName.ANALYSIS].run_once()

        assert store.get_job(urgent).state == JobState.DONE
        assert store.get_job(low).state == JobState.QUEUED

    def test_drain_with_worker_threads(self, make_service, make_job, store, genuine_responses):
        service = make_service(genuine_responses)
        job_ids = [service.submit(make_job(artifact_ref=f"uploads/p-{i}.jpg")) for i in range(4)]

        assert service.drain(timeout=30)

        assert all(store.get_job(job_id).state == JobState.DONE for job_id in job_ids)
        assert len(store.usage_for_org("org-acme")) == 4


# =============================================================================
# Re-analysis, cancellation and failures
# =============================================================================

class TestLifecycle:
    """Tests for re-analysis, cancellation and retry exhaustion."""

    def test_reanalyze_forces_escalation(self, make_service, make_job, store, genuine_responses):
        service = make_service(genuine_responses)
        original = service.submit(make_job(seller_id="seller-1"))
        service.process_pending()
        assert not store.get_fusion_result_for_job(original).escalated

        job = service.reanalyze(original)
        service.process_pending()

        assert job.reanalysis_of == original
        assert job.force_escalation
        assert store.get_fusion_result_for_job(job.job_id).escalated
        assert service.clients[AdapterName.MANIPULATION].calls == 1
        assert store.get_fusion_result_for_job(original) is not None

    def test_cancel_queued_job(self, make_service, make_job, store, genuine_responses):
        service = make_service(genuine_responses)
        job_id = service.submit(make_job())

        assert service.cancel(job_id)

        assert store.get_job(job_id).state == JobState.CANCELLED
        assert service.queues[QueueName.ANALYSIS].get(job_id).state == EntryState.CANCELLED
        assert service.process_pending() == 0
        assert not service.cancel(job_id)

    def test_finished_jobs_pruned_from_queue(
        self, make_service, make_job, store, service_settings, genuine_responses
    ):
        """The queue keeps only the most recent finished entries; the store keeps everything."""
        service_settings.finished_retention = 1
        service = make_service(genuine_responses)
        job_ids = [service.submit(make_job(artifact_ref=f"uploads/p-{i}.jpg")) for i in range(3)]

        service.process_pending()

        analysis = service.queues[QueueName.ANALYSIS]
        assert analysis.stats()["completed"] == 1
        assert analysis.get(job_ids[-1]).state == EntryState.COMPLETED
        with pytest.raises(RecordNotFound):
            analysis.get(job_ids[0])
        assert store.get_job(job_ids[0]).state == JobState.DONE
        assert not service.cancel(job_ids[0])

    def test_cancel_unknown_job_raises(self, make_service):
        service = make_service({})

        with pytest.raises(RecordNotFound):
            service.cancel("missing")

    def test_exhausted_job_marked_failed(self, make_service, make_job, store, audit, genuine_responses):
        service = make_service(genuine_responses)
        service.coordinator.run = Mock(side_effect=StorageError("jobs", "database is locked"))
        job_id = service.submit(make_job())

        assert service.process_pending() == 3

        assert store.get_job(job_id).state == JobState.FAILED
        assert [e.job_id for e in service.failed_jobs()] == [job_id]
        entries = audit.get_audit_trail(job_id=job_id, action="JOB_RETRY_EXHAUSTED")
        assert len(entries) == 1
        assert entries[0]["details"]["attempts"] == 3


# =============================================================================
# Queries
# =============================================================================

class TestQueries:
    """Tests for recompute and health."""

    def test_recompute_matches_stored(self, make_service, make_job, store, fake_responses):
        service = make_service(fake_responses)
        job_id = service.submit(make_job(seller_id="seller-9", signals={"watermark_detected": True}))
        service.process_pending()
        stored = store.get_fusion_result_for_job(job_id)

        fresh = service.recompute(job_id)

        assert fresh.aggregated_score == stored.aggregated_score
        assert fresh.verdict == stored.verdict
        assert fresh.confidence == stored.confidence
        assert fresh.factor_scores == stored.factor_scores
        assert fresh.result_id != stored.result_id
        assert len(store.evidence_for_job(job_id)) == 5

    def test_health_report(self, make_service, make_job, genuine_responses):
        service = make_service(genuine_responses)
        service.submit(make_job())

        report = service.health()

        assert report["status"] == "healthy"
        assert report["queues"]["analysis"]["waiting"] == 1
        assert report["workers"]["webhook"]["concurrency"] == 2
        assert report["workers"]["analysis"]["running"] is False
        assert "checked_at" in report
