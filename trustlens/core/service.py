"""
Analysis Service

Wires the pipeline together: one JobQueue and WorkerPool per queue class
(analysis, webhook, billing), the pipeline coordinator, review routing,
webhook notifications, usage billing and report persistence.

Typical use:

    service = AnalysisService(settings)
    service.submit(AnalysisJob(artifact_ref="uploads/a.jpg", organization_id="org-1"))
    service.drain()
"""

import logging
import time
from typing import Callable, Dict, List, Mapping, Optional

from tqdm import tqdm

from trustlens.adapters import ProviderClient, build_adapters
from trustlens.analysis.fusion import FusionEngine
from trustlens.config import PipelineSettings
from trustlens.core.coordinator import PipelineCoordinator
from trustlens.core.queue import ClaimedJob, EntryState, JobQueue, QueueEntry, queue_health
from trustlens.core.storage import LocalArtifactStorage
from trustlens.core.store import RecordStore
from trustlens.core.worker_pool import WorkerPool
from trustlens.models import (
    AdapterName,
    AnalysisJob,
    FusionResult,
    JobState,
    Priority,
    QueueName,
    UsageEvent,
    utcnow,
)
from trustlens.output.json_export import JSONExporter, report_key
from trustlens.review.notifications import NotificationDispatcher, Sender
from trustlens.review.router import ReviewRouter
from trustlens.utils.audit import AuditLogger, get_audit_logger
from trustlens.utils.exceptions import JobRetryExhausted, RecordNotFound, StorageError

logger = logging.getLogger(__name__)


class AnalysisService:
    """Queue-driven analysis service.

    Args:
        settings: Pipeline settings (default: PipelineSettings())
        store: Record store (default: opened from settings.database)
        storage: Artifact storage (default: settings.storage_root)
        clients: Provider clients overriding the configured endpoints
        audit: Audit logger (default: global audit logger)
        sender: Webhook POST function (default: urllib)
        clock: Monotonic clock used by the queues
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        store: Optional[RecordStore] = None,
        storage: Optional[LocalArtifactStorage] = None,
        clients: Optional[Mapping[AdapterName, ProviderClient]] = None,
        audit: Optional[AuditLogger] = None,
        sender: Optional[Sender] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or PipelineSettings()
        self.store = store or RecordStore(self.settings.database)
        self.storage = storage or LocalArtifactStorage(self.settings.storage_root)
        self.audit = audit or get_audit_logger()
        self.exporter = JSONExporter()

        retry = self.settings.retry
        policies = {
            QueueName.ANALYSIS: retry.queue_policy(),
            QueueName.WEBHOOK: retry.webhook_policy(),
            QueueName.BILLING: retry.queue_policy(),
        }
        self.queues: Dict[QueueName, JobQueue] = {
            name: JobQueue(
                name.value,
                retry_policy=policies[name],
                lease_seconds=self.settings.lease_seconds,
                retain_finished=self.settings.finished_retention,
                clock=clock,
                on_exhausted=self._on_analysis_exhausted if name == QueueName.ANALYSIS else None,
                audit=self.audit,
            )
            for name in QueueName
        }

        cheap, expensive = build_adapters(self.settings, clients)
        self.router = ReviewRouter(self.store, self.settings.review_sla_hours, self.audit)
        self.fusion = FusionEngine(self.settings)
        self.coordinator = PipelineCoordinator(
            cheap,
            expensive,
            self.store,
            self.settings,
            router=self.router,
            fusion=self.fusion,
            audit=self.audit,
        )
        self.dispatcher = NotificationDispatcher(
            self.store,
            self.settings.reference_base_url,
            retry_policy=policies[QueueName.WEBHOOK],
            queue=self.queues[QueueName.WEBHOOK],
            audit=self.audit,
            sender=sender,
        )

        handlers = {
            QueueName.ANALYSIS: self._handle_analysis,
            QueueName.WEBHOOK: self.dispatcher.handle,
            QueueName.BILLING: self._handle_billing,
        }
        self.pools: Dict[QueueName, WorkerPool] = {
            name: WorkerPool(
                self.queues[name],
                handlers[name],
                concurrency=self.settings.concurrency.for_queue(name),
            )
            for name in QueueName
        }

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, job: AnalysisJob) -> str:
        """Persist a job and put it on the analysis queue.

        Returns:
            The job id
        """
        self.store.create_job(job)
        self.queues[QueueName.ANALYSIS].enqueue(
            {"job_id": job.job_id},
            priority=job.priority,
            job_id=job.job_id,
        )
        self.audit.log_job_enqueued(job.job_id, QueueName.ANALYSIS.value, job.priority.value, job.organization_id)
        logger.info(f"Submitted job {job.job_id} for {job.artifact_ref} (priority={job.priority.value})")
        return job.job_id

    def reanalyze(self, job_id: str, priority: Optional[Priority] = None) -> AnalysisJob:
        """Submit a fresh job for the same artifact, always escalated."""
        original = self.store.get_job(job_id)
        job = AnalysisJob(
            artifact_ref=original.artifact_ref,
            organization_id=original.organization_id,
            priority=priority or original.priority,
            seller_id=original.seller_id,
            signals=original.signals,
            force_escalation=True,
            reanalysis_of=original.job_id,
        )
        self.submit(job)
        logger.info(f"Re-analysis {job.job_id} submitted for job {job_id}")
        return job

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued or running job.

        Returns:
            True if the job was cancelled or flagged for cancellation
        """
        queue = self.queues[QueueName.ANALYSIS]
        try:
            entry = queue.get(job_id)
        except RecordNotFound:
            # Finished and no longer retained by the queue
            self.store.get_job(job_id)
            return False
        if not queue.cancel(job_id):
            return False
        if entry.state == EntryState.CANCELLED:
            self.store.update_job_state(job_id, JobState.CANCELLED)
        return True

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def start(self) -> None:
        for pool in self.pools.values():
            pool.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        for queue in self.queues.values():
            queue.close()
        for pool in self.pools.values():
            pool.stop(timeout)

    def close(self) -> None:
        self.stop(timeout=5.0)
        self.coordinator.close()

    def drain(self, timeout: Optional[float] = None, show_progress: bool = False) -> bool:
        """Run the worker pools until every queue is empty.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)
            show_progress: Show a progress bar for analysis jobs

        Returns:
            True if all queues drained before the timeout
        """
        self.start()
        analysis = self.queues[QueueName.ANALYSIS]
        deadline = None if timeout is None else time.monotonic() + timeout
        total = analysis.pending_count()

        with tqdm(total=total, desc="Analyzing artifacts", unit="job", disable=not show_progress) as pbar:
            done = 0
            while analysis.pending_count() > 0:
                if deadline is not None and time.monotonic() >= deadline:
                    return False
                analysis.join(timeout=0.2)
                finished = total - analysis.pending_count()
                if finished > done:
                    pbar.update(finished - done)
                    done = finished

        for name in (QueueName.WEBHOOK, QueueName.BILLING):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self.queues[name].join(remaining):
                return False
        return True

    def process_pending(self) -> int:
        """Process every immediately claimable job on the calling thread.

        Analysis jobs run first so that the notifications and usage events
        they produce are handled in the same call.

        Returns:
            Number of jobs processed
        """
        processed = 0
        for name in QueueName:
            while self.pools[name].run_once(timeout=0):
                processed += 1
        return processed

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_analysis(self, claimed: ClaimedJob) -> None:
        outcome = self.coordinator.run(claimed.job_id, attempt=claimed.attempt, cancel_event=claimed.cancel_event)
        result = outcome.fusion_result
        job = self.store.get_job(claimed.job_id)

        if result.report_locator is None:
            self._persist_report(job, result)

        if not self.store.deliveries_for_job(job.job_id):
            try:
                self.dispatcher.dispatch(result, job.organization_id)
            except Exception as e:
                # Notification problems never fail the analysis.
                logger.error(f"Could not dispatch notifications for job {job.job_id}: {e}", exc_info=True)
                self.audit.log_error("NOTIFICATION_DISPATCH_FAILED", e, job_id=job.job_id)

        usage = UsageEvent(
            event_id=f"usage-{job.job_id}",
            organization_id=job.organization_id,
            job_id=job.job_id,
            escalated=outcome.escalated,
            processing_ms=outcome.processing_ms,
        )
        billing = self.queues[QueueName.BILLING]
        try:
            billing.enqueue(
                {"type": "usage_increment", "usage": usage.model_dump(mode="json")},
                priority=Priority.LOW,
                job_id=usage.event_id,
            )
        except ValueError:
            logger.debug(f"Usage event for job {job.job_id} already queued")

    def _handle_billing(self, claimed: ClaimedJob) -> None:
        message = claimed.payload
        if message.get("type") != "usage_increment":
            logger.warning(f"Ignoring unknown billing message type: {message.get('type')}")
            return
        usage = UsageEvent.model_validate(message["usage"])
        self.store.record_usage(usage)

    def _persist_report(self, job: AnalysisJob, result: FusionResult) -> None:
        evidence = self.store.evidence_for_job(job.job_id)
        locator = self.storage.store(report_key(job.job_id), self.exporter.to_bytes(result, job, evidence))
        self.store.set_report_locator(result.result_id, locator)
        result.report_locator = locator

    def _on_analysis_exhausted(self, entry: QueueEntry, error: JobRetryExhausted) -> None:
        try:
            self.store.update_job_state(entry.job_id, JobState.FAILED, error=str(error))
        except (StorageError, RecordNotFound) as e:
            logger.error(f"Could not mark job {entry.job_id} failed: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recompute(self, job_id: str) -> FusionResult:
        """Re-fuse a job from its stored evidence without persisting anything."""
        job = self.store.get_job(job_id)
        stored = self.store.get_fusion_result_for_job(job_id)
        return self.fusion.fuse(
            self.store.evidence_for_job(job_id),
            job_id=job_id,
            submitted_at=job.submitted_at,
            escalated=stored.escalated if stored else None,
            suspicion=stored.suspicion_score if stored else None,
        )

    def health(self) -> dict:
        report = queue_health({name.value: queue for name, queue in self.queues.items()})
        report["workers"] = {
            name.value: {
                "concurrency": pool.concurrency,
                "running": pool.running,
                "processed": pool.processed,
                "failed": pool.failed,
            }
            for name, pool in self.pools.items()
        }
        report["checked_at"] = utcnow().isoformat()
        return report

    def failed_jobs(self) -> List[QueueEntry]:
        return self.queues[QueueName.ANALYSIS].failed_jobs()
