"""
Pipeline Coordinator

Runs one analysis job through its stages:

    QUEUED -> RUNNING_CHEAP -> (RUNNING_EXPENSIVE | SKIPPED_EXPENSIVE) -> FUSING -> DONE

The cheap stage runs the provenance and perceptual-duplicate adapters one
after the other inside a short aggregate budget, then the local heuristics
and the escalation gate. Escalated jobs fan out to the expensive adapters,
each bounded by its own timeout, and wait for all of them to settle. Every
adapter outcome, including timeouts, becomes an evidence record; none of them
aborts the job. Cancellation is honored between stages, before anything is
written.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, List, Optional, Sequence

from trustlens.adapters.base import EvidenceSource
from trustlens.analysis.escalation import EscalationDecision, evaluate_escalation, inputs_from_evidence
from trustlens.analysis.fusion import FusionEngine
from trustlens.analysis.heuristics import LocalHeuristics
from trustlens.config import PipelineSettings
from trustlens.models import (
    AnalysisJob,
    EvidenceRecord,
    EvidenceStatus,
    FusionResult,
    JobOutcome,
    JobState,
    latest_by_adapter,
)
from trustlens.utils.audit import AuditLogger, get_audit_logger
from trustlens.utils.exceptions import AllExpensiveAdaptersFailed, InvalidStateTransition, JobCancelled

logger = logging.getLogger(__name__)


class PipelineCoordinator:
    """Drives jobs through the staged pipeline.

    Args:
        cheap_sources: Adapters of the cheap stage, run in order
        expensive_sources: Adapters of the expensive stage, run concurrently
        store: RecordStore for jobs, evidence and results
        settings: Pipeline settings (timeouts, threshold, weights)
        router: Optional ReviewRouter applied to each fused result
        heuristics: Local heuristics (default: built from settings and store)
        fusion: Fusion engine (default: built from settings)
        audit: Audit logger (default: global audit logger)
        clock: Monotonic clock for deadlines and processing time
    """

    def __init__(
        self,
        cheap_sources: Sequence[EvidenceSource],
        expensive_sources: Sequence[EvidenceSource],
        store,
        settings: Optional[PipelineSettings] = None,
        router=None,
        heuristics: Optional[LocalHeuristics] = None,
        fusion: Optional[FusionEngine] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or PipelineSettings()
        self.cheap_sources = list(cheap_sources)
        self.expensive_sources = list(expensive_sources)
        self.store = store
        self.router = router
        self.heuristics = heuristics or LocalHeuristics(self.settings.heuristics, store)
        self.fusion = fusion or FusionEngine(self.settings)
        self._audit = audit
        self._clock = clock
        # Shared by all jobs; never shut down with wait=True while jobs run.
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.concurrency.adapter_threads,
            thread_name_prefix="adapter",
        )

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    def close(self) -> None:
        """Release adapter threads without waiting for stragglers."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def run(
        self,
        job_id: str,
        attempt: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobOutcome:
        """Run a stored job through the pipeline.

        Running a job that already has a fusion result returns that result
        without collecting evidence again. The redelivered run still finishes
        what the earlier one may not have: routing to review, the move to
        DONE and the completion audit entry.

        Args:
            job_id: Identifier of a job in the record store
            attempt: Queue attempt number, recorded on the job
            cancel_event: Set by the queue when the job is cancelled

        Returns:
            JobOutcome

        Raises:
            JobCancelled: If the job was cancelled between stages
            StorageError: If the record store is unreachable
        """
        started = self._clock()
        cancel_event = cancel_event or threading.Event()

        existing = self.store.get_fusion_result_for_job(job_id)
        if existing is not None:
            logger.info(f"Job {job_id} already fused; finishing from stored result")
            return self._finish_fused(job_id, existing, started)

        job = self.store.get_job(job_id)
        if job.state.is_terminal:
            raise InvalidStateTransition(job_id, job.state.value, JobState.RUNNING_CHEAP.value)

        # Cheap stage
        job = self._transition(job, JobState.RUNNING_CHEAP, attempt_count=attempt)
        cheap_records = self._run_cheap_stage(job)
        self._check_cancelled(job, cancel_event, "cheap")
        self._append(job, cheap_records)

        heuristics = self.heuristics.evaluate(job)
        decision = evaluate_escalation(
            inputs_from_evidence(heuristics, latest_by_adapter(cheap_records)),
            threshold=self.settings.escalation_threshold,
            force=job.force_escalation,
        )
        logger.info(
            f"Job {job_id} suspicion={decision.suspicion:.2f} escalate={decision.escalate} "
            f"reasons={list(decision.reasons)}"
        )
        self._check_cancelled(job, cancel_event, "gate")

        # Expensive stage
        if decision.escalate:
            job = self._transition(job, JobState.RUNNING_EXPENSIVE)
            expensive_records = self._run_expensive_stage(job)
            self._report_all_failed(job, expensive_records)
        else:
            job = self._transition(job, JobState.SKIPPED_EXPENSIVE)
            expensive_records = self._skipped_records(job, decision)

        self._check_cancelled(job, cancel_event, "expensive")
        self._append(job, expensive_records)

        # Fusion
        job = self._transition(job, JobState.FUSING)
        result = self.fusion.fuse(
            self.store.evidence_for_job(job_id),
            job_id=job_id,
            submitted_at=job.submitted_at,
            escalated=decision.escalate,
            suspicion=decision.suspicion,
        )
        self.store.create_fusion_result(result)
        return self._finish_fused(job_id, result, started, job=job, evidence=cheap_records + expensive_records)

    def _finish_fused(
        self,
        job_id: str,
        result: FusionResult,
        started: float,
        job: Optional[AnalysisJob] = None,
        evidence: Optional[List[EvidenceRecord]] = None,
    ) -> JobOutcome:
        # Each step is idempotent, so a run interrupted after fusion can be repeated.
        ticket = self.router.route(result) if self.router is not None else None
        if ticket is None:
            ticket = self.store.get_review_ticket_for_result(result.result_id)

        job = job or self.store.get_job(job_id)
        if not job.state.is_terminal:
            job = self._transition(job, JobState.DONE)
            self.audit.log_job_completed(
                job_id, result.verdict.value, result.aggregated_score, result.analysis_partial, job.organization_id
            )

        return JobOutcome(
            job_id=job_id,
            state=JobState.DONE,
            escalated=bool(result.escalated),
            suspicion_score=result.suspicion_score or 0.0,
            evidence=evidence if evidence is not None else self.store.evidence_for_job(job_id),
            fusion_result=result,
            review_ticket=ticket,
            processing_ms=max(0.0, (self._clock() - started) * 1000.0),
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_cheap_stage(self, job: AnalysisJob) -> List[EvidenceRecord]:
        timeouts = self.settings.timeouts
        stage_deadline = self._clock() + timeouts.cheap_stage
        records = []

        for source in self.cheap_sources:
            deadline = min(stage_deadline, self._clock() + timeouts.for_adapter(source.name))
            future = self._executor.submit(source.collect, job, deadline)
            records.append(self._settle(job, source, future, deadline))

        return records

    def _run_expensive_stage(self, job: AnalysisJob) -> List[EvidenceRecord]:
        now = self._clock()
        pending = []
        for source in self.expensive_sources:
            deadline = now + self.settings.timeouts.for_adapter(source.name)
            pending.append((source, self._executor.submit(source.collect, job, deadline), deadline))

        # Wait for every adapter, each against its own deadline.
        return [self._settle(job, source, future, deadline) for source, future, deadline in pending]

    def _settle(self, job: AnalysisJob, source: EvidenceSource, future: Future, deadline: float) -> EvidenceRecord:
        started = self._clock()
        try:
            return future.result(timeout=max(0.0, deadline - self._clock()))
        except FutureTimeout:
            future.cancel()
            timeout = self.settings.timeouts.for_adapter(source.name)
            logger.warning(f"{source.name.value} timed out for job {job.job_id}")
            return EvidenceRecord.failure(
                job.job_id,
                source.name,
                f"timed out after {timeout:.1f}s",
                latency_ms=max(0.0, (self._clock() - started) * 1000.0),
            )
        except Exception as e:
            logger.error(f"{source.name.value} crashed for job {job.job_id}: {e}", exc_info=True)
            return EvidenceRecord.failure(job.job_id, source.name, f"unexpected error: {type(e).__name__}: {e}")

    def _skipped_records(self, job: AnalysisJob, decision: EscalationDecision) -> List[EvidenceRecord]:
        reason = f"not escalated (suspicion {decision.suspicion:.2f} < {decision.threshold:.2f})"
        return [EvidenceRecord.skipped(job.job_id, source.name, reason) for source in self.expensive_sources]

    def _report_all_failed(self, job: AnalysisJob, records: List[EvidenceRecord]) -> None:
        ran = [r for r in records if r.status != EvidenceStatus.SKIPPED]
        if ran and all(r.status == EvidenceStatus.FAILURE for r in ran):
            error = AllExpensiveAdaptersFailed(job.job_id, [r.adapter.value for r in ran])
            logger.error(str(error))
            self.audit.log_error("ALL_EXPENSIVE_ADAPTERS_FAILED", error, job_id=job.job_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _append(self, job: AnalysisJob, records: List[EvidenceRecord]) -> None:
        self.store.append_evidence_batch(records)
        for record in records:
            self.audit.log_evidence(job.job_id, record.adapter.value, record.status.value, record.reason)

    def _transition(self, job: AnalysisJob, target: JobState, attempt_count: Optional[int] = None) -> AnalysisJob:
        if not job.state.can_transition(target):
            raise InvalidStateTransition(job.job_id, job.state.value, target.value)

        self.store.update_job_state(job.job_id, target, attempt_count=attempt_count)
        logger.debug(f"Job {job.job_id}: {job.state.value} -> {target.value}")

        update: Dict[str, object] = {"state": target}
        if attempt_count is not None:
            update["attempt_count"] = attempt_count
        return job.model_copy(update=update)

    def _check_cancelled(self, job: AnalysisJob, cancel_event: threading.Event, stage: str) -> None:
        if not cancel_event.is_set():
            return
        self.store.update_job_state(job.job_id, JobState.CANCELLED)
        logger.info(f"Job {job.job_id} cancelled after {stage} stage")
        raise JobCancelled(job.job_id, stage)
