"""
Record Store

Persists jobs, evidence, fusion results, review tickets, overrides,
notification deliveries and usage events. Every method converts rows to
pydantic models before its session closes, so callers never hold live ORM
objects. Database connectivity failures surface as StorageError.
"""

import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from trustlens.core.database import (
    AdminOverrideRow,
    AnalysisJobRow,
    EvidenceRecordRow,
    FusionResultRow,
    NotificationDeliveryRow,
    NotificationEndpointRow,
    ReviewTicketRow,
    UsageEventRow,
    get_engine,
    get_session,
    init_db,
)
from trustlens.models import (
    AdminOverride,
    AnalysisJob,
    ArtifactSignals,
    DeliveryStatus,
    EvidenceRecord,
    FactorFamily,
    FusionResult,
    JobState,
    NotificationEndpoint,
    ReviewState,
    ReviewTicket,
    UsageEvent,
    WebhookDelivery,
)
from trustlens.utils.exceptions import OverrideConflict, RecordNotFound, StorageError

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored times are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class RecordStore:
    """SQLAlchemy-backed store for pipeline records."""

    def __init__(self, database: str = ":memory:"):
        """Open (and create if needed) the database.

        Args:
            database: SQLite path, ":memory:" or a SQLAlchemy URL
        """
        self.database = database
        self._engine = get_engine(database)
        # SQLite allows one writer; server databases handle their own locking.
        self.serialize_sessions = self._engine.dialect.name == "sqlite"
        self._lock = threading.RLock() if self.serialize_sessions else nullcontext()
        try:
            init_db(self._engine)
        except OperationalError as e:
            raise StorageError(database, "cannot initialize database", e) from e

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _session(self, key: Optional[str] = None) -> Iterator[Session]:
        with self._lock:
            session = get_session(self._engine)
            try:
                yield session
                session.commit()
            except OperationalError as e:
                session.rollback()
                logger.error(f"Database unavailable while handling {key}: {e}")
                raise StorageError(key, "database unavailable", e) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, job: AnalysisJob) -> AnalysisJob:
        with self._session(job.job_id) as session:
            session.add(AnalysisJobRow(
                id=job.job_id,
                artifact_ref=job.artifact_ref,
                organization_id=job.organization_id,
                priority=job.priority.value,
                state=job.state.value,
                attempt_count=job.attempt_count,
                seller_id=job.seller_id,
                origin=job.signals.origin,
                signals=job.signals.model_dump(mode="json"),
                force_escalation=job.force_escalation,
                reanalysis_of=job.reanalysis_of,
                submitted_at=job.submitted_at,
            ))
        return job

    def get_job(self, job_id: str) -> AnalysisJob:
        with self._session(job_id) as session:
            row = session.get(AnalysisJobRow, job_id)
            if row is None:
                raise RecordNotFound("Job", job_id)
            return self._job_from_row(row)

    def update_job_state(
        self,
        job_id: str,
        state: JobState,
        attempt_count: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._session(job_id) as session:
            row = session.get(AnalysisJobRow, job_id)
            if row is None:
                raise RecordNotFound("Job", job_id)
            row.state = state.value
            if attempt_count is not None:
                row.attempt_count = attempt_count
            if error is not None:
                row.error = error

    def list_jobs(
        self,
        organization_id: Optional[str] = None,
        state: Optional[JobState] = None,
        limit: int = 50,
    ) -> List[AnalysisJob]:
        stmt = select(AnalysisJobRow).order_by(AnalysisJobRow.submitted_at.desc()).limit(limit)
        if organization_id:
            stmt = stmt.where(AnalysisJobRow.organization_id == organization_id)
        if state:
            stmt = stmt.where(AnalysisJobRow.state == state.value)
        with self._session() as session:
            return [self._job_from_row(row) for row in session.scalars(stmt)]

    def count_jobs_by_state(self) -> Dict[str, int]:
        stmt = select(AnalysisJobRow.state, func.count()).group_by(AnalysisJobRow.state)
        with self._session() as session:
            return {state: count for state, count in session.execute(stmt)}

    def count_recent_from_origin(
        self,
        origin: str,
        since: datetime,
        exclude_job_id: Optional[str] = None,
    ) -> int:
        """Count jobs submitted from ``origin`` at or after ``since``."""
        stmt = (
            select(func.count())
            .select_from(AnalysisJobRow)
            .where(AnalysisJobRow.origin == origin, AnalysisJobRow.submitted_at >= since)
        )
        if exclude_job_id:
            stmt = stmt.where(AnalysisJobRow.id != exclude_job_id)
        with self._session(origin) as session:
            return session.scalar(stmt) or 0

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def append_evidence(self, record: EvidenceRecord) -> EvidenceRecord:
        """Append one evidence record to its job."""
        self.append_evidence_batch([record])
        return record

    def append_evidence_batch(self, records: List[EvidenceRecord]) -> List[EvidenceRecord]:
        """Append several records in one transaction (all or nothing)."""
        if not records:
            return []

        job_ids = {r.job_id for r in records}
        with self._session(",".join(sorted(job_ids))) as session:
            positions = {}
            for job_id in job_ids:
                if session.get(AnalysisJobRow, job_id) is None:
                    raise RecordNotFound("Job", job_id)
                positions[job_id] = session.scalar(
                    select(func.count())
                    .select_from(EvidenceRecordRow)
                    .where(EvidenceRecordRow.job_id == job_id)
                ) or 0

            for record in records:
                session.add(EvidenceRecordRow(
                    id=record.record_id,
                    job_id=record.job_id,
                    position=positions[record.job_id],
                    adapter=record.adapter.value,
                    status=record.status.value,
                    payload=record.payload,
                    reason=record.reason,
                    latency_ms=record.latency_ms,
                    provider=record.provider,
                    recorded_at=record.recorded_at,
                ))
                positions[record.job_id] += 1
        return records

    def evidence_for_job(self, job_id: str) -> List[EvidenceRecord]:
        """All evidence records of a job in append order."""
        stmt = (
            select(EvidenceRecordRow)
            .where(EvidenceRecordRow.job_id == job_id)
            .order_by(EvidenceRecordRow.position)
        )
        with self._session(job_id) as session:
            return [
                EvidenceRecord(
                    record_id=row.id,
                    job_id=row.job_id,
                    adapter=row.adapter,
                    status=row.status,
                    payload=row.payload,
                    reason=row.reason,
                    latency_ms=row.latency_ms,
                    provider=row.provider,
                    recorded_at=_aware(row.recorded_at),
                )
                for row in session.scalars(stmt)
            ]

    # ------------------------------------------------------------------
    # Fusion results
    # ------------------------------------------------------------------

    def create_fusion_result(self, result: FusionResult) -> FusionResult:
        with self._session(result.job_id) as session:
            if session.get(AnalysisJobRow, result.job_id) is None:
                raise RecordNotFound("Job", result.job_id)
            session.add(FusionResultRow(
                id=result.result_id,
                job_id=result.job_id,
                factor_scores={k.value: v for k, v in result.factor_scores.items()},
                applied_weights={k.value: v for k, v in result.applied_weights.items()},
                aggregated_score=result.aggregated_score,
                verdict=result.verdict.value,
                confidence=result.confidence,
                risk_level=result.risk_level.value,
                risk_factors=list(result.risk_factors),
                positive_indicators=list(result.positive_indicators),
                reasoning=result.reasoning,
                analysis_partial=result.analysis_partial,
                partial_reason=result.partial_reason,
                evidence_ids=list(result.evidence_ids),
                escalated=result.escalated,
                suspicion_score=result.suspicion_score,
                report_locator=result.report_locator,
                created_at=result.created_at,
            ))
            try:
                session.flush()
            except IntegrityError as e:
                raise StorageError(result.job_id, "fusion result already exists for job", e) from e
        return result

    def set_report_locator(self, result_id: str, locator: str) -> None:
        with self._session(result_id) as session:
            row = session.get(FusionResultRow, result_id)
            if row is None:
                raise RecordNotFound("Fusion result", result_id)
            row.report_locator = locator

    def get_fusion_result(self, result_id: str) -> FusionResult:
        with self._session(result_id) as session:
            row = session.get(FusionResultRow, result_id)
            if row is None:
                raise RecordNotFound("Fusion result", result_id)
            return self._result_from_row(row)

    def get_fusion_result_for_job(self, job_id: str) -> Optional[FusionResult]:
        stmt = select(FusionResultRow).where(FusionResultRow.job_id == job_id)
        with self._session(job_id) as session:
            row = session.scalar(stmt)
            return self._result_from_row(row) if row is not None else None

    # ------------------------------------------------------------------
    # Review tickets and overrides
    # ------------------------------------------------------------------

    def create_review_ticket(self, ticket: ReviewTicket) -> ReviewTicket:
        with self._session(ticket.fusion_result_id) as session:
            if session.get(FusionResultRow, ticket.fusion_result_id) is None:
                raise RecordNotFound("Fusion result", ticket.fusion_result_id)
            session.add(ReviewTicketRow(
                id=ticket.ticket_id,
                fusion_result_id=ticket.fusion_result_id,
                job_id=ticket.job_id,
                priority=ticket.priority.value,
                state=ticket.state.value,
                sla_deadline=ticket.sla_deadline,
                created_at=ticket.created_at,
                resolved_at=ticket.resolved_at,
            ))
        return ticket

    def get_review_ticket_for_result(self, result_id: str) -> Optional[ReviewTicket]:
        stmt = select(ReviewTicketRow).where(ReviewTicketRow.fusion_result_id == result_id)
        with self._session(result_id) as session:
            row = session.scalar(stmt)
            return self._ticket_from_row(row) if row is not None else None

    def list_review_tickets(self, state: Optional[ReviewState] = None, limit: int = 100) -> List[ReviewTicket]:
        stmt = select(ReviewTicketRow).order_by(ReviewTicketRow.sla_deadline).limit(limit)
        if state:
            stmt = stmt.where(ReviewTicketRow.state == state.value)
        with self._session() as session:
            return [self._ticket_from_row(row) for row in session.scalars(stmt)]

    def record_override(self, override: AdminOverride) -> AdminOverride:
        """Attach an override to a result and resolve its review ticket.

        Raises:
            RecordNotFound: If the fusion result does not exist
            OverrideConflict: If the result already has an override
        """
        with self._session(override.fusion_result_id) as session:
            result = session.get(FusionResultRow, override.fusion_result_id)
            if result is None:
                raise RecordNotFound("Fusion result", override.fusion_result_id)
            if result.override is not None:
                raise OverrideConflict(override.fusion_result_id, result.override.new_verdict)

            session.add(AdminOverrideRow(
                id=override.override_id,
                fusion_result_id=override.fusion_result_id,
                prior_verdict=override.prior_verdict.value,
                new_verdict=override.new_verdict.value,
                actor_id=override.actor_id,
                reason=override.reason,
                created_at=override.created_at,
            ))

            ticket = session.scalar(
                select(ReviewTicketRow).where(ReviewTicketRow.fusion_result_id == override.fusion_result_id)
            )
            if ticket is not None and ticket.state == ReviewState.OPEN.value:
                ticket.state = ReviewState.RESOLVED.value
                ticket.resolved_at = override.created_at

            try:
                session.flush()
            except IntegrityError as e:
                raise OverrideConflict(override.fusion_result_id) from e
        return override

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def add_endpoint(self, endpoint: NotificationEndpoint) -> NotificationEndpoint:
        with self._session(endpoint.endpoint_id) as session:
            session.add(NotificationEndpointRow(
                id=endpoint.endpoint_id,
                organization_id=endpoint.organization_id,
                url=endpoint.url,
                secret=endpoint.secret,
                active=endpoint.active,
            ))
        return endpoint

    def endpoints_for_org(self, organization_id: str, active_only: bool = True) -> List[NotificationEndpoint]:
        stmt = select(NotificationEndpointRow).where(
            NotificationEndpointRow.organization_id == organization_id
        ).order_by(NotificationEndpointRow.created_at)
        if active_only:
            stmt = stmt.where(NotificationEndpointRow.active.is_(True))
        with self._session(organization_id) as session:
            return [self._endpoint_from_row(row) for row in session.scalars(stmt)]

    def get_endpoint(self, endpoint_id: str) -> NotificationEndpoint:
        with self._session(endpoint_id) as session:
            row = session.get(NotificationEndpointRow, endpoint_id)
            if row is None:
                raise RecordNotFound("Notification endpoint", endpoint_id)
            return self._endpoint_from_row(row)

    def create_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        with self._session(delivery.delivery_id) as session:
            session.add(NotificationDeliveryRow(
                id=delivery.delivery_id,
                endpoint_id=delivery.endpoint_id,
                job_id=delivery.job_id,
                status=delivery.status.value,
                attempts=delivery.attempts,
                last_error=delivery.last_error,
                created_at=delivery.created_at,
            ))
        return delivery

    def update_delivery(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        attempts: int,
        last_error: Optional[str] = None,
        response_status: Optional[int] = None,
    ) -> None:
        with self._session(delivery_id) as session:
            row = session.get(NotificationDeliveryRow, delivery_id)
            if row is None:
                raise RecordNotFound("Notification delivery", delivery_id)
            row.status = status.value
            row.attempts = attempts
            row.last_error = last_error
            row.response_status = response_status
            if status == DeliveryStatus.DELIVERED:
                row.delivered_at = datetime.now(timezone.utc)

    def deliveries_for_job(self, job_id: str) -> List[WebhookDelivery]:
        stmt = select(NotificationDeliveryRow).where(NotificationDeliveryRow.job_id == job_id)
        with self._session(job_id) as session:
            return [
                WebhookDelivery(
                    delivery_id=row.id,
                    endpoint_id=row.endpoint_id,
                    job_id=row.job_id,
                    status=row.status,
                    attempts=row.attempts,
                    last_error=row.last_error,
                    response_status=row.response_status,
                    created_at=_aware(row.created_at),
                    delivered_at=_aware(row.delivered_at),
                )
                for row in session.scalars(stmt)
            ]

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def record_usage(self, usage: UsageEvent) -> UsageEvent:
        """Record a usage event. Recording the same event id twice is a no-op."""
        with self._session(usage.job_id) as session:
            if session.get(UsageEventRow, usage.event_id) is not None:
                logger.debug(f"Usage event {usage.event_id} already recorded")
                return usage
            session.add(UsageEventRow(
                id=usage.event_id,
                organization_id=usage.organization_id,
                job_id=usage.job_id,
                event_type=usage.event_type,
                escalated=usage.escalated,
                processing_ms=usage.processing_ms,
                created_at=usage.created_at,
            ))
        return usage

    def usage_for_org(self, organization_id: str) -> List[UsageEvent]:
        stmt = select(UsageEventRow).where(UsageEventRow.organization_id == organization_id)
        with self._session(organization_id) as session:
            return [
                UsageEvent(
                    event_id=row.id,
                    organization_id=row.organization_id,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    escalated=row.escalated,
                    processing_ms=row.processing_ms,
                    created_at=_aware(row.created_at),
                )
                for row in session.scalars(stmt)
            ]

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _job_from_row(row: AnalysisJobRow) -> AnalysisJob:
        return AnalysisJob(
            job_id=row.id,
            artifact_ref=row.artifact_ref,
            organization_id=row.organization_id,
            priority=row.priority,
            submitted_at=_aware(row.submitted_at),
            attempt_count=row.attempt_count,
            state=row.state,
            seller_id=row.seller_id,
            signals=ArtifactSignals.model_validate(row.signals or {}),
            force_escalation=row.force_escalation,
            reanalysis_of=row.reanalysis_of,
        )

    @staticmethod
    def _result_from_row(row: FusionResultRow) -> FusionResult:
        override = None
        if row.override is not None:
            override = AdminOverride(
                override_id=row.override.id,
                fusion_result_id=row.id,
                prior_verdict=row.override.prior_verdict,
                new_verdict=row.override.new_verdict,
                actor_id=row.override.actor_id,
                reason=row.override.reason,
                created_at=_aware(row.override.created_at),
            )
        return FusionResult(
            result_id=row.id,
            job_id=row.job_id,
            factor_scores={FactorFamily(k): v for k, v in row.factor_scores.items()},
            applied_weights={FactorFamily(k): v for k, v in row.applied_weights.items()},
            aggregated_score=row.aggregated_score,
            verdict=row.verdict,
            confidence=row.confidence,
            risk_level=row.risk_level,
            risk_factors=list(row.risk_factors or []),
            positive_indicators=list(row.positive_indicators or []),
            reasoning=row.reasoning,
            analysis_partial=row.analysis_partial,
            partial_reason=row.partial_reason,
            evidence_ids=list(row.evidence_ids or []),
            escalated=row.escalated,
            suspicion_score=row.suspicion_score,
            report_locator=row.report_locator,
            created_at=_aware(row.created_at),
            override=override,
        )

    @staticmethod
    def _ticket_from_row(row: ReviewTicketRow) -> ReviewTicket:
        return ReviewTicket(
            ticket_id=row.id,
            fusion_result_id=row.fusion_result_id,
            job_id=row.job_id,
            priority=row.priority,
            sla_deadline=_aware(row.sla_deadline),
            state=row.state,
            created_at=_aware(row.created_at),
            resolved_at=_aware(row.resolved_at),
        )

    @staticmethod
    def _endpoint_from_row(row: NotificationEndpointRow) -> NotificationEndpoint:
        return NotificationEndpoint(
            endpoint_id=row.id,
            organization_id=row.organization_id,
            url=row.url,
            secret=row.secret,
            active=row.active,
        )
