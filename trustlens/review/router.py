"""
Review routing and admin overrides.

Results that are not clearly genuine, or that were fused from incomplete
evidence, get a review ticket with an SLA deadline. A ticket is resolved only
by an explicit admin override, and each result accepts one override.
"""

import logging
from datetime import timedelta
from typing import Optional

from trustlens.models import (
    AdminOverride,
    FusionResult,
    ReviewPriority,
    ReviewTicket,
    Verdict,
    utcnow,
)
from trustlens.utils.audit import AuditLogger

logger = logging.getLogger(__name__)

REVIEW_VERDICTS = (Verdict.SUSPICIOUS, Verdict.FAKE)


def needs_review(result: FusionResult) -> bool:
    return result.verdict in REVIEW_VERDICTS or result.analysis_partial


class ReviewRouter:
    """Creates review tickets and applies overrides.

    Args:
        store: RecordStore holding results, tickets and overrides
        sla_hours: Review SLA window
        audit: Optional audit logger for override events
    """

    def __init__(self, store, sla_hours: float = 48.0, audit: Optional[AuditLogger] = None):
        self.store = store
        self.sla_hours = sla_hours
        self.audit = audit

    def route(self, result: FusionResult) -> Optional[ReviewTicket]:
        """Open a review ticket for ``result`` when it needs one."""
        if not needs_review(result):
            return None

        existing = self.store.get_review_ticket_for_result(result.result_id)
        if existing is not None:
            return existing

        created = utcnow()
        ticket = ReviewTicket(
            fusion_result_id=result.result_id,
            job_id=result.job_id,
            priority=ReviewPriority.HIGH if result.verdict == Verdict.FAKE else ReviewPriority.NORMAL,
            sla_deadline=created + timedelta(hours=self.sla_hours),
            created_at=created,
        )
        self.store.create_review_ticket(ticket)
        logger.info(
            f"Review ticket {ticket.ticket_id} opened for job {result.job_id} "
            f"(priority={ticket.priority.value}, due {ticket.sla_deadline.isoformat()})"
        )
        return ticket

    def override(self, result_id: str, new_verdict: Verdict, actor_id: str, reason: str) -> AdminOverride:
        """Record an admin override of a result's verdict.

        The fused score, weights and evidence are left untouched.

        Raises:
            RecordNotFound: If the result does not exist
            OverrideConflict: If the result was already overridden
        """
        result = self.store.get_fusion_result(result_id)
        override = AdminOverride(
            fusion_result_id=result_id,
            prior_verdict=result.verdict,
            new_verdict=new_verdict,
            actor_id=actor_id,
            reason=reason,
        )
        self.store.record_override(override)
        logger.info(
            f"Verdict of job {result.job_id} overridden by {actor_id}: "
            f"{result.verdict.value} -> {new_verdict.value}"
        )

        if self.audit is not None:
            self.audit.log_override(
                job_id=result.job_id,
                fusion_result_id=result_id,
                actor=actor_id,
                prior_verdict=result.verdict.value,
                new_verdict=new_verdict.value,
                reason=reason,
            )
        return override
