"""
Database models for the TrustLens record store.

This module provides SQLAlchemy 2.0+ models for jobs, evidence records,
fusion results, review tickets, admin overrides, notification endpoints and
deliveries, and billing usage events.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Engine,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
)
from sqlalchemy.pool import StaticPool


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class AnalysisJobRow(Base):
    """One analysis request and its lifecycle state."""
    __tablename__ = "analysis_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    artifact_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="NORMAL")
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="QUEUED", index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    seller_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    origin: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    signals: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    force_escalation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reanalysis_of: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    evidence: Mapped[list["EvidenceRecordRow"]] = relationship(
        "EvidenceRecordRow",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="EvidenceRecordRow.position",
    )
    fusion_result: Mapped[Optional["FusionResultRow"]] = relationship(
        "FusionResultRow",
        back_populates="job",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<AnalysisJobRow(id={self.id}, org={self.organization_id}, "
            f"state={self.state}, attempts={self.attempt_count})>"
        )


class EvidenceRecordRow(Base):
    """Append-only evidence record. Rows are never updated."""
    __tablename__ = "evidence_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("analysis_jobs.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    adapter: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    provider: Mapped[str] = mapped_column(String(100), nullable=False, default="unknown")
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    job: Mapped["AnalysisJobRow"] = relationship("AnalysisJobRow", back_populates="evidence")

    def __repr__(self) -> str:
        return f"<EvidenceRecordRow(job_id={self.job_id}, adapter={self.adapter}, status={self.status})>"


class FusionResultRow(Base):
    """Fused verdict for a completed job. At most one per job."""
    __tablename__ = "fusion_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("analysis_jobs.id"), nullable=False, unique=True, index=True
    )
    factor_scores: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    applied_weights: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    aggregated_score: Mapped[int] = mapped_column(Integer, nullable=False)
    verdict: Mapped[str] = mapped_column(String(12), nullable=False, index=True)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    risk_factors: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    positive_indicators: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    analysis_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    partial_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    escalated: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    suspicion_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    report_locator: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    job: Mapped["AnalysisJobRow"] = relationship("AnalysisJobRow", back_populates="fusion_result")
    override: Mapped[Optional["AdminOverrideRow"]] = relationship(
        "AdminOverrideRow", back_populates="fusion_result", uselist=False
    )

    def __repr__(self) -> str:
        return (
            f"<FusionResultRow(id={self.id}, job_id={self.job_id}, "
            f"score={self.aggregated_score}, verdict={self.verdict})>"
        )


class ReviewTicketRow(Base):
    """Human review request for a fusion result."""
    __tablename__ = "review_tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    fusion_result_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("fusion_results.id"), nullable=False, unique=True
    )
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(10), nullable=False)
    state: Mapped[str] = mapped_column(String(10), nullable=False, default="OPEN", index=True)
    sla_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AdminOverrideRow(Base):
    """Manual verdict change. The unique constraint allows one per result."""
    __tablename__ = "admin_overrides"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    fusion_result_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("fusion_results.id"), nullable=False, unique=True
    )
    prior_verdict: Mapped[str] = mapped_column(String(12), nullable=False)
    new_verdict: Mapped[str] = mapped_column(String(12), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    fusion_result: Mapped["FusionResultRow"] = relationship("FusionResultRow", back_populates="override")


class NotificationEndpointRow(Base):
    """Webhook endpoint registered by an organization."""
    __tablename__ = "notification_endpoints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class NotificationDeliveryRow(Base):
    """Delivery attempt bookkeeping for one job and endpoint."""
    __tablename__ = "notification_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    endpoint_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("notification_endpoints.id"), nullable=False, index=True
    )
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class UsageEventRow(Base):
    """Billing usage record written by the billing queue."""
    __tablename__ = "usage_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False, default="analysis")
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


def get_engine(database: str) -> Engine:
    """
    Create a SQLAlchemy engine.

    Args:
        database: A SQLAlchemy URL, a path to a SQLite file, or ":memory:"
                  for an in-memory database shared by all threads.

    Returns:
        Configured SQLAlchemy Engine instance.
    """
    if "://" in database:
        return create_engine(database, echo=False)

    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}, "echo": False}
    if database == ":memory:":
        db_url = "sqlite:///:memory:"
        # Every thread must see the same in-memory database.
        kwargs["poolclass"] = StaticPool
    else:
        db_url = f"sqlite:///{database}"

    engine = create_engine(db_url, **kwargs)

    # Enable foreign key constraints for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(engine: Engine) -> None:
    """Create all tables. Idempotent."""
    Base.metadata.create_all(engine)


def get_session(engine: Engine) -> Session:
    """Create a new database session."""
    return Session(engine)
