"""Core pipeline modules.

This package provides the job queue and worker pools, the pipeline
coordinator, persistence (record store and artifact storage) and the
analysis service that wires them together.
"""

from trustlens.core.coordinator import PipelineCoordinator
from trustlens.core.database import Base, get_engine, get_session, init_db
from trustlens.core.queue import ClaimedJob, EntryState, JobQueue, QueueEntry, queue_health
from trustlens.core.service import AnalysisService
from trustlens.core.storage import LocalArtifactStorage
from trustlens.core.store import RecordStore
from trustlens.core.worker_pool import WorkerPool

__all__ = [
    # Queueing
    "JobQueue",
    "QueueEntry",
    "ClaimedJob",
    "EntryState",
    "queue_health",
    "WorkerPool",
    # Pipeline
    "PipelineCoordinator",
    "AnalysisService",
    # Persistence
    "Base",
    "get_engine",
    "get_session",
    "init_db",
    "RecordStore",
    "LocalArtifactStorage",
]
