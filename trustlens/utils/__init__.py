"""
Utility modules for the TrustLens pipeline.

This package contains shared utilities: the exception hierarchy, the audit
trail and the retry/backoff policy used across the pipeline.
"""

from trustlens.utils.audit import AuditLevel, AuditLogger, get_audit_logger
from trustlens.utils.exceptions import (
    AdapterUnavailable,
    AllExpensiveAdaptersFailed,
    ConfigurationError,
    InvalidEvidenceShape,
    InvalidStateTransition,
    JobCancelled,
    JobRetryExhausted,
    NotificationFailed,
    OverrideConflict,
    RecordNotFound,
    StorageError,
    TrustLensError,
)
from trustlens.utils.retry import RetryPolicy

__all__ = [
    # Exceptions
    "TrustLensError",
    "AdapterUnavailable",
    "InvalidEvidenceShape",
    "AllExpensiveAdaptersFailed",
    "JobRetryExhausted",
    "OverrideConflict",
    "JobCancelled",
    "InvalidStateTransition",
    "StorageError",
    "ConfigurationError",
    "RecordNotFound",
    "NotificationFailed",
    # Audit Logging
    "AuditLevel",
    "AuditLogger",
    "get_audit_logger",
    # Retry
    "RetryPolicy",
]
