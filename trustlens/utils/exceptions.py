"""
Custom exception classes for the TrustLens pipeline.

This module defines the exception hierarchy for every error condition the
pipeline distinguishes: degraded evidence, queue exhaustion, review conflicts,
storage connectivity and configuration problems.
"""


class TrustLensError(Exception):
    """
    Base exception class for all TrustLens errors.

    All custom exceptions in this module inherit from this base class,
    allowing for broad exception handling when needed.

    Attributes:
        message: Human-readable error description
        details: Optional dictionary containing additional error context
    """

    def __init__(self, message: str, details: dict = None):
        """
        Initialize the base exception.

        Args:
            message: Error message describing what went wrong
            details: Optional dictionary with additional context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return a string representation of the exception."""
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class AdapterUnavailable(TrustLensError):
    """
    Raised when an evidence provider cannot produce evidence.

    Covers connection errors, HTTP errors, timeouts and unconfigured
    providers. Adapters convert it into a Failure evidence record; it never
    reaches the fusion engine.

    Attributes:
        adapter: Name of the adapter whose provider failed
        reason: Short description of the failure
        cause: The underlying exception, if any
    """

    def __init__(self, adapter: str, reason: str, cause: Exception = None):
        self.adapter = adapter
        self.reason = reason
        self.cause = cause

        message = f"Evidence provider for {adapter} unavailable: {reason}"
        details = {"adapter": adapter}
        if cause is not None:
            details["cause"] = type(cause).__name__

        super().__init__(message, details)


class InvalidEvidenceShape(TrustLensError):
    """
    Raised when a provider returns data that does not match the payload schema.

    Attributes:
        adapter: Name of the adapter that received the malformed data
        errors: List of validation error descriptions
    """

    def __init__(self, adapter: str, errors: list = None):
        self.adapter = adapter
        self.errors = list(errors or [])

        message = f"Malformed evidence from {adapter}"
        details = {"adapter": adapter}
        if self.errors:
            details["errors"] = "; ".join(str(e) for e in self.errors[:3])

        super().__init__(message, details)


class AllExpensiveAdaptersFailed(TrustLensError):
    """
    Signals that every escalated adapter failed for a job.

    The job still completes with a partial FusionResult; this exception is
    built for logging and audit only.

    Attributes:
        job_id: Identifier of the affected job
        adapters: Names of the adapters that failed
    """

    def __init__(self, job_id: str, adapters: list):
        self.job_id = job_id
        self.adapters = list(adapters)

        message = f"All expensive adapters failed for job {job_id}"
        super().__init__(message, {"adapters": ",".join(self.adapters)})


class JobRetryExhausted(TrustLensError):
    """
    Raised when a queued job has used all of its attempts.

    The job is moved to the terminal FAILED state.

    Attributes:
        job_id: Identifier of the queued job
        queue: Name of the queue the job belonged to
        attempts: Number of attempts made
        last_error: Error message from the final attempt
    """

    def __init__(self, job_id: str, queue: str, attempts: int, last_error: str = None):
        self.job_id = job_id
        self.queue = queue
        self.attempts = attempts
        self.last_error = last_error

        message = f"Job {job_id} on queue '{queue}' failed after {attempts} attempt(s)"
        details = {"attempts": attempts}
        if last_error:
            details["last_error"] = last_error

        super().__init__(message, details)


class OverrideConflict(TrustLensError):
    """
    Raised when a second admin override is attempted on a fusion result.

    Attributes:
        fusion_result_id: Identifier of the already-overridden result
        existing_verdict: Verdict recorded by the first override
    """

    def __init__(self, fusion_result_id: str, existing_verdict: str = None):
        self.fusion_result_id = fusion_result_id
        self.existing_verdict = existing_verdict

        message = f"Fusion result {fusion_result_id} already has an override"
        details = {}
        if existing_verdict:
            details["existing_verdict"] = existing_verdict

        super().__init__(message, details)


class JobCancelled(TrustLensError):
    """Raised inside the coordinator when a job is cancelled between stages."""

    def __init__(self, job_id: str, stage: str):
        self.job_id = job_id
        self.stage = stage
        super().__init__(f"Job {job_id} cancelled", {"stage": stage})


class InvalidStateTransition(TrustLensError):
    """Raised when a job lifecycle transition is not allowed."""

    def __init__(self, job_id: str, from_state: str, to_state: str):
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for job {job_id}: {from_state} -> {to_state}",
            {"from": from_state, "to": to_state},
        )


class StorageError(TrustLensError):
    """
    Raised when the record store or artifact storage cannot be reached.

    These are the only collaborator errors allowed to fail a job.

    Attributes:
        key: Record or object key involved
        reason: Description of the failure
        cause: The underlying exception, if any
    """

    def __init__(self, key: str = None, reason: str = None, cause: Exception = None):
        self.key = key
        self.reason = reason or "Storage operation failed"
        self.cause = cause

        if key:
            message = f"Storage error for {key}: {self.reason}"
        else:
            message = f"Storage error: {self.reason}"

        details = {}
        if cause is not None:
            details["cause"] = type(cause).__name__

        super().__init__(message, details)


class ConfigurationError(TrustLensError):
    """Raised when pipeline settings are missing or invalid."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for {key}: {reason}", {"key": key})


class RecordNotFound(TrustLensError):
    """Raised when a requested record does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}", {"id": record_id})


class NotificationFailed(TrustLensError):
    """
    Raised when a webhook endpoint does not accept a notification.

    Attributes:
        url: Endpoint URL
        reason: Description of the failure
        status: HTTP status returned by the endpoint, if any
    """

    def __init__(self, url: str, reason: str, status: int = None):
        self.url = url
        self.reason = reason
        self.status = status

        details = {"url": url}
        if status is not None:
            details["status"] = status

        super().__init__(f"Webhook delivery failed: {reason}", details)
