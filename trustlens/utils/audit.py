"""Operator-facing audit trail for pipeline events.

Every event that an operator must be able to reconstruct later (jobs
enqueued and completed, evidence appended, retry exhaustion, overrides,
notification failures) is written to rotating JSONL and text files.
"""

import json
import logging
import logging.handlers
import os
import platform
import socket
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional


class AuditLevel(str, Enum):
    """Audit event severity levels."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditLogger:
    """Thread-safe audit logger backed by rotating files."""

    def __init__(
        self,
        log_dir: Path,
        log_name: str = "trustlens_audit",
        max_bytes: int = 10 * 1024 * 1024,  # 10MB
        backup_count: int = 10,
    ):
        """Initialize audit logger with rotating file handlers."""
        self.log_dir = Path(log_dir)
        self.log_name = log_name
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._lock = threading.Lock()

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.json_logger = self._setup_logger("json", f"{self.log_name}.jsonl")
        self.text_logger = self._setup_logger("text", f"{self.log_name}.log")

    def _setup_logger(self, kind: str, filename: str) -> logging.Logger:
        """Create a non-propagating logger writing to a rotating file."""
        logger = logging.getLogger(f"{self.log_name}_{kind}_{id(self)}")
        logger.setLevel(logging.INFO)
        logger.handlers.clear()

        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
            encoding="utf-8",
        )
        handler.setLevel(logging.INFO)
        logger.addHandler(handler)
        logger.propagate = False

        return logger

    def close(self) -> None:
        """Close the file handlers."""
        for logger in (self.json_logger, self.text_logger):
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)

    def _get_system_info(self) -> dict:
        """Get host information for the audit entry."""
        try:
            hostname = socket.gethostname()
        except OSError:
            hostname = "unknown"

        return {
            "host": hostname,
            "pid": os.getpid(),
            "thread": threading.current_thread().name,
            "platform": platform.system(),
        }

    def _format_text_entry(self, entry: dict) -> str:
        """Format audit entry as human-readable text."""
        status = "[OK]" if entry.get("success", True) else "[FAIL]"

        parts = [
            entry["timestamp"],
            entry["level"],
            status,
            f"Action: {entry['action']}",
        ]

        if entry.get("job_id"):
            parts.append(f"Job: {entry['job_id']}")
        if entry.get("organization_id"):
            parts.append(f"Org: {entry['organization_id']}")
        if entry.get("actor"):
            parts.append(f"Actor: {entry['actor']}")

        return " | ".join(parts)

    def log(
        self,
        level: AuditLevel,
        action: str,
        details: dict = None,
        job_id: str = None,
        organization_id: str = None,
        actor: str = None,
        success: bool = True,
    ) -> None:
        """Log an audit event."""
        with self._lock:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level.value,
                "action": action,
                "success": success,
                "system_info": self._get_system_info(),
            }

            if details:
                entry["details"] = details
            if job_id:
                entry["job_id"] = job_id
            if organization_id:
                entry["organization_id"] = organization_id
            if actor:
                entry["actor"] = actor

            self.json_logger.info(json.dumps(entry, ensure_ascii=False, default=str))
            self.text_logger.info(self._format_text_entry(entry))

    def log_job_enqueued(self, job_id: str, queue: str, priority: str, organization_id: str = None) -> None:
        """Log a job entering a queue."""
        self.log(
            level=AuditLevel.INFO,
            action="JOB_ENQUEUED",
            details={"queue": queue, "priority": priority},
            job_id=job_id,
            organization_id=organization_id,
        )

    def log_evidence(self, job_id: str, adapter: str, status: str, reason: str = None) -> None:
        """Log an evidence record being appended."""
        details = {"adapter": adapter, "status": status}
        if reason:
            details["reason"] = reason

        self.log(
            level=AuditLevel.INFO if status == "SUCCESS" else AuditLevel.WARNING,
            action="EVIDENCE_APPENDED",
            details=details,
            job_id=job_id,
            success=status != "FAILURE",
        )

    def log_job_completed(
        self,
        job_id: str,
        verdict: str,
        aggregated_score: int,
        partial: bool,
        organization_id: str = None,
    ) -> None:
        """Log a job producing its fusion result."""
        self.log(
            level=AuditLevel.WARNING if partial else AuditLevel.INFO,
            action="JOB_COMPLETED",
            details={"verdict": verdict, "aggregated_score": aggregated_score, "partial": partial},
            job_id=job_id,
            organization_id=organization_id,
        )

    def log_retry_exhausted(self, job_id: str, queue: str, attempts: int, last_error: str = None) -> None:
        """Log a queued job moving to the terminal failed state."""
        self.log(
            level=AuditLevel.ERROR,
            action="JOB_RETRY_EXHAUSTED",
            details={"queue": queue, "attempts": attempts, "last_error": last_error},
            job_id=job_id,
            success=False,
        )

    def log_override(
        self,
        job_id: str,
        fusion_result_id: str,
        actor: str,
        prior_verdict: str,
        new_verdict: str,
        reason: str,
    ) -> None:
        """Log an admin override of a verdict."""
        self.log(
            level=AuditLevel.WARNING,
            action="VERDICT_OVERRIDE",
            details={
                "fusion_result_id": fusion_result_id,
                "prior_verdict": prior_verdict,
                "new_verdict": new_verdict,
                "reason": reason,
            },
            job_id=job_id,
            actor=actor,
        )

    def log_notification_failed(self, job_id: str, endpoint_url: str, attempts: int, error: str) -> None:
        """Log a webhook delivery that gave up."""
        self.log(
            level=AuditLevel.WARNING,
            action="NOTIFICATION_FAILED",
            details={"endpoint": endpoint_url, "attempts": attempts, "error": error},
            job_id=job_id,
            success=False,
        )

    def log_error(self, action: str, error: Exception, job_id: str = None) -> None:
        """Log error event with exception details."""
        self.log(
            level=AuditLevel.ERROR,
            action=action,
            details={"error_type": type(error).__name__, "error_message": str(error)},
            job_id=job_id,
            success=False,
        )

    def get_audit_trail(
        self,
        job_id: str = None,
        action: str = None,
        level: AuditLevel = None,
        start_date: datetime = None,
        end_date: datetime = None,
    ) -> list[dict]:
        """Query audit trail from the JSON log file."""
        json_path = self.log_dir / f"{self.log_name}.jsonl"

        if not json_path.exists():
            return []

        entries = []

        with open(json_path, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if job_id and entry.get("job_id") != job_id:
                    continue
                if action and entry.get("action") != action:
                    continue
                if level and entry.get("level") != level.value:
                    continue

                entry_time = datetime.fromisoformat(entry["timestamp"])
                if start_date and entry_time < start_date:
                    continue
                if end_date and entry_time > end_date:
                    continue

                entries.append(entry)

        return entries


_global_audit_logger: Optional[AuditLogger] = None
_logger_lock = threading.Lock()


def get_audit_logger(log_dir: Path = None) -> AuditLogger:
    """Get or create the global audit logger instance.

    The directory defaults to ``TRUSTLENS_AUDIT_DIR`` or ``./logs``.
    """
    global _global_audit_logger

    with _logger_lock:
        if _global_audit_logger is None:
            if log_dir is None:
                log_dir = Path(os.environ.get("TRUSTLENS_AUDIT_DIR", Path.cwd() / "logs"))

            _global_audit_logger = AuditLogger(log_dir)

        return _global_audit_logger


def reset_audit_logger() -> None:
    """Drop the global audit logger so the next call creates a fresh one."""
    global _global_audit_logger

    with _logger_lock:
        if _global_audit_logger is not None:
            _global_audit_logger.close()
        _global_audit_logger = None
