"""
Unit tests for the AuditLogger module.

Tests cover:
- Log entries in the JSONL and text files
- Specialized logging methods for pipeline events
- Audit trail retrieval and filtering
- Singleton pattern (get_audit_logger / reset_audit_logger)
- Thread safety
"""

import json
import threading
from datetime import datetime, timedelta, timezone

from trustlens.utils.audit import AuditLevel, AuditLogger, get_audit_logger, reset_audit_logger


# ============================================================================
# Basic Logging Tests
# ============================================================================

class TestLog:
    """Test the generic log method."""

    def test_creates_log_files(self, tmp_path):
        """Both the JSONL and the text file are created."""
        logger = AuditLogger(tmp_path / "nested" / "audit")
        logger.log(AuditLevel.INFO, "TEST_ACTION")
        logger.close()

        assert (tmp_path / "nested" / "audit" / "trustlens_audit.jsonl").exists()
        assert (tmp_path / "nested" / "audit" / "trustlens_audit.log").exists()

    def test_json_entry_fields(self, audit):
        """JSON entries carry the event fields and system info."""
        audit.log(
            AuditLevel.WARNING, "TEST_ACTION", details={"k": "v"},
            job_id="job-1", organization_id="org-a", actor="admin-1", success=False,
        )

        entry = audit.get_audit_trail()[0]
        assert entry["level"] == "WARNING"
        assert entry["action"] == "TEST_ACTION"
        assert entry["details"] == {"k": "v"}
        assert entry["job_id"] == "job-1"
        assert entry["organization_id"] == "org-a"
        assert entry["actor"] == "admin-1"
        assert entry["success"] is False
        assert "pid" in entry["system_info"]

    def test_optional_fields_omitted(self, audit):
        audit.log(AuditLevel.INFO, "BARE")

        entry = audit.get_audit_trail()[0]
        assert "job_id" not in entry
        assert "details" not in entry

    def test_text_entry_format(self, audit):
        """The text log is one readable line per event."""
        audit.log(AuditLevel.ERROR, "BROKEN", job_id="job-9", success=False)
        audit.close()

        line = (audit.log_dir / "trustlens_audit.log").read_text(encoding="utf-8").strip()
        assert "| ERROR | [FAIL] | Action: BROKEN | Job: job-9" in line


# ============================================================================
# Pipeline Event Tests
# ============================================================================

class TestPipelineEvents:
    """Test the specialized logging methods."""

    def test_job_enqueued(self, audit):
        audit.log_job_enqueued("job-1", "analysis", "HIGH", organization_id="org-a")

        entry = audit.get_audit_trail(action="JOB_ENQUEUED")[0]
        assert entry["details"] == {"queue": "analysis", "priority": "HIGH"}
        assert entry["organization_id"] == "org-a"

    def test_evidence_levels(self, audit):
        """Failures are warnings and unsuccessful; skips are warnings but successful."""
        audit.log_evidence("job-1", "provenance", "SUCCESS")
        audit.log_evidence("job-1", "manipulation", "FAILURE", reason="timed out after 45.0s")
        audit.log_evidence("job-1", "identity", "SKIPPED", reason="no seller identity supplied")

        entries = audit.get_audit_trail(job_id="job-1", action="EVIDENCE_APPENDED")
        assert [e["level"] for e in entries] == ["INFO", "WARNING", "WARNING"]
        assert [e["success"] for e in entries] == [True, False, True]
        assert entries[1]["details"]["reason"] == "timed out after 45.0s"
        assert "reason" not in entries[0]["details"]

    def test_job_completed_partial_is_warning(self, audit):
        audit.log_job_completed("job-1", "GENUINE", 82, partial=True)
        audit.log_job_completed("job-2", "FAKE", 12, partial=False)

        assert audit.get_audit_trail(job_id="job-1")[0]["level"] == "WARNING"
        assert audit.get_audit_trail(job_id="job-2")[0]["level"] == "INFO"

    def test_retry_exhausted(self, audit):
        audit.log_retry_exhausted("job-1", "analysis", 3, last_error="database is locked")

        entry = audit.get_audit_trail(action="JOB_RETRY_EXHAUSTED")[0]
        assert entry["level"] == "ERROR"
        assert entry["details"]["attempts"] == 3

    def test_override(self, audit):
        audit.log_override("job-1", "result-1", "admin-7", "FAKE", "GENUINE", "Original RAW supplied")

        entry = audit.get_audit_trail(action="VERDICT_OVERRIDE")[0]
        assert entry["actor"] == "admin-7"
        assert entry["details"]["reason"] == "Original RAW supplied"

    def test_log_error(self, audit):
        audit.log_error("JOB_FAILED", ValueError("bad input"), job_id="job-1")

        entry = audit.get_audit_trail(action="JOB_FAILED")[0]
        assert entry["details"] == {"error_type": "ValueError", "error_message": "bad input"}


# ============================================================================
# Audit Trail Query Tests
# ============================================================================

class TestGetAuditTrail:
    """Test audit trail retrieval."""

    def test_empty_when_no_file(self, tmp_path):
        logger = AuditLogger(tmp_path / "fresh")
        (logger.log_dir / "trustlens_audit.jsonl").unlink()

        assert logger.get_audit_trail() == []
        logger.close()

    def test_filter_by_level(self, audit):
        audit.log(AuditLevel.INFO, "A")
        audit.log(AuditLevel.CRITICAL, "B")

        entries = audit.get_audit_trail(level=AuditLevel.CRITICAL)
        assert [e["action"] for e in entries] == ["B"]

    def test_filter_by_date(self, audit):
        audit.log(AuditLevel.INFO, "NOW")
        now = datetime.now(timezone.utc)

        assert len(audit.get_audit_trail(start_date=now - timedelta(minutes=5))) == 1
        assert audit.get_audit_trail(start_date=now + timedelta(minutes=5)) == []
        assert audit.get_audit_trail(end_date=now - timedelta(minutes=5)) == []

    def test_skips_corrupt_lines(self, audit):
        audit.log(AuditLevel.INFO, "GOOD")
        with open(audit.log_dir / "trustlens_audit.jsonl", "a", encoding="utf-8") as f:
            f.write("not json\n")

        assert [e["action"] for e in audit.get_audit_trail()] == ["GOOD"]

    def test_concurrent_writes(self, audit):
        """Entries written from many threads are all readable."""
        def write(n):
            for i in range(10):
                audit.log(AuditLevel.INFO, "CONCURRENT", details={"thread": n, "i": i})

        threads = [threading.Thread(target=write, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entries = audit.get_audit_trail(action="CONCURRENT")
        assert len(entries) == 50
        lines = (audit.log_dir / "trustlens_audit.jsonl").read_text(encoding="utf-8").splitlines()
        assert all(json.loads(line) for line in lines)


# ============================================================================
# Singleton Tests
# ============================================================================

class TestGlobalAuditLogger:
    """Test the process-wide audit logger."""

    def test_same_instance(self):
        assert get_audit_logger() is get_audit_logger()

    def test_uses_environment_directory(self, tmp_path):
        logger = get_audit_logger()
        assert logger.log_dir == tmp_path / "audit"

    def test_reset_creates_new_instance(self):
        first = get_audit_logger()
        reset_audit_logger()

        assert get_audit_logger() is not first
