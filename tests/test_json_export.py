"""Tests for JSON export functionality."""

import json
from datetime import datetime, timezone
from pathlib import Path
from uuid import UUID

import pytest

from trustlens import __version__
from trustlens.models import AdapterName, EvidenceRecord, RiskLevel, Verdict
from trustlens.output.json_export import (
    REPORT_FORMAT,
    JSONExporter,
    TrustLensJSONEncoder,
    export_results,
    report_key,
)


@pytest.fixture
def sample_result(make_result):
    return make_result(verdict=Verdict.FAKE, score=18, partial=True, persist=False)


class TestTrustLensJSONEncoder:
    """Tests for TrustLensJSONEncoder."""

    def test_datetime(self):
        value = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert json.dumps(value, cls=TrustLensJSONEncoder) == '"2026-03-01T12:00:00+00:00"'

    def test_uuid_and_path(self):
        uid = UUID("12345678-1234-5678-1234-567812345678")
        encoded = json.dumps({"id": uid, "path": Path("reports/a.json")}, cls=TrustLensJSONEncoder)
        assert json.loads(encoded) == {"id": str(uid), "path": "reports/a.json"}

    def test_enum(self):
        assert json.dumps(RiskLevel.CRITICAL, cls=TrustLensJSONEncoder) == '"CRITICAL"'

    def test_model(self):
        record = EvidenceRecord.failure("job-1", AdapterName.IDENTITY, "HTTP error 503")
        decoded = json.loads(json.dumps(record, cls=TrustLensJSONEncoder))
        assert decoded["adapter"] == "identity"
        assert decoded["reason"] == "HTTP error 503"

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            json.dumps(object(), cls=TrustLensJSONEncoder)


class TestJSONExporter:
    """Tests for JSONExporter."""

    def test_to_dict_minimal(self, sample_result):
        report = JSONExporter().to_dict(sample_result)

        assert report["format"] == REPORT_FORMAT
        assert report["generator"] == f"trustlens {__version__}"
        assert report["job_id"] == sample_result.job_id
        assert report["result"]["aggregated_score"] == 18
        assert report["result"]["applied_weights"]["provenance"] == 0.35
        assert report["effective_verdict"] == Verdict.FAKE
        assert "job" not in report
        assert "evidence" not in report

    def test_to_dict_with_job_and_evidence(self, sample_result, make_job, make_record):
        job = make_job()
        evidence = [make_record(AdapterName.PROVENANCE, {"exif_present": True}, job_id=job.job_id)]

        report = JSONExporter().to_dict(sample_result, job=job, evidence=evidence)

        assert report["job"]["artifact_ref"] == "uploads/product-001.jpg"
        assert report["evidence"][0]["payload"] == {"exif_present": True}

    def test_to_json_parses(self, sample_result):
        decoded = json.loads(JSONExporter().to_json(sample_result))

        assert decoded["effective_verdict"] == "FAKE"
        assert decoded["result"]["analysis_partial"] is True
        assert decoded["result"]["partial_reason"] == "failed: identity (HTTP error 503)"

    def test_indent_and_sort_keys(self, sample_result):
        output = JSONExporter(indent=None, sort_keys=True).to_json(sample_result)

        assert "\n" not in output
        assert output.startswith('{"effective_verdict"')

    def test_to_bytes(self, sample_result):
        data = JSONExporter().to_bytes(sample_result)
        assert json.loads(data.decode("utf-8"))["job_id"] == sample_result.job_id

    def test_to_file_creates_parents(self, sample_result, tmp_path):
        path = tmp_path / "out" / "reports" / "result.json"

        JSONExporter().to_file(sample_result, path)

        assert json.loads(path.read_text(encoding="utf-8"))["job_id"] == sample_result.job_id


class TestHelpers:
    """Tests for module-level helpers."""

    def test_report_key(self):
        assert report_key("job-42") == "reports/job-42.json"

    def test_export_results(self, make_result):
        results = [
            make_result(verdict=Verdict.GENUINE, score=90, persist=False),
            make_result(verdict=Verdict.SUSPICIOUS, score=55, persist=False),
        ]

        decoded = json.loads(export_results(results))

        assert [r["verdict"] for r in decoded] == ["GENUINE", "SUSPICIOUS"]

    def test_export_empty(self):
        assert json.loads(export_results([])) == []
