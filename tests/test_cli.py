"""Tests for CLI module."""

import json

import pytest
from click.testing import CliRunner

from trustlens.cli import main, print_status
from trustlens.models import AdapterName, EvidenceRecord


@pytest.fixture
def runner():
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture
def cli_env(tmp_path):
    """Environment keeping artifacts inside the test directory."""
    return {"TRUSTLENS_STORAGE_ROOT": str(tmp_path / "artifacts")}


@pytest.fixture
def database(tmp_path):
    return str(tmp_path / "trustlens.db")


@pytest.fixture
def responses_file(tmp_path):
    """Write a recorded responses file and return its path."""

    def _write(responses: dict) -> str:
        path = tmp_path / "responses.json"
        data = {adapter.value: {"default": response} for adapter, response in responses.items()}
        path.write_text(json.dumps(data))
        return str(path)

    return _write


@pytest.fixture
def analyzed(runner, cli_env, database, responses_file, fake_responses):
    """Run one fake-product analysis and return its JSON result."""
    result = runner.invoke(
        main,
        [
            "--database", database, "analyze", "uploads/bag.jpg",
            "--org", "org-acme", "--seller", "seller-9", "--watermark",
            "--responses", responses_file(fake_responses), "--format", "json",
        ],
        env=cli_env,
    )
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)[0]


class TestCLIBasic:
    """Basic CLI tests."""

    def test_cli_version(self, runner):
        """Test that CLI shows version."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "trustlens" in result.output

    def test_cli_help(self, runner):
        """Test that CLI shows help."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "TrustLens" in result.output
        for command in ("analyze", "evaluate", "recompute", "show", "reviews", "override", "endpoints", "health"):
            assert command in result.output

    def test_invalid_config_file(self, runner, tmp_path):
        """Test that an invalid settings file exits with an error."""
        path = tmp_path / "bad.yaml"
        path.write_text("weights:\n  provenance: 0.9\n")

        result = runner.invoke(main, ["-c", str(path), "config"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestAnalyzeCommand:
    """Tests for the analyze command."""

    def test_analyze_json(self, analyzed):
        """Test JSON output of a fake product analysis."""
        assert analyzed["verdict"] == "FAKE"
        assert analyzed["aggregated_score"] == 22
        assert analyzed["risk_level"] == "CRITICAL"
        assert analyzed["report_locator"] == f"file://reports/{analyzed['job_id']}.json"

    def test_analyze_table(self, runner, cli_env, database, responses_file, genuine_responses):
        """Test table output of a genuine product analysis."""
        result = runner.invoke(
            main,
            [
                "--database", database, "analyze", "uploads/a.jpg", "uploads/b.jpg",
                "--org", "org-acme", "--responses", responses_file(genuine_responses),
            ],
            env=cli_env,
        )

        assert result.exit_code == 0, result.output
        assert "TrustLens Analysis" in result.output
        assert result.output.count("Verdict: GENUINE") == 2
        assert "Report stored at" in result.output

    def test_analyze_requires_org(self, runner):
        """Test that --org is required."""
        result = runner.invoke(main, ["analyze", "uploads/a.jpg"])
        assert result.exit_code != 0

    def test_analyze_bad_responses_file(self, runner, cli_env, database, tmp_path):
        """Test that an unreadable responses file is reported."""
        path = tmp_path / "responses.json"
        path.write_text("{not json")

        result = runner.invoke(
            main,
            ["--database", database, "analyze", "uploads/a.jpg", "--org", "org-acme", "--responses", str(path)],
            env=cli_env,
        )

        assert result.exit_code == 1
        assert "Invalid input" in result.output


class TestEvaluateCommand:
    """Tests for offline evaluation."""

    def _write_evidence(self, tmp_path, records):
        path = tmp_path / "evidence.json"
        path.write_text(json.dumps({
            "job_id": "offline-1",
            "submitted_at": "2026-03-01T12:00:00+00:00",
            "records": [r.model_dump(mode="json") for r in records],
        }))
        return str(path)

    def test_evaluate_json(self, runner, tmp_path, make_record, genuine_responses):
        records = [
            make_record(AdapterName.PROVENANCE, genuine_responses[AdapterName.PROVENANCE], job_id="offline-1"),
            make_record(AdapterName.PERCEPTUAL_DUPLICATE, {"matches": []}, job_id="offline-1"),
            EvidenceRecord.failure("offline-1", AdapterName.MANIPULATION, "timed out after 45.0s"),
        ]

        result = runner.invoke(main, ["evaluate", self._write_evidence(tmp_path, records), "--format", "json"])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["job_id"] == "offline-1"
        assert report["result"]["analysis_partial"] is True
        assert len(report["evidence"]) == 3

    def test_evaluate_writes_report(self, runner, tmp_path, make_record):
        records = [make_record(AdapterName.PROVENANCE, {"exif_present": True}, job_id="offline-1")]
        output = tmp_path / "reports" / "offline.json"

        result = runner.invoke(main, ["evaluate", self._write_evidence(tmp_path, records), "-o", str(output)])

        assert result.exit_code == 0, result.output
        assert "Report saved to" in result.output
        assert json.loads(output.read_text())["job_id"] == "offline-1"

    def test_evaluate_invalid_file(self, runner, tmp_path):
        path = tmp_path / "evidence.json"
        path.write_text('[{"adapter": "nonsense"}]')

        result = runner.invoke(main, ["evaluate", str(path)])

        assert result.exit_code == 1
        assert "Cannot read evidence file" in result.output


class TestStoredJobCommands:
    """Tests for commands reading the record store."""

    def test_show_json(self, runner, database, analyzed):
        result = runner.invoke(main, ["--database", database, "show", analyzed["job_id"], "--format", "json"])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["job"]["state"] == "DONE"
        assert report["effective_verdict"] == "FAKE"
        assert len(report["evidence"]) == 5

    def test_show_table(self, runner, database, analyzed):
        result = runner.invoke(main, ["--database", database, "show", analyzed["job_id"]])

        assert result.exit_code == 0, result.output
        assert "Job ID" in result.output
        assert "Review ticket" in result.output

    def test_show_unknown_job(self, runner, database):
        result = runner.invoke(main, ["--database", database, "show", "missing"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_recompute_matches(self, runner, database, analyzed):
        result = runner.invoke(main, ["--database", database, "recompute", analyzed["job_id"]])

        assert result.exit_code == 0, result.output
        assert "matches the stored result" in result.output

    def test_reviews(self, runner, database, analyzed):
        result = runner.invoke(main, ["--database", database, "reviews"])

        assert result.exit_code == 0, result.output
        assert "Review Tickets (1)" in result.output

    def test_no_reviews(self, runner, database):
        result = runner.invoke(main, ["--database", database, "reviews", "--state", "all"])

        assert result.exit_code == 0
        assert "No review tickets" in result.output

    def test_override(self, runner, database, analyzed):
        args = [
            "--database", database, "override", analyzed["result_id"],
            "--verdict", "genuine", "--actor", "admin-1", "--reason", "Seller supplied original RAW",
        ]

        first = runner.invoke(main, args)
        second = runner.invoke(main, args)

        assert first.exit_code == 0, first.output
        assert "FAKE -> GENUINE by admin-1" in first.output
        assert second.exit_code == 1
        assert "already has" in second.output

    def test_health(self, runner, database, analyzed):
        result = runner.invoke(main, ["--database", database, "health"])

        assert result.exit_code == 0, result.output
        assert "Database reachable" in result.output
        assert "Open review tickets: 1" in result.output


class TestEndpointsCommand:
    """Tests for webhook endpoint registration."""

    def test_add_endpoint(self, runner, database):
        result = runner.invoke(main, [
            "--database", database, "endpoints", "add",
            "--org", "org-acme", "--url", "https://hooks.acme.test/x", "--secret", "s3cret",
        ])

        assert result.exit_code == 0, result.output
        assert "(signed)" in result.output

    def test_rejects_non_http_url(self, runner, database):
        result = runner.invoke(main, [
            "--database", database, "endpoints", "add", "--org", "org-acme", "--url", "ftp://hooks.test/x",
        ])

        assert result.exit_code == 1
        assert "must be http(s)" in result.output


class TestConfigCommand:
    """Tests for the config command."""

    def test_masks_api_key(self, runner):
        result = runner.invoke(main, ["config", "--format", "json"], env={"TRUSTLENS_PROVIDER_API_KEY": "secret"})

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["providers"]["api_key"] == "***"
        assert data["escalation_threshold"] == 0.4

    def test_yaml_output(self, runner):
        result = runner.invoke(main, ["config"])

        assert result.exit_code == 0
        assert "escalation_threshold: 0.4" in result.output


class TestPrintStatus:
    """Tests for print_status helper."""

    @pytest.mark.parametrize("status", ["[OK]", "[FAIL]", "[WARN]", "[INFO]", "[ERROR]", "[OTHER]"])
    def test_print_status(self, capsys, status):
        print_status(status, "Test message")

        captured = capsys.readouterr()
        assert status in captured.out
        assert "Test message" in captured.out
