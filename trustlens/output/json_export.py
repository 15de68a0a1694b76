"""JSON export of fusion results.

A report bundles the fused result with the job it belongs to and the
evidence it was computed from, so the verdict can be audited later without
the database.
"""

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union
from uuid import UUID

from trustlens import __version__
from trustlens.models import AnalysisJob, EvidenceRecord, FusionResult, utcnow

REPORT_FORMAT = "trustlens.report/1"


class TrustLensJSONEncoder(json.JSONEncoder):
    """JSON encoder for pipeline data types.

    Handles datetimes (ISO 8601), UUIDs, paths, enums and pydantic models.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        return super().default(obj)


class JSONExporter:
    """Exporter for fusion results to JSON reports."""

    def __init__(self, indent: int = 2, sort_keys: bool = False):
        """Initialize the JSON exporter.

        Args:
            indent: Number of spaces for indentation (default: 2)
            sort_keys: Whether to sort keys alphabetically (default: False)
        """
        self.indent = indent
        self.sort_keys = sort_keys

    def to_dict(
        self,
        result: FusionResult,
        job: Optional[AnalysisJob] = None,
        evidence: Optional[Sequence[EvidenceRecord]] = None,
    ) -> dict:
        """Build the report document.

        Args:
            result: Fused result to report
            job: Job the result belongs to
            evidence: Evidence records the result was fused from

        Returns:
            Report as a JSON-compatible dictionary
        """
        report = {
            "format": REPORT_FORMAT,
            "generator": f"trustlens {__version__}",
            "generated_at": utcnow(),
            "job_id": result.job_id,
            "result": result.model_dump(mode="json"),
            "effective_verdict": result.effective_verdict,
        }
        if job is not None:
            report["job"] = job.model_dump(mode="json")
        if evidence is not None:
            report["evidence"] = [record.model_dump(mode="json") for record in evidence]
        return report

    def to_json(
        self,
        result: FusionResult,
        job: Optional[AnalysisJob] = None,
        evidence: Optional[Sequence[EvidenceRecord]] = None,
    ) -> str:
        return json.dumps(
            self.to_dict(result, job, evidence),
            cls=TrustLensJSONEncoder,
            indent=self.indent,
            sort_keys=self.sort_keys,
        )

    def to_bytes(
        self,
        result: FusionResult,
        job: Optional[AnalysisJob] = None,
        evidence: Optional[Sequence[EvidenceRecord]] = None,
    ) -> bytes:
        """Report encoded as UTF-8, ready for the artifact storage."""
        return self.to_json(result, job, evidence).encode("utf-8")

    def to_file(
        self,
        result: FusionResult,
        file_path: Union[str, Path],
        job: Optional[AnalysisJob] = None,
        evidence: Optional[Sequence[EvidenceRecord]] = None,
        encoding: str = "utf-8",
    ) -> None:
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "w", encoding=encoding) as f:
            f.write(self.to_json(result, job, evidence))


def report_key(job_id: str) -> str:
    """Storage key of a job's report."""
    return f"reports/{job_id}.json"


def export_results(results: List[FusionResult], indent: int = 2) -> str:
    """Serialize several results as one JSON array (CLI listing output)."""
    return json.dumps(
        [r.model_dump(mode="json") for r in results],
        cls=TrustLensJSONEncoder,
        indent=indent,
    )
