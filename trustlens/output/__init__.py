"""Output generation for TrustLens results."""

from trustlens.output.json_export import JSONExporter, TrustLensJSONEncoder, export_results, report_key

__all__ = [
    "JSONExporter",
    "TrustLensJSONEncoder",
    "export_results",
    "report_key",
]
