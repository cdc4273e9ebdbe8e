"""Output generation: inspection reports and result files."""

from .inspection import (
    ConfidenceTag,
    InspectionFinding,
    InspectionReport,
    confidence_tag,
    format_findings,
    inspect_results,
    is_low_confidence,
)
from .result_writer import ResultWriter, build_summary

__all__ = [
    "inspect_results",
    "format_findings",
    "InspectionReport",
    "InspectionFinding",
    "ConfidenceTag",
    "confidence_tag",
    "is_low_confidence",
    "ResultWriter",
    "build_summary",
]
