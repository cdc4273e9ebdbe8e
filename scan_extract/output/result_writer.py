"""Result writer for extraction output.

Writes a run to a timestamped directory:
- results.json: results, summary and per-item errors
- inspection.json: data-quality inspection report
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import orjson

from .. import __version__
from ..orchestration.dispatcher import DispatchResult
from .inspection import InspectionReport, inspect_results

logger = logging.getLogger(__name__)


def json_dumps(obj: Any) -> bytes:
    """Serialize object to JSON bytes using orjson."""
    return orjson.dumps(
        obj,
        option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS,
        default=_json_default,
    )


def _json_default(obj: Any) -> Any:
    """Default serializer for non-standard types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    raise TypeError(f"Cannot serialize {type(obj)}")


def build_summary(result: DispatchResult) -> dict[str, int]:
    """Counts reported alongside the results."""
    return {
        "total_documents": result.total,
        "successful": result.completed_count,
        "failed": result.failed_count,
        "needs_review": result.needs_review_count,
    }


class ResultWriter:
    """Writes dispatch results to disk."""

    def __init__(self, output_dir: Path, run_name: Optional[str] = None):
        """Initialize the writer.

        Args:
            output_dir: Base output directory.
            run_name: Directory name for this run. Timestamped if None.
        """
        self._base_dir = output_dir
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._output_dir = output_dir / (run_name or f"extraction_{timestamp}")

    @property
    def output_dir(self) -> Path:
        """Get the output directory path."""
        return self._output_dir

    def write(
        self,
        result: DispatchResult,
        report: Optional[InspectionReport] = None,
    ) -> Path:
        """Write results and their inspection report.

        Args:
            result: Dispatch result to write.
            report: Precomputed inspection report. Computed if None.

        Returns:
            Path to the output directory.
        """
        self._output_dir.mkdir(parents=True, exist_ok=True)
        report = report or inspect_results(result.results)

        payload = {
            "tool_version": __version__,
            "started_at": result.started_at,
            "completed_at": result.completed_at,
            "summary": build_summary(result),
            "data": result.results,
            "errors": result.errors,
        }

        results_path = self._output_dir / "results.json"
        results_path.write_bytes(json_dumps(payload))

        inspection_path = self._output_dir / "inspection.json"
        inspection_path.write_bytes(json_dumps(report))

        logger.info(f"Wrote {len(result.results)} results to {self._output_dir}")
        return self._output_dir
