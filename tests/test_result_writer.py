"""Tests for the result writer."""

from datetime import datetime

import orjson

from scan_extract.orchestration.dispatcher import DispatchResult
from scan_extract.output.result_writer import ResultWriter, build_summary, json_dumps
from scan_extract.types import ExtractionResult, ProcessingStatus, WorkItem


def make_dispatch_result(make_document) -> DispatchResult:
    item = WorkItem(id="item_0", source_label="scan_0.png")
    extracted = ExtractionResult.from_document(item, make_document("101", requires_review=True))
    return DispatchResult(
        started_at=datetime(2024, 6, 1, 12, 0),
        completed_at=datetime(2024, 6, 1, 12, 5),
        results=[extracted],
        statuses={
            "item_0": ProcessingStatus.done(extracted),
            "item_1": ProcessingStatus.failed("All API keys exhausted"),
        },
    )


class TestResultWriter:
    """Test writing run output to disk."""

    def test_writes_results_and_inspection(self, tmp_path, make_document):
        result = make_dispatch_result(make_document)
        writer = ResultWriter(tmp_path, run_name="run1")

        output_dir = writer.write(result)

        assert output_dir == tmp_path / "run1"
        data = orjson.loads((output_dir / "results.json").read_bytes())
        assert data["summary"] == {
            "total_documents": 2,
            "successful": 1,
            "failed": 1,
            "needs_review": 1,
        }
        assert data["errors"] == {"item_1": "All API keys exhausted"}
        assert data["data"][0]["property_number"] == "101"
        assert data["data"][0]["meta"]["source_label"] == "scan_0.png"
        assert data["started_at"] == "2024-06-01T12:00:00"

        inspection = orjson.loads((output_dir / "inspection.json").read_bytes())
        assert inspection["summary"]["total_documents"] == 1

    def test_timestamped_directory(self, tmp_path):
        writer = ResultWriter(tmp_path)
        assert writer.output_dir.name.startswith("extraction_")

    def test_build_summary(self, make_document):
        summary = build_summary(make_dispatch_result(make_document))
        assert summary["successful"] == 1

    def test_json_dumps_handles_datetimes(self):
        assert orjson.loads(json_dumps({"at": datetime(2024, 1, 2)})) == {
            "at": "2024-01-02T00:00:00"
        }
