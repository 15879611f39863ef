"""
Unit tests for the typed cell document
"""
from conftest import row_data
from models import CellStatus
from services.cell_values import (
    CellMetadata, CellValue, cell_text, clear_status, enrichment_result_cells,
    error_cell, get_cell, is_empty, with_status,
)
from services.row_batcher import RowPatch, apply_patches


class TestCellValue:

    def test_error_drops_value(self):
        cell = CellValue(value="stale", status=CellStatus.ERROR, error="boom")
        assert cell.to_dict() == {"value": None, "status": "error", "error": "boom"}

    def test_complete_drops_error(self):
        cell = CellValue(value="ok", status=CellStatus.COMPLETE, error="old")
        assert "error" not in cell.to_dict()

    def test_unknown_keys_survive_round_trip(self):
        doc = {"value": "x", "status": "complete", "customFlag": 1}
        assert CellValue.from_dict(doc).to_dict() == doc

    def test_unknown_status_is_unset(self):
        cell = CellValue.from_dict({"value": "x", "status": "weird"})
        assert cell.status == CellStatus.NONE
        assert "status" not in cell.to_dict()

    def test_plain_value_is_wrapped(self):
        assert CellValue.from_dict("raw").value == "raw"

    def test_metadata_uses_camel_case(self):
        meta = CellMetadata(input_tokens=10, output_tokens=2, total_cost=0.5)
        assert meta.to_dict() == {"inputTokens": 10, "outputTokens": 2, "totalCost": 0.5}

    def test_full_cell_survives_a_store_round_trip(self, db, seeded):
        cell = CellValue(
            value="Software",
            status=CellStatus.COMPLETE,
            enrichment_data={"Industry": "Software", "Employees": 120, "Public": False},
            raw_response='{"Industry": "Software"}',
            metadata=CellMetadata(
                input_tokens=42,
                output_tokens=7,
                time_taken_ms=815,
                total_cost=0.0000105,
                forced_to_finish_early=False,
            ),
        )
        row_id = seeded.row_ids[0]
        data = dict(row_data(db, row_id))
        data[seeded.target] = cell.to_dict()

        apply_patches(db, [RowPatch(row_id, data)])

        stored = row_data(db, row_id)[seeded.target]
        assert stored["metadata"]["forcedToFinishEarly"] is False
        assert CellValue.from_dict(stored) == cell


class TestHelpers:

    def test_with_status_keeps_value(self):
        cells = {"c": {"value": "keep", "status": "complete"}}
        doc = with_status(cells, "c", CellStatus.PENDING)
        assert doc == {"value": "keep", "status": "pending"}

    def test_with_status_from_error_clears_message(self):
        cells = {"c": {"value": None, "status": "error", "error": "x"}}
        assert with_status(cells, "c", CellStatus.PENDING) == {"value": None, "status": "pending"}

    def test_clear_status(self):
        cells = {"c": {"value": "keep", "status": "processing", "batchJobId": "b1"}}
        assert clear_status(cells, "c") == {"value": "keep"}
        assert clear_status(cells, "missing") is None

    def test_error_cell(self):
        assert error_cell("nope", batch_job_id="b") == {
            "value": None, "status": "error", "error": "nope", "batchJobId": "b",
        }

    def test_cell_text_and_is_empty(self):
        cells = {"a": {"value": False}, "b": {"value": ""}, "c": {"value": 0}}
        assert cell_text(cells, "a") == "false"
        assert cell_text(cells, "zzz") == ""
        assert is_empty(cells, "b") is True
        assert is_empty(cells, "c") is False
        assert is_empty(cells, "zzz") is True
        assert get_cell(cells, "zzz") is None

    def test_result_cells_fill_output_columns(self):
        cells = enrichment_result_cells(
            "2 datapoints",
            {"Industry": "Software", "size": 40},
            "{...}",
            CellMetadata(input_tokens=1),
            "target",
            {"industry": "col-industry", "size": "col-size", "region": "col-region"},
        )
        assert cells["target"]["value"] == "2 datapoints"
        assert cells["target"]["enrichmentData"] == {"Industry": "Software", "size": 40}
        assert cells["col-industry"] == {"value": "Software", "status": "complete"}
        assert cells["col-size"] == {"value": "40", "status": "complete"}
        assert cells["col-region"] == {"value": None, "status": "complete"}
