"""
Typed view over the per-row cell map

A Row stores one JSON document per column id. CellValue is the typed form of
that document; to_dict()/from_dict() convert between the two without losing
fields, including keys this module does not know about.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Union
import json
import logging

from models import CellStatus

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float, bool, None]

_KNOWN_KEYS = {"value", "status", "batchJobId", "enrichmentData", "rawResponse", "error", "metadata"}


@dataclass
class CellMetadata:
    """Token/cost accounting attached to an enriched cell"""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    time_taken_ms: Optional[int] = None
    total_cost: Optional[float] = None
    forced_to_finish_early: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "timeTakenMs": self.time_taken_ms,
            "totalCost": self.total_cost,
            "forcedToFinishEarly": self.forced_to_finish_early,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CellMetadata":
        return cls(
            input_tokens=data.get("inputTokens"),
            output_tokens=data.get("outputTokens"),
            time_taken_ms=data.get("timeTakenMs"),
            total_cost=data.get("totalCost"),
            forced_to_finish_early=data.get("forcedToFinishEarly"),
        )


@dataclass
class CellValue:
    """A single cell. `error` status implies no value; `complete` implies no error."""
    value: Scalar = None
    status: CellStatus = CellStatus.NONE
    batch_job_id: Optional[str] = None
    enrichment_data: Optional[Dict[str, Scalar]] = None
    raw_response: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[CellMetadata] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.status == CellStatus.ERROR:
            self.value = None
        elif self.status == CellStatus.COMPLETE:
            self.error = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data["value"] = self.value
        if self.status != CellStatus.NONE:
            data["status"] = self.status.value
        if self.batch_job_id is not None:
            data["batchJobId"] = self.batch_job_id
        if self.enrichment_data is not None:
            data["enrichmentData"] = dict(self.enrichment_data)
        if self.raw_response is not None:
            data["rawResponse"] = self.raw_response
        if self.error is not None:
            data["error"] = self.error
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CellValue":
        if not data:
            return cls()
        if not isinstance(data, dict):
            # Plain values written by imports
            return cls(value=data)

        status = CellStatus.NONE
        raw_status = data.get("status")
        if raw_status:
            try:
                status = CellStatus(raw_status)
            except ValueError:
                logger.warning(f"Unknown cell status {raw_status!r}, treating as unset")

        metadata = data.get("metadata")
        return cls(
            value=data.get("value"),
            status=status,
            batch_job_id=data.get("batchJobId"),
            enrichment_data=data.get("enrichmentData"),
            raw_response=data.get("rawResponse"),
            error=data.get("error"),
            metadata=CellMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )


def get_cell(cells: Optional[Dict[str, Any]], column_id: str) -> Optional[CellValue]:
    """Read a cell from a row document, None when the column has no entry"""
    if not cells or column_id not in cells:
        return None
    return CellValue.from_dict(cells[column_id])


def cell_text(cells: Optional[Dict[str, Any]], column_id: str) -> str:
    """Stringified cell value for prompt and formula substitution"""
    cell = get_cell(cells, column_id)
    if cell is None or cell.value is None:
        return ""
    if isinstance(cell.value, bool):
        return "true" if cell.value else "false"
    if isinstance(cell.value, (dict, list)):
        return json.dumps(cell.value)
    return str(cell.value)


def is_empty(cells: Optional[Dict[str, Any]], column_id: str) -> bool:
    cell = get_cell(cells, column_id)
    return cell is None or cell.value is None or cell.value == ""


def with_status(
    cells: Optional[Dict[str, Any]],
    column_id: str,
    status: CellStatus,
    batch_job_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Cell document with a new status, keeping the current value visible"""
    cell = get_cell(cells, column_id) or CellValue()
    cell = replace(cell, status=status, error=None)
    if batch_job_id is not None:
        cell.batch_job_id = batch_job_id
    return cell.to_dict()


def clear_status(cells: Optional[Dict[str, Any]], column_id: str) -> Optional[Dict[str, Any]]:
    """Cell document with its status unset; None when the column has no entry"""
    cell = get_cell(cells, column_id)
    if cell is None:
        return None
    return replace(cell, status=CellStatus.NONE, batch_job_id=None).to_dict()


def error_cell(message: str, batch_job_id: Optional[str] = None) -> Dict[str, Any]:
    return CellValue(status=CellStatus.ERROR, error=message, batch_job_id=batch_job_id).to_dict()


def output_cell_value(structured_data: Optional[Dict[str, Any]], field_name: str) -> Scalar:
    """Value of a Data Guide field, matching keys case-insensitively"""
    for key, value in (structured_data or {}).items():
        if key.lower() == field_name:
            return None if value is None else str(value)
    return None


def enrichment_result_cells(
    display_value: str,
    structured_data: Optional[Dict[str, Any]],
    raw_response: str,
    metadata: CellMetadata,
    target_column_id: str,
    output_column_ids: Dict[str, str],
) -> Dict[str, Dict[str, Any]]:
    """Completed target cell plus one completed cell per resolved output column"""
    cells = {
        target_column_id: CellValue(
            value=display_value,
            status=CellStatus.COMPLETE,
            enrichment_data=structured_data,
            raw_response=raw_response,
            metadata=metadata,
        ).to_dict()
    }
    for field_name, column_id in output_column_ids.items():
        cells[column_id] = CellValue(
            value=output_cell_value(structured_data, field_name),
            status=CellStatus.COMPLETE,
        ).to_dict()
    return cells


def enrichment_error_cells(
    message: str,
    target_column_id: str,
    output_column_ids: Dict[str, str],
) -> Dict[str, Dict[str, Any]]:
    cells = {target_column_id: error_cell(message)}
    for column_id in output_column_ids.values():
        cells[column_id] = error_cell(message)
    return cells
