"""
Per-row formula evaluation

Formulas are Python expressions. {{Column Name}} placeholders are replaced by
the row's cell values as literals, then the expression runs in an asteval
interpreter with a small set of helper functions on top of its safe builtins.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from asteval import Interpreter

from services.cell_values import get_cell
from services.prompt_builder import extract_column_references  # noqa: F401
import logging

logger = logging.getLogger(__name__)

SAMPLE_VALUE = "sample_value"


@dataclass
class FormulaResult:
    value: Any = None
    error: Optional[str] = None


def _trim(s):
    return s.strip() if isinstance(s, str) else ""


def _lower(s):
    return s.lower() if isinstance(s, str) else ""


def _upper(s):
    return s.upper() if isinstance(s, str) else ""


def _capitalize(s):
    return s.capitalize() if isinstance(s, str) else ""


def _is_blank(value) -> bool:
    return value is None or value == ""


def _if_empty(value, fallback):
    return fallback if _is_blank(value) else value


def _coalesce(*values):
    for value in values:
        if not _is_blank(value):
            return value
    return None


FORMULA_HELPERS = {
    "trim": _trim,
    "lower": _lower,
    "upper": _upper,
    "capitalize": _capitalize,
    "if_empty": _if_empty,
    "coalesce": _coalesce,
    "re_sub": re.sub,
    "re_findall": re.findall,
    "json_dumps": json.dumps,
    "json_loads": json.loads,
}


def substitute_columns(formula: str, row_cells: Optional[Dict[str, Any]], columns: List) -> str:
    """Replace each {{Column Name}} with the cell value as a Python literal"""
    processed = formula
    for column in columns:
        placeholder = "{{" + column.name + "}}"
        if placeholder not in processed:
            continue
        cell = get_cell(row_cells, column.id)
        value = cell.value if cell is not None else None
        processed = processed.replace(placeholder, repr(value))
    return processed


def normalize_result(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    if isinstance(value, set):
        return json.dumps(sorted(value, key=str))
    if isinstance(value, (str, int, float)):
        return value
    return str(value)


def _error_message(interpreter: Interpreter) -> str:
    exc_name, message = interpreter.error[0].get_error()
    lines = [line.strip() for line in str(message).splitlines() if line.strip()]
    detail = lines[-1] if lines else exc_name
    return detail if detail.startswith(exc_name) else f"{exc_name}: {detail}"


def evaluate_formula(formula: str, row_cells: Optional[Dict[str, Any]], columns: List) -> FormulaResult:
    """Evaluate a formula against one row. Never raises; failures come back as FormulaResult.error."""
    if not formula or not formula.strip():
        return FormulaResult(error="Empty formula")

    try:
        expression = substitute_columns(formula, row_cells, columns)
        interpreter = Interpreter(usersyms=dict(FORMULA_HELPERS), use_numpy=False)
        result = interpreter.eval(expression, show_errors=False)
        if interpreter.error:
            return FormulaResult(error=_error_message(interpreter))
        return FormulaResult(value=normalize_result(result))
    except Exception as e:
        logger.warning(f"[FORMULA] Evaluation failed: {e}")
        return FormulaResult(error=str(e) or type(e).__name__)


def validate_formula(formula: str, columns: List) -> FormulaResult:
    """Dry-run against a row where every column holds a sample string"""
    sample_row = {column.id: {"value": SAMPLE_VALUE} for column in columns}
    return evaluate_formula(formula, sample_row, columns)
