"""
Prompt construction for enrichment columns
"""
import json
import re
from typing import Any, Dict, List, Optional

from services.cell_values import cell_text

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

METADATA_FIELDS = {
    "reasoning": "<brief explanation of your answer, 1-2 sentences>",
    "confidence": '<"high", "medium", or "low">',
    "steps_taken": "<brief list of what you did>",
}


def extract_column_references(template: str) -> List[str]:
    """Column names referenced by {{...}} placeholders, in order of first use"""
    seen = []
    for match in PLACEHOLDER_PATTERN.finditer(template or ""):
        name = match.group(1).strip()
        if name and name not in seen:
            seen.append(name)
    return seen


def index_columns_by_name(columns) -> Dict[str, Any]:
    """Lower-cased column name -> column, first definition wins"""
    by_name = {}
    for column in columns:
        by_name.setdefault(column.name.strip().lower(), column)
    return by_name


def output_instructions(output_field_names: List[str], include_metadata_fields: bool) -> str:
    template = {name: f"<{name} value>" for name in output_field_names}
    if include_metadata_fields:
        template.update(METADATA_FIELDS)

    return (
        "\n\n---\n"
        "IMPORTANT: You must respond with ONLY a valid JSON object using exactly these keys:\n"
        f"{json.dumps(template, indent=2)}\n\n"
        "Replace each placeholder with the actual value. Do not include any other text, "
        "markdown, or explanation. Only output the JSON object."
    )


def build_prompt(
    template: str,
    row_cells: Optional[Dict[str, Any]],
    columns_by_name: Dict[str, Any],
    output_field_names: Optional[List[str]] = None,
    include_metadata_fields: bool = False,
) -> str:
    """
    Substitute {{Column Name}} placeholders with the row's cell values.

    Names match case-insensitively after trimming. Placeholders with no
    matching column are left as-is; a matching column with no cell becomes "".
    """
    def substitute(match: "re.Match") -> str:
        column = columns_by_name.get(match.group(1).strip().lower())
        if column is None:
            return match.group(0)
        return cell_text(row_cells, column.id)

    prompt = PLACEHOLDER_PATTERN.sub(substitute, template or "")

    if output_field_names:
        prompt += output_instructions(list(output_field_names), include_metadata_fields)
    return prompt
