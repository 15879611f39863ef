"""
Model output parsing

Turns raw model text into a display value and a flat key/value map. Parsing
never raises: every failed strategy falls through to the next one and the
last resort is the raw text itself.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

Scalar = Union[str, int, float, None]

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)```")


@dataclass
class ParsedResponse:
    display_value: str
    structured_data: Optional[Dict[str, Scalar]]


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except (ValueError, TypeError):
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _normalize_value(value: Any) -> Scalar:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return value
    if isinstance(value, list):
        return ", ".join(_stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def normalize_object(obj: Dict[str, Any]) -> Dict[str, Scalar]:
    """Flatten a parsed JSON object to string/number/null values"""
    return {str(key): _normalize_value(value) for key, value in obj.items()}


def find_balanced_object(text: str) -> Optional[str]:
    """Return the first brace-matched {...} span, honouring string literals"""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
            continue
        if ch == "\\" and in_string:
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Try the whole text, then fenced blocks, then the first balanced object"""
    trimmed = text.strip()

    obj = _load_object(trimmed)
    if obj is not None:
        return obj

    for pattern in (_FENCED_JSON, _FENCED_ANY):
        match = pattern.search(trimmed)
        if match:
            obj = _load_object(match.group(1).strip())
            if obj is not None:
                return obj

    span = find_balanced_object(trimmed)
    if span is not None:
        return _load_object(span)
    return None


def display_value_for(data: Dict[str, Scalar]) -> str:
    if len(data) == 1:
        return _stringify(next(iter(data.values())))
    return f"{len(data)} datapoints"


def parse_ai_response(raw_text: Optional[str]) -> ParsedResponse:
    """Parse model output into (display value, structured data)"""
    text = raw_text if isinstance(raw_text, str) else _stringify(raw_text)

    obj = extract_json_object(text)
    if obj is not None:
        data = normalize_object(obj)
        return ParsedResponse(display_value=display_value_for(data), structured_data=data)

    trimmed = text.strip()
    return ParsedResponse(display_value=trimmed, structured_data={"result": trimmed})
