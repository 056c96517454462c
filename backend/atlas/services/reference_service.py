"""
Reference Service - Resolve `/column_id` tokens against a row
"""

import json
import re
from typing import Any, Dict, List, Optional

from atlas.models.grid import ColumnDefinition, Row

REFERENCE_SIGIL = "/"


def stringify_value(value: Any) -> str:
    """Render a cell value the way it appears in text

    None renders empty, booleans as true/false, integral floats without
    a trailing .0, containers as JSON.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def is_empty_value(value: Any) -> bool:
    """True for a missing, None or empty-string value"""
    return value is None or value == ""


def _reference_pattern(columns: List[ColumnDefinition]) -> Optional[re.Pattern]:
    ids = sorted({c.id for c in columns if c.id}, key=len, reverse=True)
    if not ids:
        return None
    alternation = "|".join(re.escape(col_id) for col_id in ids)
    return re.compile(f"{re.escape(REFERENCE_SIGIL)}({alternation})(?!\\w)")


def resolve_references(text: str, row: Row, columns: List[ColumnDefinition]) -> str:
    """
    Replace every `/column_id` token with the row's value for that column

    Args:
        text: Template text
        row: Row the values are read from
        columns: Columns whose ids are recognised as references

    Returns:
        Resolved text. Longer ids win over their prefixes, and a token
        followed by a word character is left alone.
    """
    if not text:
        return text or ""
    pattern = _reference_pattern(columns)
    if pattern is None:
        return text
    return pattern.sub(lambda m: stringify_value(row.get(m.group(1))), text)


def resolve_record_references(
    values: Dict[str, str],
    row: Row,
    columns: List[ColumnDefinition]
) -> Dict[str, str]:
    """Resolve references in every value of a mapping (headers, params)"""
    return {key: resolve_references(val, row, columns) for key, val in (values or {}).items()}


def get_value_by_path(data: Any, path: str) -> Any:
    """Read `a.b[0].c` style paths out of decoded JSON; None when absent"""
    if not path:
        return None
    normalized = re.sub(r"\[(\d+)\]", r".\1", path)
    current = data
    for part in (p for p in normalized.split(".") if p):
        if current is None:
            return None
        if isinstance(current, list):
            if not part.isdigit() or int(part) >= len(current):
                return None
            current = current[int(part)]
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current
