"""Deduplication of rows by one column's value"""
from typing import Dict, List

from atlas.models.grid import Row
from atlas.services.reference_service import stringify_value

KEEP_OLDEST = "oldest"
KEEP_NEWEST = "newest"


def dedupe_rows(rows: List[Row], column_id: str, keep: str = KEEP_OLDEST) -> List[Row]:
    """
    Remove rows whose value in `column_id` repeats an earlier/later row

    Values are compared as strings. Rows with an empty value are always
    kept. `oldest` keeps the first occurrence of each value, `newest` the
    last one; either way surviving rows stay in their original order.
    """
    if keep not in (KEEP_OLDEST, KEEP_NEWEST):
        raise ValueError(f"Unknown keep policy: {keep}")

    if keep == KEEP_NEWEST:
        last_index: Dict[str, int] = {}
        for index, row in enumerate(rows):
            key = stringify_value(row.get(column_id))
            if key:
                last_index[key] = index
        return [
            row for index, row in enumerate(rows)
            if not stringify_value(row.get(column_id))
            or last_index[stringify_value(row.get(column_id))] == index
        ]

    seen = set()
    kept = []
    for row in rows:
        key = stringify_value(row.get(column_id))
        if not key:
            kept.append(row)
            continue
        if key in seen:
            continue
        seen.add(key)
        kept.append(row)
    return kept
