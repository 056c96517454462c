"""
Recalculation Service - Formula and link passes, dependent sheet fan-out
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Set

from atlas.models.grid import ROW_ID_KEY, ColumnDefinition, LinkedColumn, Row, SheetTab
from atlas.services.reference_service import is_empty_value, resolve_references, stringify_value

logger = logging.getLogger(__name__)

FORMULA_ERROR = "#ERR!"
MISSING_SHEET = "#MISSING_SHEET!"
MISSING_COLUMN = "#MISSING_COLUMN!"

# Quote plus concatenation operator on either side: `"text " + ` / ` + " text"`
_CONCAT_RE = re.compile(r"""['"]\s*\+\s*|\s*\+\s*['"]""")
_QUOTE_RE = re.compile(r"""['"]""")


def clean_formula_output(text: str) -> str:
    """Strip leftover quote/concatenation punctuation from a resolved template"""
    return _QUOTE_RE.sub("", _CONCAT_RE.sub("", text))


def evaluate_formula(formula: str, row: Row, columns: List[ColumnDefinition]) -> str:
    return clean_formula_output(resolve_references(formula, row, columns))


def resolve_link(link: LinkedColumn, row: Row, sheets_by_id: Dict[str, SheetTab]) -> str:
    """Look up the linked value for one row; dangling links yield a marker"""
    source = sheets_by_id.get(link.source_sheet_id)
    if source is None:
        return MISSING_SHEET

    match_value = row.get(link.match_column_id)
    if is_empty_value(match_value):
        return ""

    key = stringify_value(match_value)
    source_row = next(
        (r for r in source.rows if stringify_value(r.get(link.source_match_column_id)) == key),
        None
    )
    if source_row is None:
        return ""

    if link.source_column_id != ROW_ID_KEY and source.get_column(link.source_column_id) is None:
        return MISSING_COLUMN

    return stringify_value(source_row.get(link.source_column_id))


def recalculate_sheet(sheet: SheetTab, all_sheets: Iterable[SheetTab]) -> SheetTab:
    """
    Recompute formula and linked columns for every row of a sheet

    Formulas run first, then links, so a column carrying both shows the
    linked value. Other sheets are read as they are stored; none of them
    is recalculated here.

    Args:
        sheet: Sheet to recalculate
        all_sheets: Every sheet links may point at (usually the vertical's sheets)

    Returns:
        A new SheetTab; the input is not modified.
    """
    formula_columns = [c for c in sheet.columns if c.formula and c.formula.strip()]
    link_columns = [c for c in sheet.columns if c.linked_column]
    if not formula_columns and not link_columns:
        return sheet

    sheets_by_id = {s.id: s for s in all_sheets}
    rows: List[Row] = []
    for row in sheet.rows:
        new_row = dict(row)
        for column in formula_columns:
            try:
                new_row[column.id] = evaluate_formula(column.formula, new_row, sheet.columns)
            except Exception as e:
                logger.warning(f"Formula error in {sheet.id}.{column.id} row {row.get(ROW_ID_KEY)}: {e}")
                new_row[column.id] = FORMULA_ERROR
        rows.append(new_row)

    if link_columns:
        # Links into the sheet itself read the formula pass, never this link pass
        snapshot = sheet.model_copy(update={"rows": rows})
        sheets_by_id[sheet.id] = snapshot
        rows = [
            {**row, **{c.id: resolve_link(c.linked_column, row, sheets_by_id) for c in link_columns}}
            for row in snapshot.rows
        ]

    return sheet.model_copy(update={"rows": rows})


def find_dependents(source_sheet_id: str, source_column_id: str, all_sheets: Iterable[SheetTab]) -> Set[str]:
    """Ids of sheets holding a column linked to (source_sheet_id, source_column_id)"""
    return {
        sheet.id
        for sheet in all_sheets
        for column in sheet.columns
        if column.linked_column
        and column.linked_column.source_sheet_id == source_sheet_id
        and column.linked_column.source_column_id == source_column_id
    }


def find_key_dependents(source_sheet_id: str, column_id: str, all_sheets: Iterable[SheetTab]) -> Set[str]:
    """Ids of sheets whose links match source rows on `column_id`"""
    return {
        sheet.id
        for sheet in all_sheets
        for column in sheet.columns
        if column.linked_column
        and column.linked_column.source_sheet_id == source_sheet_id
        and column.linked_column.source_match_column_id == column_id
    }


def _changed_columns(before: SheetTab, after: SheetTab) -> Set[str]:
    changed = set()
    for old, new in zip(before.rows, after.rows):
        for column in after.columns:
            if old.get(column.id) != new.get(column.id):
                changed.add(column.id)
    return changed


def propagate_change(
    sheets: List[SheetTab],
    sheet_id: str,
    changed_column_ids: Optional[Iterable[str]] = None
) -> List[SheetTab]:
    """
    Recalculate an edited sheet, then each sheet that links into it once

    Args:
        sheets: Every sheet of the vertical, in display order
        sheet_id: The sheet that was edited
        changed_column_ids: Columns written by the edit. None means the
            change was structural and every column counts as changed.

    Returns:
        New sheet list. Dependents are recalculated against the updated
        edited sheet and are not propagated further.
    """
    index = next((i for i, s in enumerate(sheets) if s.id == sheet_id), None)
    if index is None:
        return sheets

    updated = list(sheets)
    before = updated[index]
    after = recalculate_sheet(before, updated)
    updated[index] = after

    if changed_column_ids is None:
        columns = {c.id for c in after.columns} | {ROW_ID_KEY}
    else:
        columns = set(changed_column_ids) | _changed_columns(before, after)

    dependents: Set[str] = set()
    for column_id in columns:
        dependents |= find_dependents(sheet_id, column_id, updated)
        dependents |= find_key_dependents(sheet_id, column_id, updated)
    dependents.discard(sheet_id)

    for i, sheet in enumerate(updated):
        if sheet.id in dependents:
            updated[i] = recalculate_sheet(sheet, updated)
            logger.debug(f"Recalculated dependent sheet {sheet.id} after change in {sheet_id}")

    return updated
