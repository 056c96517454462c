"""
Grid Store - In-memory verticals/sheets/rows with a single update path,
recalculation on write and debounced persistence
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from atlas.config import settings
from atlas.core.cancellation import CancellationToken
from atlas.core.exceptions import InvariantViolationError, NotFoundError
from atlas.models.grid import (
    ROW_ID_KEY,
    AgentConfig,
    ColumnDefinition,
    ColumnType,
    HttpRequestConfig,
    Notification,
    Row,
    SelectOption,
    SheetTab,
    Vertical,
    WorkflowConfig,
)
from atlas.services.dedup_service import dedupe_rows
from atlas.services.persistence_service import PersistenceService
from atlas.services.recalculation_service import find_dependents, propagate_change, recalculate_sheet
from atlas.services.reference_service import is_empty_value

logger = logging.getLogger(__name__)

SheetUpdater = Callable[[SheetTab], SheetTab]

DEFAULT_SELECT_OPTIONS = [
    SelectOption(id="opt_1", label="Option 1", color="#DBEAFE"),
    SelectOption(id="opt_2", label="Option 2", color="#DCFCE7"),
]


def processing_key(row_id: str, column_id: str) -> str:
    return f"{row_id}:{column_id}"


def empty_value_for(column: ColumnDefinition) -> Any:
    """Initial cell value for a new row or column"""
    if column.default_value not in (None, ""):
        return column.default_value
    return 0 if column.type == ColumnType.NUMBER else ""


class GridStore:
    """
    Owner of the in-memory grid

    Every sheet change runs through update_sheet, which swaps in the new
    sheet, recalculates it (and the sheets linked to it) when asked, and
    schedules a persistence hand-off. Mutations are synchronous: the state
    reflects them as soon as the call returns.
    """

    def __init__(
        self,
        verticals: Optional[List[Vertical]] = None,
        persistence: Optional[PersistenceService] = None,
        debounce_seconds: Optional[float] = None
    ):
        self.verticals: List[Vertical] = list(verticals or [])
        self.persistence = persistence
        self.debounce_seconds = (
            settings.PERSIST_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )

        self.notifications: Deque[Notification] = deque(maxlen=100)
        self.processing_cells: Set[str] = set()
        self.selections: Dict[str, List[str]] = {}

        self._listeners: List[Any] = []
        self._active_batches: Dict[str, CancellationToken] = {}
        self._bulk_depth = 0
        self._dirty = False
        self._persist_handle: Optional[asyncio.TimerHandle] = None
        self._persist_task: Optional[asyncio.Task] = None

    # Lookup

    def get_vertical(self, vertical_id: str) -> Vertical:
        vertical = next((v for v in self.verticals if v.id == vertical_id), None)
        if vertical is None:
            raise NotFoundError(f"Vertical {vertical_id} not found")
        return vertical

    def get_sheet(self, vertical_id: str, sheet_id: str) -> SheetTab:
        sheet = self.get_vertical(vertical_id).get_sheet(sheet_id)
        if sheet is None:
            raise NotFoundError(f"Sheet {sheet_id} not found in vertical {vertical_id}")
        return sheet

    def get_column(self, vertical_id: str, sheet_id: str, column_id: str) -> ColumnDefinition:
        column = self.get_sheet(vertical_id, sheet_id).get_column(column_id)
        if column is None:
            raise NotFoundError(f"Column {column_id} not found in sheet {sheet_id}")
        return column

    def get_row(self, vertical_id: str, sheet_id: str, row_id: str) -> Row:
        row = self.get_sheet(vertical_id, sheet_id).get_row(row_id)
        if row is None:
            raise NotFoundError(f"Row {row_id} not found in sheet {sheet_id}")
        return row

    def find_dependents(self, vertical_id: str, sheet_id: str, column_id: str) -> Set[str]:
        return find_dependents(sheet_id, column_id, self.get_vertical(vertical_id).sheets)

    def _new_id(self, prefix: str, taken: Iterable[str], separator: str = "_") -> str:
        taken = set(taken)
        candidate = f"{prefix}{separator}{int(time.time() * 1000)}"
        suffix = 1
        while candidate in taken:
            suffix += 1
            candidate = f"{prefix}{separator}{int(time.time() * 1000)}_{suffix}"
        return candidate

    # Core update path

    def _replace_vertical(self, vertical: Vertical):
        self.verticals = [vertical if v.id == vertical.id else v for v in self.verticals]

    def update_sheet(
        self,
        vertical_id: str,
        sheet_id: str,
        updater: SheetUpdater,
        recalc: bool = True,
        changed_columns: Optional[Iterable[str]] = None,
        persist: bool = True
    ) -> SheetTab:
        """
        Apply `updater` to one sheet and store the result

        Args:
            vertical_id: Vertical holding the sheet
            sheet_id: Sheet to update
            updater: Pure function returning the new sheet
            recalc: Recalculate the sheet and fan out to dependent sheets
            changed_columns: Columns the update wrote; None for structural changes
            persist: Schedule a persistence hand-off

        Returns:
            The stored sheet after the update
        """
        vertical = self.get_vertical(vertical_id)
        current = vertical.get_sheet(sheet_id)
        if current is None:
            raise NotFoundError(f"Sheet {sheet_id} not found in vertical {vertical_id}")

        updated = updater(current)
        sheets = [updated if s.id == sheet_id else s for s in vertical.sheets]
        if recalc:
            sheets = propagate_change(sheets, sheet_id, changed_columns)

        self._replace_vertical(vertical.model_copy(update={"sheets": sheets}))
        if persist:
            self.schedule_persist()
        return next(s for s in sheets if s.id == sheet_id)

    def _update_vertical(self, vertical_id: str, updater: Callable[[Vertical], Vertical], persist: bool = True) -> Vertical:
        updated = updater(self.get_vertical(vertical_id))
        self._replace_vertical(updated)
        if persist:
            self.schedule_persist()
        return updated

    def recalc_sheet(self, vertical_id: str, sheet_id: str) -> SheetTab:
        """Recalculate one sheet in place, without touching its dependents"""
        vertical = self.get_vertical(vertical_id)
        return self.update_sheet(
            vertical_id, sheet_id, lambda s: recalculate_sheet(s, vertical.sheets), recalc=False
        )

    # Verticals and sheets

    def add_vertical(self, name: str, color: str = "#3B82F6") -> Vertical:
        vertical_id = self._new_id("vertical", [v.id for v in self.verticals], "-")
        sheet = SheetTab(
            id=self._new_id("sheet", self._all_sheet_ids(), "-"),
            name="Sheet 1",
            color=color,
            columns=[ColumnDefinition(id="name", header="Name", width=200)],
        )
        vertical = Vertical(id=vertical_id, name=name, color=color, sheets=[sheet])
        self.verticals = [*self.verticals, vertical]
        self.schedule_persist()
        self.notify(f'Vertical "{name}" created.')
        return vertical

    def rename_vertical(self, vertical_id: str, name: str, color: Optional[str] = None) -> Vertical:
        def updater(v: Vertical) -> Vertical:
            return v.model_copy(update={"name": name, "color": color or v.color})
        return self._update_vertical(vertical_id, updater)

    def delete_vertical(self, vertical_id: str):
        vertical = self.get_vertical(vertical_id)
        self.verticals = [v for v in self.verticals if v.id != vertical_id]
        for sheet in vertical.sheets:
            self.selections.pop(sheet.id, None)
        self.schedule_persist()
        self.notify(f'Vertical "{vertical.name}" deleted.')

    def _all_sheet_ids(self) -> List[str]:
        return [s.id for v in self.verticals for s in v.sheets]

    def add_sheet(
        self,
        vertical_id: str,
        name: str,
        color: str = "#3B82F6",
        copy_columns_from: Optional[str] = None,
        columns: Optional[List[ColumnDefinition]] = None
    ) -> SheetTab:
        """Add a sheet; columns come from `columns`, another sheet, or a single Name column"""
        vertical = self.get_vertical(vertical_id)
        if columns is None and copy_columns_from:
            source = vertical.get_sheet(copy_columns_from)
            if source is None:
                raise NotFoundError(f"Sheet {copy_columns_from} not found in vertical {vertical_id}")
            # Keep the shape only; enrichment connections stay with the source sheet
            columns = [
                c.model_copy(update={"connected_agent_id": None, "connected_http_request_id": None})
                for c in source.columns
            ]
        sheet = SheetTab(
            id=self._new_id("sheet", self._all_sheet_ids(), "-"),
            name=name,
            color=color,
            columns=list(columns or [ColumnDefinition(id="name", header="Name", width=200)]),
        )
        self._update_vertical(vertical_id, lambda v: v.model_copy(update={"sheets": [*v.sheets, sheet]}))
        return sheet

    def update_sheet_meta(
        self,
        vertical_id: str,
        sheet_id: str,
        name: Optional[str] = None,
        color: Optional[str] = None,
        description: Optional[str] = None
    ) -> SheetTab:
        changes = {k: v for k, v in {"name": name, "color": color, "description": description}.items() if v is not None}
        return self.update_sheet(vertical_id, sheet_id, lambda s: s.model_copy(update=changes), recalc=False)

    def delete_sheet(self, vertical_id: str, sheet_id: str):
        """Remove a sheet; the last sheet of a vertical cannot be removed"""
        vertical = self.get_vertical(vertical_id)
        sheet = self.get_sheet(vertical_id, sheet_id)
        if len(vertical.sheets) <= 1:
            self.notify("A vertical must keep at least one sheet.", "warning")
            raise InvariantViolationError(f"Cannot delete the last sheet of vertical {vertical_id}")

        remaining = [s for s in vertical.sheets if s.id != sheet_id]
        # Sheets linked to the removed one now resolve to the missing-sheet marker
        remaining = [
            recalculate_sheet(s, remaining)
            if any(c.linked_column and c.linked_column.source_sheet_id == sheet_id for c in s.columns)
            else s
            for s in remaining
        ]
        self._replace_vertical(vertical.model_copy(update={"sheets": remaining}))
        self.selections.pop(sheet_id, None)
        self.schedule_persist()
        self.notify(f'Sheet "{sheet.name}" deleted.')

    def set_auto_update(self, vertical_id: str, sheet_id: str, enabled: bool) -> SheetTab:
        return self.update_sheet(
            vertical_id, sheet_id, lambda s: s.model_copy(update={"auto_update": enabled}), recalc=False
        )

    def set_workflow(self, vertical_id: str, sheet_id: str, workflow: Optional[WorkflowConfig]) -> SheetTab:
        return self.update_sheet(
            vertical_id, sheet_id, lambda s: s.model_copy(update={"workflow": workflow}), recalc=False
        )

    def get_or_create_sheet(
        self,
        vertical_id: str,
        name: str,
        columns: List[ColumnDefinition]
    ) -> SheetTab:
        """Sheet with the given name in the vertical, created when absent"""
        vertical = self.get_vertical(vertical_id)
        existing = next((s for s in vertical.sheets if s.name == name), None)
        if existing:
            return existing
        return self.add_sheet(vertical_id, name, columns=columns)

    # Columns

    def add_column(
        self,
        vertical_id: str,
        sheet_id: str,
        header: str,
        column_type: ColumnType = ColumnType.TEXT,
        index: Optional[int] = None,
        column_id: Optional[str] = None,
        **fields
    ) -> ColumnDefinition:
        """
        Add a column and initialise it on every row

        Args:
            vertical_id: Vertical holding the sheet
            sheet_id: Target sheet
            header: Display header
            column_type: Column type
            index: Insert position; appended when None
            column_id: Explicit id; generated as field_<timestamp> when None
            **fields: Further ColumnDefinition fields (formula, linked_column, ...)

        Returns:
            The created column
        """
        sheet = self.get_sheet(vertical_id, sheet_id)
        taken = [c.id for c in sheet.columns]
        if column_id and column_id in taken:
            raise InvariantViolationError(f"Column {column_id} already exists in sheet {sheet_id}")

        if column_type == ColumnType.SELECT and not fields.get("options"):
            fields["options"] = [o.model_copy() for o in DEFAULT_SELECT_OPTIONS]
        column = ColumnDefinition(
            id=column_id or self._new_id("field", taken),
            header=header,
            type=column_type,
            **fields
        )

        def updater(s: SheetTab) -> SheetTab:
            columns = list(s.columns)
            columns.insert(len(columns) if index is None else max(0, index), column)
            initial = empty_value_for(column)
            rows = [r if column.id in r else {**r, column.id: initial} for r in s.rows]
            return s.model_copy(update={"columns": columns, "rows": rows})

        self.update_sheet(vertical_id, sheet_id, updater, changed_columns=[column.id])
        return column

    def update_column(self, vertical_id: str, sheet_id: str, column_id: str, updates: Dict[str, Any]) -> ColumnDefinition:
        """
        Change a column definition

        A new default value backfills empty cells; activating deduplication
        removes duplicate rows right away. The sheet and its dependents are
        recalculated afterwards.
        """
        current = self.get_column(vertical_id, sheet_id, column_id)
        merged = {**current.model_dump(), **updates, "id": column_id}
        column = ColumnDefinition(**merged)
        removed = 0

        def updater(s: SheetTab) -> SheetTab:
            nonlocal removed
            columns = [column if c.id == column_id else c for c in s.columns]
            rows = s.rows
            if "default_value" in updates and column.default_value not in (None, ""):
                rows = [
                    {**r, column_id: column.default_value} if is_empty_value(r.get(column_id)) else r
                    for r in rows
                ]
            if column.deduplication and column.deduplication.active:
                deduped = dedupe_rows(rows, column_id, column.deduplication.keep)
                removed = len(rows) - len(deduped)
                rows = deduped
            return s.model_copy(update={"columns": columns, "rows": rows})

        self.update_sheet(vertical_id, sheet_id, updater, changed_columns=[column_id])
        if removed:
            self.notify(f"Removed {removed} duplicate rows.")
        return column

    def delete_column(self, vertical_id: str, sheet_id: str, column_id: str):
        """Remove a column and its cells; the last column of a sheet cannot be removed"""
        sheet = self.get_sheet(vertical_id, sheet_id)
        self.get_column(vertical_id, sheet_id, column_id)
        if len(sheet.columns) <= 1:
            self.notify("A sheet must keep at least one column.", "warning")
            raise InvariantViolationError(f"Cannot delete the last column of sheet {sheet_id}")

        def updater(s: SheetTab) -> SheetTab:
            columns = [c for c in s.columns if c.id != column_id]
            rows = [{k: v for k, v in r.items() if k != column_id} for r in s.rows]
            return s.model_copy(update={"columns": columns, "rows": rows})

        self.update_sheet(vertical_id, sheet_id, updater, changed_columns=[column_id])

    def dedupe(self, vertical_id: str, sheet_id: str, column_id: str, keep: str = "oldest") -> int:
        """Remove duplicate rows by one column; returns how many were removed"""
        self.get_column(vertical_id, sheet_id, column_id)
        before = len(self.get_sheet(vertical_id, sheet_id).rows)
        sheet = self.update_sheet(
            vertical_id, sheet_id,
            lambda s: s.model_copy(update={"rows": dedupe_rows(s.rows, column_id, keep)}),
            changed_columns=[ROW_ID_KEY],
        )
        removed = before - len(sheet.rows)
        if removed:
            self.notify(f"Removed {removed} duplicate rows.")
        return removed

    # Rows

    def _new_row(self, sheet: SheetTab, values: Optional[Dict[str, Any]]) -> Row:
        row: Row = {ROW_ID_KEY: self._new_id("row", [r.get(ROW_ID_KEY) for r in sheet.rows], "-")}
        for column in sheet.columns:
            row[column.id] = empty_value_for(column)
        row.update({k: v for k, v in (values or {}).items() if k != ROW_ID_KEY})
        return row

    def add_row(self, vertical_id: str, sheet_id: str, values: Optional[Dict[str, Any]] = None) -> Row:
        return self.insert_row(vertical_id, sheet_id, None, values)

    def insert_row(
        self,
        vertical_id: str,
        sheet_id: str,
        index: Optional[int],
        values: Optional[Dict[str, Any]] = None,
        trigger_hooks: bool = True
    ) -> Row:
        """Insert a row at `index` (appended when None) and recalculate"""
        row = self._new_row(self.get_sheet(vertical_id, sheet_id), values)

        def updater(s: SheetTab) -> SheetTab:
            rows = list(s.rows)
            rows.insert(len(rows) if index is None else max(0, index), row)
            return s.model_copy(update={"rows": rows})

        sheet = self.update_sheet(vertical_id, sheet_id, updater, changed_columns=[ROW_ID_KEY, *row.keys()])
        if trigger_hooks:
            for listener in self._listeners:
                listener.on_row_created(vertical_id, sheet_id, row[ROW_ID_KEY])
        return sheet.get_row(row[ROW_ID_KEY]) or row

    def delete_rows(self, vertical_id: str, sheet_id: str, row_ids: Iterable[str]) -> int:
        ids = set(row_ids)
        before = len(self.get_sheet(vertical_id, sheet_id).rows)
        sheet = self.update_sheet(
            vertical_id, sheet_id,
            lambda s: s.model_copy(update={"rows": [r for r in s.rows if r.get(ROW_ID_KEY) not in ids]}),
            changed_columns=[ROW_ID_KEY],
        )
        if sheet_id in self.selections:
            self.selections[sheet_id] = [r for r in self.selections[sheet_id] if r not in ids]
        return before - len(sheet.rows)

    def update_cell(self, vertical_id: str, sheet_id: str, row_id: str, column_id: str, value: Any) -> Optional[Row]:
        """
        Write one cell

        The sheet is recalculated, then deduplicated when the column has an
        active policy and the value is not empty, then dependent sheets are
        recalculated. Auto-trigger listeners are told about the change.

        Returns:
            The row after recalculation, or None if dedup removed it
        """
        self.get_row(vertical_id, sheet_id, row_id)
        column = self.get_column(vertical_id, sheet_id, column_id)
        vertical = self.get_vertical(vertical_id)

        def updater(s: SheetTab) -> SheetTab:
            rows = [{**r, column_id: value} if r.get(ROW_ID_KEY) == row_id else r for r in s.rows]
            s = s.model_copy(update={"rows": rows})
            if column.deduplication and column.deduplication.active and not is_empty_value(value):
                s = recalculate_sheet(s, vertical.sheets)
                s = s.model_copy(update={"rows": dedupe_rows(s.rows, column_id, column.deduplication.keep)})
            return s

        sheet = self.update_sheet(vertical_id, sheet_id, updater, changed_columns=[column_id, ROW_ID_KEY])
        for listener in self._listeners:
            listener.on_cell_changed(vertical_id, sheet_id, row_id, column_id, value)
        return sheet.get_row(row_id)

    def write_row_fields(
        self,
        vertical_id: str,
        sheet_id: str,
        row_id: str,
        updates: Dict[str, Any],
        create_missing_columns: bool = False
    ) -> bool:
        """
        Merge produced fields into a row (enrichment write-back)

        Only the given fields are written, so concurrent jobs on other
        fields of the same row are not overwritten. Returns False when the
        row, its sheet or its vertical no longer exists.
        """
        try:
            sheet = self.get_sheet(vertical_id, sheet_id)
        except NotFoundError:
            logger.info(f"Sheet {sheet_id} no longer in vertical {vertical_id}, dropping write-back")
            return False
        if sheet.get_row(row_id) is None:
            logger.info(f"Row {row_id} no longer in sheet {sheet_id}, dropping write-back")
            return False

        missing = [k for k in updates if k != ROW_ID_KEY and sheet.get_column(k) is None]

        def updater(s: SheetTab) -> SheetTab:
            columns = list(s.columns)
            rows = s.rows
            if create_missing_columns and missing:
                for key in missing:
                    columns.append(ColumnDefinition(id=key, header=key.replace("_", " ").title()))
                rows = [{**{k: "" for k in missing}, **r} for r in rows]
            rows = [{**r, **updates} if r.get(ROW_ID_KEY) == row_id else r for r in rows]
            return s.model_copy(update={"columns": columns, "rows": rows})

        self.update_sheet(vertical_id, sheet_id, updater, changed_columns=list(updates))
        return True

    def map_enrichment_value(self, vertical_id: str, sheet_id: str, row_id: str, key: str, value: Any) -> str:
        """Copy one key of an enrichment result into the column headed `key`; returns its id"""
        sheet = self.get_sheet(vertical_id, sheet_id)
        column = sheet.get_column_by_header(key)
        if column is None:
            column = self.add_column(vertical_id, sheet_id, key, ColumnType.TEXT, width=200)
        self.write_row_fields(vertical_id, sheet_id, row_id, {column.id: value})
        return column.id

    def select_rows(self, vertical_id: str, sheet_id: str, row_ids: Iterable[str]):
        self.get_sheet(vertical_id, sheet_id)
        self.selections[sheet_id] = list(row_ids)

    def selected_row_ids(self, sheet_id: str) -> List[str]:
        return list(self.selections.get(sheet_id, []))

    # Agents and HTTP requests

    def add_agent(self, vertical_id: str, sheet_id: str, agent: AgentConfig) -> Tuple[AgentConfig, ColumnDefinition]:
        """
        Attach an agent and connect it to its output column

        An existing column headed output_column_name is connected; otherwise
        an ENRICHMENT column is created.
        """
        sheet = self.get_sheet(vertical_id, sheet_id)
        if sheet.get_agent(agent.id):
            raise InvariantViolationError(f"Agent {agent.id} already exists in sheet {sheet_id}")

        target = sheet.get_column_by_header(agent.output_column_name)
        if target is None:
            target = ColumnDefinition(
                id=self._new_id("field", [c.id for c in sheet.columns]),
                header=agent.output_column_name,
                type=ColumnType.ENRICHMENT,
                width=300,
            )
        target = target.model_copy(update={"connected_agent_id": agent.id})

        def updater(s: SheetTab) -> SheetTab:
            if s.get_column(target.id):
                columns = [target if c.id == target.id else c for c in s.columns]
            else:
                columns = [*s.columns, target]
            rows = [r if target.id in r else {**r, target.id: ""} for r in s.rows]
            return s.model_copy(update={"columns": columns, "rows": rows, "agents": [*s.agents, agent]})

        self.update_sheet(vertical_id, sheet_id, updater, recalc=False)
        self.notify(f'Agent "{agent.name}" deployed.')
        return agent, target

    def update_agent(self, vertical_id: str, sheet_id: str, agent: AgentConfig) -> AgentConfig:
        if self.get_sheet(vertical_id, sheet_id).get_agent(agent.id) is None:
            raise NotFoundError(f"Agent {agent.id} not found in sheet {sheet_id}")
        self.update_sheet(
            vertical_id, sheet_id,
            lambda s: s.model_copy(update={"agents": [agent if a.id == agent.id else a for a in s.agents]}),
            recalc=False,
        )
        return agent

    def delete_agent(self, vertical_id: str, sheet_id: str, agent_id: str):
        if self.get_sheet(vertical_id, sheet_id).get_agent(agent_id) is None:
            raise NotFoundError(f"Agent {agent_id} not found in sheet {sheet_id}")

        def updater(s: SheetTab) -> SheetTab:
            columns = [
                c.model_copy(update={"connected_agent_id": None}) if c.connected_agent_id == agent_id else c
                for c in s.columns
            ]
            return s.model_copy(update={"columns": columns, "agents": [a for a in s.agents if a.id != agent_id]})

        self.update_sheet(vertical_id, sheet_id, updater, recalc=False)

    def add_http_request(
        self,
        vertical_id: str,
        sheet_id: str,
        config: HttpRequestConfig
    ) -> Tuple[HttpRequestConfig, ColumnDefinition]:
        """Attach an HTTP request; its raw response lands in a connected HTTP column"""
        sheet = self.get_sheet(vertical_id, sheet_id)
        if sheet.get_http_request(config.id):
            raise InvariantViolationError(f"HTTP request {config.id} already exists in sheet {sheet_id}")

        header = config.output_column_name or config.name
        target = sheet.get_column_by_header(header)
        if target is None:
            target = ColumnDefinition(
                id=self._new_id("field", [c.id for c in sheet.columns]),
                header=header,
                type=ColumnType.HTTP,
                width=300,
            )
        target = target.model_copy(update={"connected_http_request_id": config.id})

        def updater(s: SheetTab) -> SheetTab:
            if s.get_column(target.id):
                columns = [target if c.id == target.id else c for c in s.columns]
            else:
                columns = [*s.columns, target]
            rows = [r if target.id in r else {**r, target.id: ""} for r in s.rows]
            return s.model_copy(update={
                "columns": columns, "rows": rows, "http_requests": [*s.http_requests, config]
            })

        self.update_sheet(vertical_id, sheet_id, updater, recalc=False)
        self.notify(f'HTTP request "{config.name}" added.')
        return config, target

    def delete_http_request(self, vertical_id: str, sheet_id: str, request_id: str):
        if self.get_sheet(vertical_id, sheet_id).get_http_request(request_id) is None:
            raise NotFoundError(f"HTTP request {request_id} not found in sheet {sheet_id}")

        def updater(s: SheetTab) -> SheetTab:
            columns = [
                c.model_copy(update={"connected_http_request_id": None})
                if c.connected_http_request_id == request_id else c
                for c in s.columns
            ]
            requests_ = [h for h in s.http_requests if h.id != request_id]
            return s.model_copy(update={"columns": columns, "http_requests": requests_})

        self.update_sheet(vertical_id, sheet_id, updater, recalc=False)

    # Import

    def apply_import(
        self,
        vertical_id: str,
        sheet_id: str,
        new_columns: List[ColumnDefinition],
        new_rows: List[Row]
    ) -> SheetTab:
        """Append imported columns and rows, recalculating once at the end"""
        with self.bulk_operation():
            def updater(s: SheetTab) -> SheetTab:
                columns = [*s.columns, *new_columns]
                existing_rows = [{**{c.id: empty_value_for(c) for c in new_columns}, **r} for r in s.rows]
                added = [{**{c.id: empty_value_for(c) for c in columns}, **r} for r in new_rows]
                return s.model_copy(update={"columns": columns, "rows": [*existing_rows, *added]})

            sheet = self.update_sheet(vertical_id, sheet_id, updater, changed_columns=None)
        self.notify(f"Imported {len(new_rows)} rows.", "success")
        return sheet

    # Remote sync

    def apply_remote_verticals(self, verticals: List[Vertical]):
        """Replace local state with a full snapshot from the backing store"""
        self.verticals = list(verticals)
        known = set(self._all_sheet_ids())
        self.selections = {k: v for k, v in self.selections.items() if k in known}

    def apply_remote_sheet(self, vertical_id: str, sheet: SheetTab):
        """Insert or replace a sheet pushed by the sync collaborator"""
        vertical = self.get_vertical(vertical_id)
        if vertical.get_sheet(sheet.id) is None:
            self._replace_vertical(vertical.model_copy(update={"sheets": [*vertical.sheets, sheet]}))
        self.update_sheet(vertical_id, sheet.id, lambda _: sheet, persist=False)

    def apply_remote_rows(
        self,
        vertical_id: str,
        sheet_id: str,
        upserted: Optional[List[Row]] = None,
        deleted_ids: Optional[Iterable[str]] = None
    ):
        """Upsert and delete rows pushed by the sync collaborator"""
        upserts = {r[ROW_ID_KEY]: r for r in (upserted or [])}
        deleted = set(deleted_ids or [])

        def updater(s: SheetTab) -> SheetTab:
            rows = []
            for r in s.rows:
                row_id = r.get(ROW_ID_KEY)
                if row_id in deleted:
                    continue
                rows.append({**r, **upserts.pop(row_id)} if row_id in upserts else r)
            rows.extend(upserts.values())
            return s.model_copy(update={"rows": rows})

        self.update_sheet(vertical_id, sheet_id, updater, persist=False)

    # In-flight cells and batches

    def mark_processing(self, row_id: str, column_id: str):
        self.processing_cells.add(processing_key(row_id, column_id))

    def unmark_processing(self, row_id: str, column_id: str):
        self.processing_cells.discard(processing_key(row_id, column_id))

    def is_processing(self, row_id: str, column_id: str) -> bool:
        return processing_key(row_id, column_id) in self.processing_cells

    def begin_batch(self, sheet_id: str) -> CancellationToken:
        token = CancellationToken(sheet_id)
        self._active_batches[token.id] = token
        return token

    def end_batch(self, token: CancellationToken):
        self._active_batches.pop(token.id, None)

    def has_active_batch(self, sheet_id: Optional[str] = None) -> bool:
        return any(sheet_id is None or t.sheet_id == sheet_id for t in self._active_batches.values())

    def cancel_batches(self) -> int:
        """Cancel every active batch and clear all in-flight markers"""
        tokens = list(self._active_batches.values())
        for token in tokens:
            token.cancel()
        self._active_batches.clear()
        self.processing_cells.clear()
        return len(tokens)

    def subscribe(self, listener: Any):
        """Register an object with on_row_created / on_cell_changed hooks"""
        self._listeners.append(listener)

    # Notifications

    def notify(self, message: str, level: str = "info"):
        self.notifications.append(Notification(message=message, level=level))
        log = logger.error if level == "error" else logger.warning if level == "warning" else logger.info
        log(message)

    # Persistence

    @contextmanager
    def bulk_operation(self):
        """Suppress persistence hand-offs until the outermost block exits"""
        self._bulk_depth += 1
        try:
            yield self
        finally:
            self._bulk_depth -= 1
            if self._bulk_depth == 0 and self._dirty:
                self.schedule_persist()

    def schedule_persist(self):
        """Trailing-edge debounce: persist once edits stop for debounce_seconds"""
        self._dirty = True
        if self.persistence is None or self._bulk_depth > 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); flush() picks the change up later
            return
        if self._persist_handle is not None:
            self._persist_handle.cancel()
        self._persist_handle = loop.call_later(self.debounce_seconds, self._start_flush)

    def _start_flush(self):
        self._persist_handle = None
        self._persist_task = asyncio.ensure_future(self.flush())

    async def flush(self) -> bool:
        """Hand the current state to the persistence collaborator now"""
        if self.persistence is None or not self._dirty:
            return True
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None

        self._dirty = False
        snapshot = list(self.verticals)
        try:
            await asyncio.to_thread(self.persistence.save_verticals, snapshot)
            logger.debug(f"Persisted {len(snapshot)} verticals")
            return True
        except Exception as e:
            logger.error(f"Failed to persist grid: {e}")
            self.notify(f"Failed to save changes: {e}", "error")
            return False


# Global instance
_grid_store: Optional[GridStore] = None


def get_grid_store() -> GridStore:
    """Get or create global grid store instance"""
    global _grid_store
    if _grid_store is None:
        _grid_store = GridStore()
    return _grid_store


def set_grid_store(store: GridStore):
    global _grid_store
    _grid_store = store
