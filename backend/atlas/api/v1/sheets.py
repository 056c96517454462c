"""Column, row and cell API endpoints"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging

from atlas.api.deps import http_error
from atlas.core.exceptions import GridError
from atlas.models.grid import ColumnDefinition, ColumnType, DeduplicationConfig, LinkedColumn
from atlas.services.grid_store import GridStore, get_grid_store

router = APIRouter(prefix="/verticals/{vertical_id}/sheets/{sheet_id}")
logger = logging.getLogger(__name__)


class ColumnCreate(BaseModel):
    header: str
    type: ColumnType = ColumnType.TEXT
    index: Optional[int] = None
    id: Optional[str] = None
    width: int = 150
    default_value: Optional[Any] = None
    formula: Optional[str] = None
    linked_column: Optional[LinkedColumn] = None
    deduplication: Optional[DeduplicationConfig] = None


class RowCreate(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)
    index: Optional[int] = None


class RowDelete(BaseModel):
    row_ids: List[str]


class CellUpdate(BaseModel):
    value: Any = None


class DedupeRequest(BaseModel):
    column_id: str
    keep: str = "oldest"


class SelectionRequest(BaseModel):
    row_ids: List[str] = Field(default_factory=list)


@router.post("/columns", response_model=ColumnDefinition)
async def create_column(
    vertical_id: str,
    sheet_id: str,
    request: ColumnCreate,
    store: GridStore = Depends(get_grid_store)
):
    fields = request.model_dump(exclude={"header", "type", "index", "id"}, exclude_none=True)
    try:
        return store.add_column(
            vertical_id, sheet_id, request.header, request.type,
            index=request.index, column_id=request.id, **fields
        )
    except GridError as e:
        raise http_error(e)


@router.patch("/columns/{column_id}", response_model=ColumnDefinition)
async def update_column(
    vertical_id: str,
    sheet_id: str,
    column_id: str,
    updates: Dict[str, Any],
    store: GridStore = Depends(get_grid_store)
):
    """Partial column update; formula and link changes recalculate dependents"""
    try:
        return store.update_column(vertical_id, sheet_id, column_id, updates)
    except (GridError, ValueError) as e:
        raise http_error(e)


@router.delete("/columns/{column_id}")
async def delete_column(vertical_id: str, sheet_id: str, column_id: str, store: GridStore = Depends(get_grid_store)):
    try:
        store.delete_column(vertical_id, sheet_id, column_id)
    except GridError as e:
        raise http_error(e)
    return {"message": "Column deleted successfully"}


@router.get("/columns/{column_id}/dependents")
async def column_dependents(
    vertical_id: str,
    sheet_id: str,
    column_id: str,
    store: GridStore = Depends(get_grid_store)
):
    """Sheets holding a linked column that reads from this column"""
    try:
        return {"sheet_ids": sorted(store.find_dependents(vertical_id, sheet_id, column_id))}
    except GridError as e:
        raise http_error(e)


@router.post("/rows")
async def create_row(vertical_id: str, sheet_id: str, request: RowCreate, store: GridStore = Depends(get_grid_store)):
    try:
        return store.insert_row(vertical_id, sheet_id, request.index, request.values)
    except GridError as e:
        raise http_error(e)


@router.post("/rows/delete")
async def delete_rows(vertical_id: str, sheet_id: str, request: RowDelete, store: GridStore = Depends(get_grid_store)):
    try:
        removed = store.delete_rows(vertical_id, sheet_id, request.row_ids)
    except GridError as e:
        raise http_error(e)
    return {"removed": removed}


@router.put("/rows/{row_id}/cells/{column_id}")
async def update_cell(
    vertical_id: str,
    sheet_id: str,
    row_id: str,
    column_id: str,
    request: CellUpdate,
    store: GridStore = Depends(get_grid_store)
):
    """Write one cell; the row comes back null when deduplication removed it"""
    try:
        row = store.update_cell(vertical_id, sheet_id, row_id, column_id, request.value)
    except GridError as e:
        raise http_error(e)
    return {"row": row}


@router.post("/dedupe")
async def dedupe(vertical_id: str, sheet_id: str, request: DedupeRequest, store: GridStore = Depends(get_grid_store)):
    try:
        removed = store.dedupe(vertical_id, sheet_id, request.column_id, request.keep)
    except (GridError, ValueError) as e:
        raise http_error(e)
    return {"removed": removed}


@router.put("/selection")
async def set_selection(
    vertical_id: str,
    sheet_id: str,
    request: SelectionRequest,
    store: GridStore = Depends(get_grid_store)
):
    try:
        store.select_rows(vertical_id, sheet_id, request.row_ids)
    except GridError as e:
        raise http_error(e)
    return {"row_ids": store.selected_row_ids(sheet_id)}
