"""Vertical and sheet API endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional
import logging

from atlas.api.deps import http_error
from atlas.core.exceptions import GridError
from atlas.models.grid import SheetTab, Vertical, WorkflowConfig
from atlas.services.grid_store import GridStore, get_grid_store

router = APIRouter()
logger = logging.getLogger(__name__)


class VerticalCreate(BaseModel):
    name: str
    color: str = "#3B82F6"


class VerticalUpdate(BaseModel):
    name: str
    color: Optional[str] = None


class SheetCreate(BaseModel):
    name: str
    color: str = "#3B82F6"
    copy_columns_from: Optional[str] = None


class SheetUpdate(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = None
    auto_update: Optional[bool] = None


class SheetSummary(BaseModel):
    """Sheet without its rows"""
    id: str
    name: str
    color: str
    column_count: int
    row_count: int
    auto_update: bool


class VerticalSummary(BaseModel):
    id: str
    name: str
    color: str
    sheets: List[SheetSummary]


def _summary(vertical: Vertical) -> VerticalSummary:
    return VerticalSummary(
        id=vertical.id,
        name=vertical.name,
        color=vertical.color,
        sheets=[
            SheetSummary(
                id=s.id,
                name=s.name,
                color=s.color,
                column_count=len(s.columns),
                row_count=len(s.rows),
                auto_update=s.auto_update,
            )
            for s in vertical.sheets
        ],
    )


@router.get("/verticals", response_model=List[VerticalSummary])
async def list_verticals(store: GridStore = Depends(get_grid_store)):
    """List verticals with sheet summaries"""
    return [_summary(v) for v in store.verticals]


@router.post("/verticals", response_model=Vertical)
async def create_vertical(request: VerticalCreate, store: GridStore = Depends(get_grid_store)):
    return store.add_vertical(request.name, request.color)


@router.get("/verticals/{vertical_id}", response_model=Vertical)
async def get_vertical(vertical_id: str, store: GridStore = Depends(get_grid_store)):
    try:
        return store.get_vertical(vertical_id)
    except GridError as e:
        raise http_error(e)


@router.put("/verticals/{vertical_id}", response_model=Vertical)
async def update_vertical(vertical_id: str, request: VerticalUpdate, store: GridStore = Depends(get_grid_store)):
    try:
        return store.rename_vertical(vertical_id, request.name, request.color)
    except GridError as e:
        raise http_error(e)


@router.delete("/verticals/{vertical_id}")
async def delete_vertical(vertical_id: str, store: GridStore = Depends(get_grid_store)):
    try:
        store.delete_vertical(vertical_id)
    except GridError as e:
        raise http_error(e)
    return {"message": "Vertical deleted successfully"}


@router.post("/verticals/{vertical_id}/sheets", response_model=SheetTab)
async def create_sheet(vertical_id: str, request: SheetCreate, store: GridStore = Depends(get_grid_store)):
    """Add a sheet, optionally copying the columns of another sheet"""
    try:
        return store.add_sheet(vertical_id, request.name, request.color, request.copy_columns_from)
    except GridError as e:
        raise http_error(e)


@router.get("/verticals/{vertical_id}/sheets/{sheet_id}", response_model=SheetTab)
async def get_sheet(vertical_id: str, sheet_id: str, store: GridStore = Depends(get_grid_store)):
    try:
        return store.get_sheet(vertical_id, sheet_id)
    except GridError as e:
        raise http_error(e)


@router.patch("/verticals/{vertical_id}/sheets/{sheet_id}", response_model=SheetTab)
async def update_sheet(
    vertical_id: str,
    sheet_id: str,
    request: SheetUpdate,
    store: GridStore = Depends(get_grid_store)
):
    try:
        sheet = store.update_sheet_meta(
            vertical_id, sheet_id, request.name, request.color, request.description
        )
        if request.auto_update is not None:
            sheet = store.set_auto_update(vertical_id, sheet_id, request.auto_update)
        return sheet
    except GridError as e:
        raise http_error(e)


@router.delete("/verticals/{vertical_id}/sheets/{sheet_id}")
async def delete_sheet(vertical_id: str, sheet_id: str, store: GridStore = Depends(get_grid_store)):
    """Delete a sheet; the last sheet of a vertical is refused with 400"""
    try:
        store.delete_sheet(vertical_id, sheet_id)
    except GridError as e:
        raise http_error(e)
    return {"message": "Sheet deleted successfully"}


@router.put("/verticals/{vertical_id}/sheets/{sheet_id}/workflow", response_model=SheetTab)
async def set_workflow(
    vertical_id: str,
    sheet_id: str,
    workflow: Optional[WorkflowConfig] = None,
    store: GridStore = Depends(get_grid_store)
):
    try:
        return store.set_workflow(vertical_id, sheet_id, workflow)
    except GridError as e:
        raise http_error(e)


@router.post("/verticals/{vertical_id}/sheets/{sheet_id}/recalculate", response_model=SheetTab)
async def recalculate_sheet(vertical_id: str, sheet_id: str, store: GridStore = Depends(get_grid_store)):
    """Re-evaluate formulas and linked columns of one sheet"""
    try:
        return store.recalc_sheet(vertical_id, sheet_id)
    except GridError as e:
        raise http_error(e)


@router.post("/sync/flush")
async def flush(store: GridStore = Depends(get_grid_store)):
    """Persist pending changes now instead of waiting for the debounce"""
    if not await store.flush():
        raise HTTPException(status_code=500, detail="Failed to save changes")
    return {"ok": True}


@router.get("/notifications")
async def list_notifications(limit: int = 20, store: GridStore = Depends(get_grid_store)):
    return [n.model_dump() for n in list(store.notifications)[-limit:]]
