"""Import API endpoints"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Dict, List, Optional
import logging

from atlas.api.deps import http_error
from atlas.core.exceptions import GridError
from atlas.services.ai_service import get_ai_service
from atlas.services.grid_store import GridStore, get_grid_store
from atlas.services.import_service import (
    ColumnMapping,
    HeaderMatch,
    ImportResult,
    ImportService,
    ParsedTable,
    parse_csv_text,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CsvImportRequest(BaseModel):
    """Request model for importing CSV text"""
    text: str
    delimiter: str = ","
    mapping: Optional[Dict[str, ColumnMapping]] = None


class TableImportRequest(BaseModel):
    """Request model for importing an already parsed table"""
    table: ParsedTable
    mapping: Optional[Dict[str, ColumnMapping]] = None


class MatchRequest(BaseModel):
    headers: List[str]
    use_llm: bool = True


class MatchResponse(BaseModel):
    matches: List[HeaderMatch]


def _import_service(store: GridStore = Depends(get_grid_store)) -> ImportService:
    return ImportService(store, get_ai_service())


@router.post("/{vertical_id}/{sheet_id}/match", response_model=MatchResponse)
async def match_headers(
    vertical_id: str,
    sheet_id: str,
    request: MatchRequest,
    service: ImportService = Depends(_import_service)
):
    """Suggest which existing columns the uploaded headers belong to"""
    try:
        sheet = service.store.get_sheet(vertical_id, sheet_id)
    except GridError as e:
        raise http_error(e)
    matches = await service.match_headers(request.headers, [c.header for c in sheet.columns], request.use_llm)
    return MatchResponse(matches=matches)


@router.post("/{vertical_id}/{sheet_id}/csv", response_model=ImportResult)
async def import_csv(
    vertical_id: str,
    sheet_id: str,
    request: CsvImportRequest,
    service: ImportService = Depends(_import_service)
):
    table = parse_csv_text(request.text, request.delimiter)
    if not table.headers:
        raise http_error(ValueError("CSV has no header row"))
    try:
        return service.import_table(vertical_id, sheet_id, table, request.mapping)
    except GridError as e:
        raise http_error(e)


@router.post("/{vertical_id}/{sheet_id}/table", response_model=ImportResult)
async def import_table(
    vertical_id: str,
    sheet_id: str,
    request: TableImportRequest,
    service: ImportService = Depends(_import_service)
):
    try:
        return service.import_table(vertical_id, sheet_id, request.table, request.mapping)
    except GridError as e:
        raise http_error(e)
