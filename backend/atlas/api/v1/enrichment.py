"""Enrichment API endpoints: agents, HTTP requests and registry workflow"""
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from typing import Awaitable, Callable, List, Optional
import logging

from atlas.api.deps import http_error
from atlas.core.exceptions import GridError
from atlas.models.enrichment_job import BatchReport
from atlas.models.grid import AgentConfig, HttpRequestConfig
from atlas.services.enrichment_service import EnrichmentService, get_enrichment_service
from atlas.services.grid_store import GridStore, get_grid_store

router = APIRouter()
logger = logging.getLogger(__name__)

SHEET_PATH = "/verticals/{vertical_id}/sheets/{sheet_id}"


class RunRequest(BaseModel):
    """Rows to run on (selection or all rows when omitted)"""
    row_ids: Optional[List[str]] = None
    background: bool = False


class WorkflowRunRequest(RunRequest):
    stage: str = "company"


class RunResponse(BaseModel):
    status: str
    message: str
    report: Optional[BatchReport] = None


class DeployResponse(BaseModel):
    agent: AgentConfig
    column_id: str
    report: Optional[BatchReport] = None


async def _run_in_background(label: str, run: Callable[[], Awaitable[Optional[BatchReport]]]):
    """Background task wrapper; failures only reach the log and notifications"""
    try:
        await run()
    except Exception as e:
        logger.error(f"Background {label} failed: {e}")


async def _dispatch(
    label: str,
    run: Callable[[], Awaitable[Optional[BatchReport]]],
    background: bool,
    background_tasks: BackgroundTasks
) -> RunResponse:
    if background:
        background_tasks.add_task(_run_in_background, label, run)
        return RunResponse(status="queued", message=f"{label} queued")
    try:
        report = await run()
    except (GridError, ValueError) as e:
        raise http_error(e)
    if report is None:
        return RunResponse(status="cancelled", message=f"{label} stopped")
    return RunResponse(status="completed", message=f"{label} finished", report=report)


@router.post(SHEET_PATH + "/agents", response_model=DeployResponse)
async def deploy_agent(
    vertical_id: str,
    sheet_id: str,
    agent: AgentConfig,
    service: EnrichmentService = Depends(get_enrichment_service)
):
    """Attach an agent; runs it on the first rows_to_deploy rows when set"""
    try:
        agent, column, report = await service.deploy_agent(vertical_id, sheet_id, agent)
    except GridError as e:
        raise http_error(e)
    return DeployResponse(agent=agent, column_id=column.id, report=report)


@router.put(SHEET_PATH + "/agents/{agent_id}", response_model=AgentConfig)
async def update_agent(
    vertical_id: str,
    sheet_id: str,
    agent_id: str,
    agent: AgentConfig,
    store: GridStore = Depends(get_grid_store)
):
    try:
        return store.update_agent(vertical_id, sheet_id, agent.model_copy(update={"id": agent_id}))
    except GridError as e:
        raise http_error(e)


@router.delete(SHEET_PATH + "/agents/{agent_id}")
async def delete_agent(vertical_id: str, sheet_id: str, agent_id: str, store: GridStore = Depends(get_grid_store)):
    try:
        store.delete_agent(vertical_id, sheet_id, agent_id)
    except GridError as e:
        raise http_error(e)
    return {"message": "Agent deleted successfully"}


@router.post(SHEET_PATH + "/agents/{agent_id}/run", response_model=RunResponse)
async def run_agent(
    vertical_id: str,
    sheet_id: str,
    agent_id: str,
    request: RunRequest,
    background_tasks: BackgroundTasks,
    service: EnrichmentService = Depends(get_enrichment_service)
):
    return await _dispatch(
        f"Agent {agent_id}",
        lambda: service.run_agent(vertical_id, sheet_id, agent_id, request.row_ids),
        request.background,
        background_tasks,
    )


@router.post(SHEET_PATH + "/http-requests")
async def add_http_request(
    vertical_id: str,
    sheet_id: str,
    config: HttpRequestConfig,
    store: GridStore = Depends(get_grid_store)
):
    try:
        config, column = store.add_http_request(vertical_id, sheet_id, config)
    except GridError as e:
        raise http_error(e)
    return {"http_request": config, "column_id": column.id}


@router.delete(SHEET_PATH + "/http-requests/{request_id}")
async def delete_http_request(
    vertical_id: str,
    sheet_id: str,
    request_id: str,
    store: GridStore = Depends(get_grid_store)
):
    try:
        store.delete_http_request(vertical_id, sheet_id, request_id)
    except GridError as e:
        raise http_error(e)
    return {"message": "HTTP request deleted successfully"}


@router.post(SHEET_PATH + "/http-requests/{request_id}/run", response_model=RunResponse)
async def run_http_request(
    vertical_id: str,
    sheet_id: str,
    request_id: str,
    request: RunRequest,
    background_tasks: BackgroundTasks,
    service: EnrichmentService = Depends(get_enrichment_service)
):
    return await _dispatch(
        f"HTTP request {request_id}",
        lambda: service.run_http_request(vertical_id, sheet_id, request_id, request.row_ids),
        request.background,
        background_tasks,
    )


@router.post(SHEET_PATH + "/workflow/run", response_model=RunResponse)
async def run_workflow(
    vertical_id: str,
    sheet_id: str,
    request: WorkflowRunRequest,
    background_tasks: BackgroundTasks,
    service: EnrichmentService = Depends(get_enrichment_service)
):
    """Run the company or owner stage of the registry workflow"""
    return await _dispatch(
        f"Registry {request.stage} enrichment",
        lambda: service.run_registry_workflow(vertical_id, sheet_id, request.stage, request.row_ids),
        request.background,
        background_tasks,
    )


@router.post("/enrichment/stop")
async def stop_enrichment(service: EnrichmentService = Depends(get_enrichment_service)):
    """Cancel every running batch"""
    return {"cancelled_batches": service.stop()}


@router.get("/enrichment/processing")
async def processing_cells(store: GridStore = Depends(get_grid_store)):
    """Cells with an enrichment job in flight, as row_id:column_id keys"""
    return {"cells": sorted(store.processing_cells), "active": store.has_active_batch()}
