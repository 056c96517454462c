"""
Enrichment Service - Run agents, HTTP requests and registry workflows over
sheet rows, concurrently and cancelably, writing results through the store
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from atlas.config import settings
from atlas.core.cancellation import BatchCancelled, CancellationToken
from atlas.core.exceptions import GridError, NotFoundError
from atlas.models.enrichment_job import BatchReport, EnrichmentKind, RowJobStatus
from atlas.models.grid import (
    ROW_ID_KEY,
    AgentConfig,
    ColumnDefinition,
    ColumnType,
    Row,
    SheetTab,
    WorkflowConfig,
)
from atlas.services.ai_service import AIService, get_ai_service
from atlas.services.condition_service import evaluate_condition
from atlas.services.grid_store import GridStore
from atlas.services.http_request_service import HttpRequestService, get_http_request_service
from atlas.services.open_register_service import (
    EnrichmentStatus,
    OpenRegisterService,
    get_open_register_service,
    normalize_name,
)
from atlas.services.reference_service import stringify_value

logger = logging.getLogger(__name__)

ERROR_PREFIX = "#ERROR"
PERSONS_SHEET_NAME = "Persons"
PERSON_COLUMNS = [
    ColumnDefinition(id="full_name", header="Full Name", width=200),
    ColumnDefinition(id="first_name", header="First Name"),
    ColumnDefinition(id="last_name", header="Last Name"),
    ColumnDefinition(id="role", header="Role", width=180),
    ColumnDefinition(id="type", header="Type"),
    ColumnDefinition(id="percentage_share", header="Share %", type=ColumnType.NUMBER),
    ColumnDefinition(id="date_of_birth", header="Date of Birth"),
    ColumnDefinition(id="age", header="Age", type=ColumnType.NUMBER),
    ColumnDefinition(id="company_name", header="Company Name", width=200),
    ColumnDefinition(id="company_id", header="Company ID"),
    ColumnDefinition(id="company_website", header="Company Website", type=ColumnType.URL),
]

RowWorker = Callable[[Row], Awaitable[None]]


def error_marker(error: Exception) -> str:
    return f"{ERROR_PREFIX}: {error}"


def missing_inputs(agent: AgentConfig, row: Row) -> List[str]:
    """Input columns with no value at all; an empty string still counts as present"""
    return [input_id for input_id in agent.inputs if row.get(input_id) is None]


class EnrichmentService:
    """Service for running enrichment batches against a grid store"""

    def __init__(
        self,
        store: GridStore,
        ai_service: Optional[AIService] = None,
        http_service: Optional[HttpRequestService] = None,
        registry: Optional[OpenRegisterService] = None,
        auto_trigger_delay: Optional[float] = None
    ):
        self.store = store
        self._ai_service = ai_service
        self._http_service = http_service
        self._registry = registry
        self.auto_trigger_delay = (
            settings.AUTO_TRIGGER_DELAY_SECONDS if auto_trigger_delay is None else auto_trigger_delay
        )
        self._auto_tasks: Set[asyncio.Task] = set()
        store.subscribe(self)

    @property
    def ai_service(self) -> AIService:
        if self._ai_service is None:
            self._ai_service = get_ai_service()
        return self._ai_service

    @property
    def http_service(self) -> HttpRequestService:
        if self._http_service is None:
            self._http_service = get_http_request_service()
        return self._http_service

    @property
    def registry(self) -> OpenRegisterService:
        if self._registry is None:
            self._registry = get_open_register_service()
        return self._registry

    def scope_rows(self, sheet: SheetTab, row_ids: Optional[List[str]] = None) -> List[Row]:
        """Explicit row ids, else the current selection, else every row"""
        if row_ids is None:
            row_ids = self.store.selected_row_ids(sheet.id)
            if not row_ids:
                return list(sheet.rows)
        wanted = set(row_ids)
        return [r for r in sheet.rows if r.get(ROW_ID_KEY) in wanted]

    async def _run_batch(
        self,
        report: BatchReport,
        token: CancellationToken,
        rows: List[Row],
        worker: RowWorker,
        sequential: bool = False
    ) -> Optional[BatchReport]:
        """Dispatch `worker` over rows; returns None when the batch was cancelled"""
        try:
            if sequential:
                for row in rows:
                    if token.cancelled:
                        break
                    await worker(row)
            else:
                await asyncio.gather(*(worker(row) for row in rows))
        finally:
            self.store.end_batch(token)

        if token.cancelled:
            for row in rows:
                report.row_status.setdefault(row[ROW_ID_KEY], RowJobStatus.CANCELLED)
            logger.info(f"{report.kind.value} batch on sheet {report.sheet_id} cancelled")
            return None

        logger.info(
            f"{report.kind.value} batch on sheet {report.sheet_id} complete: "
            f"{report.succeeded} done, {report.failed} failed, {report.skipped} skipped"
        )
        if report.total:
            self.store.notify(f"Enrichment complete for {report.attempted} records.", "success")
        return report

    async def _process_row(
        self,
        vertical_id: str,
        sheet_id: str,
        row_id: str,
        column_id: str,
        token: CancellationToken,
        report: BatchReport,
        job: Callable[[], Awaitable[Optional[Callable[[], None]]]],
        write_error: bool = True
    ):
        """
        Shared per-row lifecycle

        `job` does the network work and returns a write-back callable; the
        write-back only runs if the batch is still live. Errors are written
        into the row's target cell and never reach sibling rows.
        """
        if token.cancelled:
            report.row_status[row_id] = RowJobStatus.CANCELLED
            return

        self.store.mark_processing(row_id, column_id)
        report.row_status[row_id] = RowJobStatus.RUNNING
        report.attempted += 1
        try:
            write_back = await job()
            token.raise_if_cancelled()
            if write_back:
                write_back()
            report.row_status[row_id] = RowJobStatus.DONE
            report.succeeded += 1
        except BatchCancelled:
            report.row_status[row_id] = RowJobStatus.CANCELLED
        except Exception as e:
            if token.cancelled:
                report.row_status[row_id] = RowJobStatus.CANCELLED
                return
            logger.error(f"Enrichment failed for row {row_id} in sheet {sheet_id}: {e}")
            report.row_status[row_id] = RowJobStatus.ERROR
            report.failed += 1
            report.errors.append({"row_id": row_id, "error": str(e)})
            if write_error:
                self._write_failure(vertical_id, sheet_id, row_id, {column_id: error_marker(e)})
        finally:
            self.store.unmark_processing(row_id, column_id)

    def _write_failure(self, vertical_id: str, sheet_id: str, row_id: str, updates: dict):
        try:
            self.store.write_row_fields(vertical_id, sheet_id, row_id, updates)
        except GridError as e:
            logger.warning(f"Could not record failure for row {row_id} in sheet {sheet_id}: {e}")

    # Agents

    def agent_target_column(self, sheet: SheetTab, agent: AgentConfig) -> ColumnDefinition:
        column = next((c for c in sheet.columns if c.connected_agent_id == agent.id), None)
        column = column or sheet.get_column_by_header(agent.output_column_name)
        if column is None:
            self.store.notify("Target column not found.", "warning")
            raise NotFoundError(f"No output column for agent {agent.id}")
        return column

    async def run_agent(
        self,
        vertical_id: str,
        sheet_id: str,
        agent_id: str,
        row_ids: Optional[List[str]] = None
    ) -> Optional[BatchReport]:
        """
        Run an agent over the scoped rows of a sheet

        Rows missing an input value or failing the agent's condition are
        skipped. Every other row runs concurrently; a row's result is
        stored as JSON in the agent's output column.

        Returns:
            The batch report, or None when the batch was stopped
        """
        sheet = self.store.get_sheet(vertical_id, sheet_id)
        agent = sheet.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found in sheet {sheet_id}")
        target = self.agent_target_column(sheet, agent)
        rows = self.scope_rows(sheet, row_ids)

        token = self.store.begin_batch(sheet_id)
        report = BatchReport(
            kind=EnrichmentKind.AGENT, sheet_id=sheet_id, target_column_id=target.id, total=len(rows)
        )
        logger.info(f"Running agent {agent.name} on {len(rows)} rows of sheet {sheet_id}")

        async def worker(row: Row):
            row_id = row[ROW_ID_KEY]
            if missing_inputs(agent, row) or not evaluate_condition(agent.condition, row, sheet.columns):
                report.row_status[row_id] = RowJobStatus.SKIPPED
                report.skipped += 1
                return

            async def job():
                result = await self.ai_service.run_agent(agent, row, sheet.columns, token)
                payload = json.dumps(result, default=str)
                return lambda: self.store.write_row_fields(vertical_id, sheet_id, row_id, {target.id: payload})

            await self._process_row(vertical_id, sheet_id, row_id, target.id, token, report, job)

        return await self._run_batch(report, token, rows, worker)

    async def deploy_agent(
        self,
        vertical_id: str,
        sheet_id: str,
        agent: AgentConfig
    ) -> Tuple[AgentConfig, ColumnDefinition, Optional[BatchReport]]:
        """Add an agent and, when rows_to_deploy is set, run it on that many leading rows"""
        agent, column = self.store.add_agent(vertical_id, sheet_id, agent)
        report = None
        if agent.rows_to_deploy and agent.rows_to_deploy > 0:
            sheet = self.store.get_sheet(vertical_id, sheet_id)
            row_ids = [r[ROW_ID_KEY] for r in sheet.rows[:agent.rows_to_deploy]]
            report = await self.run_agent(vertical_id, sheet_id, agent.id, row_ids)
        return agent, column, report

    # HTTP requests

    async def run_http_request(
        self,
        vertical_id: str,
        sheet_id: str,
        request_id: str,
        row_ids: Optional[List[str]] = None
    ) -> Optional[BatchReport]:
        """Send a configured HTTP request once per scoped row"""
        sheet = self.store.get_sheet(vertical_id, sheet_id)
        config = sheet.get_http_request(request_id)
        if config is None:
            raise NotFoundError(f"HTTP request {request_id} not found in sheet {sheet_id}")
        target = next((c for c in sheet.columns if c.connected_http_request_id == request_id), None)
        if target is None:
            self.store.notify("Target column not found.", "warning")
            raise NotFoundError(f"No output column for HTTP request {request_id}")
        rows = self.scope_rows(sheet, row_ids)

        token = self.store.begin_batch(sheet_id)
        report = BatchReport(
            kind=EnrichmentKind.HTTP_REQUEST, sheet_id=sheet_id, target_column_id=target.id, total=len(rows)
        )

        async def worker(row: Row):
            row_id = row[ROW_ID_KEY]
            if any(row.get(i) is None for i in config.inputs):
                report.row_status[row_id] = RowJobStatus.SKIPPED
                report.skipped += 1
                return

            async def job():
                result = await self.http_service.execute(config, row, sheet.columns, token)
                raw = result.raw if isinstance(result.raw, str) else json.dumps(result.raw)
                updates = {target.id: raw, **result.updates}
                return lambda: self.store.write_row_fields(vertical_id, sheet_id, row_id, updates)

            await self._process_row(vertical_id, sheet_id, row_id, target.id, token, report, job)

        return await self._run_batch(report, token, rows, worker)

    # Registry workflow

    async def run_registry_workflow(
        self,
        vertical_id: str,
        sheet_id: str,
        stage: str = "company",
        row_ids: Optional[List[str]] = None
    ) -> Optional[BatchReport]:
        """
        Run one stage of the registry workflow, one row at a time

        Args:
            vertical_id: Vertical holding the sheet
            sheet_id: Company sheet
            stage: 'company' (resolve and fetch company details) or
                'owner' (directors and owners into the Persons sheet)
            row_ids: Rows to process; selection or all rows when None

        Returns:
            The batch report, or None when the batch was stopped
        """
        if stage not in ("company", "owner"):
            raise ValueError(f"Unknown workflow stage: {stage}")

        sheet = self.store.get_sheet(vertical_id, sheet_id)
        workflow = sheet.workflow or WorkflowConfig()
        status_column = workflow.company_status_column if stage == "company" else workflow.owner_status_column
        rows = self.scope_rows(sheet, row_ids)

        if sheet.get_column(status_column) is None:
            header = "Company Enrichment" if stage == "company" else "Owner Enrichment"
            self.store.add_column(
                vertical_id, sheet_id, header, ColumnType.TEXT,
                column_id=status_column, default_value=EnrichmentStatus.OPEN
            )

        token = self.store.begin_batch(sheet_id)
        kind = EnrichmentKind.REGISTRY_COMPANY if stage == "company" else EnrichmentKind.REGISTRY_OWNER
        report = BatchReport(kind=kind, sheet_id=sheet_id, target_column_id=status_column, total=len(rows))

        async def worker(row: Row):
            row_id = row[ROW_ID_KEY]

            async def company_job():
                result = await self.registry.run_company_enrichment(row, workflow, token)
                if result.error:
                    raise GridError(result.error)
                updates = {**result.company_updates, status_column: EnrichmentStatus.DONE}
                return lambda: self.store.write_row_fields(
                    vertical_id, sheet_id, row_id, updates, create_missing_columns=True
                )

            async def owner_job():
                result = await self.registry.run_owner_enrichment(row, workflow, token)
                if result.error:
                    raise GridError(result.error)
                updates = {**result.company_updates, status_column: EnrichmentStatus.DONE}

                def write_back():
                    self.append_persons(vertical_id, [p.model_dump() for p in result.persons])
                    self.store.write_row_fields(
                        vertical_id, sheet_id, row_id, updates, create_missing_columns=True
                    )
                return write_back

            await self._process_row(
                vertical_id, sheet_id, row_id, status_column, token, report,
                company_job if stage == "company" else owner_job,
                write_error=False,
            )
            if report.row_status.get(row_id) == RowJobStatus.ERROR:
                self._write_failure(vertical_id, sheet_id, row_id, {status_column: EnrichmentStatus.ERROR})

        return await self._run_batch(report, token, rows, worker, sequential=True)

    def append_persons(self, vertical_id: str, persons: List[dict]) -> int:
        """Add persons to the vertical's Persons sheet, skipping name+company duplicates"""
        if not persons:
            return 0
        sheet = self.store.get_or_create_sheet(
            vertical_id, PERSONS_SHEET_NAME, [c.model_copy() for c in PERSON_COLUMNS]
        )
        seen = {
            (normalize_name(stringify_value(r.get("full_name"))), stringify_value(r.get("company_id")))
            for r in sheet.rows
        }
        added = 0
        with self.store.bulk_operation():
            for person in persons:
                key = (normalize_name(person.get("full_name", "")), stringify_value(person.get("company_id")))
                if not key[0] or key in seen:
                    continue
                seen.add(key)
                values = {k: ("" if v is None else v) for k, v in person.items()}
                self.store.insert_row(vertical_id, sheet.id, None, values, trigger_hooks=False)
                added += 1
        logger.info(f"Added {added} persons to {PERSONS_SHEET_NAME} in vertical {vertical_id}")
        return added

    # Stop and auto-trigger

    def stop(self) -> int:
        """Cancel every running batch; in-flight markers are cleared at once"""
        cancelled = self.store.cancel_batches()
        if cancelled:
            self.store.notify("Enrichment stopped.", "warning")
        return cancelled

    def _schedule(self, coro_factory: Callable[[], Awaitable[None]]):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, auto-trigger skipped")
            return
        task = loop.create_task(coro_factory())
        self._auto_tasks.add(task)
        task.add_done_callback(self._auto_tasks.discard)

    async def wait_for_auto_triggers(self):
        """Wait until scheduled auto-trigger runs have finished"""
        while self._auto_tasks:
            await asyncio.gather(*list(self._auto_tasks), return_exceptions=True)

    def on_row_created(self, vertical_id: str, sheet_id: str, row_id: str):
        sheet = self.store.get_sheet(vertical_id, sheet_id)
        if sheet.auto_update and sheet.agents:
            agent_ids = [a.id for a in sheet.agents]
            self._schedule(lambda: self._auto_run_agents(vertical_id, sheet_id, row_id, agent_ids))

        workflow = sheet.workflow
        if workflow and workflow.company_auto_enrich:
            self._schedule(lambda: self._auto_run_workflow(vertical_id, sheet_id, row_id, "company"))

    def on_cell_changed(self, vertical_id: str, sheet_id: str, row_id: str, column_id: str, value):
        sheet = self.store.get_sheet(vertical_id, sheet_id)

        workflow = sheet.workflow
        if workflow and value == EnrichmentStatus.AUTO:
            if column_id == workflow.company_status_column and workflow.company_auto_enrich:
                self._schedule(lambda: self._auto_run_workflow(vertical_id, sheet_id, row_id, "company"))
            elif column_id == workflow.owner_status_column and workflow.owner_auto_enrich:
                self._schedule(lambda: self._auto_run_workflow(vertical_id, sheet_id, row_id, "owner"))

        if sheet.auto_update:
            agent_ids = [a.id for a in sheet.agents if column_id in a.inputs]
            if agent_ids:
                self._schedule(lambda: self._auto_run_agents(vertical_id, sheet_id, row_id, agent_ids))

    async def _auto_run_agents(self, vertical_id: str, sheet_id: str, row_id: str, agent_ids: List[str]):
        await asyncio.sleep(self.auto_trigger_delay)
        for agent_id in agent_ids:
            if self.store.has_active_batch(sheet_id):
                logger.info(f"Auto-update for row {row_id} suppressed, batch running on {sheet_id}")
                return
            try:
                await self.run_agent(vertical_id, sheet_id, agent_id, [row_id])
            except GridError as e:
                logger.warning(f"Auto-update of agent {agent_id} for row {row_id} failed: {e}")

    async def _auto_run_workflow(self, vertical_id: str, sheet_id: str, row_id: str, stage: str):
        await asyncio.sleep(self.auto_trigger_delay)
        if self.store.has_active_batch(sheet_id):
            logger.info(f"Auto {stage} enrichment for row {row_id} suppressed, batch running on {sheet_id}")
            return
        try:
            await self.run_registry_workflow(vertical_id, sheet_id, stage, [row_id])
        except GridError as e:
            logger.warning(f"Auto {stage} enrichment for row {row_id} failed: {e}")


# Global instance
_enrichment_service: Optional[EnrichmentService] = None


def get_enrichment_service() -> EnrichmentService:
    """Get or create global enrichment service instance"""
    global _enrichment_service
    if _enrichment_service is None:
        from atlas.services.grid_store import get_grid_store
        _enrichment_service = EnrichmentService(get_grid_store())
    return _enrichment_service
