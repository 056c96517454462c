"""
Tests for enrichment batches: skip policy, errors, cancellation and auto-triggers
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, Mock

from atlas.core.exceptions import NotFoundError, ProviderError
from atlas.models.enrichment_job import RowJobStatus
from atlas.models.grid import HttpRequestConfig, WorkflowConfig
from atlas.services.enrichment_service import EnrichmentService, missing_inputs
from atlas.services.http_request_service import HttpRequestResult
from atlas.services.open_register_service import CompanyEnrichmentResult, EnrichedPerson, OwnerEnrichmentResult


@pytest.fixture
def ai_service():
    service = Mock()
    service.run_agent = AsyncMock(return_value={"description": "A software company"})
    return service


@pytest.fixture
def enrichment(store, ai_service):
    return EnrichmentService(store, ai_service=ai_service, http_service=Mock(), registry=Mock(), auto_trigger_delay=0)


@pytest.fixture
def deployed(store, agent):
    _, column = store.add_agent("v1", "companies", agent)
    return column


class TestAgentBatch:
    """Test agent runs over sheet rows"""

    @pytest.mark.asyncio
    async def test_writes_result_as_json(self, store, enrichment, deployed, agent):
        report = await enrichment.run_agent("v1", "companies", agent.id)

        assert report.succeeded == 2
        assert report.attempted == 2
        value = store.get_row("v1", "companies", "c1")[deployed.id]
        assert json.loads(value) == {"description": "A software company"}
        assert store.processing_cells == set()
        assert store.notifications[-1].message == "Enrichment complete for 2 records."

    @pytest.mark.asyncio
    async def test_missing_input_row_is_skipped(self, store, enrichment, ai_service, deployed, agent):
        store.update_cell("v1", "companies", "c2", "company_name", None)

        report = await enrichment.run_agent("v1", "companies", agent.id)

        assert report.attempted == 1
        assert report.skipped == 1
        assert report.row_status["c2"] == RowJobStatus.SKIPPED
        assert ai_service.run_agent.await_count == 1
        assert store.get_row("v1", "companies", "c1")[deployed.id] != ""
        assert store.get_row("v1", "companies", "c2")[deployed.id] == ""
        assert store.processing_cells == set()

    def test_empty_string_input_still_runs(self, agent):
        assert missing_inputs(agent, {"id": "r1", "company_name": ""}) == []
        assert missing_inputs(agent, {"id": "r1"}) == ["company_name"]

    @pytest.mark.asyncio
    async def test_false_condition_skips(self, store, enrichment, ai_service, agent):
        agent = agent.model_copy(update={"condition": 'industry === "IT"'})
        store.add_agent("v1", "companies", agent)

        report = await enrichment.run_agent("v1", "companies", agent.id)

        assert report.row_status == {"c1": RowJobStatus.DONE, "c2": RowJobStatus.SKIPPED}

    @pytest.mark.asyncio
    async def test_broken_condition_runs(self, store, enrichment, ai_service, agent):
        agent = agent.model_copy(update={"condition": "industry ==="})
        store.add_agent("v1", "companies", agent)

        report = await enrichment.run_agent("v1", "companies", agent.id)

        assert report.succeeded == 2

    @pytest.mark.asyncio
    async def test_error_marker_on_failed_row(self, store, enrichment, ai_service, deployed, agent):
        async def flaky(agent, row, columns, token):
            if row["id"] == "c2":
                raise ProviderError("quota exceeded")
            return {"description": "ok"}

        ai_service.run_agent.side_effect = flaky

        report = await enrichment.run_agent("v1", "companies", agent.id)

        assert report.succeeded == 1
        assert report.failed == 1
        assert store.get_row("v1", "companies", "c2")[deployed.id] == "#ERROR: quota exceeded"
        assert json.loads(store.get_row("v1", "companies", "c1")[deployed.id]) == {"description": "ok"}

    @pytest.mark.asyncio
    async def test_scope_uses_selection(self, store, enrichment, ai_service, deployed, agent):
        store.select_rows("v1", "companies", ["c2"])
        report = await enrichment.run_agent("v1", "companies", agent.id)
        assert list(report.row_status) == ["c2"]

    @pytest.mark.asyncio
    async def test_explicit_empty_row_list(self, store, enrichment, ai_service, deployed, agent):
        report = await enrichment.run_agent("v1", "companies", agent.id, row_ids=[])
        assert report.total == 0
        ai_service.run_agent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_agent(self, enrichment):
        with pytest.raises(NotFoundError):
            await enrichment.run_agent("v1", "companies", "ghost")

    @pytest.mark.asyncio
    async def test_deploy_runs_leading_rows(self, store, enrichment, ai_service, agent):
        agent = agent.model_copy(update={"rows_to_deploy": 1})
        _, column, report = await enrichment.deploy_agent("v1", "companies", agent)

        assert list(report.row_status) == ["c1"]
        assert store.get_row("v1", "companies", "c2")[column.id] == ""


class TestCancellation:
    """Test stopping a running batch"""

    @pytest.mark.asyncio
    async def test_stop_discards_results(self, store, enrichment, ai_service, deployed, agent):
        started = asyncio.Event()

        async def slow(agent, row, columns, token):
            started.set()
            await asyncio.sleep(0.2)
            return {"description": "late"}

        ai_service.run_agent.side_effect = slow

        task = asyncio.create_task(enrichment.run_agent("v1", "companies", agent.id))
        await started.wait()
        assert store.processing_cells

        assert enrichment.stop() == 1
        assert store.processing_cells == set()
        assert store.notifications[-1].message == "Enrichment stopped."

        assert await task is None
        assert store.get_row("v1", "companies", "c1")[deployed.id] == ""
        assert store.get_row("v1", "companies", "c2")[deployed.id] == ""
        assert store.processing_cells == set()
        assert not store.has_active_batch()
        assert all("Enrichment complete" not in n.message for n in store.notifications)

    @pytest.mark.asyncio
    async def test_sheet_deleted_mid_batch(self, store, enrichment, ai_service, deployed, agent):
        started = asyncio.Event()

        async def slow(agent, row, columns, token):
            started.set()
            await asyncio.sleep(0.05)
            if row["id"] == "c2":
                raise ProviderError("quota exceeded")
            return {"description": "late"}

        ai_service.run_agent.side_effect = slow

        task = asyncio.create_task(enrichment.run_agent("v1", "companies", agent.id))
        await started.wait()
        store.delete_sheet("v1", "companies")

        report = await task

        assert report.attempted == 2
        assert report.failed == 1
        assert report.row_status["c2"] == RowJobStatus.ERROR
        assert store.processing_cells == set()
        assert not store.has_active_batch()
        assert [s.id for s in store.get_vertical("v1").sheets] == ["contacts"]


class TestHttpRequestBatch:
    """Test HTTP request runs"""

    @pytest.mark.asyncio
    async def test_raw_and_mapped_values_written(self, store, enrichment):
        config = HttpRequestConfig(
            id="req-1", name="Lookup", url="https://api.example.com/?q=/company_name",
            response_mapping={"data.ceo": "Industry"},
        )
        _, column = store.add_http_request("v1", "companies", config)
        enrichment.http_service.execute = AsyncMock(
            return_value=HttpRequestResult(raw={"data": {"ceo": "Jane"}}, status_code=200, updates={"industry": "Jane"})
        )

        report = await enrichment.run_http_request("v1", "companies", "req-1", ["c1"])

        assert report.succeeded == 1
        row = store.get_row("v1", "companies", "c1")
        assert json.loads(row[column.id]) == {"data": {"ceo": "Jane"}}
        assert row["industry"] == "Jane"


class TestRegistryWorkflow:
    """Test the two-stage company/owner workflow"""

    @pytest.fixture
    def workflow_store(self, store):
        store.set_workflow("v1", "companies", WorkflowConfig(company_name_column="company_name"))
        return store

    @pytest.mark.asyncio
    async def test_company_stage_marks_done(self, workflow_store, enrichment):
        enrichment.registry.run_company_enrichment = AsyncMock(
            return_value=CompanyEnrichmentResult(resolved_company_id="HRB 1", company_updates={"company_id": "HRB 1"})
        )

        report = await enrichment.run_registry_workflow("v1", "companies", "company", ["c1"])

        row = workflow_store.get_row("v1", "companies", "c1")
        assert report.succeeded == 1
        assert row["company_id"] == "HRB 1"
        assert row["company_enrichment_status"] == "Done"

    @pytest.mark.asyncio
    async def test_company_stage_error_status(self, workflow_store, enrichment):
        enrichment.registry.run_company_enrichment = AsyncMock(
            return_value=CompanyEnrichmentResult(error="Company not found")
        )

        report = await enrichment.run_registry_workflow("v1", "companies", "company", ["c1"])

        assert report.failed == 1
        assert workflow_store.get_row("v1", "companies", "c1")["company_enrichment_status"] == "Error"

    @pytest.mark.asyncio
    async def test_owner_stage_appends_persons_once(self, workflow_store, enrichment):
        person = EnrichedPerson(full_name="Jane Doe", first_name="Jane", last_name="Doe", role="Managing Director",
                                type="director", company_name="Acme", company_id="HRB 1")
        enrichment.registry.run_owner_enrichment = AsyncMock(
            return_value=OwnerEnrichmentResult(persons=[person, person.model_copy(update={"full_name": "jane  doe"})])
        )

        await enrichment.run_registry_workflow("v1", "companies", "owner", ["c1"])
        await enrichment.run_registry_workflow("v1", "companies", "owner", ["c1"])

        persons = next(s for s in workflow_store.get_vertical("v1").sheets if s.name == "Persons")
        assert len(persons.rows) == 1
        assert persons.rows[0]["full_name"] == "Jane Doe"

    @pytest.mark.asyncio
    async def test_error_status_after_sheet_deleted(self, workflow_store, enrichment):
        async def lookup(row, workflow, token):
            workflow_store.delete_sheet("v1", "companies")
            return CompanyEnrichmentResult(error="Company not found")

        enrichment.registry.run_company_enrichment = AsyncMock(side_effect=lookup)

        report = await enrichment.run_registry_workflow("v1", "companies", "company", ["c1"])

        assert report.failed == 1
        assert workflow_store.get_vertical("v1").get_sheet("companies") is None

    @pytest.mark.asyncio
    async def test_unknown_stage(self, workflow_store, enrichment):
        with pytest.raises(ValueError):
            await enrichment.run_registry_workflow("v1", "companies", "billing")


class TestAutoTrigger:
    """Test reactive runs on row creation and cell changes"""

    @pytest.mark.asyncio
    async def test_new_row_runs_agents(self, store, enrichment, ai_service, deployed, agent):
        store.set_auto_update("v1", "companies", True)

        row = store.add_row("v1", "companies", {"company_name": "Initech"})
        await enrichment.wait_for_auto_triggers()

        assert ai_service.run_agent.await_count == 1
        assert store.get_row("v1", "companies", row["id"])[deployed.id] != ""

    @pytest.mark.asyncio
    async def test_input_change_runs_agents(self, store, enrichment, ai_service, deployed, agent):
        store.set_auto_update("v1", "companies", True)

        store.update_cell("v1", "companies", "c1", "company_name", "Acme Corp")
        store.update_cell("v1", "companies", "c1", "email", "new@x.com")
        await enrichment.wait_for_auto_triggers()

        assert ai_service.run_agent.await_count == 1

    @pytest.mark.asyncio
    async def test_suppressed_while_batch_running(self, store, enrichment, ai_service, deployed, agent):
        store.set_auto_update("v1", "companies", True)
        token = store.begin_batch("companies")

        store.add_row("v1", "companies", {"company_name": "Initech"})
        await enrichment.wait_for_auto_triggers()
        store.end_batch(token)

        ai_service.run_agent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_auto_update(self, store, enrichment, ai_service, deployed, agent):
        store.add_row("v1", "companies", {"company_name": "Initech"})
        await enrichment.wait_for_auto_triggers()
        ai_service.run_agent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_auto_runs_workflow_stage(self, store, enrichment):
        store.set_workflow("v1", "companies", WorkflowConfig(owner_auto_enrich=True))
        store.add_column("v1", "companies", "Owner Enrichment", column_id="owner_enrichment_status")
        enrichment.registry.run_owner_enrichment = AsyncMock(return_value=OwnerEnrichmentResult())

        store.update_cell("v1", "companies", "c1", "owner_enrichment_status", "Auto")
        await enrichment.wait_for_auto_triggers()

        enrichment.registry.run_owner_enrichment.assert_awaited_once()
        assert store.get_row("v1", "companies", "c1")["owner_enrichment_status"] == "Done"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
