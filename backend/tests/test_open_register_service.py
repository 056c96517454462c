"""
Tests for the company registry workflow helpers and service
"""

import pytest
from datetime import date
from unittest.mock import AsyncMock, Mock

from atlas.core.exceptions import OpenRegisterError
from atlas.models.grid import WorkflowConfig
from atlas.services.open_register_service import (
    AG_OWNERSHIP,
    EnrichedPerson,
    OpenRegisterService,
    calculate_age,
    merge_persons,
    normalize_name,
    resolve_ownership_structure,
    split_name,
)


COMPANY = {
    "name": {"name": "Acme GmbH"},
    "legal_form": "gmbh",
    "contact": {"website_url": "https://acme.de"},
    "address": {"street": "Hauptstr. 1", "postal_code": "10115", "city": "Berlin"},
    "indicators": [{"employees": 120, "net_income": 50000.0, "date": "2024-12-31"}],
    "register": {"company_id": "DE-HRB-1"},
    "representation": [
        {"name": "Jane Doe", "role": "DIRECTOR", "type": "natural_person", "end_date": None,
         "natural_person": {"date_of_birth": "1980-06-15"}},
        {"name": "Old Boss", "role": "DIRECTOR", "end_date": "2020-01-01"},
        {"name": "Paul Prok", "role": "Prokurist", "end_date": None},
    ],
}

OWNERS = {
    "owners": [
        {"type": "natural_person", "natural_person": {"full_name": "Jane Doe"}, "percentage_share": 60},
        {"type": "legal_person", "legal_person": {"name": "Holding AG"}, "percentage_share": 40},
    ]
}


class TestHelpers:
    """Test name, age and ownership helpers"""

    def test_calculate_age(self):
        assert calculate_age("1980-06-15", today=date(2024, 6, 14)) == 43
        assert calculate_age("1980-06-15", today=date(2024, 6, 15)) == 44
        assert calculate_age("not a date") is None
        assert calculate_age(None) is None

    def test_split_name_keeps_particles(self):
        assert split_name("Ursula von der Leyen") == {"first_name": "Ursula", "last_name": "von der Leyen"}
        assert split_name("Jane Doe") == {"first_name": "Jane", "last_name": "Doe"}
        assert split_name("") == {"first_name": "", "last_name": ""}

    def test_normalize_name(self):
        assert normalize_name("  Jürgen   Müller ") == "jurgen muller"
        assert normalize_name("Jose  Álvarez") == "jose alvarez"

    def test_ownership_structure(self):
        assert resolve_ownership_structure([]) == "No Owners"
        assert resolve_ownership_structure(OWNERS["owners"]) == "Legal/Natural Person"
        assert resolve_ownership_structure([{"type": "legal_person"}]) == "Legal Person"

    def test_merge_persons_joins_roles(self):
        director = EnrichedPerson(full_name="Jane Doe", role="Managing Director", age=44)
        owner = EnrichedPerson(full_name="jane doe", role="Owner", percentage_share=60)
        merged = merge_persons([director], [owner])
        assert len(merged) == 1
        assert merged[0].role == "Managing Director & Owner"
        assert merged[0].percentage_share == 60
        assert merged[0].age == 44


class TestOpenRegisterService:
    """Test the two workflow stages against a stubbed API"""

    @pytest.fixture
    def service(self):
        return OpenRegisterService(api_key="test-key", base_url="https://registry.test", session=Mock())

    @pytest.fixture
    def workflow(self):
        return WorkflowConfig()

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        service = OpenRegisterService(api_key="", session=Mock())
        with pytest.raises(OpenRegisterError):
            await service.get_company_details("x")

    @pytest.mark.asyncio
    async def test_get_sends_authorization(self, service):
        response = Mock(ok=True, status_code=200, headers={"content-type": "application/json"})
        response.json.return_value = {"id": "c1"}
        service.session.get.return_value = response

        assert await service.get_company_details("DE HRB/1") == {"id": "c1"}
        args, kwargs = service.session.get.call_args
        assert args[0] == "https://registry.test/v1/company/DE%20HRB%2F1"
        assert kwargs["headers"]["Authorization"] == "test-key"

    @pytest.mark.asyncio
    async def test_resolve_prefers_direct_id(self, service, workflow):
        service.lookup_by_website = AsyncMock()
        row = {"id": "r1", "company_id": "HRB 9", "website": "acme.de"}
        assert await service.resolve_company_id(row, workflow) == "HRB 9"
        service.lookup_by_website.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resolve_falls_back_to_name_search(self, service, workflow):
        service.lookup_by_website = AsyncMock(side_effect=OpenRegisterError("404"))
        service.search_company = AsyncMock(return_value={"results": [{"company_id": "HRB 7"}]})
        row = {"id": "r1", "website": "acme.de", "company_name": "Acme"}
        assert await service.resolve_company_id(row, workflow) == "HRB 7"

    @pytest.mark.asyncio
    async def test_company_stage(self, service, workflow):
        service.lookup_by_website = AsyncMock(return_value={"company_id": "HRB 1"})
        service.get_company_details = AsyncMock(return_value=COMPANY)

        result = await service.run_company_enrichment({"id": "r1", "website": "acme.de"}, workflow)

        assert result.error is None
        assert result.resolved_company_id == "HRB 1"
        assert result.company_updates["company_name"] == "Acme GmbH"
        assert result.company_updates["employees"] == "120"
        assert result.company_updates["net_income"] == "50000"
        assert result.company_updates["address_city"] == "Berlin"

    @pytest.mark.asyncio
    async def test_company_stage_unresolved(self, service, workflow):
        result = await service.run_company_enrichment({"id": "r1"}, workflow)
        assert result.error.startswith("Could not resolve company")

    @pytest.mark.asyncio
    async def test_owner_stage_requires_company_id(self, service, workflow):
        result = await service.run_owner_enrichment({"id": "r1"}, workflow)
        assert result.error == "No company_id available. Run Company Enrichment first."

    @pytest.mark.asyncio
    async def test_owner_stage_merges_directors_and_owners(self, service, workflow):
        service.get_company_details = AsyncMock(return_value=COMPANY)
        service.get_company_owners = AsyncMock(return_value=OWNERS)

        result = await service.run_owner_enrichment({"id": "r1", "company_id": "HRB 1"}, workflow)

        service.get_company_owners.assert_awaited_once_with("DE-HRB-1")
        names = {p.full_name: p for p in result.persons}
        assert set(names) == {"Jane Doe", "Holding AG"}
        assert names["Jane Doe"].role == "Managing Director & Owner"
        assert names["Jane Doe"].percentage_share == 60
        assert names["Jane Doe"].company_name == "Acme GmbH"
        assert result.ownership_structure == "Legal/Natural Person"

    @pytest.mark.asyncio
    async def test_owner_stage_keeps_prokurist_when_asked(self, service):
        service.get_company_details = AsyncMock(return_value=COMPANY)
        service.get_company_owners = AsyncMock(return_value={"owners": []})

        result = await service.run_owner_enrichment(
            {"id": "r1", "company_id": "HRB 1"}, WorkflowConfig(include_prokurist=True)
        )

        assert "Paul Prok" in {p.full_name for p in result.persons}

    @pytest.mark.asyncio
    async def test_owner_stage_skips_owners_for_ag(self, service, workflow):
        service.get_company_details = AsyncMock(return_value={**COMPANY, "legal_form": "AG"})
        service.get_company_owners = AsyncMock()

        result = await service.run_owner_enrichment({"id": "r1", "company_id": "HRB 1"}, workflow)

        service.get_company_owners.assert_not_awaited()
        assert result.ownership_structure == AG_OWNERSHIP
        assert [p.full_name for p in result.persons] == ["Jane Doe"]

    @pytest.mark.asyncio
    async def test_owner_fetch_failure_is_recorded(self, service, workflow):
        service.get_company_details = AsyncMock(return_value=COMPANY)
        service.get_company_owners = AsyncMock(side_effect=OpenRegisterError("500"))

        result = await service.run_owner_enrichment({"id": "r1", "company_id": "HRB 1"}, workflow)

        assert result.error is None
        assert result.company_updates["ownership_structure"] == "Error fetching owners"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
