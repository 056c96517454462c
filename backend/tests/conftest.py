"""Shared fixtures for grid tests"""
import pytest

from atlas.models.grid import AgentConfig, AgentType, ColumnDefinition, LinkedColumn, SheetTab, Vertical
from atlas.services.grid_store import GridStore


@pytest.fixture
def companies_sheet():
    return SheetTab(
        id="companies",
        name="Companies",
        columns=[
            ColumnDefinition(id="company_name", header="Company"),
            ColumnDefinition(id="email", header="Email"),
            ColumnDefinition(id="industry", header="Industry"),
            ColumnDefinition(id="summary", header="Summary", formula="'/company_name - /industry'"),
        ],
        rows=[
            {"id": "c1", "company_name": "Acme", "email": "a@x.com", "industry": "IT", "summary": ""},
            {"id": "c2", "company_name": "Globex", "email": "b@x.com", "industry": "Energy", "summary": ""},
        ],
    )


@pytest.fixture
def contacts_sheet():
    return SheetTab(
        id="contacts",
        name="Contacts",
        columns=[
            ColumnDefinition(id="person", header="Person"),
            ColumnDefinition(id="company_ref", header="Company Ref"),
            ColumnDefinition(
                id="industry",
                header="Industry",
                linked_column=LinkedColumn(
                    source_sheet_id="companies",
                    source_column_id="industry",
                    match_column_id="company_ref",
                    source_match_column_id="company_name",
                ),
            ),
        ],
        rows=[
            {"id": "p1", "person": "Ada", "company_ref": "Acme", "industry": ""},
            {"id": "p2", "person": "Bob", "company_ref": "Initech", "industry": ""},
        ],
    )


@pytest.fixture
def vertical(companies_sheet, contacts_sheet):
    return Vertical(id="v1", name="Leads", sheets=[companies_sheet, contacts_sheet])


@pytest.fixture
def store(vertical):
    grid = GridStore([vertical], persistence=None)
    grid.recalc_sheet("v1", "companies")
    grid.recalc_sheet("v1", "contacts")
    return grid


@pytest.fixture
def agent():
    return AgentConfig(
        id="agent-1",
        name="Researcher",
        type=AgentType.CONTENT_CREATION,
        prompt="Describe /company_name",
        inputs=["company_name"],
        outputs=["description"],
        output_column_name="Research",
    )
