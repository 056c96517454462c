"""Grid domain models: verticals, sheets, columns and enrichment configs"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union
import enum

CellValue = Union[str, int, float, bool, None]
Row = Dict[str, Any]

# Reserved row key; present on every row and usable as a link match key
ROW_ID_KEY = "id"


class ColumnType(str, enum.Enum):
    """Column type enumeration"""
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    SELECT = "SELECT"
    FORMULA = "FORMULA"
    ENRICHMENT = "ENRICHMENT"
    HTTP = "HTTP"
    URL = "URL"
    EMAIL = "EMAIL"


class AgentType(str, enum.Enum):
    """What an agent does with its prompt"""
    GOOGLE_SEARCH = "GOOGLE_SEARCH"
    WEB_SEARCH = "WEB_SEARCH"
    CONTENT_CREATION = "CONTENT_CREATION"


class AgentProvider(str, enum.Enum):
    """LLM provider backing an agent"""
    GOOGLE = "GOOGLE"
    OPENAI = "OPENAI"
    ANTHROPIC = "ANTHROPIC"


class HttpMethod(str, enum.Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class HttpAuthType(str, enum.Enum):
    NONE = "NONE"
    API_KEY = "API_KEY"
    BEARER = "BEARER"
    BASIC = "BASIC"


class SelectOption(BaseModel):
    id: str
    label: str
    color: str = "#E5E7EB"


class DeduplicationConfig(BaseModel):
    """Per-column duplicate policy"""
    active: bool = False
    keep: str = "oldest"  # 'oldest' | 'newest'


class LinkedColumn(BaseModel):
    """VLOOKUP-style pointer into another sheet

    For each row, find the first row in the source sheet whose
    source_match_column_id value equals this row's match_column_id value,
    and copy its source_column_id value.
    """
    source_sheet_id: str
    source_column_id: str
    match_column_id: str
    source_match_column_id: str = ROW_ID_KEY


class ColumnDefinition(BaseModel):
    """Column definition within a sheet"""
    id: str
    header: str
    type: ColumnType = ColumnType.TEXT
    width: int = 150
    default_value: Optional[str] = None
    options: Optional[List[SelectOption]] = None
    formula: Optional[str] = None
    linked_column: Optional[LinkedColumn] = None
    connected_agent_id: Optional[str] = None
    connected_http_request_id: Optional[str] = None
    deduplication: Optional[DeduplicationConfig] = None
    hidden: bool = False
    pinned: bool = False


class AgentConfig(BaseModel):
    """AI enrichment agent attached to a sheet"""
    id: str
    name: str
    type: AgentType = AgentType.WEB_SEARCH
    provider: AgentProvider = AgentProvider.GOOGLE
    model_id: Optional[str] = None
    prompt: str = ""
    inputs: List[str] = Field(default_factory=list)
    outputs: List[str] = Field(default_factory=list)
    output_column_name: str = "Enriched Info"
    condition: Optional[str] = None
    rows_to_deploy: Optional[int] = None


class HttpAuthConfig(BaseModel):
    type: HttpAuthType = HttpAuthType.NONE
    api_key_header: Optional[str] = None
    api_key_query_param: Optional[str] = None
    api_key_value: Optional[str] = None
    bearer_token: Optional[str] = None
    basic_user: Optional[str] = None
    basic_password: Optional[str] = None


class HttpRequestConfig(BaseModel):
    """Templated HTTP call run once per row"""
    id: str
    name: str
    url: str
    method: HttpMethod = HttpMethod.GET
    auth: HttpAuthConfig = Field(default_factory=HttpAuthConfig)
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    inputs: List[str] = Field(default_factory=list)
    # JSON path -> column header
    response_mapping: Dict[str, str] = Field(default_factory=dict)
    output_column_name: Optional[str] = None


class WorkflowConfig(BaseModel):
    """Column mapping for the two-stage company/owner registry pipeline"""
    company_id_column: Optional[str] = "company_id"
    website_column: Optional[str] = "website"
    company_name_column: Optional[str] = "company_name"
    company_status_column: str = "company_enrichment_status"
    owner_status_column: str = "owner_enrichment_status"
    company_auto_enrich: bool = False
    owner_auto_enrich: bool = False
    include_prokurist: bool = False


class SheetTab(BaseModel):
    """A sheet: ordered columns, ordered rows and the enrichments attached to it"""
    id: str
    name: str
    description: Optional[str] = None
    color: str = "#3B82F6"
    columns: List[ColumnDefinition] = Field(default_factory=list)
    rows: List[Row] = Field(default_factory=list)
    agents: List[AgentConfig] = Field(default_factory=list)
    http_requests: List[HttpRequestConfig] = Field(default_factory=list)
    workflow: Optional[WorkflowConfig] = None
    auto_update: bool = False

    def get_column(self, column_id: str) -> Optional[ColumnDefinition]:
        return next((c for c in self.columns if c.id == column_id), None)

    def get_column_by_header(self, header: str) -> Optional[ColumnDefinition]:
        return next((c for c in self.columns if c.header == header), None)

    def get_row(self, row_id: str) -> Optional[Row]:
        return next((r for r in self.rows if r.get(ROW_ID_KEY) == row_id), None)

    def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        return next((a for a in self.agents if a.id == agent_id), None)

    def get_http_request(self, request_id: str) -> Optional[HttpRequestConfig]:
        return next((h for h in self.http_requests if h.id == request_id), None)


class Vertical(BaseModel):
    """Top-level workspace grouping of sheets"""
    id: str
    name: str
    color: str = "#3B82F6"
    sheets: List[SheetTab] = Field(default_factory=list)

    def get_sheet(self, sheet_id: str) -> Optional[SheetTab]:
        return next((s for s in self.sheets if s.id == sheet_id), None)


class Notification(BaseModel):
    """User-visible message emitted by the store"""
    message: str
    level: str = "info"  # 'info' | 'success' | 'warning' | 'error'
