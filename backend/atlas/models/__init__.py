"""Models package"""
from atlas.models.grid import (
    AgentConfig,
    AgentProvider,
    AgentType,
    ColumnDefinition,
    ColumnType,
    DeduplicationConfig,
    HttpAuthConfig,
    HttpAuthType,
    HttpMethod,
    HttpRequestConfig,
    LinkedColumn,
    Notification,
    SelectOption,
    SheetTab,
    Vertical,
    WorkflowConfig,
)
from atlas.models.enrichment_job import BatchReport, EnrichmentKind, RowJobStatus
from atlas.models.records import VerticalRecord, SheetRecord, RowRecord

__all__ = [
    "AgentConfig",
    "AgentProvider",
    "AgentType",
    "ColumnDefinition",
    "ColumnType",
    "DeduplicationConfig",
    "HttpAuthConfig",
    "HttpAuthType",
    "HttpMethod",
    "HttpRequestConfig",
    "LinkedColumn",
    "Notification",
    "SelectOption",
    "SheetTab",
    "Vertical",
    "WorkflowConfig",
    "BatchReport",
    "EnrichmentKind",
    "RowJobStatus",
    "VerticalRecord",
    "SheetRecord",
    "RowRecord",
]
