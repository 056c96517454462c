"""Enrichment batch status and report models"""
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
import enum


class RowJobStatus(str, enum.Enum):
    """Per-row status within a batch; every terminal state is final"""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class EnrichmentKind(str, enum.Enum):
    AGENT = "agent"
    HTTP_REQUEST = "http_request"
    REGISTRY_COMPANY = "registry_company"
    REGISTRY_OWNER = "registry_owner"


class BatchReport(BaseModel):
    """Outcome of a completed (not cancelled) enrichment batch"""
    kind: EnrichmentKind
    sheet_id: str
    target_column_id: Optional[str] = None
    total: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    row_status: Dict[str, RowJobStatus] = Field(default_factory=dict)
    errors: List[Dict[str, str]] = Field(default_factory=list)

    @property
    def success_percentage(self) -> float:
        """Share of attempted rows that succeeded"""
        if self.attempted == 0:
            return 0.0
        return (self.succeeded / self.attempted) * 100
