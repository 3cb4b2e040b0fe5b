"""Pydantic records exchanged by the work stores and the tracking engine."""

import enum
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkStatus(str, enum.Enum):
    WAITING = "wait"
    IN_PROGRESS = "progress"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {WorkStatus.WAITING: 0, WorkStatus.IN_PROGRESS: 1, WorkStatus.COMPLETE: 2}


class ConnectorType(str, enum.Enum):
    EXTERNAL_IMPORT = "EXTERNAL_IMPORT"
    INTERNAL_IMPORT_FILE = "INTERNAL_IMPORT_FILE"
    INTERNAL_ENRICHMENT = "INTERNAL_ENRICHMENT"
    INTERNAL_EXPORT_FILE = "INTERNAL_EXPORT_FILE"
    STREAM = "STREAM"


class Connector(BaseModel):
    id: str
    connector_type: ConnectorType
    name: str = ""


class UserContext(BaseModel):
    id: str
    name: Optional[str] = None


class WorkMessage(BaseModel):
    timestamp: datetime
    message: Optional[str] = None
    source: Optional[str] = None  # worker that reported an error

    def to_storage(self) -> dict:
        data = {"timestamp": self.timestamp.isoformat(), "message": self.message}
        if self.source is not None:
            data["source"] = self.source
        return data


class WorkRecord(BaseModel):
    """A job as persisted in the work store."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime
    name: Optional[str] = None
    event_type: ConnectorType
    event_source_id: Optional[str] = None
    user_id: Optional[str] = None
    connector_id: str
    status: WorkStatus = WorkStatus.WAITING
    received_time: Optional[datetime] = None
    processed_time: Optional[datetime] = None
    completed_time: Optional[datetime] = None
    completed_number: int = 0
    messages: List[WorkMessage] = Field(default_factory=list)
    errors: List[WorkMessage] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
    version: int = 0


class CounterState(BaseModel):
    expected: int = 0
    processed: int = 0

    @property
    def is_complete(self) -> bool:
        return self.processed == self.expected


class CompletionState(BaseModel):
    """Outcome of one atomic processed-count increment."""
    is_complete: bool
    total: int


class ErrorData(BaseModel):
    error: str
    source: Optional[str] = None


class ExportProgressMeta(BaseModel):
    messages: List[WorkMessage] = Field(default_factory=list)
    errors: List[WorkMessage] = Field(default_factory=list)


class ExportProgressFile(BaseModel):
    id: str
    name: str
    size: int = 0
    last_modified: Optional[datetime] = None
    last_modified_since_min: Optional[int] = None
    upload_status: WorkStatus
    meta_data: ExportProgressMeta


class WorkFilter(BaseModel):
    key: str
    values: List[Any]
    operator: str = "eq"  # "eq" matches any of values, "lte" compares with values[0]
