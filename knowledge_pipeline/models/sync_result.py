"""Sync run and source status models"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from knowledge_pipeline.models.knowledge import DocumentStatus, SyncStatus


class SyncOutcome(str, Enum):
    """How a sync run ended

    PARTIAL is part of the reported vocabulary for clients. A source holds a
    single document, so runs here end as SUCCESS, UNCHANGED or FAILURE.
    """

    SUCCESS = "success"
    UNCHANGED = "unchanged"
    PARTIAL = "partial"
    FAILURE = "failure"


class SyncRunResult(BaseModel):
    """Result of one resync of a knowledge source"""

    source_id: str = Field(description="Source that was synced")
    success: bool = Field(description="Whether the sync succeeded")
    outcome: SyncOutcome = Field(description="How the sync ended")
    documents_processed: int = Field(default=0, ge=0, description="Documents re-chunked")
    chunks_created: int = Field(default=0, ge=0, description="Chunks written by this run")
    errors: list[str] = Field(default_factory=list, description="Error messages")
    started_at: datetime = Field(description="When the sync started")
    finished_at: datetime = Field(description="When the sync ended")
    duration_seconds: float = Field(ge=0.0, description="Duration in seconds")


class SourceStatus(BaseModel):
    """Read-only projection of a knowledge source for operators"""

    id: str
    name: str
    status: SyncStatus
    last_sync_at: datetime | None = None
    error: str | None = None
    document_count: int = Field(ge=0, le=1, description="0 before the first successful sync")
    chunk_count: int = Field(ge=0)
    document_title: str | None = None
    document_status: DocumentStatus | None = None
