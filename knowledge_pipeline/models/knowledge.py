"""Knowledge base data models: agents, sources, documents and chunks"""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


class SourceProvider(str, Enum):
    """Where a knowledge source's content comes from"""

    PAGE = "page"
    FILE_UPLOAD = "file_upload"


class SyncStatus(str, Enum):
    """Status of the last sync run of a knowledge source"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentStatus(str, Enum):
    """Processing status of a document snapshot"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(UTC)


class Agent(BaseModel):
    """Conversational agent that owns knowledge sources"""

    id: str = Field(min_length=1, description="Agent identifier from the host application")
    name: str = Field(default="", description="Display name")
    created_at: datetime = Field(default_factory=_now)


class KnowledgeSource(BaseModel):
    """One external document registered against one agent"""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Unique identifier (UUID)")
    agent_id: str = Field(min_length=1, description="Owning agent")
    provider: SourceProvider = Field(description="Content provider")
    external_id: str = Field(min_length=1, description="Provider-native document identifier")
    name: str = Field(min_length=1, max_length=255, description="Display name")
    connection_ref: str | None = Field(
        default=None, description="Reference to provider credentials, if the provider needs auth"
    )
    created_at: datetime = Field(default_factory=_now)
    last_sync_at: datetime | None = Field(default=None, description="When the last sync finished")
    last_sync_status: SyncStatus = Field(default=SyncStatus.PENDING)
    last_sync_error: str | None = Field(default=None, description="Errors from the last sync")


class Document(BaseModel):
    """Extracted content snapshot of a source (at most one current per source)"""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Unique identifier (UUID)")
    source_id: str = Field(description="Owning knowledge source")
    title: str = Field(default="Untitled", description="Document title from the extractor")
    url: str | None = Field(default=None, description="Link to the original document")
    content_hash: str = Field(
        min_length=64, max_length=64, description="SHA256 of the extracted text"
    )
    content_length: int = Field(ge=0, description="Length of the extracted text in characters")
    extracted_at: datetime = Field(default_factory=_now)
    status: DocumentStatus = Field(default=DocumentStatus.PENDING)
    error_message: str | None = Field(default=None)


class DocumentChunk(BaseModel):
    """A retrieval-sized slice of a document's text"""

    id: str = Field(
        default_factory=lambda: str(uuid4()), description="Unique identifier (UUID format)"
    )
    document_id: str = Field(description="Owning document")
    source_id: str = Field(description="Owning knowledge source")
    chunk_position: int = Field(ge=0, description="Ordinal within the document (0-indexed)")
    content: str = Field(min_length=1, description="Raw slice of the document, overlap included")
    context_header: str | None = Field(
        default=None, description="Heading trail in effect at the start of the chunk"
    )
    char_start: int = Field(ge=0, description="Start offset in the document text (inclusive)")
    char_end: int = Field(gt=0, description="End offset in the document text (exclusive)")
    overlap_chars: int = Field(
        default=0, ge=0, description="Leading characters repeated from the previous chunk"
    )
    token_count: int = Field(gt=0, description="Number of tokens in content")
    embedding: list[float] | None = Field(
        default=None, exclude=True, description="Vector for content with its context header"
    )
    created_at: datetime = Field(default_factory=_now)

    @field_validator("id")
    @classmethod
    def validate_uuid(cls, v: str) -> str:
        """Validate that id is a valid UUID"""
        try:
            UUID(v)
        except ValueError as e:
            raise ValueError(f"Invalid UUID format: {v}") from e
        return v

    @property
    def new_content(self) -> str:
        """Content without the overlap carried from the previous chunk"""
        return self.content[self.overlap_chars :]

    @property
    def embedding_text(self) -> str:
        """Text sent to the embedding model"""
        if self.context_header and self.context_header.lower() not in self.content.lower():
            return f"[Context: {self.context_header}]\n\n{self.content}"
        return self.content
