"""Retrieval result and knowledge statistics models"""

from datetime import datetime

from pydantic import BaseModel, Field

from knowledge_pipeline.models.knowledge import DocumentChunk, SyncStatus


class SearchMetadata(BaseModel):
    """Where a retrieved chunk came from"""

    source_id: str = Field(description="Knowledge source of the chunk")
    source_name: str = Field(description="Display name of the source")
    document_title: str = Field(description="Title of the document snapshot")
    source_url: str | None = Field(default=None, description="Link to the original document")
    breadcrumb: list[str] = Field(
        default_factory=list,
        description="Heading trail of the chunk (e.g., ['Nutrition', 'Protein'])",
    )
    match_type: str = Field(description="How this result matched (semantic, keyword, hybrid)")


class SearchResult(BaseModel):
    """Chunk returned in response to a retrieval query"""

    chunk: DocumentChunk = Field(description="The matching chunk")
    score: float = Field(description="Relevance score, higher is better")
    rank: int = Field(ge=1, description="Position in result list (1-indexed)")
    metadata: SearchMetadata = Field(description="Additional context and source information")


class QueryInfo(BaseModel):
    """Metadata about the query execution"""

    original_query: str = Field(description="The query that was executed")
    total_results: int = Field(ge=0, description="Number of results returned")
    query_time_ms: float = Field(ge=0.0, description="Query execution time in milliseconds")


class RetrievalOutput(BaseModel):
    """Complete output of a retrieval query"""

    results: list[SearchResult] = Field(description="List of search results")
    query_info: QueryInfo = Field(description="Metadata about the query")


class RelevantChunk(BaseModel):
    """Flat chunk view handed to the chat loop for prompt augmentation"""

    chunk_text: str
    score: float
    heading: str | None = None
    document_title: str | None = None
    source_name: str | None = None


class SourceStats(BaseModel):
    """Per-source counts shown on knowledge dashboards"""

    id: str
    name: str
    document_count: int = Field(ge=0)
    chunk_count: int = Field(ge=0)
    last_sync_at: datetime | None = None
    status: SyncStatus


class AgentKnowledgeStats(BaseModel):
    """Aggregate knowledge counts for one agent"""

    source_count: int = Field(ge=0)
    document_count: int = Field(ge=0)
    chunk_count: int = Field(ge=0)
    sources: list[SourceStats] = Field(default_factory=list)
