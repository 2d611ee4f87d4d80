"""Data models for the knowledge pipeline"""

from knowledge_pipeline.models.extraction import ExtractedContent
from knowledge_pipeline.models.knowledge import (
    Agent,
    Document,
    DocumentChunk,
    DocumentStatus,
    KnowledgeSource,
    SourceProvider,
    SyncStatus,
)
from knowledge_pipeline.models.query import QueryType, RetrievalQuery
from knowledge_pipeline.models.search_result import (
    AgentKnowledgeStats,
    QueryInfo,
    RelevantChunk,
    RetrievalOutput,
    SearchMetadata,
    SearchResult,
    SourceStats,
)
from knowledge_pipeline.models.sync_result import SourceStatus, SyncOutcome, SyncRunResult

__all__ = [
    "Agent",
    "AgentKnowledgeStats",
    "Document",
    "DocumentChunk",
    "DocumentStatus",
    "ExtractedContent",
    "KnowledgeSource",
    "QueryInfo",
    "QueryType",
    "RelevantChunk",
    "RetrievalOutput",
    "RetrievalQuery",
    "SearchMetadata",
    "SearchResult",
    "SourceProvider",
    "SourceStats",
    "SourceStatus",
    "SyncOutcome",
    "SyncRunResult",
    "SyncStatus",
]
