"""Retrieval request models"""

from enum import Enum

from pydantic import BaseModel, Field


class QueryType(str, Enum):
    """Type of search to perform"""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class RetrievalQuery(BaseModel):
    """Request for knowledge relevant to a conversation turn"""

    agent_id: str = Field(min_length=1, description="Agent whose knowledge is searched")
    text: str = Field(min_length=1, description="The query string (natural language or keywords)")
    limit: int = Field(default=5, ge=1, le=50, description="Maximum number of results to return")
    min_score: float | None = Field(
        default=None,
        ge=-1.0,
        le=1.0,
        description="Minimum cosine similarity (None uses the configured default)",
    )
    query_type: QueryType = Field(
        default=QueryType.SEMANTIC, description="Type of search to perform"
    )
    source_ids: list[str] | None = Field(
        default=None, description="Restrict the search to these knowledge sources"
    )
