"""MCP server implementation using fastmcp"""

import asyncio
import logging

from fastmcp import FastMCP
from fastmcp.exceptions import McpError
from mcp.types import ErrorData
from pydantic import ValidationError
from starlette.responses import JSONResponse

from knowledge_pipeline.config import config
from knowledge_pipeline.exceptions import (
    AgentNotFoundError,
    DuplicateSourceError,
    SourceLimitExceededError,
    SourceNotFoundError,
    UnsupportedProviderError,
)
from knowledge_pipeline.models.extraction import PageSummary
from knowledge_pipeline.models.knowledge import Agent, KnowledgeSource
from knowledge_pipeline.models.query import QueryType, RetrievalQuery
from knowledge_pipeline.models.search_result import (
    AgentKnowledgeStats,
    RelevantChunk,
    RetrievalOutput,
)
from knowledge_pipeline.models.sync_result import SourceStatus, SyncRunResult
from knowledge_pipeline.services.knowledge_api import KnowledgeAPI

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

mcp = FastMCP(name="agent-knowledge", version="1.0.0")

# Initialized on first request
_api: KnowledgeAPI | None = None
_api_lock = asyncio.Lock()

INVALID_PARAMS = -32602
NOT_FOUND = -32002
INTERNAL_ERROR = -32603


async def _get_api() -> KnowledgeAPI:
    """Get or initialize the knowledge API"""
    global _api

    async with _api_lock:
        if _api is None:
            api = KnowledgeAPI.create()
            await api.initialize()
            if not await api.store.health_check():
                raise McpError(
                    ErrorData(code=INTERNAL_ERROR, message="Knowledge database is not available")
                )
            _api = api
    return _api


def _to_mcp_error(error: Exception) -> McpError:
    if isinstance(error, McpError):
        return error
    if isinstance(error, AgentNotFoundError | SourceNotFoundError):
        return McpError(ErrorData(code=NOT_FOUND, message=str(error)))
    if isinstance(
        error,
        DuplicateSourceError
        | SourceLimitExceededError
        | UnsupportedProviderError
        | ValidationError
        | ValueError,
    ):
        return McpError(ErrorData(code=INVALID_PARAMS, message=str(error)))
    logger.error(f"Knowledge tool failed: {error}", exc_info=True)
    return McpError(ErrorData(code=INTERNAL_ERROR, message=f"Operation failed: {error}"))


@mcp.tool()
async def register_agent(agent_id: str, name: str = "") -> Agent:
    """Register an agent so knowledge sources can be attached to it

    Args:
        agent_id: Agent identifier from the host application
        name: Display name of the agent
    """
    try:
        api = await _get_api()
        return await api.register_agent(agent_id, name)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def add_knowledge_source(
    agent_id: str,
    provider: str,
    external_id: str,
    name: str,
    connection_ref: str | None = None,
    sync: bool = True,
) -> KnowledgeSource:
    """Attach an external document to an agent's knowledge

    Args:
        agent_id: Agent that owns the knowledge
        provider: Content provider (page or file_upload)
        external_id: Provider document id (page id, or path under the upload directory)
        name: Display name of the source
        connection_ref: Reference to provider credentials
        sync: Run the first sync immediately (default: true)
    """
    try:
        api = await _get_api()
        if sync:
            source, _ = await api.add_and_sync_knowledge_source(
                agent_id, provider, external_id, name, connection_ref
            )
            return source
        return await api.add_knowledge_source(
            agent_id, provider, external_id, name, connection_ref
        )
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def remove_knowledge_source(agent_id: str, source_id: str) -> dict[str, bool]:
    """Remove a knowledge source and everything indexed from it

    Args:
        agent_id: Agent that owns the source
        source_id: Knowledge source id
    """
    try:
        api = await _get_api()
        return {"removed": await api.remove_knowledge_source(agent_id, source_id)}
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def list_knowledge_sources(agent_id: str) -> list[KnowledgeSource]:
    """List an agent's knowledge sources, newest first

    Args:
        agent_id: Agent identifier
    """
    try:
        api = await _get_api()
        return await api.get_agent_knowledge_sources(agent_id)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def list_provider_pages(
    connection_ref: str | None = None, query: str | None = None
) -> list[PageSummary]:
    """List pages a page provider connection can read

    Args:
        connection_ref: Reference to provider credentials (default token if omitted)
        query: Optional title filter
    """
    try:
        api = await _get_api()
        return await api.list_provider_pages(connection_ref, query)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def get_knowledge_source_status(source_id: str) -> SourceStatus:
    """Show sync status, last error and counts of a knowledge source

    Args:
        source_id: Knowledge source id
    """
    try:
        api = await _get_api()
        return await api.get_knowledge_source_status(source_id)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def resync_knowledge_source(source_id: str, force: bool = False) -> SyncRunResult:
    """Re-fetch a knowledge source and re-index it if it changed

    Args:
        source_id: Knowledge source id
        force: Re-index even when content is unchanged
    """
    try:
        api = await _get_api()
        return await api.resync_knowledge_source(source_id, force=force)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def get_agent_knowledge_stats(agent_id: str) -> AgentKnowledgeStats:
    """Source, document and chunk counts of an agent's knowledge

    Args:
        agent_id: Agent identifier
    """
    try:
        api = await _get_api()
        return await api.get_agent_knowledge_stats(agent_id)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def search_knowledge(
    agent_id: str,
    query: str,
    limit: int = 5,
    query_type: str = "semantic",
    min_score: float | None = None,
    source_ids: list[str] | None = None,
) -> RetrievalOutput:
    """Search an agent's knowledge and return scored chunks with citations

    Args:
        agent_id: Agent whose knowledge is searched
        query: Search query (natural language question or keywords)
        limit: Maximum number of results to return (1-50, default: 5)
        query_type: Type of search (semantic, keyword, hybrid, default: semantic)
        min_score: Minimum cosine similarity for semantic results
        source_ids: Restrict the search to these sources
    """
    try:
        qt = QueryType(query_type)
    except ValueError as e:
        raise McpError(
            ErrorData(
                code=INVALID_PARAMS,
                message=f"Invalid query_type: {query_type}. Must be: semantic, keyword, or hybrid",
            )
        ) from e

    try:
        query_obj = RetrievalQuery(
            agent_id=agent_id,
            text=query,
            limit=limit,
            query_type=qt,
            min_score=min_score,
            source_ids=source_ids,
        )
        api = await _get_api()
        return await api.search(query_obj)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.tool()
async def retrieve_relevant_chunks(
    agent_id: str, query: str, k: int = 5, min_score: float | None = None
) -> list[RelevantChunk]:
    """Top-k passages of an agent's knowledge for a conversation turn

    Args:
        agent_id: Agent whose knowledge is searched
        query: The user's message or a question derived from it
        k: Number of passages (default: 5)
        min_score: Minimum cosine similarity
    """
    try:
        api = await _get_api()
        return await api.retrieve_relevant_chunks(agent_id, query, k, min_score)
    except Exception as e:
        raise _to_mcp_error(e) from e


@mcp.custom_route("/", methods=["GET"])
@mcp.custom_route("/health", methods=["GET"])
def health_check(request):
    return JSONResponse({"status": "ok"})


def main() -> None:
    """Entry point for the MCP server"""
    mcp.run(transport="streamable-http", host="0.0.0.0", port=config.mcp_port)


if __name__ == "__main__":
    main()
