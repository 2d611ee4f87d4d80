"""Knowledge API facade used by the agent platform and the MCP server"""

import logging
from typing import Any

from knowledge_pipeline.config import config
from knowledge_pipeline.exceptions import SourceNotFoundError
from knowledge_pipeline.models.extraction import PageSummary
from knowledge_pipeline.models.knowledge import Agent, KnowledgeSource, SourceProvider
from knowledge_pipeline.models.query import QueryType, RetrievalQuery
from knowledge_pipeline.models.search_result import (
    AgentKnowledgeStats,
    RelevantChunk,
    RetrievalOutput,
)
from knowledge_pipeline.models.sync_result import SourceStatus, SyncRunResult
from knowledge_pipeline.services.embedder import Embedder
from knowledge_pipeline.services.extractors import ContentExtractor
from knowledge_pipeline.services.knowledge_sync import KnowledgeSync
from knowledge_pipeline.services.retrieval import RetrievalService
from knowledge_pipeline.services.telemetry import TelemetryService, get_telemetry_service
from knowledge_pipeline.services.vector_store import KnowledgeStore

logger = logging.getLogger(__name__)


class KnowledgeAPI:
    """Entry point for managing agent knowledge and retrieving from it"""

    def __init__(
        self,
        store: KnowledgeStore,
        sync: KnowledgeSync,
        retrieval: RetrievalService,
        telemetry: TelemetryService | None = None,
    ):
        self.store = store
        self.sync = sync
        self.retrieval = retrieval
        self.telemetry = telemetry

    @classmethod
    def create(
        cls,
        db_path: str | None = None,
        extractor: ContentExtractor | None = None,
        embedder: Embedder | None = None,
        telemetry: TelemetryService | None = None,
    ) -> "KnowledgeAPI":
        """
        Wire up the store, sync orchestrator and retrieval service

        The sync and retrieval sides share one embedder so chunks and queries
        are always embedded by the same model.
        """
        store = KnowledgeStore(db_path or config.db_path)
        embedder = embedder or Embedder()
        sync = KnowledgeSync(store, extractor or ContentExtractor(), embedder=embedder)
        retrieval = RetrievalService(store, embedder)
        return cls(store, sync, retrieval, telemetry or get_telemetry_service())

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.sync.extractor.close()
        self.store.close()

    def _record(
        self,
        operation: str,
        parameters: dict[str, Any],
        response: dict[str, Any] | None = None,
        error: Exception | None = None,
        query: str | None = None,
    ) -> None:
        if self.telemetry is not None:
            self.telemetry.log_operation(operation, query, parameters, response, error)

    async def register_agent(self, agent_id: str, name: str = "") -> Agent:
        """Register an agent, or rename it if already known"""
        agent = Agent(id=agent_id, name=name)
        await self.store.upsert_agent(agent)
        return await self.store.get_agent(agent_id) or agent

    async def add_knowledge_source(
        self,
        agent_id: str,
        provider: SourceProvider | str,
        external_id: str,
        name: str,
        connection_ref: str | None = None,
    ) -> KnowledgeSource:
        """
        Register a document as knowledge for an agent (status pending, nothing fetched)

        Raises:
            AgentNotFoundError, DuplicateSourceError, SourceLimitExceededError,
            UnsupportedProviderError
        """
        parameters = {"agent_id": agent_id, "provider": str(provider)}
        try:
            source = await self.sync.add_source(
                agent_id, provider, external_id, name, connection_ref
            )
        except Exception as e:
            self._record("add_knowledge_source", parameters, error=e)
            raise
        self._record("add_knowledge_source", parameters, {"source_id": source.id})
        return source

    async def add_and_sync_knowledge_source(
        self,
        agent_id: str,
        provider: SourceProvider | str,
        external_id: str,
        name: str,
        connection_ref: str | None = None,
    ) -> tuple[KnowledgeSource, SyncRunResult]:
        """Register a document and run its first sync"""
        source = await self.add_knowledge_source(
            agent_id, provider, external_id, name, connection_ref
        )
        result = await self.resync_knowledge_source(source.id)
        refreshed = await self.store.get_source(source.id)
        return refreshed or source, result

    async def remove_knowledge_source(self, agent_id: str, source_id: str) -> bool:
        """
        Remove a source with its document and chunks

        Returns:
            bool: False if the source does not exist or belongs to another agent
        """
        source = await self.store.get_source(source_id)
        if source is None or source.agent_id != agent_id:
            return False

        try:
            await self.sync.remove_source(source_id)
        except SourceNotFoundError:
            # Removed concurrently
            return False

        self._record("remove_knowledge_source", {"agent_id": agent_id, "source_id": source_id})
        return True

    async def get_agent_knowledge_sources(self, agent_id: str) -> list[KnowledgeSource]:
        """Sources of an agent, newest first"""
        return await self.store.list_sources(agent_id)

    async def list_provider_pages(
        self, connection_ref: str | None = None, query: str | None = None
    ) -> list[PageSummary]:
        """
        Pages a provider connection can read, to pick external ids for new sources

        Raises:
            ExtractionFailedError: Missing credentials or the provider search failed
        """
        return await self.sync.extractor.list_pages(connection_ref, query)

    async def get_knowledge_source_status(self, source_id: str) -> SourceStatus:
        """
        Raises:
            SourceNotFoundError: Unknown source id
        """
        return await self.sync.get_source_status(source_id)

    async def resync_knowledge_source(
        self, source_id: str, *, force: bool = False
    ) -> SyncRunResult:
        """
        Re-extract a source and re-index it if its content changed

        Raises:
            SourceNotFoundError: Unknown source id
        """
        parameters = {"source_id": source_id, "force": force}
        try:
            result = await self.sync.resync_source(source_id, force=force)
        except Exception as e:
            self._record("resync_knowledge_source", parameters, error=e)
            raise
        self._record("resync_knowledge_source", parameters, result.model_dump(mode="json"))
        return result

    async def get_agent_knowledge_stats(self, agent_id: str) -> AgentKnowledgeStats:
        return await self.retrieval.get_agent_knowledge_stats(agent_id)

    async def has_knowledge(self, agent_id: str) -> bool:
        return await self.retrieval.has_knowledge(agent_id)

    async def search(self, query: RetrievalQuery) -> RetrievalOutput:
        """Run a retrieval query and return scored results with citations"""
        parameters = {
            "agent_id": query.agent_id,
            "limit": query.limit,
            "query_type": query.query_type.value,
            "min_score": query.min_score,
        }
        try:
            output = await self.retrieval.retrieve(query)
        except Exception as e:
            self._record("search", parameters, error=e, query=query.text)
            raise
        self._record("search", parameters, output.model_dump(mode="json"), query=query.text)
        return output

    async def retrieve_relevant_chunks(
        self,
        agent_id: str,
        query_text: str,
        k: int | None = None,
        min_score: float | None = None,
        query_type: QueryType = QueryType.SEMANTIC,
        source_ids: list[str] | None = None,
    ) -> list[RelevantChunk]:
        """
        Top-k chunks of an agent's knowledge for a conversation turn

        Returns an empty list when the agent has no knowledge.
        """
        query = RetrievalQuery(
            agent_id=agent_id,
            text=query_text,
            limit=k or config.retrieval_default_limit,
            min_score=min_score,
            query_type=query_type,
            source_ids=source_ids,
        )
        output = await self.search(query)
        return [
            RelevantChunk(
                chunk_text=result.chunk.content,
                score=result.score,
                heading=result.chunk.context_header,
                document_title=result.metadata.document_title,
                source_name=result.metadata.source_name,
            )
            for result in output.results
        ]
