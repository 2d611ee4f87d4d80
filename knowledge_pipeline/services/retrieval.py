"""Retrieval service for querying an agent's knowledge"""

import logging
import time

from knowledge_pipeline.config import config
from knowledge_pipeline.models.query import QueryType, RetrievalQuery
from knowledge_pipeline.models.search_result import (
    AgentKnowledgeStats,
    QueryInfo,
    RetrievalOutput,
    SearchMetadata,
    SearchResult,
)
from knowledge_pipeline.services.embedder import Embedder
from knowledge_pipeline.services.vector_store import ChunkHit, KnowledgeStore

logger = logging.getLogger(__name__)


def _result(hit: ChunkHit, score: float, rank: int, match_type: str) -> SearchResult:
    header = hit.chunk.context_header
    return SearchResult(
        chunk=hit.chunk,
        score=score,
        rank=rank,
        metadata=SearchMetadata(
            source_id=hit.chunk.source_id,
            source_name=hit.source_name,
            document_title=hit.document_title,
            source_url=hit.document_url,
            breadcrumb=header.split(" > ") if header else [],
            match_type=match_type,
        ),
    )


class RetrievalService:
    """Rank an agent's stored chunks against a query"""

    def __init__(self, store: KnowledgeStore, embedder: Embedder | None = None):
        self.store = store
        self.embedder = embedder or Embedder()

    async def retrieve(self, query: RetrievalQuery) -> RetrievalOutput:
        """
        Execute a retrieval query

        Semantic scores are cosine similarities and are filtered by min_score.
        Keyword scores come from BM25 and are not thresholded.

        Args:
            query: RetrievalQuery with search parameters

        Returns:
            RetrievalOutput: Ranked results, empty if the agent has no knowledge
        """
        start_time = time.time()
        min_score = config.retrieval_min_score if query.min_score is None else query.min_score

        search_results: list[SearchResult] = []
        if await self.store.has_chunks(query.agent_id):
            await self._warn_on_model_mismatch(query.agent_id)

            if query.query_type == QueryType.SEMANTIC:
                hits = await self._semantic_hits(query, query.limit, min_score)
                search_results = [
                    _result(hit, hit.score, rank, "semantic")
                    for rank, hit in enumerate(hits, start=1)
                ]

            elif query.query_type == QueryType.KEYWORD:
                hits = await self.store.keyword_search(
                    query.agent_id,
                    query.text,
                    self.embedder.model_name,
                    limit=query.limit,
                    source_ids=query.source_ids,
                )
                search_results = [
                    _result(hit, hit.score, rank, "keyword")
                    for rank, hit in enumerate(hits, start=1)
                ]

            elif query.query_type == QueryType.HYBRID:
                semantic_hits = await self._semantic_hits(query, query.limit * 2, min_score)
                keyword_hits = await self.store.keyword_search(
                    query.agent_id,
                    query.text,
                    self.embedder.model_name,
                    limit=query.limit * 2,
                    source_ids=query.source_ids,
                )
                search_results = self._reciprocal_rank_fusion(
                    semantic_hits, keyword_hits, query.limit
                )

        query_time_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"Retrieved {len(search_results)} chunks for agent {query.agent_id} "
            f"({query.query_type.value}, {query_time_ms:.1f}ms)"
        )

        return RetrievalOutput(
            results=search_results,
            query_info=QueryInfo(
                original_query=query.text,
                total_results=len(search_results),
                query_time_ms=query_time_ms,
            ),
        )

    async def _semantic_hits(
        self, query: RetrievalQuery, limit: int, min_score: float
    ) -> list[ChunkHit]:
        query_embedding = await self.embedder.embed_text(query.text)
        hits = await self.store.similarity_search(
            query.agent_id,
            query_embedding,
            self.embedder.model_name,
            limit=limit,
            source_ids=query.source_ids,
        )
        return [hit for hit in hits if hit.score >= min_score]

    def _reciprocal_rank_fusion(
        self,
        semantic_hits: list[ChunkHit],
        keyword_hits: list[ChunkHit],
        limit: int,
        k: int = 60,
    ) -> list[SearchResult]:
        """
        Combine semantic and keyword results using Reciprocal Rank Fusion

        Args:
            semantic_hits: Thresholded vector similarity results
            keyword_hits: Keyword search results
            limit: Maximum number of results to return
            k: RRF constant (default: 60)

        Returns:
            Merged and re-ranked results scored by RRF
        """
        rrf_scores: dict[str, float] = {}
        hit_map: dict[str, tuple[ChunkHit, str]] = {}

        for rank, hit in enumerate(semantic_hits, start=1):
            chunk_id = hit.chunk.id
            rrf_scores[chunk_id] = rrf_scores.get(chunk_id, 0) + 1 / (k + rank)
            hit_map.setdefault(chunk_id, (hit, "semantic"))

        for rank, hit in enumerate(keyword_hits, start=1):
            chunk_id = hit.chunk.id
            rrf_scores[chunk_id] = rrf_scores.get(chunk_id, 0) + 1 / (k + rank)
            if chunk_id not in hit_map:
                hit_map[chunk_id] = (hit, "keyword")
            else:
                # Found by both channels
                hit_map[chunk_id] = (hit_map[chunk_id][0], "hybrid")

        sorted_chunks = sorted(rrf_scores.items(), key=lambda x: x[1], reverse=True)[:limit]

        results: list[SearchResult] = []
        for rank, (chunk_id, rrf_score) in enumerate(sorted_chunks, start=1):
            hit, match_type = hit_map[chunk_id]
            results.append(_result(hit, rrf_score, rank, match_type))
        return results

    async def _warn_on_model_mismatch(self, agent_id: str) -> None:
        stale = await self.store.count_chunks_with_other_model(agent_id, self.embedder.model_name)
        if stale:
            logger.warning(
                f"Agent {agent_id} has {stale} chunks embedded with a model other than "
                f"{self.embedder.model_name}; they are excluded until a forced resync"
            )

    async def has_knowledge(self, agent_id: str) -> bool:
        """True if the agent has at least one stored chunk"""
        return await self.store.has_chunks(agent_id)

    async def get_agent_knowledge_stats(self, agent_id: str) -> AgentKnowledgeStats:
        """Aggregate and per-source counts for an agent"""
        sources = await self.store.source_stats(agent_id)
        return AgentKnowledgeStats(
            source_count=len(sources),
            document_count=sum(s.document_count for s in sources),
            chunk_count=sum(s.chunk_count for s in sources),
            sources=sources,
        )
