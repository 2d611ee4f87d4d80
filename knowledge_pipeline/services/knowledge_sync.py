"""Orchestrates knowledge source lifecycle and sync runs"""

import asyncio
import logging
from datetime import UTC, datetime

from knowledge_pipeline.config import config
from knowledge_pipeline.exceptions import (
    AgentNotFoundError,
    DuplicateSourceError,
    EmptyDocumentError,
    KnowledgeError,
    SourceLimitExceededError,
    SourceNotFoundError,
    SyncCancelledError,
    SyncTimeoutError,
    UnsupportedProviderError,
)
from knowledge_pipeline.models.knowledge import (
    Document,
    DocumentChunk,
    DocumentStatus,
    KnowledgeSource,
    SourceProvider,
    SyncStatus,
)
from knowledge_pipeline.models.sync_result import SourceStatus, SyncOutcome, SyncRunResult
from knowledge_pipeline.services.chunker import Chunker
from knowledge_pipeline.services.embedder import Embedder
from knowledge_pipeline.services.extractors import ContentExtractor
from knowledge_pipeline.services.fingerprint import fingerprint
from knowledge_pipeline.services.vector_store import KnowledgeStore

logger = logging.getLogger(__name__)


class KnowledgeSync:
    """
    Keeps each knowledge source's document and chunks in step with upstream

    A sync run extracts, fingerprints, chunks and embeds the source under an
    overall timeout, then swaps the new generation into the store in one
    transaction. Runs on the same source are serialized by a per-source lock;
    operational failures become a failed SyncRunResult and leave the previous
    generation queryable.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        extractor: ContentExtractor,
        chunker: Chunker | None = None,
        embedder: Embedder | None = None,
        timeout_seconds: float | None = None,
        max_sources_per_agent: int | None = None,
    ):
        self.store = store
        self.extractor = extractor
        self.chunker = chunker or Chunker()
        self.embedder = embedder or Embedder()
        self.timeout_seconds = timeout_seconds or config.sync_timeout_seconds
        self.max_sources_per_agent = max_sources_per_agent or config.max_sources_per_agent
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        return self._locks.setdefault(source_id, asyncio.Lock())

    async def add_source(
        self,
        agent_id: str,
        provider: SourceProvider | str,
        external_id: str,
        name: str,
        connection_ref: str | None = None,
    ) -> KnowledgeSource:
        """
        Register an external document against an agent without fetching it

        Raises:
            AgentNotFoundError: Unknown agent
            UnsupportedProviderError: Unknown provider
            DuplicateSourceError: Document already registered for this agent
            SourceLimitExceededError: Agent is at max_sources_per_agent
        """
        if await self.store.get_agent(agent_id) is None:
            raise AgentNotFoundError(agent_id)

        try:
            provider = SourceProvider(provider)
        except ValueError as e:
            raise UnsupportedProviderError(str(provider)) from e

        if await self.store.find_source(agent_id, provider.value, external_id) is not None:
            raise DuplicateSourceError(agent_id, provider.value, external_id)

        if await self.store.count_sources(agent_id) >= self.max_sources_per_agent:
            raise SourceLimitExceededError(agent_id, self.max_sources_per_agent)

        source = KnowledgeSource(
            agent_id=agent_id,
            provider=provider,
            external_id=external_id,
            name=name,
            connection_ref=connection_ref,
        )
        await self.store.insert_source(source)

        logger.info(f"Added {provider.value} source {source.id} ({external_id}) to agent {agent_id}")
        return source

    async def resync_source(self, source_id: str, *, force: bool = False) -> SyncRunResult:
        """
        Bring a source's stored document in line with upstream content

        Args:
            source_id: Source to sync
            force: Re-chunk and re-embed even if the content hash is unchanged

        Returns:
            SyncRunResult: Outcome of the run (never raises for operational errors)

        Raises:
            SourceNotFoundError: Unknown source id
        """
        try:
            async with self._lock_for(source_id):
                return await self._run_sync(source_id, force)
        except SourceNotFoundError:
            self._locks.pop(source_id, None)
            raise

    async def _run_sync(self, source_id: str, force: bool) -> SyncRunResult:
        started_at = datetime.now(UTC)

        source = await self.store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)

        logger.info(f"Starting sync of source {source_id} (force={force})")
        await self.store.update_source_sync(source_id, SyncStatus.PROCESSING)
        previous = await self.store.get_document(source_id)
        if previous is not None:
            await self.store.set_document_status(source_id, DocumentStatus.PROCESSING)

        try:
            generation = await asyncio.wait_for(
                self._prepare_generation(source, previous, force), timeout=self.timeout_seconds
            )
            if generation is not None:
                await self.store.replace_document(*generation, self.embedder.model_name)
        except asyncio.CancelledError:
            await self._fail(source_id, previous, started_at, SyncCancelledError(source_id))
            raise
        except TimeoutError:
            error = SyncTimeoutError(source_id, self.timeout_seconds)
            return await self._fail(source_id, previous, started_at, error)
        except KnowledgeError as e:
            return await self._fail(source_id, previous, started_at, e)
        except Exception as e:
            logger.error(f"Unexpected error syncing source {source_id}: {e}", exc_info=True)
            return await self._fail(source_id, previous, started_at, e)

        finished_at = datetime.now(UTC)
        if generation is None:
            await self.store.set_document_status(source_id, DocumentStatus.COMPLETED)
        await self.store.update_source_sync(source_id, SyncStatus.COMPLETED, finished_at)

        duration_seconds = (finished_at - started_at).total_seconds()
        if generation is None:
            logger.info(f"Source {source_id} unchanged, skipped re-embedding")
            return SyncRunResult(
                source_id=source_id,
                success=True,
                outcome=SyncOutcome.UNCHANGED,
                started_at=started_at,
                finished_at=finished_at,
                duration_seconds=duration_seconds,
            )

        _, chunks = generation
        logger.info(
            f"Synced source {source_id}: {len(chunks)} chunks in {duration_seconds:.2f}s"
        )
        return SyncRunResult(
            source_id=source_id,
            success=True,
            outcome=SyncOutcome.SUCCESS,
            documents_processed=1,
            chunks_created=len(chunks),
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=duration_seconds,
        )

    async def _prepare_generation(
        self, source: KnowledgeSource, previous: Document | None, force: bool
    ) -> tuple[Document, list[DocumentChunk]] | None:
        """
        Extract, fingerprint, chunk and embed a source

        Returns:
            The new document and its embedded chunks, or None if content is unchanged
        """
        extracted = await self.extractor.extract(
            source.provider, source.external_id, source.connection_ref
        )
        content = extracted.content.strip()
        content_hash = fingerprint(content)

        if previous is not None and not force and previous.content_hash == content_hash:
            return None

        document = Document(
            source_id=source.id,
            title=extracted.title or "Untitled",
            url=extracted.url,
            content_hash=content_hash,
            content_length=len(content),
            status=DocumentStatus.COMPLETED,
        )

        chunks = self.chunker.chunk(document, content)
        if not chunks:
            raise EmptyDocumentError(f"Document {source.external_id} has no content to index")

        vectors = await self.embedder.embed_batch([chunk.embedding_text for chunk in chunks])
        for chunk, vector in zip(chunks, vectors, strict=True):
            chunk.embedding = vector

        return document, chunks

    async def _fail(
        self,
        source_id: str,
        previous: Document | None,
        started_at: datetime,
        error: Exception,
    ) -> SyncRunResult:
        message = str(error) or type(error).__name__
        logger.warning(f"Sync of source {source_id} failed: {message}")

        if previous is not None:
            await self.store.set_document_status(source_id, DocumentStatus.FAILED, message)
        finished_at = datetime.now(UTC)
        await self.store.update_source_sync(source_id, SyncStatus.FAILED, finished_at, message)

        return SyncRunResult(
            source_id=source_id,
            success=False,
            outcome=SyncOutcome.FAILURE,
            errors=[message],
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=(finished_at - started_at).total_seconds(),
        )

    async def remove_source(self, source_id: str) -> None:
        """
        Delete a source with its document and chunks

        Waits for an in-flight sync of the same source to finish first.

        Raises:
            SourceNotFoundError: Unknown source id
        """
        async with self._lock_for(source_id):
            deleted = await self.store.delete_source(source_id)
        self._locks.pop(source_id, None)

        if not deleted:
            raise SourceNotFoundError(source_id)
        logger.info(f"Removed source {source_id}")

    async def get_source_status(self, source_id: str) -> SourceStatus:
        """
        Operator view of a source's sync state

        Raises:
            SourceNotFoundError: Unknown source id
        """
        source = await self.store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)

        document = await self.store.get_document(source_id)
        return SourceStatus(
            id=source.id,
            name=source.name,
            status=source.last_sync_status,
            last_sync_at=source.last_sync_at,
            error=source.last_sync_error,
            document_count=1 if document is not None else 0,
            chunk_count=await self.store.count_chunks(source_id),
            document_title=document.title if document else None,
            document_status=document.status if document else None,
        )
