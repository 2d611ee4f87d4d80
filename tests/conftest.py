"""Shared fixtures: in-memory store, deterministic embeddings, scripted extractor"""

import asyncio
import hashlib
import re

import pytest
import pytest_asyncio

from knowledge_pipeline.models.extraction import ExtractedContent, PageSummary
from knowledge_pipeline.services.chunker import Chunker
from knowledge_pipeline.services.embedder import Embedder
from knowledge_pipeline.services.knowledge_api import KnowledgeAPI
from knowledge_pipeline.services.knowledge_sync import KnowledgeSync
from knowledge_pipeline.services.retrieval import RetrievalService
from knowledge_pipeline.services.vector_store import KnowledgeStore

DIMENSION = 384
_TOKEN_RE = re.compile(r"\w+")


class HashingTextModel:
    """Bag-of-words vectors: identical texts embed identically, shared words raise similarity"""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimension
        # Constant component keeps every vector non-zero
        vec[-1] = 1.0
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vec[int.from_bytes(digest[:4], "little") % (self.dimension - 1)] += 1.0
        return vec

    def embed(self, documents: list[str]):
        self.calls.append(list(documents))
        for text in documents:
            yield self.vector(text)


class ScriptedExtractor:
    """Extractor double returning canned content per external id"""

    def __init__(self):
        self.documents: dict[str, ExtractedContent | Exception] = {}
        self.calls: list[str] = []
        self.delay: float = 0.0
        self.pages: list[PageSummary] = []

    def set(self, external_id: str, content: str, title: str = "Doc") -> None:
        self.documents[external_id] = ExtractedContent(title=title, content=content)

    def fail(self, external_id: str, error: Exception) -> None:
        self.documents[external_id] = error

    async def extract(self, provider, external_id, connection_ref=None) -> ExtractedContent:
        self.calls.append(external_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.documents[external_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def list_pages(self, connection_ref=None, query=None) -> list[PageSummary]:
        return [p for p in self.pages if not query or query.lower() in p.title.lower()]

    async def close(self) -> None:
        pass


@pytest.fixture
def text_model() -> HashingTextModel:
    return HashingTextModel()


@pytest.fixture
def embedder(text_model) -> Embedder:
    return Embedder(
        model=text_model,
        model_name="test-hashing-model",
        dimension=DIMENSION,
        batch_size=8,
        max_retries=2,
        retry_base_delay=0.0,
    )


@pytest.fixture
def extractor() -> ScriptedExtractor:
    return ScriptedExtractor()


@pytest_asyncio.fixture
async def store():
    knowledge_store = KnowledgeStore(":memory:")
    await knowledge_store.initialize()
    yield knowledge_store
    knowledge_store.close()


@pytest.fixture
def sync(store, extractor, embedder) -> KnowledgeSync:
    return KnowledgeSync(
        store,
        extractor,
        chunker=Chunker(chunk_size_chars=1200, chunk_overlap_chars=150),
        embedder=embedder,
        timeout_seconds=5.0,
        max_sources_per_agent=100,
    )


@pytest.fixture
def retrieval(store, embedder) -> RetrievalService:
    return RetrievalService(store, embedder)


@pytest.fixture
def api(store, sync, retrieval) -> KnowledgeAPI:
    return KnowledgeAPI(store, sync, retrieval, telemetry=None)
