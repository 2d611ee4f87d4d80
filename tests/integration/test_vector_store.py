"""Integration tests for the SQLite knowledge store"""

import sqlite3

import pytest

from knowledge_pipeline.exceptions import DuplicateSourceError
from knowledge_pipeline.models.knowledge import (
    Agent,
    Document,
    DocumentChunk,
    DocumentStatus,
    KnowledgeSource,
    SourceProvider,
    SyncStatus,
)
from knowledge_pipeline.services.fingerprint import fingerprint

MODEL = "test-hashing-model"


async def _source(store, agent_id="agent-1", external_id="doc-1") -> KnowledgeSource:
    if await store.get_agent(agent_id) is None:
        await store.upsert_agent(Agent(id=agent_id, name="Coach"))
    source = KnowledgeSource(
        agent_id=agent_id,
        provider=SourceProvider.FILE_UPLOAD,
        external_id=external_id,
        name=f"Source {external_id}",
    )
    await store.insert_source(source)
    return source


def _generation(
    model, source_id: str, texts: list[str]
) -> tuple[Document, list[DocumentChunk]]:
    body = "\n\n".join(texts)
    document = Document(
        source_id=source_id,
        title="Doc",
        content_hash=fingerprint(body),
        content_length=len(body),
        status=DocumentStatus.COMPLETED,
    )
    chunks = []
    offset = 0
    for position, text in enumerate(texts):
        chunk = DocumentChunk(
            document_id=document.id,
            source_id=source_id,
            chunk_position=position,
            content=text,
            char_start=offset,
            char_end=offset + len(text),
            token_count=len(text.split()),
        )
        chunk.embedding = model.vector(text)
        chunks.append(chunk)
        offset += len(text) + 2
    return document, chunks


@pytest.mark.asyncio
async def test_initialize_and_health_check(store):
    assert await store.health_check() is True
    assert await store.count_chunks() == 0


@pytest.mark.asyncio
async def test_agent_upsert_keeps_created_at(store):
    await store.upsert_agent(Agent(id="agent-1", name="First"))
    created = (await store.get_agent("agent-1")).created_at

    await store.upsert_agent(Agent(id="agent-1", name="Renamed"))
    agent = await store.get_agent("agent-1")

    assert agent.name == "Renamed"
    assert agent.created_at == created
    assert await store.get_agent("missing") is None


@pytest.mark.asyncio
async def test_source_round_trip_and_uniqueness(store):
    source = await _source(store)

    loaded = await store.get_source(source.id)
    assert loaded == source

    duplicate = KnowledgeSource(
        agent_id="agent-1",
        provider=SourceProvider.FILE_UPLOAD,
        external_id="doc-1",
        name="Again",
    )
    with pytest.raises(DuplicateSourceError):
        await store.insert_source(duplicate)
    assert await store.count_sources("agent-1") == 1


@pytest.mark.asyncio
async def test_sources_listed_newest_first(store):
    first = await _source(store, external_id="a")
    second = await _source(store, external_id="b")

    sources = await store.list_sources("agent-1")

    assert [s.id for s in sources] == [second.id, first.id]


@pytest.mark.asyncio
async def test_replace_document_swaps_whole_generation(store, text_model):
    source = await _source(store)
    texts = ["alpha one", "alpha two", "alpha three"]
    doc_v1, chunks_v1 = _generation(text_model, source.id, texts)
    await store.replace_document(doc_v1, chunks_v1, MODEL)

    doc_v2, chunks_v2 = _generation(text_model, source.id, ["beta one"])
    await store.replace_document(doc_v2, chunks_v2, MODEL)

    document = await store.get_document(source.id)
    chunks = await store.get_chunks(source.id)
    assert document.id == doc_v2.id
    assert [c.content for c in chunks] == ["beta one"]
    assert await store.count_chunks(source.id) == 1

    hits = await store.keyword_search("agent-1", "alpha", MODEL)
    assert hits == []


@pytest.mark.asyncio
async def test_replace_document_rolls_back_on_failure(store, text_model):
    source = await _source(store)
    doc_v1, chunks_v1 = _generation(text_model, source.id, ["alpha one", "alpha two"])
    await store.replace_document(doc_v1, chunks_v1, MODEL)

    doc_v2, chunks_v2 = _generation(text_model, source.id, ["beta one", "beta two"])
    # Same position twice violates UNIQUE(document_id, chunk_position)
    chunks_v2[1].chunk_position = 0
    with pytest.raises(sqlite3.IntegrityError):
        await store.replace_document(doc_v2, chunks_v2, MODEL)

    assert (await store.get_document(source.id)).id == doc_v1.id
    assert [c.content for c in await store.get_chunks(source.id)] == ["alpha one", "alpha two"]


@pytest.mark.asyncio
async def test_replace_document_requires_embeddings(store, text_model):
    source = await _source(store)
    document, chunks = _generation(text_model, source.id, ["alpha"])
    chunks[0].embedding = None

    with pytest.raises(ValueError, match="no embedding"):
        await store.replace_document(document, chunks, MODEL)


@pytest.mark.asyncio
async def test_delete_source_cascades(store, text_model):
    source = await _source(store)
    document, chunks = _generation(text_model, source.id, ["alpha one", "alpha two"])
    await store.replace_document(document, chunks, MODEL)

    assert await store.delete_source(source.id) is True

    assert await store.get_source(source.id) is None
    assert await store.get_document(source.id) is None
    assert await store.count_chunks() == 0
    assert await store.keyword_search("agent-1", "alpha", MODEL) == []
    assert await store.delete_source(source.id) is False


@pytest.mark.asyncio
async def test_similarity_search_ranks_identical_text_first(store, text_model):
    source = await _source(store)
    texts = ["drink water every morning", "sleep eight hours", "walk after dinner"]
    document, chunks = _generation(text_model, source.id, texts)
    await store.replace_document(document, chunks, MODEL)

    query = text_model.vector("sleep eight hours")
    hits = await store.similarity_search("agent-1", query, MODEL, limit=3)

    assert hits[0].chunk.content == "sleep eight hours"
    assert hits[0].score == pytest.approx(1.0, abs=1e-5)
    assert hits[0].source_name == source.name
    assert hits[0].document_title == "Doc"
    assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)


@pytest.mark.asyncio
async def test_similarity_search_is_scoped_to_agent_and_sources(store, text_model):
    mine = await _source(store, agent_id="agent-1", external_id="a")
    other = await _source(store, agent_id="agent-1", external_id="b")
    foreign = await _source(store, agent_id="agent-2", external_id="a")
    for source in (mine, other, foreign):
        texts = [f"stretching routine {source.id}"]
        document, chunks = _generation(text_model, source.id, texts)
        await store.replace_document(document, chunks, MODEL)

    query = text_model.vector("stretching routine")

    hits = await store.similarity_search("agent-1", query, MODEL, limit=10)
    assert {h.chunk.source_id for h in hits} == {mine.id, other.id}

    scoped = await store.similarity_search("agent-1", query, MODEL, limit=10, source_ids=[mine.id])
    assert {h.chunk.source_id for h in scoped} == {mine.id}


@pytest.mark.asyncio
async def test_search_ignores_chunks_of_other_models(store, text_model):
    source = await _source(store)
    document, chunks = _generation(text_model, source.id, ["stretching routine"])
    await store.replace_document(document, chunks, "old-model")

    query = text_model.vector("stretching routine")

    assert await store.similarity_search("agent-1", query, MODEL) == []
    assert await store.count_chunks_with_other_model("agent-1", MODEL) == 1


@pytest.mark.asyncio
async def test_keyword_search_with_punctuation(store, text_model):
    source = await _source(store)
    texts = ["Configure reminders in the settings tab", "Meal plans use weekly templates"]
    document, chunks = _generation(text_model, source.id, texts)
    await store.replace_document(document, chunks, MODEL)

    hits = await store.keyword_search("agent-1", "reminders?! (settings)", MODEL)

    assert hits[0].chunk.content == texts[0]
    assert 0 < hits[0].score <= 1
    assert await store.keyword_search("agent-1", "?!", MODEL) == []


@pytest.mark.asyncio
async def test_source_sync_state_and_stats(store, text_model):
    source = await _source(store)
    document, chunks = _generation(text_model, source.id, ["one", "two"])
    await store.replace_document(document, chunks, MODEL)

    await store.update_source_sync(source.id, SyncStatus.FAILED, error="boom")
    await store.set_document_status(source.id, DocumentStatus.FAILED, "boom")

    loaded = await store.get_source(source.id)
    assert loaded.last_sync_status == SyncStatus.FAILED
    assert loaded.last_sync_error == "boom"
    assert (await store.get_document(source.id)).error_message == "boom"

    stats = await store.source_stats("agent-1")
    assert len(stats) == 1
    assert stats[0].document_count == 1
    assert stats[0].chunk_count == 2
    assert await store.has_chunks("agent-1") is True
    assert await store.has_chunks("agent-2") is False
