"""Unit tests for the embedding pipeline"""

import pytest

from knowledge_pipeline.exceptions import EmbeddingFailedError
from knowledge_pipeline.services.embedder import Embedder, deserialize_vector, serialize_vector


class FlakyModel:
    """Fails a fixed number of calls before answering"""

    def __init__(self, failures: int, dimension: int = 4):
        self.failures = failures
        self.dimension = dimension
        self.calls = 0

    def embed(self, documents):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("model backend unavailable")
        return [[float(len(text))] * self.dimension for text in documents]


class WrongDimensionModel:
    def embed(self, documents):
        return [[0.5, 0.5] for _ in documents]


def test_vector_serialization_is_little_endian_float32():
    vector = [1.0, -2.5, 0.25]
    blob = serialize_vector(vector)

    assert len(blob) == 12
    assert blob[:4] == b"\x00\x00\x80\x3f"
    assert deserialize_vector(blob) == vector


def test_deserialize_rejects_truncated_blob():
    with pytest.raises(ValueError):
        deserialize_vector(b"\x00\x00\x80")


@pytest.mark.asyncio
async def test_embed_batch_preserves_order_and_batches(embedder, text_model):
    texts = [f"text number {i}" for i in range(20)]

    vectors = await embedder.embed_batch(texts)

    assert len(vectors) == 20
    assert all(len(v) == 384 for v in vectors)
    assert vectors[3] == text_model.vector("text number 3")
    # batch_size=8 -> 8 + 8 + 4
    assert [len(call) for call in text_model.calls] == [8, 8, 4]


@pytest.mark.asyncio
async def test_embed_batch_empty_input(embedder, text_model):
    assert await embedder.embed_batch([]) == []
    assert text_model.calls == []


@pytest.mark.asyncio
async def test_embed_text_uses_same_model(embedder, text_model):
    vector = await embedder.embed_text("hydration")

    assert vector == text_model.vector("hydration")


@pytest.mark.asyncio
async def test_failed_batch_is_retried():
    model = FlakyModel(failures=2)
    embedder = Embedder(model=model, dimension=4, max_retries=3, retry_base_delay=0.0)

    vectors = await embedder.embed_batch(["abc"])

    assert vectors == [[3.0, 3.0, 3.0, 3.0]]
    assert model.calls == 3


@pytest.mark.asyncio
async def test_persistent_failure_raises_embedding_failed():
    model = FlakyModel(failures=10)
    embedder = Embedder(model=model, dimension=4, max_retries=2, retry_base_delay=0.0)

    with pytest.raises(EmbeddingFailedError) as exc_info:
        await embedder.embed_batch(["abc"])

    assert model.calls == 2
    assert isinstance(exc_info.value.cause, RuntimeError)


@pytest.mark.asyncio
async def test_dimension_mismatch_raises():
    embedder = Embedder(model=WrongDimensionModel(), dimension=384, retry_base_delay=0.0)

    with pytest.raises(EmbeddingFailedError, match="dimension mismatch"):
        await embedder.embed_batch(["abc"])
