"""Embedding generation service using local models via fastembed"""

import asyncio
import logging
import struct
from collections.abc import Iterable, Sequence
from typing import Any, Protocol

from fastembed import TextEmbedding

from knowledge_pipeline.config import config
from knowledge_pipeline.exceptions import EmbeddingFailedError

logger = logging.getLogger(__name__)


class EmbeddingModel(Protocol):
    """Anything that turns a list of texts into an iterable of vectors"""

    def embed(self, documents: list[str]) -> Iterable[Any]: ...


def serialize_vector(vector: Sequence[float]) -> bytes:
    """Pack a vector as little-endian float32 (sqlite-vec BLOB format)"""
    return struct.pack(f"<{len(vector)}f", *vector)


def deserialize_vector(blob: bytes) -> list[float]:
    """Inverse of serialize_vector"""
    if len(blob) % 4:
        raise ValueError(f"Vector blob length {len(blob)} is not a multiple of 4")
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))


class Embedder:
    """Generate embeddings in batches with retry and dimension checks"""

    def __init__(
        self,
        model: EmbeddingModel | None = None,
        model_name: str | None = None,
        dimension: int | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
    ):
        """
        Args:
            model: Preloaded embedding model; fastembed is loaded lazily when omitted
            model_name: Name recorded on stored chunks (default from config)
            dimension: Expected vector length (default from config)
            batch_size: Texts per model call (default from config)
            max_retries: Attempts per batch (default from config)
            retry_base_delay: Backoff base in seconds (default from config)
        """
        self._model = model
        self.model_name = model_name or config.embedding_model
        self.dimension = dimension or config.embedding_dimension
        self.batch_size = batch_size or config.embedding_batch_size
        self.max_retries = max_retries or config.embedding_max_retries
        self.retry_base_delay = (
            config.embedding_retry_base_delay if retry_base_delay is None else retry_base_delay
        )

    @property
    def model(self) -> EmbeddingModel:
        if self._model is None:
            logger.info(f"Loading embedding model {self.model_name}")
            self._model = TextEmbedding(
                model_name=self.model_name, cache_dir=config.fastembed_cache_dir
            )
        return self._model

    async def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text

        Args:
            text: Text to embed

        Returns:
            list[float]: Embedding vector of the configured dimension
        """
        embeddings = await self.embed_batch([text])
        return embeddings[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts in batches

        Args:
            texts: List of texts to embed

        Returns:
            list[list[float]]: One vector per input, in input order

        Raises:
            EmbeddingFailedError: A batch kept failing or returned malformed vectors
        """
        if not texts:
            return []

        embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            embeddings.extend(await self._embed_with_retry(batch, i // self.batch_size))

        logger.debug(f"Embedded {len(texts)} texts in batches of {self.batch_size}")
        return embeddings

    async def _embed_with_retry(self, batch: list[str], batch_number: int) -> list[list[float]]:
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                vectors = await asyncio.to_thread(self._run_model, batch)
            except Exception as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    delay = self.retry_base_delay * (2**attempt)
                    logger.warning(
                        f"Embedding batch {batch_number} failed "
                        f"(attempt {attempt + 1}/{self.max_retries}): {e}, retrying in {delay}s"
                    )
                    await asyncio.sleep(delay)
                continue

            self._check_vectors(batch, vectors)
            return vectors

        raise EmbeddingFailedError(
            f"Embedding batch {batch_number} failed after {self.max_retries} attempts: "
            f"{last_error}",
            cause=last_error,
        )

    def _run_model(self, batch: list[str]) -> list[list[float]]:
        # fastembed returns a generator of numpy arrays
        return [[float(x) for x in vector] for vector in self.model.embed(batch)]

    def _check_vectors(self, batch: list[str], vectors: list[list[float]]) -> None:
        if len(vectors) != len(batch):
            raise EmbeddingFailedError(
                f"Embedding model returned {len(vectors)} vectors for {len(batch)} texts"
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise EmbeddingFailedError(
                    f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
                )
