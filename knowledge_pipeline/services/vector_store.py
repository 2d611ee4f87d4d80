"""SQLite knowledge store with sqlite_vec extension"""

import logging
import re
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import NamedTuple

import sqlite_vec

from knowledge_pipeline.exceptions import DuplicateSourceError
from knowledge_pipeline.models.knowledge import (
    Agent,
    Document,
    DocumentChunk,
    DocumentStatus,
    KnowledgeSource,
    SyncStatus,
)
from knowledge_pipeline.models.search_result import SourceStats
from knowledge_pipeline.services.embedder import serialize_vector

logger = logging.getLogger(__name__)

_FTS_STRIP_RE = re.compile(r"[^\w\s]", re.UNICODE)

_CHUNK_COLUMNS = """
    c.id, c.document_id, c.source_id, c.chunk_position, c.content, c.context_header,
    c.char_start, c.char_end, c.overlap_chars, c.token_count, c.created_at
"""

_HIT_CONTEXT_COLUMNS = "s.name AS source_name, d.title AS document_title, d.url AS document_url"


class ChunkHit(NamedTuple):
    """A scored chunk together with the names needed to cite it"""

    chunk: DocumentChunk
    score: float
    source_name: str
    document_title: str
    document_url: str | None


def _fts_query(text: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted terms"""
    terms = _FTS_STRIP_RE.sub(" ", text).split()
    return " OR ".join(f'"{term}"' for term in terms)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class KnowledgeStore:
    """SQLite-based store for agents, knowledge sources, documents and chunk vectors"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        # For :memory: databases, we need to keep a persistent connection
        # because each connection gets a separate in-memory database
        self._memory_conn: sqlite3.Connection | None = None

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.OperationalError) as e:
            # Similarity search needs vec_distance_cosine; everything else still works
            logger.warning(f"Could not load sqlite_vec extension: {e}")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """
        Create and configure a new database connection

        For :memory: databases, returns the persistent connection.
        For file databases, creates a new connection.
        """
        if self.db_path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = self._connect()
            return self._memory_conn
        return self._connect()

    def _ensure_connection(
        self, conn: sqlite3.Connection | None
    ) -> tuple[sqlite3.Connection, bool]:
        """
        Ensure we have a connection, creating one if needed

        Returns:
            Tuple of (connection, should_close)
        """
        if conn is not None:
            return conn, False

        new_conn = self._get_connection()
        # Never close :memory: connections (they're persistent)
        should_close = self.db_path != ":memory:"
        return new_conn, should_close

    async def initialize(self) -> None:
        """Create the database file and schema if needed"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn, should_close = self._ensure_connection(None)
        try:
            self._create_tables(conn)
        finally:
            if should_close:
                conn.close()

    def _create_tables(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS knowledge_sources (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
                provider TEXT NOT NULL,
                external_id TEXT NOT NULL,
                name TEXT NOT NULL,
                connection_ref TEXT,
                created_at TEXT NOT NULL,
                last_sync_at TEXT,
                last_sync_status TEXT NOT NULL DEFAULT 'pending',
                last_sync_error TEXT,
                UNIQUE(agent_id, provider, external_id)
            );

            CREATE INDEX IF NOT EXISTS idx_sources_agent
            ON knowledge_sources(agent_id);

            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL UNIQUE
                    REFERENCES knowledge_sources(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                url TEXT,
                content_hash TEXT NOT NULL,
                content_length INTEGER NOT NULL,
                extracted_at TEXT NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT
            );

            CREATE TABLE IF NOT EXISTS document_chunks (
                id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                source_id TEXT NOT NULL REFERENCES knowledge_sources(id) ON DELETE CASCADE,
                chunk_position INTEGER NOT NULL,
                content TEXT NOT NULL,
                context_header TEXT,
                char_start INTEGER NOT NULL,
                char_end INTEGER NOT NULL,
                overlap_chars INTEGER NOT NULL DEFAULT 0,
                token_count INTEGER NOT NULL,
                embedding BLOB NOT NULL,
                model_name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(document_id, chunk_position),
                CHECK(chunk_position >= 0),
                CHECK(token_count > 0)
            );

            CREATE INDEX IF NOT EXISTS idx_chunks_source
            ON document_chunks(source_id);

            CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                chunk_id UNINDEXED,
                content,
                context_header,
                tokenize='porter unicode61'
            );
        """)
        conn.commit()

    # Agents

    async def upsert_agent(self, agent: Agent, conn: sqlite3.Connection | None = None) -> None:
        conn, should_close = self._ensure_connection(conn)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO agents (id, name, created_at) VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET name = excluded.name
                    """,
                    (agent.id, agent.name, _iso(agent.created_at)),
                )
        finally:
            if should_close:
                conn.close()

    async def get_agent(
        self, agent_id: str, conn: sqlite3.Connection | None = None
    ) -> Agent | None:
        conn, should_close = self._ensure_connection(conn)
        try:
            row = conn.execute(
                "SELECT id, name, created_at FROM agents WHERE id = ?", (agent_id,)
            ).fetchone()
            return Agent(**dict(row)) if row else None
        finally:
            if should_close:
                conn.close()

    # Knowledge sources

    async def insert_source(
        self, source: KnowledgeSource, conn: sqlite3.Connection | None = None
    ) -> None:
        """
        Insert a new knowledge source

        Raises:
            DuplicateSourceError: (agent_id, provider, external_id) already exists
        """
        conn, should_close = self._ensure_connection(conn)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO knowledge_sources (
                        id, agent_id, provider, external_id, name, connection_ref,
                        created_at, last_sync_at, last_sync_status, last_sync_error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        source.id,
                        source.agent_id,
                        source.provider.value,
                        source.external_id,
                        source.name,
                        source.connection_ref,
                        _iso(source.created_at),
                        _iso(source.last_sync_at),
                        source.last_sync_status.value,
                        source.last_sync_error,
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" not in str(e):
                raise
            raise DuplicateSourceError(
                source.agent_id, source.provider.value, source.external_id
            ) from e
        finally:
            if should_close:
                conn.close()

    async def get_source(
        self, source_id: str, conn: sqlite3.Connection | None = None
    ) -> KnowledgeSource | None:
        conn, should_close = self._ensure_connection(conn)
        try:
            row = conn.execute(
                "SELECT * FROM knowledge_sources WHERE id = ?", (source_id,)
            ).fetchone()
            return KnowledgeSource(**dict(row)) if row else None
        finally:
            if should_close:
                conn.close()

    async def find_source(
        self,
        agent_id: str,
        provider: str,
        external_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> KnowledgeSource | None:
        conn, should_close = self._ensure_connection(conn)
        try:
            row = conn.execute(
                """
                SELECT * FROM knowledge_sources
                WHERE agent_id = ? AND provider = ? AND external_id = ?
                """,
                (agent_id, provider, external_id),
            ).fetchone()
            return KnowledgeSource(**dict(row)) if row else None
        finally:
            if should_close:
                conn.close()

    async def list_sources(
        self, agent_id: str, conn: sqlite3.Connection | None = None
    ) -> list[KnowledgeSource]:
        """Sources of an agent, newest first"""
        conn, should_close = self._ensure_connection(conn)
        try:
            rows = conn.execute(
                """
                SELECT * FROM knowledge_sources
                WHERE agent_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (agent_id,),
            ).fetchall()
            return [KnowledgeSource(**dict(row)) for row in rows]
        finally:
            if should_close:
                conn.close()

    async def count_sources(self, agent_id: str, conn: sqlite3.Connection | None = None) -> int:
        conn, should_close = self._ensure_connection(conn)
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM knowledge_sources WHERE agent_id = ?", (agent_id,)
            ).fetchone()
            return row[0] if row else 0
        finally:
            if should_close:
                conn.close()

    async def update_source_sync(
        self,
        source_id: str,
        status: SyncStatus,
        last_sync_at: datetime | None = None,
        error: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """
        Record the sync state of a source

        last_sync_at is only overwritten when given, so marking a source
        processing keeps the time of the previous run.
        """
        conn, should_close = self._ensure_connection(conn)
        try:
            with conn:
                conn.execute(
                    """
                    UPDATE knowledge_sources
                    SET last_sync_status = ?,
                        last_sync_error = ?,
                        last_sync_at = COALESCE(?, last_sync_at)
                    WHERE id = ?
                    """,
                    (status.value, error, _iso(last_sync_at), source_id),
                )
        finally:
            if should_close:
                conn.close()

    async def delete_source(self, source_id: str, conn: sqlite3.Connection | None = None) -> bool:
        """
        Delete a source with its document and chunks

        Returns:
            bool: True if a row was deleted
        """
        conn, should_close = self._ensure_connection(conn)
        try:
            with conn:
                # FTS5 tables take no part in foreign key cascades
                conn.execute(
                    """
                    DELETE FROM chunks_fts WHERE chunk_id IN (
                        SELECT id FROM document_chunks WHERE source_id = ?
                    )
                    """,
                    (source_id,),
                )
                cursor = conn.execute("DELETE FROM knowledge_sources WHERE id = ?", (source_id,))
            return cursor.rowcount > 0
        finally:
            if should_close:
                conn.close()

    # Documents and chunks

    async def get_document(
        self, source_id: str, conn: sqlite3.Connection | None = None
    ) -> Document | None:
        """Current document of a source, if it has been synced successfully once"""
        conn, should_close = self._ensure_connection(conn)
        try:
            row = conn.execute(
                "SELECT * FROM documents WHERE source_id = ?", (source_id,)
            ).fetchone()
            return Document(**dict(row)) if row else None
        finally:
            if should_close:
                conn.close()

    async def set_document_status(
        self,
        source_id: str,
        status: DocumentStatus,
        error_message: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        conn, should_close = self._ensure_connection(conn)
        try:
            with conn:
                conn.execute(
                    "UPDATE documents SET status = ?, error_message = ? WHERE source_id = ?",
                    (status.value, error_message, source_id),
                )
        finally:
            if should_close:
                conn.close()

    async def replace_document(
        self,
        document: Document,
        chunks: list[DocumentChunk],
        model_name: str,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """
        Swap the document of a source and its full chunk set in one transaction

        Readers see either the previous generation or the new one, never a mix.

        Args:
            document: New document snapshot
            chunks: Chunks of the new snapshot, each with its embedding
            model_name: Embedding model that produced the vectors
            conn: Optional connection (for transactions)
        """
        for chunk in chunks:
            if chunk.embedding is None:
                raise ValueError(f"Chunk {chunk.id} has no embedding")

        conn, should_close = self._ensure_connection(conn)
        try:
            with conn:
                conn.execute(
                    """
                    DELETE FROM chunks_fts WHERE chunk_id IN (
                        SELECT id FROM document_chunks WHERE source_id = ?
                    )
                    """,
                    (document.source_id,),
                )
                conn.execute(
                    "DELETE FROM document_chunks WHERE source_id = ?", (document.source_id,)
                )
                conn.execute("DELETE FROM documents WHERE source_id = ?", (document.source_id,))

                conn.execute(
                    """
                    INSERT INTO documents (
                        id, source_id, title, url, content_hash, content_length,
                        extracted_at, status, error_message
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document.id,
                        document.source_id,
                        document.title,
                        document.url,
                        document.content_hash,
                        document.content_length,
                        _iso(document.extracted_at),
                        document.status.value,
                        document.error_message,
                    ),
                )

                conn.executemany(
                    """
                    INSERT INTO document_chunks (
                        id, document_id, source_id, chunk_position, content, context_header,
                        char_start, char_end, overlap_chars, token_count, embedding,
                        model_name, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            chunk.id,
                            chunk.document_id,
                            chunk.source_id,
                            chunk.chunk_position,
                            chunk.content,
                            chunk.context_header,
                            chunk.char_start,
                            chunk.char_end,
                            chunk.overlap_chars,
                            chunk.token_count,
                            serialize_vector(chunk.embedding),
                            model_name,
                            _iso(chunk.created_at),
                        )
                        for chunk in chunks
                    ],
                )

                conn.executemany(
                    "INSERT INTO chunks_fts (chunk_id, content, context_header) VALUES (?, ?, ?)",
                    [(chunk.id, chunk.content, chunk.context_header) for chunk in chunks],
                )
        finally:
            if should_close:
                conn.close()

    async def get_chunks(
        self, source_id: str, conn: sqlite3.Connection | None = None
    ) -> list[DocumentChunk]:
        """Chunks of the current document of a source, in order"""
        conn, should_close = self._ensure_connection(conn)
        try:
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM document_chunks c
                WHERE c.source_id = ?
                ORDER BY c.chunk_position
                """,
                (source_id,),
            ).fetchall()
            return [DocumentChunk(**dict(row)) for row in rows]
        finally:
            if should_close:
                conn.close()

    async def count_chunks(
        self,
        source_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Number of chunks of one source, or of the whole store"""
        conn, should_close = self._ensure_connection(conn)
        try:
            if source_id is None:
                row = conn.execute("SELECT COUNT(*) FROM document_chunks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM document_chunks WHERE source_id = ?", (source_id,)
                ).fetchone()
            return row[0] if row else 0
        finally:
            if should_close:
                conn.close()

    # Retrieval

    @staticmethod
    def _scope_filter(source_ids: list[str] | None) -> tuple[str, list[str]]:
        if not source_ids:
            return "", []
        placeholders = ", ".join("?" for _ in source_ids)
        return f" AND c.source_id IN ({placeholders})", list(source_ids)

    @staticmethod
    def _hit(row: sqlite3.Row, score: float) -> ChunkHit:
        data = dict(row)
        source_name = data.pop("source_name")
        document_title = data.pop("document_title")
        document_url = data.pop("document_url")
        data.pop("distance", None)
        data.pop("rank", None)
        return ChunkHit(
            chunk=DocumentChunk(**data),
            score=score,
            source_name=source_name,
            document_title=document_title,
            document_url=document_url,
        )

    async def similarity_search(
        self,
        agent_id: str,
        query_embedding: list[float],
        model_name: str,
        limit: int = 5,
        source_ids: list[str] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[ChunkHit]:
        """
        Rank an agent's chunks by cosine similarity to the query vector

        Scans the agent's chunks with vec_distance_cosine; score is
        1 - distance, so identical directions score 1.0.
        """
        conn, should_close = self._ensure_connection(conn)
        try:
            scope_sql, scope_params = self._scope_filter(source_ids)
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}, {_HIT_CONTEXT_COLUMNS},
                       vec_distance_cosine(c.embedding, ?) AS distance
                FROM document_chunks c
                INNER JOIN documents d ON c.document_id = d.id
                INNER JOIN knowledge_sources s ON c.source_id = s.id
                WHERE s.agent_id = ? AND c.model_name = ?{scope_sql}
                ORDER BY distance ASC, c.chunk_position ASC
                LIMIT ?
                """,
                (serialize_vector(query_embedding), agent_id, model_name, *scope_params, limit),
            ).fetchall()
            return [self._hit(row, 1.0 - row["distance"]) for row in rows]
        finally:
            if should_close:
                conn.close()

    async def keyword_search(
        self,
        agent_id: str,
        query_text: str,
        model_name: str,
        limit: int = 5,
        source_ids: list[str] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[ChunkHit]:
        """
        Keyword-based search using SQLite FTS5 with BM25 ranking

        Punctuation is stripped from the query and the remaining terms are
        OR-ed together. Score is 1 / (1 + |bm25|).
        """
        match = _fts_query(query_text)
        if not match:
            return []

        conn, should_close = self._ensure_connection(conn)
        try:
            scope_sql, scope_params = self._scope_filter(source_ids)
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}, {_HIT_CONTEXT_COLUMNS}, fts.rank AS rank
                FROM chunks_fts fts
                INNER JOIN document_chunks c ON fts.chunk_id = c.id
                INNER JOIN documents d ON c.document_id = d.id
                INNER JOIN knowledge_sources s ON c.source_id = s.id
                WHERE chunks_fts MATCH ? AND s.agent_id = ? AND c.model_name = ?{scope_sql}
                ORDER BY fts.rank
                LIMIT ?
                """,
                (match, agent_id, model_name, *scope_params, limit),
            ).fetchall()
            return [self._hit(row, 1.0 / (1.0 + abs(row["rank"]))) for row in rows]
        finally:
            if should_close:
                conn.close()

    async def count_chunks_with_other_model(
        self, agent_id: str, model_name: str, conn: sqlite3.Connection | None = None
    ) -> int:
        """Chunks of an agent embedded by a model other than model_name"""
        conn, should_close = self._ensure_connection(conn)
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM document_chunks c
                INNER JOIN knowledge_sources s ON c.source_id = s.id
                WHERE s.agent_id = ? AND c.model_name != ?
                """,
                (agent_id, model_name),
            ).fetchone()
            return row[0] if row else 0
        finally:
            if should_close:
                conn.close()

    async def has_chunks(self, agent_id: str, conn: sqlite3.Connection | None = None) -> bool:
        conn, should_close = self._ensure_connection(conn)
        try:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM document_chunks c
                    INNER JOIN knowledge_sources s ON c.source_id = s.id
                    WHERE s.agent_id = ?
                )
                """,
                (agent_id,),
            ).fetchone()
            return bool(row[0])
        finally:
            if should_close:
                conn.close()

    async def source_stats(
        self, agent_id: str, conn: sqlite3.Connection | None = None
    ) -> list[SourceStats]:
        """Per-source document and chunk counts of an agent, newest source first"""
        conn, should_close = self._ensure_connection(conn)
        try:
            rows = conn.execute(
                """
                SELECT s.id, s.name, s.last_sync_at, s.last_sync_status AS status,
                       (SELECT COUNT(*) FROM documents d WHERE d.source_id = s.id)
                           AS document_count,
                       (SELECT COUNT(*) FROM document_chunks c WHERE c.source_id = s.id)
                           AS chunk_count
                FROM knowledge_sources s
                WHERE s.agent_id = ?
                ORDER BY s.created_at DESC, s.rowid DESC
                """,
                (agent_id,),
            ).fetchall()
            return [SourceStats(**dict(row)) for row in rows]
        finally:
            if should_close:
                conn.close()

    async def health_check(self, conn: sqlite3.Connection | None = None) -> bool:
        """Check if database is properly initialized"""
        conn, should_close = self._ensure_connection(conn)
        try:
            conn.execute("SELECT COUNT(*) FROM document_chunks").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"Knowledge store health check failed: {e}")
            return False
        finally:
            if should_close:
                conn.close()

    def close(self) -> None:
        """
        Close database connection

        For :memory: databases, closes the persistent connection.
        For file databases, this is a no-op (connections are per-method).
        """
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
