"""PostgreSQL database adapter for docshelf.

Production backend: asyncpg connection pool with pgvector for cosine
similarity, a GIN full-text index for lexical search and JSON path
predicates for metadata filtering.
"""

import logging
import json
from contextlib import asynccontextmanager
from typing import List, Dict, Any, Optional, Sequence, Tuple

import asyncpg
import numpy as np
from pgvector.asyncpg import register_vector
from pydantic import BaseModel

from indexer.filters import FilterExpression, to_jsonpath
from indexer.vector_store import IndexedChunk, PreparedRecord, VectorStore
from services.shared.models import CodeExample, Document, SyncRun, SyncStatus

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS documents (
    id UUID PRIMARY KEY,
    version_id TEXT NOT NULL,
    title TEXT,
    path TEXT NOT NULL,
    content TEXT NOT NULL,
    content_hash VARCHAR(64) NOT NULL,
    doc_type VARCHAR(32),
    metadata JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (version_id, path)
);
CREATE INDEX IF NOT EXISTS idx_documents_fts ON documents
    USING GIN (to_tsvector('english', coalesce(title, '') || ' ' || content));

CREATE TABLE IF NOT EXISTS document_chunks (
    id UUID PRIMARY KEY,
    document_id UUID,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    embedding vector({dimensions}),
    token_count INTEGER NOT NULL DEFAULT 0,
    metadata JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_document_chunks_document ON document_chunks(document_id);
CREATE INDEX IF NOT EXISTS idx_document_chunks_embedding ON document_chunks
    USING hnsw (embedding vector_cosine_ops);
CREATE INDEX IF NOT EXISTS idx_document_chunks_metadata ON document_chunks
    USING GIN (metadata jsonb_path_ops);

CREATE TABLE IF NOT EXISTS code_examples (
    id UUID PRIMARY KEY,
    document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    language VARCHAR(64),
    code TEXT NOT NULL,
    description TEXT
);
CREATE INDEX IF NOT EXISTS idx_code_examples_document ON code_examples(document_id);

CREATE TABLE IF NOT EXISTS sync_runs (
    id UUID PRIMARY KEY,
    version_id TEXT NOT NULL,
    status VARCHAR(16) NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    documents_processed INTEGER NOT NULL DEFAULT 0,
    chunks_created INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    metadata JSONB NOT NULL DEFAULT '{{}}'
);
CREATE INDEX IF NOT EXISTS idx_sync_runs_version ON sync_runs(version_id, started_at DESC);
CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_runs_active
    ON sync_runs(version_id) WHERE status IN ('PENDING', 'RUNNING');
"""

FTS_DOCUMENT = "to_tsvector('english', coalesce(d.title, '') || ' ' || d.content)"


class PostgresConfig(BaseModel):
    """PostgreSQL connection configuration."""
    host: str = "localhost"
    port: int = 5432
    database: str = "docshelf"
    user: str = "docshelf"
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    command_timeout: int = 60


async def _init_connection(conn: asyncpg.Connection):
    await register_vector(conn)
    await conn.set_type_codec('jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog')


class PostgresAdapter:
    """PostgreSQL database adapter with pgvector support."""

    def __init__(self, config: PostgresConfig, dimensions: int = 384):
        self.config = config
        self.dimensions = dimensions
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Ensure schema exists, then open the connection pool."""
        try:
            # The vector type must exist before pool connections register its codec.
            conn = await asyncpg.connect(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
            )
            try:
                await conn.execute(SCHEMA_SQL.format(dimensions=self.dimensions))
            finally:
                await conn.close()
            logger.info("PostgreSQL schema ensured")

            self.pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=self.config.command_timeout,
                init=_init_connection
            )
            logger.info("PostgreSQL connection pool initialized")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to initialize PostgreSQL: {e}")
            raise

    async def close(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    @asynccontextmanager
    async def transaction(self):
        """Acquire a pooled connection and run the block in one transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def _using(self, conn):
        if conn is not None:
            yield conn
        else:
            async with self.transaction() as tx:
                yield tx

    # Documents

    def _row_to_document(self, row) -> Document:
        return Document(
            id=str(row['id']),
            version_id=row['version_id'],
            title=row['title'],
            path=row['path'],
            content=row['content'],
            content_hash=row['content_hash'],
            doc_type=row['doc_type'],
            metadata=row['metadata'] or {},
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    async def find_document(self, version_id: str, path: str, conn=None) -> Optional[Document]:
        """Find the document stored for a path in a version."""
        async with self._using(conn) as c:
            row = await c.fetchrow(
                "SELECT * FROM documents WHERE version_id = $1 AND path = $2",
                str(version_id), path
            )
        return self._row_to_document(row) if row else None

    async def get_documents_by_ids(self, ids: Sequence[str]) -> Dict[str, Document]:
        """Batch lookup of documents by id."""
        ids = [str(i) for i in ids if i]
        if not ids:
            return {}
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM documents WHERE id = ANY($1::uuid[])", ids)
        return {str(row['id']): self._row_to_document(row) for row in rows}

    async def list_documents(self, version_id: str) -> List[Document]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM documents WHERE version_id = $1 ORDER BY path", str(version_id)
            )
        return [self._row_to_document(row) for row in rows]

    async def insert_document(self, document: Document, conn=None) -> Document:
        async with self._using(conn) as c:
            await c.execute(
                """
                INSERT INTO documents (id, version_id, title, path, content, content_hash,
                                       doc_type, metadata, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                document.id, str(document.version_id), document.title, document.path,
                document.content, document.content_hash, document.doc_type,
                document.metadata, document.created_at, document.updated_at
            )
        return document

    async def delete_document(self, document_id: str, conn=None) -> None:
        """Delete a document; code examples go with it through the foreign key."""
        async with self._using(conn) as c:
            await c.execute("DELETE FROM documents WHERE id = $1", document_id)

    async def full_text_search(self, version_id: str, query: str,
                               limit: int = 10) -> List[Tuple[Document, float]]:
        """ts_rank-ordered search over title and content within one version."""
        if not query or not query.strip():
            return []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT d.*, ts_rank({FTS_DOCUMENT}, plainto_tsquery('english', $2)) AS rank
                FROM documents d
                WHERE d.version_id = $1
                  AND {FTS_DOCUMENT} @@ plainto_tsquery('english', $2)
                ORDER BY rank DESC
                LIMIT $3
                """,
                str(version_id), query, limit
            )
        return [(self._row_to_document(row), float(row['rank'])) for row in rows]

    # Code examples

    async def insert_code_examples(self, examples: Sequence[CodeExample], conn=None) -> None:
        if not examples:
            return
        async with self._using(conn) as c:
            await c.executemany(
                "INSERT INTO code_examples (id, document_id, language, code, description) VALUES ($1, $2, $3, $4, $5)",
                [(e.id, e.document_id, e.language, e.code, e.description) for e in examples]
            )

    async def delete_code_examples(self, document_id: str, conn=None) -> None:
        async with self._using(conn) as c:
            await c.execute("DELETE FROM code_examples WHERE document_id = $1", document_id)

    async def list_code_examples(self, document_id: str) -> List[CodeExample]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM code_examples WHERE document_id = $1", document_id
            )
        return [
            CodeExample(id=str(r['id']), document_id=str(r['document_id']), language=r['language'],
                        code=r['code'], description=r['description'] or '')
            for r in rows
        ]

    # Sync runs

    def _row_to_sync_run(self, row) -> SyncRun:
        return SyncRun(
            id=str(row['id']),
            version_id=row['version_id'],
            status=SyncStatus(row['status']),
            started_at=row['started_at'],
            completed_at=row['completed_at'],
            documents_processed=row['documents_processed'],
            chunks_created=row['chunks_created'],
            error_message=row['error_message'],
            metadata=row['metadata'] or {},
        )

    async def create_sync_run_if_idle(self, run: SyncRun) -> bool:
        """Insert a run unless the version already has a PENDING or RUNNING one.

        The partial unique index makes the check and the insert one atomic step.
        """
        async with self.pool.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO sync_runs (id, version_id, status, started_at, completed_at,
                                       documents_processed, chunks_created, error_message, metadata)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (version_id) WHERE status IN ('PENDING', 'RUNNING') DO NOTHING
                RETURNING id
                """,
                run.id, str(run.version_id), run.status.value, run.started_at, run.completed_at,
                run.documents_processed, run.chunks_created, run.error_message, run.metadata
            )
        return inserted is not None

    async def update_sync_run(self, run: SyncRun) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE sync_runs SET status = $2, started_at = $3, completed_at = $4,
                    documents_processed = $5, chunks_created = $6, error_message = $7, metadata = $8
                WHERE id = $1
                """,
                run.id, run.status.value, run.started_at, run.completed_at,
                run.documents_processed, run.chunks_created, run.error_message, run.metadata
            )

    async def get_sync_run(self, run_id: str) -> Optional[SyncRun]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM sync_runs WHERE id = $1", run_id)
        return self._row_to_sync_run(row) if row else None

    async def get_active_sync_run(self, version_id: str) -> Optional[SyncRun]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM sync_runs WHERE version_id = $1 AND status IN ('PENDING', 'RUNNING')",
                str(version_id)
            )
        return self._row_to_sync_run(row) if row else None

    async def list_sync_runs(self, version_id: Optional[str] = None, limit: int = 20) -> List[SyncRun]:
        """Most recent runs first."""
        async with self.pool.acquire() as conn:
            if version_id is None:
                rows = await conn.fetch(
                    "SELECT * FROM sync_runs ORDER BY started_at DESC LIMIT $1", limit
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM sync_runs WHERE version_id = $1 ORDER BY started_at DESC LIMIT $2",
                    str(version_id), limit
                )
        return [self._row_to_sync_run(row) for row in rows]


class PgVectorStore(VectorStore):
    """Vector store over ``document_chunks`` using the pgvector ``<=>`` cosine distance."""

    name = "pgvector"

    def __init__(self, adapter: PostgresAdapter, embedder, dimensions: Optional[int] = None,
                 batch_size: int = 100):
        super().__init__(embedder, dimensions=dimensions, batch_size=batch_size)
        self.adapter = adapter

    def _row_to_chunk(self, row, score: Optional[float] = None) -> IndexedChunk:
        embedding = row['embedding']
        return IndexedChunk(
            id=str(row['id']),
            document_id=str(row['document_id']) if row['document_id'] else None,
            chunk_index=row['chunk_index'],
            content=row['content'],
            embedding=embedding.tolist() if embedding is not None else None,
            token_count=row['token_count'],
            metadata=row['metadata'] or {},
            created_at=row['created_at'],
            score=score,
        )

    async def _upsert(self, prepared: List[PreparedRecord], conn) -> None:
        rows = [
            (p.id, p.document_id, p.chunk_index, p.content,
             np.asarray(p.embedding, dtype=np.float32), p.token_count, p.metadata)
            for p in prepared
        ]
        async with self.adapter._using(conn) as c:
            await c.executemany(
                """
                INSERT INTO document_chunks (id, document_id, chunk_index, content, embedding,
                                             token_count, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
                ON CONFLICT (id) DO UPDATE SET
                    document_id = EXCLUDED.document_id,
                    chunk_index = EXCLUDED.chunk_index,
                    content = EXCLUDED.content,
                    embedding = EXCLUDED.embedding,
                    token_count = EXCLUDED.token_count,
                    metadata = EXCLUDED.metadata
                """,
                rows
            )

    async def _delete_ids(self, ids: List[str], conn) -> int:
        async with self.adapter._using(conn) as c:
            status = await c.execute("DELETE FROM document_chunks WHERE id = ANY($1::uuid[])", ids)
        return int(status.split()[-1])

    async def _delete_where(self, expression: FilterExpression, conn) -> int:
        async with self.adapter._using(conn) as c:
            status = await c.execute(
                "DELETE FROM document_chunks WHERE metadata @@ $1::jsonpath",
                to_jsonpath(expression)
            )
        return int(status.split()[-1])

    async def _search(self, query_embedding: List[float], top_k: int, threshold: float,
                      expression: Optional[FilterExpression]) -> List[IndexedChunk]:
        params: List[Any] = [np.asarray(query_embedding, dtype=np.float32), 1.0 - threshold, top_k]
        filter_clause = ""
        if expression is not None:
            params.append(to_jsonpath(expression))
            filter_clause = "AND metadata @@ $4::jsonpath"

        async with self.adapter.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT *, embedding <=> $1 AS distance
                FROM document_chunks
                WHERE embedding IS NOT NULL
                  {filter_clause}
                  AND embedding <=> $1 <= $2
                ORDER BY distance
                LIMIT $3
                """,
                *params
            )
        return [self._row_to_chunk(row, 1.0 - float(row['distance'])) for row in rows]

    async def get(self, ids: Sequence[str]) -> List[IndexedChunk]:
        ids = [str(i) for i in ids]
        if not ids:
            return []
        async with self.adapter.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM document_chunks WHERE id = ANY($1::uuid[]) ORDER BY chunk_index", ids
            )
        return [self._row_to_chunk(row) for row in rows]

    async def count(self, expression: Optional[FilterExpression] = None) -> int:
        async with self.adapter.pool.acquire() as conn:
            if expression is None:
                return await conn.fetchval("SELECT COUNT(*) FROM document_chunks")
            return await conn.fetchval(
                "SELECT COUNT(*) FROM document_chunks WHERE metadata @@ $1::jsonpath",
                to_jsonpath(expression)
            )
