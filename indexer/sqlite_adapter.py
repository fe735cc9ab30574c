"""SQLite database adapter for docshelf.

Local and test backend with the same interface as the PostgreSQL adapter.
Cosine similarity is computed with numpy; lexical search uses FTS5 with
bm25 ranking; metadata filters are evaluated in Python.
"""

import re
import sqlite3
import logging
import json
import asyncio
from contextlib import asynccontextmanager
from typing import List, Dict, Any, Optional, Sequence, Tuple
from datetime import datetime

import numpy as np

from indexer.embeddings import cosine_similarities
from indexer.filters import FilterExpression, FilterOp, Key, Value, matches
from indexer.vector_store import DOCUMENT_ID, IndexedChunk, PreparedRecord, VectorStore
from services.shared.models import CodeExample, Document, SyncRun, SyncStatus

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    version_id TEXT NOT NULL,
    title TEXT,
    path TEXT NOT NULL,
    content TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    doc_type TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (version_id, path)
);

CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    document_id UNINDEXED,
    version_id UNINDEXED,
    title,
    content,
    tokenize = 'porter unicode61'
);

CREATE TABLE IF NOT EXISTS document_chunks (
    id TEXT PRIMARY KEY,
    document_id TEXT,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    embedding BLOB,
    token_count INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_document_chunks_document ON document_chunks(document_id);

CREATE TABLE IF NOT EXISTS code_examples (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    language TEXT,
    code TEXT NOT NULL,
    description TEXT
);
CREATE INDEX IF NOT EXISTS idx_code_examples_document ON code_examples(document_id);

CREATE TABLE IF NOT EXISTS sync_runs (
    id TEXT PRIMARY KEY,
    version_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    documents_processed INTEGER NOT NULL DEFAULT 0,
    chunks_created INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_sync_runs_version ON sync_runs(version_id, started_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_runs_active
    ON sync_runs(version_id) WHERE status IN ('PENDING', 'RUNNING');
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _fts_query(query: str) -> str:
    """Quote each word so user input never reaches the FTS5 query syntax."""
    terms = re.findall(r'\w+', query, flags=re.UNICODE)
    return ' '.join(f'"{term}"' for term in terms)


def _document_scope(expression: FilterExpression) -> Optional[str]:
    """The document id when the filter is ``documentId == <string>``, else None."""
    if (expression.op == FilterOp.EQ and expression.left == Key(DOCUMENT_ID)
            and isinstance(expression.right, Value) and isinstance(expression.right.value, str)):
        return expression.right.value
    return None


class SQLiteAdapter:
    """SQLite database adapter with unified interface."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Initialize SQLite connection and ensure schema exists."""
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.conn.executescript(SCHEMA_SQL)
            logger.info(f"SQLite adapter initialized: {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize SQLite: {e}")
            raise

    async def close(self):
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    @asynccontextmanager
    async def transaction(self):
        """Serialized write transaction yielding the connection."""
        async with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    @asynccontextmanager
    async def _using(self, conn):
        if conn is not None:
            yield conn
        else:
            async with self.transaction() as tx:
                yield tx

    # Documents

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        return Document(
            id=row['id'],
            version_id=row['version_id'],
            title=row['title'],
            path=row['path'],
            content=row['content'],
            content_hash=row['content_hash'],
            doc_type=row['doc_type'],
            metadata=json.loads(row['metadata'] or '{}'),
            created_at=_parse_ts(row['created_at']),
            updated_at=_parse_ts(row['updated_at']),
        )

    async def find_document(self, version_id: str, path: str, conn=None) -> Optional[Document]:
        """Find the document stored for a path in a version."""
        row = (conn or self.conn).execute(
            "SELECT * FROM documents WHERE version_id = ? AND path = ?",
            (str(version_id), path)
        ).fetchone()
        return self._row_to_document(row) if row else None

    async def get_documents_by_ids(self, ids: Sequence[str]) -> Dict[str, Document]:
        """Batch lookup of documents by id."""
        ids = [str(i) for i in ids if i]
        if not ids:
            return {}
        placeholders = ','.join('?' * len(ids))
        rows = self.conn.execute(f"SELECT * FROM documents WHERE id IN ({placeholders})", ids).fetchall()
        return {row['id']: self._row_to_document(row) for row in rows}

    async def list_documents(self, version_id: str) -> List[Document]:
        rows = self.conn.execute(
            "SELECT * FROM documents WHERE version_id = ? ORDER BY path", (str(version_id),)
        ).fetchall()
        return [self._row_to_document(row) for row in rows]

    async def insert_document(self, document: Document, conn=None) -> Document:
        """Insert a document and its full-text index entry."""
        async with self._using(conn) as tx:
            tx.execute(
                """
                INSERT INTO documents (id, version_id, title, path, content, content_hash,
                                       doc_type, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (document.id, str(document.version_id), document.title, document.path,
                 document.content, document.content_hash, document.doc_type,
                 json.dumps(document.metadata), _ts(document.created_at), _ts(document.updated_at))
            )
            tx.execute(
                "INSERT INTO documents_fts (document_id, version_id, title, content) VALUES (?, ?, ?, ?)",
                (document.id, str(document.version_id), document.title or '', document.content)
            )
        return document

    async def delete_document(self, document_id: str, conn=None) -> None:
        """Delete a document, its code examples and its full-text entry."""
        async with self._using(conn) as tx:
            tx.execute("DELETE FROM documents_fts WHERE document_id = ?", (document_id,))
            tx.execute("DELETE FROM code_examples WHERE document_id = ?", (document_id,))
            tx.execute("DELETE FROM documents WHERE id = ?", (document_id,))

    async def full_text_search(self, version_id: str, query: str,
                               limit: int = 10) -> List[Tuple[Document, float]]:
        """bm25-ranked search over title and content within one version."""
        match = _fts_query(query or '')
        if not match:
            return []
        rows = self.conn.execute(
            """
            SELECT d.*, bm25(documents_fts) AS rank
            FROM documents_fts
            JOIN documents d ON d.id = documents_fts.document_id
            WHERE documents_fts MATCH ? AND documents_fts.version_id = ?
            ORDER BY rank
            LIMIT ?
            """,
            (match, str(version_id), limit)
        ).fetchall()
        # bm25() is lower-is-better; flip so higher means more relevant
        return [(self._row_to_document(row), -float(row['rank'])) for row in rows]

    # Code examples

    async def insert_code_examples(self, examples: Sequence[CodeExample], conn=None) -> None:
        if not examples:
            return
        async with self._using(conn) as tx:
            tx.executemany(
                "INSERT INTO code_examples (id, document_id, language, code, description) VALUES (?, ?, ?, ?, ?)",
                [(e.id, e.document_id, e.language, e.code, e.description) for e in examples]
            )

    async def delete_code_examples(self, document_id: str, conn=None) -> None:
        async with self._using(conn) as tx:
            tx.execute("DELETE FROM code_examples WHERE document_id = ?", (document_id,))

    async def list_code_examples(self, document_id: str) -> List[CodeExample]:
        rows = self.conn.execute(
            "SELECT * FROM code_examples WHERE document_id = ? ORDER BY rowid", (document_id,)
        ).fetchall()
        return [
            CodeExample(id=r['id'], document_id=r['document_id'], language=r['language'],
                        code=r['code'], description=r['description'] or '')
            for r in rows
        ]

    # Sync runs

    def _row_to_sync_run(self, row: sqlite3.Row) -> SyncRun:
        return SyncRun(
            id=row['id'],
            version_id=row['version_id'],
            status=SyncStatus(row['status']),
            started_at=_parse_ts(row['started_at']),
            completed_at=_parse_ts(row['completed_at']),
            documents_processed=row['documents_processed'],
            chunks_created=row['chunks_created'],
            error_message=row['error_message'],
            metadata=json.loads(row['metadata'] or '{}'),
        )

    async def create_sync_run_if_idle(self, run: SyncRun) -> bool:
        """Insert a run unless the version already has a PENDING or RUNNING one."""
        try:
            async with self.transaction() as tx:
                tx.execute(
                    """
                    INSERT INTO sync_runs (id, version_id, status, started_at, completed_at,
                                           documents_processed, chunks_created, error_message, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (run.id, str(run.version_id), run.status.value, _ts(run.started_at),
                     _ts(run.completed_at), run.documents_processed, run.chunks_created,
                     run.error_message, json.dumps(run.metadata))
                )
        except sqlite3.IntegrityError:
            return False
        return True

    async def update_sync_run(self, run: SyncRun) -> None:
        async with self.transaction() as tx:
            tx.execute(
                """
                UPDATE sync_runs SET status = ?, started_at = ?, completed_at = ?,
                    documents_processed = ?, chunks_created = ?, error_message = ?, metadata = ?
                WHERE id = ?
                """,
                (run.status.value, _ts(run.started_at), _ts(run.completed_at),
                 run.documents_processed, run.chunks_created, run.error_message,
                 json.dumps(run.metadata), run.id)
            )

    async def get_sync_run(self, run_id: str) -> Optional[SyncRun]:
        row = self.conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_sync_run(row) if row else None

    async def get_active_sync_run(self, version_id: str) -> Optional[SyncRun]:
        row = self.conn.execute(
            "SELECT * FROM sync_runs WHERE version_id = ? AND status IN ('PENDING', 'RUNNING')",
            (str(version_id),)
        ).fetchone()
        return self._row_to_sync_run(row) if row else None

    async def list_sync_runs(self, version_id: Optional[str] = None, limit: int = 20) -> List[SyncRun]:
        """Most recent runs first."""
        if version_id is None:
            rows = self.conn.execute(
                "SELECT * FROM sync_runs ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM sync_runs WHERE version_id = ? ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (str(version_id), limit)
            ).fetchall()
        return [self._row_to_sync_run(row) for row in rows]


class SQLiteVectorStore(VectorStore):
    """Vector store over the ``document_chunks`` table of a SQLiteAdapter."""

    name = "sqlite-numpy"

    def __init__(self, adapter: SQLiteAdapter, embedder, dimensions: Optional[int] = None,
                 batch_size: int = 100):
        super().__init__(embedder, dimensions=dimensions, batch_size=batch_size)
        self.adapter = adapter

    def _row_to_chunk(self, row: sqlite3.Row, score: Optional[float] = None) -> IndexedChunk:
        blob = row['embedding']
        embedding = np.frombuffer(blob, dtype=np.float32).tolist() if blob is not None else None
        return IndexedChunk(
            id=row['id'],
            document_id=row['document_id'],
            chunk_index=row['chunk_index'],
            content=row['content'],
            embedding=embedding,
            token_count=row['token_count'],
            metadata=json.loads(row['metadata'] or '{}'),
            created_at=_parse_ts(row['created_at']),
            score=score,
        )

    async def _upsert(self, prepared: List[PreparedRecord], conn) -> None:
        now = datetime.now().isoformat()
        rows = [
            (p.id, p.document_id, p.chunk_index, p.content,
             np.asarray(p.embedding, dtype=np.float32).tobytes(),
             p.token_count, json.dumps(p.metadata), now)
            for p in prepared
        ]
        async with self.adapter._using(conn) as tx:
            tx.executemany(
                """
                INSERT INTO document_chunks (id, document_id, chunk_index, content, embedding,
                                             token_count, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    document_id = excluded.document_id,
                    chunk_index = excluded.chunk_index,
                    content = excluded.content,
                    embedding = excluded.embedding,
                    token_count = excluded.token_count,
                    metadata = excluded.metadata
                """,
                rows
            )

    async def _delete_ids(self, ids: List[str], conn) -> int:
        placeholders = ','.join('?' * len(ids))
        async with self.adapter._using(conn) as tx:
            cursor = tx.execute(f"DELETE FROM document_chunks WHERE id IN ({placeholders})", ids)
            return cursor.rowcount

    async def _delete_where(self, expression: FilterExpression, conn) -> int:
        async with self.adapter._using(conn) as tx:
            document_id = _document_scope(expression)
            if document_id is not None:
                rows = tx.execute(
                    "SELECT id, metadata FROM document_chunks WHERE document_id = ?", (document_id,)
                ).fetchall()
            else:
                rows = tx.execute("SELECT id, metadata FROM document_chunks").fetchall()
            ids = [r['id'] for r in rows if matches(expression, json.loads(r['metadata'] or '{}'))]
            if not ids:
                return 0
            placeholders = ','.join('?' * len(ids))
            cursor = tx.execute(f"DELETE FROM document_chunks WHERE id IN ({placeholders})", ids)
            return cursor.rowcount

    async def _search(self, query_embedding: List[float], top_k: int, threshold: float,
                      expression: Optional[FilterExpression]) -> List[IndexedChunk]:
        rows = self.adapter.conn.execute(
            "SELECT * FROM document_chunks WHERE embedding IS NOT NULL"
        ).fetchall()
        rows = [r for r in rows if matches(expression, json.loads(r['metadata'] or '{}'))]
        if not rows:
            return []

        matrix = np.vstack([np.frombuffer(r['embedding'], dtype=np.float32) for r in rows])
        scores = cosine_similarities(np.asarray(query_embedding, dtype=np.float32), matrix)

        ranked = sorted(
            ((float(score), row) for score, row in zip(scores, rows) if score >= threshold),
            key=lambda pair: pair[0],
            reverse=True
        )
        return [self._row_to_chunk(row, score) for score, row in ranked[:top_k]]

    async def get(self, ids: Sequence[str]) -> List[IndexedChunk]:
        ids = [str(i) for i in ids]
        if not ids:
            return []
        placeholders = ','.join('?' * len(ids))
        rows = self.adapter.conn.execute(
            f"SELECT * FROM document_chunks WHERE id IN ({placeholders}) ORDER BY chunk_index", ids
        ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    async def count(self, expression: Optional[FilterExpression] = None) -> int:
        if expression is None:
            return self.adapter.conn.execute("SELECT COUNT(*) FROM document_chunks").fetchone()[0]
        rows = self.adapter.conn.execute("SELECT metadata FROM document_chunks").fetchall()
        return sum(1 for r in rows if matches(expression, json.loads(r['metadata'] or '{}')))
