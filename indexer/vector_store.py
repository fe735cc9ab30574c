"""Vector store abstraction shared by the PostgreSQL and SQLite backends.

Writes are split in two phases so callers can keep network work (embedding)
outside storage transactions: ``prepare()`` embeds, ``write()`` persists
inside an optional caller-owned transaction. ``add()`` chains both.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from indexer.chunker import estimate_tokens
from indexer.filters import FilterExpression
from observability.metrics import record_embedding_batch

logger = logging.getLogger(__name__)

# Fixed metadata vocabulary written for every chunk
VERSION_ID = "versionId"
DOCUMENT_ID = "documentId"
CHUNK_INDEX = "chunkIndex"
TOKEN_COUNT = "tokenCount"
DOCUMENT_TITLE = "documentTitle"
DOCUMENT_PATH = "documentPath"

DEFAULT_TOP_K = 10


@dataclass
class VectorRecord:
    """Input to ``add``: text plus metadata, id optional."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class PreparedRecord:
    """A record with its id assigned and embedding computed, ready to persist."""
    id: str
    document_id: Optional[str]
    chunk_index: int
    content: str
    embedding: List[float]
    token_count: int
    metadata: Dict[str, Any]


@dataclass
class IndexedChunk:
    id: str
    document_id: Optional[str]
    chunk_index: int
    content: str
    embedding: Optional[List[float]]
    token_count: int
    metadata: Dict[str, Any]
    created_at: Optional[datetime] = None
    score: Optional[float] = None


def chunk_metadata(version_id: str, document_id: str, chunk_index: int, token_count: int,
                   title: str, path: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the metadata bag stored with each chunk."""
    metadata = dict(extra or {})
    metadata.update({
        VERSION_ID: str(version_id),
        DOCUMENT_ID: str(document_id),
        CHUNK_INDEX: chunk_index,
        TOKEN_COUNT: token_count,
        DOCUMENT_TITLE: title,
        DOCUMENT_PATH: path,
    })
    return metadata


class VectorStore(ABC):
    """Chunk storage with cosine similarity search and metadata filtering."""

    name = "vector-store"

    def __init__(self, embedder, dimensions: Optional[int] = None, batch_size: int = 100):
        self.embedder = embedder
        self.dimensions = dimensions
        self.batch_size = batch_size if batch_size > 0 else 100

    def get_name(self) -> str:
        return self.name

    def _check_dimensions(self, embedding: Sequence[float]):
        if self.dimensions is None:
            self.dimensions = len(embedding)
        elif len(embedding) != self.dimensions:
            raise ValueError(
                f"Embedding has {len(embedding)} dimensions, store {self.name} expects {self.dimensions}"
            )

    async def _embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed texts in batches of ``batch_size`` off the event loop."""
        loop = asyncio.get_running_loop()
        embeddings: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            started = time.perf_counter()
            vectors = await loop.run_in_executor(None, self.embedder.embed_batch, batch)
            record_embedding_batch(time.perf_counter() - started)
            if len(vectors) != len(batch):
                raise ValueError(f"Embedder returned {len(vectors)} vectors for {len(batch)} texts")
            embeddings.extend([float(x) for x in vector] for vector in vectors)
        for vector in embeddings:
            self._check_dimensions(vector)
        return embeddings

    async def prepare(self, records: Optional[Sequence[VectorRecord]]) -> List[PreparedRecord]:
        """Assign ids and compute embeddings. Performs no storage I/O."""
        if not records:
            return []

        embeddings = await self._embed_texts([record.text for record in records])
        prepared = []
        for record, embedding in zip(records, embeddings):
            metadata = dict(record.metadata or {})
            token_count = metadata.get(TOKEN_COUNT)
            if not isinstance(token_count, int):
                token_count = estimate_tokens(record.text)
                metadata[TOKEN_COUNT] = token_count
            chunk_index = metadata.get(CHUNK_INDEX, 0)
            document_id = metadata.get(DOCUMENT_ID)
            prepared.append(PreparedRecord(
                id=record.id or str(uuid.uuid4()),
                document_id=str(document_id) if document_id is not None else None,
                chunk_index=int(chunk_index),
                content=record.text,
                embedding=embedding,
                token_count=token_count,
                metadata=metadata,
            ))
        return prepared

    async def write(self, prepared: Sequence[PreparedRecord], conn=None) -> int:
        """Upsert prepared records, inside ``conn``'s transaction when given."""
        if not prepared:
            return 0
        await self._upsert(list(prepared), conn)
        logger.debug(f"Upserted {len(prepared)} chunks into {self.name}")
        return len(prepared)

    async def add(self, records: Optional[Sequence[VectorRecord]]) -> List[str]:
        """Embed and upsert records in one unit of work. Returns the record ids."""
        prepared = await self.prepare(records)
        await self.write(prepared)
        return [p.id for p in prepared]

    async def delete(self, ids: Optional[Sequence[str]], conn=None) -> int:
        """Remove rows by id."""
        if not ids:
            return 0
        return await self._delete_ids([str(i) for i in ids], conn)

    async def delete_by_filter(self, expression: Optional[FilterExpression], conn=None) -> int:
        """Remove every row whose metadata matches the expression."""
        if expression is None:
            return 0
        return await self._delete_where(expression, conn)

    async def similarity_search(self, query: str, top_k: int = DEFAULT_TOP_K,
                                similarity_threshold: float = 0.0,
                                filter: Optional[FilterExpression] = None) -> List[IndexedChunk]:
        """Return up to ``top_k`` chunks with cosine similarity >= threshold, best first."""
        if not query or not query.strip():
            return []
        if top_k <= 0:
            top_k = DEFAULT_TOP_K

        query_embedding = (await self._embed_texts([query]))[0]
        return await self._search(query_embedding, top_k, similarity_threshold, filter)

    @abstractmethod
    async def _upsert(self, prepared: List[PreparedRecord], conn) -> None:
        ...

    @abstractmethod
    async def _delete_ids(self, ids: List[str], conn) -> int:
        ...

    @abstractmethod
    async def _delete_where(self, expression: FilterExpression, conn) -> int:
        ...

    @abstractmethod
    async def _search(self, query_embedding: List[float], top_k: int, threshold: float,
                      expression: Optional[FilterExpression]) -> List[IndexedChunk]:
        ...

    @abstractmethod
    async def get(self, ids: Sequence[str]) -> List[IndexedChunk]:
        """Fetch rows by id."""

    @abstractmethod
    async def count(self, expression: Optional[FilterExpression] = None) -> int:
        """Count rows, optionally restricted by a filter."""
