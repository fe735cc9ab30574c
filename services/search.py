"""Lexical, semantic and hybrid (Reciprocal Rank Fusion) search over one version."""

import asyncio
import logging
import time
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple, TypeVar

from indexer.filters import F
from indexer.vector_store import DOCUMENT_ID, VERSION_ID, VectorStore
from observability.metrics import record_search_metrics
from services.shared.models import SearchResult

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_RRF_K = 60


def reciprocal_rank_fusion(ranked_lists: Sequence[Sequence[T]], key: Callable[[T], Hashable],
                           k: int = DEFAULT_RRF_K) -> List[Tuple[T, float]]:
    """Merge ranked lists by summing ``1 / (k + rank)`` per list.

    ``rank`` is the 1-based position of an item's first occurrence in a list;
    later duplicates within the same list contribute nothing. The item kept as
    the representative is the one with the best single rank (earlier lists win
    ties). Output is sorted by fused score, descending.
    """
    scores: Dict[Hashable, float] = {}
    best: Dict[Hashable, Tuple[int, int, T]] = {}
    order: List[Hashable] = []

    for list_index, ranked in enumerate(ranked_lists):
        seen = set()
        for position, item in enumerate(ranked, start=1):
            identity = key(item)
            if identity in seen:
                continue
            seen.add(identity)
            if identity not in scores:
                scores[identity] = 0.0
                order.append(identity)
            scores[identity] += 1.0 / (k + position)
            if identity not in best or (position, list_index) < best[identity][:2]:
                best[identity] = (position, list_index, item)

    fused = [(best[identity][2], scores[identity]) for identity in order]
    # sorted() is stable: equal scores keep first-seen order
    return sorted(fused, key=lambda pair: pair[1], reverse=True)


class SearchEngine:
    """Search over the documents and chunks of one documentation version."""

    def __init__(self, adapter, vector_store: VectorStore, rrf_k: int = DEFAULT_RRF_K,
                 snippet_chars: int = 500):
        self.adapter = adapter
        self.vector_store = vector_store
        self.rrf_k = rrf_k
        self.snippet_chars = snippet_chars

    def _snippet(self, content: str) -> str:
        if content and len(content) > self.snippet_chars:
            return content[:self.snippet_chars] + "..."
        return content or ""

    async def lexical_search(self, version_id: str, query: str, limit: int = 10) -> List[SearchResult]:
        """Full-text relevance search over document title and body."""
        if not query or not query.strip():
            return []
        started = time.perf_counter()
        hits = await self.adapter.full_text_search(version_id, query, limit)
        results = [
            SearchResult(
                document_id=document.id,
                title=document.title,
                path=document.path,
                content=self._snippet(document.content),
                score=score,
                search_type="lexical",
            )
            for document, score in hits
        ]
        record_search_metrics("lexical", time.perf_counter() - started, len(results))
        return results

    async def semantic_search(self, version_id: str, query: str, limit: int = 10,
                              similarity_threshold: float = 0.0) -> List[SearchResult]:
        """Vector similarity over chunks of the version, joined back to their documents."""
        if not query or not query.strip():
            return []
        started = time.perf_counter()
        chunks = await self.vector_store.similarity_search(
            query, top_k=limit, similarity_threshold=similarity_threshold,
            filter=F.eq(VERSION_ID, str(version_id))
        )

        document_ids = {c.metadata.get(DOCUMENT_ID) or c.document_id for c in chunks}
        documents = await self.adapter.get_documents_by_ids([d for d in document_ids if d])

        results = []
        for chunk in chunks:
            document = documents.get(chunk.metadata.get(DOCUMENT_ID) or chunk.document_id)
            if document is None:
                logger.debug(f"Dropping chunk {chunk.id}: owning document not found")
                continue
            results.append(SearchResult(
                document_id=document.id,
                title=document.title,
                path=document.path,
                content=chunk.content,
                score=chunk.score if chunk.score is not None else 0.0,
                chunk_id=chunk.id,
                chunk_index=chunk.chunk_index,
                search_type="semantic",
            ))
        record_search_metrics("semantic", time.perf_counter() - started, len(results))
        return results

    async def hybrid_search(self, version_id: str, query: str, limit: int = 10,
                            similarity_threshold: float = 0.0,
                            candidates: Optional[int] = None) -> List[SearchResult]:
        """Run lexical and semantic search concurrently and fuse them with RRF."""
        if not query or not query.strip():
            return []
        started = time.perf_counter()
        pool_size = candidates or limit * 3

        lexical, semantic = await asyncio.gather(
            self.lexical_search(version_id, query, pool_size),
            self.semantic_search(version_id, query, pool_size, similarity_threshold),
        )

        fused = reciprocal_rank_fusion([lexical, semantic], key=lambda r: r.document_id, k=self.rrf_k)
        results = []
        for result, score in fused[:limit]:
            results.append(SearchResult(
                document_id=result.document_id,
                title=result.title,
                path=result.path,
                content=result.content,
                score=score,
                chunk_id=result.chunk_id,
                chunk_index=result.chunk_index,
                search_type="hybrid",
            ))
        logger.debug(f"Hybrid search fused {len(lexical)} lexical and {len(semantic)} semantic hits "
                     f"into {len(fused)} documents")
        record_search_metrics("hybrid", time.perf_counter() - started, len(results))
        return results
