import pytest

from indexer.filters import F
from indexer.sqlite_adapter import _document_scope
from indexer.vector_store import (
    DOCUMENT_ID,
    TOKEN_COUNT,
    VERSION_ID,
    VectorRecord,
    chunk_metadata,
)


def _record(text, version_id="v1", document_id="doc-1", index=0, record_id=None):
    metadata = chunk_metadata(version_id, document_id, index, len(text.split()), "Title", "docs/a.md")
    return VectorRecord(text=text, metadata=metadata, id=record_id)


class TestSQLiteVectorStore:
    """Vector store behaviour on the SQLite backend"""

    @pytest.mark.asyncio
    async def test_add_and_search(self, vector_store):
        """The most similar chunk ranks first and scores stay within [threshold, 1]."""
        ids = await vector_store.add([
            _record("configure the web server port", index=0),
            _record("database connection pooling", index=1),
            _record("logging levels and appenders", index=2),
        ])
        assert len(ids) == 3

        results = await vector_store.similarity_search("server port", top_k=2)
        assert 1 <= len(results) <= 2
        assert results[0].id == ids[0]
        assert results[0].content == "configure the web server port"
        assert all(0.0 <= r.score <= 1.0 + 1e-6 for r in results)
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)

    @pytest.mark.asyncio
    async def test_threshold_filters_weak_matches(self, vector_store):
        """Chunks below the similarity threshold are excluded."""
        await vector_store.add([_record("alpha beta"), _record("gamma delta", index=1)])
        results = await vector_store.similarity_search("alpha beta", top_k=10, similarity_threshold=0.99)
        assert [r.content for r in results] == ["alpha beta"]

    @pytest.mark.asyncio
    async def test_upsert_with_same_id_keeps_one_row(self, vector_store):
        """Re-adding a record id replaces the stored row."""
        await vector_store.add([_record("first version", record_id="chunk-1")])
        await vector_store.add([_record("second version", record_id="chunk-1")])

        assert await vector_store.count() == 1
        stored = await vector_store.get(["chunk-1"])
        assert stored[0].content == "second version"

    @pytest.mark.asyncio
    async def test_delete_by_ids(self, vector_store):
        """Only the listed ids are removed; empty input is a no-op."""
        ids = await vector_store.add([_record("one"), _record("two", index=1)])
        assert await vector_store.delete([]) == 0
        assert await vector_store.delete([ids[0]]) == 1
        remaining = await vector_store.get(ids)
        assert [c.id for c in remaining] == [ids[1]]

    @pytest.mark.asyncio
    async def test_delete_by_filter(self, vector_store):
        """Filter deletion removes every chunk of one document only."""
        await vector_store.add([
            _record("one", document_id="doc-1"),
            _record("two", document_id="doc-1", index=1),
            _record("three", document_id="doc-2"),
        ])
        deleted = await vector_store.delete_by_filter(F.eq(DOCUMENT_ID, "doc-1"))
        assert deleted == 2
        assert await vector_store.count() == 1
        assert await vector_store.count(F.eq(DOCUMENT_ID, "doc-2")) == 1

    @pytest.mark.asyncio
    async def test_document_delete_uses_indexed_column(self, vector_store):
        """Deleting one document's chunks reads only that document's rows."""
        await vector_store.add([
            _record("one", document_id="doc-1"),
            _record("two", document_id="doc-2"),
        ])
        statements = []
        vector_store.adapter.conn.set_trace_callback(statements.append)
        try:
            assert await vector_store.delete_by_filter(F.eq(DOCUMENT_ID, "doc-1")) == 1
        finally:
            vector_store.adapter.conn.set_trace_callback(None)

        selects = [s for s in statements if s.lstrip().upper().startswith("SELECT")]
        assert selects and all("WHERE document_id" in s for s in selects)
        assert await vector_store.count(F.eq(DOCUMENT_ID, "doc-2")) == 1

    @pytest.mark.asyncio
    async def test_compound_filter_delete(self, vector_store):
        """Filters beyond a single document id still match on metadata."""
        await vector_store.add([
            _record("one", version_id="v1", document_id="doc-1"),
            _record("two", version_id="v2", document_id="doc-1", index=1),
        ])
        deleted = await vector_store.delete_by_filter(F.eq(DOCUMENT_ID, "doc-1") & F.eq(VERSION_ID, "v2"))
        assert deleted == 1
        assert await vector_store.count(F.eq(VERSION_ID, "v1")) == 1

    @pytest.mark.asyncio
    async def test_search_respects_filter(self, vector_store):
        """A version filter hides chunks from other versions."""
        await vector_store.add([
            _record("shared words here", version_id="v1"),
            _record("shared words here", version_id="v2"),
        ])
        results = await vector_store.similarity_search("shared words", filter=F.eq(VERSION_ID, "v2"))
        assert len(results) == 1
        assert results[0].metadata[VERSION_ID] == "v2"

    @pytest.mark.asyncio
    async def test_blank_query_skips_embedding(self, vector_store, embedder):
        """Blank queries return nothing without calling the embedder."""
        assert await vector_store.similarity_search("   ") == []
        assert await vector_store.similarity_search("") == []
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_empty_add_is_noop(self, vector_store, embedder):
        """Adding nothing touches neither the embedder nor storage."""
        assert await vector_store.add([]) == []
        assert await vector_store.add(None) == []
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_embeddings_are_batched(self, vector_store, embedder):
        """Texts are embedded in batches of the configured size."""
        await vector_store.add([_record(f"text {i}", index=i) for i in range(5)])
        assert [len(batch) for batch in embedder.calls] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_token_count_estimated_when_missing(self, vector_store):
        """Records without a token count get one estimated."""
        ids = await vector_store.add([VectorRecord(text="hello world", metadata={})])
        stored = await vector_store.get(ids)
        assert stored[0].token_count == 3
        assert stored[0].metadata[TOKEN_COUNT] == 3

    @pytest.mark.asyncio
    async def test_dimension_mismatch_rejected(self, vector_store, embedder):
        """Embeddings of the wrong size are refused."""
        embedder.dimensions = 8
        with pytest.raises(ValueError):
            await vector_store.add([_record("wrong size")])

    @pytest.mark.asyncio
    async def test_non_positive_top_k_uses_default(self, vector_store):
        """top_k <= 0 falls back to the default of ten."""
        await vector_store.add([_record(f"common word {i}", index=i) for i in range(12)])
        results = await vector_store.similarity_search("common word", top_k=0)
        assert len(results) == 10

    def test_store_name(self, vector_store):
        """The SQLite store identifies itself."""
        assert vector_store.get_name() == "sqlite-numpy"


@pytest.mark.parametrize("expression,expected", [
    (F.eq(DOCUMENT_ID, "doc-1"), "doc-1"),
    (F.eq(DOCUMENT_ID, 7), None),
    (F.eq(VERSION_ID, "v1"), None),
    (F.eq(DOCUMENT_ID, "doc-1") & F.eq(VERSION_ID, "v1"), None),
])
def test_document_scope(expression, expected):
    """Only a plain document id equality narrows chunk deletion."""
    assert _document_scope(expression) == expected
