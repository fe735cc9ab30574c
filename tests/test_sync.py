import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from indexer.filters import F
from indexer.vector_store import DOCUMENT_ID
from pipelines.content_fetcher import ContentFetcher, FetchExhaustedError
from pipelines.fetch_strategies import FetchResult, RepoFile
from services.shared.models import SyncRequest, SyncStatus
from services.sync import SyncConflictError, SyncOrchestrator, content_hash

GUIDE = """# Getting Started

Install the starter and run the application.

```java
SpringApplication.run(App.class, args);
```
"""


def _fetch_result(contents, strategy="Archive"):
    files = [RepoFile(name=path.rsplit('/', 1)[-1], path=path) for path in contents]
    return FetchResult(files=files, preloaded_content=dict(contents), strategy_used=strategy)


@pytest.fixture
def content_fetcher():
    fetcher = Mock(spec=ContentFetcher)
    fetcher.fetch = AsyncMock()

    async def get_file_content(result, owner, repo, path, ref):
        return result.get_content(path)

    fetcher.get_file_content = AsyncMock(side_effect=get_file_content)
    return fetcher


@pytest.fixture
def orchestrator(sqlite_adapter, vector_store, content_fetcher):
    return SyncOrchestrator(sqlite_adapter, vector_store, content_fetcher=content_fetcher, max_workers=2)


class TestSyncFromSource:
    """GitHub-backed sync runs"""

    @pytest.mark.asyncio
    async def test_successful_sync(self, orchestrator, content_fetcher, sqlite_adapter, vector_store):
        """Every doc file becomes a document with chunks and code examples."""
        content_fetcher.fetch.return_value = _fetch_result({
            "docs/guide.md": GUIDE,
            "docs/reference.adoc": "= Reference\n\nAll the properties.",
        })

        task = await orchestrator.sync_from_source("v1", "acme", "starter", "docs", "v1.0.0")
        run = await task

        assert run.status == SyncStatus.SUCCESS
        assert run.documents_processed == 2
        assert run.chunks_created == 2
        assert run.error_message is None
        content_fetcher.fetch.assert_awaited_once_with("acme", "starter", "docs", "v1.0.0")

        guide = await sqlite_adapter.find_document("v1", "docs/guide.md")
        assert guide.title == "Getting Started"
        assert guide.content_hash == content_hash(GUIDE)
        assert guide.doc_type == "markdown"
        assert guide.metadata["fetched_with"] == "Archive"
        assert await vector_store.count(F.eq(DOCUMENT_ID, guide.id)) == 1

        examples = await sqlite_adapter.list_code_examples(guide.id)
        assert [(e.language, e.code) for e in examples] == [("java", "SpringApplication.run(App.class, args);")]

        stored = await orchestrator.get_sync_status(run.id)
        assert stored.status == SyncStatus.SUCCESS
        assert stored.documents_processed == 2
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_resync_only_processes_changed_files(self, orchestrator, content_fetcher,
                                                       sqlite_adapter, vector_store):
        """Unchanged files are skipped and keep their chunks; new files are added."""
        content_fetcher.fetch.return_value = _fetch_result({"docs/a.md": "# A\n\nalpha"})
        await (await orchestrator.sync_from_source("v1", "acme", "starter"))

        original = await sqlite_adapter.find_document("v1", "docs/a.md")
        original_chunks = await vector_store.similarity_search("alpha", top_k=10)
        original_chunk_ids = {c.id for c in original_chunks if c.document_id == original.id}

        content_fetcher.fetch.return_value = _fetch_result({
            "docs/a.md": "# A\n\nalpha",
            "docs/b.md": "# B\n\nbeta",
            "docs/c.md": "# C\n\ngamma",
        })
        run = await (await orchestrator.sync_from_source("v1", "acme", "starter"))

        assert run.status == SyncStatus.SUCCESS
        assert run.documents_processed == 2
        unchanged = await sqlite_adapter.find_document("v1", "docs/a.md")
        assert unchanged.id == original.id
        chunks = await vector_store.similarity_search("alpha", top_k=10)
        assert {c.id for c in chunks if c.document_id == original.id} == original_chunk_ids
        assert len(await sqlite_adapter.list_documents("v1")) == 3

    @pytest.mark.asyncio
    async def test_changed_file_replaces_document_and_chunks(self, orchestrator, content_fetcher,
                                                            sqlite_adapter, vector_store):
        """A modified file swaps its document, chunks and code examples atomically."""
        content_fetcher.fetch.return_value = _fetch_result({"docs/guide.md": GUIDE})
        await (await orchestrator.sync_from_source("v1", "acme", "starter"))
        old = await sqlite_adapter.find_document("v1", "docs/guide.md")

        content_fetcher.fetch.return_value = _fetch_result({"docs/guide.md": "# Guide v2\n\nNo code here."})
        run = await (await orchestrator.sync_from_source("v1", "acme", "starter"))

        new = await sqlite_adapter.find_document("v1", "docs/guide.md")
        assert run.documents_processed == 1
        assert new.id != old.id
        assert new.title == "Guide v2"
        assert await vector_store.count(F.eq(DOCUMENT_ID, old.id)) == 0
        assert await vector_store.count(F.eq(DOCUMENT_ID, new.id)) == 1
        assert await sqlite_adapter.list_code_examples(old.id) == []
        assert await sqlite_adapter.list_code_examples(new.id) == []

    @pytest.mark.asyncio
    async def test_fetch_exhausted_fails_run(self, orchestrator, content_fetcher, sqlite_adapter):
        """When no strategy yields files the run fails with the fetcher's message."""
        content_fetcher.fetch.side_effect = FetchExhaustedError(
            "acme", "starter", "docs", "main", ["TreeListing", "DirectoryListing"]
        )
        run = await (await orchestrator.sync_from_source("v1", "acme", "starter"))

        assert run.status == SyncStatus.FAILED
        assert "All fetch strategies failed" in run.error_message
        assert run.documents_processed == 0
        assert run.chunks_created == 0
        assert await sqlite_adapter.list_documents("v1") == []
        assert (await orchestrator.get_sync_status(run.id)).status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_reports_root_cause(self, orchestrator, content_fetcher):
        """Other failures record the innermost cause as the error message."""
        try:
            raise ConnectionError("socket closed")
        except ConnectionError as cause:
            wrapped = RuntimeError("fetch blew up")
            wrapped.__cause__ = cause
        content_fetcher.fetch.side_effect = wrapped

        run = await (await orchestrator.sync_from_source("v1", "acme", "starter"))

        assert run.status == SyncStatus.FAILED
        assert run.error_message == "socket closed"

    @pytest.mark.asyncio
    async def test_file_failures_are_isolated(self, orchestrator, content_fetcher, sqlite_adapter):
        """One unreadable file does not stop the others from being ingested."""
        content_fetcher.fetch.return_value = _fetch_result({
            "docs/a.md": "# A",
            "docs/broken.md": "# Broken",
            "docs/c.md": "# C",
        })

        async def get_file_content(result, owner, repo, path, ref):
            if path == "docs/broken.md":
                raise IOError("download failed")
            return result.get_content(path)

        content_fetcher.get_file_content.side_effect = get_file_content
        run = await (await orchestrator.sync_from_source("v1", "acme", "starter"))

        assert run.status == SyncStatus.SUCCESS
        assert run.documents_processed == 2
        assert [d.path for d in await sqlite_adapter.list_documents("v1")] == ["docs/a.md", "docs/c.md"]

    @pytest.mark.asyncio
    async def test_unsupported_files_are_skipped(self, orchestrator, content_fetcher):
        """Files without a parser are ignored rather than failing the run."""
        content_fetcher.fetch.return_value = _fetch_result({"docs/a.md": "# A", "docs/notes.xyz": "?"})
        run = await (await orchestrator.sync_from_source("v1", "acme", "starter"))
        assert run.status == SyncStatus.SUCCESS
        assert run.documents_processed == 1

    @pytest.mark.asyncio
    async def test_submit_request(self, orchestrator, content_fetcher):
        """A SyncRequest maps onto sync_from_source."""
        content_fetcher.fetch.return_value = _fetch_result({"docs/a.md": "# A"})
        request = SyncRequest(version_id="v1", owner="acme", repo="starter", ref="v2.0.0")

        run = await (await orchestrator.submit(request))

        assert run.status == SyncStatus.SUCCESS
        assert run.metadata["ref"] == "v2.0.0"
        content_fetcher.fetch.assert_awaited_once_with("acme", "starter", "docs", "v2.0.0")

    @pytest.mark.asyncio
    async def test_requires_content_fetcher(self, sqlite_adapter, vector_store):
        """GitHub syncs need a configured fetcher."""
        orchestrator = SyncOrchestrator(sqlite_adapter, vector_store)
        with pytest.raises(RuntimeError):
            await orchestrator.sync_from_source("v1", "acme", "starter")


class TestSingleFlight:
    """At most one active run per version"""

    @pytest.mark.asyncio
    async def test_concurrent_sync_is_rejected(self, orchestrator, content_fetcher):
        """A second request for a busy version raises; other versions are unaffected."""
        release = asyncio.Event()

        async def slow_fetch(owner, repo, path, ref):
            await release.wait()
            return _fetch_result({"docs/a.md": "# A"})

        content_fetcher.fetch.side_effect = slow_fetch
        first = await orchestrator.sync_from_source("v1", "acme", "starter")

        assert await orchestrator.is_sync_running("v1")
        with pytest.raises(SyncConflictError) as exc_info:
            await orchestrator.sync_from_source("v1", "acme", "starter")
        assert exc_info.value.version_id == "v1"

        other = await orchestrator.sync_from_source("v2", "acme", "starter")
        release.set()
        assert (await first).status == SyncStatus.SUCCESS
        assert (await other).status == SyncStatus.SUCCESS

        assert not await orchestrator.is_sync_running("v1")
        again = await orchestrator.sync_from_source("v1", "acme", "starter")
        assert (await again).status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_simultaneous_requests_accept_exactly_one(self, orchestrator, content_fetcher):
        """Racing requests for one version produce one run and conflicts for the rest."""
        release = asyncio.Event()

        async def slow_fetch(owner, repo, path, ref):
            await release.wait()
            return _fetch_result({"docs/a.md": "# A"})

        content_fetcher.fetch.side_effect = slow_fetch

        outcomes = await asyncio.gather(
            *[orchestrator.sync_from_source("v1", "acme", "starter") for _ in range(5)],
            return_exceptions=True,
        )
        tasks = [o for o in outcomes if isinstance(o, asyncio.Task)]
        conflicts = [o for o in outcomes if isinstance(o, SyncConflictError)]

        assert len(tasks) == 1
        assert len(conflicts) == 4
        history = await orchestrator.get_sync_history("v1")
        assert len([r for r in history if not r.status.is_terminal]) == 1

        release.set()
        assert (await tasks[0]).status == SyncStatus.SUCCESS
        history = await orchestrator.get_sync_history("v1")
        assert [r.status for r in history] == [SyncStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_cancelled_run_is_marked_failed(self, orchestrator, content_fetcher):
        """Cancelling a running sync leaves a FAILED record behind."""
        started = asyncio.Event()

        async def hang(owner, repo, path, ref):
            started.set()
            await asyncio.Event().wait()

        content_fetcher.fetch.side_effect = hang
        task = await orchestrator.sync_from_source("v1", "acme", "starter")
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        latest = await orchestrator.get_latest_sync("v1")
        assert latest.status == SyncStatus.FAILED
        assert latest.error_message == "Sync run cancelled"
        assert not await orchestrator.is_sync_running("v1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("yield_first", [True, False])
    async def test_cancelled_queued_run_frees_version(self, sqlite_adapter, vector_store, content_fetcher,
                                                      yield_first):
        """A run cancelled while waiting for a worker slot ends FAILED and the version can sync again."""
        orchestrator = SyncOrchestrator(sqlite_adapter, vector_store, content_fetcher=content_fetcher,
                                        max_workers=1)
        started = asyncio.Event()
        release = asyncio.Event()

        async def fetch(owner, repo, path, ref):
            if not release.is_set():
                started.set()
                await release.wait()
            return _fetch_result({"docs/a.md": "# A"})

        content_fetcher.fetch.side_effect = fetch
        first = await orchestrator.sync_from_source("v1", "acme", "starter")
        await started.wait()

        queued = await orchestrator.sync_from_source("v2", "acme", "starter")
        if yield_first:
            await asyncio.sleep(0)
        queued.cancel()
        with pytest.raises(asyncio.CancelledError):
            await queued

        release.set()
        assert (await first).status == SyncStatus.SUCCESS
        await orchestrator.shutdown()

        latest = await orchestrator.get_latest_sync("v2")
        assert latest.status == SyncStatus.FAILED
        assert latest.error_message == "Sync run cancelled"
        assert not await orchestrator.is_sync_running("v2")

        again = await orchestrator.sync_from_source("v2", "acme", "starter")
        assert (await again).status == SyncStatus.SUCCESS


class TestSyncFromLocal:
    """Local directory sync runs"""

    @pytest.mark.asyncio
    async def test_local_tree(self, orchestrator, sqlite_adapter, tmp_path):
        """Doc files below the root are ingested with paths relative to it."""
        (tmp_path / "guide").mkdir()
        (tmp_path / "index.md").write_text("# Index\n\nWelcome.", encoding="utf-8")
        (tmp_path / "guide" / "setup.html").write_text(
            "<html><head><title>Setup</title></head><body><p>Steps</p></body></html>", encoding="utf-8"
        )
        (tmp_path / "logo.png").write_bytes(b"\x89PNG")

        run = await (await orchestrator.sync_from_local("v1", str(tmp_path)))

        assert run.status == SyncStatus.SUCCESS
        assert run.documents_processed == 2
        assert run.metadata["source"] == "local"
        documents = await sqlite_adapter.list_documents("v1")
        assert [(d.path, d.title) for d in documents] == [("guide/setup.html", "Setup"), ("index.md", "Index")]

    @pytest.mark.asyncio
    async def test_missing_root_fails_run(self, orchestrator, tmp_path):
        """A root that does not exist fails the run with a clear message."""
        run = await (await orchestrator.sync_from_local("v1", str(tmp_path / "nope")))
        assert run.status == SyncStatus.FAILED
        assert "does not exist" in run.error_message


class TestSyncHistory:
    """Run history queries"""

    @pytest.mark.asyncio
    async def test_history_is_newest_first(self, orchestrator, content_fetcher):
        """History lists runs newest first and latest returns the most recent."""
        content_fetcher.fetch.return_value = _fetch_result({"docs/a.md": "# A"})
        first = await (await orchestrator.sync_from_source("v1", "acme", "starter"))
        second = await (await orchestrator.sync_from_source("v1", "acme", "starter"))

        history = await orchestrator.get_sync_history("v1")
        assert [r.id for r in history] == [second.id, first.id]
        assert (await orchestrator.get_latest_sync("v1")).id == second.id
        assert second.documents_processed == 0
        assert await orchestrator.get_latest_sync("unknown") is None

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_runs(self, orchestrator, content_fetcher):
        """shutdown() returns only after in-flight runs finish."""
        content_fetcher.fetch.return_value = _fetch_result({"docs/a.md": "# A"})
        task = await orchestrator.sync_from_source("v1", "acme", "starter")
        await orchestrator.shutdown()
        assert task.done()
