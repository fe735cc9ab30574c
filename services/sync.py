"""Sync orchestration: fetch a version's docs, parse, chunk, embed and persist.

Runs execute as background asyncio tasks bounded by a worker semaphore.
Callers get the task back immediately and await it for the terminal
``SyncRun``. At most one run per version is PENDING or RUNNING at a time.
"""

import asyncio
import hashlib
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from indexer.chunker import DocumentChunker
from indexer.filters import F
from indexer.vector_store import DOCUMENT_ID, VectorRecord, VectorStore, chunk_metadata
from observability.logging import StructuredLogger, get_structured_logger
from observability.metrics import record_document_outcome, record_sync_conflict, record_sync_metrics
from pipelines.content_fetcher import ContentFetcher, FetchExhaustedError
from pipelines.fetch_strategies import FetchResult, RepoFile
from pipelines.local_source import LocalFileClient
from pipelines.parsers import DocumentParser, default_parsers, find_parser
from services.shared.models import CodeExample, Document, SyncRequest, SyncRun

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[FetchResult]]
Reader = Callable[[FetchResult, RepoFile], Awaitable[str]]


class SyncConflictError(Exception):
    """A sync for this version is already pending or running."""

    def __init__(self, version_id: str, active_run_id: Optional[str] = None):
        self.version_id = version_id
        self.active_run_id = active_run_id
        detail = f" (run {active_run_id})" if active_run_id else ""
        super().__init__(f"Already running a sync task for version {version_id}{detail}")


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def root_cause_message(exc: BaseException) -> str:
    seen = set()
    while exc.__cause__ is not None and id(exc) not in seen:
        seen.add(id(exc))
        exc = exc.__cause__
    return str(exc) or type(exc).__name__


class SyncOrchestrator:
    """Drives ingestion runs per documentation version."""

    def __init__(self, adapter, vector_store: VectorStore,
                 content_fetcher: Optional[ContentFetcher] = None,
                 parsers: Optional[Sequence[DocumentParser]] = None,
                 chunker: Optional[DocumentChunker] = None,
                 local_client: Optional[LocalFileClient] = None,
                 max_workers: int = 4):
        self.adapter = adapter
        self.vector_store = vector_store
        self.content_fetcher = content_fetcher
        self.parsers = list(parsers) if parsers is not None else default_parsers()
        self.chunker = chunker or DocumentChunker()
        self.local_client = local_client or LocalFileClient()
        self._semaphore = asyncio.Semaphore(max_workers)
        self._version_locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.log: StructuredLogger = get_structured_logger(__name__)

    # Entry points

    async def sync_from_source(self, version_id: str, owner: str, repo: str,
                               docs_path: str = "docs", ref: str = "main") -> "asyncio.Task[SyncRun]":
        """Start a GitHub sync. Raises SyncConflictError if the version is busy."""
        if self.content_fetcher is None:
            raise RuntimeError("No content fetcher configured for GitHub syncs")

        run = await self._accept(version_id, {
            'source': 'github', 'owner': owner, 'repo': repo, 'docs_path': docs_path, 'ref': ref,
        })

        async def load() -> FetchResult:
            return await self.content_fetcher.fetch(owner, repo, docs_path, ref)

        async def read(result: FetchResult, file: RepoFile) -> str:
            return await self.content_fetcher.get_file_content(result, owner, repo, file.path, ref)

        return self._launch(run, load, read)

    async def sync_from_local(self, version_id: str, root: str,
                              pattern: str = "**/*") -> "asyncio.Task[SyncRun]":
        """Start a sync from a local directory tree."""
        run = await self._accept(version_id, {'source': 'local', 'root': str(root), 'pattern': pattern})

        async def load() -> FetchResult:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.local_client.fetch, root, pattern)

        async def read(result: FetchResult, file: RepoFile) -> str:
            return result.get_content(file.path)

        return self._launch(run, load, read)

    async def submit(self, request: SyncRequest) -> "asyncio.Task[SyncRun]":
        return await self.sync_from_source(request.version_id, request.owner, request.repo,
                                           request.docs_path, request.ref)

    # History

    async def get_sync_status(self, run_id: str) -> Optional[SyncRun]:
        return await self.adapter.get_sync_run(run_id)

    async def get_latest_sync(self, version_id: str) -> Optional[SyncRun]:
        runs = await self.adapter.list_sync_runs(version_id, limit=1)
        return runs[0] if runs else None

    async def get_sync_history(self, version_id: Optional[str] = None, limit: int = 20) -> List[SyncRun]:
        return await self.adapter.list_sync_runs(version_id, limit=limit)

    async def is_sync_running(self, version_id: str) -> bool:
        return await self.adapter.get_active_sync_run(version_id) is not None

    async def shutdown(self):
        """Wait for in-flight runs to reach a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Internals

    async def _accept(self, version_id: str, metadata: Dict[str, str]) -> SyncRun:
        """Single-flight check and PENDING record creation as one step."""
        lock = self._version_locks.setdefault(str(version_id), asyncio.Lock())
        async with lock:
            run = SyncRun(version_id=str(version_id), metadata=metadata)
            if not await self.adapter.create_sync_run_if_idle(run):
                active = await self.adapter.get_active_sync_run(str(version_id))
                record_sync_conflict()
                raise SyncConflictError(str(version_id), active.id if active else None)
        self.log.info("Sync run accepted", run_id=run.id, version_id=run.version_id)
        return run

    def _launch(self, run: SyncRun, load: Loader, read: Reader) -> "asyncio.Task[SyncRun]":
        task = asyncio.create_task(self._execute(run, load, read), name=f"sync-{run.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: self._fail_unstarted(run, t))
        return task

    def _fail_unstarted(self, run: SyncRun, task: asyncio.Task):
        """Persist FAILED for a run whose task was cancelled before its first step."""
        if not task.cancelled() or run.status.is_terminal:
            return
        run.fail("Sync run cancelled")
        persist = asyncio.ensure_future(self.adapter.update_sync_run(run))
        self._tasks.add(persist)
        persist.add_done_callback(self._tasks.discard)

    async def _execute(self, run: SyncRun, load: Loader, read: Reader) -> SyncRun:
        log = self.log.bind(run_id=run.id, version_id=run.version_id)
        started = time.perf_counter()

        # Cancellation can land while queued for a worker slot or mid-run
        try:
            async with self._semaphore:
                await self._run_stages(run, load, read, log)
        except asyncio.CancelledError:
            if not run.status.is_terminal:
                run.fail("Sync run cancelled")
            log.warning("Sync run cancelled")
            await asyncio.shield(self.adapter.update_sync_run(run))
            raise

        record_sync_metrics(run.status.value, time.perf_counter() - started, run.chunks_created)
        return run

    async def _run_stages(self, run: SyncRun, load: Loader, read: Reader, log: StructuredLogger):
        try:
            run.start()
            await self.adapter.update_sync_run(run)
            log.info("Sync run started")

            fetch_result = await load()
            log.info(f"Fetched {len(fetch_result.files)} files via {fetch_result.strategy_used}")

            documents, chunks = await self._process_files(run, fetch_result, read, log)
            run.succeed(documents, chunks)
            log.info(f"Sync run succeeded: {documents} documents, {chunks} chunks")
        except FetchExhaustedError as e:
            log.warning(f"Sync run failed: {e}")
            run.fail(str(e))
        except Exception as e:
            log.exception("Sync run failed unexpectedly")
            run.fail(root_cause_message(e))

        try:
            await self.adapter.update_sync_run(run)
        except Exception:
            log.exception("Could not persist terminal sync state")
            raise

    async def _process_files(self, run: SyncRun, fetch_result: FetchResult, read: Reader,
                             log: StructuredLogger):
        documents_processed = 0
        chunks_created = 0

        for file in fetch_result.files:
            if not file.is_file:
                continue
            parser = find_parser(self.parsers, file.path)
            if parser is None:
                log.debug("No parser for file, skipping", path=file.path)
                record_document_outcome("unsupported")
                continue

            try:
                created = await self._process_file(run.version_id, fetch_result, file, parser, read)
            except Exception:
                log.exception("Failed to process file", path=file.path)
                record_document_outcome("failed")
                continue

            if created is None:
                log.debug("File unchanged, skipping", path=file.path)
                record_document_outcome("unchanged")
                continue

            documents_processed += 1
            chunks_created += created
            record_document_outcome("processed")

        return documents_processed, chunks_created

    async def _process_file(self, version_id: str, fetch_result: FetchResult, file: RepoFile,
                            parser: DocumentParser, read: Reader) -> Optional[int]:
        """Replace one file's document, chunks and code examples.

        Returns the number of chunks written, or None when the stored copy
        already has the same content hash.
        """
        raw = await read(fetch_result, file)
        digest = content_hash(raw)

        existing = await self.adapter.find_document(version_id, file.path)
        if existing is not None and existing.content_hash == digest:
            return None

        parsed = parser.parse(raw, file.path)
        document = Document(
            version_id=version_id,
            path=file.path,
            title=parsed.title,
            content=parsed.content,
            content_hash=digest,
            doc_type=parser.doc_type,
            metadata={**parsed.metadata, 'sha': file.sha, 'fetched_with': fetch_result.strategy_used},
        )
        chunks = self.chunker.chunk(parsed.content)
        records = [
            VectorRecord(
                text=chunk.content,
                metadata=chunk_metadata(version_id, document.id, chunk.index, chunk.token_count,
                                        document.title, document.path),
            )
            for chunk in chunks
        ]
        examples = [
            CodeExample(document_id=document.id, language=block.language, code=block.code,
                        description=block.description)
            for block in parsed.code_blocks
        ]

        # Embedding happens here, before the storage transaction opens
        prepared = await self.vector_store.prepare(records)

        async with self.adapter.transaction() as conn:
            current = await self.adapter.find_document(version_id, file.path, conn=conn)
            if current is not None and current.content_hash == digest:
                return None
            if current is not None:
                await self.vector_store.delete_by_filter(F.eq(DOCUMENT_ID, current.id), conn=conn)
                await self.adapter.delete_code_examples(current.id, conn=conn)
                await self.adapter.delete_document(current.id, conn=conn)
            await self.adapter.insert_document(document, conn=conn)
            await self.vector_store.write(prepared, conn=conn)
            await self.adapter.insert_code_examples(examples, conn=conn)

        return len(prepared)
