"""Wires settings into a ready-to-use engine: storage, fetch chain, sync and search."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config.database import DatabaseFactory
from config.settings import Settings
from indexer.chunker import DocumentChunker
from indexer.embeddings import EmbeddingManager
from pipelines.content_fetcher import ContentFetcher
from pipelines.fetch_strategies import build_strategies
from pipelines.github_client import GitHubClient
from services.search import SearchEngine
from services.sync import SyncOrchestrator
from sources.loader import SourceLoader

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    database: DatabaseFactory
    github: GitHubClient
    orchestrator: SyncOrchestrator
    search: SearchEngine

    @property
    def adapter(self):
        return self.database.get_adapter()

    @property
    def vector_store(self):
        return self.database.get_vector_store()

    def source_loader(self) -> SourceLoader:
        sources_dir = self.settings.sync.sources_dir
        return SourceLoader(Path(sources_dir) if sources_dir else None)

    async def close(self):
        await self.orchestrator.shutdown()
        await self.github.close()
        await self.database.close()


async def build_engine(settings: Optional[Settings] = None, embedder=None) -> Engine:
    """Open storage and assemble every component from settings."""
    settings = settings or Settings.from_env()
    if embedder is None:
        embedder = EmbeddingManager(settings.embedding.model_name, settings.embedding.dimensions)

    database = DatabaseFactory()
    await database.initialize(
        embedder,
        settings.database,
        dimensions=settings.embedding.dimensions,
        batch_size=settings.embedding.batch_size,
    )
    adapter = database.get_adapter()
    vector_store = database.get_vector_store()

    github = GitHubClient(settings.github)
    fetcher = ContentFetcher(build_strategies(github, settings.github), github)
    chunker = DocumentChunker(settings.chunker.max_chunk_chars, settings.chunker.overlap_chars)

    orchestrator = SyncOrchestrator(
        adapter, vector_store,
        content_fetcher=fetcher,
        chunker=chunker,
        max_workers=settings.sync.max_workers,
    )
    search = SearchEngine(adapter, vector_store, rrf_k=settings.search.rrf_k,
                          snippet_chars=settings.search.snippet_chars)

    logger.info(f"Engine ready: {settings.database.type.value} storage, "
                f"vector store {vector_store.get_name()}, {len(fetcher.strategies)} fetch strategies")
    return Engine(settings=settings, database=database, github=github,
                  orchestrator=orchestrator, search=search)
