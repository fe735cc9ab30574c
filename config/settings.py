"""Application settings for docshelf.

Every block can be built from environment variables through ``from_env()``;
``Settings.from_env()`` assembles the full tree.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from .database import DatabaseConfig


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class StrategySettings(BaseModel):
    """Enable flag and ordering for one fetch strategy."""
    enabled: bool = True
    priority: int = Field(default=100, description="Lower runs first")


class RateLimitSettings(BaseModel):
    """Self-throttling knobs for the directory listing strategy."""
    delay_ms: int = Field(default=100, ge=0, description="Delay between requests")
    max_requests_per_sync: int = Field(default=100, gt=0, description="Hard request cap per fetch")
    retry_count: int = Field(default=2, ge=0, description="Retries on rate-limit responses")
    retry_delay_ms: int = Field(default=500, ge=0, description="Base backoff delay")


class GitHubSettings(BaseModel):
    """GitHub REST API access configuration."""
    api_base_url: str = "https://api.github.com"
    raw_base_url: str = "https://raw.githubusercontent.com"
    archive_base_url: str = "https://github.com"
    token: Optional[str] = Field(default=None, description="Optional bearer token")
    request_timeout: int = Field(default=60, description="Request timeout in seconds")
    user_agent: str = "docshelf/1.0"

    archive: StrategySettings = Field(default_factory=lambda: StrategySettings(priority=1))
    tree: StrategySettings = Field(default_factory=lambda: StrategySettings(priority=2))
    contents: StrategySettings = Field(default_factory=lambda: StrategySettings(priority=3))
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    @classmethod
    def from_env(cls) -> 'GitHubSettings':
        """Create configuration from environment variables."""
        return cls(
            api_base_url=os.getenv('GITHUB_API_URL', 'https://api.github.com'),
            raw_base_url=os.getenv('GITHUB_RAW_URL', 'https://raw.githubusercontent.com'),
            archive_base_url=os.getenv('GITHUB_ARCHIVE_URL', 'https://github.com'),
            token=os.getenv('GITHUB_TOKEN') or None,
            request_timeout=int(os.getenv('GITHUB_TIMEOUT', '60')),
            archive=StrategySettings(
                enabled=_env_bool('DOCSHELF_ARCHIVE_ENABLED', True),
                priority=int(os.getenv('DOCSHELF_ARCHIVE_PRIORITY', '1')),
            ),
            tree=StrategySettings(
                enabled=_env_bool('DOCSHELF_TREE_ENABLED', True),
                priority=int(os.getenv('DOCSHELF_TREE_PRIORITY', '2')),
            ),
            contents=StrategySettings(
                enabled=_env_bool('DOCSHELF_CONTENTS_ENABLED', True),
                priority=int(os.getenv('DOCSHELF_CONTENTS_PRIORITY', '3')),
            ),
            rate_limit=RateLimitSettings(
                delay_ms=int(os.getenv('DOCSHELF_GITHUB_DELAY_MS', '100')),
                max_requests_per_sync=int(os.getenv('DOCSHELF_GITHUB_MAX_REQUESTS', '100')),
                retry_count=int(os.getenv('DOCSHELF_GITHUB_RETRY_COUNT', '2')),
                retry_delay_ms=int(os.getenv('DOCSHELF_GITHUB_RETRY_DELAY_MS', '500')),
            ),
        )


class ChunkerSettings(BaseModel):
    max_chunk_chars: int = 1000
    overlap_chars: int = 200

    @classmethod
    def from_env(cls) -> 'ChunkerSettings':
        return cls(
            max_chunk_chars=int(os.getenv('DOCSHELF_CHUNK_SIZE', '1000')),
            overlap_chars=int(os.getenv('DOCSHELF_CHUNK_OVERLAP', '200')),
        )


class EmbeddingSettings(BaseModel):
    """Sentence-transformers model selection."""
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384
    batch_size: int = Field(default=100, gt=0, description="Texts per embedding call")

    @classmethod
    def from_env(cls) -> 'EmbeddingSettings':
        return cls(
            model_name=os.getenv('EMBEDDING_MODEL', 'sentence-transformers/all-MiniLM-L6-v2'),
            dimensions=int(os.getenv('EMBEDDING_DIMENSIONS', '384')),
            batch_size=int(os.getenv('EMBEDDING_BATCH_SIZE', '100')),
        )


class SyncSettings(BaseModel):
    """Sync worker pool and schedule."""
    max_workers: int = Field(default=4, gt=0, description="Concurrent sync runs")
    cron: str = Field(default="0 2 * * *", description="Crontab for scheduled syncs")
    sources_dir: Optional[str] = None
    default_docs_path: str = "docs"

    @classmethod
    def from_env(cls) -> 'SyncSettings':
        return cls(
            max_workers=int(os.getenv('DOCSHELF_SYNC_WORKERS', '4')),
            cron=os.getenv('DOCSHELF_SYNC_CRON', '0 2 * * *'),
            sources_dir=os.getenv('DOCSHELF_SOURCES_DIR') or None,
            default_docs_path=os.getenv('DOCSHELF_DEFAULT_DOCS_PATH', 'docs'),
        )


class SearchSettings(BaseModel):
    rrf_k: int = Field(default=60, gt=0, description="Reciprocal rank fusion smoothing constant")
    snippet_chars: int = Field(default=500, gt=0, description="Lexical result content cutoff")

    @classmethod
    def from_env(cls) -> 'SearchSettings':
        return cls(
            rrf_k=int(os.getenv('DOCSHELF_RRF_K', '60')),
            snippet_chars=int(os.getenv('DOCSHELF_SNIPPET_CHARS', '500')),
        )


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_format: bool = False

    @classmethod
    def from_env(cls) -> 'LoggingSettings':
        return cls(
            level=os.getenv('LOG_LEVEL', 'INFO'),
            json_format=_env_bool('LOG_JSON', False),
        )


class Settings(BaseModel):
    """Top-level settings tree."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    chunker: ChunkerSettings = Field(default_factory=ChunkerSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create the full settings tree from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            github=GitHubSettings.from_env(),
            chunker=ChunkerSettings.from_env(),
            embedding=EmbeddingSettings.from_env(),
            sync=SyncSettings.from_env(),
            search=SearchSettings.from_env(),
            logging=LoggingSettings.from_env(),
        )
