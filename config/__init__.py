"""Configuration module for docshelf.

Provides configuration management for storage, GitHub access, chunking,
embeddings, sync scheduling and search.
"""

from .database import (
    DatabaseConfig,
    DatabaseType,
    DatabaseFactory,
)
from .settings import (
    ChunkerSettings,
    EmbeddingSettings,
    GitHubSettings,
    LoggingSettings,
    RateLimitSettings,
    SearchSettings,
    Settings,
    StrategySettings,
    SyncSettings,
)

__all__ = [
    'DatabaseConfig',
    'DatabaseType',
    'DatabaseFactory',
    'ChunkerSettings',
    'EmbeddingSettings',
    'GitHubSettings',
    'LoggingSettings',
    'RateLimitSettings',
    'SearchSettings',
    'Settings',
    'StrategySettings',
    'SyncSettings',
]
