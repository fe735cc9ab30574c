"""Database configuration and factory for docshelf.

Provides unified interface for storage operations with support for
both SQLite (development, tests) and PostgreSQL + pgvector (production).
"""

import os
import logging
from typing import Union, Optional
from enum import Enum
from pydantic import BaseModel, Field

from indexer.postgres_adapter import PostgresAdapter, PostgresConfig, PgVectorStore

logger = logging.getLogger(__name__)


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class DatabaseConfig(BaseModel):
    """Database configuration."""
    type: DatabaseType = Field(default=DatabaseType.SQLITE, description="Database type")

    # SQLite configuration
    sqlite_path: str = Field(default="docshelf.db", description="SQLite database path")

    # PostgreSQL configuration
    postgres: PostgresConfig = Field(default_factory=PostgresConfig, description="PostgreSQL configuration")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        db_type = os.getenv('DOCSHELF_DB_TYPE', 'sqlite').lower()

        if db_type == 'postgresql':
            postgres_config = PostgresConfig(
                host=os.getenv('POSTGRES_HOST', 'localhost'),
                port=int(os.getenv('POSTGRES_PORT', '5432')),
                database=os.getenv('POSTGRES_DB', 'docshelf'),
                user=os.getenv('POSTGRES_USER', 'docshelf'),
                password=os.getenv('POSTGRES_PASSWORD', ''),
                min_connections=int(os.getenv('POSTGRES_MIN_CONNECTIONS', '2')),
                max_connections=int(os.getenv('POSTGRES_MAX_CONNECTIONS', '10')),
                command_timeout=int(os.getenv('POSTGRES_COMMAND_TIMEOUT', '60'))
            )
            return cls(type=DatabaseType.POSTGRESQL, postgres=postgres_config)

        return cls(
            type=DatabaseType.SQLITE,
            sqlite_path=os.getenv('SQLITE_PATH', 'docshelf.db'),
        )


class DatabaseFactory:
    """Builds the storage adapter and the matching vector store."""

    def __init__(self):
        self._adapter: Optional[Union[PostgresAdapter, 'SQLiteAdapter']] = None
        self._vector_store = None
        self._config: Optional[DatabaseConfig] = None

    async def initialize(self, embedder, config: Optional[DatabaseConfig] = None,
                         dimensions: int = 384, batch_size: int = 100):
        """Initialize adapter and vector store based on configuration."""
        if config is None:
            config = DatabaseConfig.from_env()

        self._config = config

        if config.type == DatabaseType.POSTGRESQL:
            logger.info("Initializing PostgreSQL adapter")
            self._adapter = PostgresAdapter(config.postgres, dimensions=dimensions)
            await self._adapter.initialize()
            self._vector_store = PgVectorStore(self._adapter, embedder, dimensions=dimensions,
                                               batch_size=batch_size)
        else:
            logger.info("Initializing SQLite adapter")
            # Import here to avoid circular imports
            from indexer.sqlite_adapter import SQLiteAdapter, SQLiteVectorStore
            self._adapter = SQLiteAdapter(config.sqlite_path)
            await self._adapter.initialize()
            self._vector_store = SQLiteVectorStore(self._adapter, embedder, dimensions=dimensions,
                                                   batch_size=batch_size)

        logger.info(f"Database adapter initialized: {config.type.value}")

    async def close(self):
        """Close database connections."""
        if self._adapter:
            await self._adapter.close()
            self._adapter = None
            self._vector_store = None
            logger.info("Database adapter closed")

    def get_adapter(self) -> Union[PostgresAdapter, 'SQLiteAdapter']:
        """Get the current database adapter."""
        if self._adapter is None:
            raise RuntimeError("Database adapter not initialized. Call initialize() first.")
        return self._adapter

    def get_vector_store(self):
        """Get the vector store bound to the current adapter."""
        if self._vector_store is None:
            raise RuntimeError("Database adapter not initialized. Call initialize() first.")
        return self._vector_store

    def get_config(self) -> DatabaseConfig:
        """Get the current database configuration."""
        if self._config is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._config

    def is_postgresql(self) -> bool:
        return self._config is not None and self._config.type == DatabaseType.POSTGRESQL
