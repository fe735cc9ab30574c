"""Pipelines package for docshelf.

Provides GitHub access, fetch strategies, the content fetcher, local
directory reading and document parsing.
"""

from .github_client import (
    GitHubApiError,
    GitHubClient,
    NotFoundError,
    ForbiddenError,
    RateLimitedError,
)
from .fetch_strategies import (
    ArchiveFetchStrategy,
    DirectoryListingFetchStrategy,
    FetchResult,
    FetchStrategy,
    RepoFile,
    TreeListingFetchStrategy,
    build_strategies,
)
from .content_fetcher import ContentFetcher, FetchExhaustedError
from .local_source import LocalFileClient
from .parsers import DocumentParser, ParsedDocument, default_parsers, find_parser

__all__ = [
    # GitHub
    'GitHubApiError',
    'GitHubClient',
    'NotFoundError',
    'ForbiddenError',
    'RateLimitedError',

    # Strategies
    'ArchiveFetchStrategy',
    'DirectoryListingFetchStrategy',
    'FetchResult',
    'FetchStrategy',
    'RepoFile',
    'TreeListingFetchStrategy',
    'build_strategies',

    # Fetcher
    'ContentFetcher',
    'FetchExhaustedError',
    'LocalFileClient',

    # Parsers
    'DocumentParser',
    'ParsedDocument',
    'default_parsers',
    'find_parser',
]
