"""Sources package for docshelf.

Provides repository source configuration loading.
"""

from .loader import (
    SourceConfig,
    SourceLoader,
    VersionConfig,
    parse_github_url,
)

__all__ = [
    'SourceConfig',
    'SourceLoader',
    'VersionConfig',
    'parse_github_url',
]
