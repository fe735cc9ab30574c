"""Strategies for listing (and sometimes downloading) a repository's docs tree.

Each strategy answers ``supports(owner, repo, ref)`` and ``fetch(...)``;
``fetch`` returns ``None`` when it has nothing to offer instead of raising
for expected failures (missing refs, rate limits, truncated listings).
"""

import asyncio
import io
import logging
import posixpath
import random
import re
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp

from config.settings import GitHubSettings, RateLimitSettings
from pipelines.github_client import GitHubApiError, GitHubClient, NotFoundError, RateLimitedError

logger = logging.getLogger(__name__)

DOC_EXTENSIONS = ('.md', '.markdown', '.adoc', '.asciidoc', '.html', '.htm', '.txt', '.rst')

# v1, 1.2.3, v3.0.0-M1, 2.7.18.RELEASE, 1.0.0+build.5
SEMVER_TAG = re.compile(r'^v?\d+(\.\d+)*([-+.][0-9A-Za-z][0-9A-Za-z.+-]*)?$')

NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def is_doc_file(path: str) -> bool:
    return path.lower().endswith(DOC_EXTENSIONS)


def normalize_dir(path: Optional[str]) -> str:
    """Repository-relative directory with no leading or trailing slash."""
    return (path or '').replace('\\', '/').strip('/')


def is_under(path: str, directory: str) -> bool:
    if not directory:
        return True
    return path == directory or path.startswith(directory + '/')


@dataclass(frozen=True)
class RepoFile:
    name: str
    path: str
    sha: str = ""
    size_bytes: int = 0
    kind: str = "file"
    download_url: Optional[str] = None

    @property
    def is_file(self) -> bool:
        return self.kind == "file"


@dataclass
class FetchResult:
    files: List[RepoFile]
    preloaded_content: Dict[str, str] = field(default_factory=dict)
    strategy_used: str = ""

    @classmethod
    def of(cls, files: List[RepoFile], strategy: str) -> 'FetchResult':
        return cls(files=list(files), strategy_used=strategy)

    @classmethod
    def with_contents(cls, files: List[RepoFile], contents: Dict[str, str], strategy: str) -> 'FetchResult':
        return cls(files=list(files), preloaded_content=dict(contents), strategy_used=strategy)

    @property
    def is_empty(self) -> bool:
        return not self.files

    def has_content(self, path: str) -> bool:
        return path in self.preloaded_content

    def get_content(self, path: str) -> Optional[str]:
        return self.preloaded_content.get(path)


class FetchStrategy(ABC):
    """One way of obtaining a repository's documentation file list."""

    name = "strategy"

    def __init__(self, client: GitHubClient, priority: int):
        self.client = client
        self.priority = priority

    def supports(self, owner: str, repo: str, ref: str) -> bool:
        return True

    async def fetch(self, owner: str, repo: str, path: str, ref: str) -> Optional[FetchResult]:
        """Run the strategy, turning expected HTTP failures into ``None``."""
        try:
            result = await self._fetch(owner, repo, normalize_dir(path), ref)
        except NotFoundError as e:
            logger.info(f"{self.name}: {owner}/{repo}@{ref} not found ({e.url})")
            return None
        except GitHubApiError as e:
            logger.warning(f"{self.name}: GitHub API error for {owner}/{repo}@{ref}: {e}")
            return None
        except NETWORK_ERRORS as e:
            logger.warning(f"{self.name}: network error for {owner}/{repo}@{ref}: {e!r}")
            return None

        if result is None or result.is_empty:
            return None
        return result

    @abstractmethod
    async def _fetch(self, owner: str, repo: str, path: str, ref: str) -> Optional[FetchResult]:
        ...

    def __repr__(self):
        return f"{type(self).__name__}(priority={self.priority})"


class ArchiveFetchStrategy(FetchStrategy):
    """Download a tag's source tarball once and read every doc file from memory."""

    name = "Archive"

    def supports(self, owner: str, repo: str, ref: str) -> bool:
        return bool(ref) and SEMVER_TAG.match(ref) is not None

    async def _fetch(self, owner: str, repo: str, path: str, ref: str) -> Optional[FetchResult]:
        url = self.client.archive_url(owner, repo, ref)
        logger.info(f"Archive: downloading {url}")
        data = await self.client.get_bytes(url)

        try:
            files, contents = self._extract(data, path)
        except (tarfile.TarError, EOFError, OSError) as e:
            logger.warning(f"Archive: could not unpack {url}: {e}")
            return None

        logger.info(f"Archive: extracted {len(files)} documentation files from {owner}/{repo}@{ref}")
        return FetchResult.with_contents(files, contents, self.name)

    def _extract(self, data: bytes, target: str):
        files: List[RepoFile] = []
        contents: Dict[str, str] = {}
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as archive:
            for member in archive:
                if not member.isfile():
                    continue
                # GitHub tarballs wrap everything in a single "<repo>-<tag>/" directory
                _, _, relative = member.name.partition('/')
                if not relative or not is_under(relative, target) or not is_doc_file(relative):
                    continue
                handle = archive.extractfile(member)
                if handle is None:
                    continue
                text = handle.read().decode('utf-8', errors='replace')
                files.append(RepoFile(
                    name=posixpath.basename(relative),
                    path=relative,
                    size_bytes=member.size,
                ))
                contents[relative] = text
        return files, contents


class TreeListingFetchStrategy(FetchStrategy):
    """List the whole tree in one recursive call and keep doc blobs under the target path."""

    name = "TreeListing"

    async def _fetch(self, owner: str, repo: str, path: str, ref: str) -> Optional[FetchResult]:
        tree = await self.client.get_json(self.client.tree_url(owner, repo, ref), params={'recursive': '1'})

        if tree.get('truncated'):
            logger.warning(f"TreeListing: tree for {owner}/{repo}@{ref} is truncated, declining")
            return None

        files = [
            RepoFile(
                name=posixpath.basename(entry['path']),
                path=entry['path'],
                sha=entry.get('sha', ''),
                size_bytes=entry.get('size') or 0,
            )
            for entry in tree.get('tree', [])
            if entry.get('type') == 'blob'
            and is_under(entry['path'], path)
            and is_doc_file(entry['path'])
        ]
        logger.info(f"TreeListing: {len(files)} documentation files in {owner}/{repo}@{ref}")
        return FetchResult.of(files, self.name)


class BudgetExhausted(Exception):
    """The per-fetch request cap was reached."""


class DirectoryListingFetchStrategy(FetchStrategy):
    """Walk the contents API one directory at a time, throttled and budgeted."""

    name = "DirectoryListing"

    def __init__(self, client: GitHubClient, priority: int,
                 rate_limit: Optional[RateLimitSettings] = None, max_retry_delay: float = 60.0):
        super().__init__(client, priority)
        self.rate_limit = rate_limit or RateLimitSettings()
        self.max_retry_delay = max_retry_delay

    def _calculate_retry_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = (self.rate_limit.retry_delay_ms / 1000.0) * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        delay = base_delay + jitter
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_retry_delay)

    async def _list_directory(self, owner: str, repo: str, path: str, ref: str, budget: Dict[str, int]):
        url = self.client.contents_url(owner, repo, path)
        attempt = 0
        while True:
            if budget['used'] >= self.rate_limit.max_requests_per_sync:
                raise BudgetExhausted()
            if budget['used'] > 0 and self.rate_limit.delay_ms:
                await asyncio.sleep(self.rate_limit.delay_ms / 1000.0)
            budget['used'] += 1
            try:
                return await self.client.get_json(url, params={'ref': ref})
            except RateLimitedError as e:
                if attempt >= self.rate_limit.retry_count:
                    raise
                delay = self._calculate_retry_delay(attempt, e.retry_after)
                attempt += 1
                logger.info(f"DirectoryListing: rate limited on {url}, retry {attempt} in {delay:.2f}s")
                await asyncio.sleep(delay)

    async def _fetch(self, owner: str, repo: str, path: str, ref: str) -> Optional[FetchResult]:
        budget = {'used': 0}
        files: List[RepoFile] = []
        pending = [path]

        try:
            while pending:
                directory = pending.pop(0)
                listing = await self._list_directory(owner, repo, directory, ref, budget)
                entries = listing if isinstance(listing, list) else [listing]
                for entry in entries:
                    kind = entry.get('type')
                    if kind == 'dir':
                        pending.append(entry['path'])
                    elif kind == 'file' and is_doc_file(entry['path']):
                        files.append(RepoFile(
                            name=entry.get('name') or posixpath.basename(entry['path']),
                            path=entry['path'],
                            sha=entry.get('sha', ''),
                            size_bytes=entry.get('size') or 0,
                            download_url=entry.get('download_url'),
                        ))
        except BudgetExhausted:
            logger.warning(
                f"DirectoryListing: request budget of {self.rate_limit.max_requests_per_sync} "
                f"exhausted for {owner}/{repo}@{ref}, declining"
            )
            return None
        except RateLimitedError as e:
            logger.warning(f"DirectoryListing: still rate limited after {self.rate_limit.retry_count} retries: {e}")
            return None

        logger.info(f"DirectoryListing: {len(files)} documentation files in {owner}/{repo}@{ref} "
                    f"using {budget['used']} requests")
        return FetchResult.of(files, self.name)


def build_strategies(client: GitHubClient, settings: GitHubSettings) -> List[FetchStrategy]:
    """Instantiate the enabled strategies with their configured priorities."""
    strategies: List[FetchStrategy] = []
    if settings.archive.enabled:
        strategies.append(ArchiveFetchStrategy(client, settings.archive.priority))
    if settings.tree.enabled:
        strategies.append(TreeListingFetchStrategy(client, settings.tree.priority))
    if settings.contents.enabled:
        strategies.append(DirectoryListingFetchStrategy(client, settings.contents.priority,
                                                        settings.rate_limit))
    return strategies
