"""Minimal async GitHub REST client used by the fetch strategies.

Maps 404, 403 and 429 responses to distinct exception types so strategies
can tell "not there", "not allowed" and "slow down" apart.
"""

import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from config.settings import GitHubSettings

logger = logging.getLogger(__name__)


class GitHubApiError(Exception):
    """Non-success response from GitHub."""

    def __init__(self, status: int, url: str, message: str = ""):
        self.status = status
        self.url = url
        super().__init__(f"GitHub returned {status} for {url}" + (f": {message}" if message else ""))


class NotFoundError(GitHubApiError):
    pass


class ForbiddenError(GitHubApiError):
    pass


class RateLimitedError(GitHubApiError):
    """429, or 403 with an exhausted rate-limit budget."""

    def __init__(self, status: int, url: str, retry_after: Optional[float] = None, message: str = ""):
        super().__init__(status, url, message)
        self.retry_after = retry_after


def _retry_after(headers) -> Optional[float]:
    value = headers.get('Retry-After')
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class GitHubClient:
    """Async GitHub client over one aiohttp session."""

    def __init__(self, settings: Optional[GitHubSettings] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings or GitHubSettings()
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        """Async context manager entry."""
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': self.settings.user_agent}
            )
            self._owns_session = True
        return self.session

    async def close(self):
        """Close the session if this client created it."""
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    def _headers(self, accept: str) -> Dict[str, str]:
        headers = {'Accept': accept}
        if self.settings.token:
            headers['Authorization'] = f"Bearer {self.settings.token}"
        return headers

    # URL builders

    def archive_url(self, owner: str, repo: str, tag: str) -> str:
        return f"{self.settings.archive_base_url}/{owner}/{repo}/archive/refs/tags/{quote(tag, safe='')}.tar.gz"

    def tree_url(self, owner: str, repo: str, ref: str) -> str:
        return f"{self.settings.api_base_url}/repos/{owner}/{repo}/git/trees/{quote(ref, safe='')}"

    def contents_url(self, owner: str, repo: str, path: str) -> str:
        return f"{self.settings.api_base_url}/repos/{owner}/{repo}/contents/{quote(path.strip('/'))}"

    def raw_url(self, owner: str, repo: str, ref: str, path: str) -> str:
        return f"{self.settings.raw_base_url}/{owner}/{repo}/{quote(ref)}/{quote(path.lstrip('/'))}"

    # Requests

    async def _request(self, url: str, params: Optional[Dict[str, str]] = None,
                       accept: str = 'application/vnd.github+json') -> bytes:
        session = self._ensure_session()
        async with session.get(url, params=params, headers=self._headers(accept)) as response:
            body = await response.read()
            status = response.status
            if status < 400:
                return body

            message = body[:200].decode('utf-8', errors='replace')
            if status == 404:
                raise NotFoundError(status, url, message)
            if status == 429 or (status == 403 and response.headers.get('X-RateLimit-Remaining') == '0'):
                raise RateLimitedError(status, url, _retry_after(response.headers), message)
            if status == 403:
                raise ForbiddenError(status, url, message)
            raise GitHubApiError(status, url, message)

    async def get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET a JSON API resource."""
        body = await self._request(url, params=params)
        return json.loads(body)

    async def get_bytes(self, url: str) -> bytes:
        """GET a binary resource such as a source archive."""
        return await self._request(url, accept='application/octet-stream')

    async def get_text(self, url: str) -> str:
        """GET a raw file as UTF-8 text."""
        body = await self._request(url, accept='application/vnd.github.raw')
        return body.decode('utf-8', errors='replace')

    async def get_raw_file(self, owner: str, repo: str, ref: str, path: str) -> str:
        return await self.get_text(self.raw_url(owner, repo, ref, path))
