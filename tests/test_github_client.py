from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import GitHubSettings
from pipelines.github_client import (
    ForbiddenError,
    GitHubApiError,
    GitHubClient,
    NotFoundError,
    RateLimitedError,
)


def _session(status=200, body=b"{}", headers=None):
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.read = AsyncMock(return_value=body)
    session = MagicMock()
    session.get.return_value.__aenter__.return_value = response
    return session


class TestGitHubClient:
    """Status mapping and URL building"""

    def test_urls(self):
        """URLs follow the GitHub REST, raw and archive layouts."""
        client = GitHubClient(GitHubSettings())
        assert client.archive_url("spring-projects", "spring-boot", "v3.2.0") == \
            "https://github.com/spring-projects/spring-boot/archive/refs/tags/v3.2.0.tar.gz"
        assert client.tree_url("o", "r", "main") == "https://api.github.com/repos/o/r/git/trees/main"
        assert client.contents_url("o", "r", "/docs/") == "https://api.github.com/repos/o/r/contents/docs"
        assert client.raw_url("o", "r", "main", "docs/a b.md") == \
            "https://raw.githubusercontent.com/o/r/main/docs/a%20b.md"

    @pytest.mark.asyncio
    async def test_get_json(self):
        """Successful responses are decoded and the token is sent as a bearer header."""
        session = _session(body=b'{"tree": []}')
        client = GitHubClient(GitHubSettings(token="secret"), session=session)

        assert await client.get_json("https://api.test/x", params={"recursive": "1"}) == {"tree": []}
        _, kwargs = session.get.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["params"] == {"recursive": "1"}

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self):
        """Anonymous access sends no Authorization header."""
        session = _session(body=b"raw text")
        client = GitHubClient(GitHubSettings(), session=session)
        assert await client.get_raw_file("o", "r", "main", "docs/a.md") == "raw text"
        _, kwargs = session.get.call_args
        assert "Authorization" not in kwargs["headers"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,headers,expected", [
        (404, {}, NotFoundError),
        (429, {"Retry-After": "7"}, RateLimitedError),
        (403, {"X-RateLimit-Remaining": "0"}, RateLimitedError),
        (403, {"X-RateLimit-Remaining": "12"}, ForbiddenError),
        (500, {}, GitHubApiError),
    ])
    async def test_error_mapping(self, status, headers, expected):
        """Error statuses map onto distinct exception types."""
        client = GitHubClient(GitHubSettings(), session=_session(status, b"nope", headers))
        with pytest.raises(expected) as exc_info:
            await client.get_bytes("https://codeload.test/archive.tar.gz")
        assert exc_info.value.status == status

    @pytest.mark.asyncio
    async def test_retry_after_is_parsed(self):
        """Retry-After seconds are exposed on the rate-limit error."""
        client = GitHubClient(GitHubSettings(), session=_session(429, b"", {"Retry-After": "7"}))
        with pytest.raises(RateLimitedError) as exc_info:
            await client.get_json("https://api.test/x")
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_session_open(self):
        """A session passed in by the caller is not closed by the client."""
        session = _session()
        session.close = AsyncMock()
        client = GitHubClient(GitHubSettings(), session=session)
        await client.close()
        session.close.assert_not_awaited()
