from unittest.mock import AsyncMock, Mock

import pytest

from pipelines.content_fetcher import ContentFetcher, FetchExhaustedError
from pipelines.fetch_strategies import FetchResult, FetchStrategy, RepoFile


def _strategy(name, priority, result=None, supports=True, error=None):
    strategy = Mock(spec=FetchStrategy)
    strategy.name = name
    strategy.priority = priority
    strategy.supports.return_value = supports
    strategy.fetch = AsyncMock(return_value=result, side_effect=error)
    return strategy


def _result(strategy, *paths, contents=None):
    files = [RepoFile(name=p.rsplit('/', 1)[-1], path=p) for p in paths]
    return FetchResult(files=files, preloaded_content=contents or {}, strategy_used=strategy)


class TestContentFetcher:
    """Strategy chain ordering and fallback"""

    @pytest.mark.asyncio
    async def test_strategies_sorted_by_priority(self, github_client):
        """Lower priority numbers run first regardless of registration order."""
        late = _strategy("DirectoryListing", 3, _result("DirectoryListing", "docs/a.md"))
        early = _strategy("Archive", 1, _result("Archive", "docs/a.md"))
        fetcher = ContentFetcher([late, early], github_client)

        result = await fetcher.fetch("o", "r", "docs", "v1.0.0")

        assert [s.name for s in fetcher.strategies] == ["Archive", "DirectoryListing"]
        assert result.strategy_used == "Archive"
        late.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_through_declines_and_errors(self, github_client):
        """None, empty results and exceptions all move on to the next strategy."""
        declines = _strategy("Archive", 1, None)
        empty = _strategy("TreeListing", 2, FetchResult(files=[], strategy_used="TreeListing"))
        broken = _strategy("Broken", 3, error=RuntimeError("bug"))
        works = _strategy("DirectoryListing", 4, _result("DirectoryListing", "docs/a.md"))
        fetcher = ContentFetcher([declines, empty, broken, works], github_client)

        result = await fetcher.fetch("o", "r", "docs", "v1.0.0")

        assert result.strategy_used == "DirectoryListing"
        for strategy in (declines, empty, broken, works):
            strategy.fetch.assert_awaited_once_with("o", "r", "docs", "v1.0.0")

    @pytest.mark.asyncio
    async def test_unsupported_strategies_are_skipped(self, github_client):
        """A strategy that does not support the ref is never invoked."""
        archive = _strategy("Archive", 1, _result("Archive", "docs/a.md"), supports=False)
        tree = _strategy("TreeListing", 2, _result("TreeListing", "docs/a.md"))
        fetcher = ContentFetcher([archive, tree], github_client)

        result = await fetcher.fetch("o", "r", "docs", "main")

        assert result.strategy_used == "TreeListing"
        archive.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_lists_attempted_strategies(self, github_client):
        """When nothing succeeds the error names every strategy that was tried."""
        archive = _strategy("Archive", 1, None, supports=False)
        tree = _strategy("TreeListing", 2, None)
        listing = _strategy("DirectoryListing", 3, None)
        fetcher = ContentFetcher([archive, tree, listing], github_client)

        with pytest.raises(FetchExhaustedError) as exc_info:
            await fetcher.fetch("o", "r", "docs", "main")

        assert exc_info.value.attempted == ["TreeListing", "DirectoryListing"]
        assert "All fetch strategies failed" in str(exc_info.value)
        assert "TreeListing, DirectoryListing" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_no_strategies(self, github_client):
        """An empty chain fails immediately."""
        with pytest.raises(FetchExhaustedError):
            await ContentFetcher([], github_client).fetch("o", "r", "docs", "main")

    @pytest.mark.asyncio
    async def test_file_content_prefers_preloaded(self, github_client):
        """Preloaded content is served without a network call."""
        fetcher = ContentFetcher([], github_client)
        result = _result("Archive", "docs/a.md", contents={"docs/a.md": "# A"})

        assert await fetcher.get_file_content(result, "o", "r", "docs/a.md", "v1") == "# A"
        github_client.get_raw_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_file_content_downloads_when_missing(self, github_client):
        """Listing-only results fall back to the raw file endpoint."""
        github_client.get_raw_file.return_value = "# Raw"
        fetcher = ContentFetcher([], github_client)
        result = _result("TreeListing", "docs/a.md")

        assert await fetcher.get_file_content(result, "o", "r", "docs/a.md", "main") == "# Raw"
        github_client.get_raw_file.assert_awaited_once_with("o", "r", "main", "docs/a.md")
