"""Runs the fetch strategy chain and serves file content to the sync pipeline."""

import logging
from typing import List, Sequence

from pipelines.fetch_strategies import FetchResult, FetchStrategy
from pipelines.github_client import GitHubClient
from observability.metrics import record_fetch_attempt

logger = logging.getLogger(__name__)


class FetchExhaustedError(Exception):
    """Every applicable strategy declined or failed."""

    def __init__(self, owner: str, repo: str, path: str, ref: str, attempted: List[str]):
        self.attempted = list(attempted)
        tried = ", ".join(attempted) if attempted else "no strategy supports this ref"
        super().__init__(f"All fetch strategies failed for {owner}/{repo}@{ref} (path '{path}'): {tried}")


class ContentFetcher:
    """Tries strategies by ascending priority; the first non-empty result wins."""

    def __init__(self, strategies: Sequence[FetchStrategy], client: GitHubClient):
        # sorted() is stable, so equal priorities keep their given order
        self.strategies = sorted(strategies, key=lambda s: s.priority)
        self.client = client

    async def fetch(self, owner: str, repo: str, path: str, ref: str) -> FetchResult:
        attempted: List[str] = []
        for strategy in self.strategies:
            if not strategy.supports(owner, repo, ref):
                logger.debug(f"{strategy.name} does not support {owner}/{repo}@{ref}")
                continue

            attempted.append(strategy.name)
            logger.info(f"Fetching {owner}/{repo}@{ref} with {strategy.name}",
                        extra={'strategy': strategy.name})
            try:
                result = await strategy.fetch(owner, repo, path, ref)
            except Exception:
                logger.exception(f"{strategy.name} raised while fetching {owner}/{repo}@{ref}")
                record_fetch_attempt(strategy.name, "error")
                continue

            if result is not None and not result.is_empty:
                record_fetch_attempt(strategy.name, "success")
                logger.info(f"{strategy.name} returned {len(result.files)} files for {owner}/{repo}@{ref}")
                return result

            record_fetch_attempt(strategy.name, "declined")
            logger.info(f"{strategy.name} returned nothing for {owner}/{repo}@{ref}, trying next strategy")

        raise FetchExhaustedError(owner, repo, path, ref, attempted)

    async def get_file_content(self, fetch_result: FetchResult, owner: str, repo: str,
                               path: str, ref: str) -> str:
        """Return preloaded content when the strategy already has it, else download the raw file."""
        if fetch_result.has_content(path):
            return fetch_result.get_content(path)
        return await self.client.get_raw_file(owner, repo, ref, path)
