"""Read a documentation tree from the local filesystem."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

from pipelines.fetch_strategies import FetchResult, RepoFile, is_doc_file

logger = logging.getLogger(__name__)

LOCAL_STRATEGY = "Local"


@dataclass
class LocalFile:
    path: str
    content: str
    size_bytes: int


class LocalFileClient:
    """Lists and reads documentation files below a root directory."""

    def read_file(self, path) -> str:
        return Path(path).read_text(encoding='utf-8', errors='replace')

    def read_directory(self, root, pattern: str = "**/*") -> List[LocalFile]:
        """Read every documentation file matching ``pattern`` below ``root``.

        Paths in the result are relative to ``root`` with forward slashes.
        """
        base = Path(root)
        if not base.exists():
            raise FileNotFoundError(f"Local documentation root does not exist: {base}")
        if not base.is_dir():
            raise NotADirectoryError(f"Local documentation root is not a directory: {base}")

        files = []
        for candidate in sorted(base.glob(pattern or "**/*")):
            if not candidate.is_file():
                continue
            relative = candidate.relative_to(base).as_posix()
            if not is_doc_file(relative):
                continue
            content = self.read_file(candidate)
            files.append(LocalFile(path=relative, content=content, size_bytes=candidate.stat().st_size))

        logger.info(f"Read {len(files)} documentation files from {base} matching '{pattern}'")
        return files

    def fetch(self, root, pattern: str = "**/*") -> FetchResult:
        """Package a local tree as a FetchResult with all content preloaded."""
        local_files = self.read_directory(root, pattern)
        files = [
            RepoFile(name=Path(f.path).name, path=f.path, size_bytes=f.size_bytes)
            for f in local_files
        ]
        return FetchResult.with_contents(files, {f.path: f.content for f in local_files}, LOCAL_STRATEGY)
