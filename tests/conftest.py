import hashlib
import io
import re
import sys
import tarfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from indexer.sqlite_adapter import SQLiteAdapter, SQLiteVectorStore
from pipelines.github_client import GitHubClient

STUB_DIMENSIONS = 64


class StubEmbedder:
    """Deterministic bag-of-words embedder; texts sharing words get similar vectors."""

    def __init__(self, dimensions: int = STUB_DIMENSIONS):
        self.dimensions = dimensions
        self.calls = []

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        return [self._vector(text) for text in texts]

    def embed(self, text):
        return self.embed_batch([text])[0]

    def _vector(self, text):
        vector = [0.0] * self.dimensions
        for word in re.findall(r'\w+', text.lower()):
            bucket = int(hashlib.md5(word.encode('utf-8')).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


def make_tarball(files, prefix="repo-1.0.0"):
    """In-memory .tar.gz laid out like a GitHub source archive."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as archive:
        for path, text in files.items():
            data = text.encode('utf-8')
            info = tarfile.TarInfo(name=f"{prefix}/{path}")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def tarball():
    return make_tarball


@pytest.fixture
def embedder():
    return StubEmbedder()


@pytest.fixture
async def sqlite_adapter(tmp_path):
    adapter = SQLiteAdapter(str(tmp_path / "docshelf-test.db"))
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture
async def vector_store(sqlite_adapter, embedder):
    return SQLiteVectorStore(sqlite_adapter, embedder, dimensions=STUB_DIMENSIONS, batch_size=2)


@pytest.fixture
def github_client():
    """GitHubClient with every network call mocked out."""
    client = Mock(spec=GitHubClient)
    client.archive_url.side_effect = lambda o, r, t: f"https://codeload.test/{o}/{r}/archive/refs/tags/{t}.tar.gz"
    client.tree_url.side_effect = lambda o, r, ref: f"https://api.test/repos/{o}/{r}/git/trees/{ref}"
    client.contents_url.side_effect = lambda o, r, p: f"https://api.test/repos/{o}/{r}/contents/{p}"
    client.get_json = AsyncMock()
    client.get_bytes = AsyncMock()
    client.get_raw_file = AsyncMock()
    client.close = AsyncMock()
    return client
