"""Shared pytest fixtures for the docpipe test suite."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from docpipe.interfaces.blob_fetcher import IBlobFetcher
from docpipe.interfaces.embedding_provider import IEmbeddingProvider
from docpipe.models.document import Document
from docpipe.providers.storage.sqlite_document_store import SQLiteDocumentStore
from docpipe.services.ingestion.adaptive_config import AdaptiveConfigurator
from docpipe.services.ingestion.batch_processor import EmbeddingBatchProcessor
from docpipe.services.ingestion.chunker import SemanticChunker
from docpipe.services.ingestion.content_analyzer import ContentAnalyzer
from docpipe.services.ingestion.ingestion_service import IngestionService
from docpipe.services.ingestion.progress_tracker import ProgressTracker
from docpipe.services.ingestion.text_extractor import TextExtractor
from docpipe.services.ingestion.token_estimator import TokenEstimator
from docpipe.utils.errors import ExtractionFailedError

# ---------------------------------------------------------------------------
# Sample texts
# ---------------------------------------------------------------------------

PROSE_PARAGRAPHS = [
    "The history of the city is closely tied to the river that runs through it. "
    "Early settlers built their homes along the banks because the water was a "
    "reliable source of food and transport. Over time the small villages grew "
    "into market towns, and the market towns merged into a single city.",
    "Trade was the engine of that growth. Merchants from the coast brought salt "
    "and cloth, and they returned with grain and timber from the interior. The "
    "river made the journey cheaper than any road, which is why the warehouses "
    "were built on the water and not on the hills.",
    "In the nineteenth century the railway changed everything. Goods that had "
    "taken a week to arrive by barge now arrived in a day. The old quays fell "
    "quiet, and many of the warehouses were converted into workshops and, much "
    "later, into apartments for people who worked in the new offices.",
    "Today the river is mostly used for leisure. On summer evenings the towpaths "
    "are crowded with runners and cyclists, and the few remaining barges have "
    "become floating cafes. It is a quieter river than it once was, but it is "
    "still the reason the city exists at all.",
]

TYPESCRIPT_SAMPLE = """\
import { Request, Response } from "express";

export interface User {
  id: string;
  email: string;
  createdAt: Date;
}

export async function getUser(req: Request, res: Response): Promise<void> {
  const userId = req.params.id;
  if (!userId) {
    res.status(400).json({ error: "missing id" });
    return;
  }
  const user = await db.users.findOne({ id: userId });
  if (user === null) {
    res.status(404).json({ error: "not found" });
    return;
  }
  res.json(user);
}

export const isAdmin = (user: User): boolean => {
  return user.email.endsWith("@example.com") && user.id !== "";
};
"""


@pytest.fixture
def prose_text() -> str:
    """Four paragraphs of plain English."""
    return "\n\n".join(PROSE_PARAGRAPHS)


@pytest.fixture
def typescript_text() -> str:
    """A short TypeScript module."""
    return TYPESCRIPT_SAMPLE


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class MockEmbeddingProvider(IEmbeddingProvider):
    """Deterministic embedding provider with scripted failures.

    Each call to :meth:`embed_single` first pops the next entry of
    ``failures``; an exception entry is raised, ``None`` lets the call
    succeed.  Vectors are derived from a hash of the text.
    """

    def __init__(self, dimension: int = 8) -> None:
        self.dimension = dimension
        self.failures: list[Exception | None] = []
        self.calls: list[str] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_single(text) for text in texts]

    async def embed_single(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [digest[i] / 255.0 for i in range(self.dimension)]

    def get_dimension(self) -> int:
        return self.dimension

    def get_provider_name(self) -> str:
        return "mock_embedding"

    def is_available(self) -> bool:
        return True


class FakeBlobFetcher(IBlobFetcher):
    """Serves bytes registered per URL; unknown URLs fail like a 404."""

    def __init__(self, blobs: dict[str, bytes] | None = None) -> None:
        self.blobs: dict[str, bytes] = dict(blobs or {})
        self.fetched: list[str] = []

    async def fetch(self, url: str, max_bytes: int | None = None) -> bytes:
        self.fetched.append(url)
        if url not in self.blobs:
            raise ExtractionFailedError(f"HTTP 404 fetching {url}", provider_name="fake_blob")
        data = self.blobs[url]
        if max_bytes is not None and len(data) > max_bytes:
            raise ExtractionFailedError(f"{url} exceeds {max_bytes} bytes", provider_name="fake_blob")
        return data

    def get_provider_name(self) -> str:
        return "fake_blob"


@pytest.fixture
def mock_embedding_provider() -> MockEmbeddingProvider:
    return MockEmbeddingProvider()


@pytest.fixture
def blob_fetcher() -> FakeBlobFetcher:
    return FakeBlobFetcher()


# ---------------------------------------------------------------------------
# Pipeline components
# ---------------------------------------------------------------------------


@pytest.fixture
def estimator() -> TokenEstimator:
    """Heuristic estimator: deterministic and needs no tokenizer download."""
    return TokenEstimator(encoding_name=None)


@pytest.fixture
def analyzer() -> ContentAnalyzer:
    return ContentAnalyzer()


@pytest.fixture
def chunker(estimator: TokenEstimator, analyzer: ContentAnalyzer) -> SemanticChunker:
    return SemanticChunker(estimator=estimator, analyzer=analyzer)


@pytest_asyncio.fixture
async def document_store(tmp_path: Path) -> SQLiteDocumentStore:
    """An initialised store backed by a temporary database file."""
    store = SQLiteDocumentStore(db_path=tmp_path / "docpipe_test.db")
    await store.initialize()
    return store


def make_document(**overrides: Any) -> Document:
    """Build a pending text document with sensible defaults."""
    fields: dict[str, Any] = {
        "id": "doc-1",
        "user_id": "user-1",
        "project_id": "project-1",
        "name": "notes.txt",
        "file_url": "https://blobs.example.com/doc-1",
        "file_size": 0,
        "mime_type": "text/plain",
    }
    fields.update(overrides)
    return Document(**fields)


@pytest.fixture
def document_factory():  # noqa: ANN201
    """Return :func:`make_document` so tests can build documents."""
    return make_document


@pytest.fixture
def ingestion_service(
    document_store: SQLiteDocumentStore,
    blob_fetcher: FakeBlobFetcher,
    mock_embedding_provider: MockEmbeddingProvider,
    estimator: TokenEstimator,
    analyzer: ContentAnalyzer,
    chunker: SemanticChunker,
) -> IngestionService:
    """Full pipeline over a real SQLite store with fast retries and no pauses."""
    batch_processor = EmbeddingBatchProcessor(
        embedding_provider=mock_embedding_provider,
        document_store=document_store,
        max_retries=3,
        retry_base_delay_ms=0,
        min_batch_delay_ms=0,
    )
    return IngestionService(
        document_store=document_store,
        blob_fetcher=blob_fetcher,
        extractor=TextExtractor(),
        analyzer=analyzer,
        configurator=AdaptiveConfigurator(),
        chunker=chunker,
        batch_processor=batch_processor,
        estimator=estimator,
        progress_tracker=ProgressTracker(),
    )
