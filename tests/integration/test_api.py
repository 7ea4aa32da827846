"""Integration tests for the HTTP API routes and error middleware."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from docpipe.api.middleware import ErrorHandlingMiddleware
from docpipe.api.routes import router
from docpipe.models.document import DocumentStatus
from docpipe.models.ingestion import (
    ContentType,
    IngestionSummary,
    ProgressEvent,
    ProgressEventType,
)
from docpipe.providers.storage.sqlite_document_store import SQLiteDocumentStore
from docpipe.services.ingestion.ingestion_service import IngestionService
from docpipe.services.ingestion.staleness_watchdog import StalenessWatchdog
from docpipe.utils.errors import DocumentBusyError, EmptyContentError
from tests.conftest import FakeBlobFetcher, MockEmbeddingProvider, make_document

# ======================================================================
# Shared helpers
# ======================================================================


def _make_app(
    ingestion_service=None,
    document_store=None,
    watchdog=None,
    embedding_provider=None,
    blob_fetcher=None,
) -> FastAPI:
    """Build an app with the API router and explicit state, no lifespan."""
    app = FastAPI()
    app.add_middleware(ErrorHandlingMiddleware)
    app.include_router(router)
    app.state.ingestion_service = ingestion_service or MagicMock()
    app.state.document_store = document_store or MagicMock()
    app.state.watchdog = watchdog or MagicMock()
    app.state.embedding_provider = embedding_provider or MagicMock()
    app.state.blob_fetcher = blob_fetcher or MagicMock()
    app.state.background_runs = set()
    return app


def _summary() -> IngestionSummary:
    return IngestionSummary(
        document_id="doc-1",
        run_id="run-1",
        chunks_created=4,
        text_length=1200,
        processing_time_ms=35,
        avg_tokens_per_chunk=110,
        content_type=ContentType.NATURAL_LANGUAGE,
        strategy="small/natural_language",
    )


def _event(event_type: ProgressEventType, **kwargs) -> ProgressEvent:
    return ProgressEvent(type=event_type, document_id="doc-1", **kwargs)


def _ndjson(response) -> list[dict]:
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


_BODY = {"document_id": "doc-1", "project_id": "project-1"}


# ======================================================================
# POST /documents/process
# ======================================================================


class TestProcessDocument:
    def test_success_returns_summary(self) -> None:
        service = MagicMock()
        service.process_document = AsyncMock(return_value=_summary())
        client = TestClient(_make_app(ingestion_service=service))

        response = client.post("/api/v1/documents/process", json=_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["chunks_created"] == 4
        assert data["content_type"] == "NATURAL_LANGUAGE"
        assert data["strategy"] == "small/natural_language"
        service.process_document.assert_awaited_once_with("doc-1", "project-1")

    def test_busy_document_is_conflict(self) -> None:
        service = MagicMock()
        service.process_document = AsyncMock(side_effect=DocumentBusyError())
        client = TestClient(_make_app(ingestion_service=service))

        response = client.post("/api/v1/documents/process", json=_BODY)

        assert response.status_code == 409
        assert response.json() == {
            "error": "DocumentBusyError",
            "detail": "Document is already being processed",
            "stage": "claim",
            "document_id": "doc-1",
        }

    def test_empty_content_is_unprocessable(self) -> None:
        service = MagicMock()
        service.process_document = AsyncMock(side_effect=EmptyContentError())
        client = TestClient(_make_app(ingestion_service=service))

        response = client.post("/api/v1/documents/process", json=_BODY)

        assert response.status_code == 422
        assert response.json()["stage"] == "validate"

    def test_missing_identifiers_rejected(self) -> None:
        client = TestClient(_make_app())

        response = client.post("/api/v1/documents/process", json={"document_id": ""})

        assert response.status_code == 422


# ======================================================================
# POST /documents/process/stream
# ======================================================================


class TestProcessDocumentStream:
    def test_streams_events_until_complete(self) -> None:
        async def fake_process(document_id, project_id, progress=None):
            await progress(_event(ProgressEventType.START, progress=0.0))
            await progress(_event(ProgressEventType.PROGRESS, step="chunking_complete", progress=40.0))
            await progress(_event(ProgressEventType.COMPLETE, progress=100.0))
            return _summary()

        service = MagicMock()
        service.process_document = AsyncMock(side_effect=fake_process)
        client = TestClient(_make_app(ingestion_service=service))

        response = client.post("/api/v1/documents/process/stream", json=_BODY)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = _ndjson(response)
        assert [e["type"] for e in events] == ["start", "progress", "complete"]
        assert events[1]["step"] == "chunking_complete"

    def test_stream_ends_with_error_event(self) -> None:
        async def fake_process(document_id, project_id, progress=None):
            await progress(_event(ProgressEventType.START, progress=0.0))
            await progress(
                _event(ProgressEventType.ERROR, message="nothing", data={"stage": "validate"})
            )
            raise EmptyContentError()

        service = MagicMock()
        service.process_document = AsyncMock(side_effect=fake_process)
        client = TestClient(_make_app(ingestion_service=service))

        response = client.post("/api/v1/documents/process/stream", json=_BODY)

        events = _ndjson(response)
        assert events[-1]["type"] == "error"
        assert events[-1]["data"]["stage"] == "validate"


# ======================================================================
# GET /documents/{id}, maintenance, health
# ======================================================================


class TestStatusAndMaintenance:
    def test_document_status(self) -> None:
        store = MagicMock()
        store.get_document = AsyncMock(
            return_value=make_document(status=DocumentStatus.COMPLETED)
        )
        store.count_chunks = AsyncMock(return_value=7)
        client = TestClient(_make_app(document_store=store))

        response = client.get("/api/v1/documents/doc-1", params={"project_id": "project-1"})

        assert response.status_code == 200
        assert response.json() == {
            "document_id": "doc-1",
            "project_id": "project-1",
            "name": "notes.txt",
            "status": "completed",
            "chunk_count": 7,
        }
        store.get_document.assert_awaited_once_with("doc-1", "project-1")

    def test_unknown_document_is_not_found(self) -> None:
        store = MagicMock()
        store.get_document = AsyncMock(return_value=None)
        client = TestClient(_make_app(document_store=store))

        response = client.get("/api/v1/documents/doc-9", params={"project_id": "project-1"})

        assert response.status_code == 404
        assert response.json()["error"] == "DocumentNotFoundError"
        assert response.json()["stage"] == "fetch"

    def test_project_id_required(self) -> None:
        client = TestClient(_make_app())
        assert client.get("/api/v1/documents/doc-1").status_code == 422

    def test_reconcile(self) -> None:
        watchdog = MagicMock()
        watchdog.reconcile = AsyncMock(return_value=["doc-3", "doc-4"])
        client = TestClient(_make_app(watchdog=watchdog))

        response = client.post("/api/v1/maintenance/reconcile")

        assert response.status_code == 200
        assert response.json() == {"failed_count": 2, "document_ids": ["doc-3", "doc-4"]}

    def test_health(self) -> None:
        client = TestClient(
            _make_app(
                document_store=SQLiteDocumentStore(db_path="unused.db"),
                embedding_provider=MockEmbeddingProvider(),
                blob_fetcher=FakeBlobFetcher(),
            )
        )

        response = client.get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["providers"] == {
            "embedding": "mock_embedding",
            "storage": "sqlite_documents",
            "blob": "fake_blob",
        }


# ======================================================================
# End to end over the real pipeline
# ======================================================================


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_stream_then_status(
        self,
        ingestion_service: IngestionService,
        document_store: SQLiteDocumentStore,
        blob_fetcher: FakeBlobFetcher,
        prose_text: str,
    ) -> None:
        document = make_document(file_size=len(prose_text))
        blob_fetcher.blobs[document.file_url] = prose_text.encode()
        await document_store.add_document(document)
        app = _make_app(
            ingestion_service=ingestion_service,
            document_store=document_store,
            watchdog=StalenessWatchdog(document_store),
        )

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            streamed = await client.post("/api/v1/documents/process/stream", json=_BODY)
            status = await client.get("/api/v1/documents/doc-1", params={"project_id": "project-1"})

        events = _ndjson(streamed)
        assert events[0]["type"] == "start"
        assert events[-1]["type"] == "complete"
        chunks_created = events[-1]["data"]["chunksCreated"]
        assert status.json()["status"] == "completed"
        assert status.json()["chunk_count"] == chunks_created

    @pytest.mark.asyncio
    async def test_second_trigger_while_running_is_conflict(
        self,
        ingestion_service: IngestionService,
        document_store: SQLiteDocumentStore,
        blob_fetcher: FakeBlobFetcher,
        prose_text: str,
    ) -> None:
        document = make_document(file_size=len(prose_text))
        blob_fetcher.blobs[document.file_url] = prose_text.encode()
        await document_store.add_document(document)
        await document_store.claim_document(
            "doc-1", "run-in-flight", datetime(2000, 1, 1, tzinfo=timezone.utc)  # noqa: UP017
        )
        app = _make_app(ingestion_service=ingestion_service, document_store=document_store)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/api/v1/documents/process", json=_BODY)

        assert response.status_code == 409
        assert response.json()["stage"] == "claim"
