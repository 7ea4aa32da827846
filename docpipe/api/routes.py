"""FastAPI routes for the docpipe ingestion service.

Endpoint                                  Method  Description
----------------------------------------  ------  -------------------------------
/api/v1/documents/process                 POST    Ingest a document, JSON summary
/api/v1/documents/process/stream          POST    Ingest a document, NDJSON events
/api/v1/documents/{document_id}           GET     Status and stored chunk count
/api/v1/maintenance/reconcile             POST    Fail stale ``processing`` rows
/api/v1/health                            GET     Liveness and adapter names

Services are read from ``app.state`` (populated by ``main._lifespan``)
through ``Annotated[..., Depends(...)]`` aliases.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse

from docpipe import __version__
from docpipe.api.middleware import error_response
from docpipe.api.schemas import (
    DocumentStatusResponse,
    ErrorResponse,
    HealthResponse,
    ProcessDocumentRequest,
    ProcessDocumentResponse,
    ReconcileResponse,
)
from docpipe.interfaces.document_store import IDocumentStore
from docpipe.models.ingestion import ProgressEvent
from docpipe.services.ingestion.ingestion_service import IngestionService
from docpipe.services.ingestion.staleness_watchdog import StalenessWatchdog
from docpipe.utils.errors import DocPipeError, DocumentNotFoundError
from docpipe.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

_NDJSON_MEDIA_TYPE = "application/x-ndjson"


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _get_ingestion_service(request: Request) -> IngestionService:
    """Return the ingestion orchestrator from application state."""
    return request.app.state.ingestion_service


def _get_document_store(request: Request) -> IDocumentStore:
    """Return the document store from application state."""
    return request.app.state.document_store


def _get_watchdog(request: Request) -> StalenessWatchdog:
    """Return the staleness watchdog from application state."""
    return request.app.state.watchdog


def _get_background_runs(request: Request) -> set[asyncio.Task]:
    """Return the set holding detached streaming runs."""
    return request.app.state.background_runs


IngestionDep = Annotated[IngestionService, Depends(_get_ingestion_service)]
StoreDep = Annotated[IDocumentStore, Depends(_get_document_store)]
WatchdogDep = Annotated[StalenessWatchdog, Depends(_get_watchdog)]
BackgroundRunsDep = Annotated[set, Depends(_get_background_runs)]


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


@router.post(
    "/documents/process",
    response_model=ProcessDocumentResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        415: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def process_document(
    body: ProcessDocumentRequest,
    service: IngestionDep,
) -> ProcessDocumentResponse | Response:
    """Run the full ingestion pipeline and return its summary."""
    try:
        summary = await service.process_document(body.document_id, body.project_id)
    except DocPipeError as exc:
        return error_response(exc, document_id=body.document_id)

    return ProcessDocumentResponse(
        document_id=summary.document_id,
        run_id=summary.run_id,
        chunks_created=summary.chunks_created,
        text_length=summary.text_length,
        processing_time_ms=summary.processing_time_ms,
        avg_tokens_per_chunk=summary.avg_tokens_per_chunk,
        content_type=summary.content_type,
        strategy=summary.strategy,
    )


@router.post("/documents/process/stream")
async def process_document_stream(
    body: ProcessDocumentRequest,
    service: IngestionDep,
    background_runs: BackgroundRunsDep,
) -> StreamingResponse:
    """Run the pipeline and stream its progress as newline-delimited JSON.

    The last line is always a ``complete`` or ``error`` event.  The run is
    detached from the response, so a client that disconnects early does not
    abort the ingestion.
    """
    queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()

    async def listener(event: ProgressEvent) -> None:
        await queue.put(event)

    async def run() -> None:
        try:
            await service.process_document(body.document_id, body.project_id, progress=listener)
        finally:
            await queue.put(None)

    task = asyncio.create_task(run())
    background_runs.add(task)
    task.add_done_callback(_make_run_reaper(background_runs, body.document_id))

    async def events() -> AsyncIterator[str]:
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event.model_dump_json() + "\n"

    return StreamingResponse(events(), media_type=_NDJSON_MEDIA_TYPE)


def _make_run_reaper(runs: set[asyncio.Task], document_id: str):  # noqa: ANN202
    def _reap(task: asyncio.Task) -> None:
        runs.discard(task)
        if task.cancelled():
            _logger.warning("stream_run_cancelled", document_id=document_id)
            return
        exc = task.exception()
        if exc is not None:
            # Already reported to the client as the stream's error event.
            _logger.info(
                "stream_run_failed",
                document_id=document_id,
                error_type=type(exc).__name__,
            )

    return _reap


# ---------------------------------------------------------------------------
# Status and maintenance
# ---------------------------------------------------------------------------


@router.get(
    "/documents/{document_id}",
    response_model=DocumentStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_document_status(
    document_id: str,
    store: StoreDep,
    project_id: Annotated[str, Query(min_length=1)],
) -> DocumentStatusResponse:
    """Return the document's status and how many chunks are stored for it."""
    document = await store.get_document(document_id, project_id)
    if document is None:
        raise DocumentNotFoundError(f"Document {document_id} not found in project {project_id}")
    return DocumentStatusResponse(
        document_id=document.id,
        project_id=document.project_id,
        name=document.name,
        status=document.status,
        chunk_count=await store.count_chunks(document.id),
    )


@router.post("/maintenance/reconcile", response_model=ReconcileResponse)
async def reconcile_stale_documents(watchdog: WatchdogDep) -> ReconcileResponse:
    """Fail every document stuck in ``processing`` past the staleness window."""
    stale_ids = await watchdog.reconcile()
    return ReconcileResponse(failed_count=len(stale_ids), document_ids=stale_ids)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Liveness check listing the configured adapters."""
    state = request.app.state
    return HealthResponse(
        status="ok",
        version=__version__,
        providers={
            "embedding": state.embedding_provider.get_provider_name(),
            "storage": state.document_store.get_provider_name(),
            "blob": state.blob_fetcher.get_provider_name(),
        },
    )
