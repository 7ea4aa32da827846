"""Ingestion orchestrator: one document from stored bytes to embedded chunks.

Steps of :meth:`IngestionService.process_document`:

    1. fetch-and-authorize   DocumentNotFoundError     (no mutation)
    2. claim                 DocumentBusyError         (no mutation)
    3. clear old chunks
    4. fetch + extract       ExtractionFailedError
    5. validate text         EmptyContentError / ExtractionFailedError
    6. classify
    7. configure
    8. chunk
    9. validate chunks       ChunkingInvariantError    (before any embedding call)
   10. embed + persist       EmbeddingBatchFailedError
   11. mark completed

Once step 2 succeeds, any failure (cancellation included) marks the document
``failed`` before the error propagates.  That status write is best-effort;
its own failure is logged and the original error is what the caller sees.

Every status write after the claim is scoped to the run's ``run_id`` and only
applies while the row is still ``processing``.  A run that the staleness
watchdog has reconciled, or that another run has re-claimed, can therefore no
longer change the document; its next write raises ``DocumentBusyError``.

Progress events carry the ``run_id`` and start only once the claim is held.
The per-call ``progress`` listener hears its own run and nothing else, so a
rejected second trigger never reaches the stream of the run in flight.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import structlog

from docpipe.interfaces.blob_fetcher import IBlobFetcher
from docpipe.interfaces.document_store import IDocumentStore
from docpipe.models.document import Document, DocumentStatus
from docpipe.models.ingestion import (
    ChunkDraft,
    IngestionSummary,
    ProcessingConfig,
    ProgressEvent,
    ProgressEventType,
)
from docpipe.services.ingestion.adaptive_config import AdaptiveConfigurator
from docpipe.services.ingestion.batch_processor import EmbeddingBatchProcessor
from docpipe.services.ingestion.chunker import SemanticChunker
from docpipe.services.ingestion.content_analyzer import ContentAnalyzer
from docpipe.services.ingestion.progress_tracker import ProgressListener, ProgressTracker
from docpipe.services.ingestion.text_extractor import TextExtractor
from docpipe.services.ingestion.token_estimator import TokenEstimator
from docpipe.utils.errors import (
    ChunkingInvariantError,
    DocumentBusyError,
    DocumentNotFoundError,
    EmptyContentError,
    ExtractionFailedError,
)
from docpipe.utils.logging import get_logger

# Share of the progress bar reached when embedding starts.
_EMBED_PROGRESS_START = 40.0
_EMBED_PROGRESS_SPAN = 55.0
# Average chunk size below this fraction of the budget suggests runaway splitting.
_SPARSE_CHUNK_RATIO = 0.1


class IngestionService:
    """Run the ingestion pipeline for one document at a time.

    All collaborators are injected; the service never constructs clients
    itself.

    Parameters
    ----------
    document_store:
        Document rows, run claims and chunk rows.
    blob_fetcher:
        Reads the uploaded file from ``Document.file_url``.
    extractor, analyzer, configurator, chunker, batch_processor, estimator:
        The pipeline stages.
    progress_tracker:
        Receives every :class:`ProgressEvent` of every run.
    max_file_size_bytes, max_text_length, max_chunks_per_document:
        Input and output size limits.
    hard_token_limit:
        Embedding model input ceiling every chunk is checked against.
    stale_after_seconds:
        A ``processing`` claim older than this no longer blocks a new run.
    """

    def __init__(
        self,
        document_store: IDocumentStore,
        blob_fetcher: IBlobFetcher,
        extractor: TextExtractor,
        analyzer: ContentAnalyzer,
        configurator: AdaptiveConfigurator,
        chunker: SemanticChunker,
        batch_processor: EmbeddingBatchProcessor,
        estimator: TokenEstimator,
        progress_tracker: ProgressTracker | None = None,
        max_file_size_bytes: int = 100 * 1024 * 1024,
        max_text_length: int = 10 * 1024 * 1024,
        max_chunks_per_document: int = 10_000,
        hard_token_limit: int = 8000,
        stale_after_seconds: int = 1800,
    ) -> None:
        self._store = document_store
        self._blob_fetcher = blob_fetcher
        self._extractor = extractor
        self._analyzer = analyzer
        self._configurator = configurator
        self._chunker = chunker
        self._batch_processor = batch_processor
        self._estimator = estimator
        self._tracker = progress_tracker or ProgressTracker()
        self._max_file_size_bytes = max_file_size_bytes
        self._max_text_length = max_text_length
        self._max_chunks = max_chunks_per_document
        self._hard_token_limit = hard_token_limit
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @property
    def progress_tracker(self) -> ProgressTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_document(
        self,
        document_id: str,
        project_id: str,
        progress: ProgressListener | None = None,
    ) -> IngestionSummary:
        """Ingest one document end to end.

        Parameters
        ----------
        document_id:
            The document to process.
        project_id:
            Must match the document's project; a mismatch is reported as
            not found.
        progress:
            Optional listener receiving this run's events, including the
            terminal ``complete`` or ``error`` event.

        Returns
        -------
        IngestionSummary
            Chunk count, text length, timing and the chosen strategy.

        Raises
        ------
        DocPipeError
            A subclass naming the failing stage; see the module docstring.
        """
        started = time.monotonic()
        run_id = uuid4().hex
        try:
            document = await self._claim(document_id, project_id, run_id)
        except Exception as exc:
            # Rejected before owning the document: only this caller is told.
            if progress is not None:
                await self._tracker.deliver(self._error_event(exc, document_id, run_id), progress)
            raise

        if progress is not None:
            self._tracker.register_listener(run_id, progress)
        try:
            return await self._process(document, run_id, started)
        except DocumentBusyError as exc:
            # Claim lost mid-run; the document's watchers belong to the new owner.
            if progress is not None:
                await self._tracker.deliver(self._error_event(exc, document_id, run_id), progress)
            raise
        except Exception as exc:
            await self._tracker.emit(self._error_event(exc, document_id, run_id))
            raise
        finally:
            self._tracker.clear(document_id, run_id)
            if progress is not None:
                self._tracker.unregister_listener(run_id, progress)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _claim(self, document_id: str, project_id: str, run_id: str) -> Document:
        document = await self._store.get_document(document_id, project_id)
        if document is None:
            raise DocumentNotFoundError(
                f"Document {document_id} not found in project {project_id}"
            )

        stale_before = datetime.now(tz=timezone.utc) - self._stale_after  # noqa: UP017
        if not await self._store.claim_document(document_id, run_id, stale_before):
            raise DocumentBusyError(f"Document {document_id} is already being processed")
        return document

    async def _process(self, document: Document, run_id: str, started: float) -> IngestionSummary:
        document_id = document.id
        log = self._logger.bind(document_id=document_id, run_id=run_id)
        log.info("ingestion_started", name=document.name, mime_type=document.mime_type)
        await self._emit(
            ProgressEventType.START, document_id, run_id, "Processing started", progress=0.0
        )

        try:
            summary = await self._run(document, run_id, started)
        except (Exception, asyncio.CancelledError) as exc:
            log.error(
                "ingestion_failed",
                stage=getattr(exc, "stage", "internal"),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._mark_failed(document_id, run_id)
            raise

        log.info(
            "ingestion_complete",
            chunks=summary.chunks_created,
            text_length=summary.text_length,
            strategy=summary.strategy,
            time_ms=summary.processing_time_ms,
        )
        await self._emit(
            ProgressEventType.COMPLETE,
            document_id,
            run_id,
            f"Processed {summary.chunks_created} chunks",
            progress=100.0,
            chunksCreated=summary.chunks_created,
            textLength=summary.text_length,
            avgTokensPerChunk=summary.avg_tokens_per_chunk,
            contentType=summary.content_type.value,
            processingTimeMs=summary.processing_time_ms,
            strategy=summary.strategy,
        )
        return summary

    async def _run(self, document: Document, run_id: str, started: float) -> IngestionSummary:
        document_id = document.id

        removed = await self._store.delete_chunks(document_id)
        if removed:
            self._logger.info("previous_chunks_cleared", document_id=document_id, removed=removed)

        # --- Fetch + extract ---
        await self._emit(
            ProgressEventType.STATUS,
            document_id,
            run_id,
            "Starting text extraction...",
            progress=5.0,
        )
        if document.file_size > self._max_file_size_bytes:
            raise ExtractionFailedError(
                f"File is {document.file_size} bytes; the limit is {self._max_file_size_bytes}"
            )
        file_bytes = await self._blob_fetcher.fetch(
            document.file_url, max_bytes=self._max_file_size_bytes
        )
        text = await self._extractor.extract(file_bytes, document.mime_type)

        # --- Validate text ---
        if not text.strip():
            raise EmptyContentError(
                f"No text could be extracted from {document.name or document_id}"
            )
        if len(text) > self._max_text_length:
            raise ExtractionFailedError(
                f"Extracted text is {len(text)} characters; the limit is {self._max_text_length}"
            )
        await self._emit(
            ProgressEventType.PROGRESS,
            document_id,
            run_id,
            f"Extracted {len(text)} characters",
            step="extraction_complete",
            progress=20.0,
            textLength=len(text),
        )

        # --- Classify + configure ---
        classification = self._analyzer.analyze(text)
        await self._emit(
            ProgressEventType.PROGRESS,
            document_id,
            run_id,
            f"Detected {classification.type.value} content",
            step="analysis_complete",
            progress=30.0,
            contentType=classification.type.value,
            confidence=classification.confidence,
        )
        config = self._configurator.configure(len(text), classification.type)
        if self._configurator.select_tier(len(text)).max_chars is None:
            await self._emit(
                ProgressEventType.WARNING,
                document_id,
                run_id,
                f"Large document ({len(text)} characters); processing may take several minutes",
                textLength=len(text),
            )

        # --- Chunk + validate ---
        chunks = self._chunker.chunk(text, config, classification, document.name)
        self._validate_chunks(chunks, config)
        avg_tokens = sum(chunk.tokens for chunk in chunks) // len(chunks)
        await self._emit(
            ProgressEventType.PROGRESS,
            document_id,
            run_id,
            f"Created {len(chunks)} chunks",
            step="chunking_complete",
            progress=_EMBED_PROGRESS_START,
            totalChunks=len(chunks),
            strategy=config.strategy_label,
            avgTokensPerChunk=avg_tokens,
        )
        if len(chunks) > 1 and avg_tokens < config.max_chunk_tokens * _SPARSE_CHUNK_RATIO:
            await self._emit(
                ProgressEventType.WARNING,
                document_id,
                run_id,
                f"Average chunk size is {avg_tokens} tokens against a budget of "
                f"{config.max_chunk_tokens}",
                avgTokensPerChunk=avg_tokens,
                totalChunks=len(chunks),
            )

        # --- Embed + persist ---
        async def on_batch(step: str, data: dict[str, Any]) -> None:
            await self._heartbeat(document_id, run_id)
            if step == "batch_complete":
                fraction = data["processed"] / data["total"]
                message = f"Batch {data['batch']}/{data['total_batches']} complete"
            else:
                fraction = (data["batch"] - 1) / data["total_batches"]
                message = f"Processing batch {data['batch']}/{data['total_batches']}"
            await self._emit(
                ProgressEventType.PROGRESS,
                document_id,
                run_id,
                message,
                step=step,
                progress=round(_EMBED_PROGRESS_START + _EMBED_PROGRESS_SPAN * fraction, 1),
                **data,
            )

        persisted = await self._batch_processor.process_all(chunks, document, config, on_batch)

        # --- Complete ---
        if not await self._store.update_status(document_id, DocumentStatus.COMPLETED, run_id):
            raise DocumentBusyError(f"Run {run_id} no longer holds document {document_id}")

        return IngestionSummary(
            document_id=document_id,
            run_id=run_id,
            chunks_created=persisted,
            text_length=len(text),
            processing_time_ms=int((time.monotonic() - started) * 1000),
            avg_tokens_per_chunk=avg_tokens,
            content_type=classification.type,
            strategy=config.strategy_label,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _validate_chunks(self, chunks: list[ChunkDraft], config: ProcessingConfig) -> None:
        if not chunks:
            raise ChunkingInvariantError("Chunker produced no chunks for non-empty text")
        if len(chunks) > self._max_chunks:
            raise ChunkingInvariantError(
                f"Document produced {len(chunks)} chunks; the limit is {self._max_chunks}"
            )
        limit = min(config.max_chunk_tokens, self._hard_token_limit)
        for index, chunk in enumerate(chunks):
            tokens = self._estimator.estimate(chunk.content, chunk.content_type)
            if tokens > limit:
                raise ChunkingInvariantError(
                    f"Chunk {index} is {tokens} tokens; the limit is {limit}"
                )
            if not chunk.content.strip():
                raise ChunkingInvariantError(f"Chunk {index} is empty")

    async def _heartbeat(self, document_id: str, run_id: str) -> None:
        """Bump ``updated_at`` so a long run is not mistaken for a stale one."""
        if not await self._store.update_status(document_id, DocumentStatus.PROCESSING, run_id):
            raise DocumentBusyError(f"Run {run_id} no longer holds document {document_id}")

    async def _mark_failed(self, document_id: str, run_id: str) -> None:
        try:
            await self._store.update_status(document_id, DocumentStatus.FAILED, run_id)
        except Exception as exc:
            self._logger.error(
                "failed_status_update_failed",
                document_id=document_id,
                run_id=run_id,
                error=str(exc),
            )

    async def _emit(
        self,
        event_type: ProgressEventType,
        document_id: str,
        run_id: str,
        message: str,
        step: str | None = None,
        progress: float | None = None,
        **data: Any,
    ) -> None:
        await self._tracker.emit(
            ProgressEvent(
                type=event_type,
                document_id=document_id,
                run_id=run_id,
                message=message,
                step=step,
                progress=progress,
                data=data,
            )
        )

    @staticmethod
    def _error_event(exc: Exception, document_id: str, run_id: str) -> ProgressEvent:
        return ProgressEvent(
            type=ProgressEventType.ERROR,
            document_id=document_id,
            run_id=run_id,
            message=str(getattr(exc, "message", exc)),
            data={"stage": getattr(exc, "stage", "internal"), "error": type(exc).__name__},
        )
