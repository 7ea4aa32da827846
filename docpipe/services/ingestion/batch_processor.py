"""Parallel, retrying embedding generation and chunk persistence.

Chunks are indexed by position *before* dispatch, so the stored
``chunk_index`` always matches the chunker's order however the concurrent
calls happen to complete.  Scheduling:

    chunks  --batch_size-->  batches  --max_parallel_batches-->  groups

Groups run one after another.  The batches of a group run concurrently, and
inside a batch every chunk gets its own embed-then-persist coroutine.  A
batch either lands completely or is retried as a whole with exponential
backoff.  Rows are upserted on ``(document_id, chunk_index)``, so a retry
rewrites the same rows.  When a batch exhausts its retries the whole run
fails with :class:`EmbeddingBatchFailedError`.

Between groups the processor pauses on purpose to stay clear of provider
rate limits instead of relying only on 429 handling.  The pause shrinks as
observed throughput rises past a reference rate, but it never drops below
a floor.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from docpipe.interfaces.document_store import IDocumentStore
from docpipe.interfaces.embedding_provider import IEmbeddingProvider
from docpipe.models.document import ChunkRecord, Document
from docpipe.models.ingestion import ChunkDraft, ProcessingConfig
from docpipe.utils.errors import (
    DocPipeError,
    EmbeddingBatchFailedError,
    EmbeddingError,
    TransientProviderError,
)

logger = structlog.get_logger(logger_name=__name__)

# ``(step, data)`` -- step is "processing_batch" or "batch_complete".
BatchCallback = Callable[[str, dict[str, Any]], Awaitable[None]]

_IndexedChunk = tuple[int, ChunkDraft]


def adaptive_delay_ms(
    base_delay_ms: float,
    chunks_per_second: float,
    reference_rate: float,
    min_delay_ms: float,
) -> float:
    """Return the pause before the next group.

    The base delay is divided by how far observed throughput exceeds the
    reference rate, then clamped to ``[min(min_delay_ms, base), base]``.
    """
    if base_delay_ms <= 0:
        return 0.0
    speedup = chunks_per_second / reference_rate if reference_rate > 0 else 1.0
    delay = base_delay_ms / max(1.0, speedup)
    return max(min(min_delay_ms, base_delay_ms), delay)


class EmbeddingBatchProcessor:
    """Embed chunks and persist them in parallel, retried batches.

    Parameters
    ----------
    embedding_provider:
        Source of the chunk vectors.
    document_store:
        Destination of the chunk rows.
    max_retries:
        Attempts per batch, including the first.
    retry_base_delay_ms:
        Backoff before attempt *n+1* is ``base * 2**(n-1)``, doubled again
        when the failure was a :class:`TransientProviderError`.
    min_batch_delay_ms:
        Floor of the adaptive inter-group pause.
    throughput_reference_rate:
        Chunks per second above which the pause starts shrinking.
    """

    def __init__(
        self,
        embedding_provider: IEmbeddingProvider,
        document_store: IDocumentStore,
        max_retries: int = 3,
        retry_base_delay_ms: int = 2000,
        min_batch_delay_ms: int = 50,
        throughput_reference_rate: float = 10.0,
    ) -> None:
        if max_retries < 1:
            msg = f"max_retries must be >= 1, got {max_retries}"
            raise ValueError(msg)
        self._embedding = embedding_provider
        self._store = document_store
        self._max_retries = max_retries
        self._retry_base_delay_ms = retry_base_delay_ms
        self._min_batch_delay_ms = min_batch_delay_ms
        self._reference_rate = throughput_reference_rate

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_all(
        self,
        chunks: list[ChunkDraft],
        document: Document,
        config: ProcessingConfig,
        on_batch: BatchCallback | None = None,
    ) -> int:
        """Embed and persist every chunk; return how many rows were written.

        Raises
        ------
        EmbeddingBatchFailedError
            A batch exhausted its retries, or fewer rows were written than
            chunks were given.
        """
        if not chunks:
            return 0

        indexed: list[_IndexedChunk] = list(enumerate(chunks))
        batches = [
            indexed[start : start + config.batch_size]
            for start in range(0, len(indexed), config.batch_size)
        ]
        groups = [
            batches[start : start + config.max_parallel_batches]
            for start in range(0, len(batches), config.max_parallel_batches)
        ]
        total_batches = len(batches)

        log = logger.bind(document_id=document.id, strategy=config.strategy_label)
        log.info(
            "embedding_started",
            chunks=len(chunks),
            batches=total_batches,
            groups=len(groups),
            batch_size=config.batch_size,
            parallel=config.max_parallel_batches,
        )

        persisted = 0
        started = time.monotonic()
        batch_number = 0

        for group_number, group in enumerate(groups):
            numbered = []
            for batch in group:
                batch_number += 1
                numbered.append((batch_number, batch))
                if on_batch is not None:
                    await on_batch(
                        "processing_batch",
                        {
                            "batch": batch_number,
                            "total_batches": total_batches,
                            "batch_size": len(batch),
                        },
                    )

            # Let every batch of the group settle before failing, so no write
            # is still in flight once the caller marks the document failed.
            results = await asyncio.gather(
                *(self._process_batch(number, batch, document) for number, batch in numbered),
                return_exceptions=True,
            )
            failure: BaseException | None = None
            for (number, _), result in zip(numbered, results):
                if isinstance(result, BaseException):
                    failure = failure or result
                    continue
                persisted += result
                if on_batch is not None:
                    await on_batch(
                        "batch_complete",
                        {
                            "batch": number,
                            "total_batches": total_batches,
                            "processed": persisted,
                            "total": len(chunks),
                        },
                    )
            if failure is not None:
                raise failure

            if group_number < len(groups) - 1:
                elapsed = max(time.monotonic() - started, 1e-6)
                delay = adaptive_delay_ms(
                    config.batch_delay_ms,
                    persisted / elapsed,
                    self._reference_rate,
                    self._min_batch_delay_ms,
                )
                if delay > 0:
                    await asyncio.sleep(delay / 1000)

        if persisted != len(chunks):
            raise EmbeddingBatchFailedError(
                f"Persisted {persisted} of {len(chunks)} chunks for document {document.id}"
            )

        log.info(
            "embedding_complete",
            persisted=persisted,
            time_s=round(time.monotonic() - started, 2),
        )
        return persisted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _process_batch(
        self,
        batch_number: int,
        batch: list[_IndexedChunk],
        document: Document,
    ) -> int:
        last_error: DocPipeError | None = None
        for attempt in range(1, self._max_retries + 1):
            results = await asyncio.gather(
                *(self._embed_and_persist(index, chunk, document) for index, chunk in batch),
                return_exceptions=True,
            )
            errors = [r for r in results if isinstance(r, BaseException)]
            if not errors:
                if attempt > 1:
                    logger.info(
                        "batch_recovered",
                        document_id=document.id,
                        batch=batch_number,
                        attempt=attempt,
                    )
                return len(batch)

            unexpected = [e for e in errors if not isinstance(e, DocPipeError)]
            if unexpected:
                raise unexpected[0]
            last_error = errors[0]  # type: ignore[assignment]

            if attempt < self._max_retries:
                delay_ms = self._retry_base_delay_ms * 2 ** (attempt - 1)
                if any(isinstance(e, TransientProviderError) for e in errors):
                    delay_ms *= 2
                logger.warning(
                    "batch_retry",
                    document_id=document.id,
                    batch=batch_number,
                    attempt=attempt,
                    failed_chunks=len(errors),
                    delay_ms=delay_ms,
                    error=str(last_error),
                )
                await asyncio.sleep(delay_ms / 1000)

        logger.error(
            "batch_failed",
            document_id=document.id,
            batch=batch_number,
            attempts=self._max_retries,
            error=str(last_error),
        )
        raise EmbeddingBatchFailedError(
            f"Batch {batch_number} failed after {self._max_retries} attempts: {last_error}",
            provider_name=last_error.provider_name if last_error else None,
        ) from last_error

    async def _embed_and_persist(self, index: int, chunk: ChunkDraft, document: Document) -> None:
        embedding = await self._embedding.embed_single(chunk.content)
        expected = self._embedding.get_dimension()
        if len(embedding) != expected:
            raise EmbeddingError(
                f"Embedding for chunk {index} has {len(embedding)} dimensions, expected {expected}",
                provider_name=self._embedding.get_provider_name(),
            )
        await self._store.upsert_chunk(
            ChunkRecord(
                document_id=document.id,
                project_id=document.project_id,
                user_id=document.user_id,
                chunk_index=index,
                content=chunk.content,
                context=chunk.context,
                embedding=embedding,
                tokens=chunk.tokens,
                boundary_type=chunk.boundary_type.value,
                content_type=chunk.content_type.value,
            )
        )
