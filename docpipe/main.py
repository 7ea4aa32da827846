"""docpipe FastAPI application entry point.

Wires providers, pipeline stages and routes together via constructor
injection.  Configuration comes from ``.env`` / environment variables
(:class:`Settings`) layered over ``config/config.yaml``.

:func:`build_components` is shared with the CLI so both surfaces run the
exact same pipeline.
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from docpipe import __version__
from docpipe.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from docpipe.api.routes import router as api_router
from docpipe.config.loader import load_config
from docpipe.config.settings import Settings
from docpipe.providers.blob.http_blob_fetcher import HttpBlobFetcher
from docpipe.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from docpipe.providers.storage.sqlite_document_store import SQLiteDocumentStore
from docpipe.services.ingestion.adaptive_config import AdaptiveConfigurator
from docpipe.services.ingestion.batch_processor import EmbeddingBatchProcessor
from docpipe.services.ingestion.chunker import SemanticChunker
from docpipe.services.ingestion.content_analyzer import ContentAnalyzer
from docpipe.services.ingestion.ingestion_service import IngestionService
from docpipe.services.ingestion.progress_tracker import ProgressTracker
from docpipe.services.ingestion.staleness_watchdog import StalenessWatchdog
from docpipe.services.ingestion.text_extractor import TextExtractor
from docpipe.services.ingestion.token_estimator import TokenEstimator
from docpipe.utils.logging import configure_logging, get_logger

# ---------------------------------------------------------------------------
# Module-level settings & logging
# ---------------------------------------------------------------------------

settings = Settings()
config = load_config(settings=settings)

configure_logging(
    log_level=settings.log_level,
    json_output=(settings.app_env == "production"),
)
_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Dependency assembly
# ---------------------------------------------------------------------------


def build_components(
    app_settings: Settings,
    app_config: dict[str, Any],
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Construct every provider and service.

    Returns a flat dict of named components; the API stores them on
    ``app.state`` and the CLI picks what it needs.  The caller owns
    ``http_client`` and must close it.
    """
    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(app_settings.http_timeout_seconds),
        follow_redirects=True,
    )

    document_store = SQLiteDocumentStore(db_path=app_settings.database_path)
    embedding_provider = OpenAIEmbeddingProvider(settings=app_settings)
    blob_fetcher = HttpBlobFetcher(http_client=http_client)

    estimator = TokenEstimator(
        encoding_name=app_settings.tokenizer_encoding or None,
        safety_multiplier=app_settings.token_safety_multiplier,
    )
    analyzer = ContentAnalyzer.from_config(app_config)
    configurator = AdaptiveConfigurator.from_config(app_config)
    chunker = SemanticChunker(estimator=estimator, analyzer=analyzer)
    batch_processor = EmbeddingBatchProcessor(
        embedding_provider=embedding_provider,
        document_store=document_store,
        max_retries=app_settings.max_retries,
        retry_base_delay_ms=app_settings.retry_base_delay_ms,
        min_batch_delay_ms=app_settings.min_batch_delay_ms,
        throughput_reference_rate=app_settings.throughput_reference_rate,
    )
    progress_tracker = ProgressTracker()

    ingestion_service = IngestionService(
        document_store=document_store,
        blob_fetcher=blob_fetcher,
        extractor=TextExtractor(),
        analyzer=analyzer,
        configurator=configurator,
        chunker=chunker,
        batch_processor=batch_processor,
        estimator=estimator,
        progress_tracker=progress_tracker,
        max_file_size_bytes=app_settings.max_file_size_bytes,
        max_text_length=app_settings.max_text_length,
        max_chunks_per_document=app_settings.max_chunks_per_document,
        hard_token_limit=app_settings.hard_token_limit,
        stale_after_seconds=app_settings.stale_after_seconds,
    )
    watchdog = StalenessWatchdog(
        document_store=document_store,
        stale_after_seconds=app_settings.stale_after_seconds,
    )

    return {
        "http_client": http_client,
        "document_store": document_store,
        "embedding_provider": embedding_provider,
        "blob_fetcher": blob_fetcher,
        "token_estimator": estimator,
        "progress_tracker": progress_tracker,
        "ingestion_service": ingestion_service,
        "watchdog": watchdog,
    }


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _lifespan(application: FastAPI):  # noqa: ANN201
    """Initialise providers and the schema on startup, clean up on shutdown."""
    components = build_components(settings, config)
    for key, value in components.items():
        setattr(application.state, key, value)
    application.state.background_runs = set()

    await components["document_store"].initialize()

    watchdog_task: asyncio.Task | None = None
    if settings.watchdog_enabled:
        watchdog_task = asyncio.create_task(
            components["watchdog"].run_forever(settings.watchdog_interval_seconds)
        )

    _logger.info(
        "app_startup",
        version=__version__,
        environment=settings.app_env,
        database=settings.database_path,
        embedding_model=config["embedding"]["model"],
        exact_tokenizer=components["token_estimator"].is_exact,
        watchdog=settings.watchdog_enabled,
    )

    yield

    if watchdog_task is not None:
        watchdog_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watchdog_task

    http_client: httpx.AsyncClient = components["http_client"]
    await http_client.aclose()
    _logger.info("app_shutdown", message="HTTP client closed")


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    application = FastAPI(
        title="docpipe API",
        version=__version__,
        description=(
            "Turn uploaded documents into embedded, retrieval-ready chunks: "
            "extract text, classify it, chunk it within the embedding model's "
            "token budget, and embed every chunk with retries."
        ),
        lifespan=_lifespan,
    )

    # -- Middleware (order matters: last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application, allowed_origins=settings.get_cors_origins())

    application.include_router(api_router)
    return application


app = create_app()

# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run(
        "docpipe.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=(settings.app_env == "development"),
    )
