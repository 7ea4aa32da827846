"""Utility modules for docpipe.

- **errors** -- Domain-specific exception hierarchy rooted at DocPipeError;
  every ingestion stage raises its own subclass carrying the stage name and
  the HTTP status the API answers with.
- **logging** -- structlog setup with a dual-renderer pattern: coloured
  console output in development, structured JSON in production.
"""

from docpipe.utils.errors import (
    ChunkingInvariantError,
    ConfigurationError,
    DocPipeError,
    DocumentBusyError,
    DocumentNotFoundError,
    EmbeddingBatchFailedError,
    EmbeddingError,
    EmptyContentError,
    ExtractionFailedError,
    PersistenceError,
    TransientProviderError,
    UnsupportedFormatError,
)
from docpipe.utils.logging import configure_logging, get_logger

__all__ = [
    "ChunkingInvariantError",
    "ConfigurationError",
    "DocPipeError",
    "DocumentBusyError",
    "DocumentNotFoundError",
    "EmbeddingBatchFailedError",
    "EmbeddingError",
    "EmptyContentError",
    "ExtractionFailedError",
    "PersistenceError",
    "TransientProviderError",
    "UnsupportedFormatError",
    "configure_logging",
    "get_logger",
]
