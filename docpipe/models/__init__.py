"""docpipe domain models -- re-exports all public model classes.

    - document.py   -- persisted Document and ChunkRecord rows
    - ingestion.py  -- per-run classification, config, chunk drafts, events
"""

from __future__ import annotations

from docpipe.models.document import (
    SUPPORTED_MIME_TYPES,
    ChunkRecord,
    Document,
    DocumentStatus,
)
from docpipe.models.ingestion import (
    BoundaryType,
    ChunkDraft,
    ContentCharacteristics,
    ContentClassification,
    ContentType,
    IngestionSummary,
    ProcessingConfig,
    ProgressEvent,
    ProgressEventType,
)

__all__ = [
    "SUPPORTED_MIME_TYPES",
    "BoundaryType",
    "ChunkDraft",
    "ChunkRecord",
    "ContentCharacteristics",
    "ContentClassification",
    "ContentType",
    "Document",
    "DocumentStatus",
    "IngestionSummary",
    "ProcessingConfig",
    "ProgressEvent",
    "ProgressEventType",
]
