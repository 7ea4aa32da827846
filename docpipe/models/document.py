"""Persistent document and chunk models.

A :class:`Document` row is created by the upload side of the application
before ingestion starts; the ingestion pipeline only ever transitions its
``status``.  :class:`ChunkRecord` rows are written by the embedding batch
processor, one per chunk, and are cascade-deleted with their document.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DocumentStatus(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Lifecycle of a document's ingestion.

        PENDING → PROCESSING → COMPLETED
                             ↘ FAILED

    COMPLETED and FAILED are terminal until the document is re-triggered.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


SUPPORTED_MIME_TYPES: frozenset[str] = frozenset(
    {
        "text/plain",
        "text/csv",
        "text/markdown",
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)


class Document(BaseModel):
    """An uploaded file awaiting (or having completed) ingestion."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    project_id: str
    name: str
    file_url: str = Field(description="Storage location fetched with a plain HTTP GET.")
    file_size: int = Field(default=0, ge=0)
    mime_type: str
    status: DocumentStatus = DocumentStatus.PENDING
    # Claim token of the ingestion run currently holding the document.
    run_id: str | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )


class ChunkRecord(BaseModel):
    """One persisted, embedded chunk of a document."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    project_id: str
    user_id: str
    chunk_index: int = Field(ge=0, description="Position in the chunker's output order.")
    content: str
    context: str
    embedding: list[float]
    tokens: int = Field(ge=1)
    boundary_type: str | None = None
    content_type: str | None = None
