"""Pydantic request/response schemas for the docpipe HTTP API.

Request schemas end with ``Request`` and response schemas with ``Response``.
The streaming route has no response schema: its body is one JSON-encoded
:class:`~docpipe.models.ingestion.ProgressEvent` per line.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from docpipe.models.document import DocumentStatus
from docpipe.models.ingestion import ContentType


class ProcessDocumentRequest(BaseModel):
    """Trigger ingestion of an uploaded document."""

    document_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)


class ProcessDocumentResponse(BaseModel):
    """Summary of a completed ingestion run."""

    document_id: str
    run_id: str
    status: DocumentStatus = DocumentStatus.COMPLETED
    chunks_created: int
    text_length: int
    processing_time_ms: int
    avg_tokens_per_chunk: int
    content_type: ContentType
    strategy: str


class DocumentStatusResponse(BaseModel):
    """Current status of a document and how many chunks it has stored."""

    document_id: str
    project_id: str
    name: str
    status: DocumentStatus
    chunk_count: int


class ReconcileResponse(BaseModel):
    """Documents moved from ``processing`` to ``failed`` by a reconcile pass."""

    failed_count: int
    document_ids: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Liveness plus the names of the configured adapters."""

    status: str
    version: str
    providers: dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response body."""

    error: str
    detail: str | None = None
    stage: str | None = None
    document_id: str | None = None
