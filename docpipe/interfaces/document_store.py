"""Abstract base class for document and chunk persistence.

The store owns two relations: documents (created elsewhere, status mutated
by the ingestion orchestrator only) and their chunks (written once per run
by the batch processor, cascade-deleted with the document).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from docpipe.models.document import ChunkRecord, Document, DocumentStatus


# Concrete implementations:
#   SQLiteDocumentStore -- aiosqlite, embeddings stored as JSON text
# Located in: docpipe/providers/storage/
class IDocumentStore(ABC):
    """Contract for the relational + vector store behind ingestion."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables and indices if they do not exist."""

    @abstractmethod
    async def add_document(self, document: Document) -> None:
        """Insert a new document row (upload side / CLI only)."""

    @abstractmethod
    async def get_document(self, document_id: str, project_id: str) -> Document | None:
        """Return the document when it exists *and* belongs to the project."""

    @abstractmethod
    async def claim_document(
        self,
        document_id: str,
        run_id: str,
        stale_before: datetime,
    ) -> bool:
        """Atomically move a document to ``processing`` for *run_id*.

        Succeeds unless another run holds the document: status
        ``processing`` with a ``run_id`` and ``updated_at`` newer than
        *stale_before*.

        Returns
        -------
        bool
            ``True`` if this call claimed the document.
        """

    @abstractmethod
    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        run_id: str | None = None,
    ) -> bool:
        """Set the document's status and bump ``updated_at``.

        When *run_id* is given the update only applies while that run still
        holds the document in ``processing``.  A run that was reconciled as
        stale, or re-claimed by another run, matches no row.

        Returns
        -------
        bool
            ``True`` if a row was updated.
        """

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> int:
        """Delete every chunk of a document.  Returns the number removed."""

    @abstractmethod
    async def upsert_chunk(self, chunk: ChunkRecord) -> None:
        """Write one chunk row keyed on ``(document_id, chunk_index)``."""

    @abstractmethod
    async def count_chunks(self, document_id: str) -> int:
        """Return the number of stored chunks for a document."""

    @abstractmethod
    async def list_chunks(self, document_id: str) -> list[ChunkRecord]:
        """Return stored chunks ordered by ``chunk_index``."""

    @abstractmethod
    async def fail_stale_documents(self, stale_before: datetime) -> list[str]:
        """Mark ``processing`` documents not updated since *stale_before* as failed.

        The run claim is released, so later writes from the abandoned run
        are rejected.

        Returns
        -------
        list[str]
            IDs of the documents that were reconciled.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier for this store."""
