"""Document and chunk stores."""

from docpipe.providers.storage.sqlite_document_store import SQLiteDocumentStore

__all__ = ["SQLiteDocumentStore"]
