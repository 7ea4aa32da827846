"""Abstract provider contracts (adapter pattern).

Concrete adapters live under ``docpipe/providers/``; services depend only on
these interfaces and receive implementations through their constructors.
"""

from docpipe.interfaces.blob_fetcher import IBlobFetcher
from docpipe.interfaces.document_store import IDocumentStore
from docpipe.interfaces.embedding_provider import IEmbeddingProvider

__all__ = ["IBlobFetcher", "IDocumentStore", "IEmbeddingProvider"]
