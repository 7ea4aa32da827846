"""Embedding provider implementations.

    OpenAIEmbeddingProvider -- text-embedding-3-small (1536 dims), also
    usable against any OpenAI-compatible endpoint via ``OPENAI_BASE_URL``.
"""

from docpipe.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

__all__ = ["OpenAIEmbeddingProvider"]
