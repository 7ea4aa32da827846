"""Custom exception hierarchy for docpipe.

All application exceptions inherit from :class:`DocPipeError`, which
carries an optional ``provider_name`` so error handlers can identify which
external service (e.g. "openai", "sqlite", "http_blob") caused the failure.

Every subclass also declares the ingestion ``stage`` it belongs to and the
HTTP status the API layer should answer with.  The orchestrator uses the
stage to tell the caller *where* a run broke; the document row itself only
records ``failed``.

    DocPipeError  (base -- catch-all for any docpipe error)
    +-- DocumentNotFoundError       (fetch: unknown document/project pair)
    +-- DocumentBusyError           (claim: another live run holds it)
    +-- ExtractionFailedError       (extract: unreachable/corrupt file)
    |   +-- UnsupportedFormatError  (extract: unknown MIME type)
    +-- EmptyContentError           (validate: nothing usable extracted)
    +-- ChunkingInvariantError      (chunk: oversized or too many chunks)
    +-- EmbeddingError              (embed: non-transient provider failure)
    +-- TransientProviderError      (embed: rate limit / timeout, retried)
    +-- EmbeddingBatchFailedError   (embed: batch exhausted its retries)
    +-- PersistenceError            (persist: storage write/read failure)
    +-- ConfigurationError          (config: startup / missing config)
"""


class DocPipeError(Exception):
    """Base exception for all docpipe errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which external service triggered the
    error.  The ``__str__`` method prefixes the provider name in brackets
    for structured log output, e.g. ``[openai] Rate limit exceeded``.
    """

    stage: str = "internal"
    http_status: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Document lookup / claim
# ---------------------------------------------------------------------------

class DocumentNotFoundError(DocPipeError):
    """Raised when a document/project pair does not resolve.

    Never mutates the document: the caller learns about it immediately.
    """

    stage = "fetch"
    http_status = 404

    def __init__(
        self,
        message: str = "Document not found",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class DocumentBusyError(DocPipeError):
    """Raised when another live ingestion run already holds the document."""

    stage = "claim"
    http_status = 409

    def __init__(
        self,
        message: str = "Document is already being processed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Extraction / validation
# ---------------------------------------------------------------------------

class ExtractionFailedError(DocPipeError):
    """Raised when file bytes cannot be fetched or parsed into text."""

    stage = "extract"
    http_status = 422

    def __init__(
        self,
        message: str = "Text extraction failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class UnsupportedFormatError(ExtractionFailedError):
    """Raised when the declared MIME type has no extractor."""

    http_status = 415

    def __init__(
        self,
        message: str = "Unsupported file format",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class EmptyContentError(DocPipeError):
    """Raised when extraction succeeded but produced no usable text.

    Kept distinct from :class:`ExtractionFailedError` so a blank upload
    can be told apart from a broken one in the logs.
    """

    stage = "validate"
    http_status = 422

    def __init__(
        self,
        message: str = "No text content could be extracted from the document",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ChunkingInvariantError(DocPipeError):
    """Raised when produced chunks break the token ceiling or count limit.

    This is an internal defect and is raised before any embedding call.
    """

    stage = "chunk"
    http_status = 500

    def __init__(
        self,
        message: str = "Chunking produced an invalid chunk set",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Embedding provider errors
# ---------------------------------------------------------------------------

class EmbeddingError(DocPipeError):
    """Raised when an embedding API call fails for a non-transient reason."""

    stage = "embed"
    http_status = 502

    def __init__(
        self,
        message: str = "Embedding API call failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class TransientProviderError(EmbeddingError):
    """Raised on rate limiting, timeouts and 5xx answers from the provider.

    The batch processor recovers from these locally with backoff.
    """

    http_status = 503

    def __init__(
        self,
        message: str = "Embedding provider temporarily unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class EmbeddingBatchFailedError(DocPipeError):
    """Raised when a batch exhausts its retries while embedding or persisting."""

    stage = "embed"
    http_status = 502

    def __init__(
        self,
        message: str = "Embedding batch failed after retries",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Storage / configuration
# ---------------------------------------------------------------------------

class PersistenceError(DocPipeError):
    """Raised when the document store cannot complete a read or write."""

    stage = "persist"
    http_status = 500

    def __init__(
        self,
        message: str = "Document store operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(DocPipeError):
    """Raised when configuration is invalid or missing at startup."""

    stage = "config"
    http_status = 500

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
