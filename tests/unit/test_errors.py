"""Unit tests for the docpipe exception hierarchy."""

from __future__ import annotations

import pytest

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


class TestDocPipeError:
    def test_provider_prefix(self) -> None:
        assert str(EmbeddingError("quota exceeded", provider_name="openai")) == (
            "[openai] quota exceeded"
        )

    def test_plain_message(self) -> None:
        error = DocPipeError("something broke")
        assert str(error) == "something broke"
        assert error.message == "something broke"
        assert error.provider_name is None

    @pytest.mark.parametrize(
        ("cls", "stage", "status"),
        [
            (DocumentNotFoundError, "fetch", 404),
            (DocumentBusyError, "claim", 409),
            (ExtractionFailedError, "extract", 422),
            (UnsupportedFormatError, "extract", 415),
            (EmptyContentError, "validate", 422),
            (ChunkingInvariantError, "chunk", 500),
            (EmbeddingError, "embed", 502),
            (TransientProviderError, "embed", 503),
            (EmbeddingBatchFailedError, "embed", 502),
            (PersistenceError, "persist", 500),
            (ConfigurationError, "config", 500),
        ],
    )
    def test_stage_and_status(self, cls: type[DocPipeError], stage: str, status: int) -> None:
        error = cls()
        assert error.stage == stage
        assert error.http_status == status
        assert isinstance(error, DocPipeError)

    def test_transient_is_an_embedding_error(self) -> None:
        assert issubclass(TransientProviderError, EmbeddingError)
