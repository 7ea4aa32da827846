"""Ephemeral models that flow between the ingestion stages.

None of these are persisted.  A :class:`ContentClassification` and a
:class:`ProcessingConfig` are computed once per run and consumed by the
chunker and the batch processor; :class:`ChunkDraft` is the chunker's
output; :class:`IngestionSummary` and :class:`ProgressEvent` are what the
caller sees.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ContentType(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    """Analyzer verdict that selects the chunking strategy."""

    CODE = "CODE"
    NATURAL_LANGUAGE = "NATURAL_LANGUAGE"
    MIXED = "MIXED"
    UNKNOWN = "UNKNOWN"


class BoundaryType(str, Enum):  # noqa: UP042
    """The structural unit a chunk's body starts on, coarsest first."""

    DECLARATION = "declaration"
    PARAGRAPH = "paragraph"
    SENTENCE = "sentence"
    LINE = "line"
    WORD = "word"
    CHARACTER = "character"


class ContentCharacteristics(BaseModel):
    """Raw signals behind a classification, kept for diagnostics."""

    model_config = ConfigDict(frozen=True)

    code_signal: float = Field(ge=0.0)
    prose_signal: float = Field(ge=0.0)
    avg_indentation: float = Field(ge=0.0, description="Mean leading whitespace per non-blank line.")
    line_count: int = Field(ge=0)
    word_count: int = Field(ge=0)
    sample_chars: int = Field(ge=0)


class ContentClassification(BaseModel):
    """Output of :meth:`ContentAnalyzer.analyze`."""

    model_config = ConfigDict(frozen=True)

    type: ContentType
    confidence: float = Field(ge=0.0, le=1.0)
    characteristics: ContentCharacteristics


class ProcessingConfig(BaseModel):
    """Per-document chunking and batching parameters.

    Derived once from text length and content type, immutable for the run.
    """

    model_config = ConfigDict(frozen=True)

    max_chunk_tokens: int = Field(ge=16)
    overlap_tokens: int = Field(ge=0)
    batch_size: int = Field(ge=1)
    max_parallel_batches: int = Field(ge=1)
    batch_delay_ms: int = Field(ge=0)
    strategy_label: str
    tier: str = ""

    @model_validator(mode="after")
    def _overlap_fits(self) -> ProcessingConfig:
        if self.overlap_tokens >= self.max_chunk_tokens:
            msg = (
                f"overlap_tokens ({self.overlap_tokens}) must be smaller than "
                f"max_chunk_tokens ({self.max_chunk_tokens})"
            )
            raise ValueError(msg)
        return self


class ChunkDraft(BaseModel):
    """A finalized, not yet embedded chunk.

    ``content`` begins with ``overlap_length`` characters repeated from the
    end of the previous chunk; ``content[overlap_length:]`` is new text.
    """

    model_config = ConfigDict(frozen=True)

    content: str
    context: str
    tokens: int = Field(ge=1)
    boundary_type: BoundaryType
    content_type: ContentType
    overlap_length: int = Field(default=0, ge=0)
    start_line: int = Field(default=1, ge=1)
    end_line: int = Field(default=1, ge=1)

    @property
    def body(self) -> str:
        """The chunk content without the injected overlap prefix."""
        return self.content[self.overlap_length:]


class IngestionSummary(BaseModel):
    """Result of one successful ingestion run."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    run_id: str
    chunks_created: int = Field(ge=0)
    text_length: int = Field(ge=0)
    processing_time_ms: int = Field(ge=0)
    avg_tokens_per_chunk: int = Field(ge=0)
    content_type: ContentType
    strategy: str


class ProgressEventType(str, Enum):  # noqa: UP042
    """Event kinds of the streaming transport."""

    START = "start"
    STATUS = "status"
    PROGRESS = "progress"
    WARNING = "warning"
    ERROR = "error"
    COMPLETE = "complete"


class ProgressEvent(BaseModel):
    """One newline-delimited event of the streaming variant."""

    model_config = ConfigDict(frozen=True)

    type: ProgressEventType
    document_id: str
    run_id: str | None = None
    message: str = ""
    step: str | None = None
    progress: float | None = Field(default=None, ge=0.0, le=100.0)
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc)  # noqa: UP017
    )

    @property
    def is_terminal(self) -> bool:
        return self.type in (ProgressEventType.COMPLETE, ProgressEventType.ERROR)
