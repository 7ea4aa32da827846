"""Per-document processing parameters chosen from the extracted text size.

Embedding-API latency and rate limits dominate wall-clock time for large
documents, so bigger inputs get bigger batches, more concurrent batches and
shorter pauses.  Small inputs get smaller chunks instead, which gives finer
retrieval granularity.  The four default tiers:

    tier         chars         tokens  overlap  batch  parallel  delay
    small        < 50K            300       50      5         1  1000ms
    medium       < 1M             500       75     10         2   500ms
    large        < 4M             800      100     20         4   250ms
    very_large   beyond          1000      120     25         6   100ms

The tier table can be replaced through ``ingestion.tiers`` in
``config/config.yaml``.  Content type then adjusts the tier values.  Code
gets a wider overlap, because a declaration split across chunks needs more
shared context.  UNKNOWN text gets smaller chunks, because estimates for it
are the least reliable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from docpipe.models.ingestion import ContentType, ProcessingConfig
from docpipe.utils.errors import ConfigurationError


@dataclass(frozen=True)
class SizeTier:
    """One row of the tier table.  ``max_chars=None`` means unbounded."""

    name: str
    max_chars: int | None
    max_chunk_tokens: int
    overlap_tokens: int
    batch_size: int
    max_parallel_batches: int
    batch_delay_ms: int


DEFAULT_TIERS: tuple[SizeTier, ...] = (
    SizeTier("small", 50_000, 300, 50, 5, 1, 1000),
    SizeTier("medium", 1_000_000, 500, 75, 10, 2, 500),
    SizeTier("large", 4_000_000, 800, 100, 20, 4, 250),
    SizeTier("very_large", None, 1000, 120, 25, 6, 100),
)


class AdaptiveConfigurator:
    """Derive a :class:`ProcessingConfig` from text length and content type.

    Parameters
    ----------
    tiers:
        Tier table ordered by ascending ``max_chars``; the last tier must be
        unbounded.
    hard_token_limit:
        Embedding model input ceiling; chunk size never exceeds it.
    code_overlap_factor:
        Overlap multiplier for CODE documents (capped at a quarter of the
        chunk size).
    unknown_chunk_factor:
        Chunk size multiplier for UNKNOWN documents.
    """

    def __init__(
        self,
        tiers: tuple[SizeTier, ...] | list[SizeTier] = DEFAULT_TIERS,
        hard_token_limit: int = 8000,
        code_overlap_factor: float = 1.5,
        unknown_chunk_factor: float = 0.8,
    ) -> None:
        self._tiers = tuple(tiers)
        self._validate_tiers(self._tiers)
        self._hard_token_limit = hard_token_limit
        self._code_overlap_factor = code_overlap_factor
        self._unknown_chunk_factor = unknown_chunk_factor

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> AdaptiveConfigurator:
        """Build from the ``ingestion`` section of the resolved config."""
        section = config.get("ingestion", {}) or {}
        raw_tiers = section.get("tiers")
        try:
            tiers = (
                tuple(SizeTier(**raw) for raw in raw_tiers) if raw_tiers else DEFAULT_TIERS
            )
        except TypeError as exc:
            raise ConfigurationError(f"Malformed ingestion.tiers entry: {exc}") from exc

        adjustments = section.get("content_adjustments", {}) or {}
        limits = section.get("limits", {}) or {}
        return cls(
            tiers=tiers,
            hard_token_limit=int(limits.get("hard_token_limit", 8000)),
            code_overlap_factor=float(adjustments.get("code_overlap_factor", 1.5)),
            unknown_chunk_factor=float(adjustments.get("unknown_chunk_factor", 0.8)),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def select_tier(self, text_length: int) -> SizeTier:
        """Return the first tier whose ``max_chars`` exceeds *text_length*."""
        for tier in self._tiers:
            if tier.max_chars is None or text_length < tier.max_chars:
                return tier
        return self._tiers[-1]

    def configure(self, text_length: int, content_type: ContentType) -> ProcessingConfig:
        """Return the processing parameters for one ingestion run."""
        tier = self.select_tier(text_length)

        max_tokens = tier.max_chunk_tokens
        overlap = tier.overlap_tokens
        if content_type is ContentType.CODE:
            overlap = min(int(overlap * self._code_overlap_factor), max_tokens // 4)
        elif content_type is ContentType.UNKNOWN:
            max_tokens = int(max_tokens * self._unknown_chunk_factor)

        max_tokens = min(max_tokens, self._hard_token_limit)
        overlap = min(overlap, max_tokens // 2)

        return ProcessingConfig(
            max_chunk_tokens=max_tokens,
            overlap_tokens=overlap,
            batch_size=tier.batch_size,
            max_parallel_batches=tier.max_parallel_batches,
            batch_delay_ms=tier.batch_delay_ms,
            strategy_label=f"{tier.name}/{content_type.value.lower()}",
            tier=tier.name,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_tiers(tiers: tuple[SizeTier, ...]) -> None:
        if not tiers:
            raise ConfigurationError("At least one size tier is required")
        if tiers[-1].max_chars is not None:
            raise ConfigurationError("The last size tier must be unbounded (max_chars: null)")
        bounds = [tier.max_chars for tier in tiers[:-1]]
        if any(bound is None for bound in bounds) or bounds != sorted(bounds):
            raise ConfigurationError("Size tiers must be ordered by ascending max_chars")
