"""Token estimation for chunk sizing.

Chunks must never exceed the embedding model's input limit, so the count
used for sizing has to err on the high side.  Two paths exist:

1. **Exact** -- ``tiktoken`` with the ``cl100k_base`` encoding, the same
   BPE the OpenAI embedding models use.  Preferred whenever it loads.
2. **Heuristic** -- character and word ratios calibrated per content type
   (code tokenizes denser than prose), scaled by a per-type factor and a
   global safety multiplier.  With the defaults this over-estimates real
   tokenizer counts by well over 20 %, which only costs slightly smaller
   chunks.

Both paths are pure: the same text always yields the same count, the count
never shrinks as text is appended, and non-empty text is never 0 tokens.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

import structlog
import tiktoken

from docpipe.models.ingestion import ContentType

logger = structlog.get_logger(logger_name=__name__)


@dataclass(frozen=True)
class _TokenPattern:
    """Heuristic calibration for one content type."""

    chars_per_token: float
    tokens_per_word: float
    safety_factor: float


_PATTERNS: dict[ContentType, _TokenPattern] = {
    ContentType.CODE: _TokenPattern(chars_per_token=2.8, tokens_per_word=1.6, safety_factor=1.4),
    ContentType.NATURAL_LANGUAGE: _TokenPattern(
        chars_per_token=3.5, tokens_per_word=1.3, safety_factor=1.2
    ),
    ContentType.MIXED: _TokenPattern(chars_per_token=3.0, tokens_per_word=1.4, safety_factor=1.3),
}
_PATTERNS[ContentType.UNKNOWN] = _PATTERNS[ContentType.MIXED]

# Quick density check used when the caller does not pass a content type.
_CODE_INDICATORS = (
    re.compile(r"\b(?:function|class|import|export|const|let|var|def|return|if|else|for|while)\b"),
    re.compile(r"[{}();\[\]]"),
    re.compile(r"[=<>!&|+\-*/%]"),
)
_CODE_RATIO_HIGH = 0.3
_CODE_RATIO_LOW = 0.1


class TokenEstimator:
    """Estimate language-model token counts for text spans.

    Parameters
    ----------
    encoding_name:
        ``tiktoken`` encoding for exact counting.  ``None`` or ``""``
        selects the heuristic path outright; an encoding that cannot be
        loaded (unknown name, no network to fetch the BPE file) falls back
        to the heuristic with a log line.
    safety_multiplier:
        Global multiplier applied on top of the per-type heuristic factor.
    """

    def __init__(
        self,
        encoding_name: str | None = "cl100k_base",
        safety_multiplier: float = 1.1,
    ) -> None:
        if safety_multiplier < 1.0:
            msg = f"safety_multiplier must be >= 1.0, got {safety_multiplier}"
            raise ValueError(msg)
        self._safety_multiplier = safety_multiplier
        self._encoding = self._load_encoding(encoding_name) if encoding_name else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_exact(self) -> bool:
        """``True`` when counts come from a real tokenizer."""
        return self._encoding is not None

    def estimate(self, text: str, content_type: ContentType | None = None) -> int:
        """Return the (over-)estimated token count of *text*.

        Parameters
        ----------
        text:
            Any text span.
        content_type:
            Calibration to use on the heuristic path.  Detected from the
            text itself when omitted.  Ignored on the exact path.
        """
        if not text:
            return 0

        if self._encoding is not None:
            return max(1, len(self._encoding.encode(text, disallowed_special=())))

        pattern = _PATTERNS[content_type or self.detect_type(text)]
        by_chars = math.ceil(len(text) / pattern.chars_per_token)
        by_words = math.ceil(len(text.split()) * pattern.tokens_per_word)
        raw = max(by_chars, by_words, 1)
        return math.ceil(raw * pattern.safety_factor * self._safety_multiplier)

    @staticmethod
    def detect_type(text: str) -> ContentType:
        """Cheap code-density check for spans with no known content type."""
        words = len(text.split())
        if words == 0:
            return ContentType.UNKNOWN
        hits = sum(len(pattern.findall(text)) for pattern in _CODE_INDICATORS)
        ratio = hits / words
        if ratio > _CODE_RATIO_HIGH:
            return ContentType.CODE
        if ratio < _CODE_RATIO_LOW:
            return ContentType.NATURAL_LANGUAGE
        return ContentType.MIXED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _load_encoding(encoding_name: str):  # noqa: ANN205 -- tiktoken.Encoding
        """Load the tiktoken encoding, or ``None`` if it is unavailable.

        ``tiktoken`` downloads BPE ranks on first use; offline hosts without
        a cache fall through to the heuristic.
        """
        try:
            return tiktoken.get_encoding(encoding_name)
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "tokenizer_unavailable",
                encoding=encoding_name,
                error=str(exc),
                msg="Falling back to heuristic token estimation.",
            )
            return None
