"""Content classification: code, natural language, mixed or unknown.

The analyzer reads only a bounded prefix of the document (10,000 characters
by default).  Classification steers the chunking strategy and does not need
the whole file.  Two weighted signals are computed per word of the sample:

* **code** -- language keywords, brackets and semicolons, multi-character
  operators, assignments, dotted calls, snake/camel identifiers and comment
  markers.  The density is then amplified by the average leading
  indentation (nesting proxy); amplification only scales existing code
  evidence, so indented prose does not turn into code.
* **prose** -- connective/function words and sentence boundaries
  (terminal punctuation followed by a capitalised word).

Decision rule, with ``margin`` = ``dominance_margin``:

    code  >= margin * prose  and code  >= code_floor   -> CODE
    prose >= margin * code   and prose >= prose_floor  -> NATURAL_LANGUAGE
    code  <  code_floor      and prose <  prose_floor  -> UNKNOWN
    otherwise                                          -> MIXED

:meth:`ContentAnalyzer.is_code_line` applies the same weights to a single
line; the chunker uses it to segment MIXED documents.
"""

from __future__ import annotations

import math
import re
from typing import Any

from docpipe.models.ingestion import ContentCharacteristics, ContentClassification, ContentType

_CODE_PATTERNS: tuple[tuple[re.Pattern[str], float], ...] = (
    (
        re.compile(
            r"\b(?:def|function|const|let|var|return|async|await|lambda|elif|struct|enum|"
            r"impl|fn|func|void|typeof|nullptr|import|export|class|interface|public|"
            r"private|static)\b"
        ),
        1.0,
    ),
    (re.compile(r"[{}\[\];]"), 1.0),
    (re.compile(r"[()]"), 0.25),
    (re.compile(r"==|!=|<=|>=|=>|->|&&|\|\||\+=|-=|\*=|/=|:=|::|\+\+"), 1.0),
    (re.compile(r"\s=\s"), 0.5),
    (re.compile(r"\b\w+\.\w+\("), 1.0),
    (re.compile(r"\b[a-z]+_[a-z0-9_]+\b|\b[a-z]+[A-Z][A-Za-z0-9]*\b"), 0.5),
    (re.compile(r"(?m)^\s*(?://|/\*|\*/|#include\b|#define\b|#!)"), 1.5),
)

_PROSE_PATTERNS: tuple[tuple[re.Pattern[str], float], ...] = (
    (
        re.compile(
            r"\b(?:the|and|of|to|in|is|that|it|was|for|with|as|on|by|this|are|be|from|"
            r"which|but|or|not|have|has|an|at|their|they|were|been|also|however|"
            r"therefore|because|although|when|would|could|into|than)\b",
            re.IGNORECASE,
        ),
        1.0,
    ),
    (re.compile(r"[.!?][\"')\]]?\s+[A-Z]"), 2.0),
)

_WORD_RE = re.compile(r"\S+")
_INDENT_CAP = 8.0


class ContentAnalyzer:
    """Classify a text sample by weighted pattern matching.

    Parameters
    ----------
    sample_chars:
        Length of the prefix that :meth:`analyze` inspects.
    dominance_margin:
        How many times stronger one signal must be to win outright.
    code_floor, prose_floor:
        Minimum per-word signal for CODE / NATURAL_LANGUAGE.
    saturation:
        Scale of the confidence curve ``1 - exp(-excess / saturation)``.
    """

    def __init__(
        self,
        sample_chars: int = 10_000,
        dominance_margin: float = 2.0,
        code_floor: float = 0.15,
        prose_floor: float = 0.15,
        saturation: float = 0.25,
    ) -> None:
        self._sample_chars = sample_chars
        self._margin = dominance_margin
        self._code_floor = code_floor
        self._prose_floor = prose_floor
        self._saturation = saturation

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ContentAnalyzer:
        """Build from the ``analyzer`` section of ``config.yaml``."""
        section = config.get("analyzer", {}) or {}
        return cls(
            sample_chars=int(section.get("sample_chars", 10_000)),
            dominance_margin=float(section.get("dominance_margin", 2.0)),
            code_floor=float(section.get("code_floor", 0.15)),
            prose_floor=float(section.get("prose_floor", 0.15)),
            saturation=float(section.get("saturation", 0.25)),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(self, sample: str) -> ContentClassification:
        """Classify the first ``sample_chars`` characters of *sample*."""
        text = sample[: self._sample_chars]
        code, prose, words = self._signals(text)
        lines = [line for line in text.splitlines() if line.strip()]
        avg_indent = self._average_indent(lines)

        content_type = self._decide(code, prose)
        if content_type is ContentType.CODE:
            confidence = self._saturate(code - self._code_floor)
        elif content_type is ContentType.NATURAL_LANGUAGE:
            confidence = self._saturate(prose - self._prose_floor)
        elif content_type is ContentType.MIXED:
            confidence = self._saturate(
                max(code - self._code_floor, prose - self._prose_floor)
            )
        else:
            strength = max(code / self._code_floor, prose / self._prose_floor)
            confidence = max(0.0, 1.0 - strength)

        return ContentClassification(
            type=content_type,
            confidence=round(confidence, 4),
            characteristics=ContentCharacteristics(
                code_signal=round(code, 4),
                prose_signal=round(prose, 4),
                avg_indentation=round(avg_indent, 2),
                line_count=len(lines),
                word_count=words,
                sample_chars=len(text),
            ),
        )

    def is_code_line(self, line: str) -> bool | None:
        """Return whether a single line looks like code.

        ``None`` for blank lines, which carry no evidence either way.
        """
        if not line.strip():
            return None
        code, prose, _ = self._signals(line)
        return code >= self._code_floor and code >= prose

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _signals(self, text: str) -> tuple[float, float, int]:
        """Return ``(code_signal, prose_signal, word_count)`` for *text*."""
        words = len(_WORD_RE.findall(text))
        if words == 0:
            return 0.0, 0.0, 0

        code_hits = sum(len(p.findall(text)) * w for p, w in _CODE_PATTERNS)
        prose_hits = sum(len(p.findall(text)) * w for p, w in _PROSE_PATTERNS)

        lines = [line for line in text.splitlines() if line.strip()]
        indent_factor = min(self._average_indent(lines), _INDENT_CAP) / _INDENT_CAP
        code = (code_hits / words) * (1.0 + indent_factor)
        prose = prose_hits / words
        return code, prose, words

    def _decide(self, code: float, prose: float) -> ContentType:
        if code >= self._margin * prose and code >= self._code_floor:
            return ContentType.CODE
        if prose >= self._margin * code and prose >= self._prose_floor:
            return ContentType.NATURAL_LANGUAGE
        if code < self._code_floor and prose < self._prose_floor:
            return ContentType.UNKNOWN
        return ContentType.MIXED

    def _saturate(self, excess: float) -> float:
        if excess <= 0:
            return 0.0
        return 1.0 - math.exp(-excess / self._saturation)

    @staticmethod
    def _average_indent(lines: list[str]) -> float:
        if not lines:
            return 0.0
        total = 0
        for line in lines:
            stripped = line.lstrip(" \t")
            prefix = line[: len(line) - len(stripped)]
            total += prefix.count(" ") + 4 * prefix.count("\t")
        return total / len(lines)
