"""Content-aware, token-bounded chunking with contextual overlap.

Chunking runs in two phases.

1. **Atomization.**  The text is cut into *atoms*, spans that each fit
   the token budget on their own.  A natural unit that is too large is
   split again at the next finer granularity.  Granularity depends on
   the content type:

       CODE              declaration -> line -> word -> character
       NATURAL_LANGUAGE  paragraph -> sentence -> line -> word -> character
       UNKNOWN           sentence -> line -> word -> character

   MIXED documents are first cut into contiguous code-like and prose-like
   runs.  The runs come from the analyzer's per-line heuristic, with
   Markdown fences forced to code and short runs absorbed by their
   neighbours.  Each run is then atomized as CODE or NATURAL_LANGUAGE.
   The character level always fits, so recursion terminates even on a
   single absurdly long word.

2. **Packing.**  Atoms are packed greedily into chunks.  A candidate chunk
   is re-estimated before an atom is accepted.  After a split, the next
   chunk begins with an overlap prefix: the longest suffix of the previous
   chunk that fits ``overlap_tokens``.  The prefix is made of whole atoms,
   or failing that trailing sentences, lines or words.  The prefix is
   dropped when it would push the new chunk over budget.

Every atom remembers its character offsets and the separator that preceded
it.  Chunk bodies are therefore real stretches of the input, and each chunk
can report the line range it covers.

The chunker is pure.  It uses no randomness and no clock, and the same
arguments always produce identical output.
"""

from __future__ import annotations

import bisect
import re
from collections.abc import Iterator
from dataclasses import dataclass

import structlog

from docpipe.models.ingestion import (
    BoundaryType,
    ChunkDraft,
    ContentClassification,
    ContentType,
    ProcessingConfig,
)
from docpipe.services.ingestion.content_analyzer import ContentAnalyzer
from docpipe.services.ingestion.token_estimator import TokenEstimator

logger = structlog.get_logger(logger_name=__name__)

# Common abbreviations that should NOT trigger a sentence split.
_ABBREVIATIONS_RE = re.compile(
    r"\b(?:Dr|Mr|Mrs|Ms|Prof|Jr|Sr|St|Ave|Blvd|Vol|No|vs|etc|approx|dept|est|"
    r"govt|inc|ltd|co|ft|e\.g|i\.e|Fig|Eq|cf)\.",
)
_SENTENCE_GAP_RE = re.compile(r"(?:(?<=[.!?])|(?<=[.!?][\"'”’)\]]))\s+")
_PARAGRAPH_GAP_RE = re.compile(r"\n[ \t]*\n")
_LINE_GAP_RE = re.compile(r"\n")
_WORD_GAP_RE = re.compile(r"\s+")
_DECLARATION_START_RE = re.compile(
    r"^(?=(?:(?:export|default|public|private|protected|internal|static|abstract|final|"
    r"async|pub(?:\([\w:]+\))?|unsafe)\s+)*"
    r"(?:def|class|function|interface|type|enum|struct|impl|trait|fn|func|const|let|var|"
    r"module|namespace)\b"
    r"|@\w|/\*\*)",
    re.MULTILINE,
)
_FENCE_RE = re.compile(r"^\s*(?:```|~~~)")

_SEPARATORS: dict[BoundaryType, str] = {
    BoundaryType.DECLARATION: "\n",
    BoundaryType.PARAGRAPH: "\n\n",
    BoundaryType.SENTENCE: " ",
    BoundaryType.LINE: "\n",
    BoundaryType.WORD: " ",
    BoundaryType.CHARACTER: "",
}

_LEVELS: dict[ContentType, tuple[BoundaryType, ...]] = {
    ContentType.CODE: (BoundaryType.DECLARATION, BoundaryType.LINE, BoundaryType.WORD),
    ContentType.NATURAL_LANGUAGE: (
        BoundaryType.PARAGRAPH,
        BoundaryType.SENTENCE,
        BoundaryType.LINE,
        BoundaryType.WORD,
    ),
    ContentType.UNKNOWN: (BoundaryType.SENTENCE, BoundaryType.LINE, BoundaryType.WORD),
}

# Extra tokens a separator may add when two spans are joined.
_JOIN_SLACK = 2


@dataclass(frozen=True)
class _Atom:
    """A span of the input text that fits the token budget on its own."""

    start: int
    end: int
    boundary: BoundaryType
    separator: str
    content_type: ContentType
    segment: int


class SemanticChunker:
    """Split documents into content-aware, token-bounded chunks.

    Parameters
    ----------
    estimator:
        Token estimator shared with chunk validation, so the bound the
        chunker enforces is the bound that is later checked.
    analyzer:
        Supplies the line-level code heuristic for MIXED segmentation.
    min_segment_lines:
        MIXED runs with fewer non-blank lines are merged into a neighbour.
    """

    def __init__(
        self,
        estimator: TokenEstimator,
        analyzer: ContentAnalyzer | None = None,
        min_segment_lines: int = 3,
    ) -> None:
        self._estimator = estimator
        self._analyzer = analyzer or ContentAnalyzer()
        self._min_segment_lines = min_segment_lines

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk(
        self,
        text: str,
        config: ProcessingConfig,
        classification: ContentClassification,
        document_name: str = "document",
    ) -> list[ChunkDraft]:
        """Split *text* into ordered :class:`ChunkDraft` objects.

        Parameters
        ----------
        text:
            The full extracted document text.
        config:
            Chunk size and overlap budget for this run.
        classification:
            Selects the splitting strategy.
        document_name:
            Used in each chunk's ``context`` label.

        Returns
        -------
        list[ChunkDraft]
            Chunks in document order.  Whitespace-only input yields ``[]``.
        """
        if not text.strip():
            return []

        atoms = list(self._atomize_document(text, config, classification.type))
        chunks = self._pack(text, atoms, config, document_name)

        logger.debug(
            "chunking_complete",
            content_type=classification.type.value,
            num_chunks=len(chunks),
            atoms=len(atoms),
            avg_tokens=(sum(c.tokens for c in chunks) // len(chunks)) if chunks else 0,
            max_chunk_tokens=config.max_chunk_tokens,
        )
        return chunks

    # ------------------------------------------------------------------
    # Atomization
    # ------------------------------------------------------------------

    def _atomize_document(
        self,
        text: str,
        config: ProcessingConfig,
        content_type: ContentType,
    ) -> Iterator[_Atom]:
        if content_type is ContentType.MIXED:
            segments = self._segment_mixed(text)
        else:
            segments = [(0, len(text), content_type)]

        for index, (start, end, segment_type) in enumerate(segments):
            keep_indent = segment_type is ContentType.CODE
            span = _trim(text, start, end, keep_indent)
            if span is None:
                continue
            levels = _LEVELS[segment_type]
            yield from self._atomize(
                text,
                span[0],
                span[1],
                levels,
                boundary=levels[0],
                separator=_SEPARATORS[BoundaryType.PARAGRAPH] if index else "",
                content_type=segment_type,
                segment=index,
                max_tokens=config.max_chunk_tokens,
            )

    def _atomize(
        self,
        text: str,
        start: int,
        end: int,
        levels: tuple[BoundaryType, ...],
        *,
        boundary: BoundaryType,
        separator: str,
        content_type: ContentType,
        segment: int,
        max_tokens: int,
    ) -> Iterator[_Atom]:
        """Yield atoms for ``text[start:end]``, splitting finer until each fits."""
        if self._fits(text[start:end], content_type, max_tokens):
            yield _Atom(start, end, boundary, separator, content_type, segment)
            return

        keep_indent = content_type is ContentType.CODE
        for depth, level in enumerate(levels):
            spans = _split(level, text, start, end, keep_indent)
            if len(spans) < 2:
                continue
            for i, (sub_start, sub_end) in enumerate(spans):
                yield from self._atomize(
                    text,
                    sub_start,
                    sub_end,
                    levels[depth + 1 :],
                    boundary=boundary if i == 0 else level,
                    separator=separator if i == 0 else _SEPARATORS[level],
                    content_type=content_type,
                    segment=segment,
                    max_tokens=max_tokens,
                )
            return

        # No structural boundary left: hard character slices.
        for i, (sub_start, sub_end) in enumerate(
            self._character_spans(text, start, end, content_type, max_tokens)
        ):
            yield _Atom(
                sub_start,
                sub_end,
                boundary if i == 0 else BoundaryType.CHARACTER,
                separator if i == 0 else "",
                content_type,
                segment,
            )

    def _character_spans(
        self,
        text: str,
        start: int,
        end: int,
        content_type: ContentType,
        max_tokens: int,
    ) -> list[tuple[int, int]]:
        """Greedy maximal slices that fit; always advances at least one character."""
        spans: list[tuple[int, int]] = []
        pos = start
        while pos < end:
            lo, hi = 1, end - pos
            while lo < hi:
                mid = (lo + hi + 1) // 2
                if self._fits(text[pos : pos + mid], content_type, max_tokens):
                    lo = mid
                else:
                    hi = mid - 1
            spans.append((pos, pos + lo))
            pos += lo
        return spans

    def _segment_mixed(self, text: str) -> list[tuple[int, int, ContentType]]:
        """Cut a MIXED document into code-like and prose-like line runs."""
        runs: list[list] = []  # [is_code, nonblank_lines, start, end]
        in_fence = False
        pending_blank_start: int | None = None

        for match in re.finditer(r"[^\n]*(?:\n|$)", text):
            line_start, line_end = match.span()
            if line_start == line_end:
                break
            line = match.group()
            if _FENCE_RE.match(line):
                is_code: bool | None = True
                in_fence = not in_fence
            elif in_fence:
                is_code = True if line.strip() else None
            else:
                is_code = self._analyzer.is_code_line(line)

            if is_code is None:
                # Blank lines join whichever run is open.
                if runs:
                    runs[-1][3] = line_end
                elif pending_blank_start is None:
                    pending_blank_start = line_start
                continue

            if runs and runs[-1][0] == is_code:
                runs[-1][1] += 1
                runs[-1][3] = line_end
            else:
                start = pending_blank_start if pending_blank_start is not None else line_start
                pending_blank_start = None
                runs.append([is_code, 1, start, line_end])

        if not runs:
            return [(0, len(text), ContentType.NATURAL_LANGUAGE)]

        merged: list[list] = []
        for run in runs:
            if merged and (run[1] < self._min_segment_lines or merged[-1][0] == run[0]):
                merged[-1][1] += run[1]
                merged[-1][3] = run[3]
            else:
                merged.append(list(run))
        if len(merged) > 1 and merged[0][1] < self._min_segment_lines:
            first = merged.pop(0)
            merged[0][1] += first[1]
            merged[0][2] = first[2]
        # A short leading run absorbed above may leave equal neighbours.
        segments: list[tuple[int, int, ContentType]] = []
        for is_code, _, start, end in merged:
            content_type = ContentType.CODE if is_code else ContentType.NATURAL_LANGUAGE
            if segments and segments[-1][2] is content_type:
                segments[-1] = (segments[-1][0], end, content_type)
            else:
                segments.append((start, end, content_type))
        return segments

    # ------------------------------------------------------------------
    # Packing
    # ------------------------------------------------------------------

    def _pack(
        self,
        text: str,
        atoms: list[_Atom],
        config: ProcessingConfig,
        document_name: str,
    ) -> list[ChunkDraft]:
        max_tokens = config.max_chunk_tokens
        newlines = [m.start() for m in re.finditer("\n", text)]

        chunks: list[ChunkDraft] = []
        body: list[_Atom] = []
        prefix = ""
        content = ""
        overlap = ""
        running = 0  # upper bound on estimate(content)

        i = 0
        while True:
            if body and i < len(atoms):
                atom = atoms[i]
                piece = text[atom.start : atom.end]
                if atom.segment == body[0].segment:
                    candidate = content + atom.separator + piece
                    bound = running + self._estimate(piece, atom.content_type) + _JOIN_SLACK
                    if bound > max_tokens:
                        bound = self._estimate(candidate, atom.content_type)
                    if bound <= max_tokens:
                        body.append(atom)
                        content = candidate
                        running = bound
                        i += 1
                        continue

            if body:
                chunk, returned = self._finalize(
                    text, content, prefix, body, document_name, newlines, max_tokens
                )
                chunks.append(chunk)
                overlap = self._tail_context(
                    text, body[: len(body) - returned], config.overlap_tokens
                )
                # Body atoms are atoms[i - len(body):i]; hand back the rejected tail.
                i -= returned
                body = []

            if i >= len(atoms):
                break

            atom = atoms[i]
            piece = text[atom.start : atom.end]
            body = [atom]
            prefix, content = "", piece
            if overlap:
                joined = overlap + atom.separator + piece
                if self._fits(joined, atom.content_type, max_tokens):
                    prefix, content = overlap + atom.separator, joined
            running = self._estimate(content, atom.content_type)
            i += 1

        return chunks

    def _finalize(
        self,
        text: str,
        content: str,
        prefix: str,
        body: list[_Atom],
        document_name: str,
        newlines: list[int],
        max_tokens: int,
    ) -> tuple[ChunkDraft, int]:
        """Build the chunk, handing trailing atoms back if the exact count is over.

        Returns the chunk and how many atoms were returned for re-packing.
        The incremental bound used while packing is an upper bound for the
        heuristic estimator, so atoms are only returned for exact tokenizers
        whose merges make a join cost more than its parts.
        """
        content_type = body[0].content_type
        tokens = self._estimate(content, content_type)
        returned = 0
        while tokens > max_tokens and len(body) - returned > 1:
            returned += 1
            kept = body[: len(body) - returned]
            content = prefix + _join(text, kept)
            tokens = self._estimate(content, content_type)
        if tokens > max_tokens and prefix:
            content = content[len(prefix) :]
            prefix = ""
            tokens = self._estimate(content, content_type)

        kept = body[: len(body) - returned]
        first, last = kept[0], kept[-1]
        start_line = bisect.bisect_right(newlines, first.start) + 1
        end_line = bisect.bisect_right(newlines, max(first.start, last.end - 1)) + 1
        context = (
            f"Document: {document_name} ({content_type.value}) | "
            f"{first.boundary.value} | lines {start_line}-{end_line}"
        )
        return (
            ChunkDraft(
                content=content,
                context=context,
                tokens=max(1, tokens),
                boundary_type=first.boundary,
                content_type=content_type,
                overlap_length=len(prefix),
                start_line=start_line,
                end_line=end_line,
            ),
            returned,
        )

    def _tail_context(self, text: str, body: list[_Atom], budget: int) -> str:
        """Return the longest suffix of *body* whose estimate fits *budget*."""
        if budget <= 0 or not body:
            return ""
        content_type = body[-1].content_type

        tail = ""
        following_separator = ""
        for atom in reversed(body):
            piece = text[atom.start : atom.end]
            candidate = piece + following_separator + tail if tail else piece
            if self._estimate(candidate, content_type) > budget:
                break
            tail = candidate
            following_separator = atom.separator
        if tail:
            return tail

        # The last atom alone is too large: take its trailing units instead.
        last = body[-1]
        piece = text[last.start : last.end]
        keep_indent = content_type is ContentType.CODE
        levels = (
            (BoundaryType.LINE, BoundaryType.WORD)
            if keep_indent
            else (BoundaryType.SENTENCE, BoundaryType.LINE, BoundaryType.WORD)
        )
        for level in levels:
            spans = _split(level, piece, 0, len(piece), keep_indent)
            best = ""
            for span_start, _ in reversed(spans[1:]):
                candidate = piece[span_start:]
                if self._estimate(candidate, content_type) > budget:
                    break
                best = candidate
            if best:
                return best
        return ""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _estimate(self, text: str, content_type: ContentType) -> int:
        return self._estimator.estimate(text, content_type)

    def _fits(self, text: str, content_type: ContentType, max_tokens: int) -> bool:
        return self._estimator.estimate(text, content_type) <= max_tokens


# ----------------------------------------------------------------------
# Span splitting (pure functions over offsets into the original text)
# ----------------------------------------------------------------------


def _split(
    level: BoundaryType,
    text: str,
    start: int,
    end: int,
    keep_indent: bool,
) -> list[tuple[int, int]]:
    if level is BoundaryType.DECLARATION:
        return _split_at_starts(text, start, end, _DECLARATION_START_RE, keep_indent)
    if level is BoundaryType.PARAGRAPH:
        return _split_on_gaps(text, start, end, _PARAGRAPH_GAP_RE, keep_indent)
    if level is BoundaryType.SENTENCE:
        return _split_sentences(text, start, end, keep_indent)
    if level is BoundaryType.LINE:
        return _split_on_gaps(text, start, end, _LINE_GAP_RE, keep_indent)
    if level is BoundaryType.WORD:
        return _split_on_gaps(text, start, end, _WORD_GAP_RE, keep_indent=False)
    return [(start, end)]


def _split_on_gaps(
    text: str,
    start: int,
    end: int,
    gap: re.Pattern[str],
    keep_indent: bool,
) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    last = start
    for match in gap.finditer(text, start, end):
        span = _trim(text, last, match.start(), keep_indent)
        if span is not None:
            spans.append(span)
        last = match.end()
    span = _trim(text, last, end, keep_indent)
    if span is not None:
        spans.append(span)
    return spans


def _split_at_starts(
    text: str,
    start: int,
    end: int,
    boundary: re.Pattern[str],
    keep_indent: bool,
) -> list[tuple[int, int]]:
    cuts = [start]
    for match in boundary.finditer(text, start, end):
        if match.start() > cuts[-1]:
            cuts.append(match.start())
    cuts.append(end)
    spans: list[tuple[int, int]] = []
    for cut_start, cut_end in zip(cuts, cuts[1:]):
        span = _trim(text, cut_start, cut_end, keep_indent)
        if span is not None:
            spans.append(span)
    return spans


def _split_sentences(
    text: str,
    start: int,
    end: int,
    keep_indent: bool,
) -> list[tuple[int, int]]:
    """Sentence spans, ignoring periods after common abbreviations.

    Abbreviation periods are masked with ``\\x00`` (same length, so offsets
    stay aligned with the original text) before looking for boundaries.
    """
    segment = text[start:end]
    masked = _ABBREVIATIONS_RE.sub(lambda m: m.group()[:-1] + "\x00", segment)
    spans: list[tuple[int, int]] = []
    last = 0
    for match in _SENTENCE_GAP_RE.finditer(masked):
        span = _trim(text, start + last, start + match.start(), keep_indent)
        if span is not None:
            spans.append(span)
        last = match.end()
    span = _trim(text, start + last, end, keep_indent)
    if span is not None:
        spans.append(span)
    return spans


def _trim(text: str, start: int, end: int, keep_indent: bool) -> tuple[int, int] | None:
    """Strip surrounding whitespace from a span; ``None`` if nothing is left.

    With *keep_indent* the span still starts at the beginning of its first
    non-blank line, so code keeps its indentation.
    """
    first = start
    while first < end and text[first].isspace():
        first += 1
    if first == end:
        return None
    last = end
    while last > first and text[last - 1].isspace():
        last -= 1
    if keep_indent:
        newline = text.rfind("\n", start, first)
        first = newline + 1 if newline != -1 else start
    return first, last


def _join(text: str, atoms: list[_Atom]) -> str:
    parts = [text[atoms[0].start : atoms[0].end]]
    for atom in atoms[1:]:
        parts.append(atom.separator)
        parts.append(text[atom.start : atom.end])
    return "".join(parts)
