"""Raw file bytes -> plain text, dispatched on the declared MIME type.

Supported formats:

* ``text/plain``, ``text/csv``, ``text/markdown`` -- UTF-8 decoding (BOM
  tolerant, undecodable bytes replaced).
* ``application/pdf`` -- PyMuPDF (``fitz``) text layer, page by page.
* ``application/vnd.openxmlformats-officedocument.wordprocessingml.document``
  -- python-docx paragraphs followed by table rows.

The parsers are synchronous and CPU/IO heavy, so they run in a worker thread
via :func:`asyncio.to_thread`.  Parser failures always surface as
:class:`ExtractionFailedError`: an empty string is never returned in place
of an error, because blank output must mean "the file has no text".
"""

from __future__ import annotations

import asyncio
import io
from collections.abc import Callable

import docx
import fitz  # PyMuPDF -- the "fitz" import name is a PyMuPDF convention
import structlog

from docpipe.utils.errors import ExtractionFailedError, UnsupportedFormatError

logger = structlog.get_logger(logger_name=__name__)

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PDF_MIME_TYPE = "application/pdf"
_TEXT_MIME_TYPES = frozenset({"text/plain", "text/csv", "text/markdown"})


class TextExtractor:
    """Convert uploaded file bytes into plain text."""

    def __init__(self) -> None:
        self._extractors: dict[str, Callable[[bytes], str]] = {
            PDF_MIME_TYPE: self._extract_pdf,
            DOCX_MIME_TYPE: self._extract_docx,
        }
        for mime in _TEXT_MIME_TYPES:
            self._extractors[mime] = self._decode_text

    @property
    def supported_types(self) -> frozenset[str]:
        return frozenset(self._extractors)

    async def extract(self, file_bytes: bytes, mime_type: str) -> str:
        """Return the text content of *file_bytes*.

        Parameters
        ----------
        file_bytes:
            The raw uploaded file.
        mime_type:
            Declared MIME type; parameters such as ``; charset=utf-8`` are
            ignored.

        Raises
        ------
        UnsupportedFormatError
            No extractor is registered for *mime_type*.
        ExtractionFailedError
            The parser rejected the file (corrupt, encrypted, ...).
        """
        base_type = mime_type.split(";", 1)[0].strip().lower()
        extractor = self._extractors.get(base_type)
        if extractor is None:
            raise UnsupportedFormatError(f"Unsupported file type: {mime_type or '(none)'}")

        try:
            text = await asyncio.to_thread(extractor, file_bytes)
        except ExtractionFailedError:
            raise
        except Exception as exc:
            raise ExtractionFailedError(
                f"Failed to extract text from {base_type} file: {exc}",
                provider_name=self._provider_for(base_type),
            ) from exc

        # NUL bytes are not storable as text in most databases.
        text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
        logger.debug("text_extracted", mime_type=base_type, bytes=len(file_bytes), chars=len(text))
        return text

    # ------------------------------------------------------------------
    # Format handlers (run in a worker thread)
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_text(data: bytes) -> str:
        return data.decode("utf-8-sig", errors="replace")

    @staticmethod
    def _extract_pdf(data: bytes) -> str:
        with fitz.open(stream=data, filetype="pdf") as pdf:
            if pdf.needs_pass:
                raise ExtractionFailedError(
                    "PDF is encrypted and cannot be read without a password",
                    provider_name="pymupdf",
                )
            pages = [page.get_text("text").strip() for page in pdf]
        return "\n\n".join(page for page in pages if page)

    @staticmethod
    def _extract_docx(data: bytes) -> str:
        document = docx.Document(io.BytesIO(data))
        blocks = [para.text for para in document.paragraphs if para.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    blocks.append(" | ".join(cells))
        return "\n\n".join(blocks)

    @staticmethod
    def _provider_for(mime_type: str) -> str:
        if mime_type == PDF_MIME_TYPE:
            return "pymupdf"
        if mime_type == DOCX_MIME_TYPE:
            return "python-docx"
        return "text"
