"""Unit tests for the ingestion CLI -- docpipe.cli.ingest."""

from __future__ import annotations

import json
from argparse import Namespace
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from docpipe.cli.ingest import (
    _build_parser,
    _guess_mime_type,
    _handle_process,
    _handle_reconcile,
    _handle_register,
    _handle_status,
)
from docpipe.models.document import DocumentStatus
from docpipe.models.ingestion import (
    ContentType,
    IngestionSummary,
    ProgressEvent,
    ProgressEventType,
)
from docpipe.providers.storage.sqlite_document_store import SQLiteDocumentStore
from docpipe.utils.errors import DocumentBusyError

# ======================================================================
# Shared helpers
# ======================================================================


def _register_args(**overrides) -> Namespace:
    defaults = {
        "file": None,
        "url": None,
        "project_id": "project-1",
        "user_id": "cli",
        "document_id": "doc-1",
        "name": None,
        "mime_type": None,
    }
    defaults.update(overrides)
    return Namespace(**defaults)


def _summary() -> IngestionSummary:
    return IngestionSummary(
        document_id="doc-1",
        run_id="run-1",
        chunks_created=3,
        text_length=900,
        processing_time_ms=1500,
        avg_tokens_per_chunk=120,
        content_type=ContentType.NATURAL_LANGUAGE,
        strategy="small/natural_language",
    )


# ======================================================================
# Parser and helpers
# ======================================================================


class TestParser:
    def test_register_requires_a_source(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["register", "--project-id", "p"])

    def test_process_flags(self) -> None:
        args = _build_parser().parse_args(
            ["process", "--document-id", "d", "--project-id", "p", "--stream"]
        )
        assert (args.command, args.document_id, args.project_id, args.stream) == (
            "process",
            "d",
            "p",
            True,
        )

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("notes.txt", "text/plain"),
            ("README.md", "text/markdown"),
            ("report.pdf", "application/pdf"),
            (
                "memo.docx",
                "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            ),
        ],
    )
    def test_guess_mime_type(self, name: str, expected: str) -> None:
        assert _guess_mime_type(name) == expected


# ======================================================================
# Handlers
# ======================================================================


class TestRegister:
    @pytest.mark.asyncio
    async def test_registers_local_file(
        self, tmp_path: Path, document_store: SQLiteDocumentStore, capsys
    ) -> None:
        path = tmp_path / "handbook.md"
        path.write_text("# Handbook\n\nWelcome.")

        code = await _handle_register(
            _register_args(file=str(path)), {"document_store": document_store}
        )

        assert code == 0
        document = await document_store.get_document("doc-1", "project-1")
        assert document.file_url == path.resolve().as_uri()
        assert document.mime_type == "text/markdown"
        assert document.file_size == path.stat().st_size
        assert document.status is DocumentStatus.PENDING
        assert "Document registered" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_rejects_unsupported_type(
        self, tmp_path: Path, document_store: SQLiteDocumentStore, capsys
    ) -> None:
        path = tmp_path / "photo.png"
        path.write_bytes(b"\x89PNG")

        code = await _handle_register(
            _register_args(file=str(path)), {"document_store": document_store}
        )

        assert code == 1
        assert "cannot ingest" in capsys.readouterr().err
        assert await document_store.get_document("doc-1", "project-1") is None

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path, capsys) -> None:
        code = await _handle_register(
            _register_args(file=str(tmp_path / "absent.txt")), {"document_store": MagicMock()}
        )
        assert code == 1
        assert "file not found" in capsys.readouterr().err


class TestProcess:
    @pytest.mark.asyncio
    async def test_prints_summary(self, capsys) -> None:
        service = MagicMock()
        service.process_document = AsyncMock(return_value=_summary())
        store = MagicMock(initialize=AsyncMock())

        code = await _handle_process(
            Namespace(document_id="doc-1", project_id="project-1", stream=False),
            {"document_store": store, "ingestion_service": service},
        )

        assert code == 0
        out = capsys.readouterr().out
        assert "Chunks created:  3" in out
        assert "small/natural_language" in out

    @pytest.mark.asyncio
    async def test_stream_prints_json_lines(self, capsys) -> None:
        async def fake_process(document_id, project_id, progress=None):
            progress(ProgressEvent(type=ProgressEventType.START, document_id=document_id))
            progress(ProgressEvent(type=ProgressEventType.COMPLETE, document_id=document_id))
            return _summary()

        service = MagicMock()
        service.process_document = AsyncMock(side_effect=fake_process)

        code = await _handle_process(
            Namespace(document_id="doc-1", project_id="project-1", stream=True),
            {"document_store": MagicMock(initialize=AsyncMock()), "ingestion_service": service},
        )

        assert code == 0
        lines = capsys.readouterr().out.splitlines()
        assert [json.loads(line)["type"] for line in lines] == ["start", "complete"]

    @pytest.mark.asyncio
    async def test_pipeline_error_reports_stage(self, capsys) -> None:
        service = MagicMock()
        service.process_document = AsyncMock(side_effect=DocumentBusyError())

        code = await _handle_process(
            Namespace(document_id="doc-1", project_id="project-1", stream=False),
            {"document_store": MagicMock(initialize=AsyncMock()), "ingestion_service": service},
        )

        assert code == 1
        assert "Error (claim)" in capsys.readouterr().err


class TestStatusAndReconcile:
    @pytest.mark.asyncio
    async def test_status_unknown_document(
        self, document_store: SQLiteDocumentStore, capsys
    ) -> None:
        code = await _handle_status(
            Namespace(document_id="nope", project_id="project-1"),
            {"document_store": document_store},
        )
        assert code == 1
        assert "not found" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_reconcile_lists_failed_ids(self, capsys) -> None:
        watchdog = MagicMock()
        watchdog.reconcile = AsyncMock(return_value=["doc-7"])

        code = await _handle_reconcile(
            {"document_store": MagicMock(initialize=AsyncMock()), "watchdog": watchdog}
        )

        assert code == 0
        out = capsys.readouterr().out
        assert "Stale documents failed: 1" in out
        assert "doc-7" in out
