"""Command-line access to the docpipe ingestion pipeline.

Usage::

    python -m docpipe.cli.ingest register --file ./handbook.pdf --project-id demo
    python -m docpipe.cli.ingest process --document-id <id> --project-id demo --stream
    python -m docpipe.cli.ingest status --document-id <id> --project-id demo
    python -m docpipe.cli.ingest reconcile

``register`` stands in for the upload service: it inserts a ``pending``
document row pointing at a local file (``file://``) or a URL.  The other
commands run against the same SQLite database the API uses.
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path
from typing import Any
from uuid import uuid4

from docpipe.config.loader import load_config
from docpipe.config.settings import Settings
from docpipe.models.document import SUPPORTED_MIME_TYPES, Document
from docpipe.models.ingestion import ProgressEvent
from docpipe.utils.errors import DocPipeError
from docpipe.utils.logging import configure_logging

# Extensions the stdlib mimetypes table misses on some platforms.
_EXTRA_MIME_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def _guess_mime_type(name: str) -> str | None:
    suffix = Path(name).suffix.lower()
    if suffix in _EXTRA_MIME_TYPES:
        return _EXTRA_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(name)
    return guessed


def _build_components(app_settings: Settings) -> dict[str, Any]:
    # Deferred so --help does not pay for the provider imports.
    from docpipe.main import build_components

    return build_components(app_settings, load_config(settings=app_settings))


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def _handle_register(args: argparse.Namespace, components: dict[str, Any]) -> int:
    """Insert a pending document row for a local file or a URL."""
    if args.file:
        path = Path(args.file).expanduser().resolve()
        if not path.is_file():
            print(f"Error: file not found: {path}", file=sys.stderr)
            return 1
        file_url = path.as_uri()
        file_size = path.stat().st_size
        name = args.name or path.name
    else:
        file_url = args.url
        file_size = 0
        name = args.name or args.url.rstrip("/").rsplit("/", 1)[-1] or args.url

    mime_type = args.mime_type or _guess_mime_type(name)
    if mime_type not in SUPPORTED_MIME_TYPES:
        print(
            f"Error: cannot ingest {name!r} (MIME type {mime_type or 'unknown'}); "
            f"pass --mime-type, one of: {', '.join(sorted(SUPPORTED_MIME_TYPES))}",
            file=sys.stderr,
        )
        return 1

    document = Document(
        id=args.document_id or uuid4().hex,
        user_id=args.user_id,
        project_id=args.project_id,
        name=name,
        file_url=file_url,
        file_size=file_size,
        mime_type=mime_type,
    )
    store = components["document_store"]
    await store.initialize()
    await store.add_document(document)

    print("Document registered:")
    print(f"  Document ID: {document.id}")
    print(f"  Project ID:  {document.project_id}")
    print(f"  Name:        {document.name}")
    print(f"  MIME type:   {document.mime_type}")
    print(f"  URL:         {document.file_url}")
    return 0


async def _handle_process(args: argparse.Namespace, components: dict[str, Any]) -> int:
    """Run the ingestion pipeline for one document."""
    await components["document_store"].initialize()
    service = components["ingestion_service"]

    def print_event(event: ProgressEvent) -> None:
        if args.stream:
            print(event.model_dump_json(), flush=True)

    try:
        summary = await service.process_document(
            args.document_id, args.project_id, progress=print_event
        )
    except DocPipeError as exc:
        print(f"Error ({exc.stage}): {exc}", file=sys.stderr)
        return 1

    if not args.stream:
        print("Ingestion complete:")
        print(f"  Chunks created:  {summary.chunks_created}")
        print(f"  Text length:     {summary.text_length}")
        print(f"  Avg tokens:      {summary.avg_tokens_per_chunk}")
        print(f"  Content type:    {summary.content_type.value}")
        print(f"  Strategy:        {summary.strategy}")
        print(f"  Time:            {summary.processing_time_ms / 1000:.2f}s")
    return 0


async def _handle_status(args: argparse.Namespace, components: dict[str, Any]) -> int:
    """Print a document's status and stored chunk count."""
    store = components["document_store"]
    await store.initialize()
    document = await store.get_document(args.document_id, args.project_id)
    if document is None:
        print(f"Error: document {args.document_id} not found", file=sys.stderr)
        return 1

    print(f"Document {document.id}")
    print(f"  Name:    {document.name}")
    print(f"  Status:  {document.status.value}")
    print(f"  Chunks:  {await store.count_chunks(document.id)}")
    print(f"  Updated: {document.updated_at.isoformat()}")
    return 0


async def _handle_reconcile(components: dict[str, Any]) -> int:
    """Fail documents stuck in processing past the staleness window."""
    await components["document_store"].initialize()
    stale_ids = await components["watchdog"].reconcile()
    print(f"Stale documents failed: {len(stale_ids)}")
    for document_id in stale_ids:
        print(f"  {document_id}")
    return 0


async def _dispatch(args: argparse.Namespace, app_settings: Settings) -> int:
    components = _build_components(app_settings)
    # Keep stdout clean for the JSON event lines.
    streaming = getattr(args, "stream", False)
    configure_logging(log_level="WARNING" if streaming else app_settings.log_level)
    try:
        if args.command == "register":
            return await _handle_register(args, components)
        if args.command == "process":
            return await _handle_process(args, components)
        if args.command == "status":
            return await _handle_status(args, components)
        return await _handle_reconcile(components)
    finally:
        await components["http_client"].aclose()


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the ingestion CLI."""
    parser = argparse.ArgumentParser(
        prog="python -m docpipe.cli.ingest",
        description="Register, ingest and inspect documents.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Ingestion commands")

    # -- register --
    register_parser = subparsers.add_parser("register", help="Register a document for ingestion")
    source = register_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="Path to a local file")
    source.add_argument("--url", help="HTTP(S) URL of a stored file")
    register_parser.add_argument("--project-id", required=True, dest="project_id")
    register_parser.add_argument("--user-id", default="cli", dest="user_id")
    register_parser.add_argument("--document-id", dest="document_id", help="Default: random")
    register_parser.add_argument("--name", help="Display name (default: file name)")
    register_parser.add_argument(
        "--mime-type", dest="mime_type", help="Override the type guessed from the name"
    )

    # -- process --
    process_parser = subparsers.add_parser("process", help="Ingest a registered document")
    process_parser.add_argument("--document-id", required=True, dest="document_id")
    process_parser.add_argument("--project-id", required=True, dest="project_id")
    process_parser.add_argument(
        "--stream", action="store_true", help="Print progress events as JSON lines"
    )

    # -- status --
    status_parser = subparsers.add_parser("status", help="Show a document's status")
    status_parser.add_argument("--document-id", required=True, dest="document_id")
    status_parser.add_argument("--project-id", required=True, dest="project_id")

    # -- reconcile --
    subparsers.add_parser("reconcile", help="Fail documents stuck in processing")

    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point; exits with the handler's status code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = Settings()
    sys.exit(asyncio.run(_dispatch(args, app_settings)))


if __name__ == "__main__":
    main()
