"""Per-document progress broadcasting for ingestion runs.

The orchestrator emits :class:`ProgressEvent` objects through a
:class:`ProgressTracker`.  The tracker keeps the latest event of each
document with a run in flight, and fans each event out to listeners.  A
listener is registered under a document ID, to watch every run of that
document, or under a run ID, to watch one run.  The NDJSON streaming route
and the CLI both watch their own run only.

A listener that raises is logged and skipped, because a dropped HTTP
connection must not abort the ingestion run it was watching.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from docpipe.models.ingestion import ProgressEvent
from docpipe.utils.logging import get_logger

# Sync or async callable receiving each event.
ProgressListener = Callable[[ProgressEvent], Awaitable[None] | None]


class ProgressTracker:
    """Tracks the latest event per in-flight document and notifies listeners."""

    def __init__(self) -> None:
        self._latest: dict[str, ProgressEvent] = {}
        self._listeners: dict[str, list[ProgressListener]] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def emit(self, event: ProgressEvent) -> None:
        """Record *event* and notify the listeners of its document and run.

        A terminal event clears the document's entry, so the cache only
        holds documents that are still being processed.
        """
        if event.is_terminal:
            self._latest.pop(event.document_id, None)
        else:
            self._latest[event.document_id] = event
        self._logger.debug(
            "progress_event",
            document_id=event.document_id,
            run_id=event.run_id,
            type=event.type.value,
            step=event.step,
            progress=event.progress,
        )
        await self._notify_listeners(event)

    async def deliver(self, event: ProgressEvent, callback: ProgressListener) -> None:
        """Hand *event* to one callback only, bypassing the cache and other listeners."""
        try:
            result = callback(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            self._logger.warning(
                "listener_callback_error",
                document_id=event.document_id,
                error=str(exc),
                callback=getattr(callback, "__name__", repr(callback)),
            )

    def register_listener(self, key: str, callback: ProgressListener) -> None:
        """Subscribe *callback* to the events of a document ID or a run ID."""
        listeners = self._listeners.setdefault(key, [])
        if callback not in listeners:
            listeners.append(callback)

    def unregister_listener(self, key: str, callback: ProgressListener) -> None:
        """Remove a previously registered callback; unknown callbacks are ignored."""
        listeners = self._listeners.get(key, [])
        if callback in listeners:
            listeners.remove(callback)
        if not listeners:
            self._listeners.pop(key, None)

    def get_latest(self, document_id: str) -> ProgressEvent | None:
        """Return the last event of the document's in-flight run, if any."""
        return self._latest.get(document_id)

    def clear(self, document_id: str, run_id: str) -> None:
        """Drop the cached event of *document_id* if it still belongs to *run_id*."""
        latest = self._latest.get(document_id)
        if latest is not None and latest.run_id == run_id:
            del self._latest[document_id]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify_listeners(self, event: ProgressEvent) -> None:
        keys = [event.document_id]
        if event.run_id is not None:
            keys.append(event.run_id)
        # Copy so a listener may unregister itself while being notified.
        for key in keys:
            for callback in list(self._listeners.get(key, [])):
                await self.deliver(event, callback)
