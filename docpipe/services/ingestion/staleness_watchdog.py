"""Fails documents whose ingestion run died without reporting back.

A worker killed mid-run (deploy, OOM, lost connection) leaves its document
in ``processing`` forever.  Live runs heartbeat ``updated_at`` after every
embedding batch, so a row that has not moved for ``stale_after_seconds`` is
treated as abandoned and set to ``failed``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog

from docpipe.interfaces.document_store import IDocumentStore

logger = structlog.get_logger(logger_name=__name__)


class StalenessWatchdog:
    """Reconcile stuck ``processing`` documents, on demand or periodically."""

    def __init__(self, document_store: IDocumentStore, stale_after_seconds: int = 1800) -> None:
        if stale_after_seconds <= 0:
            msg = f"stale_after_seconds must be positive, got {stale_after_seconds}"
            raise ValueError(msg)
        self._store = document_store
        self._stale_after = timedelta(seconds=stale_after_seconds)

    async def reconcile(self, now: datetime | None = None) -> list[str]:
        """Fail every stale ``processing`` document and return their ids."""
        moment = now or datetime.now(tz=timezone.utc)  # noqa: UP017
        stale_ids = await self._store.fail_stale_documents(moment - self._stale_after)
        if stale_ids:
            logger.warning("stale_documents_failed", count=len(stale_ids), document_ids=stale_ids)
        else:
            logger.debug("stale_documents_none")
        return stale_ids

    async def run_forever(self, interval_seconds: float) -> None:
        """Call :meth:`reconcile` every *interval_seconds* until cancelled.

        A failed pass is logged and retried on the next tick.
        """
        logger.info("watchdog_started", interval_s=interval_seconds)
        while True:
            try:
                await self.reconcile()
            except Exception as exc:
                logger.error("watchdog_pass_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
