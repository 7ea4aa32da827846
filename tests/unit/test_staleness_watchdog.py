"""Unit tests for StalenessWatchdog."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docpipe.models.document import DocumentStatus
from docpipe.providers.storage.sqlite_document_store import SQLiteDocumentStore
from docpipe.services.ingestion.staleness_watchdog import StalenessWatchdog
from docpipe.utils.errors import PersistenceError
from tests.conftest import make_document


class TestReconcile:
    @pytest.mark.asyncio
    async def test_cutoff_is_now_minus_threshold(self) -> None:
        store = MagicMock()
        store.fail_stale_documents = AsyncMock(return_value=["doc-1"])
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)  # noqa: UP017

        result = await StalenessWatchdog(store, stale_after_seconds=600).reconcile(now=now)

        assert result == ["doc-1"]
        store.fail_stale_documents.assert_awaited_once_with(now - timedelta(minutes=10))

    @pytest.mark.asyncio
    async def test_abandoned_run_is_failed(self, document_store: SQLiteDocumentStore) -> None:
        await document_store.add_document(make_document())
        await document_store.claim_document(
            "doc-1", "run-a", datetime.now(tz=timezone.utc) - timedelta(hours=1)  # noqa: UP017
        )
        watchdog = StalenessWatchdog(document_store, stale_after_seconds=60)

        later = datetime.now(tz=timezone.utc) + timedelta(minutes=5)  # noqa: UP017
        assert await watchdog.reconcile(now=later) == ["doc-1"]

        loaded = await document_store.get_document("doc-1", "project-1")
        assert loaded.status is DocumentStatus.FAILED

    @pytest.mark.asyncio
    async def test_reconciled_run_cannot_revive_the_document(
        self, document_store: SQLiteDocumentStore
    ) -> None:
        await document_store.add_document(make_document())
        await document_store.claim_document(
            "doc-1", "run-a", datetime.now(tz=timezone.utc) - timedelta(hours=1)  # noqa: UP017
        )
        later = datetime.now(tz=timezone.utc) + timedelta(hours=1)  # noqa: UP017
        assert await StalenessWatchdog(document_store).reconcile(now=later) == ["doc-1"]

        heartbeat = await document_store.update_status("doc-1", DocumentStatus.PROCESSING, "run-a")
        completion = await document_store.update_status("doc-1", DocumentStatus.COMPLETED, "run-a")

        assert heartbeat is False
        assert completion is False
        loaded = await document_store.get_document("doc-1", "project-1")
        assert loaded.status is DocumentStatus.FAILED
        assert loaded.run_id is None

    @pytest.mark.asyncio
    async def test_live_run_left_alone(self, document_store: SQLiteDocumentStore) -> None:
        await document_store.add_document(make_document())
        await document_store.claim_document(
            "doc-1", "run-a", datetime.now(tz=timezone.utc) - timedelta(hours=1)  # noqa: UP017
        )

        assert await StalenessWatchdog(document_store).reconcile() == []

    def test_threshold_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="stale_after_seconds"):
            StalenessWatchdog(MagicMock(), stale_after_seconds=0)


class TestRunForever:
    @pytest.mark.asyncio
    async def test_failed_pass_does_not_stop_the_loop(self) -> None:
        store = MagicMock()
        store.fail_stale_documents = AsyncMock(side_effect=[PersistenceError("locked"), []])
        watchdog = StalenessWatchdog(store)

        with patch(
            "docpipe.services.ingestion.staleness_watchdog.asyncio.sleep",
            new_callable=AsyncMock,
            side_effect=[None, asyncio.CancelledError()],
        ) as sleep:
            with pytest.raises(asyncio.CancelledError):
                await watchdog.run_forever(interval_seconds=30)

        assert store.fail_stale_documents.await_count == 2
        sleep.assert_awaited_with(30)
