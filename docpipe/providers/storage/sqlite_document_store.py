"""SQLite-backed document and chunk store.

Persists documents and their embedded chunks to a local SQLite database at
``data/docpipe.db``.  Uses ``aiosqlite`` for async I/O with one short-lived
connection per operation; WAL mode lets concurrent batch writers and the
status reader coexist.

Embedding vectors are stored as JSON text.  Chunks are keyed on
``(document_id, chunk_index)`` and removed by ``ON DELETE CASCADE`` when
their document goes away.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
import structlog

from docpipe.interfaces.document_store import IDocumentStore
from docpipe.models.document import ChunkRecord, Document, DocumentStatus
from docpipe.utils.errors import PersistenceError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/docpipe.db")
_CONNECT_TIMEOUT_SECONDS = 30.0

_CREATE_DOCUMENTS_SQL = """\
CREATE TABLE IF NOT EXISTS documents (
    id          TEXT    PRIMARY KEY,
    user_id     TEXT    NOT NULL,
    project_id  TEXT    NOT NULL,
    name        TEXT    NOT NULL,
    file_url    TEXT    NOT NULL,
    file_size   INTEGER NOT NULL DEFAULT 0,
    mime_type   TEXT    NOT NULL,
    status      TEXT    NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    run_id      TEXT,
    created_at  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL
);
"""

_CREATE_CHUNKS_SQL = """\
CREATE TABLE IF NOT EXISTS document_chunks (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id    TEXT    NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    user_id        TEXT    NOT NULL,
    project_id     TEXT    NOT NULL,
    chunk_index    INTEGER NOT NULL,
    content        TEXT    NOT NULL,
    context        TEXT    NOT NULL,
    embedding      TEXT    NOT NULL,
    tokens         INTEGER NOT NULL,
    boundary_type  TEXT,
    content_type   TEXT,
    created_at     TEXT    NOT NULL,
    UNIQUE(document_id, chunk_index)
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_documents_project ON documents(project_id);",
    "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status, updated_at);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_project ON document_chunks(project_id);",
]

_INSERT_DOCUMENT_SQL = """\
INSERT INTO documents
    (id, user_id, project_id, name, file_url, file_size, mime_type,
     status, run_id, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_SELECT_DOCUMENT_SQL = """\
SELECT id, user_id, project_id, name, file_url, file_size, mime_type,
       status, run_id, created_at, updated_at
FROM documents
WHERE id = ? AND project_id = ?;
"""

# A document is held by a live run when it is processing under a run_id and
# was touched after the staleness cutoff.  Anything else may be claimed.
_CLAIM_SQL = """\
UPDATE documents
SET status = 'processing', run_id = ?, updated_at = ?
WHERE id = ?
  AND NOT (status = 'processing' AND run_id IS NOT NULL AND updated_at >= ?);
"""

_UPSERT_CHUNK_SQL = """\
INSERT INTO document_chunks
    (document_id, user_id, project_id, chunk_index, content, context,
     embedding, tokens, boundary_type, content_type, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(document_id, chunk_index)
DO UPDATE SET content       = excluded.content,
              context       = excluded.context,
              embedding     = excluded.embedding,
              tokens        = excluded.tokens,
              boundary_type = excluded.boundary_type,
              content_type  = excluded.content_type,
              created_at    = excluded.created_at;
"""

_SELECT_CHUNKS_SQL = """\
SELECT document_id, user_id, project_id, chunk_index, content, context,
       embedding, tokens, boundary_type, content_type
FROM document_chunks
WHERE document_id = ?
ORDER BY chunk_index;
"""


def _timestamp(moment: datetime | None = None) -> str:
    """Render a UTC timestamp in one fixed, lexically sortable format."""
    moment = moment or datetime.now(tz=timezone.utc)  # noqa: UP017
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")  # noqa: UP017


def _row_to_document(row: aiosqlite.Row) -> Document:
    data = dict(row)
    data["created_at"] = datetime.strptime(data["created_at"], "%Y-%m-%dT%H:%M:%S.%fZ").replace(
        tzinfo=timezone.utc  # noqa: UP017
    )
    data["updated_at"] = datetime.strptime(data["updated_at"], "%Y-%m-%dT%H:%M:%S.%fZ").replace(
        tzinfo=timezone.utc  # noqa: UP017
    )
    return Document(**data)


class SQLiteDocumentStore(IDocumentStore):
    """SQLite-backed document and chunk persistence."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL;")
                await db.execute(_CREATE_DOCUMENTS_SQL)
                await db.execute(_CREATE_CHUNKS_SQL)
                for idx_sql in _CREATE_INDICES_SQL:
                    await db.execute(idx_sql)
                await db.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot initialise database at {self._db_path}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        logger.info("document_db_initialized", path=str(self._db_path))

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def add_document(self, document: Document) -> None:
        try:
            async with self._connect() as db:
                await db.execute(
                    _INSERT_DOCUMENT_SQL,
                    (
                        document.id,
                        document.user_id,
                        document.project_id,
                        document.name,
                        document.file_url,
                        document.file_size,
                        document.mime_type,
                        document.status.value,
                        document.run_id,
                        _timestamp(document.created_at),
                        _timestamp(document.updated_at),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot insert document {document.id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        logger.info("document_added", document_id=document.id, project_id=document.project_id)

    async def get_document(self, document_id: str, project_id: str) -> Document | None:
        try:
            async with self._connect() as db:
                cursor = await db.execute(_SELECT_DOCUMENT_SQL, (document_id, project_id))
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot read document {document_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return _row_to_document(row) if row is not None else None

    async def claim_document(
        self,
        document_id: str,
        run_id: str,
        stale_before: datetime,
    ) -> bool:
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    _CLAIM_SQL,
                    (run_id, _timestamp(), document_id, _timestamp(stale_before)),
                )
                await db.commit()
                claimed = cursor.rowcount == 1
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot claim document {document_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        logger.debug("document_claim", document_id=document_id, run_id=run_id, claimed=claimed)
        return claimed

    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        run_id: str | None = None,
    ) -> bool:
        sql = "UPDATE documents SET status = ?, updated_at = ? WHERE id = ?"
        params: tuple = (status.value, _timestamp(), document_id)
        if run_id is not None:
            # A run only writes while it still holds a live claim.
            sql += " AND run_id = ? AND status = 'processing'"
            params = (*params, run_id)
        try:
            async with self._connect() as db:
                cursor = await db.execute(sql, params)
                await db.commit()
                updated = cursor.rowcount == 1
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot update status of document {document_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return updated

    async def fail_stale_documents(self, stale_before: datetime) -> list[str]:
        cutoff = _timestamp(stale_before)
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT id FROM documents WHERE status = 'processing' AND updated_at < ?",
                    (cutoff,),
                )
                stale_ids = [row["id"] for row in await cursor.fetchall()]
                if stale_ids:
                    await db.executemany(
                        "UPDATE documents SET status = 'failed', run_id = NULL, updated_at = ? "
                        "WHERE id = ? AND status = 'processing' AND updated_at < ?",
                        [(_timestamp(), doc_id, cutoff) for doc_id in stale_ids],
                    )
                    await db.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot reconcile stale documents: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return stale_ids

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def delete_chunks(self, document_id: str) -> int:
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "DELETE FROM document_chunks WHERE document_id = ?",
                    (document_id,),
                )
                await db.commit()
                deleted = cursor.rowcount
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot delete chunks of document {document_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return deleted

    async def upsert_chunk(self, chunk: ChunkRecord) -> None:
        try:
            async with self._connect() as db:
                await db.execute(
                    _UPSERT_CHUNK_SQL,
                    (
                        chunk.document_id,
                        chunk.user_id,
                        chunk.project_id,
                        chunk.chunk_index,
                        chunk.content,
                        chunk.context,
                        json.dumps(chunk.embedding),
                        chunk.tokens,
                        chunk.boundary_type,
                        chunk.content_type,
                        _timestamp(),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot write chunk {chunk.chunk_index} of document {chunk.document_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    async def count_chunks(self, document_id: str) -> int:
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) AS n FROM document_chunks WHERE document_id = ?",
                    (document_id,),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot count chunks of document {document_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return int(row["n"]) if row is not None else 0

    async def list_chunks(self, document_id: str) -> list[ChunkRecord]:
        try:
            async with self._connect() as db:
                cursor = await db.execute(_SELECT_CHUNKS_SQL, (document_id,))
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise PersistenceError(
                f"Cannot list chunks of document {document_id}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        chunks: list[ChunkRecord] = []
        for row in rows:
            data = dict(row)
            data["embedding"] = json.loads(data["embedding"])
            chunks.append(ChunkRecord(**data))
        return chunks

    def get_provider_name(self) -> str:
        return "sqlite_documents"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _connect(self) -> _Connection:
        return _Connection(self._db_path)


class _Connection:
    """Async context manager yielding a configured aiosqlite connection.

    Enables foreign keys (required for the chunk cascade, off by default in
    SQLite) and the ``Row`` factory on every connection.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> aiosqlite.Connection:
        self._db = await aiosqlite.connect(str(self._db_path), timeout=_CONNECT_TIMEOUT_SECONDS)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON;")
        return self._db

    async def __aexit__(self, *exc_info: object) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
