"""
SQLite persistence for knowledge base files and memory items.

Embeddings are stored as float32 blobs. Methods that take part in a larger
unit of work accept an optional `conn` obtained from `transaction()`; without
one they open and commit their own connection.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

import aiosqlite
import numpy as np
from loguru import logger

from .models import (
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    KBStats,
    KnowledgeBaseFile,
    MemoryItem,
    utc_now,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS knowledge_base_files (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    character_id TEXT,
    file_name TEXT NOT NULL,
    file_type TEXT,
    file_size_bytes INTEGER,
    storage_path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    status_before_pause TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS kb_files_user_id_idx ON knowledge_base_files (user_id);
CREATE INDEX IF NOT EXISTS kb_files_character_id_idx ON knowledge_base_files (character_id);
CREATE INDEX IF NOT EXISTS kb_files_status_idx ON knowledge_base_files (status);

CREATE TABLE IF NOT EXISTS memory_items (
    id TEXT PRIMARY KEY,
    owner_type TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_id TEXT,
    content TEXT NOT NULL,
    embedding BLOB,
    tags TEXT NOT NULL DEFAULT '[]',
    visibility_policy TEXT NOT NULL DEFAULT 'normal',
    chunk_index INTEGER,
    start_char INTEGER,
    end_char INTEGER,
    embedding_provider TEXT,
    embedding_model TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS memory_items_owner_idx ON memory_items (owner_type, owner_id);
CREATE INDEX IF NOT EXISTS memory_items_source_idx ON memory_items (source_type, source_id);
"""

_FILE_COLUMNS = (
    "id, user_id, character_id, file_name, file_type, file_size_bytes, storage_path, "
    "status, status_before_pause, tags, created_at, updated_at"
)
_ITEM_COLUMNS = (
    "id, owner_type, owner_id, source_type, source_id, content, embedding, tags, "
    "visibility_policy, chunk_index, start_char, end_char, embedding_provider, "
    "embedding_model, created_at"
)


def _encode_embedding(embedding: Optional[list[float]]) -> Optional[bytes]:
    if embedding is None:
        return None
    return np.asarray(embedding, dtype=np.float32).tobytes()


def _decode_embedding(blob: Optional[bytes]) -> Optional[list[float]]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


def _row_to_file(row: aiosqlite.Row) -> KnowledgeBaseFile:
    data = dict(row)
    data["tags"] = json.loads(data["tags"] or "[]")
    return KnowledgeBaseFile.model_validate(data)


def _row_to_item(row: aiosqlite.Row) -> MemoryItem:
    data = dict(row)
    data["tags"] = json.loads(data["tags"] or "[]")
    data["embedding"] = _decode_embedding(data["embedding"])
    return MemoryItem.model_validate(data)


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


async def _first_row(cursor: aiosqlite.Cursor) -> Optional[aiosqlite.Row]:
    # Draining the cursor finishes RETURNING statements before commit.
    rows = await cursor.fetchall()
    return rows[0] if rows else None


class MemoryStore:
    """
    Row-level access to `knowledge_base_files` and `memory_items`.

    A new connection is opened per operation, mirroring how the rest of the
    package talks to SQLite; `transaction()` groups several operations.
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, timeout=30)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA busy_timeout = 30000")
        return conn

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        if self._initialized:
            return

        conn = await self._open()
        try:
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.executescript(_SCHEMA)
            await conn.commit()
        finally:
            await conn.close()

        self._initialized = True
        logger.info(f"✅ Memory store initialized at: {self.db_path}")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a unit of work atomically.

        The write lock is taken up front (BEGIN IMMEDIATE). The transaction
        commits when the block exits normally and rolls back on any exception,
        which is then re-raised.
        """
        await self.initialize()
        conn = await self._open()
        try:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()
        finally:
            await conn.close()

    @asynccontextmanager
    async def _connection(
        self, conn: Optional[aiosqlite.Connection]
    ) -> AsyncIterator[aiosqlite.Connection]:
        if conn is not None:
            yield conn
            return
        async with self.transaction() as own:
            yield own

    # ------------------------------------------------------------------
    # Knowledge base files
    # ------------------------------------------------------------------

    async def create_file(
        self, kb_file: KnowledgeBaseFile, conn: Optional[aiosqlite.Connection] = None
    ) -> KnowledgeBaseFile:
        async with self._connection(conn) as db:
            await db.execute(
                f"INSERT INTO knowledge_base_files ({_FILE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    kb_file.id,
                    kb_file.user_id,
                    kb_file.character_id,
                    kb_file.file_name,
                    kb_file.file_type,
                    kb_file.file_size_bytes,
                    kb_file.storage_path,
                    kb_file.status,
                    kb_file.status_before_pause,
                    json.dumps(kb_file.tags, ensure_ascii=False),
                    kb_file.created_at.isoformat(),
                    kb_file.updated_at.isoformat(),
                ),
            )
        logger.debug(f"📝 Created KB file record '{kb_file.id}' ({kb_file.file_name})")
        return kb_file

    async def get_file(
        self,
        file_id: str,
        user_id: Optional[str] = None,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> Optional[KnowledgeBaseFile]:
        """Fetch a file, optionally restricted to its owning user."""
        query = f"SELECT {_FILE_COLUMNS} FROM knowledge_base_files WHERE id = ?"
        params: list[Any] = [file_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        async with self._connection(conn) as db:
            cursor = await db.execute(query, params)
            row = await _first_row(cursor)
        return _row_to_file(row) if row else None

    async def list_files(
        self, user_id: str, character_id: Optional[str] = None
    ) -> list[KnowledgeBaseFile]:
        query = f"SELECT {_FILE_COLUMNS} FROM knowledge_base_files WHERE user_id = ?"
        params: list[Any] = [user_id]
        if character_id is not None:
            query += " AND character_id = ?"
            params.append(character_id)
        query += " ORDER BY created_at DESC"

        async with self._connection(None) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_file(row) for row in rows]

    async def update_file_status(
        self,
        file_id: str,
        status: str,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> Optional[KnowledgeBaseFile]:
        async with self._connection(conn) as db:
            cursor = await db.execute(
                "UPDATE knowledge_base_files SET status = ?, updated_at = ? "
                f"WHERE id = ? RETURNING {_FILE_COLUMNS}",
                (status, utc_now().isoformat(), file_id),
            )
            row = await _first_row(cursor)
        return _row_to_file(row) if row else None

    async def update_file_tags(
        self, file_id: str, tags: list[str], conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[KnowledgeBaseFile]:
        async with self._connection(conn) as db:
            cursor = await db.execute(
                "UPDATE knowledge_base_files SET tags = ?, updated_at = ? "
                f"WHERE id = ? RETURNING {_FILE_COLUMNS}",
                (json.dumps(tags, ensure_ascii=False), utc_now().isoformat(), file_id),
            )
            row = await _first_row(cursor)
        return _row_to_file(row) if row else None

    async def claim_for_reindex(
        self, file_id: str, conn: aiosqlite.Connection
    ) -> Optional[KnowledgeBaseFile]:
        """
        Compare-and-swap the file into `pending` unless work is already in flight.

        Must run inside `transaction()` so a failed enqueue can roll it back.

        Returns:
            The updated file, or None if the file is already pending/indexing
            (or does not exist)
        """
        cursor = await conn.execute(
            "UPDATE knowledge_base_files SET status = 'pending', updated_at = ? "
            f"WHERE id = ? AND status NOT IN ({_placeholders(IN_PROGRESS_STATUSES)}) "
            f"RETURNING {_FILE_COLUMNS}",
            (utc_now().isoformat(), file_id, *IN_PROGRESS_STATUSES),
        )
        row = await _first_row(cursor)
        return _row_to_file(row) if row else None

    async def pause_file(self, file_id: str) -> Optional[KnowledgeBaseFile]:
        """Move a ready/failed file to `paused`, remembering where it came from."""
        async with self._connection(None) as db:
            cursor = await db.execute(
                "UPDATE knowledge_base_files "
                "SET status_before_pause = status, status = 'paused', updated_at = ? "
                f"WHERE id = ? AND status IN ({_placeholders(TERMINAL_STATUSES)}) "
                f"RETURNING {_FILE_COLUMNS}",
                (utc_now().isoformat(), file_id, *TERMINAL_STATUSES),
            )
            row = await _first_row(cursor)
        return _row_to_file(row) if row else None

    async def resume_file(self, file_id: str) -> Optional[KnowledgeBaseFile]:
        """Restore a paused file to the terminal status it had before pausing."""
        async with self._connection(None) as db:
            cursor = await db.execute(
                "UPDATE knowledge_base_files "
                "SET status = COALESCE(status_before_pause, 'ready'), "
                "status_before_pause = NULL, updated_at = ? "
                f"WHERE id = ? AND status = 'paused' RETURNING {_FILE_COLUMNS}",
                (utc_now().isoformat(), file_id),
            )
            row = await _first_row(cursor)
        return _row_to_file(row) if row else None

    async def delete_file(
        self, file_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> bool:
        async with self._connection(conn) as db:
            cursor = await db.execute(
                "DELETE FROM knowledge_base_files WHERE id = ?", (file_id,)
            )
            deleted = cursor.rowcount > 0
        return deleted

    async def character_stats(self, character_id: str) -> KBStats:
        async with self._connection(None) as db:
            cursor = await db.execute(
                "SELECT status, COUNT(*) AS n FROM knowledge_base_files "
                "WHERE character_id = ? GROUP BY status",
                (character_id,),
            )
            by_status = {row["status"]: row["n"] for row in await cursor.fetchall()}

            cursor = await db.execute(
                "SELECT COUNT(*) FROM memory_items "
                "WHERE owner_type = 'character' AND owner_id = ? AND source_type = 'file'",
                (character_id,),
            )
            total_chunks = (await _first_row(cursor))[0]

        return KBStats(
            total_files=sum(by_status.values()),
            ready_files=by_status.get("ready", 0),
            indexing_files=by_status.get("indexing", 0),
            failed_files=by_status.get("failed", 0),
            paused_files=by_status.get("paused", 0),
            total_chunks=total_chunks,
        )

    # ------------------------------------------------------------------
    # Memory items
    # ------------------------------------------------------------------

    async def replace_source_items(
        self,
        source_type: str,
        source_id: str,
        items: list[MemoryItem],
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        """
        Atomically replace every memory item of a source.

        Readers never see a half-replaced set: the delete and the inserts run
        in one transaction.

        Returns:
            Number of items inserted
        """
        async with self._connection(conn) as db:
            cursor = await db.execute(
                "DELETE FROM memory_items WHERE source_type = ? AND source_id = ?",
                (source_type, source_id),
            )
            removed = cursor.rowcount

            await db.executemany(
                f"INSERT INTO memory_items ({_ITEM_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        item.id,
                        item.owner_type,
                        item.owner_id,
                        item.source_type,
                        item.source_id,
                        item.content,
                        _encode_embedding(item.embedding),
                        json.dumps(item.tags, ensure_ascii=False),
                        item.visibility_policy,
                        item.chunk_index,
                        item.start_char,
                        item.end_char,
                        item.embedding_provider,
                        item.embedding_model,
                        item.created_at.isoformat(),
                    )
                    for item in items
                ],
            )

        logger.debug(
            f"🔁 Replaced memory items for {source_type} '{source_id}': "
            f"removed {removed}, inserted {len(items)}"
        )
        return len(items)

    async def delete_source_items(
        self,
        source_type: str,
        source_id: str,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        async with self._connection(conn) as db:
            cursor = await db.execute(
                "DELETE FROM memory_items WHERE source_type = ? AND source_id = ?",
                (source_type, source_id),
            )
            deleted = cursor.rowcount
        return deleted

    async def count_source_items(self, source_type: str, source_id: str) -> int:
        async with self._connection(None) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM memory_items WHERE source_type = ? AND source_id = ?",
                (source_type, source_id),
            )
            row = await _first_row(cursor)
        return int(row[0]) if row else 0

    async def get_memory_item(self, item_id: str) -> Optional[MemoryItem]:
        async with self._connection(None) as db:
            cursor = await db.execute(
                f"SELECT {_ITEM_COLUMNS} FROM memory_items WHERE id = ?", (item_id,)
            )
            row = await _first_row(cursor)
        return _row_to_item(row) if row else None

    async def update_memory_item(
        self,
        item_id: str,
        visibility_policy: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[MemoryItem]:
        assignments: list[str] = []
        params: list[Any] = []
        if visibility_policy is not None:
            assignments.append("visibility_policy = ?")
            params.append(visibility_policy)
        if tags is not None:
            assignments.append("tags = ?")
            params.append(json.dumps(tags, ensure_ascii=False))
        if not assignments:
            return await self.get_memory_item(item_id)

        async with self._connection(None) as db:
            cursor = await db.execute(
                f"UPDATE memory_items SET {', '.join(assignments)} "
                f"WHERE id = ? RETURNING {_ITEM_COLUMNS}",
                (*params, item_id),
            )
            row = await _first_row(cursor)
        return _row_to_item(row) if row else None

    async def list_retrievable_items(
        self, user_id: str, character_id: Optional[str] = None
    ) -> list[MemoryItem]:
        """
        Memory items eligible for retrieval for this user/character pair.

        Excludes items without an embedding, items marked `exclude_from_rag`
        and chunks of paused files.
        """
        owner_clause = "(owner_type = 'user' AND owner_id = ?)"
        params: list[Any] = [user_id]
        if character_id:
            owner_clause = f"({owner_clause} OR (owner_type = 'character' AND owner_id = ?))"
            params.append(character_id)

        query = (
            f"SELECT {_ITEM_COLUMNS} FROM memory_items "
            "WHERE embedding IS NOT NULL "
            "AND visibility_policy != 'exclude_from_rag' "
            f"AND {owner_clause} "
            "AND NOT (source_type = 'file' AND COALESCE(source_id, '') IN ("
            "SELECT id FROM knowledge_base_files WHERE user_id = ? AND status = 'paused'))"
        )
        params.append(user_id)

        async with self._connection(None) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_item(row) for row in rows]
