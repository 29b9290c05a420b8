"""ConversationStore — conversation records and their message links via libsql."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memoria.conversations.models import Conversation
from memoria.db import connection
from memoria.errors import NotFoundError
from memoria.notes.models import from_db_time, make_id, to_db_time, utcnow

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from memoria.db import _AsyncConnection

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id          TEXT PRIMARY KEY,
        owner_id    TEXT NOT NULL,
        summary     TEXT NOT NULL DEFAULT '',
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        embedded_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_messages (
        conversation_id TEXT NOT NULL,
        note_id         TEXT NOT NULL,
        position        INTEGER NOT NULL,
        PRIMARY KEY (conversation_id, note_id)
    )
    """,
)


class ConversationStore:
    """Persists conversations in SQLite / Turso.

    Singleton accessed via ``ConversationStore.get()``.  Pass an explicit
    *db_path* for test isolation.
    """

    _instance: ConversationStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls) -> ConversationStore:
        """Return the shared ConversationStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _ensure_schema(self, db: _AsyncConnection) -> None:
        if not self._initialised:
            await db.execute_all(_SCHEMA)
            await db.commit()
            self._initialised = True

    async def _fetch(self, db: _AsyncConnection, conversation_id: str, owner_id: str) -> Conversation:
        cursor = await db.execute(
            """
            SELECT id, owner_id, summary, created_at, updated_at, embedded_at
            FROM conversations WHERE id = ? AND owner_id = ?
            """,
            (conversation_id, owner_id),
        )
        row = await cursor.fetchone()
        if not row:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        cursor = await db.execute(
            """
            SELECT note_id FROM conversation_messages
            WHERE conversation_id = ? ORDER BY position
            """,
            (conversation_id,),
        )
        message_ids = [r[0] for r in await cursor.fetchall()]
        return Conversation(
            id=row[0],
            owner_id=row[1],
            summary=row[2],
            created_at=from_db_time(row[3]),
            updated_at=from_db_time(row[4]),
            embedded_at=from_db_time(row[5]),
            message_ids=message_ids,
        )

    async def _link(self, db: _AsyncConnection, conversation_id: str, note_ids: list[str]) -> None:
        cursor = await db.execute(
            "SELECT COALESCE(MAX(position), -1) FROM conversation_messages WHERE conversation_id = ?",
            (conversation_id,),
        )
        position = (await cursor.fetchone())[0]
        for note_id in note_ids:
            position += 1
            await db.execute(
                """
                INSERT OR IGNORE INTO conversation_messages (conversation_id, note_id, position)
                VALUES (?, ?, ?)
                """,
                (conversation_id, note_id, position),
            )

    # -- Write -----------------------------------------------------------------

    async def create_conversation(self, owner_id: str, note_ids: list[str]) -> Conversation:
        """Start a conversation holding *note_ids*, with an empty summary."""
        conversation_id = make_id()
        now = to_db_time(utcnow())
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            await db.execute(
                """
                INSERT INTO conversations (id, owner_id, summary, created_at, updated_at)
                VALUES (?, ?, '', ?, ?)
                """,
                (conversation_id, owner_id, now, now),
            )
            await self._link(db, conversation_id, note_ids)
            await db.commit()
            conversation = await self._fetch(db, conversation_id, owner_id)
        logger.info("Created conversation %s", conversation_id)
        return conversation

    async def append_messages(
        self, conversation_id: str, owner_id: str, note_ids: list[str]
    ) -> Conversation:
        """Add notes to the end of a conversation. Already-linked notes are skipped."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            await self._fetch(db, conversation_id, owner_id)
            await self._link(db, conversation_id, note_ids)
            await db.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (to_db_time(utcnow()), conversation_id),
            )
            await db.commit()
            return await self._fetch(db, conversation_id, owner_id)

    async def update_summary(
        self, conversation_id: str, owner_id: str, summary: str
    ) -> Conversation:
        """Store a regenerated summary; its embedding becomes stale."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                """
                UPDATE conversations
                SET summary = ?, updated_at = ?, embedded_at = NULL
                WHERE id = ? AND owner_id = ?
                """,
                (summary, to_db_time(utcnow()), conversation_id, owner_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            await db.commit()
            return await self._fetch(db, conversation_id, owner_id)

    async def mark_embedded(self, conversation_id: str, at: datetime | None = None) -> bool:
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "UPDATE conversations SET embedded_at = ? WHERE id = ?",
                (to_db_time(at or utcnow()), conversation_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def unlink_note(self, note_id: str) -> int:
        """Remove a deleted note from every conversation. Returns links removed."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "DELETE FROM conversation_messages WHERE note_id = ?", (note_id,)
            )
            await db.commit()
            return cursor.rowcount

    # -- Read ------------------------------------------------------------------

    async def get_conversation(self, conversation_id: str, owner_id: str) -> Conversation:
        """Fetch a conversation, raising ``NotFoundError`` if it isn't the owner's."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            return await self._fetch(db, conversation_id, owner_id)

    async def get_conversations_by_ids(
        self, conversation_ids: list[str], owner_id: str
    ) -> list[Conversation]:
        """Fetch the owner's conversations among *conversation_ids*, in order."""
        found: list[Conversation] = []
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            for conversation_id in conversation_ids:
                try:
                    found.append(await self._fetch(db, conversation_id, owner_id))
                except NotFoundError:
                    continue
        return found

    async def list_unembedded(self, owner_id: str | None = None, limit: int = 100) -> list[Conversation]:
        """Conversations with a summary whose embedding is missing or stale."""
        sql = (
            "SELECT id, owner_id FROM conversations "
            "WHERE embedded_at IS NULL AND summary != ''"
        )
        params: tuple = ()
        if owner_id:
            sql += " AND owner_id = ?"
            params = (owner_id,)
        sql += " ORDER BY updated_at LIMIT ?"
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(sql, (*params, limit))
            rows = await cursor.fetchall()
            return [await self._fetch(db, row[0], row[1]) for row in rows]
