"""NoteStore — notes, tags and their associations via libsql."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memoria.config import settings
from memoria.db import connection, placeholders
from memoria.errors import NotFoundError
from memoria.notes.models import (
    CreateNotePayload,
    EditNotePayload,
    Note,
    NoteType,
    Tag,
    TagInput,
    from_db_time,
    make_id,
    to_db_time,
    utcnow,
)
from memoria.notes.search import SearchQuery, parse_search

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from memoria.db import _AsyncConnection

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS notes (
        id             TEXT PRIMARY KEY,
        owner_id       TEXT NOT NULL,
        content        TEXT NOT NULL,
        content_folded TEXT NOT NULL DEFAULT '',
        type           TEXT NOT NULL,
        author         TEXT NOT NULL DEFAULT '',
        created_at     TEXT NOT NULL,
        updated_at     TEXT NOT NULL,
        embedded_at    TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notes_owner_created ON notes (owner_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS tags (
        id         TEXT PRIMARY KEY,
        owner_id   TEXT NOT NULL,
        tag_name   TEXT NOT NULL,
        color      TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_tags_owner_name
        ON tags (owner_id, tag_name COLLATE NOCASE)
    """,
    """
    CREATE TABLE IF NOT EXISTS note_tags (
        note_id TEXT NOT NULL,
        tag_id  TEXT NOT NULL,
        PRIMARY KEY (note_id, tag_id)
    )
    """,
)

_NOTE_COLUMNS = "id, owner_id, content, type, author, created_at, updated_at, embedded_at"
_CHAT_TYPES = (NoteType.CHAT.value, NoteType.PROMPT.value)


def _escape_like(text: str) -> str:
    """Make *text* match literally inside a LIKE pattern with ESCAPE '\\'."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_tag(row: tuple) -> Tag:
    return Tag(id=row[0], tag_name=row[1], color=row[2], owner_id=row[3])


def _row_to_note(row: tuple, tags: list[Tag]) -> Note:
    return Note(
        id=row[0],
        owner_id=row[1],
        content=row[2],
        type=NoteType(row[3]),
        author=row[4],
        created_at=from_db_time(row[5]),
        updated_at=from_db_time(row[6]),
        embedded_at=from_db_time(row[7]),
        tags=tags,
    )


class NoteStore:
    """Persists notes and tags in SQLite / Turso.

    Singleton accessed via ``NoteStore.get()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: NoteStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls) -> NoteStore:
        """Return the shared NoteStore instance."""
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

    async def _load_tags(self, db: _AsyncConnection, note_ids: list[str]) -> dict[str, list[Tag]]:
        tags: dict[str, list[Tag]] = {note_id: [] for note_id in note_ids}
        if not note_ids:
            return tags
        cursor = await db.execute(
            f"""
            SELECT nt.note_id, t.id, t.tag_name, t.color, t.owner_id
            FROM note_tags nt JOIN tags t ON t.id = nt.tag_id
            WHERE nt.note_id IN ({placeholders(len(note_ids))})
            ORDER BY t.tag_name COLLATE NOCASE
            """,
            tuple(note_ids),
        )
        for row in await cursor.fetchall():
            tags[row[0]].append(_row_to_tag(row[1:]))
        return tags

    async def _hydrate(self, db: _AsyncConnection, rows: list[tuple]) -> list[Note]:
        tags = await self._load_tags(db, [row[0] for row in rows])
        return [_row_to_note(row, tags[row[0]]) for row in rows]

    async def _fetch_note(self, db: _AsyncConnection, note_id: str, owner_id: str) -> Note:
        cursor = await db.execute(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id = ? AND owner_id = ?",
            (note_id, owner_id),
        )
        row = await cursor.fetchone()
        if not row:
            raise NotFoundError(f"Note {note_id} not found")
        return (await self._hydrate(db, [row]))[0]

    async def _owner_tags(self, db: _AsyncConnection, owner_id: str) -> list[Tag]:
        cursor = await db.execute(
            "SELECT id, tag_name, color, owner_id FROM tags WHERE owner_id = ? ORDER BY created_at",
            (owner_id,),
        )
        return [_row_to_tag(row) for row in await cursor.fetchall()]

    async def _resolve_tags(
        self, db: _AsyncConnection, inputs: list[TagInput], owner_id: str
    ) -> list[Tag]:
        """Map tag references to tag rows, creating rows only for new names.

        Names are compared case-insensitively against the owner's existing
        tags, so "Work" and "work" resolve to the same row.
        """
        if not inputs:
            return []

        existing = await self._owner_tags(db, owner_id)
        by_id = {t.id: t for t in existing}
        by_name = {t.tag_name.casefold(): t for t in existing}

        resolved: list[Tag] = []
        for ref in inputs:
            if ref.id:
                tag = by_id.get(ref.id)
                if tag is None:
                    raise NotFoundError(f"Tag {ref.id} not found")
            else:
                name = ref.tag_name.strip()
                if not name:
                    continue
                tag = by_name.get(name.casefold())
                if tag is None:
                    tag = await self._insert_tag(db, name, ref.color, owner_id)
                    by_id[tag.id] = tag
                    by_name[name.casefold()] = tag
            if all(t.id != tag.id for t in resolved):
                resolved.append(tag)
        return resolved

    async def _insert_tag(
        self, db: _AsyncConnection, name: str, color: str | None, owner_id: str
    ) -> Tag:
        """Create a tag, or return the row a concurrent writer already created."""
        await db.execute(
            """
            INSERT INTO tags (id, owner_id, tag_name, color, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (make_id(), owner_id, name, color or settings.default_tag_color, to_db_time(utcnow())),
        )
        cursor = await db.execute(
            """
            SELECT id, tag_name, color, owner_id FROM tags
            WHERE owner_id = ? AND tag_name = ? COLLATE NOCASE
            """,
            (owner_id, name),
        )
        tag = _row_to_tag(await cursor.fetchone())
        logger.debug("Resolved new tag %r for owner %s as %s", name, owner_id, tag.id)
        return tag

    async def _link_tags(self, db: _AsyncConnection, note_id: str, tags: list[Tag]) -> None:
        for tag in tags:
            await db.execute(
                "INSERT INTO note_tags (note_id, tag_id) VALUES (?, ?)",
                (note_id, tag.id),
            )

    # -- Write -----------------------------------------------------------------

    async def create_note(
        self,
        payload: CreateNotePayload,
        owner_id: str,
        created_at: datetime | None = None,
    ) -> Note:
        """Insert a note with its tags in a single commit."""
        ts = to_db_time(created_at or utcnow())
        note_id = make_id()
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            tags = await self._resolve_tags(db, payload.tags, owner_id)
            await db.execute(
                f"INSERT INTO notes ({_NOTE_COLUMNS}, content_folded) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)",
                (
                    note_id,
                    owner_id,
                    payload.content,
                    payload.type.value,
                    payload.author,
                    ts,
                    ts,
                    payload.content.casefold(),
                ),
            )
            await self._link_tags(db, note_id, tags)
            await db.commit()
            note = await self._fetch_note(db, note_id, owner_id)
        logger.info("Created %s note %s (%d tags)", note.type.value, note.id, len(tags))
        return note

    async def edit_note(self, payload: EditNotePayload, owner_id: str) -> Note:
        """Replace a note's content, type and tags.

        Tag associations are dropped and recreated rather than diffed, and
        ``embedded_at`` is cleared so the caller re-embeds the new content.
        """
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            current = await self._fetch_note(db, payload.id, owner_id)
            tags = await self._resolve_tags(db, payload.tags, owner_id)
            await db.execute("DELETE FROM note_tags WHERE note_id = ?", (payload.id,))
            await db.execute(
                """
                UPDATE notes
                SET content = ?, content_folded = ?, type = ?, author = ?, updated_at = ?,
                    embedded_at = NULL
                WHERE id = ? AND owner_id = ?
                """,
                (
                    payload.content,
                    payload.content.casefold(),
                    payload.type.value,
                    payload.author or current.author,
                    to_db_time(utcnow()),
                    payload.id,
                    owner_id,
                ),
            )
            await self._link_tags(db, payload.id, tags)
            await db.commit()
            note = await self._fetch_note(db, payload.id, owner_id)
        logger.info("Edited note %s", note.id)
        return note

    async def delete_note(self, note_id: str, owner_id: str) -> Note:
        """Delete a note and its tag links. Returns the deleted note."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            note = await self._fetch_note(db, note_id, owner_id)
            await db.execute("DELETE FROM note_tags WHERE note_id = ?", (note_id,))
            await db.execute(
                "DELETE FROM notes WHERE id = ? AND owner_id = ?", (note_id, owner_id)
            )
            await db.commit()
        logger.info("Deleted note %s", note_id)
        return note

    async def mark_embedded(self, note_id: str, at: datetime | None = None) -> bool:
        """Record that the note's current content is in the vector index."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "UPDATE notes SET embedded_at = ? WHERE id = ?",
                (to_db_time(at or utcnow()), note_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    # -- Read ------------------------------------------------------------------

    async def get_note(self, note_id: str, owner_id: str) -> Note:
        """Fetch one note, raising ``NotFoundError`` if it isn't the owner's."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            return await self._fetch_note(db, note_id, owner_id)

    async def get_notes_by_ids(self, note_ids: list[str], owner_id: str) -> list[Note]:
        """Fetch the owner's notes among *note_ids*, preserving input order."""
        if not note_ids:
            return []
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                f"""
                SELECT {_NOTE_COLUMNS} FROM notes
                WHERE owner_id = ? AND id IN ({placeholders(len(note_ids))})
                """,
                (owner_id, *note_ids),
            )
            notes = {n.id: n for n in await self._hydrate(db, await cursor.fetchall())}
        return [notes[i] for i in note_ids if i in notes]

    async def get_tags(self, owner_id: str) -> list[Tag]:
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            return await self._owner_tags(db, owner_id)

    async def list_notes(
        self,
        owner_id: str,
        page: int = 1,
        search: str | SearchQuery | None = None,
    ) -> list[Note]:
        """Return one page of the owner's notes in chronological order.

        Free text is matched against the casefolded content. Requested tag
        names are resolved to the owner's tag ids with ``casefold()`` first;
        the SQL pass keeps notes carrying *any* of them and the in-memory
        pass then keeps only notes that carry *all* of them.
        """
        query = search if isinstance(search, SearchQuery) else parse_search(search)
        page = max(page, 1)
        take = settings.page_size

        clauses = ["n.owner_id = ?"]
        params: list = [owner_id]
        if query.text:
            clauses.append("n.content_folded LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(query.text.casefold())}%")
        lower, upper = query.created_bounds()
        if lower:
            clauses.append("n.created_at >= ?")
            params.append(lower)
        if upper:
            clauses.append("n.created_at < ?")
            params.append(upper)

        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            if query.tags:
                owner_tags = await self._owner_tags(db, owner_id)
                by_name = {t.tag_name.casefold(): t.id for t in owner_tags}
                tag_ids = [by_name[n.casefold()] for n in query.tags if n.casefold() in by_name]
                if len(tag_ids) < len(query.tags):
                    return []
                clauses.append(
                    f"""
                    EXISTS (
                        SELECT 1 FROM note_tags nt
                        WHERE nt.note_id = n.id AND nt.tag_id IN ({placeholders(len(tag_ids))})
                    )
                    """
                )
                params.extend(tag_ids)

            cursor = await db.execute(
                f"""
                SELECT {', '.join('n.' + c.strip() for c in _NOTE_COLUMNS.split(','))}
                FROM notes n
                WHERE {' AND '.join(clauses)}
                ORDER BY n.created_at DESC
                LIMIT ? OFFSET ?
                """,
                (*params, take, (page - 1) * take),
            )
            notes = await self._hydrate(db, await cursor.fetchall())

        if query.tags:
            notes = [n for n in notes if query.matches_all_tags(n.tag_names)]
        notes.reverse()
        return notes

    async def recent_chat_notes(self, owner_id: str, limit: int) -> list[Note]:
        """Return the owner's latest chat/prompt notes, newest first."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                f"""
                SELECT {_NOTE_COLUMNS} FROM notes
                WHERE owner_id = ? AND type IN (?, ?)
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (owner_id, *_CHAT_TYPES, limit),
            )
            return await self._hydrate(db, await cursor.fetchall())

    async def list_unembedded(self, owner_id: str | None = None, limit: int = 100) -> list[Note]:
        """Notes that should have a vector but don't, oldest first."""
        clauses = ["embedded_at IS NULL", "type != ?"]
        params: list = [NoteType.PROMPT.value]
        if owner_id:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                f"""
                SELECT {_NOTE_COLUMNS} FROM notes
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at
                LIMIT ?
                """,
                (*params, limit),
            )
            return await self._hydrate(db, await cursor.fetchall())
