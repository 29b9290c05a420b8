"""LocalVectorIndex — vectors in a libsql table, scored in process.

Rows are selected in SQL by namespace and owner, then ranked by cosine
similarity in Python. Fine for development and small personal databases;
use the Pinecone backend for anything larger.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from memoria.db import connection
from memoria.errors import VectorIndexError
from memoria.notes.models import to_db_time, utcnow
from memoria.vectors.base import (
    MetadataFilter,
    VectorIndex,
    VectorMatch,
    check_namespace,
    cosine_similarity,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from memoria.db import _AsyncConnection

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS vectors (
    namespace  TEXT NOT NULL,
    id         TEXT NOT NULL,
    owner_id   TEXT NOT NULL,
    vector     TEXT NOT NULL,
    metadata   TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, id)
)
"""


@asynccontextmanager
async def _backend_errors(operation: str, namespace: str) -> AsyncIterator[None]:
    """Re-raise database failures as ``VectorIndexError``."""
    try:
        yield
    except VectorIndexError:
        raise
    except Exception as exc:
        raise VectorIndexError(f"Local vector {operation} failed in {namespace}: {exc}") from exc


class LocalVectorIndex(VectorIndex):
    """Vector index stored alongside the notes in SQLite / Turso."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    async def _ensure_schema(self, db: _AsyncConnection) -> None:
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._initialised = True

    async def upsert(
        self,
        id: str,
        vector: list[float],
        metadata: dict[str, Any],
        namespace: str,
        owner_id: str,
    ) -> None:
        check_namespace(namespace)
        if not vector:
            raise VectorIndexError(f"Refusing to store an empty vector for {id}")
        async with _backend_errors("upsert", namespace), connection(self._db_path) as db:
            await self._ensure_schema(db)
            await db.execute(
                """
                INSERT OR REPLACE INTO vectors
                    (namespace, id, owner_id, vector, metadata, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    namespace,
                    id,
                    owner_id,
                    json.dumps(vector),
                    json.dumps(metadata),
                    to_db_time(utcnow()),
                ),
            )
            await db.commit()
        logger.debug("Upserted vector %s/%s", namespace, id)

    async def query(
        self,
        vector: list[float],
        namespace: str,
        owner_id: str,
        top_k: int,
        filter: MetadataFilter | None = None,
    ) -> list[VectorMatch]:
        check_namespace(namespace)
        async with _backend_errors("query", namespace), connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                """
                SELECT id, vector, metadata FROM vectors
                WHERE namespace = ? AND owner_id = ?
                ORDER BY rowid
                """,
                (namespace, owner_id),
            )
            rows = await cursor.fetchall()

        matches: list[VectorMatch] = []
        for row_id, raw_vector, raw_metadata in rows:
            metadata = json.loads(raw_metadata)
            if filter and not filter.matches(metadata):
                continue
            score = cosine_similarity(vector, json.loads(raw_vector))
            matches.append(VectorMatch(id=row_id, score=score, metadata=metadata))

        # sort is stable: equal scores keep storage order
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def delete(self, id: str, namespace: str) -> None:
        check_namespace(namespace)
        async with _backend_errors("delete", namespace), connection(self._db_path) as db:
            await self._ensure_schema(db)
            await db.execute(
                "DELETE FROM vectors WHERE namespace = ? AND id = ?", (namespace, id)
            )
            await db.commit()
        logger.debug("Deleted vector %s/%s", namespace, id)
