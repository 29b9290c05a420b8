"""Data models for notes, tags and retrieved memories."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class NoteType(StrEnum):
    TEXT = "text"
    MARKDOWN = "markdown"
    CHAT = "chat"
    PROMPT = "prompt"


class Tag(BaseModel):
    """A tag owned by one user. Names are unique per owner, ignoring case."""

    id: str
    tag_name: str
    color: str
    owner_id: str


class TagInput(BaseModel):
    """A tag reference in a create/edit payload.

    With ``id`` set the existing tag is reused; otherwise the tag is matched
    by name (case-insensitive) and created when no match exists.
    """

    tag_name: str
    color: str | None = None
    id: str | None = None


class Note(BaseModel):
    """A single user- or bot-authored entry.

    ``embedded_at`` is NULL until the note's vector has been written to the
    index; the backfill job looks for those rows.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    content: str
    type: NoteType = NoteType.TEXT
    author: str = Field(default="", alias="from")
    tags: list[Tag] = Field(default_factory=list)
    owner_id: str
    created_at: datetime
    updated_at: datetime
    embedded_at: datetime | None = None

    @property
    def tag_names(self) -> list[str]:
        return [t.tag_name for t in self.tags]


class CreateNotePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str
    type: NoteType = NoteType.TEXT
    author: str = Field(default="", alias="from")
    tags: list[TagInput] = Field(default_factory=list)


class EditNotePayload(CreateNotePayload):
    id: str


class MemoryQueryResult(BaseModel):
    """A note returned by similarity search. Never persisted."""

    note_id: str
    content: str
    created_at: datetime
    similarity_score: float
    tags: list[str] = Field(default_factory=list)


def make_id() -> str:
    """Generate a new row ID."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    """Serialize a timestamp so stored values sort lexicographically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
