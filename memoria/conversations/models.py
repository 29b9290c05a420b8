"""Conversation data model."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class Conversation(BaseModel):
    """A chat thread with a rolling summary.

    ``message_ids`` are note IDs in the order they joined the conversation.
    ``embedded_at`` is NULL until the current summary has been embedded.
    """

    id: str
    owner_id: str
    summary: str = ""
    message_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    embedded_at: datetime | None = None
