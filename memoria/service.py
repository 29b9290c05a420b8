"""NotesService — the entry points request handlers call.

Every operation resolves the caller's identity first and is scoped to that
owner. Plain notes are embedded after they are stored; an embedding
failure is logged and the note is still returned. Chat turns always come
back as a displayable :class:`ChatTurnResult`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memoria.config import settings
from memoria.conversations.store import ConversationStore
from memoria.errors import MemoriaError
from memoria.identity import require_identity
from memoria.notes.models import CreateNotePayload, EditNotePayload, Note, NoteType, TagInput
from memoria.notes.store import NoteStore
from memoria.retrieval.mentions import is_chat_prompt
from memoria.retrieval.pipeline import ChatTurnResult, RetrievalPipeline, TurnStage

if TYPE_CHECKING:
    from memoria.identity import Identity
    from memoria.notes.search import SearchQuery

logger = logging.getLogger(__name__)


class NotesService:
    """Note CRUD with embedding hooks, plus the chat entry point."""

    def __init__(
        self,
        notes: NoteStore | None = None,
        conversations: ConversationStore | None = None,
        pipeline: RetrievalPipeline | None = None,
    ) -> None:
        self._notes = notes or NoteStore.get()
        self._conversations = conversations or ConversationStore.get()
        self._pipeline = pipeline or RetrievalPipeline.get()

    # -- Notes -----------------------------------------------------------------

    async def create_note(self, payload: CreateNotePayload, identity: Identity | None) -> Note:
        """Store a note, then embed it (non-fatal)."""
        identity = require_identity(identity)
        if not payload.author:
            payload = payload.model_copy(update={"author": identity.speaker_name})
        note = await self._notes.create_note(payload, identity.user_id)
        await self._pipeline.index_note(note)
        return note

    async def edit_note(self, payload: EditNotePayload, identity: Identity | None) -> Note:
        """Replace a note's content and tags, then re-embed it (non-fatal)."""
        identity = require_identity(identity)
        note = await self._notes.edit_note(payload, identity.user_id)
        await self._pipeline.index_note(note)
        return note

    async def delete_note(self, note_id: str, identity: Identity | None) -> Note:
        """Delete the note, then its vector and conversation links."""
        identity = require_identity(identity)
        note = await self._notes.delete_note(note_id, identity.user_id)
        await self._pipeline.unindex_note(note_id)
        try:
            await self._conversations.unlink_note(note_id)
        except Exception:
            logger.exception("Failed to unlink note %s from conversations", note_id)
        return note

    async def list_notes(
        self,
        identity: Identity | None,
        page: int = 1,
        search: str | SearchQuery | None = None,
    ) -> list[Note]:
        identity = require_identity(identity)
        return await self._notes.list_notes(identity.user_id, page=page, search=search)

    # -- Chat ------------------------------------------------------------------

    async def chat(
        self,
        text: str,
        identity: Identity | None,
        conversation_id: str | None = None,
    ) -> ChatTurnResult:
        """Run a chat turn; any failure becomes a displayable result."""
        try:
            return await self._pipeline.chat_turn(text, identity, conversation_id)
        except MemoriaError as exc:
            logger.warning("Chat turn failed: %s", exc)
            return ChatTurnResult(
                response=exc.user_message,
                stage=TurnStage.RECEIVED,
                conversation_id=conversation_id,
                error=str(exc),
            )
        except Exception as exc:
            logger.exception("Chat turn failed unexpectedly")
            return ChatTurnResult(
                response=MemoriaError.user_message,
                stage=TurnStage.RECEIVED,
                conversation_id=conversation_id,
                error=str(exc),
            )

    async def submit(
        self,
        content: str,
        identity: Identity | None,
        *,
        note_type: NoteType = NoteType.TEXT,
        tags: list[TagInput] | None = None,
        conversation_id: str | None = None,
    ) -> Note | ChatTurnResult:
        """Route user input: ``@chat`` messages go to the assistant, the rest are notes."""
        if is_chat_prompt(content, settings.chat_trigger):
            return await self.chat(content, identity, conversation_id)
        payload = CreateNotePayload(content=content, type=note_type, tags=tags or [])
        return await self.create_note(payload, identity)
