"""Retrieval-augmented chat turns and the embedding hooks that feed them.

A chat turn moves through these stages::

    RECEIVED → EMBEDDED → RETRIEVED → PROMPTED → COMPLETED → PERSISTED → SUMMARIZED

Nothing is written before the prompt has been embedded, so an embedding
failure aborts the turn cleanly. Once a completion has been produced it is
always returned to the caller; failures while storing the response,
embedding it or updating the conversation summary are logged and left for
:meth:`RetrievalPipeline.backfill`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from memoria.config import settings
from memoria.conversations.store import ConversationStore
from memoria.errors import CompletionError, VectorIndexError
from memoria.identity import require_identity
from memoria.llm.completion import CompletionClient
from memoria.llm.embeddings import EmbeddingClient
from memoria.llm.prompt import (
    CREATE_NOTES_TEMPLATE,
    RESPONSE_TEMPLATE,
    UPDATE_NOTES_TEMPLATE,
    build_prompt,
    build_summary_prompt,
    load_template,
)
from memoria.notes.models import (
    CreateNotePayload,
    MemoryQueryResult,
    Note,
    NoteType,
    TagInput,
    to_db_time,
)
from memoria.notes.store import NoteStore
from memoria.retrieval.mentions import strip_mention
from memoria.vectors import (
    CONVERSATIONS_NAMESPACE,
    NOTES_NAMESPACE,
    MetadataFilter,
    VectorIndex,
    VectorMatch,
    get_vector_index,
)

if TYPE_CHECKING:
    from memoria.conversations.models import Conversation
    from memoria.identity import Identity

logger = logging.getLogger(__name__)


class TurnStage(StrEnum):
    RECEIVED = "received"
    EMBEDDED = "embedded"
    RETRIEVED = "retrieved"
    PROMPTED = "prompted"
    COMPLETED = "completed"
    PERSISTED = "persisted"
    SUMMARIZED = "summarized"


@dataclass
class ChatTurnResult:
    """Outcome of one chat turn.

    ``response`` is always displayable. When ``error`` is set the turn was
    degraded and ``response`` holds a message for the user instead of an
    answer.
    """

    response: str
    stage: TurnStage
    conversation_id: str | None = None
    prompt_note: Note | None = None
    response_note: Note | None = None
    memories: list[MemoryQueryResult] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BackfillReport:
    notes: int = 0
    conversations: int = 0
    failed: int = 0


def _note_metadata(note: Note) -> dict[str, Any]:
    return {
        "content": note.content,
        "type": note.type.value,
        "from": note.author,
        "tags": note.tag_names,
        "created_at": to_db_time(note.created_at),
    }


def _is_own_memory(note: Note) -> bool:
    return note.type != NoteType.PROMPT and note.author != settings.bot_name


class RetrievalPipeline:
    """Orchestrates embedding, retrieval, prompting and conversation state.

    Singleton accessed via ``RetrievalPipeline.get()``; every collaborator
    can be injected for tests.
    """

    _instance: RetrievalPipeline | None = None

    def __init__(
        self,
        notes: NoteStore | None = None,
        conversations: ConversationStore | None = None,
        index: VectorIndex | None = None,
        embedder: EmbeddingClient | None = None,
        completer: CompletionClient | None = None,
    ) -> None:
        self._notes = notes or NoteStore.get()
        self._conversations = conversations or ConversationStore.get()
        self._index = index or get_vector_index()
        self._embedder = embedder or EmbeddingClient.get()
        self._completer = completer or CompletionClient.get()

    @classmethod
    def get(cls) -> RetrievalPipeline:
        """Return the shared RetrievalPipeline instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Embedding hooks -------------------------------------------------------

    async def index_note(self, note: Note, vector: list[float] | None = None) -> bool:
        """Embed a note and upsert its vector. Never raises.

        Prompt notes are not indexed; a note edited into a prompt loses its
        vector. Returns True when the vector was stored; on failure the note
        stays unembedded for backfill.
        """
        if note.type == NoteType.PROMPT:
            if note.updated_at != note.created_at:
                await self.unindex_note(note.id)
            return False
        try:
            if vector is None:
                vector = await self._embedder.embed(strip_mention(note.content, settings.chat_trigger))
            await self._index.upsert(
                note.id, vector, _note_metadata(note), NOTES_NAMESPACE, note.owner_id
            )
            if not await self._notes.mark_embedded(note.id):
                # The note was deleted while we were embedding it
                logger.info("Note %s vanished during indexing; removing its vector", note.id)
                await self._index.delete(note.id, NOTES_NAMESPACE)
                return False
        except Exception:
            logger.exception("Failed to index note %s (left for backfill)", note.id)
            return False
        return True

    async def unindex_note(self, note_id: str) -> bool:
        """Delete a note's vector. Failures are logged, never raised."""
        try:
            await self._index.delete(note_id, NOTES_NAMESPACE)
        except VectorIndexError:
            logger.exception("Failed to delete vector for note %s", note_id)
            return False
        return True

    async def index_conversation(self, conversation: Conversation) -> bool:
        """Embed a conversation's summary and upsert it. Never raises."""
        if not conversation.summary.strip():
            return False
        try:
            vector = await self._embedder.embed(conversation.summary)
            await self._index.upsert(
                conversation.id,
                vector,
                {"summary": conversation.summary, "updated_at": to_db_time(conversation.updated_at)},
                CONVERSATIONS_NAMESPACE,
                conversation.owner_id,
            )
            await self._conversations.mark_embedded(conversation.id)
        except Exception:
            logger.exception(
                "Failed to index conversation %s (left for backfill)", conversation.id
            )
            return False
        return True

    # -- Retrieval -------------------------------------------------------------

    async def _hydrate_notes(
        self, matches: list[VectorMatch], owner_id: str
    ) -> list[tuple[VectorMatch, Note]]:
        """Pair matches with their live notes; prune vectors whose note is gone."""
        notes = {n.id: n for n in await self._notes.get_notes_by_ids([m.id for m in matches], owner_id)}
        pairs = []
        for match in matches:
            note = notes.get(match.id)
            if note is None:
                logger.info("Pruning orphaned vector %s", match.id)
                await self.unindex_note(match.id)
                continue
            pairs.append((match, note))
        return pairs

    async def retrieve_memories(self, vector: list[float], owner_id: str) -> list[MemoryQueryResult]:
        """Find the owner's notes most similar to *vector*.

        Notes scoring above the similarity threshold are returned; if none
        do, the best ``memory_fallback_count`` are returned regardless of
        score. A failing index yields no memories rather than an error.
        """
        top_k = max(settings.memory_top_k, settings.memory_fallback_count)
        own_notes = MetadataFilter(
            not_in={"type": [NoteType.PROMPT.value], "from": [settings.bot_name]}
        )
        try:
            matches = await self._index.query(vector, NOTES_NAMESPACE, owner_id, top_k, own_notes)
        except VectorIndexError:
            logger.exception("Memory query failed; continuing without memories")
            return []

        pairs = [(m, n) for m, n in await self._hydrate_notes(matches, owner_id) if _is_own_memory(n)]
        above = [p for p in pairs if p[0].score > settings.similarity_threshold]
        chosen = above[: settings.memory_top_k] if above else pairs[: settings.memory_fallback_count]
        logger.debug(
            "Retrieved %d memories (%d above %.2f)",
            len(chosen),
            len(above),
            settings.similarity_threshold,
        )
        return [
            MemoryQueryResult(
                note_id=note.id,
                content=note.content,
                created_at=note.created_at,
                similarity_score=match.score,
                tags=note.tag_names,
            )
            for match, note in chosen
        ]

    async def similar_conversations(
        self,
        vector: list[float],
        owner_id: str,
        exclude_id: str | None = None,
    ) -> list[Conversation]:
        """Past conversations whose summary scores above the threshold."""
        limit = settings.similar_conversations_limit
        try:
            matches = await self._index.query(
                vector, CONVERSATIONS_NAMESPACE, owner_id, limit + 1
            )
        except VectorIndexError:
            logger.exception("Conversation query failed; continuing without them")
            return []
        ids = [
            m.id
            for m in matches
            if m.id != exclude_id and m.score > settings.similarity_threshold
        ][:limit]
        return await self._conversations.get_conversations_by_ids(ids, owner_id)

    async def recent_turns(self, owner_id: str, limit: int | None = None) -> list[Note]:
        """The owner's latest chat turns, oldest first."""
        notes = await self._notes.recent_chat_notes(owner_id, limit or settings.recent_turns)
        notes.reverse()
        return notes

    async def conversation_turns(self, conversation: Conversation) -> list[Note]:
        """The most recent messages of *conversation*, oldest first."""
        ids = conversation.message_ids[-settings.conversation_context_messages :]
        return await self._notes.get_notes_by_ids(ids, conversation.owner_id)

    # -- Chat turn -------------------------------------------------------------

    async def chat_turn(
        self,
        text: str,
        identity: Identity | None,
        conversation_id: str | None = None,
    ) -> ChatTurnResult:
        """Answer a chat message using retrieved memories and recent turns.

        Raises ``UnauthorizedError``, ``NotFoundError`` (unknown
        conversation), ``PromptTemplateError`` or ``EmbeddingError`` before
        anything is written. Completion failures come back as a degraded
        result.
        """
        identity = require_identity(identity)
        owner_id = identity.user_id
        speaker = identity.speaker_name
        trigger = settings.chat_trigger

        # RECEIVED
        conversation = None
        if conversation_id:
            conversation = await self._conversations.get_conversation(conversation_id, owner_id)
        template = load_template(RESPONSE_TEMPLATE)

        # EMBEDDED
        vector = await self._embedder.embed(strip_mention(text, trigger))
        logger.debug("Turn for %s: %s", owner_id, TurnStage.EMBEDDED)

        prompt_note = await self._notes.create_note(
            CreateNotePayload(content=text, type=NoteType.PROMPT, author=speaker), owner_id
        )

        # RETRIEVED
        if conversation is not None:
            memories, turns = await asyncio.gather(
                self.retrieve_memories(vector, owner_id),
                self.conversation_turns(conversation),
            )
            turns = [*turns, prompt_note]
            notes_text = conversation.summary
        else:
            memories, turns, similar = await asyncio.gather(
                self.retrieve_memories(vector, owner_id),
                self.recent_turns(owner_id),
                self.similar_conversations(vector, owner_id),
            )
            notes_text = "\n\n".join(c.summary for c in similar)
        logger.debug("Turn for %s: %s", owner_id, TurnStage.RETRIEVED)

        # PROMPTED
        prompt = build_prompt(
            template,
            memories=memories,
            conversation=turns,
            notes=notes_text,
            user=speaker,
            bot=settings.bot_name,
            trigger=trigger,
        )

        # COMPLETED
        try:
            response = await self._completer.complete(prompt, settings.stop_sequences(speaker))
        except CompletionError as exc:
            logger.error("Chat turn for %s degraded: %s", owner_id, exc)
            return ChatTurnResult(
                response=exc.user_message,
                stage=TurnStage.PROMPTED,
                conversation_id=conversation.id if conversation else None,
                prompt_note=prompt_note,
                memories=memories,
                error=str(exc),
            )

        result = ChatTurnResult(
            response=response,
            stage=TurnStage.COMPLETED,
            conversation_id=conversation.id if conversation else None,
            prompt_note=prompt_note,
            memories=memories,
        )

        # PERSISTED
        try:
            result.response_note = await self._notes.create_note(
                CreateNotePayload(
                    content=response,
                    type=NoteType.CHAT,
                    author=settings.bot_name,
                    tags=[TagInput(tag_name=settings.bot_tag)],
                ),
                owner_id,
            )
        except Exception:
            logger.exception("Failed to store assistant response for %s", owner_id)
            return result
        await self.index_note(result.response_note)
        result.stage = TurnStage.PERSISTED

        # SUMMARIZED
        new_turns = [prompt_note, result.response_note]
        try:
            if conversation is None:
                conversation = await self._conversations.create_conversation(
                    owner_id, [n.id for n in new_turns]
                )
            else:
                conversation = await self._conversations.append_messages(
                    conversation.id, owner_id, [n.id for n in new_turns]
                )
        except Exception:
            logger.exception("Failed to record conversation turns for %s", owner_id)
            return result
        result.conversation_id = conversation.id

        try:
            await self.summarize(conversation, new_turns, identity)
        except Exception:
            logger.exception("Conversation summary failed for %s (non-fatal)", conversation.id)
            return result
        result.stage = TurnStage.SUMMARIZED
        return result

    async def summarize(
        self,
        conversation: Conversation,
        new_turns: list[Note],
        identity: Identity,
    ) -> Conversation:
        """Fold *new_turns* into the conversation summary and re-embed it."""
        template = load_template(
            UPDATE_NOTES_TEMPLATE if conversation.summary else CREATE_NOTES_TEMPLATE
        )
        prompt = build_summary_prompt(
            template,
            new_turns=new_turns,
            previous_summary=conversation.summary,
            user=identity.speaker_name,
            bot=settings.bot_name,
            trigger=settings.chat_trigger,
        )
        summary = await self._completer.complete(
            prompt, settings.stop_sequences(identity.speaker_name)
        )
        conversation = await self._conversations.update_summary(
            conversation.id, conversation.owner_id, summary
        )
        await self.index_conversation(conversation)
        return conversation

    # -- Backfill --------------------------------------------------------------

    async def backfill(self, owner_id: str | None = None, limit: int = 100) -> BackfillReport:
        """Embed notes and conversation summaries that are missing vectors."""
        report = BackfillReport()
        for note in await self._notes.list_unembedded(owner_id, limit):
            if await self.index_note(note):
                report.notes += 1
            else:
                report.failed += 1
        for conversation in await self._conversations.list_unembedded(owner_id, limit):
            if await self.index_conversation(conversation):
                report.conversations += 1
            else:
                report.failed += 1
        logger.info(
            "Backfill: %d notes, %d conversations embedded, %d failed",
            report.notes,
            report.conversations,
            report.failed,
        )
        return report
