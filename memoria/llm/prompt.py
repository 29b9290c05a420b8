"""Prompt assembly from templates, retrieved memories and recent turns.

Templates are plain text files under ``config/templates`` using a fixed set
of ``<<PLACEHOLDER>>`` tokens. Substitution is a single pass, so text
inserted for one placeholder is never scanned for another.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from memoria.errors import PromptTemplateError
from memoria.retrieval.mentions import strip_mention

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from memoria.notes.models import MemoryQueryResult, Note

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent.parent / "config" / "templates"

RESPONSE_TEMPLATE = "prompt_response.txt"
CREATE_NOTES_TEMPLATE = "create_conversation_notes.txt"
UPDATE_NOTES_TEMPLATE = "update_conversation_notes.txt"

PLACEHOLDERS = frozenset({"MEMORIES", "CONVERSATION", "NOTES", "USER", "BOT", "INPUT"})

_TOKEN = re.compile(r"<<([A-Z_]+)>>")


def load_template(name: str) -> str:
    """Read a template file, raising ``PromptTemplateError`` if it is missing."""
    path = TEMPLATES_DIR / name
    if not path.exists():
        raise PromptTemplateError(f"Prompt template not found: {path}")
    logger.debug("Loaded prompt template %s", name)
    return path.read_text(encoding="utf-8")


def render(template: str, **values: str) -> str:
    """Substitute placeholders in *template*.

    Unknown tokens in the template raise ``PromptTemplateError``; known
    placeholders without a value render as an empty string.
    """
    unknown = set(values) - PLACEHOLDERS
    if unknown:
        raise PromptTemplateError(f"Unknown placeholder value(s): {sorted(unknown)}")

    def _sub(match: re.Match[str]) -> str:
        token = match.group(1)
        if token not in PLACEHOLDERS:
            raise PromptTemplateError(f"Unknown placeholder in template: <<{token}>>")
        return values.get(token, "")

    return _TOKEN.sub(_sub, template)


def _format_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


def format_memories(memories: Iterable[MemoryQueryResult]) -> str:
    """One block per memory (content, tags, date), separated by blank lines."""
    blocks = []
    for memory in memories:
        lines = [memory.content]
        if memory.tags:
            lines.append(f"Tags: {', '.join(memory.tags)}")
        lines.append(f"Date: {_format_date(memory.created_at)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_conversation(notes: Iterable[Note], trigger: str) -> str:
    """``{from}: {content}`` per turn, oldest first, separated by blank lines."""
    ordered = sorted(notes, key=lambda n: n.created_at)
    return "\n\n".join(f"{n.author}: {strip_mention(n.content, trigger)}" for n in ordered)


def build_prompt(
    template: str,
    *,
    memories: Iterable[MemoryQueryResult] = (),
    conversation: Iterable[Note] = (),
    notes: str = "",
    user: str = "",
    bot: str = "",
    trigger: str = "",
) -> str:
    """Assemble the response prompt. Identical inputs give identical output."""
    return render(
        template,
        MEMORIES=format_memories(memories),
        CONVERSATION=format_conversation(conversation, trigger),
        NOTES=notes,
        USER=user,
        BOT=bot,
    )


def build_summary_prompt(
    template: str,
    *,
    new_turns: Iterable[Note],
    previous_summary: str,
    user: str,
    bot: str,
    trigger: str = "",
) -> str:
    """Assemble the prompt that folds new turns into a conversation summary."""
    return render(
        template,
        INPUT=format_conversation(new_turns, trigger),
        NOTES=previous_summary,
        USER=user,
        BOT=bot,
    )
