"""Detect and strip the chat mention that addresses a note to the assistant."""

import re


def _pattern(trigger: str) -> re.Pattern[str]:
    return re.compile(rf"^\s*{re.escape(trigger)}(?=$|[\s:,])[\s:,]*", re.IGNORECASE)


def is_chat_prompt(content: str, trigger: str) -> bool:
    """True when *content* starts with the *trigger* mention (e.g. ``@chat``)."""
    if not trigger:
        return False
    return bool(_pattern(trigger).match(content))


def strip_mention(content: str, trigger: str) -> str:
    """Remove a leading *trigger* mention and the separator after it."""
    if not trigger:
        return content.strip()
    return _pattern(trigger).sub("", content, count=1).strip()
