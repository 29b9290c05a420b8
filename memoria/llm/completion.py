"""Async Claude completion client with a fixed retry policy."""

from __future__ import annotations

import asyncio
import logging
import re

import anthropic

from memoria.config import settings
from memoria.errors import CompletionError

logger = logging.getLogger(__name__)

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_NEWLINE_RUNS = re.compile(r"[\r\n]+")
_BLANK_RUNS = re.compile(r"[\t ]+")


def strip_non_ascii(text: str) -> str:
    """Drop every code point above U+007F (accents, emoji, CJK, smart quotes)."""
    return _NON_ASCII.sub("", text)


def normalize_completion(text: str) -> str:
    """Trim, and collapse newline runs and tab/space runs to one each."""
    text = _NEWLINE_RUNS.sub("\n", text.strip())
    return _BLANK_RUNS.sub(" ", text)


class CompletionClient:
    """Single-shot completions for prompt responses and summaries.

    Each upstream failure is retried after a fixed delay, up to
    ``completion_max_attempts`` attempts in total; after that a
    ``CompletionError`` carrying the last failure is raised.
    """

    _instance: CompletionClient | None = None

    def __init__(
        self,
        model: str | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._model = model or settings.completion_model
        self._max_attempts = max(max_attempts or settings.completion_max_attempts, 1)
        self._retry_delay = (
            settings.completion_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self._client: anthropic.AsyncAnthropic | None = None

    @classmethod
    def get(cls) -> CompletionClient:
        """Return the shared CompletionClient instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        """Lazily initialize the Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=settings.request_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def complete(self, prompt: str, stop_sequences: list[str] | None = None) -> str:
        """Complete *prompt*, stopping at any of *stop_sequences*.

        Returns the normalized response text.
        """
        if settings.completion_ascii_only:
            prompt = strip_non_ascii(prompt)

        kwargs = {
            "model": self._model,
            "max_tokens": settings.completion_max_tokens,
            "temperature": settings.completion_temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        stops = [s for s in (stop_sequences or []) if s.strip()]
        if stops:
            kwargs["stop_sequences"] = stops

        client = self._get_client()
        last_error: anthropic.AnthropicError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await client.messages.create(**kwargs)
                break
            except anthropic.AnthropicError as exc:
                last_error = exc
                logger.warning(
                    "Completion attempt %d/%d failed: %s", attempt, self._max_attempts, exc
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_delay)
        else:
            raise CompletionError(
                f"Completion failed after {self._max_attempts} attempts: {last_error}",
                last_error=last_error,
            )

        if not response.content:
            raise CompletionError("Completion returned no content")
        text = normalize_completion(response.content[0].text or "")
        if not text:
            raise CompletionError("Completion returned empty text")
        return text
