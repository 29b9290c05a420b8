"""Text embeddings via the OpenAI embeddings API."""

from __future__ import annotations

import logging

import openai

from memoria.config import settings
from memoria.errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Turns text into a fixed-length vector.

    Failures raise ``EmbeddingError``; there are no retries here, callers
    decide whether a failure is fatal.
    """

    _instance: EmbeddingClient | None = None

    def __init__(self, model: str | None = None) -> None:
        self._model = model or settings.embedding_model
        self._client: openai.AsyncOpenAI | None = None

    @classmethod
    def get(cls) -> EmbeddingClient:
        """Return the shared EmbeddingClient instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    @property
    def model(self) -> str:
        return self._model

    def _get_client(self) -> openai.AsyncOpenAI:
        """Lazily initialize the OpenAI client."""
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.request_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def embed(self, text: str) -> list[float]:
        """Embed *text*. Raises ``EmbeddingError`` on any failure."""
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")

        try:
            response = await self._get_client().embeddings.create(model=self._model, input=text)
        except openai.OpenAIError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        if not response.data:
            raise EmbeddingError("No embedding returned")
        vector = list(response.data[0].embedding or [])
        if not vector:
            raise EmbeddingError("Empty embedding vector returned")
        return vector
