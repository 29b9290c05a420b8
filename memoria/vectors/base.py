"""Vector index contract shared by every backend.

An index stores ``(id, vector, metadata)`` rows partitioned by namespace and
owner. Queries never cross namespaces and always filter by owner, and
results come back ordered by descending cosine similarity.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

NOTES_NAMESPACE = "notes"
CONVERSATIONS_NAMESPACE = "conversations"

NAMESPACES = (NOTES_NAMESPACE, CONVERSATIONS_NAMESPACE)


class VectorMatch(BaseModel):
    """One query hit."""

    id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class MetadataFilter(BaseModel):
    """Backend-neutral metadata filter.

    ``equals`` requires ``metadata[key] == value``; ``not_in`` requires the
    value to be absent from the given list.
    """

    equals: dict[str, str] = Field(default_factory=dict)
    not_in: dict[str, list[str]] = Field(default_factory=dict)

    def matches(self, metadata: dict[str, Any]) -> bool:
        for key, value in self.equals.items():
            if metadata.get(key) != value:
                return False
        for key, values in self.not_in.items():
            if metadata.get(key) in values:
                return False
        return True


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors. A zero vector scores 0.0."""
    dot = sum(x * y for x, y in zip(a, b, strict=False))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def check_namespace(namespace: str) -> None:
    if namespace not in NAMESPACES:
        msg = f"Unknown vector namespace: {namespace!r}"
        raise ValueError(msg)


class VectorIndex(ABC):
    """Similarity-searchable vector store."""

    @abstractmethod
    async def upsert(
        self,
        id: str,
        vector: list[float],
        metadata: dict[str, Any],
        namespace: str,
        owner_id: str,
    ) -> None:
        """Insert or overwrite the vector stored under *id* in *namespace*."""

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        namespace: str,
        owner_id: str,
        top_k: int,
        filter: MetadataFilter | None = None,
    ) -> list[VectorMatch]:
        """Return up to *top_k* of the owner's vectors, most similar first."""

    @abstractmethod
    async def delete(self, id: str, namespace: str) -> None:
        """Remove the vector stored under *id*. Missing ids are not an error."""
