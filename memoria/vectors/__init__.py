"""Vector index backends behind one contract."""

import logging

from memoria.config import settings
from memoria.vectors.base import (
    CONVERSATIONS_NAMESPACE,
    NOTES_NAMESPACE,
    MetadataFilter,
    VectorIndex,
    VectorMatch,
    cosine_similarity,
)
from memoria.vectors.local import LocalVectorIndex
from memoria.vectors.pinecone import PineconeIndex

logger = logging.getLogger(__name__)

_index: VectorIndex | None = None


def get_vector_index() -> VectorIndex:
    """Return the shared index for the configured backend."""
    global _index  # noqa: PLW0603
    if _index is None:
        if settings.pinecone_enabled():
            _index = PineconeIndex()
            logger.info("Vector index: Pinecone (%s)", settings.pinecone_index_host)
        else:
            if settings.vector_backend.strip().lower() == "pinecone":
                logger.warning(
                    "Pinecone selected but PINECONE_API_KEY / PINECONE_INDEX_HOST "
                    "are not set — falling back to the local vector index"
                )
            _index = LocalVectorIndex()
            logger.info("Vector index: local (libsql)")
    return _index


def _reset() -> None:
    """Drop the shared index (for testing)."""
    global _index  # noqa: PLW0603
    _index = None


__all__ = [
    "CONVERSATIONS_NAMESPACE",
    "NOTES_NAMESPACE",
    "LocalVectorIndex",
    "MetadataFilter",
    "PineconeIndex",
    "VectorIndex",
    "VectorMatch",
    "cosine_similarity",
    "get_vector_index",
]
