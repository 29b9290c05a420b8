"""PineconeIndex — Pinecone data-plane REST API over httpx.

The index must be created with the ``cosine`` metric so scores line up with
the local backend and the configured similarity threshold. Owner scoping is
applied as a metadata filter on ``owner_id``.

Upserts are idempotent and retried on transient failures; queries and
deletes are attempted once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from memoria.config import settings
from memoria.errors import VectorIndexError
from memoria.vectors.base import MetadataFilter, VectorIndex, VectorMatch, check_namespace

logger = logging.getLogger(__name__)

API_VERSION = "2025-01"
_UPSERT_RETRY_DELAY_SECONDS = 1.0


def _is_transient(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return True


def _to_pinecone_filter(owner_id: str, filter: MetadataFilter | None) -> dict[str, Any]:
    clauses: dict[str, Any] = {"owner_id": {"$eq": owner_id}}
    if filter:
        for key, value in filter.equals.items():
            clauses[key] = {"$eq": value}
        for key, values in filter.not_in.items():
            clauses[key] = {"$nin": list(values)}
    return clauses


def _clean_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Drop values Pinecone rejects (nulls)."""
    return {k: v for k, v in metadata.items() if v is not None}


class PineconeIndex(VectorIndex):
    """Vector index hosted by Pinecone."""

    def __init__(
        self,
        api_key: str | None = None,
        host: str | None = None,
        upsert_attempts: int | None = None,
    ) -> None:
        self._api_key = api_key or settings.pinecone_api_key
        host = (host or settings.pinecone_index_host).rstrip("/")
        if host and not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        self._host = host
        self._upsert_attempts = max(upsert_attempts or settings.vector_upsert_attempts, 1)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._host,
            headers={
                "Api-Key": self._api_key,
                "Content-Type": "application/json",
                "X-Pinecone-API-Version": API_VERSION,
            },
            timeout=settings.request_timeout_seconds,
        )

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(path, json=body)
        resp.raise_for_status()
        if not resp.content:
            return {}
        return resp.json()

    # -- VectorIndex -------------------------------------------------------------

    async def upsert(
        self,
        id: str,
        vector: list[float],
        metadata: dict[str, Any],
        namespace: str,
        owner_id: str,
    ) -> None:
        check_namespace(namespace)
        if not vector:
            raise VectorIndexError(f"Refusing to store an empty vector for {id}")
        body = {
            "namespace": namespace,
            "vectors": [
                {
                    "id": id,
                    "values": vector,
                    "metadata": _clean_metadata({**metadata, "owner_id": owner_id}),
                }
            ],
        }

        for attempt in range(1, self._upsert_attempts + 1):
            try:
                await self._post("/vectors/upsert", body)
                logger.debug("Upserted vector %s/%s", namespace, id)
                return
            except httpx.HTTPError as exc:
                if attempt >= self._upsert_attempts or not _is_transient(exc):
                    raise VectorIndexError(
                        f"Pinecone upsert of {namespace}/{id} failed: {exc}"
                    ) from exc
                logger.warning(
                    "Pinecone upsert attempt %d/%d failed: %s",
                    attempt,
                    self._upsert_attempts,
                    exc,
                )
                await asyncio.sleep(_UPSERT_RETRY_DELAY_SECONDS)

    async def query(
        self,
        vector: list[float],
        namespace: str,
        owner_id: str,
        top_k: int,
        filter: MetadataFilter | None = None,
    ) -> list[VectorMatch]:
        check_namespace(namespace)
        body = {
            "namespace": namespace,
            "vector": vector,
            "topK": top_k,
            "filter": _to_pinecone_filter(owner_id, filter),
            "includeMetadata": True,
            "includeValues": False,
        }
        try:
            data = await self._post("/query", body)
        except httpx.HTTPError as exc:
            raise VectorIndexError(f"Pinecone query in {namespace} failed: {exc}") from exc

        matches = [
            VectorMatch(
                id=m["id"],
                score=float(m.get("score", 0.0)),
                metadata=m.get("metadata") or {},
            )
            for m in data.get("matches", [])
        ]
        # owner scoping is re-checked locally
        matches = [m for m in matches if m.metadata.get("owner_id") == owner_id]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches

    async def delete(self, id: str, namespace: str) -> None:
        check_namespace(namespace)
        try:
            await self._post("/vectors/delete", {"namespace": namespace, "ids": [id]})
        except httpx.HTTPError as exc:
            raise VectorIndexError(f"Pinecone delete of {namespace}/{id} failed: {exc}") from exc
        logger.debug("Deleted vector %s/%s", namespace, id)
