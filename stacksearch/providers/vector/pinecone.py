from __future__ import annotations

import asyncio
from typing import Any, Callable

from pinecone import Pinecone, ServerlessSpec

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import (
    InputValidationError,
    NotFoundError,
    ProviderUnavailableError,
    StackSearchError,
    error_from_status,
)
from stacksearch.domain.types import IndexHandle, VectorMatch, VectorRecord
from stacksearch.providers.vector.base import IndexDescription
from stacksearch.services.resilience import CircuitBreaker, call_external


INTEGRATION = "pinecone"

# Pinecone caps upsert request size; batches of 100 stay well under it.
UPSERT_BATCH = 100


def _translate(exc: Exception) -> Exception:
    if isinstance(exc, StackSearchError):
        return exc
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return error_from_status(status, f"{INTEGRATION} returned {status}")
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return ProviderUnavailableError(f"{INTEGRATION} network error: {exc.__class__.__name__}")
    return exc


def _field(obj: Any, name: str, default: Any = None) -> Any:
    # SDK responses are model objects in recent releases and dicts in older ones.
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class PineconeVectorStore:
    """Pinecone serverless adapter; the sync SDK runs in worker threads."""

    supports_atomic_upsert = True

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: Any | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if client is None and not self._settings.pinecone_api_key:
            raise InputValidationError("PINECONE_API_KEY is required for the pinecone vector provider")
        self._client = client or Pinecone(api_key=self._settings.pinecone_api_key)
        self._breaker = breaker
        self._indexes: dict[str, Any] = {}

    async def _run(self, func: Callable[[], Any]) -> Any:
        async def _call() -> Any:
            try:
                return await asyncio.to_thread(func)
            except Exception as exc:  # noqa: BLE001 - translated into the shared taxonomy
                raise _translate(exc) from exc

        return await call_external(INTEGRATION, _call, breaker=self._breaker)

    def _index(self, name: str) -> Any:
        index = self._indexes.get(name)
        if index is None:
            index = self._client.Index(name)
            self._indexes[name] = index
        return index

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        spec = ServerlessSpec(cloud=self._settings.pinecone_cloud, region=self._settings.pinecone_region)
        await self._run(
            lambda: self._client.create_index(name=name, dimension=dimension, metric=metric, spec=spec)
        )

    async def describe_index(self, name: str) -> IndexDescription | None:
        try:
            description = await self._run(lambda: self._client.describe_index(name))
        except NotFoundError:
            return None
        status = _field(description, "status", {}) or {}
        return IndexDescription(
            name=name,
            dimension=int(_field(description, "dimension", 0) or 0),
            ready=bool(_field(status, "ready", False)),
            metric=str(_field(description, "metric", "cosine")),
        )

    async def list_indexes(self) -> list[str]:
        listing = await self._run(lambda: self._client.list_indexes())
        names = getattr(listing, "names", None)
        if callable(names):
            return sorted(names())
        return sorted(_field(item, "name") for item in listing)

    async def delete_index(self, name: str) -> bool:
        try:
            await self._run(lambda: self._client.delete_index(name))
        except NotFoundError:
            return False
        self._indexes.pop(name, None)
        return True

    async def upsert(self, handle: IndexHandle, records: list[VectorRecord]) -> None:
        index = self._index(handle.index_name)
        for start in range(0, len(records), UPSERT_BATCH):
            chunk = [
                {"id": record.id, "values": record.values, "metadata": record.metadata}
                for record in records[start : start + UPSERT_BATCH]
            ]
            await self._run(lambda chunk=chunk: index.upsert(vectors=chunk))

    async def query(
        self,
        handle: IndexHandle,
        vector: list[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        index = self._index(handle.index_name)
        kwargs: dict[str, Any] = {"vector": vector, "top_k": top_k, "include_metadata": True}
        if metadata_filter:
            kwargs["filter"] = metadata_filter
        response = await self._run(lambda: index.query(**kwargs))
        return [
            VectorMatch(
                id=str(_field(match, "id")),
                score=float(_field(match, "score", 0.0) or 0.0),
                metadata=dict(_field(match, "metadata", None) or {}),
            )
            for match in (_field(response, "matches", None) or [])
        ]

    async def delete(self, handle: IndexHandle, ids: list[str]) -> None:
        if not ids:
            return
        index = self._index(handle.index_name)
        await self._run(lambda: index.delete(ids=ids))

    async def stats(self, handle: IndexHandle) -> dict[str, Any]:
        index = self._index(handle.index_name)
        response = await self._run(lambda: index.describe_index_stats())
        return {
            "total_vector_count": int(_field(response, "total_vector_count", 0) or 0),
            "dimension": int(_field(response, "dimension", handle.dimension) or handle.dimension),
        }
