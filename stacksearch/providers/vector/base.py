from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from stacksearch.domain.types import IndexHandle, VectorMatch, VectorRecord


@dataclass(frozen=True)
class IndexDescription:
    name: str
    dimension: int
    ready: bool
    metric: str = "cosine"


class VectorStore(Protocol):
    """Vector database operations; every data-plane call names its index explicitly."""

    # True when upsert replaces a record in one step.
    supports_atomic_upsert: bool

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        ...

    async def describe_index(self, name: str) -> IndexDescription | None:
        ...

    async def list_indexes(self) -> list[str]:
        ...

    async def delete_index(self, name: str) -> bool:
        ...

    async def upsert(self, handle: IndexHandle, records: list[VectorRecord]) -> None:
        ...

    async def query(
        self,
        handle: IndexHandle,
        vector: list[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        ...

    async def delete(self, handle: IndexHandle, ids: list[str]) -> None:
        ...

    async def stats(self, handle: IndexHandle) -> dict[str, Any]:
        ...
