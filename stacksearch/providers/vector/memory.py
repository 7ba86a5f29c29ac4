from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from stacksearch.core.errors import IndexNotFoundError, InputValidationError
from stacksearch.domain.types import IndexHandle, VectorMatch, VectorRecord
from stacksearch.providers.vector.base import IndexDescription


@dataclass
class _MemoryIndex:
    dimension: int
    metric: str
    # Remaining describe calls before the index reports ready.
    pending_polls: int = 0
    records: dict[str, VectorRecord] = field(default_factory=dict)


def _cosine(left: list[float], right: list[float]) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    return dot / norm if norm else 0.0


def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict):
        for op, expected in condition.items():
            if op == "$eq" and value != expected:
                return False
            if op == "$ne" and value == expected:
                return False
            if op == "$in" and value not in expected:
                return False
            if op == "$nin" and value in expected:
                return False
            if op in ("$gt", "$gte", "$lt", "$lte"):
                if not isinstance(value, (int, float)):
                    return False
                if op == "$gt" and not value > expected:
                    return False
                if op == "$gte" and not value >= expected:
                    return False
                if op == "$lt" and not value < expected:
                    return False
                if op == "$lte" and not value <= expected:
                    return False
        return True
    return value == condition


def matches_filter(metadata: dict[str, Any], metadata_filter: dict[str, Any] | None) -> bool:
    # Subset of the Pinecone filter language: implicit AND of field conditions plus $and/$or.
    if not metadata_filter:
        return True
    for key, condition in metadata_filter.items():
        if key == "$and":
            if not all(matches_filter(metadata, clause) for clause in condition):
                return False
            continue
        if key == "$or":
            if not any(matches_filter(metadata, clause) for clause in condition):
                return False
            continue
        if not _matches_condition(metadata.get(key), condition):
            return False
    return True


class InMemoryVectorStore:
    supports_atomic_upsert = True

    def __init__(self, *, provision_polls: int = 0, atomic_upsert: bool = True) -> None:
        # provision_polls simulates serverless indexes that need a few describes to become ready.
        self._indexes: dict[str, _MemoryIndex] = {}
        self._provision_polls = provision_polls
        self.supports_atomic_upsert = atomic_upsert
        self.created: list[str] = []

    def _index(self, handle: IndexHandle) -> _MemoryIndex:
        index = self._indexes.get(handle.index_name)
        if index is None:
            raise IndexNotFoundError(f"index {handle.index_name} does not exist")
        return index

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        if name in self._indexes:
            return
        self._indexes[name] = _MemoryIndex(dimension=dimension, metric=metric, pending_polls=self._provision_polls)
        self.created.append(name)

    async def describe_index(self, name: str) -> IndexDescription | None:
        index = self._indexes.get(name)
        if index is None:
            return None
        if index.pending_polls > 0:
            index.pending_polls -= 1
            return IndexDescription(name=name, dimension=index.dimension, ready=False, metric=index.metric)
        return IndexDescription(name=name, dimension=index.dimension, ready=True, metric=index.metric)

    async def list_indexes(self) -> list[str]:
        return sorted(self._indexes)

    async def delete_index(self, name: str) -> bool:
        return self._indexes.pop(name, None) is not None

    async def upsert(self, handle: IndexHandle, records: list[VectorRecord]) -> None:
        index = self._index(handle)
        for record in records:
            if len(record.values) != index.dimension:
                raise InputValidationError(
                    f"vector dimension {len(record.values)} does not match index dimension {index.dimension}"
                )
            index.records[record.id] = record

    async def query(
        self,
        handle: IndexHandle,
        vector: list[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        index = self._index(handle)
        matches = [
            VectorMatch(id=record.id, score=_cosine(vector, record.values), metadata=dict(record.metadata))
            for record in index.records.values()
            if matches_filter(record.metadata, metadata_filter)
        ]
        matches.sort(key=lambda match: (-match.score, match.id))
        return matches[: max(top_k, 0)]

    async def delete(self, handle: IndexHandle, ids: list[str]) -> None:
        index = self._index(handle)
        for record_id in ids:
            index.records.pop(record_id, None)

    async def stats(self, handle: IndexHandle) -> dict[str, Any]:
        index = self._index(handle)
        return {"total_vector_count": len(index.records), "dimension": index.dimension}

    def ids(self, index_name: str) -> set[str]:
        index = self._indexes.get(index_name)
        return set(index.records) if index else set()
