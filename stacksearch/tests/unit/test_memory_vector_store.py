from __future__ import annotations

import pytest

from stacksearch.core.errors import IndexNotFoundError, InputValidationError
from stacksearch.domain.types import IndexHandle, VectorRecord
from stacksearch.providers.vector.memory import InMemoryVectorStore, matches_filter


def _handle(name: str = "semantic-search-blta", dimension: int = 3) -> IndexHandle:
    return IndexHandle(stack_api_key="blt-a", index_name=name, dimension=dimension)


@pytest.mark.asyncio
async def test_query_orders_by_cosine_and_applies_filter() -> None:
    store = InMemoryVectorStore()
    await store.create_index("semantic-search-blta", 3)
    handle = _handle()
    await store.upsert(
        handle,
        [
            VectorRecord(id="a", values=[1.0, 0.0, 0.0], metadata={"type": "text", "brand": "acme"}),
            VectorRecord(id="b", values=[0.7, 0.7, 0.0], metadata={"type": "text", "brand": "zeta"}),
            VectorRecord(id="c", values=[0.0, 0.0, 1.0], metadata={"type": "image", "brand": "acme"}),
        ],
    )

    matches = await store.query(handle, [1.0, 0.1, 0.0], top_k=5, metadata_filter={"type": {"$eq": "text"}})
    assert [match.id for match in matches] == ["a", "b"]
    assert matches[0].score > matches[1].score

    filtered = await store.query(
        handle, [1.0, 0.0, 0.0], top_k=5, metadata_filter={"brand": {"$in": ["acme"]}, "type": {"$eq": "text"}}
    )
    assert [match.id for match in filtered] == ["a"]


@pytest.mark.asyncio
async def test_upsert_replaces_in_place_and_checks_dimension() -> None:
    store = InMemoryVectorStore()
    await store.create_index("semantic-search-blta", 3)
    handle = _handle()
    await store.upsert(handle, [VectorRecord(id="a", values=[1.0, 0.0, 0.0], metadata={"v": 1})])
    await store.upsert(handle, [VectorRecord(id="a", values=[0.0, 1.0, 0.0], metadata={"v": 2})])

    assert (await store.stats(handle))["total_vector_count"] == 1
    matches = await store.query(handle, [0.0, 1.0, 0.0], top_k=1)
    assert matches[0].metadata == {"v": 2}

    with pytest.raises(InputValidationError):
        await store.upsert(handle, [VectorRecord(id="b", values=[1.0, 0.0], metadata={})])


@pytest.mark.asyncio
async def test_indexes_are_isolated_and_missing_index_raises() -> None:
    store = InMemoryVectorStore()
    await store.create_index("semantic-search-blta", 3)
    await store.create_index("semantic-search-bltb", 3)
    await store.upsert(_handle(), [VectorRecord(id="a", values=[1.0, 0.0, 0.0], metadata={})])

    assert await store.query(_handle("semantic-search-bltb"), [1.0, 0.0, 0.0], top_k=5) == []
    await store.delete(_handle(), ["a", "never-existed"])
    assert store.ids("semantic-search-blta") == set()

    assert await store.delete_index("semantic-search-blta") is True
    with pytest.raises(IndexNotFoundError):
        await store.query(_handle(), [1.0, 0.0, 0.0], top_k=1)


def test_matches_filter_supports_boolean_clauses() -> None:
    metadata = {"brand": "acme", "price": 40, "type": "text"}
    assert matches_filter(metadata, {"$or": [{"brand": "zeta"}, {"price": {"$lt": 50}}]})
    assert not matches_filter(metadata, {"$and": [{"brand": "acme"}, {"price": {"$gte": 50}}]})
    assert matches_filter(metadata, {"brand": {"$nin": ["zeta"]}, "type": {"$ne": "image"}})
    assert not matches_filter({"price": "cheap"}, {"price": {"$gt": 1}})
