from __future__ import annotations

import asyncio

import pytest

from stacksearch.core.errors import InputValidationError, NoCredentialError
from stacksearch.domain.types import SearchRequest
from stacksearch.services.resilience import drain_background_tasks
from stacksearch.tests.utils.fakes import install_stack, product


async def _seed(container, fake_cms, token_endpoint, key: str = "blt-stack") -> None:
    await install_stack(container, token_endpoint, key)
    fake_cms.add_entry(key, "product", product("blt1", "Trail Runner", "Lightweight trail running shoe with grip"))
    fake_cms.add_entry(key, "product", product("blt2", "Road Racer", "Cushioned road running shoe for racing"))
    fake_cms.add_entry(key, "product", product("blt3", "Camp Sandal", "Breathable sandal for camp evenings"))
    await container.indexing.index_all(key)


@pytest.mark.asyncio
async def test_empty_index_returns_no_results_and_still_logs(container, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")

    response = await container.retrieval.search(SearchRequest(stack_api_key="blt-stack", query="running shoes"))
    await drain_background_tasks()

    assert response.results == []
    assert response.total == 0
    logs = await container.search_logger.recent("blt-stack")
    assert len(logs) == 1
    assert logs[0]["success"] is True
    assert logs[0]["results_count"] == 0


@pytest.mark.asyncio
async def test_results_are_enriched_with_live_entries(container, fake_cms, token_endpoint) -> None:
    await _seed(container, fake_cms, token_endpoint)

    response = await container.retrieval.search(
        SearchRequest(stack_api_key="blt-stack", query="trail running shoe", top_k=2)
    )

    assert response.total == 2
    assert response.reranked is True
    assert response.results[0].id == "blt1"
    assert response.results[0].entry["title"] == "Trail Runner"
    assert response.results[0].rerank_score is not None
    assert response.degraded_stages == []


@pytest.mark.asyncio
async def test_rerank_failure_falls_back_to_similarity_order(container, fake_cms, token_endpoint, reranker) -> None:
    await _seed(container, fake_cms, token_endpoint)
    baseline = await container.retrieval.search(
        SearchRequest(stack_api_key="blt-stack", query="running shoe", rerank=False, enrich=False)
    )
    reranker.fail = True

    response = await container.retrieval.search(
        SearchRequest(stack_api_key="blt-stack", query="running shoe", enrich=False)
    )

    assert response.reranked is False
    assert response.degraded_stages == ["rerank"]
    assert [hit.id for hit in response.results] == [hit.id for hit in baseline.results]
    scores = [hit.score for hit in response.results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_deleted_and_unreachable_entries_are_dropped(container, fake_cms, token_endpoint) -> None:
    await _seed(container, fake_cms, token_endpoint)
    fake_cms.remove_entry("blt-stack", "product", "blt2")
    fake_cms.failing_entry_fetches.add("blt1")

    response = await container.retrieval.search(
        SearchRequest(stack_api_key="blt-stack", query="running shoe", top_k=3, rerank=False)
    )

    ids = [hit.id for hit in response.results]
    assert "blt1" not in ids
    assert "blt2" not in ids
    assert response.degraded_stages == ["enrich"]


@pytest.mark.asyncio
async def test_filters_restrict_candidates(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.add_entry("blt-stack", "product", product("blt1", "Trail Runner", "Trail running shoe", brand="Acme"))
    fake_cms.add_entry("blt-stack", "product", product("blt2", "Road Runner", "Road running shoe", brand="Zeta"))
    await container.indexing.index_all("blt-stack")

    response = await container.retrieval.search(
        SearchRequest(stack_api_key="blt-stack", query="running shoe", filters={"brand": "Zeta", "color": None})
    )

    assert [hit.id for hit in response.results] == ["blt2"]


@pytest.mark.asyncio
async def test_invalid_request_fails_and_is_logged(container, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")

    with pytest.raises(InputValidationError):
        await container.retrieval.search(SearchRequest(stack_api_key="blt-stack", query="   "))
    with pytest.raises(InputValidationError):
        await container.retrieval.search(SearchRequest(stack_api_key="blt-stack", query="shoes", top_k=0))
    await drain_background_tasks()

    stats = await container.search_logger.search_stats("blt-stack")
    assert stats["failed_searches"] == 2


@pytest.mark.asyncio
async def test_search_without_credential_is_an_auth_error(container) -> None:
    with pytest.raises(NoCredentialError):
        await container.retrieval.search(SearchRequest(stack_api_key="blt-unknown", query="shoes"))


@pytest.mark.asyncio
async def test_image_and_hybrid_search(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    image_url = "https://cdn.example.com/runner-side.png"
    fake_cms.add_entry(
        "blt-stack",
        "product",
        product("blt1", "Trail Runner", "Lightweight trail running shoe", gallery=[image_url]),
    )
    fake_cms.add_entry("blt-stack", "product", product("blt2", "Camp Sandal", "Breathable sandal for camp"))
    await container.indexing.index_all("blt-stack", include_images=True)

    by_image = await container.retrieval.search_by_image(
        SearchRequest(stack_api_key="blt-stack", image=image_url, top_k=3)
    )
    assert by_image.results[0].id == "blt1_image_0"
    assert by_image.results[0].modality == "image"
    assert by_image.results[0].entry["uid"] == "blt1"

    hybrid = await container.retrieval.search_hybrid(
        SearchRequest(stack_api_key="blt-stack", query="trail running shoe", image=image_url, top_k=5)
    )
    source_uids = [hit.metadata.get("uid") for hit in hybrid.results]
    assert source_uids[0] == "blt1"
    assert len(source_uids) == len(set(source_uids))
    assert hybrid.search_type == "hybrid"


@pytest.mark.asyncio
async def test_hybrid_requires_query_or_image(container, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    with pytest.raises(InputValidationError):
        await container.retrieval.search_hybrid(SearchRequest(stack_api_key="blt-stack"))


@pytest.mark.asyncio
async def test_concurrent_indexing_never_leaks_across_tenants(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-tenant-a")
    await install_stack(container, token_endpoint, "blt-tenant-b")
    for n in range(30):
        fake_cms.add_entry("blt-tenant-a", "product", product(f"blta{n}", f"Alpha shoe {n}", "Running shoe from tenant alpha"))
    fake_cms.add_entry("blt-tenant-b", "product", product("bltb1", "Beta sandal", "Running sandal from tenant beta"))
    await container.indexing.index_all("blt-tenant-b")

    request = SearchRequest(stack_api_key="blt-tenant-b", query="running shoe", top_k=10, enrich=False)
    outcomes = await asyncio.gather(
        container.indexing.index_all("blt-tenant-a"),
        *(container.retrieval.search(request) for _ in range(10)),
    )

    assert outcomes[0].indexed == 30
    for response in outcomes[1:]:
        assert {hit.metadata["stack_api_key"] for hit in response.results} <= {"blt-tenant-b"}
        assert all(hit.id == "bltb1" for hit in response.results)
