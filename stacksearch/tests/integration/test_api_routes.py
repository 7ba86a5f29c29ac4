from __future__ import annotations

import httpx
import pytest

from stacksearch.apps.api.main import create_app
from stacksearch.services.resilience import drain_background_tasks
from stacksearch.tests.utils.fakes import install_stack, product


STACK = {"X-Stack-Api-Key": "blt-stack"}


@pytest.fixture
async def client(container):
    app = create_app(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _seed(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.add_entry("blt-stack", "product", product("blt1", "Trail Runner", "Lightweight trail running shoe"))
    fake_cms.add_entry("blt-stack", "product", product("blt2", "Road Racer", "Cushioned road running shoe"))


@pytest.mark.asyncio
async def test_health_envelope_and_legacy_alias(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"] == body["meta"]["request_id"]
    assert "Deprecation" not in response.headers

    legacy = await client.get("/health")
    assert legacy.json() == {"status": "ok"}
    assert legacy.headers["Deprecation"] == "true"
    assert "Sunset" in legacy.headers


@pytest.mark.asyncio
async def test_readiness_reports_dependencies(client) -> None:
    response = await client.get("/v1/health/ready")
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert data["database"] == "ok"
    assert data["queue_depth"] == 0
    assert set(data["breakers"].values()) == {"closed"}
    assert data["refresh_scheduler"]["running"] is False


@pytest.mark.asyncio
async def test_index_then_search_through_the_api(client, container, fake_cms, token_endpoint) -> None:
    await _seed(container, fake_cms, token_endpoint)

    indexed = await client.post("/v1/indexing/all", headers=STACK, json={})
    assert indexed.status_code == 200
    assert indexed.json()["data"]["indexed"] == 2

    response = await client.post("/v1/search", headers=STACK, json={"query": "trail running shoe", "top_k": 1})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["results"][0]["id"] == "blt1"
    assert data["results"][0]["entry"]["title"] == "Trail Runner"
    assert "similarity" in data["results"][0]
    meta = response.json()["meta"]
    assert meta["stack"] == "blt-***tack"
    assert "degraded" not in meta


@pytest.mark.asyncio
async def test_search_requires_stack_key(client) -> None:
    response = await client.post("/v1/search", json={"query": "shoes"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "STACK_KEY_REQUIRED"


@pytest.mark.asyncio
async def test_unknown_stack_must_reauthorize(client) -> None:
    response = await client.post("/v1/search", headers={"X-Stack-Api-Key": "blt-nobody"}, json={"query": "shoes"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "STACK_REAUTH_REQUIRED"
    assert response.json()["error"]["details"]["reauthorize_url"] == "/v1/oauth/authorize"

    legacy = await client.post("/search", headers={"X-Stack-Api-Key": "blt-nobody"}, json={"query": "shoes"})
    assert legacy.status_code == 401
    assert legacy.json()["detail"]["code"] == "STACK_REAUTH_REQUIRED"


@pytest.mark.asyncio
async def test_invalid_search_input(client, container, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")

    blank = await client.post("/v1/search", headers=STACK, json={"query": "  "})
    assert blank.status_code == 400
    assert blank.json()["error"]["code"] == "VALIDATION_FAILED"

    too_many = await client.post("/v1/search", headers=STACK, json={"query": "shoes", "top_k": 500})
    assert too_many.status_code == 400

    unknown_field = await client.post("/v1/search", headers=STACK, json={"query": "shoes", "limit": 3})
    assert unknown_field.status_code == 422
    assert unknown_field.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_webhook_is_accepted_and_indexes_the_entry(client, container, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    body = {
        "event": "publish",
        "module": "entry",
        "api_key": "blt-stack",
        "data": {
            "entry": product("blt7", "Alpine Jacket", "Insulated jacket for alpine climbs"),
            "content_type": {"uid": "product", "title": "Product"},
            "environment": {"name": "production"},
        },
    }

    response = await client.post("/v1/webhooks/contentstack", json=body)
    assert response.status_code == 202
    data = response.json()["data"]
    assert data["event"] == "entry.publish"
    assert data["status"] == "accepted"

    await drain_background_tasks()
    index_name = container.router.index_name_for("blt-stack")
    assert "blt7" in container.vector_store.ids(index_name)


@pytest.mark.asyncio
async def test_webhook_validation_and_unknown_events(client) -> None:
    missing_uid = await client.post(
        "/v1/webhooks/contentstack",
        json={"event": "entry.publish", "api_key": "blt-stack", "data": {"entry": {}, "content_type": {"uid": "product"}}},
    )
    assert missing_uid.status_code == 400
    assert missing_uid.json()["error"]["code"] == "WEBHOOK_INVALID"

    ignored = await client.post(
        "/v1/webhooks/contentstack",
        json={"event": "content_type.create", "api_key": "blt-stack", "data": {}},
    )
    assert ignored.status_code == 202
    assert ignored.json()["data"]["status"] == "ignored"


@pytest.mark.asyncio
async def test_webhook_shared_secret(client, container, monkeypatch) -> None:
    monkeypatch.setattr(container.settings, "webhook_shared_secret", "s3cret")
    body = {"event": "asset.delete", "api_key": "blt-stack", "data": {"asset": {"uid": "bltasset1"}}}

    rejected = await client.post("/v1/webhooks/contentstack", json=body)
    assert rejected.status_code == 401
    assert rejected.json()["error"]["code"] == "WEBHOOK_UNAUTHORIZED"

    accepted = await client.post("/v1/webhooks/contentstack", json=body, headers={"X-Webhook-Secret": "s3cret"})
    assert accepted.status_code == 202


@pytest.mark.asyncio
async def test_oauth_install_flow(client, container, token_endpoint) -> None:
    authorize = await client.get("/v1/oauth/authorize", params={"state": "abc"})
    assert authorize.status_code == 302
    assert "/apps/app-uid/authorize" in authorize.headers["location"]

    token_endpoint.codes["code-1"] = "blt-installed"
    callback = await client.get("/v1/oauth/callback", params={"code": "code-1"})
    assert callback.status_code == 200
    data = callback.json()["data"]
    assert data["stack_api_key"] == "blt-installed"
    assert data["status"] == "authorized"

    await drain_background_tasks()
    assert await container.credentials.credential_state("blt-installed") == "active"
    assert container.router.index_name_for("blt-installed") in await container.router.list_indexes()


@pytest.mark.asyncio
async def test_oauth_callback_redirects_when_configured(client, container, token_endpoint, monkeypatch) -> None:
    monkeypatch.setattr(container.settings, "oauth_success_redirect_url", "https://app.example.com/installed")
    token_endpoint.codes["code-2"] = "blt-installed"

    response = await client.get("/v1/oauth/callback", params={"code": "code-2"})

    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example.com/installed"


@pytest.mark.asyncio
async def test_admin_routes_require_token_when_configured(client, container, token_endpoint, settings, monkeypatch) -> None:
    await install_stack(container, token_endpoint, "blt-stack-admin")
    monkeypatch.setattr(settings, "admin_api_token", "admin-token")

    denied = await client.get("/v1/credentials")
    assert denied.status_code == 401

    allowed = await client.get("/v1/credentials", headers={"Authorization": "Bearer admin-token"})
    assert allowed.status_code == 200
    assert allowed.json()["data"][0]["stack_api_key"] == "blt-***dmin"

    state = await client.get(
        "/v1/credentials/state",
        headers={"Authorization": "Bearer admin-token", "X-Stack-Api-Key": "blt-stack-admin"},
    )
    assert state.json()["data"]["state"] == "active"


@pytest.mark.asyncio
async def test_index_routes(client, container, token_endpoint) -> None:
    missing = await client.get("/v1/indexes/current", headers=STACK)
    assert missing.status_code == 404

    await install_stack(container, token_endpoint, "blt-stack")
    created = await client.post("/v1/indexes/current", headers=STACK)
    assert created.status_code == 200
    assert created.json()["data"]["index_name"] == "semantic-search-bltstack"

    stats = await client.get("/v1/indexes/current/stats", headers=STACK)
    assert stats.json()["data"]["total_vector_count"] == 0


@pytest.mark.asyncio
async def test_analytics_reflect_searches(client, container, fake_cms, token_endpoint) -> None:
    await _seed(container, fake_cms, token_endpoint)
    await container.indexing.index_all("blt-stack")
    for _ in range(2):
        await client.post("/v1/search", headers=STACK, json={"query": "running shoe"})
    await drain_background_tasks()

    stats = await client.get("/v1/analytics/stats", headers=STACK)
    popular = await client.get("/v1/analytics/popular-queries", headers=STACK)

    assert stats.json()["data"]["total_searches"] == 2
    top = popular.json()["data"]["items"][0]
    assert (top["query"], top["count"]) == ("running shoe", 2)


@pytest.mark.asyncio
async def test_degraded_stages_appear_in_meta_only_when_present(client, container, fake_cms, token_endpoint, reranker) -> None:
    await _seed(container, fake_cms, token_endpoint)
    await container.indexing.index_all("blt-stack")

    healthy = await client.post("/v1/search", headers=STACK, json={"query": "running shoe"})
    assert set(healthy.json()["meta"]) == {"request_id", "api_version", "stack"}

    reranker.fail = True
    degraded = await client.post("/v1/search", headers=STACK, json={"query": "running shoe"})
    assert degraded.status_code == 200
    assert degraded.json()["meta"]["degraded"] == ["rerank"]

    health = await client.get("/v1/health")
    assert set(health.json()["meta"]) == {"request_id", "api_version"}


@pytest.mark.asyncio
async def test_forbidden_entry_is_a_permission_error_not_a_reauthorization(client, container, fake_cms, token_endpoint) -> None:
    await _seed(container, fake_cms, token_endpoint)
    fake_cms.forbidden_entries.add("blt2")

    response = await client.post("/v1/indexing/entries", headers=STACK, json={"content_type": "product", "entry_uid": "blt2"})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "STACK_PERMISSION_DENIED"
    assert "reauthorize_url" not in (response.json()["error"].get("details") or {})
    assert await container.credentials.credential_state("blt-stack") == "active"


@pytest.mark.asyncio
async def test_field_patterns_are_per_stack_and_drive_indexing(client, container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    await install_stack(container, token_endpoint, "blt-other")
    other = {"X-Stack-Api-Key": "blt-other"}
    recipe = {"uid": "blt9", "dish": "Green curry", "course": "Main"}
    fake_cms.add_entry("blt-stack", "recipe", recipe)
    fake_cms.add_entry("blt-other", "recipe", dict(recipe))

    registered = await client.post("/v1/field-patterns/recipe", headers=STACK, json={"patterns": {"title": ["dish"]}})
    assert registered.status_code == 200
    assert registered.json()["data"]["patterns"]["title"][0] == "dish"

    theirs = await client.get("/v1/field-patterns/recipe", headers=other)
    assert "dish" not in theirs.json()["data"]["patterns"]["title"]

    preview = await client.post("/v1/field-patterns/recipe/preview", headers=STACK, json={"entry": recipe})
    data = preview.json()["data"]
    assert data["extracted_text"]["title"] == "Green curry"
    assert {item["field_name"]: item["include"] for item in data["field_analysis"]}["dish"] is True

    listed = await client.get("/v1/field-patterns", headers=STACK)
    assert {"product", "article", "page", "recipe"} <= set(listed.json()["data"])

    assert (await container.indexing.index_all("blt-stack")).indexed == 1
    assert (await container.indexing.index_all("blt-other")).skipped == 1


@pytest.mark.asyncio
async def test_field_pattern_validation(client, container, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")

    bad_category = await client.post("/v1/field-patterns/recipe", headers=STACK, json={"patterns": {"steps": ["x"]}})
    assert bad_category.status_code == 400
    assert bad_category.json()["error"]["code"] == "VALIDATION_FAILED"

    not_a_list = await client.post("/v1/field-patterns/recipe", headers=STACK, json={"patterns": {"title": "dish"}})
    assert not_a_list.status_code == 422

    unknown_stack = await client.post(
        "/v1/field-patterns/recipe", headers={"X-Stack-Api-Key": "blt-nobody"}, json={"patterns": {"title": ["dish"]}}
    )
    assert unknown_stack.status_code == 401


@pytest.mark.asyncio
async def test_image_search_accepts_a_multipart_upload(client, container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.add_entry(
        "blt-stack",
        "product",
        product("blt1", "Trail Runner", "Lightweight trail shoe", gallery=["https://cdn.example.com/runner.png"]),
    )
    await container.indexing.index_all("blt-stack", include_images=True)
    png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

    response = await client.post(
        "/v1/search/image/upload",
        headers=STACK,
        files={"file": ("runner.png", png, "image/png")},
        data={"top_k": "2", "filters": '{"content_type": "product"}'},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["search_type"] == "image"
    assert data["results"][0]["id"] == "blt1_image_0"

    rejected = await client.post(
        "/v1/search/image/upload",
        headers=STACK,
        files={"file": ("notes.txt", b"plain text", "text/plain")},
    )
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "VALIDATION_FAILED"
