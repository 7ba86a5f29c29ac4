from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from stacksearch.core.errors import (
    AuthenticationError,
    InputValidationError,
    PermissionDeniedError,
    ProviderUnavailableError,
    RefreshRejectedError,
)
from stacksearch.providers.cms.contentstack import ContentstackClient
from stacksearch.providers.cms.oauth import ContentstackOAuthClient, parse_token_response
from stacksearch.tests.utils.fakes import install_stack, product


def test_parse_token_response_defaults_ttl_and_keeps_refresh_token() -> None:
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    bundle = parse_token_response(
        {"access_token": "a-1", "expires_in": "bogus"},
        now=now,
        default_ttl_s=3600,
        previous_refresh_token="r-0",
    )
    assert bundle.refresh_token == "r-0"
    assert bundle.expires_in == 3600
    assert bundle.expires_at == now + timedelta(hours=1)


def test_parse_token_response_requires_access_token() -> None:
    with pytest.raises(ProviderUnavailableError):
        parse_token_response({"refresh_token": "r"}, now=datetime.now(timezone.utc), default_ttl_s=60)


def test_authorize_url_points_at_app_install(settings) -> None:
    client = ContentstackOAuthClient(settings=settings, http_client=httpx.AsyncClient())
    url = client.authorize_url(state="xyz")
    assert url.startswith("https://app.cms.test/#!/apps/app-uid/authorize?")
    assert "client_id=client-id" in url
    assert "state=xyz" in url


@pytest.mark.asyncio
async def test_exchange_code_returns_stack_bundle(container, token_endpoint) -> None:
    token_endpoint.codes["code-1"] = "blt-stack"

    bundle = await container.oauth.exchange_code("code-1")

    assert bundle.stack_api_key == "blt-stack"
    assert bundle.access_token.startswith("access-blt-stack-")
    assert bundle.expires_at is not None


@pytest.mark.asyncio
async def test_exchange_code_with_unknown_code_is_a_client_error(container) -> None:
    with pytest.raises(InputValidationError):
        await container.oauth.exchange_code("not-issued")


@pytest.mark.asyncio
async def test_refresh_rejection_and_outage_are_distinguished(container, token_endpoint) -> None:
    with pytest.raises(RefreshRejectedError):
        await container.oauth.refresh("refresh-unknown")

    token_endpoint.unavailable = True
    with pytest.raises(ProviderUnavailableError):
        await container.oauth.refresh("refresh-unknown")


@pytest.mark.asyncio
async def test_unauthorized_cms_call_refreshes_once_and_retries(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.add_entry("blt-stack", "product", product("blt1", "Trail Runner", "Light trail shoe"))
    fake_cms.revoke("blt-stack")

    types = await container.cms.list_content_types("blt-stack")

    assert [item["uid"] for item in types] == ["product"]
    assert token_endpoint.refresh_calls == 1
    assert (await container.credentials.credential_state("blt-stack")) == "active"


@pytest.mark.asyncio
async def test_revoked_grant_deactivates_credential(container, fake_cms, token_endpoint) -> None:
    record = await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.revoke("blt-stack")
    token_endpoint.rejected_refresh_tokens.add(record.refresh_token)

    with pytest.raises(AuthenticationError):
        await container.cms.list_content_types("blt-stack")

    assert (await container.credentials.credential_state("blt-stack")) == "inactive"


@pytest.mark.asyncio
async def test_entries_are_paged_with_skip_and_limit(container, fake_cms, token_endpoint, settings) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    for n in range(5):
        fake_cms.add_entry("blt-stack", "product", product(f"blt{n}", f"Item {n}", "Plain description"))
    client = ContentstackClient(
        container.credentials,
        settings=settings.model_copy(update={"cms_page_size": 2}),
        http_client=httpx.AsyncClient(transport=fake_cms.transport()),
    )

    entries = await client.iter_all_entries("blt-stack", "product", environment="production")

    assert [entry["uid"] for entry in entries] == ["blt0", "blt1", "blt2", "blt3", "blt4"]
    pages = [request for request in fake_cms.requests if request.url.path.endswith("/entries")]
    assert [request.url.params["skip"] for request in pages] == ["0", "2", "4"]
    assert all(request.url.params["environment"] == "production" for request in pages)


@pytest.mark.asyncio
async def test_failing_content_type_is_skipped(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.add_entry("blt-stack", "product", product("blt1", "Trail Runner", "Light trail shoe"))
    fake_cms.add_entry("blt-stack", "article", {"uid": "blt2", "title": "Care guide"})
    fake_cms.failing_content_types.add("article")

    groups = await container.cms.fetch_all_entries("blt-stack")

    assert [group.content_type for group in groups] == ["product"]
    assert groups[0].entries[0]["uid"] == "blt1"


@pytest.mark.asyncio
async def test_missing_entry_and_asset_return_none(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.add_entry("blt-stack", "product", product("blt1", "Trail Runner", "Light trail shoe"))

    assert await container.cms.fetch_entry("blt-stack", "product", "blt-gone") is None
    assert await container.cms.fetch_asset("blt-stack", "blt-asset-gone") is None
    assert (await container.cms.fetch_entry("blt-stack", "product", "blt1"))["title"] == "Trail Runner"


@pytest.mark.asyncio
async def test_forbidden_entry_keeps_the_credential_active(container, fake_cms, token_endpoint) -> None:
    await install_stack(container, token_endpoint, "blt-stack")
    fake_cms.add_entry("blt-stack", "product", product("blt1", "Trail Runner", "Light trail shoe"))
    fake_cms.add_entry("blt-stack", "product", product("blt2", "Summit Jacket", "Waterproof shell"))
    fake_cms.forbidden_entries.add("blt2")

    with pytest.raises(PermissionDeniedError):
        await container.cms.fetch_entry("blt-stack", "product", "blt2")

    assert token_endpoint.refresh_calls == 0
    assert (await container.credentials.credential_state("blt-stack")) == "active"
    assert (await container.cms.fetch_entry("blt-stack", "product", "blt1"))["title"] == "Trail Runner"
