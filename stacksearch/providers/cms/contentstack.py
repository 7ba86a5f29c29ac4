from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

import httpx

from stacksearch.core.config import Settings, get_settings
from stacksearch.core.errors import AuthenticationError, NotFoundError
from stacksearch.core.logging import mask_key
from stacksearch.domain.types import CredentialRecord
from stacksearch.providers.http import json_body, send_translated
from stacksearch.services.resilience import CircuitBreaker, call_external


logger = logging.getLogger(__name__)

INTEGRATION = "cms.content"


class TokenSource(Protocol):
    async def get_valid_access_token(self, stack_api_key: str) -> str: ...

    async def refresh(self, stack_api_key: str, *, force: bool = False) -> CredentialRecord: ...

    async def deactivate(self, stack_api_key: str) -> bool: ...


@dataclass
class ContentTypeEntries:
    content_type: str
    title: str | None
    entries: list[dict[str, Any]] = field(default_factory=list)


class ContentstackClient:
    """Tenant-scoped reads against the CMS content and asset API.

    Every request resolves a valid token through the credential manager. A 401
    triggers exactly one forced refresh and a retry; if the refresh fails or
    the retry is still unauthorized the credential is deactivated.
    """

    def __init__(
        self,
        credentials: TokenSource,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._credentials = credentials
        self._settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.cms_timeout_s)
        self._owns_http = http_client is None
        self._breaker = breaker

    def _url(self, path: str) -> str:
        return f"{self._settings.cms_api_base_url.rstrip('/')}{path}"

    async def _get_once(
        self, stack_api_key: str, token: str, path: str, params: dict[str, Any] | None
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {token}",
            "api_key": stack_api_key,
            "Content-Type": "application/json",
        }

        async def _call() -> httpx.Response:
            return await send_translated(
                INTEGRATION,
                lambda: self._http.get(self._url(path), params=params, headers=headers),
            )

        response = await call_external(INTEGRATION, _call, breaker=self._breaker)
        return json_body(response, INTEGRATION)

    async def _get(self, stack_api_key: str, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        token = await self._credentials.get_valid_access_token(stack_api_key)
        try:
            return await self._get_once(stack_api_key, token, path, params)
        except AuthenticationError:
            logger.info("cms_token_rejected stack=%s path=%s", mask_key(stack_api_key), path)
        try:
            record = await self._credentials.refresh(stack_api_key, force=True)
        except AuthenticationError:
            await self._credentials.deactivate(stack_api_key)
            raise
        try:
            return await self._get_once(stack_api_key, record.access_token, path, params)
        except AuthenticationError:
            # Freshly refreshed token still rejected: the grant was revoked.
            await self._credentials.deactivate(stack_api_key)
            raise

    async def list_content_types(self, stack_api_key: str) -> list[dict[str, Any]]:
        body = await self._get(
            stack_api_key,
            "/content_types",
            {"include_count": "true", "limit": self._settings.cms_page_size},
        )
        return list(body.get("content_types") or [])

    async def list_entries(
        self,
        stack_api_key: str,
        content_type: str,
        *,
        environment: str | None = None,
        locale: str | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        params: dict[str, Any] = {
            "environment": environment or self._settings.cms_default_environment,
            "limit": limit or self._settings.cms_page_size,
            "skip": skip,
            "include_count": "true",
        }
        if locale:
            params["locale"] = locale
        body = await self._get(stack_api_key, f"/content_types/{content_type}/entries", params)
        entries = list(body.get("entries") or [])
        return entries, int(body.get("count") or len(entries))

    async def iter_all_entries(
        self,
        stack_api_key: str,
        content_type: str,
        *,
        environment: str | None = None,
        locale: str | None = None,
    ) -> list[dict[str, Any]]:
        # Walk skip/limit pages until the reported count is reached or a page comes back short.
        page_size = self._settings.cms_page_size
        collected: list[dict[str, Any]] = []
        skip = 0
        while True:
            entries, count = await self.list_entries(
                stack_api_key,
                content_type,
                environment=environment,
                locale=locale,
                limit=page_size,
                skip=skip,
            )
            collected.extend(entries)
            skip += page_size
            if len(entries) < page_size or skip >= count:
                return collected

    async def fetch_all_entries(
        self,
        stack_api_key: str,
        *,
        environment: str | None = None,
        content_type: str | None = None,
        locale: str | None = None,
    ) -> list[ContentTypeEntries]:
        if content_type:
            types = [{"uid": content_type, "title": None}]
        else:
            types = await self.list_content_types(stack_api_key)
        groups: list[ContentTypeEntries] = []
        for item in types:
            uid = item.get("uid")
            if not uid:
                continue
            try:
                entries = await self.iter_all_entries(
                    stack_api_key, uid, environment=environment, locale=locale
                )
            except AuthenticationError:
                raise
            except Exception as exc:  # noqa: BLE001 - one broken content type must not stop the crawl
                logger.warning(
                    "cms_content_type_fetch_failed stack=%s content_type=%s error=%s",
                    mask_key(stack_api_key),
                    uid,
                    exc,
                )
                continue
            groups.append(ContentTypeEntries(content_type=uid, title=item.get("title"), entries=entries))
        logger.info(
            "cms_entries_fetched stack=%s content_types=%s entries=%s",
            mask_key(stack_api_key),
            len(groups),
            sum(len(group.entries) for group in groups),
        )
        return groups

    async def fetch_entry(
        self,
        stack_api_key: str,
        content_type: str,
        entry_uid: str,
        *,
        environment: str | None = None,
        locale: str | None = None,
    ) -> dict[str, Any] | None:
        params: dict[str, Any] = {"environment": environment or self._settings.cms_default_environment}
        if locale:
            params["locale"] = locale
        try:
            body = await self._get(stack_api_key, f"/content_types/{content_type}/entries/{entry_uid}", params)
        except NotFoundError:
            return None
        return body.get("entry")

    async def list_assets(
        self, stack_api_key: str, *, limit: int | None = None, skip: int = 0
    ) -> tuple[list[dict[str, Any]], int]:
        body = await self._get(
            stack_api_key,
            "/assets",
            {"limit": limit or self._settings.cms_page_size, "skip": skip, "include_count": "true"},
        )
        assets = list(body.get("assets") or [])
        return assets, int(body.get("count") or len(assets))

    async def fetch_asset(self, stack_api_key: str, asset_uid: str) -> dict[str, Any] | None:
        try:
            body = await self._get(stack_api_key, f"/assets/{asset_uid}")
        except NotFoundError:
            return None
        return body.get("asset")

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
